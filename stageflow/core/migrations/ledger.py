"""
Migration Ledger
================

Versioned data migrations for project databases.

Each migration is applied at most once per database and recorded in
the `_migrations` ledger. Databases written before the ledger existed
carry no rows; for those, baseline detection guesses how far they had
already been migrated from content markers, and records everything up
to that point without running it.

Baseline detection is a one-time upgrade heuristic. New migrations
rely on the ledger alone and get no probe.
"""

from collections.abc import Callable
from dataclasses import dataclass
from types import ModuleType
from typing import Optional

import structlog
from sqlalchemy import func, insert, or_, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from stageflow.core.errors import MigrationError
from stageflow.core.migrations.tables import migrations_ledger, stage_templates, timestamp
from stageflow.core.migrations.versions import (
    v001_behavior_flags,
    v002_research_available_stages,
    v003_research_stage,
    v004_findings_stages,
    v005_research_stage_suggestions,
    v006_interactive_stages,
    v007_pr_prep_summaries,
    v008_pr_review_stage,
    v009_merge_stage,
    v010_pr_preparation_format,
    v011_documentation_stage,
    v012_task_splitting_stage,
)
from stageflow.core.models import MigrationRecord

logger = structlog.get_logger()


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[Connection], None]

    @classmethod
    def from_module(cls, module: ModuleType) -> "Migration":
        return cls(version=module.version, name=module.name, upgrade=module.upgrade)


MIGRATIONS: tuple[Migration, ...] = tuple(
    Migration.from_module(module)
    for module in (
        v001_behavior_flags,
        v002_research_available_stages,
        v003_research_stage,
        v004_findings_stages,
        v005_research_stage_suggestions,
        v006_interactive_stages,
        v007_pr_prep_summaries,
        v008_pr_review_stage,
        v009_merge_stage,
        v010_pr_preparation_format,
        v011_documentation_stage,
        v012_task_splitting_stage,
    )
)

assert [m.version for m in MIGRATIONS] == sorted({m.version for m in MIGRATIONS})


# ==========================================================================
# Baseline Detection
# ==========================================================================

def _exists(connection: Connection, *criteria) -> bool:
    t = stage_templates
    found = connection.execute(select(t.c.id).where(*criteria).limit(1)).first()
    return found is not None


def _count(connection: Connection, *criteria) -> int:
    t = stage_templates
    return connection.execute(select(func.count()).select_from(t).where(*criteria)).scalar() or 0


_t = stage_templates

# Newest marker first. A probe matching means that migration (and so
# every earlier one) already shaped this database.
BASELINE_PROBES: tuple[tuple[int, Callable[[Connection], bool]], ...] = (
    (11, lambda c: _exists(c, _t.c.name == "Documentation")),
    (10, lambda c: _exists(c, _t.c.output_format == "pr_preparation")),
    (9, lambda c: _exists(c, _t.c.name == "Merge")),
    (8, lambda c: _exists(c, _t.c.name == "PR Review")),
    (7, lambda c: _count(
        c,
        _t.c.name == "PR Preparation",
        _t.c.prompt_template.like("%{{stage_summaries}}%"),
    ) > 0),
    (6, lambda c: _count(c, _t.c.name == "Planning", _t.c.output_format == "plan") > 0),
    (5, lambda c: _count(c, _t.c.name == "Refinement", _t.c.output_format == "findings") > 0),
    (1, lambda c: _count(c, or_(_t.c.commits_changes == 1, _t.c.creates_pr == 1)) > 0),
)


def detect_baseline(connection: Connection) -> int:
    """
    Classify an unversioned database by its content markers.

    A probe that fails (missing table or column) counts as no match.

    Returns:
        Highest migration version the data already reflects, 0 if none
    """
    for version, probe in BASELINE_PROBES:
        try:
            if probe(connection):
                return version
        except SQLAlchemyError as e:
            logger.debug("baseline_probe_failed", version=version, error=str(e))
    return 0


# ==========================================================================
# Runner
# ==========================================================================

def applied_versions(connection: Connection) -> set[int]:
    rows = connection.execute(select(migrations_ledger.c.version))
    return {row.version for row in rows}


def _record(connection: Connection, migration: Migration) -> None:
    connection.execute(
        insert(migrations_ledger).values(
            version=migration.version,
            name=migration.name,
            applied_at=timestamp(),
        )
    )


def run_pending_migrations(
    connection: Connection,
    migrations: Optional[tuple[Migration, ...]] = None,
) -> list[int]:
    """
    Apply every migration not yet in the ledger, in ascending order.

    Each migration commits together with its ledger row. A failing body
    rolls back its own transaction and aborts the run with MigrationError;
    later migrations are not attempted, and the next open retries.

    Returns:
        Versions whose bodies ran in this call
    """
    migrations = MIGRATIONS if migrations is None else migrations

    MigrationRecord.__table__.create(connection, checkfirst=True)
    applied = applied_versions(connection)

    if not applied:
        baseline = detect_baseline(connection)
        if baseline:
            logger.info("migration_baseline_detected", baseline=baseline)
            for migration in migrations:
                if migration.version <= baseline:
                    _record(connection, migration)
                    applied.add(migration.version)
        connection.commit()

    ran: list[int] = []
    for migration in migrations:
        if migration.version in applied:
            continue

        logger.info("migration_running", version=migration.version, name=migration.name)
        try:
            migration.upgrade(connection)
            _record(connection, migration)
            connection.commit()
        except Exception as e:
            connection.rollback()
            logger.error(
                "migration_failed",
                version=migration.version,
                name=migration.name,
                error=str(e),
            )
            raise MigrationError(migration.version, migration.name, e) from e

        applied.add(migration.version)
        ran.append(migration.version)
        logger.info("migration_applied", version=migration.version, name=migration.name)

    return ran
