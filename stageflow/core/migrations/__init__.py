"""
Stageflow - Schema Migrations
=============================

Opening a database runs, under that database's queue:

1. reconcile: create missing tables and columns (unversioned, additive)
2. the migration ledger: versioned data migrations, each applied once

Both run synchronously on the connection via `AsyncConnection.run_sync`.
"""

from sqlalchemy.engine import Connection

from stageflow.core.database import AppBase, ProjectBase
from stageflow.core.migrations.ledger import (
    MIGRATIONS,
    Migration,
    detect_baseline,
    run_pending_migrations,
)
from stageflow.core.migrations.reconcile import reconcile_schema


def prepare_project_schema(connection: Connection) -> list[int]:
    """Reconcile a project database and apply pending migrations."""
    reconcile_schema(connection, ProjectBase.metadata)
    connection.commit()
    return run_pending_migrations(connection)


def prepare_app_schema(connection: Connection) -> None:
    """Reconcile the app database. It has no versioned migrations."""
    reconcile_schema(connection, AppBase.metadata)
    connection.commit()


__all__ = [
    "MIGRATIONS",
    "Migration",
    "detect_baseline",
    "prepare_app_schema",
    "prepare_project_schema",
    "reconcile_schema",
    "run_pending_migrations",
]
