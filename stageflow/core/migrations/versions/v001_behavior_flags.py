"""Behavior flags on the legacy default stages

Revision ID: 001_behavior_flags
Revises:
Create Date: 2025-06-02

Sets commit/PR/terminal/selection flags on the stages of the original
seven-stage pipeline. Skipped entirely once any stage carries a flag,
so user choices made after the flags existed are left alone.
"""

from sqlalchemy import func, or_, select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import stage_templates, timestamp

version = 1
name = "behavior_flags"
revision = "001_behavior_flags"
down_revision = None


def _flag(connection: Connection, stage: str, sort_order, **values) -> None:
    t = stage_templates
    stmt = update(t).where(t.c.name == stage)
    if sort_order is not None:
        stmt = stmt.where(t.c.sort_order == sort_order)
    connection.execute(stmt.values(updated_at=timestamp(), **values))


def upgrade(connection: Connection) -> None:
    t = stage_templates
    flagged = connection.execute(
        select(func.count()).select_from(t).where(
            or_(
                t.c.commits_changes == 1,
                t.c.creates_pr == 1,
                t.c.is_terminal == 1,
                t.c.triggers_stage_selection == 1,
            )
        )
    ).scalar()
    if flagged:
        return

    _flag(connection, "Implementation", 3, commits_changes=1, commit_prefix="feat")
    _flag(connection, "Refinement", 4, commits_changes=1, commit_prefix="fix")
    _flag(connection, "Security Review", 5, commits_changes=1, commit_prefix="fix")
    _flag(connection, "PR Preparation", 6, creates_pr=1)
    _flag(connection, "Research", 0, triggers_stage_selection=1)
    _flag(connection, "PR Review", 7, is_terminal=1)
    _flag(connection, "Merge", None, is_terminal=1)
