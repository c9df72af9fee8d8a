"""Merge stage at the end of every pipeline

Revision ID: 009_merge_stage
Revises: 008_pr_review_stage
Create Date: 2025-08-25
"""

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import new_stage_row, stage_templates

version = 9
name = "merge_stage"
revision = "009_merge_stage"
down_revision = "008_pr_review_stage"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    existing = connection.execute(select(t.c.id).where(t.c.name == "Merge").limit(1)).first()
    if existing is not None:
        return

    projects = connection.execute(
        select(t.c.project_id, func.max(t.c.sort_order).label("last")).group_by(t.c.project_id)
    ).all()
    for row in projects:
        connection.execute(
            insert(t).values(
                new_stage_row(
                    row.project_id,
                    "Merge",
                    (row.last or 0) + 1,
                    description="Merge the task branch into the target branch and push.",
                    output_format="merge",
                    is_terminal=1,
                )
            )
        )
