"""Documentation stage before PR Preparation

Revision ID: 011_documentation_stage
Revises: 010_pr_preparation_format
Create Date: 2025-09-22

Shifts every stage at sort_order 6 or later up by one and inserts
Documentation at 6 for each project.
"""

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import DOCUMENTATION_PROMPT
from stageflow.core.migrations.tables import new_stage_row, stage_templates, timestamp

version = 11
name = "documentation_stage"
revision = "011_documentation_stage"
down_revision = "010_pr_preparation_format"

DOCUMENTATION_SORT_ORDER = 6


def upgrade(connection: Connection) -> None:
    t = stage_templates
    existing = connection.execute(select(t.c.id).where(t.c.name == "Documentation").limit(1)).first()
    if existing is not None:
        return

    project_ids = connection.execute(select(t.c.project_id).distinct()).scalars().all()
    if not project_ids:
        return

    connection.execute(
        update(t)
        .where(t.c.sort_order >= DOCUMENTATION_SORT_ORDER)
        .values(sort_order=t.c.sort_order + 1, updated_at=timestamp())
    )

    for project_id in project_ids:
        connection.execute(
            insert(t).values(
                new_stage_row(
                    project_id,
                    "Documentation",
                    DOCUMENTATION_SORT_ORDER,
                    description="Write or update documentation based on the changes made in this task.",
                    prompt_template=DOCUMENTATION_PROMPT,
                    input_source="both",
                    output_format="text",
                    commits_changes=1,
                    commit_prefix="docs",
                )
            )
        )
