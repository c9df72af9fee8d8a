"""PR Review stage after PR Preparation

Revision ID: 008_pr_review_stage
Revises: 007_pr_prep_summaries
Create Date: 2025-08-11

Stages a project already keeps at sort_order 7 or later move up by one
before PR Review takes slot 7.
"""

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import new_stage_row, stage_templates, timestamp

version = 8
name = "pr_review_stage"
revision = "008_pr_review_stage"
down_revision = "007_pr_prep_summaries"

PR_REVIEW_SORT_ORDER = 7


def upgrade(connection: Connection) -> None:
    t = stage_templates
    existing = connection.execute(
        select(t.c.id).where(t.c.name == "PR Review", t.c.sort_order == PR_REVIEW_SORT_ORDER).limit(1)
    ).first()
    if existing is not None:
        return

    pr_prep = connection.execute(
        select(t.c.project_id).where(t.c.name == "PR Preparation", t.c.sort_order == PR_REVIEW_SORT_ORDER - 1)
    ).all()
    for row in pr_prep:
        connection.execute(
            update(t)
            .where(t.c.project_id == row.project_id, t.c.sort_order >= PR_REVIEW_SORT_ORDER)
            .values(sort_order=t.c.sort_order + 1, updated_at=timestamp())
        )
        connection.execute(
            insert(t).values(
                new_stage_row(
                    row.project_id,
                    "PR Review",
                    PR_REVIEW_SORT_ORDER,
                    description="Fetch PR reviews from GitHub, fix reviewer comments, and complete the task.",
                    output_format="pr_review",
                    is_terminal=1,
                )
            )
        )
