"""Structured PR stages become the pr_preparation format

Revision ID: 010_pr_preparation_format
Revises: 009_merge_stage
Create Date: 2025-09-08
"""

from sqlalchemy import update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import stage_templates, timestamp

version = 10
name = "pr_preparation_format"
revision = "010_pr_preparation_format"
down_revision = "009_merge_stage"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    connection.execute(
        update(t)
        .where(t.c.output_format == "structured", t.c.creates_pr == 1)
        .values(output_format="pr_preparation", updated_at=timestamp())
    )
