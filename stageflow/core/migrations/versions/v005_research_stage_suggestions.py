"""Research schema gains suggested_stages

Revision ID: 005_research_stage_suggestions
Revises: 004_findings_stages
Create Date: 2025-07-01
"""

import json

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import RESEARCH_PROMPT, RESEARCH_SCHEMA
from stageflow.core.migrations.tables import stage_templates, timestamp

version = 5
name = "research_stage_suggestions"
revision = "005_research_stage_suggestions"
down_revision = "004_findings_stages"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    rows = connection.execute(
        select(t.c.id, t.c.output_schema).where(
            t.c.name == "Research",
            t.c.output_format == "research",
            t.c.sort_order == 0,
        )
    ).all()
    for row in rows:
        if row.output_schema and '"suggested_stages"' not in row.output_schema:
            connection.execute(
                update(t)
                .where(t.c.id == row.id)
                .values(
                    output_schema=json.dumps(RESEARCH_SCHEMA),
                    prompt_template=RESEARCH_PROMPT,
                    updated_at=timestamp(),
                )
            )
