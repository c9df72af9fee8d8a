"""Research stage becomes the research format

Revision ID: 003_research_stage
Revises: 002_research_available_stages
Create Date: 2025-06-16
"""

import json

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import RESEARCH_PROMPT, RESEARCH_SCHEMA
from stageflow.core.migrations.tables import stage_templates, timestamp

version = 3
name = "research_stage"
revision = "003_research_stage"
down_revision = "002_research_available_stages"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    schema = json.dumps(RESEARCH_SCHEMA)

    connection.execute(
        update(t)
        .where(t.c.name == "Research", t.c.output_format == "text", t.c.sort_order == 0)
        .values(
            output_format="research",
            output_schema=schema,
            prompt_template=RESEARCH_PROMPT,
            updated_at=timestamp(),
        )
    )

    # Early research schemas predate the options-era layout
    rows = connection.execute(
        select(t.c.id, t.c.output_schema).where(
            t.c.name == "Research",
            t.c.output_format == "research",
            t.c.sort_order == 0,
        )
    ).all()
    for row in rows:
        if row.output_schema and '"options"' not in row.output_schema:
            connection.execute(
                update(t)
                .where(t.c.id == row.id)
                .values(output_schema=schema, prompt_template=RESEARCH_PROMPT, updated_at=timestamp())
            )
