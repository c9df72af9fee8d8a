"""Research, approaches and planning ask clarifying questions

Revision ID: 006_interactive_stages
Revises: 005_research_stage_suggestions
Create Date: 2025-07-14

- research prompt narrowed to investigation only
- approaches schema gains `questions`
- Planning moves from text to the plan format
"""

import json

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import (
    APPROACHES_PROMPT,
    APPROACHES_SCHEMA,
    PLANNING_PROMPT,
    PLANNING_SCHEMA,
    RESEARCH_PROMPT,
)
from stageflow.core.migrations.tables import stage_templates, timestamp

version = 6
name = "interactive_stages"
revision = "006_interactive_stages"
down_revision = "005_research_stage_suggestions"


def _set(connection: Connection, stage_id: str, **values) -> None:
    t = stage_templates
    connection.execute(update(t).where(t.c.id == stage_id).values(updated_at=timestamp(), **values))


def upgrade(connection: Connection) -> None:
    t = stage_templates

    research = connection.execute(
        select(t.c.id, t.c.prompt_template).where(
            t.c.name == "Research", t.c.output_format == "research", t.c.sort_order == 0,
        )
    ).all()
    for row in research:
        if "Your ONLY job is to investigate" not in (row.prompt_template or ""):
            _set(connection, row.id, prompt_template=RESEARCH_PROMPT)

    approaches = connection.execute(
        select(t.c.id, t.c.output_schema).where(
            t.c.name == "High-Level Approaches", t.c.output_format == "options", t.c.sort_order == 1,
        )
    ).all()
    for row in approaches:
        if not row.output_schema or '"questions"' not in row.output_schema:
            _set(
                connection,
                row.id,
                prompt_template=APPROACHES_PROMPT,
                output_schema=json.dumps(APPROACHES_SCHEMA),
            )

    planning_text = connection.execute(
        select(t.c.id).where(t.c.name == "Planning", t.c.output_format == "text", t.c.sort_order == 2)
    ).all()
    for row in planning_text:
        _set(
            connection,
            row.id,
            output_format="plan",
            output_schema=json.dumps(PLANNING_SCHEMA),
            prompt_template=PLANNING_PROMPT,
        )

    planning_plan = connection.execute(
        select(t.c.id, t.c.output_schema).where(
            t.c.name == "Planning", t.c.output_format == "plan", t.c.sort_order == 2,
        )
    ).all()
    for row in planning_plan:
        if not row.output_schema or '"questions"' not in row.output_schema:
            _set(
                connection,
                row.id,
                output_schema=json.dumps(PLANNING_SCHEMA),
                prompt_template=PLANNING_PROMPT,
            )
