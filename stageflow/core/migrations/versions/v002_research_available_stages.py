"""Research prompt lists stages through {{available_stages}}

Revision ID: 002_research_available_stages
Revises: 001_behavior_flags
Create Date: 2025-06-09

The approaches-era research prompt hard-coded the stage list. Replace
that list with the placeholder so it tracks the project's templates.
"""

import re

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import stage_templates, timestamp

version = 2
name = "research_available_stages"
revision = "002_research_available_stages"
down_revision = "001_behavior_flags"

HARD_CODED_STAGE_LIST = re.compile(r'The available stages are:\n(?:- "[^"]+":? [^\n]*\n)+')
REPLACEMENT = "The available stages are:\n{{available_stages}}\n"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    rows = connection.execute(
        select(t.c.id, t.c.prompt_template).where(
            t.c.name == "Research",
            t.c.output_format == "research",
            t.c.sort_order == 0,
        )
    ).all()

    for row in rows:
        prompt = row.prompt_template or ""
        if '"High-Level Approaches"' not in prompt or "{{available_stages}}" in prompt:
            continue
        updated = HARD_CODED_STAGE_LIST.sub(lambda _: REPLACEMENT, prompt)
        if updated != prompt:
            connection.execute(
                update(t).where(t.c.id == row.id).values(prompt_template=updated, updated_at=timestamp())
            )
