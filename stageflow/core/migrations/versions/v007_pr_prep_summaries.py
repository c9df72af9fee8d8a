"""PR Preparation reads stage summaries

Revision ID: 007_pr_prep_summaries
Revises: 006_interactive_stages
Create Date: 2025-07-28
"""

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import PR_PREP_PROMPT
from stageflow.core.migrations.tables import stage_templates, timestamp

version = 7
name = "pr_prep_summaries"
revision = "007_pr_prep_summaries"
down_revision = "006_interactive_stages"


def upgrade(connection: Connection) -> None:
    t = stage_templates
    rows = connection.execute(
        select(t.c.id, t.c.prompt_template).where(t.c.name == "PR Preparation", t.c.sort_order == 6)
    ).all()
    for row in rows:
        prompt = row.prompt_template or ""
        if "{{stage_summaries}}" in prompt or "get_stage_output" in prompt:
            continue
        connection.execute(
            update(t).where(t.c.id == row.id).values(prompt_template=PR_PREP_PROMPT, updated_at=timestamp())
        )
