"""Refinement and Security Review become findings stages

Revision ID: 004_findings_stages
Revises: 003_research_stage
Create Date: 2025-06-23

Review stages now report findings for the developer to select, then
apply only the selected fixes. Their output is appended to the
accumulated context instead of replacing it.
"""

import json

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import (
    FINDINGS_SCHEMA,
    REFINEMENT_FINDINGS_PROMPT,
    SECURITY_FINDINGS_PROMPT,
)
from stageflow.core.migrations.tables import stage_templates, timestamp

version = 4
name = "findings_stages"
revision = "004_findings_stages"
down_revision = "003_research_stage"

FINDINGS_STAGES = (
    (
        "Refinement",
        4,
        REFINEMENT_FINDINGS_PROMPT,
        "Self-review the implementation: identify issues for the developer to select, then apply chosen fixes.",
    ),
    (
        "Security Review",
        5,
        SECURITY_FINDINGS_PROMPT,
        "Analyze for security vulnerabilities, then apply selected fixes.",
    ),
)


def upgrade(connection: Connection) -> None:
    t = stage_templates
    for stage, sort_order, prompt, description in FINDINGS_STAGES:
        rows = connection.execute(
            select(t.c.id, t.c.output_format).where(t.c.name == stage, t.c.sort_order == sort_order)
        ).all()
        for row in rows:
            if row.output_format == "findings":
                continue
            connection.execute(
                update(t)
                .where(t.c.id == row.id)
                .values(
                    output_format="findings",
                    output_schema=json.dumps(FINDINGS_SCHEMA),
                    prompt_template=prompt,
                    gate_rules=json.dumps({"type": "require_approval"}),
                    allowed_tools=None,
                    result_mode="append",
                    description=description,
                    input_source="previous_stage",
                    updated_at=timestamp(),
                )
            )
