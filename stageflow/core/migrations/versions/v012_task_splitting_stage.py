"""Task Splitting stage after the stage-selection stage

Revision ID: 012_task_splitting_stage
Revises: 011_documentation_stage
Create Date: 2025-10-06

Post-ledger migration: relies on the ledger only, no baseline probe.
Projects that already have a task_splitting stage are left alone.
"""

import json

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.prompts import TASK_SPLITTING_PROMPT, TASK_SPLITTING_SCHEMA
from stageflow.core.migrations.tables import new_stage_row, stage_templates, timestamp

version = 12
name = "task_splitting_stage"
revision = "012_task_splitting_stage"
down_revision = "011_documentation_stage"

UNBOUNDED_SELECTION = 10_000


def upgrade(connection: Connection) -> None:
    t = stage_templates
    project_ids = connection.execute(select(t.c.project_id).distinct()).scalars().all()

    for project_id in project_ids:
        has_splitting = connection.execute(
            select(t.c.id)
            .where(t.c.project_id == project_id, t.c.output_format == "task_splitting")
            .limit(1)
        ).first()
        if has_splitting is not None:
            continue

        anchor = connection.execute(
            select(t.c.sort_order)
            .where(t.c.project_id == project_id, t.c.triggers_stage_selection == 1)
            .order_by(t.c.sort_order)
            .limit(1)
        ).first()
        if anchor is None:
            continue

        position = anchor.sort_order + 1
        connection.execute(
            update(t)
            .where(t.c.project_id == project_id, t.c.sort_order >= position)
            .values(sort_order=t.c.sort_order + 1, updated_at=timestamp())
        )
        connection.execute(
            insert(t).values(
                new_stage_row(
                    project_id,
                    "Task Splitting",
                    position,
                    description="Decompose the task into smaller, independent subtasks.",
                    prompt_template=TASK_SPLITTING_PROMPT,
                    output_format="task_splitting",
                    output_schema=json.dumps(TASK_SPLITTING_SCHEMA),
                    gate_rules=json.dumps({"type": "require_selection", "min": 1, "max": UNBOUNDED_SELECTION}),
                    allowed_tools=json.dumps(["Read", "Glob", "Grep"]),
                )
            )
        )
