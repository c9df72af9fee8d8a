"""
Migration Tables
================

Lightweight table constructs for migration bodies. Migrations are
written against these rather than the ORM models so that a body keeps
meaning what it meant when it was written, whatever the models become.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import column, table

stage_templates = table(
    "stage_templates",
    column("id"),
    column("project_id"),
    column("name"),
    column("description"),
    column("sort_order"),
    column("prompt_template"),
    column("input_source"),
    column("output_format"),
    column("output_schema"),
    column("gate_rules"),
    column("allowed_tools"),
    column("result_mode"),
    column("commits_changes"),
    column("commit_prefix"),
    column("creates_pr"),
    column("is_terminal"),
    column("triggers_stage_selection"),
    column("requires_user_input"),
    column("created_at"),
    column("updated_at"),
)

migrations_ledger = table(
    "_migrations",
    column("version"),
    column("name"),
    column("applied_at"),
)

project_settings = table(
    "settings",
    column("key"),
    column("value"),
)


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_stage_row(project_id: str, name: str, sort_order: int, **values: Any) -> dict[str, Any]:
    """Column values for a stage inserted by a migration."""
    now = timestamp()
    row = {
        "id": str(uuid4()),
        "project_id": project_id,
        "name": name,
        "description": "",
        "sort_order": sort_order,
        "prompt_template": "",
        "input_source": "previous_stage",
        "output_format": "text",
        "output_schema": None,
        "gate_rules": json.dumps({"type": "require_approval"}),
        "allowed_tools": None,
        "result_mode": "replace",
        "commits_changes": 0,
        "commit_prefix": None,
        "creates_pr": 0,
        "is_terminal": 0,
        "triggers_stage_selection": 0,
        "requires_user_input": 0,
        "created_at": now,
        "updated_at": now,
    }
    row.update(values)
    return row
