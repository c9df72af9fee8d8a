"""
Schema Reconcile
================

Unversioned, additive schema step run before the ledger on every open:
create missing tables, add model columns missing from legacy tables,
and normalize renamed setting values. Every statement is guarded, so a
run interrupted halfway is finished by the next one.
"""

from typing import Optional

import structlog
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, MetaData, inspect, update
from sqlalchemy.engine import Connection

from stageflow.core.migrations.tables import project_settings, stage_templates

logger = structlog.get_logger()

# Stored values renamed when completion strategies were reduced to pr/merge
COMPLETION_STRATEGY_RENAMES = {
    "direct_merge": "merge",
    "none": "pr",
}


def _addable_column(column: Column) -> Column:
    """
    Copy of a model column that SQLite can ADD to a populated table.

    Only literal text defaults survive. Columns without one are added as
    nullable since existing rows have no value for them.
    """
    default = column.server_default
    literal: Optional[str] = None
    if default is not None and isinstance(getattr(default, "arg", None), str):
        literal = default.arg

    return Column(
        column.name,
        column.type,
        nullable=column.nullable if literal is not None else True,
        server_default=literal,
    )


def add_missing_columns(connection: Connection, metadata: MetaData) -> list[tuple[str, str]]:
    """
    Add every model column absent from its existing table.

    Returns:
        (table, column) pairs that were added
    """
    inspector = inspect(connection)
    existing_tables = set(inspector.get_table_names())
    operations = Operations(MigrationContext.configure(connection))

    added: list[tuple[str, str]] = []
    for table in metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        present = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in present or column.primary_key:
                continue
            operations.add_column(table.name, _addable_column(column))
            added.append((table.name, column.name))
            logger.info("schema_column_added", table=table.name, column=column.name)
    return added


def rename_completion_strategies(connection: Connection) -> None:
    for old, new in COMPLETION_STRATEGY_RENAMES.items():
        connection.execute(
            update(project_settings)
            .where(project_settings.c.key == "default_completion_strategy")
            .where(project_settings.c.value == old)
            .values(value=new)
        )


def backfill_requires_user_input(connection: Connection) -> None:
    """Stages reading user input waited for it before the flag existed."""
    connection.execute(
        update(stage_templates)
        .where(stage_templates.c.input_source.in_(["user", "both"]))
        .values(requires_user_input=1)
    )


def reconcile_schema(connection: Connection, metadata: MetaData) -> list[tuple[str, str]]:
    """
    Bring tables and columns up to the models, then fix legacy values.

    Does not commit; the caller owns the transaction.
    """
    metadata.create_all(connection)
    added = add_missing_columns(connection, metadata)

    if ("stage_templates", "requires_user_input") in added:
        backfill_requires_user_input(connection)
    if "settings" in metadata.tables:
        rename_completion_strategies(connection)
    return added
