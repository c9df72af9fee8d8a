"""
Gate Rules
==========

Decides whether a user decision lets a stage move from awaiting_user
to approved. Violations are validation errors: raised synchronously,
never retried.
"""

from typing import Any, Optional

from stageflow.core.errors import GateViolationError
from stageflow.core.models import OutputFormat, StageTemplate
from stageflow.core.pipeline.output_parser import decode_decision
from stageflow.core.schemas import (
    BaseSchema,
    ChecklistOutput,
    GateRule,
    RequireAllChecked,
    RequireApproval,
    RequireFields,
    RequireSelection,
    StructuredOutput,
)


def validate_gate(
    rule: GateRule,
    decision: Any = None,
    parsed: Optional[BaseSchema] = None,
) -> None:
    """
    Check a decision against a gate rule.

    Checklist and field gates fall back to the agent's own output when
    the user approves it unchanged (no decision).

    Args:
        rule: Parsed gate rule of the stage template
        decision: User decision (JSON text or decoded value)
        parsed: Validated agent output, if the format has a payload

    Raises:
        GateViolationError: the decision does not satisfy the rule
    """
    decision = decode_decision(decision)

    if isinstance(rule, RequireApproval):
        return

    if isinstance(rule, RequireSelection):
        if decision is None:
            raise GateViolationError("A selection is required")
        selected = decision if isinstance(decision, list) else [decision]
        if not rule.min <= len(selected) <= rule.max:
            if rule.min == rule.max:
                expected = f"exactly {rule.min}"
            else:
                expected = f"between {rule.min} and {rule.max}"
            raise GateViolationError(f"Select {expected} item(s), got {len(selected)}")
        return

    if isinstance(rule, RequireAllChecked):
        if decision is None and isinstance(parsed, ChecklistOutput):
            items = [item.model_dump() for item in parsed.items]
        else:
            items = decision
        if not isinstance(items, list):
            raise GateViolationError("A checklist is required")
        unchecked = [
            item.get("id", "?") for item in items
            if not (isinstance(item, dict) and item.get("checked"))
        ]
        if unchecked:
            raise GateViolationError(f"Unchecked items: {', '.join(map(str, unchecked))}")
        return

    if isinstance(rule, RequireFields):
        if decision is None and isinstance(parsed, StructuredOutput):
            values = parsed.fields
        else:
            values = decision
        if isinstance(values, dict) and isinstance(values.get("fields"), dict):
            values = values["fields"]
        if not isinstance(values, dict):
            raise GateViolationError("Field values are required")
        missing = [
            name for name in rule.fields
            if not str(values.get(name) or "").strip()
        ]
        if missing:
            raise GateViolationError(f"Required fields missing: {', '.join(missing)}")
        return

    raise GateViolationError(f"Unknown gate rule: {rule!r}")


def is_gate_satisfied(rule: GateRule, decision: Any = None, parsed: Optional[BaseSchema] = None) -> bool:
    try:
        validate_gate(rule, decision, parsed)
    except GateViolationError:
        return False
    return True


def should_auto_start_stage(template: StageTemplate) -> bool:
    """Whether a stage may start as soon as the previous one is approved."""
    if template.output_format in (OutputFormat.MERGE, OutputFormat.INTERACTIVE_TERMINAL):
        return False
    return not template.requires_user_input
