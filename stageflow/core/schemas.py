"""
Stageflow - Pydantic Schemas
============================

Gate rules and the payload shape of every structured output format.
Agent output is validated against these instead of being trusted as
stored JSON.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from stageflow.core.errors import MalformedOutputError
from stageflow.core.models import OutputFormat


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        extra="ignore",
    )


# ==========================================================================
# Gate Rules
# ==========================================================================

class RequireApproval(BaseSchema):
    type: Literal["require_approval"] = "require_approval"


class RequireSelection(BaseSchema):
    type: Literal["require_selection"] = "require_selection"
    min: int = 1
    max: int = 1


class RequireAllChecked(BaseSchema):
    type: Literal["require_all_checked"] = "require_all_checked"


class RequireFields(BaseSchema):
    type: Literal["require_fields"] = "require_fields"
    fields: list[str] = Field(default_factory=list)


GateRule = Annotated[
    Union[RequireApproval, RequireSelection, RequireAllChecked, RequireFields],
    Field(discriminator="type"),
]

_gate_rule_adapter = TypeAdapter(GateRule)


def parse_gate_rule(value: Union[dict, str, None]) -> GateRule:
    """Parse a stored gate rule. Missing rules mean plain approval."""
    if value is None or value == "":
        return RequireApproval()
    if isinstance(value, str):
        value = json.loads(value)
    return _gate_rule_adapter.validate_python(value)


# ==========================================================================
# Output Payloads
# ==========================================================================

class Question(BaseSchema):
    """Clarifying question asked by research/plan/options stages."""
    id: str
    question: str
    proposed_answer: str = ""
    options: list[str] = Field(default_factory=list)


class OptionItem(BaseSchema):
    id: str
    title: str
    description: str = ""
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class OptionsOutput(BaseSchema):
    options: list[OptionItem] = Field(default_factory=list)
    questions: list[Question] = Field(default_factory=list)


class ChecklistItem(BaseSchema):
    id: str
    text: str
    severity: str = "info"
    checked: bool = False
    notes: str = ""


class ChecklistOutput(BaseSchema):
    items: list[ChecklistItem]


class StructuredOutput(BaseSchema):
    fields: dict[str, str]


class PrPreparationOutput(StructuredOutput):
    """PR title/description/test plan, consumed by PR creation."""

    @property
    def title(self) -> str:
        return self.fields.get("title", "")

    @property
    def description(self) -> str:
        return self.fields.get("description", "")

    @property
    def test_plan(self) -> str:
        return self.fields.get("test_plan", "")


class StageSuggestion(BaseSchema):
    name: str
    reason: str = ""


class ResearchOutput(BaseSchema):
    research: str
    questions: list[Question] = Field(default_factory=list)
    suggested_stages: list[StageSuggestion] = Field(default_factory=list)


class PlanOutput(BaseSchema):
    plan: str
    questions: list[Question] = Field(default_factory=list)


class FindingItem(BaseSchema):
    id: str
    title: str
    description: str = ""
    severity: str = "info"
    category: Optional[str] = None
    file_path: Optional[str] = None
    selected: bool = True


class FindingsOutput(BaseSchema):
    summary: str = ""
    findings: list[FindingItem]


class ProposedSubtask(BaseSchema):
    id: str
    title: str
    description: str = ""
    selected: bool = True


class TaskSplittingOutput(BaseSchema):
    reasoning: str = ""
    proposed_tasks: list[ProposedSubtask]


OUTPUT_MODELS: dict[OutputFormat, type[BaseSchema]] = {
    OutputFormat.OPTIONS: OptionsOutput,
    OutputFormat.CHECKLIST: ChecklistOutput,
    OutputFormat.STRUCTURED: StructuredOutput,
    OutputFormat.PR_PREPARATION: PrPreparationOutput,
    OutputFormat.RESEARCH: ResearchOutput,
    OutputFormat.PLAN: PlanOutput,
    OutputFormat.FINDINGS: FindingsOutput,
    OutputFormat.TASK_SPLITTING: TaskSplittingOutput,
}

# Formats whose output is free text
TEXT_FORMATS = frozenset({
    OutputFormat.TEXT,
    OutputFormat.PR_REVIEW,
    OutputFormat.MERGE,
    OutputFormat.INTERACTIVE_TERMINAL,
})


def detect_output_format(output: str) -> OutputFormat:
    """Guess the format of `auto` stage output from its shape."""
    try:
        data = json.loads(output)
    except (TypeError, ValueError):
        return OutputFormat.TEXT
    if not isinstance(data, dict):
        return OutputFormat.TEXT

    if isinstance(data.get("findings"), list):
        return OutputFormat.FINDINGS
    if isinstance(data.get("research"), str):
        return OutputFormat.RESEARCH
    if isinstance(data.get("plan"), str):
        return OutputFormat.PLAN
    if isinstance(data.get("options"), list):
        return OutputFormat.OPTIONS
    if isinstance(data.get("questions"), list) and data["questions"]:
        return OutputFormat.RESEARCH
    if isinstance(data.get("fields"), dict):
        return OutputFormat.STRUCTURED
    if isinstance(data.get("items"), list):
        return OutputFormat.CHECKLIST
    return OutputFormat.TEXT


def resolve_format(output_format: OutputFormat, output: Optional[str]) -> OutputFormat:
    if output_format == OutputFormat.AUTO:
        return detect_output_format(output or "")
    return output_format


def parse_stage_output(output_format: OutputFormat, output: Optional[str]) -> Optional[BaseSchema]:
    """
    Validate agent output against the payload model of its format.

    Returns None for text formats and for the second (text) phase of a
    findings stage.

    Raises:
        MalformedOutputError: output does not match the format's model
    """
    fmt = resolve_format(output_format, output)
    if fmt in TEXT_FORMATS or fmt not in OUTPUT_MODELS:
        return None

    try:
        data: Any = json.loads(output or "")
    except ValueError:
        if fmt == OutputFormat.FINDINGS:
            return None
        raise MalformedOutputError(f"Expected JSON output for {fmt.value} stage")

    if fmt == OutputFormat.FINDINGS and not (isinstance(data, dict) and "findings" in data):
        return None

    try:
        return OUTPUT_MODELS[fmt].model_validate(data)
    except PydanticValidationError as e:
        raise MalformedOutputError(f"Output does not match {fmt.value} format: {e}") from e
