"""
Stage Template Registry
=======================

The default pipeline of a new project and the rules deciding which of a
project's templates a new task traverses by default.

Existing projects never get re-seeded: their templates only change
through migrations (stageflow.core.migrations).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.models import (
    CompletionStrategy,
    GateRuleType,
    InputSource,
    OutputFormat,
    ResultMode,
    StageTemplate,
)
from stageflow.core.pipeline import prompts

COMPLETION_STRATEGY_KEY = "default_completion_strategy"

# Selection gates without a practical upper bound
UNBOUNDED_SELECTION = 10_000

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]
RESEARCH_TOOLS = [*READ_ONLY_TOOLS, "WebSearch", "WebFetch"]


@dataclass(frozen=True)
class StageDefinition:
    """Blueprint of one default stage; sort_order comes from its position."""

    name: str
    description: str
    prompt_template: str
    output_format: OutputFormat
    input_source: InputSource = InputSource.PREVIOUS_STAGE
    output_schema: Optional[dict[str, Any]] = None
    gate_rules: dict[str, Any] = field(
        default_factory=lambda: {"type": GateRuleType.REQUIRE_APPROVAL.value}
    )
    result_mode: ResultMode = ResultMode.REPLACE
    allowed_tools: Optional[list[str]] = None
    commits_changes: bool = False
    commit_prefix: Optional[str] = None
    creates_pr: bool = False
    is_terminal: bool = False
    triggers_stage_selection: bool = False
    requires_user_input: bool = False

    def to_template(self, project_id: str, sort_order: int) -> StageTemplate:
        return StageTemplate(
            project_id=project_id,
            name=self.name,
            description=self.description,
            sort_order=sort_order,
            prompt_template=self.prompt_template,
            input_source=self.input_source,
            output_format=self.output_format,
            output_schema=self.output_schema,
            gate_rules=dict(self.gate_rules),
            result_mode=self.result_mode,
            allowed_tools=list(self.allowed_tools) if self.allowed_tools is not None else None,
            commits_changes=self.commits_changes,
            commit_prefix=self.commit_prefix,
            creates_pr=self.creates_pr,
            is_terminal=self.is_terminal,
            triggers_stage_selection=self.triggers_stage_selection,
            requires_user_input=self.requires_user_input,
        )


# ==========================================================================
# Default Pipeline
# ==========================================================================

DEFAULT_PIPELINE: tuple[StageDefinition, ...] = (
    StageDefinition(
        name="Research",
        description="Investigate the codebase and clarify requirements before any planning.",
        prompt_template=prompts.RESEARCH_PROMPT,
        input_source=InputSource.USER,
        output_format=OutputFormat.RESEARCH,
        output_schema=prompts.RESEARCH_SCHEMA,
        allowed_tools=RESEARCH_TOOLS,
        triggers_stage_selection=True,
        requires_user_input=True,
    ),
    StageDefinition(
        name="Task Splitting",
        description="Decompose the task into smaller, independent subtasks.",
        prompt_template=prompts.TASK_SPLITTING_PROMPT,
        output_format=OutputFormat.TASK_SPLITTING,
        output_schema=prompts.TASK_SPLITTING_SCHEMA,
        gate_rules={
            "type": GateRuleType.REQUIRE_SELECTION.value,
            "min": 1,
            "max": UNBOUNDED_SELECTION,
        },
        allowed_tools=READ_ONLY_TOOLS,
    ),
    StageDefinition(
        name="High-Level Approaches",
        description="Propose distinct implementation approaches and pick one.",
        prompt_template=prompts.APPROACHES_PROMPT,
        output_format=OutputFormat.OPTIONS,
        output_schema=prompts.APPROACHES_SCHEMA,
        gate_rules={"type": GateRuleType.REQUIRE_SELECTION.value, "min": 1, "max": 1},
        result_mode=ResultMode.APPEND,
        allowed_tools=READ_ONLY_TOOLS,
    ),
    StageDefinition(
        name="Planning",
        description="Turn the selected approach into a step-by-step implementation plan.",
        prompt_template=prompts.PLANNING_PROMPT,
        output_format=OutputFormat.PLAN,
        output_schema=prompts.PLANNING_SCHEMA,
        allowed_tools=READ_ONLY_TOOLS,
    ),
    StageDefinition(
        name="Implementation",
        description="Implement the plan.",
        prompt_template=prompts.IMPLEMENTATION_PROMPT,
        output_format=OutputFormat.TEXT,
        commits_changes=True,
        commit_prefix="feat",
    ),
    StageDefinition(
        name="Refinement",
        description="Self-review the implementation: identify issues for the developer to select, then apply chosen fixes.",
        prompt_template=prompts.REFINEMENT_FINDINGS_PROMPT,
        output_format=OutputFormat.FINDINGS,
        output_schema=prompts.FINDINGS_SCHEMA,
        result_mode=ResultMode.APPEND,
        commits_changes=True,
        commit_prefix="fix",
    ),
    StageDefinition(
        name="Security Review",
        description="Analyze for security vulnerabilities, then apply selected fixes.",
        prompt_template=prompts.SECURITY_FINDINGS_PROMPT,
        output_format=OutputFormat.FINDINGS,
        output_schema=prompts.FINDINGS_SCHEMA,
        result_mode=ResultMode.APPEND,
        commits_changes=True,
        commit_prefix="fix",
    ),
    StageDefinition(
        name="Documentation",
        description="Write or update documentation based on the changes made in this task.",
        prompt_template=prompts.DOCUMENTATION_PROMPT,
        input_source=InputSource.BOTH,
        output_format=OutputFormat.TEXT,
        commits_changes=True,
        commit_prefix="docs",
    ),
    StageDefinition(
        name="PR Preparation",
        description="Prepare the pull request title, description and test plan.",
        prompt_template=prompts.PR_PREPARATION_PROMPT,
        output_format=OutputFormat.PR_PREPARATION,
        output_schema=prompts.PR_PREPARATION_SCHEMA,
        gate_rules={"type": GateRuleType.REQUIRE_FIELDS.value, "fields": ["title", "description"]},
        allowed_tools=READ_ONLY_TOOLS,
        creates_pr=True,
    ),
    StageDefinition(
        name="PR Review",
        description="Fetch PR reviews from GitHub, fix reviewer comments, and complete the task.",
        prompt_template="",
        output_format=OutputFormat.PR_REVIEW,
        is_terminal=True,
    ),
    StageDefinition(
        name="Merge",
        description="Merge the task branch into the target branch and push.",
        prompt_template="",
        output_format=OutputFormat.MERGE,
        is_terminal=True,
    ),
)


def build_default_templates(project_id: str) -> list[StageTemplate]:
    """Fresh template rows for a new project, sort_order 0..N-1."""
    return [
        definition.to_template(project_id, sort_order)
        for sort_order, definition in enumerate(DEFAULT_PIPELINE)
    ]


async def seed_stage_templates(session: AsyncSession, project_id: str) -> list[StageTemplate]:
    """
    Seed the default pipeline for a project that has no templates yet.

    Returns:
        The new templates, or an empty list if the project already has some
    """
    existing = await session.scalar(
        select(func.count()).select_from(StageTemplate).where(StageTemplate.project_id == project_id)
    )
    if existing:
        return []

    templates = build_default_templates(project_id)
    session.add_all(templates)
    await session.flush()
    return templates


async def list_stage_templates(session: AsyncSession, project_id: str) -> list[StageTemplate]:
    result = await session.execute(
        select(StageTemplate)
        .where(StageTemplate.project_id == project_id)
        .order_by(StageTemplate.sort_order)
    )
    return list(result.scalars().all())


# ==========================================================================
# Default Task Stages
# ==========================================================================

def parse_completion_strategy(value: Optional[str], fallback: str = CompletionStrategy.PR.value) -> CompletionStrategy:
    """Read a stored completion strategy, including pre-rename values."""
    legacy = {"direct_merge": CompletionStrategy.MERGE, "none": CompletionStrategy.PR}
    if value in legacy:
        return legacy[value]
    try:
        return CompletionStrategy(value or fallback)
    except ValueError:
        return CompletionStrategy(fallback)


def is_optional_stage(template: StageTemplate, strategy: CompletionStrategy) -> bool:
    """
    Optional stages are left out of a task unless selected explicitly.

    Task splitting is opt-in. Of the two terminal stages, only the one
    matching the completion strategy is mandatory.
    """
    if template.output_format == OutputFormat.TASK_SPLITTING:
        return True
    if template.output_format == OutputFormat.PR_REVIEW:
        return strategy != CompletionStrategy.PR
    if template.output_format == OutputFormat.MERGE:
        return strategy != CompletionStrategy.MERGE
    return False


def default_task_stages(
    templates: list[StageTemplate],
    strategy: CompletionStrategy = CompletionStrategy.PR,
) -> list[StageTemplate]:
    """Every non-optional template, ascending sort_order."""
    ordered = sorted(templates, key=lambda t: t.sort_order)
    return [t for t in ordered if not is_optional_stage(t, strategy)]


def completion_stage(templates: list[StageTemplate], strategy: CompletionStrategy) -> Optional[StageTemplate]:
    """The terminal stage that finishes tasks under `strategy`."""
    wanted = OutputFormat.MERGE if strategy == CompletionStrategy.MERGE else OutputFormat.PR_REVIEW
    for template in sorted(templates, key=lambda t: t.sort_order):
        if template.output_format == wanted:
            return template
    return None


def select_task_stages(
    templates: list[StageTemplate],
    task_stages: list[StageTemplate],
    current: StageTemplate,
    selected_names: list[str],
    strategy: CompletionStrategy,
) -> list[StageTemplate]:
    """
    Concrete stage list after a stage-selection decision.

    Keeps the task's stages up to and including `current`, then the
    selected later stages by name plus the completion stage. Unknown
    names are ignored.
    """
    wanted = set(selected_names)
    terminal = completion_stage(templates, strategy)
    chosen = [t for t in task_stages if t.sort_order <= current.sort_order]
    if all(t.id != current.id for t in chosen):
        chosen.append(current)
    for template in templates:
        if template.sort_order <= current.sort_order:
            continue
        if template.name in wanted or (terminal is not None and template.id == terminal.id):
            chosen.append(template)
    return sorted(chosen, key=lambda t: t.sort_order)


def available_stages_listing(templates: list[StageTemplate], current: StageTemplate) -> str:
    """Lines of `- "Name": description` for stages after `current`."""
    return "\n".join(
        f'- "{t.name}": {t.description}'
        for t in sorted(templates, key=lambda t: t.sort_order)
        if t.sort_order > current.sort_order
    )
