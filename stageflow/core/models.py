"""
Stageflow - Database Models
===========================

SQLAlchemy models for the app database and the per-project databases.

Column names and stored values match databases written by earlier
releases so that legacy files open unchanged: ids are text, booleans
are integers, enums are stored by value, JSON columns are text.
"""

import enum
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from stageflow.core.database import AppBase, IsoDateTime, ProjectBase, utc_now


def new_id() -> str:
    return str(uuid4())


def value_enum(enum_cls: type[enum.Enum]) -> Enum:
    """Enum column stored by value (legacy rows hold lowercase values)."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ==========================================================================
# Enums
# ==========================================================================

class InputSource(str, enum.Enum):
    """Where a stage takes its input from."""
    USER = "user"
    PREVIOUS_STAGE = "previous_stage"
    BOTH = "both"


class OutputFormat(str, enum.Enum):
    """Closed vocabulary of stage output shapes."""
    TEXT = "text"
    OPTIONS = "options"                  # N choices, exactly one selected
    CHECKLIST = "checklist"              # every item must be checked
    STRUCTURED = "structured"            # named required fields
    PR_PREPARATION = "pr_preparation"    # structured, feeds PR creation
    RESEARCH = "research"                # text + clarifying questions
    PLAN = "plan"                        # text + clarifying questions
    FINDINGS = "findings"                # items partially selected before fixing
    TASK_SPLITTING = "task_splitting"    # proposed subtasks, partially selected
    PR_REVIEW = "pr_review"
    MERGE = "merge"
    INTERACTIVE_TERMINAL = "interactive_terminal"  # live human-agent session
    AUTO = "auto"                        # legacy: detected from output shape


class ResultMode(str, enum.Enum):
    """How a stage's output folds into the accumulated context."""
    REPLACE = "replace"
    APPEND = "append"


class GateRuleType(str, enum.Enum):
    """Gate rule families."""
    REQUIRE_APPROVAL = "require_approval"
    REQUIRE_SELECTION = "require_selection"
    REQUIRE_ALL_CHECKED = "require_all_checked"
    REQUIRE_FIELDS = "require_fields"


class ExecutionStatus(str, enum.Enum):
    """StageExecution lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_USER = "awaiting_user"
    APPROVED = "approved"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.APPROVED, ExecutionStatus.FAILED)


class TaskStatus(str, enum.Enum):
    """Aggregate task status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SPLIT = "split"


class FixStatus(str, enum.Enum):
    """Per-comment fix progress in a PR review stage."""
    PENDING = "pending"
    FIXING = "fixing"
    FIXED = "fixed"
    SKIPPED = "skipped"


class CompletionStrategy(str, enum.Enum):
    """Which terminal stage finishes a task."""
    PR = "pr"
    MERGE = "merge"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        IsoDateTime,
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        IsoDateTime,
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


# ==========================================================================
# App Database
# ==========================================================================

class Project(AppBase, TimestampMixin):
    """A project: one repository, one pipeline, one database file."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    archived: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default="0",
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}{' [archived]' if self.archived else ''}>"


class AppSetting(AppBase):
    """App-wide key/value settings."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


# ==========================================================================
# Project Database
# ==========================================================================

class ProjectSetting(ProjectBase):
    """Per-project key/value settings."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class StageTemplate(ProjectBase, TimestampMixin):
    """
    One configurable step of a project's pipeline.

    sort_order defines the pipeline order. Gaps are legal, duplicates
    are not.
    """

    __tablename__ = "stage_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", server_default="", nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    prompt_template: Mapped[str] = mapped_column(Text, default="", server_default="", nullable=False)

    input_source: Mapped[InputSource] = mapped_column(
        value_enum(InputSource),
        default=InputSource.USER,
        server_default=InputSource.USER.value,
        nullable=False,
    )
    output_format: Mapped[OutputFormat] = mapped_column(
        value_enum(OutputFormat),
        default=OutputFormat.TEXT,
        server_default=OutputFormat.TEXT.value,
        nullable=False,
    )
    output_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    gate_rules: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=lambda: {"type": GateRuleType.REQUIRE_APPROVAL.value},
        server_default='{"type":"require_approval"}',
        nullable=False,
    )

    # Agent configuration
    persona_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    persona_system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    persona_model: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preparation_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    allowed_tools: Mapped[Optional[list[str]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    result_mode: Mapped[ResultMode] = mapped_column(
        value_enum(ResultMode),
        default=ResultMode.REPLACE,
        server_default=ResultMode.REPLACE.value,
        nullable=False,
    )

    # Behavior flags
    commits_changes: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0", nullable=False)
    commit_prefix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creates_pr: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0", nullable=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0", nullable=False)
    triggers_stage_selection: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False,
    )
    requires_user_input: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StageTemplate {self.sort_order}:{self.name} [{self.output_format.value}]>"


class Task(ProjectBase, TimestampMixin):
    """A unit of work moving through the pipeline."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_task_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    current_stage_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        value_enum(TaskStatus),
        default=TaskStatus.PENDING,
        server_default=TaskStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0", nullable=False)

    # Version control
    branch_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    worktree_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pr_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ejected: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0", nullable=False)

    def __repr__(self) -> str:
        return f"<Task {self.title} [{self.status.value}]>"


class TaskStage(ProjectBase):
    """One entry of a task's concrete, ordered stage list."""

    __tablename__ = "task_stages"
    __table_args__ = (
        UniqueConstraint("task_id", "stage_template_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tasks.id"),
        nullable=False,
        index=True,
    )
    stage_template_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("stage_templates.id"),
        nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)


class StageExecution(ProjectBase):
    """
    One attempt of one stage for one task.

    Attempts are 1-indexed per (task, stage). Rows are never deleted.
    """

    __tablename__ = "stage_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tasks.id"),
        nullable=False,
        index=True,
    )
    stage_template_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("stage_templates.id"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        value_enum(ExecutionStatus),
        default=ExecutionStatus.PENDING,
        server_default=ExecutionStatus.PENDING.value,
        nullable=False,
    )

    # Input
    input_prompt: Mapped[str] = mapped_column(Text, default="", server_default="", nullable=False)
    user_input: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Output
    raw_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parsed_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thinking_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_decision: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON text
    stage_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Telemetry
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cache_creation_input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cache_read_input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_cost_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    num_turns: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        IsoDateTime,
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(IsoDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<StageExecution #{self.attempt_number} [{self.status.value}]>"


class PrReviewFix(ProjectBase, TimestampMixin):
    """Fix tracking for one review comment on a PR review stage."""

    __tablename__ = "pr_review_fixes"
    __table_args__ = (
        UniqueConstraint("execution_id", "comment_id", "comment_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    execution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("stage_executions.id"),
        nullable=False,
        index=True,
    )
    comment_id: Mapped[int] = mapped_column(Integer, nullable=False)
    comment_type: Mapped[str] = mapped_column(Text, default="inline", server_default="inline", nullable=False)
    author: Mapped[str] = mapped_column(Text, default="", server_default="", nullable=False)
    author_avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, default="", server_default="", nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    line: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    diff_hunk: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    state: Mapped[str] = mapped_column(Text, default="COMMENTED", server_default="COMMENTED", nullable=False)
    fix_status: Mapped[FixStatus] = mapped_column(
        value_enum(FixStatus),
        default=FixStatus.PENDING,
        server_default=FixStatus.PENDING.value,
        nullable=False,
    )
    fix_commit_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class MigrationRecord(ProjectBase):
    """Ledger row: one per migration applied to this database."""

    __tablename__ = "_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        IsoDateTime,
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
