"""
Pipeline Collaborators
======================

Contracts for the systems the pipeline drives but does not own: the
agent that executes a stage, version control, and the issue tracker.
Implementations are injected into PipelineOrchestrator / ProjectService.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


# ==========================================================================
# Agent Runner
# ==========================================================================

@dataclass
class AgentTelemetry:
    """Usage reported by the agent for one run."""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    total_cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    num_turns: Optional[int] = None


@dataclass
class AgentRequest:
    """Everything the agent needs to execute one stage attempt."""
    execution_id: str
    prompt: str
    output_format: str
    output_schema: Optional[dict[str, Any]] = None
    allowed_tools: Optional[list[str]] = None
    session_id: Optional[str] = None       # resume a prior conversation
    working_dir: Optional[str] = None
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    agent: Optional[str] = None


@dataclass
class AgentResult:
    """
    Outcome of one agent run.

    A non-zero exit code or `killed` marks the attempt failed even when
    some output was produced.
    """
    raw_output: str = ""
    parsed_output: Optional[str] = None    # JSON text for structured formats
    thinking_output: Optional[str] = None
    session_id: Optional[str] = None
    exit_code: int = 0
    killed: bool = False
    error: Optional[str] = None
    telemetry: AgentTelemetry = field(default_factory=AgentTelemetry)


class AgentRunner(ABC):
    """Executes a rendered stage prompt."""

    @abstractmethod
    async def run(self, request: AgentRequest) -> AgentResult:
        """
        Run the agent to completion.

        Raises:
            AgentExecutionError: the agent could not run at all
        """
        pass


# ==========================================================================
# Version Control
# ==========================================================================

class VersionControl(ABC):
    """Git-style operations on a task's working directory."""

    @abstractmethod
    async def commit(self, working_dir: str, message: str) -> Optional[str]:
        """Commit all changes. Returns the commit hash, None if nothing changed."""
        pass

    @abstractmethod
    async def create_branch(self, working_dir: str, branch_name: str) -> None:
        pass

    @abstractmethod
    async def branch_exists(self, working_dir: str, branch_name: str) -> bool:
        pass

    @abstractmethod
    async def create_pr(self, working_dir: str, branch_name: str, title: str, body: str) -> str:
        """Open a pull request. Returns its URL."""
        pass

    @abstractmethod
    async def remove_worktree(self, worktree_path: str) -> None:
        pass


# ==========================================================================
# Issue Tracker
# ==========================================================================

@dataclass
class TrackerIssue:
    """An issue as imported into a task."""
    id: str
    identifier: str
    title: str
    description: str = ""
    url: Optional[str] = None
    state: Optional[str] = None
    priority: Optional[int] = None
    branch_name: Optional[str] = None
    comments: list[str] = field(default_factory=list)

    def task_title(self) -> str:
        return f"{self.identifier}: {self.title}"

    def task_description(self) -> str:
        parts = [self.description.strip()] if self.description.strip() else []
        if self.comments:
            parts.append("Comments:\n" + "\n\n".join(self.comments))
        return "\n\n".join(parts)


@dataclass
class IssuePage:
    issues: list[TrackerIssue]
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class IssueTracker(ABC):
    """Source of issues to import as tasks."""

    @abstractmethod
    async def fetch_assigned_issues(
        self,
        team_id: Optional[str] = None,
        project_id: Optional[str] = None,
        after: Optional[str] = None,
    ) -> IssuePage:
        pass

    @abstractmethod
    async def fetch_issue_detail(self, issue_id: str) -> TrackerIssue:
        pass
