"""
Stageflow - Test Fixtures
=========================

Shared pytest fixtures for all tests.

Every test gets its own data directory, so the app database and the
project databases are real SQLite files that disappear with tmp_path.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.config import Settings
from stageflow.core.database import DatabaseRegistry
from stageflow.core.logging_config import configure_logging
from stageflow.core.models import Project, StageTemplate, Task
from stageflow.core.pipeline.collaborators import (
    AgentRequest,
    AgentResult,
    AgentRunner,
    VersionControl,
)
from stageflow.core.pipeline.events import PipelineEvent, PipelineEvents
from stageflow.core.pipeline.orchestrator import PipelineOrchestrator
from stageflow.core.projects import ProjectService


# ==========================================================================
# Collaborator Fakes
# ==========================================================================

class ScriptedAgentRunner(AgentRunner):
    """
    Returns queued results in order and records every request.

    A queued callable is invoked with the request, which lets a test act
    while the agent is "running".
    """

    def __init__(self):
        self.requests: list[AgentRequest] = []
        self._script: list = []

    def queue(self, *results) -> None:
        self._script.extend(results)

    async def run(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        if not self._script:
            return AgentResult(raw_output="Done.")
        step = self._script.pop(0)
        if callable(step):
            step = await step(request)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, str):
            return AgentResult(raw_output=step)
        return step

    @property
    def last_prompt(self) -> str:
        return self.requests[-1].prompt


class RecordingVersionControl(VersionControl):
    """Records commits and PRs instead of touching a repository."""

    def __init__(self, fail_commit: bool = False):
        self.commits: list[tuple[str, str]] = []
        self.prs: list[tuple[str, str, str, str]] = []
        self.removed: list[str] = []
        self.fail_commit = fail_commit

    async def commit(self, working_dir: str, message: str) -> Optional[str]:
        if self.fail_commit:
            raise RuntimeError("nothing to commit, working tree dirty")
        self.commits.append((working_dir, message))
        return f"abc{len(self.commits):04d}"

    async def create_branch(self, working_dir: str, branch_name: str) -> None:
        pass

    async def branch_exists(self, working_dir: str, branch_name: str) -> bool:
        return True

    async def create_pr(self, working_dir: str, branch_name: str, title: str, body: str) -> str:
        self.prs.append((working_dir, branch_name, title, body))
        return f"https://github.com/acme/repo/pull/{len(self.prs)}"

    async def remove_worktree(self, worktree_path: str) -> None:
        self.removed.append(worktree_path)


# ==========================================================================
# Configuration & Storage
# ==========================================================================

@pytest.fixture(scope="session", autouse=True)
def structured_logging() -> None:
    """JSON logs through stdlib, as an entry point would configure them."""
    configure_logging(Settings(_env_file=None, ENVIRONMENT="test", LOG_LEVEL="DEBUG", LOG_JSON=True))


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing at a per-test data directory with instant retries."""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DATA_DIR=tmp_path / "data",
        DB_LOCK_BASE_DELAY=0.0,
        DB_LOCK_MAX_DELAY=0.0,
        ISSUE_TRACKER_API_KEY="lin_api_test",
        ISSUE_TRACKER_BASE_DELAY=0.0,
        ISSUE_TRACKER_MAX_DELAY=0.0,
    )


@pytest_asyncio.fixture
async def registry(test_settings: Settings) -> AsyncGenerator[DatabaseRegistry, None]:
    """Database registry, disposed after the test."""
    registry = DatabaseRegistry(test_settings)
    yield registry
    await registry.close()


@pytest.fixture
def projects(registry: DatabaseRegistry) -> ProjectService:
    return ProjectService(registry)


@pytest_asyncio.fixture
async def project(projects: ProjectService, tmp_path: Path) -> Project:
    """A project seeded with the default pipeline."""
    return await projects.create_project("Demo", str(tmp_path / "repo"))


@pytest_asyncio.fixture
async def stages(projects: ProjectService, project: Project) -> dict[str, StageTemplate]:
    """The project's stage templates by name."""
    return {t.name: t for t in await projects.stage_templates(project.id)}


# ==========================================================================
# Pipeline Fixtures
# ==========================================================================

@pytest.fixture
def agent() -> ScriptedAgentRunner:
    return ScriptedAgentRunner()


@pytest.fixture
def vcs() -> RecordingVersionControl:
    return RecordingVersionControl()


@pytest.fixture
def events() -> tuple[PipelineEvents, list[PipelineEvent]]:
    """Event bus plus the list of everything it emitted."""
    bus = PipelineEvents()
    received: list[PipelineEvent] = []
    bus.subscribe(received.append)
    return bus, received


@pytest_asyncio.fixture
async def orchestrator(
    projects: ProjectService,
    project: Project,
    agent: ScriptedAgentRunner,
    vcs: RecordingVersionControl,
    events: tuple[PipelineEvents, list[PipelineEvent]],
) -> PipelineOrchestrator:
    return await projects.orchestrator(
        project.id,
        agent_runner=agent,
        version_control=vcs,
        events=events[0],
    )


@pytest.fixture
def names() -> Callable[[list[StageTemplate]], list[str]]:
    """Stage names of a template list, in order."""
    return lambda templates: [t.name for t in templates]


@pytest.fixture
def place_task(projects: ProjectService, project: Project) -> Callable[[str, StageTemplate], Awaitable[None]]:
    """
    Moves a task straight onto one of its stages, standing in for
    approving every stage before it.
    """
    async def _place(task_id: str, template: StageTemplate) -> None:
        db = await projects.database(project.id)

        async def _move(session: AsyncSession) -> None:
            task = await session.get(Task, task_id)
            task.current_stage_id = template.id

        await db.run(_move)

    return _place
