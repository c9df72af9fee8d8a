"""
Stageflow - Projects
====================

Project lifecycle and settings on top of the DatabaseRegistry:
creating a project opens (and migrates) its database and seeds the
default pipeline; archiving is a soft delete.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.database import DatabaseRegistry, ProjectDatabase
from stageflow.core.errors import NotFoundError
from stageflow.core.models import (
    AppSetting,
    CompletionStrategy,
    Project,
    ProjectSetting,
    StageTemplate,
    Task,
)
from stageflow.core.pipeline.collaborators import AgentRunner, TrackerIssue, VersionControl
from stageflow.core.pipeline.events import PipelineEvents
from stageflow.core.pipeline.orchestrator import PipelineOrchestrator
from stageflow.core.pipeline.templates import (
    COMPLETION_STRATEGY_KEY,
    list_stage_templates,
    parse_completion_strategy,
    seed_stage_templates,
)

logger = structlog.get_logger()


class ProjectService:
    """
    Projects, their settings and their pipelines.

    Settings live in the app database (project_id=None) or in the
    project's own database.
    """

    def __init__(self, registry: DatabaseRegistry):
        self.registry = registry
        self.config = registry.config

    # ======================================================================
    # Projects
    # ======================================================================

    async def create_project(self, name: str, path: str) -> Project:
        """
        Register a project, open its database and seed the default pipeline.

        Returns:
            Created Project
        """
        app_db = await self.registry.app()

        async def _insert(session: AsyncSession) -> Project:
            project = Project(name=name, path=path)
            session.add(project)
            await session.flush()
            return project

        project = await app_db.run(_insert)
        project_db = await self.registry.project(project.id)

        async def _seed(session: AsyncSession) -> list[StageTemplate]:
            return await seed_stage_templates(session, project.id)

        seeded = await project_db.run(_seed)
        logger.info("project_created", project_id=project.id, name=name, stages=len(seeded))
        return project

    async def get_project(self, project_id: str) -> Project:
        app_db = await self.registry.app()

        async def _get(session: AsyncSession) -> Project:
            project = await session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            return project

        return await app_db.run(_get)

    async def list_projects(self, include_archived: bool = False) -> list[Project]:
        app_db = await self.registry.app()

        async def _list(session: AsyncSession) -> list[Project]:
            query = select(Project).order_by(Project.created_at)
            if not include_archived:
                query = query.where(Project.archived.is_(False))
            result = await session.execute(query)
            return list(result.scalars().all())

        return await app_db.run(_list)

    async def archive_project(self, project_id: str) -> Project:
        """Soft-delete a project and release its database handle."""
        app_db = await self.registry.app()

        async def _archive(session: AsyncSession) -> Project:
            project = await session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            project.archived = True
            return project

        project = await app_db.run(_archive)
        await self.registry.close_project(project_id)
        logger.info("project_archived", project_id=project_id)
        return project

    async def database(self, project_id: str) -> ProjectDatabase:
        return await self.registry.project(project_id)

    async def stage_templates(self, project_id: str) -> list[StageTemplate]:
        project_db = await self.registry.project(project_id)

        async def _list(session: AsyncSession) -> list[StageTemplate]:
            return await list_stage_templates(session, project_id)

        return await project_db.run(_list)

    async def orchestrator(
        self,
        project_id: str,
        agent_runner: Optional[AgentRunner] = None,
        version_control: Optional[VersionControl] = None,
        events: Optional[PipelineEvents] = None,
    ) -> PipelineOrchestrator:
        """State machine bound to the project's database."""
        return PipelineOrchestrator(
            await self.registry.project(project_id),
            agent_runner=agent_runner,
            version_control=version_control,
            events=events,
            config=self.config,
        )

    # ======================================================================
    # Settings
    # ======================================================================

    async def get_setting(self, key: str, project_id: Optional[str] = None) -> Optional[str]:
        db = await self.registry.project(project_id) if project_id else await self.registry.app()
        model = ProjectSetting if project_id else AppSetting

        async def _get(session: AsyncSession) -> Optional[str]:
            return await session.scalar(select(model.value).where(model.key == key))

        return await db.run(_get)

    async def set_setting(self, key: str, value: str, project_id: Optional[str] = None) -> None:
        db = await self.registry.project(project_id) if project_id else await self.registry.app()
        model = ProjectSetting if project_id else AppSetting

        async def _set(session: AsyncSession) -> None:
            setting = await session.get(model, key)
            if setting is None:
                session.add(model(key=key, value=value))
            else:
                setting.value = value

        await db.run(_set)
        logger.info("setting_updated", key=key, project_id=project_id)

    async def completion_strategy(self, project_id: str) -> CompletionStrategy:
        """Project setting, else app setting, else configured default."""
        value = await self.get_setting(COMPLETION_STRATEGY_KEY, project_id)
        if value is None:
            value = await self.get_setting(COMPLETION_STRATEGY_KEY)
        return parse_completion_strategy(value, self.config.DEFAULT_COMPLETION_STRATEGY)

    # ======================================================================
    # Import
    # ======================================================================

    async def import_issue(
        self,
        project_id: str,
        issue: TrackerIssue,
        orchestrator: Optional[PipelineOrchestrator] = None,
    ) -> Task:
        """Create a task from an issue-tracker issue."""
        orchestrator = orchestrator or await self.orchestrator(project_id)
        task = await orchestrator.create_task(
            project_id,
            issue.task_title(),
            issue.task_description() or None,
            branch_name=issue.branch_name,
        )
        logger.info("issue_imported", project_id=project_id, issue=issue.identifier, task_id=task.id)
        return task
