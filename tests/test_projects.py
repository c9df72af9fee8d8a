"""
Project Service Tests
=====================
"""

import pytest

from stageflow.core.errors import NotFoundError
from stageflow.core.models import CompletionStrategy, TaskStatus
from stageflow.core.pipeline.collaborators import TrackerIssue
from stageflow.core.pipeline.templates import COMPLETION_STRATEGY_KEY, DEFAULT_PIPELINE


class TestProjectLifecycle:
    async def test_create_seeds_default_pipeline(self, projects, project):
        assert project.name == "Demo"
        assert not project.archived

        templates = await projects.stage_templates(project.id)
        assert [t.name for t in templates] == [d.name for d in DEFAULT_PIPELINE]
        assert all(t.project_id == project.id for t in templates)

    async def test_get_project(self, projects, project):
        fetched = await projects.get_project(project.id)
        assert fetched.id == project.id
        assert fetched.path == project.path

    async def test_get_missing_project(self, projects):
        with pytest.raises(NotFoundError):
            await projects.get_project("missing")

    async def test_list_and_archive(self, projects, project, tmp_path):
        other = await projects.create_project("Other", str(tmp_path / "other"))

        await projects.archive_project(project.id)

        assert [p.id for p in await projects.list_projects()] == [other.id]
        archived = await projects.list_projects(include_archived=True)
        assert {p.id for p in archived} == {project.id, other.id}

    async def test_archive_missing_project(self, projects):
        with pytest.raises(NotFoundError):
            await projects.archive_project("missing")

    async def test_projects_do_not_share_databases(self, projects, project, tmp_path):
        other = await projects.create_project("Other", str(tmp_path / "other"))
        assert (await projects.database(project.id)) is not (await projects.database(other.id))
        assert len(await projects.stage_templates(other.id)) == len(DEFAULT_PIPELINE)


class TestSettings:
    async def test_app_and_project_settings_are_separate(self, projects, project):
        await projects.set_setting("theme", "dark")
        await projects.set_setting("theme", "light", project.id)

        assert await projects.get_setting("theme") == "dark"
        assert await projects.get_setting("theme", project.id) == "light"
        assert await projects.get_setting("missing") is None

    async def test_set_overwrites(self, projects, project):
        await projects.set_setting("model", "a", project.id)
        await projects.set_setting("model", "b", project.id)
        assert await projects.get_setting("model", project.id) == "b"

    async def test_completion_strategy_defaults_to_pr(self, projects, project):
        assert await projects.completion_strategy(project.id) == CompletionStrategy.PR

    async def test_completion_strategy_falls_back_to_app_setting(self, projects, project):
        await projects.set_setting(COMPLETION_STRATEGY_KEY, "direct_merge")
        assert await projects.completion_strategy(project.id) == CompletionStrategy.MERGE

    async def test_project_setting_wins(self, projects, project):
        await projects.set_setting(COMPLETION_STRATEGY_KEY, "merge")
        await projects.set_setting(COMPLETION_STRATEGY_KEY, "pr", project.id)
        assert await projects.completion_strategy(project.id) == CompletionStrategy.PR


class TestImportIssue:
    async def test_issue_becomes_task(self, projects, project, orchestrator):
        issue = TrackerIssue(
            id="issue-1",
            identifier="ENG-42",
            title="Login is slow",
            description="Takes 5 seconds.",
            branch_name="eng-42-login-is-slow",
            comments=["Ana: Happens on mobile too"],
        )

        task = await projects.import_issue(project.id, issue, orchestrator)

        assert task.title == "ENG-42: Login is slow"
        assert task.description == "Takes 5 seconds.\n\nComments:\nAna: Happens on mobile too"
        assert task.branch_name == "eng-42-login-is-slow"
        assert task.status == TaskStatus.PENDING

    async def test_issue_without_description(self, projects, project):
        issue = TrackerIssue(id="issue-2", identifier="ENG-7", title="Typo")

        task = await projects.import_issue(project.id, issue)

        assert task.title == "ENG-7: Typo"
        assert task.description is None
