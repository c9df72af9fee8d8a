"""
Database Handle Tests
=====================
"""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from stageflow.core.config import Settings
from stageflow.core.database import (
    DatabaseRegistry,
    IsoDateTime,
    ProjectDatabase,
    is_lock_error,
)
from stageflow.core.errors import DatabaseNotReadyError, TransientStoreError
from stageflow.core.models import MigrationRecord, ProjectSetting


class TestProjectDatabase:
    async def test_refuses_work_before_initialize(self, test_settings: Settings):
        db = ProjectDatabase(test_settings.project_database_url("p1"), config=test_settings)
        try:
            with pytest.raises(DatabaseNotReadyError):
                await db.run(lambda session: session.scalar(select(1)))
        finally:
            await db.dispose()

    async def test_initialize_runs_migrations(self, registry: DatabaseRegistry):
        db = await registry.project("p1")
        assert db.ready

        async def _versions(session):
            return (await session.execute(select(MigrationRecord.version))).scalars().all()

        assert len(await db.run(_versions)) > 0

    async def test_unit_rolls_back_on_error(self, registry: DatabaseRegistry):
        db = await registry.project("p1")

        async def _broken(session):
            session.add(ProjectSetting(key="k", value="v"))
            await session.flush()
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await db.run(_broken)
        assert await db.run(lambda s: s.get(ProjectSetting, "k")) is None

    async def test_units_run_one_at_a_time(self, registry: DatabaseRegistry):
        db = await registry.project("p1")
        active = 0
        peak = 0

        async def _unit(session):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await asyncio.gather(*(db.run(_unit) for _ in range(5)))
        assert peak == 1

    async def test_lock_contention_is_retried(self, registry: DatabaseRegistry):
        db = await registry.project("p1")
        attempts = 0

        async def _contended(session):
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return "done"

        assert await db.run(_contended) == "done"
        assert attempts == 3

    async def test_lock_contention_outlasting_retries(self, registry: DatabaseRegistry):
        db = await registry.project("p1")

        async def _locked(session):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        with pytest.raises(TransientStoreError):
            await db.run(_locked)


class TestDatabaseRegistry:
    async def test_concurrent_opens_share_one_handle(self, registry: DatabaseRegistry):
        first, second = await asyncio.gather(registry.project("p1"), registry.project("p1"))
        assert first is second

    async def test_projects_get_separate_files(self, registry: DatabaseRegistry):
        a = await registry.project("a")
        b = await registry.project("b")
        assert a is not b
        assert a.url != b.url

    async def test_app_database_is_not_a_project(self, registry: DatabaseRegistry):
        app = await registry.app()
        assert app.ready
        assert not app.is_project
        assert await registry.app() is app

    async def test_closed_project_reopens(self, registry: DatabaseRegistry):
        first = await registry.project("p1")
        await registry.close_project("p1")
        second = await registry.project("p1")
        assert first is not second
        assert second.ready


class TestHelpers:
    def test_is_lock_error(self):
        assert is_lock_error(OperationalError("x", {}, Exception("database is locked")))
        assert not is_lock_error(OperationalError("x", {}, Exception("no such table: tasks")))
        assert not is_lock_error(ValueError("database is locked"))

    @pytest.mark.parametrize(
        "stored",
        ["2025-06-02 10:30:00", "2025-06-02T10:30:00.000Z", "2025-06-02T10:30:00+00:00"],
    )
    def test_iso_datetime_reads_legacy_formats(self, stored):
        value = IsoDateTime().process_result_value(stored, None)
        assert value == datetime(2025, 6, 2, 10, 30, tzinfo=timezone.utc)

    def test_iso_datetime_writes_utc(self):
        stored = IsoDateTime().process_bind_param(datetime(2025, 6, 2, 10, 30), None)
        assert stored == "2025-06-02T10:30:00+00:00"
