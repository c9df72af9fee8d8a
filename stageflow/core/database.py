"""
Stageflow - Database Connection
===============================

Async SQLAlchemy setup. Every SQLite file (the app database and one per
project) is reached through exactly one ProjectDatabase handle, which
serializes all work against that file through a FIFO lock and retries
lock contention with backoff.

The DatabaseRegistry owns the handles. It is created once at startup
and passed explicitly to whoever needs a database.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TypeVar

import structlog
from sqlalchemy import String, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from stageflow.core.config import Settings, settings as default_settings
from stageflow.core.errors import DatabaseNotReadyError, TransientStoreError
from stageflow.core.retry import RetryPolicy, with_retry

logger = structlog.get_logger()

T = TypeVar("T")


class AppBase(DeclarativeBase):
    """Base class for app-wide tables (projects, settings)."""
    pass


class ProjectBase(DeclarativeBase):
    """Base class for per-project tables."""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IsoDateTime(TypeDecorator):
    """
    Datetime stored as ISO-8601 text.

    Legacy rows hold both "YYYY-MM-DD HH:MM:SS" (SQLite datetime('now'))
    and "YYYY-MM-DDTHH:MM:SS.sssZ"; both parse. Naive values are UTC.
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None or isinstance(value, str):
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for one SQLite file."""
    engine = create_async_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def is_lock_error(exc: BaseException) -> bool:
    """True for SQLite lock contention (another writer holds the file)."""
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return "database is locked" in message or "database is busy" in message


# ==========================================================================
# Serialized Database Handle
# ==========================================================================

class ProjectDatabase:
    """
    One SQLite file, one engine, one FIFO queue.

    At most one unit of work is in flight per file. Units are retried
    as a whole when SQLite reports lock contention.

    The handle refuses work until initialize() has brought the schema
    up to date (reconcile + pending migrations).
    """

    def __init__(
        self,
        url: str,
        is_project: bool = True,
        config: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.config = config or default_settings
        self.url = url
        self.is_project = is_project
        self.engine = engine or create_engine(url, echo=self.config.DATABASE_ECHO)
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._queue = asyncio.Lock()
        self._ready = False
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.DB_LOCK_MAX_RETRIES,
            base_delay=self.config.DB_LOCK_BASE_DELAY,
            max_delay=self.config.DB_LOCK_MAX_DELAY,
        )

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """
        Reconcile the schema and run pending migrations.

        Runs under the same queue as every other operation. Raises
        MigrationError if a migration body fails; the handle then stays
        not-ready.
        """
        from stageflow.core.migrations import prepare_app_schema, prepare_project_schema

        prepare = prepare_project_schema if self.is_project else prepare_app_schema

        async with self._queue:
            async def _prepare() -> None:
                async with self.engine.connect() as conn:
                    await conn.run_sync(prepare)

            await self._with_lock_retry(_prepare, "initialize")
            self._ready = True
            logger.info("database_ready", url=self.url, project=self.is_project)

    async def run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run one unit of work in its own session and commit it.

        Args:
            operation: Coroutine function receiving the session

        Returns:
            Whatever `operation` returns

        Raises:
            DatabaseNotReadyError: initialize() has not completed
            TransientStoreError: lock contention outlasted the retry budget
        """
        if not self._ready:
            raise DatabaseNotReadyError(f"Database {self.url} has not been migrated")

        async with self._queue:
            async def _unit() -> T:
                async with self._session_factory() as session:
                    try:
                        result = await operation(session)
                        await session.commit()
                        return result
                    except Exception:
                        await session.rollback()
                        raise

            return await self._with_lock_retry(_unit, "run")

    async def _with_lock_retry(self, fn: Callable[[], Awaitable[T]], operation: str) -> T:
        try:
            return await with_retry(
                fn,
                should_retry=is_lock_error,
                policy=self.retry_policy,
                operation=f"db.{operation}",
            )
        except OperationalError as exc:
            if is_lock_error(exc):
                raise TransientStoreError(f"{self.url} stayed locked: {exc}") from exc
            raise

    async def dispose(self) -> None:
        await self.engine.dispose()


# ==========================================================================
# Registry
# ==========================================================================

class DatabaseRegistry:
    """
    Owns the app database and every open project database.

    Concurrent opens of the same project share one initialization.
    A failed initialization is forgotten so the next open retries.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._app: Optional[ProjectDatabase] = None
        self._app_opening: Optional[asyncio.Task] = None
        self._projects: dict[str, ProjectDatabase] = {}
        self._opening: dict[str, asyncio.Task] = {}

    def _ensure_data_dir(self) -> None:
        Path(self.config.DATA_DIR).mkdir(parents=True, exist_ok=True)

    async def app(self) -> ProjectDatabase:
        """The app-wide database (projects, app settings)."""
        if self._app is not None:
            return self._app
        if self._app_opening is None:
            self._app_opening = asyncio.ensure_future(self._open_app())
        try:
            self._app = await asyncio.shield(self._app_opening)
        finally:
            self._app_opening = None
        return self._app

    async def _open_app(self) -> ProjectDatabase:
        self._ensure_data_dir()
        database = ProjectDatabase(
            self.config.app_database_url,
            is_project=False,
            config=self.config,
        )
        try:
            await database.initialize()
        except Exception:
            await database.dispose()
            raise
        return database

    async def project(self, project_id: str) -> ProjectDatabase:
        """Open (and migrate on first open) the database for a project."""
        if project_id in self._projects:
            return self._projects[project_id]

        opening = self._opening.get(project_id)
        if opening is None:
            opening = asyncio.ensure_future(self._open_project(project_id))
            self._opening[project_id] = opening
        try:
            database = await asyncio.shield(opening)
        finally:
            self._opening.pop(project_id, None)

        self._projects[project_id] = database
        return database

    async def _open_project(self, project_id: str) -> ProjectDatabase:
        self._ensure_data_dir()
        database = ProjectDatabase(
            self.config.project_database_url(project_id),
            is_project=True,
            config=self.config,
        )
        try:
            await database.initialize()
        except Exception:
            logger.error("project_database_open_failed", project_id=project_id, exc_info=True)
            await database.dispose()
            raise
        return database

    async def close_project(self, project_id: str) -> None:
        database = self._projects.pop(project_id, None)
        if database is not None:
            await database.dispose()

    async def close(self) -> None:
        """Dispose every engine."""
        for project_id in list(self._projects):
            await self.close_project(project_id)
        if self._app is not None:
            await self._app.dispose()
            self._app = None
