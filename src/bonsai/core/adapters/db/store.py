"""Persisted store facade: engine lifecycle plus the repositories sharing it."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bonsai.core.adapters.db.engine import create_db_engine, create_db_tables, ping_engine
from bonsai.core.adapters.db.repositories import (
    ApprovalRepository,
    ClosingAwareSessionFactory,
    MessageRepository,
    ProjectRepository,
    RepositoryClosing,
    RunRepository,
    WorkItemRepository,
)
from bonsai.core.errors import StoreUnavailableError
from bonsai.core.paths import get_database_path

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS = (OperationalError, DBAPIError, OSError)

# Errors a live store raises once its database stops answering or it is closed.
STORE_FAILURES = (OperationalError, DBAPIError, RepositoryClosing)


class Store:
    """Owns the SQLite engine and hands out repositories bound to it."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else get_database_path()
        self._engine: AsyncEngine | None = None
        self._session_factory: ClosingAwareSessionFactory | None = None
        self._write_lock = asyncio.Lock()
        self.work_items: WorkItemRepository
        self.runs: RunRepository
        self.messages: MessageRepository
        self.approvals: ApprovalRepository
        self.projects: ProjectRepository

    async def initialize(self) -> None:
        """Initialize engine, create tables and bind repositories.

        Raises:
            StoreUnavailableError: the database cannot be opened or created.
        """
        try:
            self._engine = await create_db_engine(self.db_path)
            await create_db_tables(self._engine)
        except _UNAVAILABLE_ERRORS as exc:
            await self.close()
            raise StoreUnavailableError(f"Cannot open store at {self.db_path}: {exc}") from exc

        raw_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self._session_factory = ClosingAwareSessionFactory(raw_factory)
        kwargs = {"write_lock": self._write_lock}
        self.work_items = WorkItemRepository(self._session_factory, **kwargs)
        self.runs = RunRepository(self._session_factory, **kwargs)
        self.messages = MessageRepository(self._session_factory, **kwargs)
        self.approvals = ApprovalRepository(self._session_factory, **kwargs)
        self.projects = ProjectRepository(self._session_factory, **kwargs)
        logger.debug("Store initialized at %s", self.db_path)

    async def ping(self) -> None:
        """Verify the store is reachable.

        Raises:
            StoreUnavailableError: the store is not initialized or does not answer.
        """
        if self._engine is None:
            raise StoreUnavailableError("Store is not initialized")
        try:
            await ping_engine(self._engine)
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Store at {self.db_path} is unreachable: {exc}") from exc

    async def close(self) -> None:
        """Close engine and release resources."""
        if self._session_factory is not None:
            self._session_factory.mark_closing()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def __aenter__(self) -> Store:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
