"""Base types for DB repositories."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class RepositoryClosing(Exception):
    """Raised when a DB operation is attempted during store shutdown."""


class ClosingAwareSessionFactory:
    """Wrapper around ``async_sessionmaker`` with a shared closing flag."""

    def __init__(self, inner: async_sessionmaker[AsyncSession]) -> None:
        self._inner = inner
        self._closing = False

    def mark_closing(self) -> None:
        self._closing = True

    @property
    def closing(self) -> bool:
        return self._closing

    def __call__(self) -> AsyncSession:
        if self._closing:
            raise RepositoryClosing("Store is shutting down")
        return self._inner()


class RepositoryBase:
    """Shared session access and write serialization for repositories.

    All repositories of one store share a single write lock so SQLite never sees
    two writers from this process at once.
    """

    def __init__(
        self,
        session_factory: ClosingAwareSessionFactory,
        *,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock = write_lock or asyncio.Lock()

    def _get_session(self) -> AsyncSession:
        return self._session_factory()
