"""Heartbeat bootstrap and dependency injection.

Everything process-wide (the store, the per-repository lock manager, the cycle
lease) is created here once per process and torn down on exit.

Usage:
    async with bootstrap_heartbeat(config) as ctx:
        report = await ctx.dispatcher.run_cycle()
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bonsai.core.adapters.db.store import Store
from bonsai.core.locks.process_lease import create_process_lease
from bonsai.core.locks.repo_locks import RepositoryLockManager
from bonsai.core.paths import (
    ensure_directories,
    get_cycle_lease_path,
    get_cycle_lock_path,
    get_database_path,
    get_sessions_dir,
    get_worktree_base_dir,
)
from bonsai.core.services.communications import CommunicationChannel
from bonsai.core.services.dispatcher import Dispatcher
from bonsai.core.services.isolation import ConflictPolicy, IsolationProvider
from bonsai.core.services.worker import CommandWorker

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from bonsai.core.config import BonsaiConfig
    from bonsai.core.locks.process_lease import ProcessLease
    from bonsai.core.services.worker import Worker


@dataclass(slots=True)
class HeartbeatContext:
    """Wired collaborators for one heartbeat process.

    Attributes:
        config: Loaded configuration.
        store: Initialized persisted store.
        locks: Per-repository lock manager (one per process).
        isolation: Worktree provider bound to ``locks``.
        communications: Message and approval channel.
        dispatcher: The cycle entry point.
    """

    config: BonsaiConfig
    store: Store
    locks: RepositoryLockManager
    isolation: IsolationProvider
    communications: CommunicationChannel
    dispatcher: Dispatcher

    async def close(self) -> None:
        await self.locks.close()
        await self.store.close()


async def create_heartbeat_context(
    config: BonsaiConfig,
    *,
    db_path: Path | None = None,
    worker: Worker | None = None,
    process_lease: ProcessLease | None = None,
    worktree_base: Path | None = None,
    sessions_dir: Path | None = None,
) -> HeartbeatContext:
    """Create a fully wired context (non-context-manager).

    Raises:
        StoreUnavailableError: the store cannot be opened.
    """
    ensure_directories()
    store = Store(db_path or get_database_path())
    await store.initialize()

    locks = RepositoryLockManager()
    integration = config.integration
    isolation = IsolationProvider(
        locks=locks,
        worktree_base=worktree_base or get_worktree_base_dir(),
        policy=ConflictPolicy.from_config(integration),
        branch_prefix=integration.branch_prefix,
    )
    communications = CommunicationChannel(store.messages, store.approvals)
    lease = process_lease or create_process_lease(
        config.heartbeat.lease_mechanism,
        lock_path=get_cycle_lock_path(),
        lease_path=get_cycle_lease_path(),
    )
    dispatcher = Dispatcher(
        store=store,
        config=config,
        worker=worker or CommandWorker(config.worker),
        isolation=isolation,
        communications=communications,
        process_lease=lease,
        sessions_dir=sessions_dir or get_sessions_dir(),
    )
    return HeartbeatContext(
        config=config,
        store=store,
        locks=locks,
        isolation=isolation,
        communications=communications,
        dispatcher=dispatcher,
    )


@asynccontextmanager
async def bootstrap_heartbeat(
    config: BonsaiConfig,
    *,
    db_path: Path | None = None,
    worker: Worker | None = None,
    process_lease: ProcessLease | None = None,
) -> AsyncIterator[HeartbeatContext]:
    """Yield a wired :class:`HeartbeatContext` and close it afterwards."""
    ctx = await create_heartbeat_context(
        config, db_path=db_path, worker=worker, process_lease=process_lease
    )
    try:
        yield ctx
    finally:
        await ctx.close()
