"""Per-repository serialization of operations that touch shared git metadata.

Worktrees of one repository share its object store, refs and worktree
registry. Operations that mutate those (worktree add/remove, branch
create/delete, fetch/push, trunk integration, prune) go through
:meth:`RepositoryLockManager.with_shared_access`, one FIFO queue per repository
identity. Operations confined to a single worktree's own index and HEAD run
through :meth:`RepositoryLockManager.with_local_access` and never wait on the
queue.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from bonsai.core.adapters.git.operations import GitCommandRunner

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
    from pathlib import Path

    from bonsai.core.adapters.git.operations import GitCommandResult

logger = logging.getLogger(__name__)

# git subcommands that read or write only the invoking worktree's index, HEAD and files.
LOCAL_GIT_COMMANDS: frozenset[str] = frozenset(
    {
        "add",
        "blame",
        "cat-file",
        "checkout",
        "commit",
        "diff",
        "log",
        "ls-files",
        "merge-base",
        "rebase",
        "reset",
        "restore",
        "rev-list",
        "rev-parse",
        "show",
        "stash",
        "status",
        "symbolic-ref",
    }
)

# git subcommands that create/remove worktrees, move shared refs or contact a remote.
SHARED_GIT_COMMANDS: frozenset[str] = frozenset(
    {
        "branch",
        "fetch",
        "gc",
        "merge",
        "prune",
        "pull",
        "push",
        "remote",
        "repack",
        "tag",
        "update-ref",
        "worktree",
    }
)

# Repository ids whose shared lock the current context holds.
_SHARED_HELD: contextvars.ContextVar[frozenset[str]] = contextvars.ContextVar(
    "bonsai_shared_repos", default=frozenset()
)


def requires_shared_access(args: Sequence[str]) -> bool:
    """Return whether a git invocation must hold its repository's shared lock.

    Leading global options (``-C <dir>``, ``-c key=value``) are skipped.
    Unknown subcommands are treated as shared.
    """
    iterator = iter(args)
    for token in iterator:
        if token in {"-C", "-c", "--git-dir", "--work-tree"}:
            next(iterator, None)
            continue
        if token.startswith("-"):
            continue
        if token in SHARED_GIT_COMMANDS:
            return True
        return token not in LOCAL_GIT_COMMANDS
    return True


@dataclass
class _RepoQueue:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    owner: asyncio.Task | None = None
    depth: int = 0


class RepositoryLockManager:
    """FIFO mutex per repository identity.

    Created once per heartbeat process and passed to whoever needs it; there
    is no module-level instance. Re-entry from the task already holding a
    repository's lock does not wait.
    """

    def __init__(self) -> None:
        self._queues: dict[str, _RepoQueue] = {}

    def _queue(self, repo_id: str) -> _RepoQueue:
        queue = self._queues.get(repo_id)
        if queue is None:
            queue = _RepoQueue()
            self._queues[repo_id] = queue
        return queue

    def holds_shared(self, repo_id: str) -> bool:
        """Return whether the current task holds *repo_id*'s shared lock."""
        queue = self._queues.get(repo_id)
        if queue is None or queue.owner is None:
            return False
        return queue.owner is asyncio.current_task()

    def is_locked(self, repo_id: str) -> bool:
        queue = self._queues.get(repo_id)
        return queue is not None and queue.lock.locked()

    @asynccontextmanager
    async def shared(self, repo_id: str, *, purpose: str = "") -> AsyncIterator[None]:
        queue = self._queue(repo_id)
        task = asyncio.current_task()
        if queue.owner is not None and queue.owner is task:
            queue.depth += 1
            try:
                yield
            finally:
                queue.depth -= 1
            return

        await queue.lock.acquire()
        queue.owner = task
        queue.depth = 1
        held = _SHARED_HELD.set(_SHARED_HELD.get() | {repo_id})
        logger.debug("Shared access to %s acquired (%s)", repo_id, purpose or "unspecified")
        try:
            yield
        finally:
            _SHARED_HELD.reset(held)
            queue.owner = None
            queue.depth = 0
            queue.lock.release()

    async def with_shared_access[T](
        self,
        repo_id: str,
        fn: Callable[[], Awaitable[T]],
        *,
        purpose: str = "",
    ) -> T:
        """Run *fn* while holding *repo_id*'s shared lock, in FIFO acquire order."""
        async with self.shared(repo_id, purpose=purpose):
            return await fn()

    async def with_local_access[T](
        self,
        working_copy_id: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *fn* confined to one working copy; never serialized against other copies."""
        del working_copy_id
        return await fn()

    async def close(self) -> None:
        """Drop idle queues at process teardown."""
        self._queues = {
            repo_id: queue for repo_id, queue in self._queues.items() if queue.lock.locked()
        }


def in_shared_section() -> bool:
    """Return whether the current context holds any repository's shared lock."""
    return bool(_SHARED_HELD.get())


class SharedAccessViolation(RuntimeError):
    """Raised when a shared-metadata git command runs outside a shared section."""


class GuardedGitRunner(GitCommandRunner):
    """Git runner that refuses shared-metadata commands outside a shared section."""

    async def run(
        self, cwd: Path, args: Sequence[str], *, check: bool = True
    ) -> GitCommandResult:
        if requires_shared_access(args) and not in_shared_section():
            raise SharedAccessViolation(
                f"git {' '.join(args)} mutates shared repository state; "
                "run it under RepositoryLockManager.with_shared_access"
            )
        return await super().run(cwd, args, check=check)
