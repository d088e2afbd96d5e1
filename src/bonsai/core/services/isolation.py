"""Isolated working copies per work item and their integration onto trunk."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from bonsai.core.adapters.git import GitOperationsAdapter, GitWorktreeAdapter
from bonsai.core.errors import PathEscapeError
from bonsai.core.locks.repo_locks import GuardedGitRunner
from bonsai.core.models.enums import ConflictKind, FinalizeStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from bonsai.core.adapters.db.schema import Repo
    from bonsai.core.adapters.git import GitOperationsProtocol, GitWorktreeProtocol
    from bonsai.core.config import IntegrationConfig
    from bonsai.core.locks.repo_locks import RepositoryLockManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FileOverlapRecord:
    """Paths changed on the item branch and on trunk since they diverged."""

    item_id: str
    base: str | None
    item_paths: frozenset[str]
    trunk_paths: frozenset[str]

    @property
    def overlap(self) -> frozenset[str]:
        return self.item_paths & self.trunk_paths

    @property
    def is_empty(self) -> bool:
        return not self.overlap


@dataclass(frozen=True, slots=True)
class FinalizeResult:
    status: FinalizeStatus
    message: str
    conflict_files: tuple[str, ...] = ()
    conflict_kind: ConflictKind | None = None
    overlap: FileOverlapRecord | None = None
    commit_sha: str | None = None

    @property
    def integrated(self) -> bool:
        return self.status is FinalizeStatus.INTEGRATED


class ConflictPolicy:
    """Decide whether an integration conflict needs a human."""

    def __init__(self, patterns: Sequence[str], max_machine_files: int) -> None:
        self.patterns = tuple(patterns)
        self.max_machine_files = max_machine_files

    @classmethod
    def from_config(cls, config: IntegrationConfig) -> ConflictPolicy:
        return cls(config.human_required_patterns, config.max_machine_resolvable_files)

    def matches(self, path: str) -> bool:
        # "./" lets "**/x/**" patterns match top-level directories too.
        candidates = (path, f"./{path}", PurePosixPath(path).name)
        return any(fnmatch(c, pattern) for c in candidates for pattern in self.patterns)

    def classify(self, files: Iterable[str]) -> ConflictKind:
        paths = list(files)
        if any(self.matches(path) for path in paths):
            return ConflictKind.HUMAN_REQUIRED
        if len(paths) > self.max_machine_files:
            return ConflictKind.HUMAN_REQUIRED
        return ConflictKind.MACHINE_RESOLVABLE


def resolve_within(root: Path, candidate: str | Path) -> Path:
    """Resolve *candidate* against *root*, refusing anything outside it.

    Raises:
        PathEscapeError: the resolved path (symlinks followed) is not under *root*.
    """
    base = root.resolve()
    target = Path(candidate)
    resolved = (target if target.is_absolute() else base / target).resolve()
    if resolved != base and not resolved.is_relative_to(base):
        raise PathEscapeError(str(candidate), str(base))
    return resolved


class IsolationProvider:
    """Create, integrate and clean up one git worktree per work item.

    Every command touching shared repository metadata runs under the
    repository's shared lock; the default git runner refuses otherwise.
    """

    def __init__(
        self,
        *,
        locks: RepositoryLockManager,
        worktree_base: Path,
        policy: ConflictPolicy,
        branch_prefix: str = "bonsai/",
        git_ops: GitOperationsProtocol | None = None,
        worktrees: GitWorktreeProtocol | None = None,
    ) -> None:
        runner = GuardedGitRunner()
        self._locks = locks
        self._base = worktree_base
        self._policy = policy
        self._prefix = branch_prefix
        self._git: GitOperationsProtocol = git_ops or GitOperationsAdapter(runner)
        self._worktrees: GitWorktreeProtocol = worktrees or GitWorktreeAdapter(runner)

    @property
    def policy(self) -> ConflictPolicy:
        return self._policy

    def branch_name(self, item_id: str) -> str:
        return f"{self._prefix}{item_id}"

    def working_copy_path(self, repo: Repo, item_id: str) -> Path:
        return self._base / repo.id / item_id

    def resolve_within(self, working_copy: Path, candidate: str | Path) -> Path:
        return resolve_within(working_copy, candidate)

    async def create_isolated_copy(self, repo: Repo, item_id: str) -> Path:
        """Return the item's working copy, creating it from trunk when needed."""
        repo_path = Path(repo.path)
        branch = self.branch_name(item_id)
        path = self.working_copy_path(repo, item_id)

        async def _create() -> Path:
            existing = await self._worktrees.get_worktree_for_branch(repo_path, branch)
            if existing is not None and existing.exists():
                return existing
            if existing is not None:
                await self._worktrees.prune_worktrees(repo_path)
            await self._git.fetch(repo_path, repo.remote_name, repo.trunk_branch)
            start = await self._git.resolve_trunk_ref(
                repo_path, repo.trunk_branch, repo.remote_name
            )
            await self._worktrees.create_worktree(repo_path, path, branch, start)
            logger.info("Created working copy for %s at %s from %s", item_id, path, start)
            return path

        return await self._locks.with_shared_access(repo.id, _create, purpose="create")

    async def ensure_isolated_copy(
        self, repo: Repo, item_id: str, recorded_path: str | None = None
    ) -> Path:
        if recorded_path and Path(recorded_path).is_dir():
            return Path(recorded_path)
        return await self.create_isolated_copy(repo, item_id)

    async def remove_isolated_copy(
        self, repo: Repo, item_id: str, *, delete_branch: bool = True
    ) -> None:
        repo_path = Path(repo.path)
        path = self.working_copy_path(repo, item_id)

        async def _remove() -> None:
            await self._worktrees.delete_worktree(repo_path, path)
            if delete_branch:
                await self._worktrees.delete_branch(
                    repo_path,
                    self.branch_name(item_id),
                    trunk_branch=repo.trunk_branch,
                    force=True,
                )

        await self._locks.with_shared_access(repo.id, _remove, purpose="remove")

    async def compute_overlap(self, repo: Repo, item_id: str) -> FileOverlapRecord:
        """Compare the item's changes (committed or not) with trunk's since divergence."""
        path = self.working_copy_path(repo, item_id)
        trunk_ref = await self._git.resolve_trunk_ref(
            Path(repo.path), repo.trunk_branch, repo.remote_name
        )
        trunk_tip = await self._git.rev_parse(Path(repo.path), trunk_ref)

        async def _compute() -> FileOverlapRecord:
            record = await self._overlap_against(item_id, path, trunk_tip)
            dirty = await self._git.uncommitted_paths(path)
            return FileOverlapRecord(
                item_id=item_id,
                base=record.base,
                item_paths=record.item_paths | frozenset(dirty),
                trunk_paths=record.trunk_paths,
            )

        return await self._locks.with_local_access(str(path), _compute)

    async def _overlap_against(self, item_id: str, path: Path, trunk_tip: str) -> FileOverlapRecord:
        base = await self._git.merge_base(path, "HEAD", trunk_tip)
        if base is None:
            return FileOverlapRecord(item_id, None, frozenset(), frozenset())
        return FileOverlapRecord(
            item_id=item_id,
            base=base,
            item_paths=frozenset(await self._git.changed_paths(path, base, "HEAD")),
            trunk_paths=frozenset(await self._git.changed_paths(path, base, trunk_tip)),
        )

    async def finalize(self, repo: Repo, item_id: str, *, title: str = "") -> FinalizeResult:
        """Replay the item's branch onto trunk and publish it, or report a conflict.

        Trunk only ever moves forward to a commit that contains its previous
        tip. On any conflict trunk is left exactly as it was.
        """
        return await self._locks.with_shared_access(
            repo.id, lambda: self._finalize(repo, item_id, title), purpose="finalize"
        )

    async def _finalize(self, repo: Repo, item_id: str, title: str) -> FinalizeResult:
        repo_path = Path(repo.path)
        path = self.working_copy_path(repo, item_id)
        if not path.is_dir():
            return self._conflict((), f"Working copy {path} is missing", None)

        await self._git.commit_all(path, f"{title or item_id}\n\nbonsai-item: {item_id}")
        has_remote = await self._git.fetch(repo_path, repo.remote_name, repo.trunk_branch)
        trunk_ref = f"{repo.remote_name}/{repo.trunk_branch}" if has_remote else repo.trunk_branch
        trunk_tip = await self._git.rev_parse(repo_path, trunk_ref)
        overlap = await self._overlap_against(item_id, path, trunk_tip)
        if not overlap.is_empty:
            logger.info(
                "Item %s overlaps trunk in %d path(s); attempting replay",
                item_id,
                len(overlap.overlap),
            )

        rebase = await self._git.rebase(path, trunk_tip)
        if not rebase.success:
            files = tuple(rebase.conflict_files) or tuple(sorted(overlap.overlap))
            return self._conflict(files, rebase.message, overlap)

        new_tip = await self._git.rev_parse(path, "HEAD")
        if not await self._git.is_ancestor(path, trunk_tip, new_tip):
            return self._conflict((), "Replayed branch does not contain trunk", overlap)

        if not await self._advance_trunk(repo, trunk_tip, new_tip, has_remote=has_remote):
            return self._conflict((), f"{repo.trunk_branch} moved during integration", overlap)

        await self._worktrees.delete_worktree(repo_path, path)
        await self._worktrees.delete_branch(
            repo_path, self.branch_name(item_id), trunk_branch=repo.trunk_branch, force=True
        )
        logger.info("Integrated %s onto %s at %s", item_id, repo.trunk_branch, new_tip[:12])
        return FinalizeResult(
            status=FinalizeStatus.INTEGRATED,
            message=f"Integrated onto {repo.trunk_branch} at {new_tip[:12]}",
            overlap=overlap,
            commit_sha=new_tip,
        )

    async def _advance_trunk(
        self, repo: Repo, old_tip: str, new_tip: str, *, has_remote: bool
    ) -> bool:
        repo_path = Path(repo.path)
        if has_remote:
            if not await self._git.push(repo_path, repo.remote_name, new_tip, repo.trunk_branch):
                return False
            # The local trunk follows only when that is a plain fast-forward.
            local_tip = await self._git.rev_parse(repo_path, repo.trunk_branch)
            if await self._git.is_ancestor(repo_path, local_tip, new_tip):
                await self._move_local_trunk(repo, local_tip, new_tip)
            return True

        local_tip = await self._git.rev_parse(repo_path, repo.trunk_branch)
        if local_tip != old_tip:
            return False
        return await self._move_local_trunk(repo, old_tip, new_tip)

    async def _move_local_trunk(self, repo: Repo, expected: str, new_tip: str) -> bool:
        repo_path = Path(repo.path)
        if await self._git.current_branch(repo_path) == repo.trunk_branch:
            return await self._git.fast_forward(repo_path, new_tip)
        return await self._git.compare_and_swap_ref(
            repo_path, repo.trunk_branch, new_tip, expected
        )

    def _conflict(
        self, files: Sequence[str], message: str, overlap: FileOverlapRecord | None
    ) -> FinalizeResult:
        kind = self._policy.classify(files)
        if files:
            message = f"{message}: {', '.join(files)}"
        return FinalizeResult(
            status=FinalizeStatus.CONFLICT,
            message=message,
            conflict_files=tuple(files),
            conflict_kind=kind,
            overlap=overlap,
        )

    async def janitor(self, repo: Repo) -> int:
        """Prune worktree metadata whose directories are gone."""
        return await self._locks.with_shared_access(
            repo.id,
            lambda: self._worktrees.prune_worktrees(Path(repo.path)),
            purpose="janitor",
        )
