"""Git worktree management for isolated work item execution."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from bonsai.core.adapters.git.operations import GitAdapterBase
from bonsai.core.errors import TrunkProtectionError

logger = logging.getLogger(__name__)


class GitWorktreeProtocol(Protocol):
    """Protocol boundary for git worktree and branch lifecycle operations."""

    async def create_worktree(
        self,
        repo_path: Path,
        worktree_path: Path,
        branch_name: str,
        start_point: str,
    ) -> None: ...

    async def delete_worktree(self, repo_path: Path, worktree_path: Path) -> None: ...

    async def delete_branch(
        self, repo_path: Path, branch_name: str, *, trunk_branch: str, force: bool = False
    ) -> bool: ...

    async def branch_exists(self, repo_path: Path, branch_name: str) -> bool: ...

    async def get_worktree_for_branch(self, repo_path: Path, branch_name: str) -> Path | None: ...

    async def prune_worktrees(self, repo_path: Path) -> int: ...

    async def list_branches(self, repo_path: Path, prefix: str) -> list[str]: ...


class GitWorktreeAdapter(GitAdapterBase):
    """Adapter for git worktree operations across multiple repositories."""

    async def create_worktree(
        self,
        repo_path: Path,
        worktree_path: Path,
        branch_name: str,
        start_point: str,
    ) -> None:
        """Create a worktree on a new branch, reusing the branch if it already exists."""
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        if await self.branch_exists(repo_path, branch_name):
            args = ["worktree", "add", str(worktree_path), branch_name]
        else:
            args = ["worktree", "add", "-b", branch_name, str(worktree_path), start_point]
        await self._run_git(repo_path, args)
        logger.debug("Created worktree %s on %s", worktree_path, branch_name)

    async def delete_worktree(self, repo_path: Path, worktree_path: Path) -> None:
        """Remove a worktree; a missing directory only needs its metadata pruned."""
        if not worktree_path.exists():
            await self.prune_worktrees(repo_path)
            return
        await self._run_git(
            repo_path,
            ["worktree", "remove", str(worktree_path), "--force"],
        )

    async def delete_branch(
        self,
        repo_path: Path,
        branch_name: str,
        *,
        trunk_branch: str,
        force: bool = False,
    ) -> bool:
        """Delete a local branch.

        Args:
            repo_path: Path to the repository.
            branch_name: Name of the branch to delete.
            trunk_branch: The repository's trunk; deleting it is always refused.
            force: If True, use -D (force delete); otherwise use -d (safe delete).

        Returns:
            True if the branch was deleted, False if it failed or didn't exist.
        """
        if branch_name.removeprefix("refs/heads/") == trunk_branch:
            raise TrunkProtectionError(f"Refusing to delete trunk branch {trunk_branch!r}")
        if not repo_path.exists():
            return False

        delete_flag = "-D" if force else "-d"
        returncode, _, _ = await self._run_git_result(
            repo_path,
            ["branch", delete_flag, branch_name],
        )
        return returncode == 0

    async def branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        return await self._ref_exists(repo_path, f"refs/heads/{branch_name}")

    async def get_worktree_for_branch(self, repo_path: Path, branch_name: str) -> Path | None:
        """Get the worktree path for a branch, if any.

        Returns the worktree path if the branch is checked out in a worktree,
        or None if not.
        """
        if not repo_path.exists():
            return None

        stdout, _ = await self._run_git(
            repo_path,
            ["worktree", "list", "--porcelain"],
            check=False,
        )

        current_worktree: str | None = None
        for line in stdout.split("\n"):
            if line.startswith("worktree "):
                current_worktree = line[9:].strip()
            elif line.startswith("branch "):
                branch_ref = line[7:].strip()
                if branch_ref == f"refs/heads/{branch_name}" and current_worktree:
                    return Path(current_worktree)

        return None

    async def prune_worktrees(self, repo_path: Path) -> int:
        """Prune stale worktree references from a repository.

        Returns the number of worktrees pruned (estimated from output).
        """
        if not repo_path.exists():
            return 0

        stdout, stderr = await self._run_git(
            repo_path,
            ["worktree", "prune", "--verbose"],
            check=False,
        )
        output = f"{stdout}\n{stderr}"
        pruned_lines = [line for line in output.split("\n") if line.strip().startswith("Removing")]
        return len(pruned_lines)

    async def list_branches(self, repo_path: Path, prefix: str) -> list[str]:
        """List local branches under *prefix*, without the refs/heads/ prefix."""
        if not repo_path.exists():
            return []

        stdout, _ = await self._run_git(
            repo_path,
            ["for-each-ref", "--format=%(refname:short)", f"refs/heads/{prefix}*"],
            check=False,
        )
        return [line.strip() for line in stdout.split("\n") if line.strip()]
