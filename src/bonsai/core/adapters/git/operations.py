"""Shared git command runner, base adapter, and integration operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from bonsai.core.adapters.process import (
    ProcessExecutionError,
    run_exec_capture,
    run_exec_checked,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared types and command runner
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GitCommandResult:
    """Result of a git command invocation."""

    returncode: int
    stdout: str
    stderr: str


class GitCommandRunner:
    """Run git commands in subprocesses."""

    async def run(self, cwd: Path, args: Sequence[str], *, check: bool = True) -> GitCommandResult:
        try:
            if check:
                result = await run_exec_checked("git", *args, cwd=cwd, spawn_attempts=2)
            else:
                result = await run_exec_capture("git", *args, cwd=cwd)
        except FileNotFoundError as exc:  # pragma: no cover - environment dependent
            raise RuntimeError("git executable not found") from exc
        except ProcessExecutionError as exc:
            raise RuntimeError(f"git {' '.join(args)} failed: {exc.detail or exc.code}") from exc

        return GitCommandResult(
            returncode=result.returncode,
            stdout=result.stdout_text(),
            stderr=result.stderr_text(),
        )


class GitAdapterBase:
    """Base helper for git adapters with shared execution and ref checks."""

    def __init__(self, runner: GitCommandRunner | None = None) -> None:
        self._runner = runner or GitCommandRunner()

    async def _run_git(
        self,
        cwd: Path,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> tuple[str, str]:
        result = await self._runner.run(cwd, args, check=check)
        return result.stdout, result.stderr

    async def _run_git_result(self, cwd: Path, args: Sequence[str]) -> tuple[int, str, str]:
        result = await self._runner.run(cwd, args, check=False)
        return result.returncode, result.stdout, result.stderr

    async def _has_remote(self, repo_path: Path, name: str = "origin") -> bool:
        stdout, _ = await self._run_git(repo_path, ["remote"], check=False)
        return name in {item.strip() for item in stdout.splitlines() if item.strip()}

    async def _ref_exists(self, repo_path: Path, ref: str) -> bool:
        stdout, _ = await self._run_git(
            repo_path,
            ["rev-parse", "--verify", "--quiet", ref],
            check=False,
        )
        return bool(stdout.strip())

    async def _rev_parse(self, repo_path: Path, ref: str) -> str:
        stdout, _ = await self._run_git(repo_path, ["rev-parse", "--verify", f"{ref}^{{commit}}"])
        return stdout.strip()

    async def _resolve_trunk_ref(self, repo_path: Path, trunk: str, remote: str) -> str:
        """Prefer the remote-tracked trunk tip, falling back to the local branch."""
        if await self._ref_exists(repo_path, f"refs/remotes/{remote}/{trunk}"):
            return f"{remote}/{trunk}"
        return trunk


def parse_status_paths(status_output: str) -> list[str]:
    """Extract paths from `git status --porcelain` output, including untracked files."""
    paths: list[str] = []
    for raw_line in status_output.splitlines():
        line = raw_line.rstrip()
        if len(line) <= 3:
            continue
        segment = line[3:]
        raw_paths = segment.split(" -> ") if " -> " in segment else [segment]
        for path in raw_paths:
            normalized = path.strip()
            if len(normalized) >= 2 and normalized[0] == normalized[-1] == '"':
                normalized = normalized[1:-1]
            if normalized:
                paths.append(normalized)
    return paths


def _split_lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# Integration operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RebaseResult:
    """Outcome of replaying a branch onto a new base."""

    success: bool
    message: str
    conflict_files: list[str] = field(default_factory=list)


class GitOperationsProtocol(Protocol):
    """Protocol boundary for the git operations used by the isolation provider."""

    async def uncommitted_paths(self, worktree_path: Path) -> list[str]: ...

    async def has_uncommitted_changes(self, worktree_path: Path) -> bool: ...

    async def commit_all(self, worktree_path: Path, message: str) -> str: ...

    async def fetch(self, repo_path: Path, remote: str, branch: str) -> bool: ...

    async def resolve_trunk_ref(self, repo_path: Path, trunk: str, remote: str) -> str: ...

    async def rev_parse(self, repo_path: Path, ref: str) -> str: ...

    async def merge_base(self, repo_path: Path, left: str, right: str) -> str | None: ...

    async def changed_paths(self, repo_path: Path, base: str, head: str) -> list[str]: ...

    async def rebase(self, worktree_path: Path, onto: str) -> RebaseResult: ...

    async def is_ancestor(self, repo_path: Path, ancestor: str, descendant: str) -> bool: ...

    async def current_branch(self, repo_path: Path) -> str | None: ...

    async def fast_forward(self, repo_path: Path, ref: str) -> bool: ...

    async def compare_and_swap_ref(
        self, repo_path: Path, branch: str, new_sha: str, expected_sha: str
    ) -> bool: ...

    async def push(self, repo_path: Path, remote: str, source: str, branch: str) -> bool: ...

    async def has_remote(self, repo_path: Path, name: str) -> bool: ...


class GitOperationsAdapter(GitAdapterBase):
    """Git operations for replaying worktree branches onto trunk.

    Nothing here forces a reference: trunk only moves by fast-forward, by a
    compare-and-swap ``update-ref``, or by a non-forced push.
    """

    async def has_remote(self, repo_path: Path, name: str) -> bool:
        return await self._has_remote(repo_path, name)

    async def uncommitted_paths(self, worktree_path: Path) -> list[str]:
        stdout, _ = await self._run_git(worktree_path, ["status", "--porcelain"], check=False)
        return parse_status_paths(stdout)

    async def has_uncommitted_changes(self, worktree_path: Path) -> bool:
        return bool(await self.uncommitted_paths(worktree_path))

    async def commit_all(self, worktree_path: Path, message: str) -> str:
        """Stage all changes and commit; returns HEAD either way."""
        if await self.has_uncommitted_changes(worktree_path):
            await self._run_git(worktree_path, ["add", "-A"])
            await self._run_git(worktree_path, ["commit", "-m", message])
        return await self._rev_parse(worktree_path, "HEAD")

    async def fetch(self, repo_path: Path, remote: str, branch: str) -> bool:
        """Fetch *branch* from *remote*; returns False when there is no such remote."""
        if not await self._has_remote(repo_path, remote):
            return False
        await self._run_git(repo_path, ["fetch", remote, branch])
        return True

    async def resolve_trunk_ref(self, repo_path: Path, trunk: str, remote: str) -> str:
        return await self._resolve_trunk_ref(repo_path, trunk, remote)

    async def rev_parse(self, repo_path: Path, ref: str) -> str:
        return await self._rev_parse(repo_path, ref)

    async def merge_base(self, repo_path: Path, left: str, right: str) -> str | None:
        returncode, stdout, _ = await self._run_git_result(repo_path, ["merge-base", left, right])
        if returncode != 0:
            return None
        return stdout.strip() or None

    async def changed_paths(self, repo_path: Path, base: str, head: str) -> list[str]:
        """Paths that differ between *base* and *head* (both commit-ish)."""
        stdout, _ = await self._run_git(repo_path, ["diff", "--name-only", base, head])
        return _split_lines(stdout)

    async def rebase(self, worktree_path: Path, onto: str) -> RebaseResult:
        """Replay the worktree branch onto *onto*; conflicts are aborted, never left behind."""
        if await self._rebase_in_progress(worktree_path):
            conflict_files = await self._collect_conflict_files(worktree_path)
            await self._abort_rebase(worktree_path)
            return RebaseResult(
                success=False,
                message="A previous rebase was left in progress and has been aborted",
                conflict_files=conflict_files,
            )

        returncode, stdout, stderr = await self._run_git_result(worktree_path, ["rebase", onto])
        if await self._rebase_in_progress(worktree_path):
            conflict_files = await self._collect_conflict_files(worktree_path)
            await self._abort_rebase(worktree_path)
            return RebaseResult(
                success=False,
                message=f"Rebase conflict in {len(conflict_files)} file(s)",
                conflict_files=conflict_files,
            )

        if returncode != 0:
            failure = stderr.strip() or stdout.strip() or "rebase failed"
            return RebaseResult(success=False, message=f"Rebase failed: {failure}")

        return RebaseResult(success=True, message=f"Rebased onto {onto}")

    async def is_ancestor(self, repo_path: Path, ancestor: str, descendant: str) -> bool:
        returncode, _, _ = await self._run_git_result(
            repo_path, ["merge-base", "--is-ancestor", ancestor, descendant]
        )
        return returncode == 0

    async def current_branch(self, repo_path: Path) -> str | None:
        returncode, stdout, _ = await self._run_git_result(
            repo_path, ["symbolic-ref", "--quiet", "--short", "HEAD"]
        )
        if returncode != 0:
            return None
        return stdout.strip() or None

    async def fast_forward(self, repo_path: Path, ref: str) -> bool:
        """Fast-forward the checked-out branch of *repo_path* to *ref*."""
        returncode, _, stderr = await self._run_git_result(repo_path, ["merge", "--ff-only", ref])
        if returncode != 0:
            logger.warning("Fast-forward to %s refused in %s: %s", ref, repo_path, stderr.strip())
            return False
        return True

    async def compare_and_swap_ref(
        self, repo_path: Path, branch: str, new_sha: str, expected_sha: str
    ) -> bool:
        """Move ``refs/heads/<branch>`` only if it still points at *expected_sha*."""
        returncode, _, stderr = await self._run_git_result(
            repo_path,
            ["update-ref", f"refs/heads/{branch}", new_sha, expected_sha],
        )
        if returncode != 0:
            logger.warning("update-ref %s refused: %s", branch, stderr.strip())
            return False
        return True

    async def push(self, repo_path: Path, remote: str, source: str, branch: str) -> bool:
        """Publish *source* to ``<remote>/<branch>`` without force."""
        returncode, _, stderr = await self._run_git_result(
            repo_path, ["push", remote, f"{source}:refs/heads/{branch}"]
        )
        if returncode != 0:
            logger.warning("Push to %s/%s rejected: %s", remote, branch, stderr.strip())
            return False
        return True

    async def _rebase_in_progress(self, worktree_path: Path) -> bool:
        for name in ("rebase-merge", "rebase-apply"):
            stdout, _ = await self._run_git(
                worktree_path, ["rev-parse", "--git-path", name], check=False
            )
            marker = stdout.strip()
            if not marker:
                continue
            marker_path = Path(marker)
            if not marker_path.is_absolute():
                marker_path = worktree_path / marker_path
            if marker_path.exists():
                return True
        return False

    async def _collect_conflict_files(self, repo_path: Path) -> list[str]:
        stdout, _ = await self._run_git(
            repo_path,
            ["diff", "--name-only", "--diff-filter=U"],
            check=False,
        )
        files = _split_lines(stdout)
        if files:
            return files

        status_out, _ = await self._run_git(repo_path, ["status", "--porcelain"], check=False)
        return [
            line[3:].strip()
            for line in status_out.splitlines()
            if line.startswith(("UU ", "AA ", "DD ", "AU ", "UA ", "DU ", "UD "))
        ]

    async def _abort_rebase(self, worktree_path: Path) -> None:
        await self._run_git(worktree_path, ["rebase", "--abort"], check=False)
