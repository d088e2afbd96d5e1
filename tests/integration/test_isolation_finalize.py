"""Isolated working copies and trunk integration against real git repositories."""

from __future__ import annotations

import asyncio
import shutil
from typing import TYPE_CHECKING

import pytest

from bonsai.core.adapters.git.worktrees import GitWorktreeAdapter
from bonsai.core.config import IntegrationConfig
from bonsai.core.errors import TrunkProtectionError
from bonsai.core.locks.repo_locks import RepositoryLockManager
from bonsai.core.models.enums import ConflictKind, FinalizeStatus
from bonsai.core.services.isolation import ConflictPolicy, IsolationProvider
from tests.helpers.git import (
    add_bare_remote,
    commit_file,
    count_commits,
    rev_parse,
    run_git,
)

if TYPE_CHECKING:
    from pathlib import Path
    from types import SimpleNamespace

pytestmark = pytest.mark.integration


@pytest.fixture
def isolation(tmp_path: Path) -> IsolationProvider:
    return IsolationProvider(
        locks=RepositoryLockManager(),
        worktree_base=tmp_path / "worktrees",
        policy=ConflictPolicy.from_config(IntegrationConfig()),
    )


class TestWorkingCopies:
    async def test_create_is_idempotent(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        assert (path / "README.md").exists()
        assert await run_git(path, "rev-parse", "--abbrev-ref", "HEAD") == "bonsai/item-1"
        assert await isolation.create_isolated_copy(project.repo, "item-1") == path

    async def test_copy_starts_from_trunk_tip(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        tip = await commit_file(project.path, "docs/guide.md", "guide\n")
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        assert await rev_parse(path, "HEAD") == tip

    async def test_missing_directory_is_recreated(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "notes.md", "work in progress\n")
        shutil.rmtree(path)

        restored = await isolation.ensure_isolated_copy(project.repo, "item-1", str(path))
        assert restored == path
        assert (restored / "notes.md").read_text() == "work in progress\n"

    async def test_recorded_path_is_reused(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        assert await isolation.ensure_isolated_copy(project.repo, "item-1", str(path)) == path

    async def test_remove_deletes_worktree_and_branch(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await isolation.remove_isolated_copy(project.repo, "item-1")
        assert not path.exists()
        branches = await run_git(project.path, "branch", "--list", "bonsai/*")
        assert branches == ""

    async def test_janitor_prunes_vanished_copies(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        shutil.rmtree(path)
        assert await isolation.janitor(project.repo) >= 1
        listing = await run_git(project.path, "worktree", "list", "--porcelain")
        assert str(path) not in listing

    async def test_trunk_branch_is_never_deleted(self, project: SimpleNamespace) -> None:
        with pytest.raises(TrunkProtectionError):
            await GitWorktreeAdapter().delete_branch(project.path, "main", trunk_branch="main")
        assert await rev_parse(project.path, "refs/heads/main")


class TestOverlap:
    async def test_overlap_includes_uncommitted_changes(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        (path / "README.md").write_text("# edited in the copy\n")
        await commit_file(project.path, "README.md", "# edited on trunk\n")
        await commit_file(project.path, "CHANGELOG.md", "- entry\n")

        record = await isolation.compute_overlap(project.repo, "item-1")
        assert record.overlap == {"README.md"}
        assert "CHANGELOG.md" in record.trunk_paths

    async def test_disjoint_changes_do_not_overlap(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "src/feature.py", "print('hi')\n")
        await commit_file(project.path, "docs/other.md", "other\n")
        assert (await isolation.compute_overlap(project.repo, "item-1")).is_empty


class TestFinalizeLocal:
    async def test_independent_items_both_land_linearly(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        first = await isolation.create_isolated_copy(project.repo, "f1")
        second = await isolation.create_isolated_copy(project.repo, "f2")
        await commit_file(first, "f1.txt", "one\n")
        (second / "f2.txt").write_text("two\n")

        one = await isolation.finalize(project.repo, "f1", title="Add f1")
        two = await isolation.finalize(project.repo, "f2", title="Add f2")

        assert one.integrated and two.integrated
        assert await rev_parse(project.path, "refs/heads/main") == two.commit_sha
        assert await count_commits(project.path, "main") == 3
        assert await run_git(project.path, "show", "main:f1.txt") == "one"
        assert await run_git(project.path, "show", "main:f2.txt") == "two"
        assert not first.exists() and not second.exists()
        assert await run_git(project.path, "branch", "--list", "bonsai/*") == ""

    async def test_simultaneous_finalizes_run_one_at_a_time(
        self,
        isolation: IsolationProvider,
        project: SimpleNamespace,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        first = await isolation.create_isolated_copy(project.repo, "s1")
        second = await isolation.create_isolated_copy(project.repo, "s2")
        await commit_file(first, "s1.txt", "one\n")
        await commit_file(second, "s2.txt", "two\n")
        events: list[str] = []
        rebase = isolation._git.rebase

        async def slow_rebase(path, onto):
            events.append("enter")
            if len(events) == 1:
                await asyncio.sleep(0.3)
            try:
                return await rebase(path, onto)
            finally:
                events.append("exit")

        monkeypatch.setattr(isolation._git, "rebase", slow_rebase)

        one, two = await asyncio.gather(
            isolation.finalize(project.repo, "s1", title="Add s1"),
            isolation.finalize(project.repo, "s2", title="Add s2"),
        )

        assert events == ["enter", "exit", "enter", "exit"]
        assert one.integrated and two.integrated
        assert await rev_parse(project.path, "refs/heads/main") == two.commit_sha
        assert await run_git(project.path, "show", "main:s1.txt") == "one"
        assert await run_git(project.path, "show", "main:s2.txt") == "two"

    async def test_uncommitted_work_is_committed_with_item_trailer(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        (path / "feature.txt").write_text("feature\n")

        result = await isolation.finalize(project.repo, "item-1", title="Ship feature")

        assert result.status is FinalizeStatus.INTEGRATED
        body = await run_git(project.path, "log", "-1", "--format=%B", "main")
        assert body.startswith("Ship feature")
        assert "bonsai-item: item-1" in body

    async def test_trunk_checked_out_elsewhere_moves_by_compare_and_swap(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        await run_git(project.path, "checkout", "--quiet", "-b", "scratch")
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "feature.txt", "feature\n")

        result = await isolation.finalize(project.repo, "item-1")

        assert result.integrated
        assert await rev_parse(project.path, "refs/heads/main") == result.commit_sha
        assert await run_git(project.path, "rev-parse", "--abbrev-ref", "HEAD") == "scratch"

    async def test_textual_conflict_leaves_trunk_untouched(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        first = await isolation.create_isolated_copy(project.repo, "a")
        second = await isolation.create_isolated_copy(project.repo, "b")
        await commit_file(first, "README.md", "# version a\n")
        await commit_file(second, "README.md", "# version b\n")
        assert (await isolation.finalize(project.repo, "a")).integrated
        trunk_before = await rev_parse(project.path, "refs/heads/main")

        result = await isolation.finalize(project.repo, "b")

        assert result.status is FinalizeStatus.CONFLICT
        assert result.conflict_files == ("README.md",)
        assert result.conflict_kind is ConflictKind.MACHINE_RESOLVABLE
        assert "README.md" in result.message
        assert await rev_parse(project.path, "refs/heads/main") == trunk_before
        assert second.exists()
        assert await run_git(second, "status", "--porcelain") == ""
        assert (second / "README.md").read_text() == "# version b\n"

    async def test_conflict_on_sensitive_path_needs_a_human(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        await commit_file(project.path, "poetry.lock", "base\n")
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "poetry.lock", "item\n")
        await commit_file(project.path, "poetry.lock", "trunk\n")

        result = await isolation.finalize(project.repo, "item-1")

        assert result.status is FinalizeStatus.CONFLICT
        assert result.conflict_kind is ConflictKind.HUMAN_REQUIRED

    async def test_missing_working_copy_is_a_conflict(
        self, isolation: IsolationProvider, project: SimpleNamespace
    ) -> None:
        trunk_before = await rev_parse(project.path, "refs/heads/main")
        result = await isolation.finalize(project.repo, "never-created")
        assert result.status is FinalizeStatus.CONFLICT
        assert "missing" in result.message
        assert await rev_parse(project.path, "refs/heads/main") == trunk_before


class TestFinalizeWithRemote:
    async def test_push_publishes_and_local_trunk_follows(
        self, isolation: IsolationProvider, project: SimpleNamespace, tmp_path: Path
    ) -> None:
        origin = await add_bare_remote(project.path, tmp_path / "origin.git")
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "feature.txt", "feature\n")

        result = await isolation.finalize(project.repo, "item-1")

        assert result.integrated
        assert await rev_parse(origin, "refs/heads/main") == result.commit_sha
        assert await rev_parse(project.path, "refs/heads/main") == result.commit_sha

    async def test_replays_onto_commits_pushed_by_others(
        self, isolation: IsolationProvider, project: SimpleNamespace, tmp_path: Path
    ) -> None:
        origin = await add_bare_remote(project.path, tmp_path / "origin.git")
        path = await isolation.create_isolated_copy(project.repo, "item-1")
        await commit_file(path, "feature.txt", "feature\n")

        other = tmp_path / "other-clone"
        await run_git(tmp_path, "clone", "--quiet", "--branch", "main", str(origin), str(other))
        await run_git(other, "config", "user.email", "other@bonsai.invalid")
        await run_git(other, "config", "user.name", "Other")
        upstream = await commit_file(other, "upstream.txt", "upstream\n")
        await run_git(other, "push", "--quiet", "origin", "HEAD:refs/heads/main")

        result = await isolation.finalize(project.repo, "item-1")

        assert result.integrated
        remote_tip = await rev_parse(origin, "refs/heads/main")
        assert remote_tip == result.commit_sha
        await run_git(origin, "merge-base", "--is-ancestor", upstream, remote_tip)
        assert await count_commits(origin, "main") == 3
