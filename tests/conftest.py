"""Pytest fixtures for Bonsai tests."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

from tests.helpers.isolation import TEST_ENV, apply_test_env

apply_test_env()

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Generator

    from bonsai.core.adapters.db.store import Store
    from bonsai.core.config import BonsaiConfig


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Re-apply the isolated paths in case a test changed them."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture(autouse=True)
def _clean_worktree_base() -> Generator[None, None, None]:
    """Ensure worktree temp directories don't leak between tests."""
    yield
    shutil.rmtree(Path(TEST_ENV["BONSAI_WORKTREE_BASE"]), ignore_errors=True)


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[Store]:
    """An initialized store on a temporary SQLite file."""
    from bonsai.core.adapters.db.store import Store

    db = Store(tmp_path / "bonsai.db")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
async def git_repo(tmp_path: Path) -> Path:
    """Create an initialized git repository for testing."""
    from tests.helpers.git import init_git_repo_with_commit

    return await init_git_repo_with_commit(tmp_path / "repo")


@pytest.fixture
async def project(store: Store, git_repo: Path) -> SimpleNamespace:
    """A repository row for ``git_repo`` plus one project using it."""
    repo = await store.projects.add_repo(git_repo, name="repo", trunk_branch="main")
    proj = await store.projects.add_project("Project", repo_id=repo.id)
    return SimpleNamespace(repo=repo, project=proj, path=git_repo)


@pytest.fixture
def config(tmp_path: Path) -> BonsaiConfig:
    """A small, deterministic configuration for dispatcher tests."""
    from bonsai.core.config import BonsaiConfig

    return BonsaiConfig.model_validate(
        {
            "heartbeat": {
                "cycle_timeout_seconds": 120,
                "max_run_seconds": 60,
                "max_concurrency": 2,
                "timeout_grace_seconds": 1.0,
                "lease_mechanism": "filelock",
            },
            "worker": {"command": {"*": "bonsai-test-worker"}},
        }
    )
