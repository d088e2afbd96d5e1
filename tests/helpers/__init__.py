"""Test helpers package."""

from tests.helpers.git import (
    add_bare_remote,
    commit_file,
    configure_git_user,
    count_commits,
    init_git_repo_with_commit,
    rev_parse,
    run_git,
)
from tests.helpers.workers import (
    BudgetedWorker,
    HangingWorker,
    ScriptedWorker,
    StubbornWorker,
    completed,
)

__all__ = [
    "BudgetedWorker",
    "HangingWorker",
    "ScriptedWorker",
    "StubbornWorker",
    "add_bare_remote",
    "commit_file",
    "completed",
    "configure_git_user",
    "count_commits",
    "init_git_repo_with_commit",
    "rev_parse",
    "run_git",
]
