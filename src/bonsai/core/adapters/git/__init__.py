"""Git adapter contracts."""

from bonsai.core.adapters.git.operations import (
    GitAdapterBase,
    GitCommandResult,
    GitCommandRunner,
    GitOperationsAdapter,
    GitOperationsProtocol,
    RebaseResult,
    parse_status_paths,
)
from bonsai.core.adapters.git.worktrees import GitWorktreeAdapter, GitWorktreeProtocol

__all__ = [
    "GitAdapterBase",
    "GitCommandResult",
    "GitCommandRunner",
    "GitOperationsAdapter",
    "GitOperationsProtocol",
    "GitWorktreeAdapter",
    "GitWorktreeProtocol",
    "RebaseResult",
    "parse_status_paths",
]
