"""Process-level and per-repository locking."""

from bonsai.core.locks.process_lease import (
    ExclusiveCreateProcessLease,
    FileLockProcessLease,
    LeaseOwner,
    ProcessLease,
    create_process_lease,
)
from bonsai.core.locks.repo_locks import (
    GuardedGitRunner,
    RepositoryLockManager,
    SharedAccessViolation,
    requires_shared_access,
)

__all__ = [
    "ExclusiveCreateProcessLease",
    "FileLockProcessLease",
    "GuardedGitRunner",
    "LeaseOwner",
    "ProcessLease",
    "RepositoryLockManager",
    "SharedAccessViolation",
    "create_process_lease",
    "requires_shared_access",
]
