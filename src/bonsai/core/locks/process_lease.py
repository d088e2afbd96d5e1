"""Process-level heartbeat lease: at most one live cycle per machine.

Two mechanisms sit behind :class:`ProcessLease`:

* :class:`FileLockProcessLease` holds an OS file lock via ``filelock`` and keeps
  owner metadata in a sidecar JSON file.
* :class:`ExclusiveCreateProcessLease` relies on ``O_CREAT | O_EXCL`` and
  stores the owner record in the lock file itself.

Both fail closed: a lease held by a live process is never taken over. A lease
whose recorded owner is dead (same host only) is cleaned up and acquisition
is retried once. The filelock mechanism needs no such cleanup: the OS
releases its lock when the holder exits.
"""

from __future__ import annotations

import abc
import contextlib
import json
import logging
import os
import socket
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Protocol

from filelock import FileLock, Timeout

from bonsai.core.config import CURRENT_OS
from bonsai.core.errors import ContentionError
from bonsai.core.locks.process_liveness import owner_is_alive, process_start_time
from bonsai.core.paths import get_cycle_lease_path, get_cycle_lock_path
from bonsai.core.time import utc_now

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    from bonsai.core.config import LeaseMechanismLiteral

logger = logging.getLogger(__name__)

LEASE_RECORD_VERSION = 1
# An exclusive-create lock file with an unreadable record is only reclaimed after this long.
UNREADABLE_RECORD_GRACE_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class LeaseOwner:
    """Owner record written by whoever holds the process lease."""

    version: int
    pid: int
    hostname: str
    acquired_at: str
    process_started_at: float | None = None

    @classmethod
    def current(cls) -> LeaseOwner:
        pid = os.getpid()
        return cls(
            version=LEASE_RECORD_VERSION,
            pid=pid,
            hostname=socket.gethostname(),
            acquired_at=utc_now().isoformat(),
            process_started_at=process_start_time(pid),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, indent=2)

    @classmethod
    def parse(cls, raw: str) -> LeaseOwner | None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            started = data.get("process_started_at")
            return cls(
                version=int(data["version"]),
                pid=int(data["pid"]),
                hostname=str(data["hostname"]),
                acquired_at=str(data["acquired_at"]),
                process_started_at=float(started) if started is not None else None,
            )
        except (KeyError, TypeError, ValueError):
            return None


class ProcessLease(Protocol):
    """One heartbeat cycle's claim on the machine."""

    @property
    def acquired(self) -> bool: ...

    def acquire(self) -> bool: ...

    def release(self) -> None: ...

    def holder(self) -> LeaseOwner | None: ...

    def __enter__(self) -> ProcessLease: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class _ProcessLeaseBase(abc.ABC):
    """Owner bookkeeping and stale detection shared by both mechanisms."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._acquired = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def acquired(self) -> bool:
        return self._acquired

    @abc.abstractmethod
    def acquire(self) -> bool: ...

    @abc.abstractmethod
    def release(self) -> None: ...

    @abc.abstractmethod
    def holder(self) -> LeaseOwner | None: ...

    @staticmethod
    def _is_stale(owner: LeaseOwner) -> bool:
        if owner.pid == os.getpid():
            return False
        if owner.hostname and owner.hostname != socket.gethostname():
            return False
        return not owner_is_alive(owner.pid, owner.process_started_at)

    def __enter__(self) -> _ProcessLeaseBase:
        if not self.acquire():
            holder = self.holder()
            detail = f" (pid {holder.pid} on {holder.hostname})" if holder else ""
            raise ContentionError(f"Heartbeat lease {self._path} is held{detail}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class FileLockProcessLease(_ProcessLeaseBase):
    """OS advisory lock via ``filelock`` plus a JSON owner record beside it."""

    def __init__(self, path: Path, *, lease_path: Path) -> None:
        super().__init__(path)
        self._lease_path = lease_path
        self._lock = FileLock(str(path), blocking=False)

    def acquire(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._try_acquire_lock():
            self._warn_if_record_is_stale()
            return False

        self._acquired = True
        self._lease_path.write_text(LeaseOwner.current().to_json(), encoding="utf-8")
        return True

    def _try_acquire_lock(self) -> bool:
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    def holder(self) -> LeaseOwner | None:
        try:
            raw = self._lease_path.read_text(encoding="utf-8")
        except OSError:
            return None
        return LeaseOwner.parse(raw)

    def _warn_if_record_is_stale(self) -> None:
        # The OS drops the lock with its holder, so a held lock always has a live
        # owner; a dead pid here only means the record is out of date.
        owner = self.holder()
        if owner is not None and self._is_stale(owner):
            logger.warning(
                "Heartbeat lock is held but its record names exited pid %s; leaving it",
                owner.pid,
            )

    def release(self) -> None:
        if not self._acquired:
            return

        try:
            self._lock.release()
        finally:
            self._acquired = False
        with contextlib.suppress(OSError):
            self._lease_path.unlink(missing_ok=True)


class ExclusiveCreateProcessLease(_ProcessLeaseBase):
    """Lock file created with ``O_CREAT | O_EXCL``; its content is the owner record."""

    def acquire(self, *, _retry_stale: bool = True) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        owner = LeaseOwner.current()
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if _retry_stale and self._cleanup_stale_lease():
                return self.acquire(_retry_stale=False)
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(owner.to_json())
            handle.flush()
            os.fsync(handle.fileno())
        self._acquired = True
        return True

    def holder(self) -> LeaseOwner | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError:
            return None
        return LeaseOwner.parse(raw)

    def _cleanup_stale_lease(self) -> bool:
        owner = self.holder()
        if owner is None:
            if not self._unreadable_record_expired():
                return False
            logger.warning("Reclaiming heartbeat lock file with unreadable owner record")
        elif not self._is_stale(owner):
            return False
        else:
            logger.warning(
                "Reclaiming stale heartbeat lease (pid=%s since %s)", owner.pid, owner.acquired_at
            )
        with contextlib.suppress(FileNotFoundError):
            self._path.unlink()
        return True

    def _unreadable_record_expired(self) -> bool:
        try:
            modified = self._path.stat().st_mtime
        except OSError:
            return True
        return utc_now().timestamp() - modified > UNREADABLE_RECORD_GRACE_SECONDS

    def release(self) -> None:
        if not self._acquired:
            return
        self._acquired = False
        owner = self.holder()
        if owner is not None and owner.pid != os.getpid():
            logger.warning("Heartbeat lock file now belongs to pid %s; leaving it", owner.pid)
            return
        with contextlib.suppress(OSError):
            self._path.unlink()


def resolve_lease_mechanism(mechanism: LeaseMechanismLiteral) -> str:
    """Map ``auto`` to the primitive suited to the current OS."""
    if mechanism != "auto":
        return mechanism
    if CURRENT_OS in {"linux", "macos", "windows"}:
        return "filelock"
    return "exclusive-create"


def create_process_lease(
    mechanism: LeaseMechanismLiteral = "auto",
    *,
    lock_path: Path | None = None,
    lease_path: Path | None = None,
) -> ProcessLease:
    """Build the process lease for *mechanism* at the well-known (or given) paths."""
    path = lock_path or get_cycle_lock_path()
    match resolve_lease_mechanism(mechanism):
        case "exclusive-create":
            return ExclusiveCreateProcessLease(path)
        case _:
            return FileLockProcessLease(path, lease_path=lease_path or get_cycle_lease_path())
