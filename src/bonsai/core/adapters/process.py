"""Subprocess execution for git commands and the command worker."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

SPAWN_RETRY_DELAY_SECONDS = 0.1


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Exit status and raw output of a finished process."""

    returncode: int
    stdout: bytes
    stderr: bytes

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ProcessExecutionError(RuntimeError):
    """A checked process failed to start, overran its timeout, or exited nonzero."""

    def __init__(
        self,
        code: str,
        command: tuple[str, ...],
        *,
        returncode: int | None = None,
        detail: str = "",
    ) -> None:
        self.code = code
        self.command = command
        self.returncode = returncode
        self.detail = detail
        rc = f" (rc={returncode})" if returncode is not None else ""
        suffix = f": {detail}" if detail else ""
        super().__init__(f"[{code}] {' '.join(command)}{rc}{suffix}")


async def spawn_exec(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin: int | None = None,
    stdout: int | None = None,
    stderr: int | None = None,
) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        executable,
        *args,
        cwd=None if cwd is None else str(cwd),
        env=None if env is None else dict(env),
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
    )


async def _stop_process(process: asyncio.subprocess.Process, *, terminate_grace: float) -> None:
    """SIGTERM first when a grace period is given, SIGKILL once it runs out."""
    if terminate_grace > 0:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=terminate_grace)
            return
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM; killing", process.pid)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    with contextlib.suppress(ProcessLookupError):
        await process.wait()


async def run_exec_capture(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    input_bytes: bytes | None = None,
    timeout: float | None = None,
    terminate_grace: float = 0.0,
    spawn_attempts: int = 1,
) -> ProcessResult:
    """Run a process to completion and capture its output.

    Raises:
        TimeoutError: the process outlived *timeout*; it has been stopped.
        OSError: the executable could not be started after *spawn_attempts* tries.
    """
    attempt = 1
    while True:
        try:
            process = await spawn_exec(
                executable,
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE if input_bytes is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            break
        except OSError:
            if attempt >= spawn_attempts:
                raise
            logger.debug("Retrying %s after OSError (attempt %d)", executable, attempt)
            attempt += 1
            await asyncio.sleep(SPAWN_RETRY_DELAY_SECONDS)

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate(input_bytes)
    except TimeoutError:
        await _stop_process(process, terminate_grace=terminate_grace)
        raise
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        raise

    returncode = process.returncode if process.returncode is not None else 1
    return ProcessResult(returncode=returncode, stdout=stdout or b"", stderr=stderr or b"")


async def run_exec_checked(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    spawn_attempts: int = 1,
) -> ProcessResult:
    """Like :func:`run_exec_capture` but every failure is a :class:`ProcessExecutionError`."""
    command = (executable, *args)
    try:
        result = await run_exec_capture(
            executable,
            *args,
            cwd=cwd,
            env=env,
            timeout=timeout,
            spawn_attempts=spawn_attempts,
        )
    except TimeoutError as exc:
        raise ProcessExecutionError(
            "PROCESS_TIMEOUT", command, detail=f"exceeded {timeout}s"
        ) from exc
    except OSError as exc:
        raise ProcessExecutionError("PROCESS_OS_ERROR", command, detail=str(exc)) from exc

    if result.returncode != 0:
        detail = result.stderr_text().strip() or result.stdout_text().strip()
        raise ProcessExecutionError(
            "PROCESS_NONZERO_EXIT", command, returncode=result.returncode, detail=detail
        )
    return result


__all__ = [
    "ProcessExecutionError",
    "ProcessResult",
    "run_exec_capture",
    "run_exec_checked",
    "spawn_exec",
]
