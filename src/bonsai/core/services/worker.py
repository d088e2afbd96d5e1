"""Worker invocation boundary: hand a prompt and a working copy to the conversation loop."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bonsai.core.adapters.process import run_exec_capture
from bonsai.core.errors import WorkerError
from bonsai.core.models.enums import Phase, RunStatus, TaskType

if TYPE_CHECKING:
    from bonsai.core.config import WorkerConfig

logger = logging.getLogger(__name__)

type WorkerStatusLiteral = Literal["completed", "blocked", "timeout", "error"]
type WorkerMessageKindLiteral = Literal["question", "status", "completion"]

MAX_ERROR_DETAIL_CHARS = 2000


class WorkerParams(BaseModel):
    """Input to one worker invocation."""

    item_id: str
    run_id: str
    task_type: TaskType
    working_copy_path: Path
    task_prompt: str
    session_dir: Path
    max_duration_ms: int = Field(gt=0)

    @property
    def max_duration_seconds(self) -> float:
        return self.max_duration_ms / 1000.0


class WorkerMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str
    kind: WorkerMessageKindLiteral = "status"

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> str:
        if v is None:
            return "status"
        value = str(v).strip().lower()
        if value in ("question", "status", "completion"):
            return value
        return "status"


class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)


class WorkerResult(BaseModel):
    """Structured result returned by the worker (camelCase keys on the wire)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    status: WorkerStatusLiteral
    messages: list[WorkerMessage] = Field(default_factory=list)
    phase_change: Phase | None = Field(default=None, alias="phaseChange")
    tokens_used: TokenUsage = Field(default_factory=TokenUsage, alias="tokensUsed")
    error: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("phase_change", mode="before")
    @classmethod
    def _normalize_phase(cls, v: Any) -> Any:
        match v:
            case None | "":
                return None
            case str() as raw:
                return raw.strip().upper()
            case _:
                return v

    @property
    def run_status(self) -> RunStatus:
        return RunStatus(self.status)

    def messages_of(self, kind: WorkerMessageKindLiteral) -> list[WorkerMessage]:
        return [message for message in self.messages if message.kind == kind]

    @classmethod
    def failure(cls, status: WorkerStatusLiteral, detail: str) -> WorkerResult:
        return cls(status=status, error=detail, messages=[WorkerMessage(content=detail)])


class Worker(Protocol):
    """The conversation loop, seen from the dispatcher."""

    async def invoke(self, params: WorkerParams) -> WorkerResult: ...


def _extract_last_json_object(text: str) -> dict[str, Any] | None:
    """Extract the last top-level JSON object from a string."""
    in_string = False
    escape = False
    depth = 0
    start: int | None = None
    last: dict[str, Any] | None = None

    for idx, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
            continue
        if ch == "{":
            if depth == 0:
                start = idx
            depth += 1
            continue
        if ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                candidate = text[start : idx + 1]
                start = None
                try:
                    parsed = json.loads(candidate)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    last = parsed
    return last


def parse_worker_output(stdout: str) -> WorkerResult:
    """Parse the worker's final JSON object from its stdout.

    Raises:
        WorkerError: no JSON object was printed or it does not match the contract.
    """
    payload = _extract_last_json_object(stdout)
    if payload is None:
        raise WorkerError("Worker printed no JSON result")
    try:
        return WorkerResult.model_validate(payload)
    except ValidationError as exc:
        raise WorkerError(f"Worker result is invalid: {exc.error_count()} issue(s)") from exc


def _tail(text: str, limit: int = MAX_ERROR_DETAIL_CHARS) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return "..." + stripped[-(limit - 3) :]


class CommandWorker:
    """Run the configured command in the working copy with the prompt on stdin."""

    def __init__(self, config: WorkerConfig, *, terminate_grace: float = 10.0) -> None:
        self._config = config
        self._terminate_grace = terminate_grace

    def _environment(self, params: WorkerParams) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._config.env)
        env.update(
            {
                "BONSAI_ITEM_ID": params.item_id,
                "BONSAI_RUN_ID": params.run_id,
                "BONSAI_TASK_TYPE": params.task_type.value,
                "BONSAI_SESSION_DIR": str(params.session_dir),
                "BONSAI_MAX_DURATION_MS": str(params.max_duration_ms),
            }
        )
        return env

    def transcript_path(self, params: WorkerParams) -> Path:
        return params.session_dir / f"{params.run_id}.log"

    async def invoke(self, params: WorkerParams) -> WorkerResult:
        argv = self._config.argv()
        params.session_dir.mkdir(parents=True, exist_ok=True)
        transcript = self.transcript_path(params)
        logger.info(
            "Invoking worker for %s (%s) in %s",
            params.item_id,
            params.task_type,
            params.working_copy_path,
        )

        try:
            result = await run_exec_capture(
                argv[0],
                *argv[1:],
                cwd=params.working_copy_path,
                env=self._environment(params),
                input_bytes=params.task_prompt.encode("utf-8"),
                timeout=params.max_duration_seconds,
                terminate_grace=self._terminate_grace,
            )
        except TimeoutError:
            detail = f"Worker exceeded its {params.max_duration_seconds:.0f}s budget"
            await self._write_transcript(transcript, params, stdout="", stderr=detail)
            return WorkerResult.failure("timeout", detail)
        except OSError as exc:
            detail = f"Worker command {argv[0]!r} could not start: {exc}"
            await self._write_transcript(transcript, params, stdout="", stderr=detail)
            return WorkerResult.failure("error", detail)

        stdout = result.stdout_text()
        stderr = result.stderr_text()
        await self._write_transcript(transcript, params, stdout=stdout, stderr=stderr)

        if result.returncode != 0:
            detail = _tail(stderr) or _tail(stdout) or "no output"
            message = f"Worker exited with {result.returncode}: {detail}"
            return WorkerResult.failure("error", message)

        try:
            return parse_worker_output(stdout)
        except WorkerError as exc:
            return WorkerResult.failure("error", str(exc))

    @staticmethod
    async def _write_transcript(
        path: Path, params: WorkerParams, *, stdout: str, stderr: str
    ) -> None:
        content = (
            f"# run {params.run_id} item {params.item_id} ({params.task_type})\n\n"
            f"## prompt\n{params.task_prompt}\n\n"
            f"## stdout\n{stdout}\n\n"
            f"## stderr\n{stderr}\n"
        )
        await asyncio.to_thread(path.write_text, content, encoding="utf-8")
