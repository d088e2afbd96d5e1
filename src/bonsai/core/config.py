"""Configuration loader for the Bonsai heartbeat."""

from __future__ import annotations

import asyncio
import os
import platform
import shlex
import tempfile
import tomllib
from typing import TYPE_CHECKING, Literal

import psutil
import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from bonsai.core.paths import ensure_directories, get_config_path

if TYPE_CHECKING:
    from collections.abc import Mapping

from pathlib import Path


def atomic_write(path: Path, content: str) -> None:
    """Write file atomically to avoid partial/corrupt writes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        Path(tmp_path).replace(path)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise


type LeaseMechanismLiteral = Literal["auto", "filelock", "exclusive-create"]

_OS_MAP = {"Linux": "linux", "Darwin": "macos", "Windows": "windows"}
CURRENT_OS: str = _OS_MAP.get(platform.system(), "linux")
LEASE_MECHANISM_VALUES = frozenset({"auto", "filelock", "exclusive-create"})

BYTES_PER_WORKER = 2 * 1024**3
MAX_DERIVED_CONCURRENCY = 4


def get_os_value[T](matrix: Mapping[str, T]) -> T | None:
    """Get OS-specific value with wildcard fallback.

    Args:
        matrix: Dict mapping OS names to values (e.g., {"macos": "cmd1", "*": "cmd2"})

    Returns:
        The value for the current OS, or the wildcard "*" value, or None.
    """
    return matrix.get(CURRENT_OS) or matrix.get("*")


def derive_max_concurrency(available_bytes: int | None = None) -> int:
    """Derive a worker bound from available memory: one per 2 GiB, capped at 4."""
    if available_bytes is None:
        available_bytes = psutil.virtual_memory().available
    return max(1, min(MAX_DERIVED_CONCURRENCY, available_bytes // BYTES_PER_WORKER))


class HeartbeatConfig(BaseModel):
    """Timing and concurrency settings for the periodic cycle."""

    interval_seconds: int = Field(default=60, ge=1, description="External trigger interval")
    cycle_timeout_seconds: int = Field(
        default=1800, ge=1, description="Hard wall-clock cap on one cycle"
    )
    max_run_seconds: int | None = Field(
        default=None,
        ge=1,
        description="Lease length per worker run (None = cycle timeout)",
    )
    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Workers dispatched per cycle (None = derived from available memory)",
    )
    timeout_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Grace after a worker's own budget before it is abandoned",
    )
    starvation_hours: float = Field(default=24.0, gt=0)
    lease_mechanism: LeaseMechanismLiteral = Field(
        default="auto",
        description="Process lease primitive: auto, filelock, or exclusive-create",
    )

    @field_validator("lease_mechanism", mode="before")
    @classmethod
    def validate_lease_mechanism(cls, value: object) -> str:
        """Gracefully coerce unknown mechanisms to auto."""
        match value:
            case str() as mechanism if mechanism in LEASE_MECHANISM_VALUES:
                return mechanism
            case _:
                pass
        return "auto"

    @property
    def lease_seconds(self) -> int:
        return self.max_run_seconds or self.cycle_timeout_seconds

    def resolve_max_concurrency(self) -> int:
        if self.max_concurrency is not None:
            return self.max_concurrency
        return derive_max_concurrency()


class WorkerConfig(BaseModel):
    """Command used to invoke the conversation loop for one work item."""

    command: dict[str, str] = Field(
        default_factory=lambda: {"*": "bonsai-worker"},
        description="OS-specific command; receives the prompt on stdin, prints a JSON result",
    )
    env: dict[str, str] = Field(default_factory=dict)

    def argv(self) -> list[str]:
        raw = get_os_value(self.command)
        if not raw:
            raise ValueError(f"No worker command configured for {CURRENT_OS}")
        return shlex.split(raw)


class IntegrationConfig(BaseModel):
    """Trunk integration and conflict classification policy."""

    trunk_branch: str = Field(default="main")
    remote_name: str = Field(default="origin")
    branch_prefix: str = Field(default="bonsai/")
    human_required_patterns: list[str] = Field(
        default_factory=lambda: ["*.lock", "**/migrations/**", "package-lock.json"],
        description="Conflicts touching these globs always need a human",
    )
    max_machine_resolvable_files: int = Field(
        default=5,
        ge=0,
        description="Conflicts spanning more files than this need a human",
    )

    @model_validator(mode="after")
    def _normalize_prefix(self) -> IntegrationConfig:
        if self.branch_prefix and not self.branch_prefix.endswith("/"):
            self.branch_prefix = f"{self.branch_prefix}/"
        return self


class BonsaiConfig(BaseModel):
    """Root configuration model."""

    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    integration: IntegrationConfig = Field(default_factory=IntegrationConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> BonsaiConfig:
        """Load configuration from TOML file or use defaults."""
        ensure_directories()
        if config_path is None:
            config_path = get_config_path()

        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)

        return cls()

    async def save(self, path: Path) -> None:
        """Serialize current config to TOML file."""
        doc = tomlkit.document()
        for section_name in ("heartbeat", "worker", "integration"):
            section = getattr(self, section_name)
            table = tomlkit.table()
            for key, value in section.model_dump().items():
                if value is not None and value != {}:
                    table[key] = value
            doc[section_name] = table

        content = tomlkit.dumps(doc)
        await asyncio.to_thread(atomic_write, path, content)
