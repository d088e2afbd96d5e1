"""SQLModel schema for the dispatch core."""

# NOTE: __tablename__ overrides are typed `# type: ignore[bad-override]` throughout
# this file. SQLModel declares __tablename__ as a `@declared_attr` descriptor while
# every concrete table class overrides it with a plain ``str``.

# NOTE: Avoid `from __future__ import annotations` because SQLModel evaluates
# field annotations at class creation time.

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from bonsai.core.models.enums import (
    MessageAuthor,
    MessageKind,
    Phase,
    RunStatus,
    SubState,
    TaskType,
)
from bonsai.core.models.state_machine import ItemState
from bonsai.core.time import ensure_utc, utc_now


class UTCDateTime(TypeDecorator):
    """Store naive UTC in SQLite and hand back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        return ensure_utc(value)


def _new_id() -> str:
    return uuid4().hex[:8]


class Repo(SQLModel, table=True):
    """Shared repository that isolated working copies branch from."""

    __tablename__ = "repos"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True)
    path: str = Field(unique=True, index=True)
    trunk_branch: str = Field(default="main")
    remote_name: str = Field(default="origin")
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class Project(SQLModel, table=True):
    """Project container; pins work items to one repository and, optionally, one worker."""

    __tablename__ = "projects"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True)
    repo_id: str = Field(foreign_key="repos.id", index=True)
    agent_name: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class WorkItem(SQLModel, table=True):
    """Unit of work moving through the gated phases.

    The lease lives inline (``lease_owner_run_id``, ``lease_acquired_at``,
    ``active_lock_until``) so a crash leaves exactly one row to reconcile.
    """

    __tablename__ = "work_items"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    title: str = Field(index=True)
    description: str = Field(default="")
    phase: Phase = Field(default=Phase.BACKLOG, index=True)
    sub_state: SubState | None = Field(default=None, index=True)
    # Sub-state the current run started from; restored if the run is abandoned.
    pre_run_sub_state: SubState | None = Field(default=None)
    requested_phase: Phase | None = Field(default=None)
    priority_boost: int = Field(default=0)
    agent_name: str | None = Field(default=None)
    last_agent_activity_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    last_human_activity_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    seen_message_id: int = Field(default=0)
    lease_owner_run_id: str | None = Field(default=None)
    lease_acquired_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    active_lock_until: datetime | None = Field(default=None, sa_type=UTCDateTime, index=True)
    isolated_working_copy_path: str | None = Field(default=None)
    branch_name: str | None = Field(default=None)
    artifacts: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    @property
    def state(self) -> ItemState:
        return ItemState(self.phase, self.sub_state, self.requested_phase)

    def lease_active(self, now: datetime) -> bool:
        """Return whether the item holds an unexpired lease at *now*."""
        until = ensure_utc(self.active_lock_until)
        return until is not None and until > now


class RunRecord(SQLModel, table=True):
    """Audit record of one worker invocation; immutable once sealed."""

    __tablename__ = "run_records"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_id, primary_key=True)
    work_item_id: str = Field(foreign_key="work_items.id", index=True)
    task_type: TaskType = Field()
    status: RunStatus = Field(default=RunStatus.RUNNING, index=True)
    started_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    ended_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    error: str | None = Field(default=None)
    transcript_path: str | None = Field(default=None)

    @property
    def sealed(self) -> bool:
        return self.status is not RunStatus.RUNNING


class Message(SQLModel, table=True):
    """Append-only communication attached to a work item."""

    __tablename__ = "messages"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    work_item_id: str = Field(foreign_key="work_items.id", index=True)
    author: MessageAuthor = Field(index=True)
    kind: MessageKind = Field(default=MessageKind.COMMENT)
    content: str = Field(default="")
    run_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class Approval(SQLModel, table=True):
    """External approval signal for entering ``target_phase``."""

    __tablename__ = "approvals"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    work_item_id: str = Field(foreign_key="work_items.id", index=True)
    target_phase: Phase = Field()
    note: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    consumed_at: datetime | None = Field(default=None, sa_type=UTCDateTime, index=True)
    outcome: str | None = Field(default=None)


__all__ = [
    "Approval",
    "Message",
    "Project",
    "Repo",
    "RunRecord",
    "UTCDateTime",
    "WorkItem",
]
