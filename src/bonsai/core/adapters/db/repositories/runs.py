from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlmodel import col, select

from bonsai.core.adapters.db.repositories.base import RepositoryBase
from bonsai.core.adapters.db.schema import RunRecord, WorkItem
from bonsai.core.errors import SealedRunError
from bonsai.core.models.enums import RunStatus
from bonsai.core.time import utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from bonsai.core.models.enums import TaskType


class RunRepository(RepositoryBase):
    """Append-only run history. A record is written once as ``running`` and sealed once."""

    async def start(
        self,
        work_item_id: str,
        task_type: TaskType,
        *,
        run_id: str | None = None,
        started_at: datetime | None = None,
    ) -> RunRecord:
        async with self._lock:
            async with self._get_session() as session:
                record = RunRecord(
                    work_item_id=work_item_id,
                    task_type=task_type,
                    status=RunStatus.RUNNING,
                    started_at=started_at or utc_now(),
                )
                if run_id is not None:
                    record.id = run_id
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record

    async def get(self, run_id: str) -> RunRecord | None:
        async with self._get_session() as session:
            return await session.get(RunRecord, run_id)

    async def seal(
        self,
        run_id: str,
        status: RunStatus,
        *,
        ended_at: datetime | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error: str | None = None,
        transcript_path: str | None = None,
    ) -> RunRecord:
        """Seal a running record.

        Raises:
            ValueError: *status* is ``running``.
            KeyError: the record does not exist.
            SealedRunError: the record was already sealed.
        """
        if status is RunStatus.RUNNING:
            raise ValueError("A run cannot be sealed as running")
        statement = (
            update(RunRecord)
            .where(col(RunRecord.id) == run_id)
            .where(col(RunRecord.status) == RunStatus.RUNNING)
            .values(
                status=status,
                ended_at=ended_at or utc_now(),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=error,
                transcript_path=transcript_path,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._lock:
            async with self._get_session() as session:
                result = await session.execute(statement)
                await session.commit()
                record = await session.get(RunRecord, run_id, populate_existing=True)
        if record is None:
            raise KeyError(run_id)
        if result.rowcount != 1:
            raise SealedRunError(run_id)
        return record

    async def list_for_item(self, work_item_id: str) -> list[RunRecord]:
        async with self._get_session() as session:
            result = await session.execute(
                select(RunRecord)
                .where(RunRecord.work_item_id == work_item_id)
                .order_by(col(RunRecord.started_at).asc(), col(RunRecord.id).asc())
            )
            return list(result.scalars().all())

    async def list_orphaned(self) -> list[RunRecord]:
        """Return ``running`` records whose item no longer carries their lease."""
        async with self._get_session() as session:
            result = await session.execute(
                select(RunRecord)
                .join(WorkItem, col(WorkItem.id) == col(RunRecord.work_item_id))
                .where(col(RunRecord.status) == RunStatus.RUNNING)
                .where(
                    (col(WorkItem.lease_owner_run_id).is_(None))
                    | (col(WorkItem.lease_owner_run_id) != col(RunRecord.id))
                )
                .order_by(col(RunRecord.started_at).asc(), col(RunRecord.id).asc())
            )
            return list(result.scalars().all())
