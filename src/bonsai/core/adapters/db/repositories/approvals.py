from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlmodel import col, select

from bonsai.core.adapters.db.repositories.base import RepositoryBase
from bonsai.core.adapters.db.schema import Approval, WorkItem
from bonsai.core.time import utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from bonsai.core.models.enums import Phase


class ApprovalRepository(RepositoryBase):
    """External approval signals. The dispatcher consumes each one exactly once."""

    async def record(self, work_item_id: str, target_phase: Phase, *, note: str = "") -> Approval:
        """Record a human approval to enter *target_phase*."""
        async with self._lock:
            async with self._get_session() as session:
                approval = Approval(work_item_id=work_item_id, target_phase=target_phase, note=note)
                session.add(approval)
                item = await session.get(WorkItem, work_item_id)
                if item is not None:
                    item.last_human_activity_at = approval.created_at
                    session.add(item)
                await session.commit()
                await session.refresh(approval)
                return approval

    async def list_pending(self) -> list[Approval]:
        async with self._get_session() as session:
            result = await session.execute(
                select(Approval)
                .where(col(Approval.consumed_at).is_(None))
                .order_by(col(Approval.created_at).asc(), col(Approval.id).asc())
            )
            return list(result.scalars().all())

    async def has_pending(self, work_item_id: str, target_phase: Phase) -> bool:
        async with self._get_session() as session:
            result = await session.execute(
                select(Approval.id)
                .where(Approval.work_item_id == work_item_id)
                .where(col(Approval.target_phase) == target_phase)
                .where(col(Approval.consumed_at).is_(None))
                .limit(1)
            )
            return result.first() is not None

    async def consume(
        self, approval_id: int, *, outcome: str, now: datetime | None = None
    ) -> bool:
        """Mark an approval consumed; False if someone else consumed it first."""
        statement = (
            update(Approval)
            .where(col(Approval.id) == approval_id)
            .where(col(Approval.consumed_at).is_(None))
            .values(consumed_at=now or utc_now(), outcome=outcome)
            .execution_options(synchronize_session=False)
        )
        async with self._lock:
            async with self._get_session() as session:
                result = await session.execute(statement)
                await session.commit()
        return result.rowcount == 1
