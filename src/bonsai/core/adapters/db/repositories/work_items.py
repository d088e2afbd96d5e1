"""Work item repository: lookups, atomic lease claims and state updates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, update
from sqlmodel import col, select

from bonsai.core.adapters.db.repositories.base import RepositoryBase
from bonsai.core.adapters.db.schema import WorkItem
from bonsai.core.errors import ContentionError
from bonsai.core.models.enums import Phase
from bonsai.core.models.state_machine import LeaseAbandoned, Start, transition
from bonsai.core.time import ensure_utc, utc_now

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.sql import ColumnElement

    from bonsai.core.models.state_machine import Event

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "description",
        "priority_boost",
        "agent_name",
        "last_agent_activity_at",
        "last_human_activity_at",
        "seen_message_id",
        "pre_run_sub_state",
        "isolated_working_copy_path",
        "branch_name",
        "artifacts",
    }
)


@dataclass(frozen=True, slots=True)
class Lease:
    """Advisory claim on a work item; never renewed in place."""

    item_id: str
    owner_run_id: str
    acquired_at: datetime
    expires_at: datetime


class WorkItemRepository(RepositoryBase):
    """Async repository for work items and their inline leases."""

    async def create(
        self,
        *,
        project_id: str,
        title: str,
        description: str = "",
        priority_boost: int = 0,
        agent_name: str | None = None,
    ) -> WorkItem:
        """Create a work item in the backlog."""
        async with self._lock:
            async with self._get_session() as session:
                item = WorkItem(
                    project_id=project_id,
                    title=title,
                    description=description,
                    priority_boost=priority_boost,
                    agent_name=agent_name,
                )
                session.add(item)
                await session.commit()
                await session.refresh(item)
                return item

    async def get(self, item_id: str) -> WorkItem | None:
        async with self._get_session() as session:
            return await session.get(WorkItem, item_id)

    async def list_where(self, *predicates: ColumnElement[bool]) -> list[WorkItem]:
        """Return items matching every predicate, ordered by creation time."""
        async with self._get_session() as session:
            statement = select(WorkItem)
            for predicate in predicates:
                statement = statement.where(predicate)
            statement = statement.order_by(col(WorkItem.created_at).asc(), col(WorkItem.id).asc())
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def list_in_phases(self, phases: Iterable[Phase]) -> list[WorkItem]:
        return await self.list_where(col(WorkItem.phase).in_(list(phases)))

    async def claim_lease(
        self,
        item_id: str,
        run_id: str,
        *,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> Lease | None:
        """Claim the item if no unexpired lease exists.

        This is a single conditional ``UPDATE``: of any number of concurrent
        claimers, exactly one sees a changed row.
        """
        acquired_at = now or utc_now()
        expires_at = acquired_at + timedelta(seconds=lease_seconds)
        statement = (
            update(WorkItem)
            .where(col(WorkItem.id) == item_id)
            .where(
                or_(
                    col(WorkItem.active_lock_until).is_(None),
                    col(WorkItem.active_lock_until) <= acquired_at,
                )
            )
            .values(
                lease_owner_run_id=run_id,
                lease_acquired_at=acquired_at,
                active_lock_until=expires_at,
                updated_at=acquired_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._lock:
            async with self._get_session() as session:
                result = await session.execute(statement)
                await session.commit()
        if result.rowcount != 1:
            logger.debug("Lease on %s already held; claim by run %s refused", item_id, run_id)
            return None
        return Lease(
            item_id=item_id,
            owner_run_id=run_id,
            acquired_at=acquired_at,
            expires_at=expires_at,
        )

    async def release_lease(self, item_id: str, run_id: str) -> bool:
        """Clear the lease only if *run_id* still owns it."""
        statement = (
            update(WorkItem)
            .where(col(WorkItem.id) == item_id)
            .where(col(WorkItem.lease_owner_run_id) == run_id)
            .values(
                lease_owner_run_id=None,
                lease_acquired_at=None,
                active_lock_until=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._lock:
            async with self._get_session() as session:
                result = await session.execute(statement)
                await session.commit()
        return result.rowcount == 1

    async def list_expired_leases(self, now: datetime) -> list[WorkItem]:
        return await self.list_where(
            col(WorkItem.active_lock_until).is_not(None),
            col(WorkItem.active_lock_until) <= now,
        )

    async def reclaim_expired_leases(self, now: datetime | None = None) -> list[Lease]:
        """Clear every lease whose expiry is in the past and reset ``AGENT_ACTIVE``.

        Each reclaim is conditional on the lease still being the expired one that
        was read, so concurrent reconcilers never both reclaim the same lease.
        """
        current = now or utc_now()
        reclaimed: list[Lease] = []
        for item in await self.list_expired_leases(current):
            owner = item.lease_owner_run_id
            new_state = transition(
                item.state, LeaseAbandoned(item.pre_run_sub_state), item_id=item.id
            )
            statement = (
                update(WorkItem)
                .where(col(WorkItem.id) == item.id)
                .where(col(WorkItem.active_lock_until) <= current)
                .where(
                    col(WorkItem.lease_owner_run_id) == owner
                    if owner is not None
                    else col(WorkItem.lease_owner_run_id).is_(None)
                )
                .values(
                    lease_owner_run_id=None,
                    lease_acquired_at=None,
                    active_lock_until=None,
                    sub_state=new_state.sub_state,
                    updated_at=current,
                )
                .execution_options(synchronize_session=False)
            )
            async with self._lock:
                async with self._get_session() as session:
                    result = await session.execute(statement)
                    await session.commit()
            if result.rowcount != 1:
                continue
            acquired_at = ensure_utc(item.lease_acquired_at) or current
            expires_at = ensure_utc(item.active_lock_until) or current
            reclaimed.append(
                Lease(
                    item_id=item.id,
                    owner_run_id=owner or "",
                    acquired_at=acquired_at,
                    expires_at=expires_at,
                )
            )
            logger.info("Reclaimed abandoned lease on %s (run %s)", item.id, owner)
        return reclaimed

    async def apply_event(
        self,
        item_id: str,
        event: Event,
        *,
        run_id: str | None = None,
        **changes: Any,
    ) -> WorkItem:
        """Run *event* through the state machine and persist the result with *changes*.

        When *run_id* is given the write only happens while that run still owns
        the item's lease.

        Raises:
            KeyError: the item does not exist.
            ContentionError: *run_id* no longer owns the lease.
            TransitionError: the event is illegal from the item's current state.
        """
        async with self._lock:
            async with self._get_session() as session:
                item = await session.get(WorkItem, item_id)
                if item is None:
                    raise KeyError(item_id)
                if run_id is not None and item.lease_owner_run_id != run_id:
                    raise ContentionError(f"Run {run_id} no longer holds the lease on {item_id}")
                artifacts = {**item.artifacts, **changes.get("artifacts", {})}
                new_state = transition(item.state, event, artifacts=artifacts, item_id=item_id)
                item.phase = new_state.phase
                item.sub_state = new_state.sub_state
                item.requested_phase = new_state.requested_phase
                self._apply_changes(item, changes)
                session.add(item)
                await session.commit()
                await session.refresh(item)
                return item

    async def update_fields(
        self,
        item_id: str,
        *,
        run_id: str | None = None,
        **changes: Any,
    ) -> WorkItem:
        """Persist non-state field changes, guarded by lease ownership like :meth:`apply_event`."""
        async with self._lock:
            async with self._get_session() as session:
                item = await session.get(WorkItem, item_id)
                if item is None:
                    raise KeyError(item_id)
                if run_id is not None and item.lease_owner_run_id != run_id:
                    raise ContentionError(f"Run {run_id} no longer holds the lease on {item_id}")
                self._apply_changes(item, changes)
                session.add(item)
                await session.commit()
                await session.refresh(item)
                return item

    async def start(self, item_id: str) -> WorkItem:
        """External start action: move a backlog item into research."""
        return await self.apply_event(item_id, Start())

    @staticmethod
    def _apply_changes(item: WorkItem, changes: dict[str, Any]) -> None:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown work item field(s): {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            if name == "artifacts":
                value = {**item.artifacts, **value}
            setattr(item, name, value)
        item.updated_at = utc_now()
