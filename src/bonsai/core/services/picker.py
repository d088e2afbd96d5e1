"""Priority scoring and selection of actionable work items.

Everything in this module is a pure function of the snapshots and the clock
passed in, so the same persisted state always yields the same pick order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from bonsai.core.models.enums import WORKABLE_PHASES, Phase, SubState
from bonsai.core.models.state_machine import ItemState, is_human_gated
from bonsai.core.time import ensure_utc

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from bonsai.core.adapters.db.schema import Project, WorkItem

PHASE_BASE_SCORES: dict[Phase, int] = {
    Phase.IMPLEMENTING: 200,
    Phase.RESEARCH: 150,
    Phase.PLANNING: 100,
    Phase.VERIFICATION: 100,
}
UNREAD_BONUS = 200
REWORK_BONUS = 100
HUMAN_WAIT_MAX_BONUS = 100.0
HUMAN_WAIT_CAP_HOURS = 4.0
STARVATION_BONUS = 100
DEFAULT_STARVATION_HOURS = 24.0


@dataclass(frozen=True, slots=True)
class ItemSnapshot:
    """Everything the picker needs to know about one work item."""

    item_id: str
    phase: Phase
    sub_state: SubState | None = None
    requested_phase: Phase | None = None
    priority_boost: int = 0
    created_at: datetime | None = None
    last_agent_activity_at: datetime | None = None
    last_human_activity_at: datetime | None = None
    active_lock_until: datetime | None = None
    has_unread: bool = False
    worker_identity: str | None = None

    @property
    def state(self) -> ItemState:
        return ItemState(self.phase, self.sub_state, self.requested_phase)

    @classmethod
    def from_item(
        cls, item: WorkItem, project: Project | None = None, *, has_unread: bool = False
    ) -> ItemSnapshot:
        identity = item.agent_name or (project.agent_name if project is not None else None)
        return cls(
            item_id=item.id,
            phase=item.phase,
            sub_state=item.sub_state,
            requested_phase=item.requested_phase,
            priority_boost=item.priority_boost,
            created_at=ensure_utc(item.created_at),
            last_agent_activity_at=ensure_utc(item.last_agent_activity_at),
            last_human_activity_at=ensure_utc(item.last_human_activity_at),
            active_lock_until=ensure_utc(item.active_lock_until),
            has_unread=has_unread,
            worker_identity=identity,
        )


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    base: int = 0
    unread: int = 0
    rework: int = 0
    human_wait: float = 0.0
    boost: int = 0
    starvation: int = 0

    @property
    def total(self) -> float:
        bonuses = self.unread + self.rework + self.human_wait + self.starvation
        return self.base + self.boost + bonuses


@dataclass(frozen=True, slots=True)
class PickedItem:
    snapshot: ItemSnapshot
    score: ScoreBreakdown

    @property
    def item_id(self) -> str:
        return self.snapshot.item_id


def exclusion_reason(snapshot: ItemSnapshot, now: datetime) -> str | None:
    """Return why *snapshot* is not actionable at *now*, or None when it is."""
    if snapshot.active_lock_until is not None and snapshot.active_lock_until > now:
        return "leased"
    if snapshot.phase not in WORKABLE_PHASES:
        return f"phase {snapshot.phase}"
    if snapshot.sub_state is SubState.AGENT_ACTIVE:
        return "agent active"
    if is_human_gated(snapshot.state, has_unread=snapshot.has_unread):
        return "waiting on human"
    return None


def _hours_since(moment: datetime | None, now: datetime) -> float | None:
    if moment is None:
        return None
    return max(0.0, (now - moment).total_seconds() / 3600.0)


def score_item(
    snapshot: ItemSnapshot,
    now: datetime,
    *,
    starvation_hours: float = DEFAULT_STARVATION_HOURS,
) -> ScoreBreakdown:
    """Score one actionable item."""
    unread = UNREAD_BONUS if snapshot.has_unread else 0
    if snapshot.sub_state is SubState.BLOCKED_ON_HUMAN:
        unread = 0

    human_hours = _hours_since(snapshot.last_human_activity_at, now)
    human_wait = 0.0
    if human_hours is not None:
        human_wait = min(human_hours, HUMAN_WAIT_CAP_HOURS) / HUMAN_WAIT_CAP_HOURS
        human_wait *= HUMAN_WAIT_MAX_BONUS

    agent_hours = _hours_since(snapshot.last_agent_activity_at or snapshot.created_at, now)
    starving = agent_hours is not None and agent_hours > starvation_hours

    return ScoreBreakdown(
        base=PHASE_BASE_SCORES.get(snapshot.phase, 0),
        unread=unread,
        rework=REWORK_BONUS if snapshot.sub_state is SubState.RETURNED_FOR_REWORK else 0,
        human_wait=human_wait,
        boost=snapshot.priority_boost,
        starvation=STARVATION_BONUS if starving else 0,
    )


def _sort_key(picked: PickedItem) -> tuple[float, float, str]:
    snapshot = picked.snapshot
    # Ties go to the item that has waited longest for an agent.
    last_served = snapshot.last_agent_activity_at or snapshot.created_at
    waited_since = last_served.timestamp() if last_served is not None else 0.0
    return (-picked.score.total, waited_since, snapshot.item_id)


def rank_actionable(
    snapshots: Iterable[ItemSnapshot],
    *,
    now: datetime,
    starvation_hours: float = DEFAULT_STARVATION_HOURS,
) -> list[PickedItem]:
    """Score and order every actionable snapshot, highest first."""
    ranked = [
        PickedItem(snapshot, score_item(snapshot, now, starvation_hours=starvation_hours))
        for snapshot in snapshots
        if exclusion_reason(snapshot, now) is None
    ]
    ranked.sort(key=_sort_key)
    return ranked


def pick_actionable(
    snapshots: Iterable[ItemSnapshot],
    *,
    now: datetime,
    limit: int,
    starvation_hours: float = DEFAULT_STARVATION_HOURS,
) -> list[PickedItem]:
    """Select up to *limit* items to dispatch this cycle.

    Items sharing a named worker identity are mutually exclusive: only the
    highest-ranked one is selected. Items without an identity are unconstrained.
    """
    if limit <= 0:
        return []
    picked: list[PickedItem] = []
    taken_identities: set[str] = set()
    for candidate in rank_actionable(snapshots, now=now, starvation_hours=starvation_hours):
        identity = candidate.snapshot.worker_identity
        if identity is not None:
            if identity in taken_identities:
                continue
            taken_identities.add(identity)
        picked.append(candidate)
        if len(picked) >= limit:
            break
    return picked
