"""Explicit work item state machine.

Every phase/sub-state change goes through :func:`transition`. Events are small
frozen dataclasses; an event that is not legal from the current state raises
:class:`~bonsai.core.errors.TransitionError` on the first call instead of being
silently ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from bonsai.core.errors import MissingArtifactError, TransitionError
from bonsai.core.models.enums import WORKABLE_PHASES, Phase, SubState

if TYPE_CHECKING:
    from collections.abc import Mapping

FORWARD_EDGES: dict[Phase, Phase] = {
    Phase.BACKLOG: Phase.RESEARCH,
    Phase.RESEARCH: Phase.PLANNING,
    Phase.PLANNING: Phase.IMPLEMENTING,
    Phase.IMPLEMENTING: Phase.VERIFICATION,
    Phase.VERIFICATION: Phase.DONE,
}

# Artifact each workable phase produces when the agent reports completion.
PHASE_ARTIFACTS: dict[Phase, str] = {
    Phase.RESEARCH: "research",
    Phase.PLANNING: "plan",
    Phase.IMPLEMENTING: "implementation",
    Phase.VERIFICATION: "verification",
}

# Artifacts that must exist before a phase may be entered.
REQUIRED_ARTIFACTS: dict[Phase, tuple[str, ...]] = {
    Phase.RESEARCH: (),
    Phase.PLANNING: ("research",),
    Phase.IMPLEMENTING: ("plan",),
    Phase.VERIFICATION: ("implementation",),
    Phase.DONE: ("implementation", "verification"),
}


@dataclass(frozen=True, slots=True)
class ItemState:
    """The state machine's view of a work item."""

    phase: Phase
    sub_state: SubState | None = None
    requested_phase: Phase | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase is Phase.DONE

    @property
    def awaiting_approval(self) -> bool:
        return self.requested_phase is not None


@dataclass(frozen=True, slots=True)
class Start:
    """External start action; the only forward edge without an approval."""


@dataclass(frozen=True, slots=True)
class Approve:
    """Recorded human approval to enter ``target``."""

    target: Phase


@dataclass(frozen=True, slots=True)
class Rework:
    """Human sends verified work back to implementation."""

    reason: str = ""


@dataclass(frozen=True, slots=True)
class AgentStarted:
    pass


@dataclass(frozen=True, slots=True)
class AgentAsked:
    """The worker posted a question and cannot continue without a human."""


@dataclass(frozen=True, slots=True)
class AgentRequestedAdvance:
    """The worker finished its phase and asks for the gate to ``target``."""

    target: Phase


@dataclass(frozen=True, slots=True)
class AgentFinished:
    """The worker ended without asking anything or finishing its phase."""

    prior: SubState | None = None


@dataclass(frozen=True, slots=True)
class AgentFailed:
    """The worker timed out or errored; ``prior`` is the sub-state before it started."""

    prior: SubState | None = None


@dataclass(frozen=True, slots=True)
class HumanReplied:
    pass


@dataclass(frozen=True, slots=True)
class LeaseAbandoned:
    """The run holding the item is gone; ``prior`` is the sub-state before it started."""

    prior: SubState | None = None


@dataclass(frozen=True, slots=True)
class IntegrationConflict:
    """Finalize could not replay the item onto trunk."""

    human_required: bool


type Event = (
    Start
    | Approve
    | Rework
    | AgentStarted
    | AgentAsked
    | AgentRequestedAdvance
    | AgentFinished
    | AgentFailed
    | HumanReplied
    | LeaseAbandoned
    | IntegrationConflict
)


def next_phase(phase: Phase) -> Phase | None:
    """Return the next phase in the forward workflow."""
    return FORWARD_EDGES.get(phase)


def missing_artifacts(target: Phase, artifacts: Mapping[str, str]) -> tuple[str, ...]:
    """Return the required artifacts for *target* that are absent or empty."""
    return tuple(
        name for name in REQUIRED_ARTIFACTS.get(target, ()) if not artifacts.get(name, "").strip()
    )


def is_human_gated(state: ItemState, *, has_unread: bool) -> bool:
    """Return whether the item waits on a human rather than being actionable."""
    if state.sub_state is SubState.BLOCKED_ON_HUMAN:
        return True
    return state.awaiting_approval and not has_unread


def _require_workable(state: ItemState, event: Event) -> None:
    if state.phase not in WORKABLE_PHASES:
        raise TransitionError(f"{type(event).__name__} is not valid in phase {state.phase}")


def transition(
    state: ItemState,
    event: Event,
    *,
    artifacts: Mapping[str, str] | None = None,
    item_id: str | None = None,
) -> ItemState:
    """Apply *event* to *state* and return the resulting state.

    Raises:
        TransitionError: the event is not legal from *state*.
        MissingArtifactError: a forward edge's required artifacts are absent.
    """
    if state.is_terminal:
        raise TransitionError(f"{Phase.DONE} accepts no further transitions", item_id=item_id)

    match event:
        case Start():
            if state.phase is not Phase.BACKLOG:
                raise TransitionError(f"Cannot start an item in {state.phase}", item_id=item_id)
            return ItemState(Phase.RESEARCH)

        case Approve(target=target):
            expected = FORWARD_EDGES[state.phase]
            if target is not expected:
                raise TransitionError(
                    f"Approval for {target} does not follow {state.phase}", item_id=item_id
                )
            if state.sub_state is SubState.AGENT_ACTIVE:
                raise TransitionError("Cannot advance while an agent is active", item_id=item_id)
            missing = missing_artifacts(target, artifacts or {})
            if missing:
                raise MissingArtifactError(target, missing, item_id=item_id)
            return ItemState(target)

        case Rework():
            if state.phase is not Phase.VERIFICATION:
                raise TransitionError(
                    f"Rework is only possible from {Phase.VERIFICATION}", item_id=item_id
                )
            return ItemState(Phase.IMPLEMENTING, SubState.RETURNED_FOR_REWORK)

        case IntegrationConflict(human_required=human_required):
            if state.phase is not Phase.VERIFICATION:
                raise TransitionError(
                    f"Integration happens from {Phase.VERIFICATION}, not {state.phase}",
                    item_id=item_id,
                )
            sub_state = (
                SubState.BLOCKED_ON_HUMAN if human_required else SubState.RETURNED_FOR_REWORK
            )
            return ItemState(Phase.IMPLEMENTING, sub_state)

        case AgentStarted():
            _require_workable(state, event)
            if state.sub_state is SubState.BLOCKED_ON_HUMAN:
                raise TransitionError("Item is blocked on a human", item_id=item_id)
            return replace(state, sub_state=SubState.AGENT_ACTIVE)

        case AgentAsked():
            _require_workable(state, event)
            return replace(state, sub_state=SubState.BLOCKED_ON_HUMAN)

        case AgentRequestedAdvance(target=target):
            _require_workable(state, event)
            if target is not FORWARD_EDGES[state.phase]:
                raise TransitionError(
                    f"Agent cannot request {target} from {state.phase}", item_id=item_id
                )
            return replace(state, sub_state=None, requested_phase=target)

        case AgentFinished(prior=prior) | AgentFailed(prior=prior):
            _require_workable(state, event)
            keep = prior if prior is SubState.RETURNED_FOR_REWORK else None
            return replace(state, sub_state=keep)

        case HumanReplied():
            if state.sub_state is SubState.BLOCKED_ON_HUMAN:
                return replace(state, sub_state=None)
            return state

        case LeaseAbandoned(prior=prior):
            if state.sub_state is SubState.AGENT_ACTIVE:
                keep = prior if prior is SubState.RETURNED_FOR_REWORK else None
                return replace(state, sub_state=keep)
            return state

    raise TransitionError(f"Unknown event {event!r}", item_id=item_id)
