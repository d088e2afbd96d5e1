"""Core domain enums."""

from __future__ import annotations

from enum import StrEnum


class Phase(StrEnum):
    """Work item phases, in workflow order."""

    BACKLOG = "BACKLOG"
    RESEARCH = "RESEARCH"
    PLANNING = "PLANNING"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFICATION = "VERIFICATION"
    DONE = "DONE"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.BACKLOG,
    Phase.RESEARCH,
    Phase.PLANNING,
    Phase.IMPLEMENTING,
    Phase.VERIFICATION,
    Phase.DONE,
)

# Phases in which the dispatcher may hand an item to a worker.
WORKABLE_PHASES: frozenset[Phase] = frozenset(
    {Phase.RESEARCH, Phase.PLANNING, Phase.IMPLEMENTING, Phase.VERIFICATION}
)


class SubState(StrEnum):
    """Signals layered on top of a phase."""

    BLOCKED_ON_HUMAN = "BLOCKED_ON_HUMAN"
    RETURNED_FOR_REWORK = "RETURNED_FOR_REWORK"
    AGENT_ACTIVE = "AGENT_ACTIVE"


class RunStatus(StrEnum):
    """Run record status; everything except RUNNING is sealed."""

    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    ERROR = "error"


SEALED_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.BLOCKED, RunStatus.TIMEOUT, RunStatus.ERROR}
)


class TaskType(StrEnum):
    """Kind of work a single worker invocation performs."""

    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REWORK = "rework"
    VERIFY = "verify"


def task_type_for(phase: Phase, sub_state: SubState | None) -> TaskType:
    """Return the task type dispatched for an item in *phase*."""
    if phase is Phase.IMPLEMENTING and sub_state is SubState.RETURNED_FOR_REWORK:
        return TaskType.REWORK
    mapping = {
        Phase.RESEARCH: TaskType.RESEARCH,
        Phase.PLANNING: TaskType.PLAN,
        Phase.IMPLEMENTING: TaskType.IMPLEMENT,
        Phase.VERIFICATION: TaskType.VERIFY,
    }
    try:
        return mapping[phase]
    except KeyError:
        raise ValueError(f"No worker task for phase {phase}") from None


class MessageAuthor(StrEnum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class MessageKind(StrEnum):
    """Message kinds; the first three mirror the worker result contract."""

    QUESTION = "question"
    STATUS = "status"
    COMPLETION = "completion"
    COMMENT = "comment"
    NOTICE = "notice"


class FinalizeStatus(StrEnum):
    INTEGRATED = "integrated"
    CONFLICT = "conflict"


class ConflictKind(StrEnum):
    """Who has to resolve an integration conflict."""

    MACHINE_RESOLVABLE = "machine_resolvable"
    HUMAN_REQUIRED = "human_required"
