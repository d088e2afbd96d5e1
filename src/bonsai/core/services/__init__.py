"""Dispatch services: picking, isolation, worker boundary and the cycle itself."""

from bonsai.core.services.communications import CommunicationChannel
from bonsai.core.services.dispatcher import CycleReport, Dispatcher, ItemOutcome, ReconcileReport
from bonsai.core.services.isolation import (
    ConflictPolicy,
    FileOverlapRecord,
    FinalizeResult,
    IsolationProvider,
    resolve_within,
)
from bonsai.core.services.picker import (
    ItemSnapshot,
    PickedItem,
    ScoreBreakdown,
    pick_actionable,
    rank_actionable,
)
from bonsai.core.services.worker import (
    CommandWorker,
    Worker,
    WorkerMessage,
    WorkerParams,
    WorkerResult,
)

__all__ = [
    "CommandWorker",
    "CommunicationChannel",
    "ConflictPolicy",
    "CycleReport",
    "Dispatcher",
    "FileOverlapRecord",
    "FinalizeResult",
    "IsolationProvider",
    "ItemOutcome",
    "ItemSnapshot",
    "PickedItem",
    "ReconcileReport",
    "ScoreBreakdown",
    "Worker",
    "WorkerMessage",
    "WorkerParams",
    "WorkerResult",
    "pick_actionable",
    "rank_actionable",
    "resolve_within",
]
