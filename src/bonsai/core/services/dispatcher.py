"""The heartbeat cycle: reconcile stale state, pick work, run workers, record results.

One :class:`Dispatcher` runs one cycle per process invocation. It owns the
only write path for work item state after a worker returns; everything else
reads the store freely.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from bonsai.core.adapters.db.store import STORE_FAILURES
from bonsai.core.errors import (
    ContentionError,
    MissingArtifactError,
    SealedRunError,
    StoreUnavailableError,
    TransitionError,
)
from bonsai.core.models.enums import (
    WORKABLE_PHASES,
    ConflictKind,
    Phase,
    RunStatus,
    SubState,
    task_type_for,
)
from bonsai.core.models.state_machine import (
    PHASE_ARTIFACTS,
    AgentAsked,
    AgentFailed,
    AgentFinished,
    AgentRequestedAdvance,
    AgentStarted,
    Approve,
    HumanReplied,
    IntegrationConflict,
    LeaseAbandoned,
    Rework,
    missing_artifacts,
)
from bonsai.core.services.picker import ItemSnapshot, pick_actionable, rank_actionable
from bonsai.core.services.prompts import build_prompt
from bonsai.core.services.worker import WorkerParams, WorkerResult
from bonsai.core.time import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime
    from pathlib import Path

    from bonsai.core.adapters.db.schema import Approval, Repo, WorkItem
    from bonsai.core.adapters.db.store import Store
    from bonsai.core.config import BonsaiConfig
    from bonsai.core.locks.process_lease import ProcessLease
    from bonsai.core.models.state_machine import Event
    from bonsai.core.services.communications import CommunicationChannel
    from bonsai.core.services.isolation import IsolationProvider
    from bonsai.core.services.picker import PickedItem
    from bonsai.core.services.worker import Worker

logger = logging.getLogger(__name__)

# Artifact key holding the description of the last integration conflict.
CONFLICT_ARTIFACT = "conflict"
# Cycle time kept back after a worker's budget for sealing and recording its run.
RECORD_RESERVE_SECONDS = 1.0


@dataclass(slots=True)
class ItemOutcome:
    """What happened to one picked item in this cycle."""

    item_id: str
    run_id: str | None = None
    status: RunStatus | None = None
    detail: str = ""

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED


@dataclass(slots=True)
class ReconcileReport:
    reclaimed_leases: list[str] = field(default_factory=list)
    sealed_orphans: list[str] = field(default_factory=list)
    unblocked: list[str] = field(default_factory=list)
    approvals_applied: list[int] = field(default_factory=list)
    approvals_rejected: list[int] = field(default_factory=list)
    integrated: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    pruned_worktrees: int = 0


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    contended: bool = False
    timed_out: bool = False
    reconcile: ReconcileReport = field(default_factory=ReconcileReport)
    picked: list[str] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


def _new_run_id() -> str:
    return uuid.uuid4().hex


class Dispatcher:
    """Runs heartbeat cycles against one store with injected collaborators."""

    def __init__(
        self,
        *,
        store: Store,
        config: BonsaiConfig,
        worker: Worker,
        isolation: IsolationProvider,
        communications: CommunicationChannel,
        process_lease: ProcessLease,
        sessions_dir: Path,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._config = config
        self._worker = worker
        self._isolation = isolation
        self._comms = communications
        self._lease = process_lease
        self._sessions_dir = sessions_dir
        self._clock = clock

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one cycle.

        Returns a report with ``contended`` set when another live process holds
        the cycle lease; nothing else happens in that case.

        Raises:
            StoreUnavailableError: the store cannot be reached at the start of the
                cycle (nothing is written) or stops answering mid-run.
        """
        report = CycleReport(started_at=self._clock())
        if not self._lease.acquire():
            holder = self._lease.holder()
            logger.info(
                "Another heartbeat is running (pid %s); skipping this cycle",
                holder.pid if holder is not None else "unknown",
            )
            report.contended = True
            report.finished_at = self._clock()
            return report

        logger.info("Heartbeat lease acquired")
        try:
            await self._store.ping()
            cycle_timeout = self._config.heartbeat.cycle_timeout_seconds
            deadline = asyncio.get_running_loop().time() + cycle_timeout
            try:
                async with asyncio.timeout(cycle_timeout):
                    report.reconcile = await self.reconcile()
                    picked = await self.pick()
                    report.picked = [candidate.item_id for candidate in picked]
                    report.outcomes = await self._dispatch(picked, deadline)
            except TimeoutError:
                report.timed_out = True
                logger.warning(
                    "Cycle exceeded its %ss cap; in-flight runs abandoned", cycle_timeout
                )
        finally:
            self._lease.release()
            report.finished_at = self._clock()

        logger.info(
            "Cycle finished in %.1fs: %d picked, %d completed",
            report.duration_seconds,
            len(report.picked),
            sum(1 for outcome in report.outcomes if outcome.completed),
        )
        return report

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> ReconcileReport:
        """Recover from whatever a previous cycle left behind, then apply approvals."""
        report = ReconcileReport()
        now = self._clock()
        touched: set[str] = set()

        for lease in await self._store.work_items.reclaim_expired_leases(now):
            report.reclaimed_leases.append(lease.item_id)
            touched.add(lease.item_id)

        await self._clear_stray_agent_active(report)
        await self._seal_orphaned_runs(report, touched)
        await self._unblock_answered(report)
        await self._apply_approvals(report, touched, now)
        report.pruned_worktrees = await self._prune_worktrees(touched)
        return report

    async def _clear_stray_agent_active(self, report: ReconcileReport) -> None:
        items = await self._store.work_items.list_in_phases(WORKABLE_PHASES)
        now = self._clock()
        for item in items:
            if item.sub_state is SubState.AGENT_ACTIVE and not item.lease_active(now):
                await self._store.work_items.apply_event(
                    item.id, LeaseAbandoned(item.pre_run_sub_state)
                )
                if item.id not in report.reclaimed_leases:
                    report.reclaimed_leases.append(item.id)

    async def _seal_orphaned_runs(self, report: ReconcileReport, touched: set[str]) -> None:
        for record in await self._store.runs.list_orphaned():
            try:
                await self._store.runs.seal(
                    record.id,
                    RunStatus.TIMEOUT,
                    error="Run was abandoned by an earlier heartbeat",
                )
            except SealedRunError:
                continue
            report.sealed_orphans.append(record.id)
            touched.add(record.work_item_id)
            await self._comms.notify(
                record.work_item_id,
                f"The {record.task_type} run started at {record.started_at:%Y-%m-%d %H:%M} "
                "never finished; it has been recorded as timed out.",
                run_id=record.id,
            )

    async def _unblock_answered(self, report: ReconcileReport) -> None:
        blocked = [
            item
            for item in await self._store.work_items.list_in_phases(WORKABLE_PHASES)
            if item.sub_state is SubState.BLOCKED_ON_HUMAN
        ]
        answered = await self._comms.unread_for(blocked)
        for item in blocked:
            if item.id in answered:
                await self._store.work_items.apply_event(item.id, HumanReplied())
                report.unblocked.append(item.id)
                logger.info("Item %s unblocked by a human reply", item.id)

    async def _apply_approvals(
        self, report: ReconcileReport, touched: set[str], now: datetime
    ) -> None:
        for approval in await self._comms.pending_approvals():
            if approval.id is None:
                logger.warning("Skipping unrecorded approval for %s", approval.work_item_id)
                continue
            item = await self._store.work_items.get(approval.work_item_id)
            if item is None:
                await self._comms.consume_approval(approval, outcome="missing item")
                continue
            if item.lease_active(now):
                continue

            try:
                outcome = await self._apply_approval(item, approval, report)
            except TransitionError as exc:
                await self._comms.consume_approval(approval, outcome="rejected")
                report.approvals_rejected.append(approval.id)
                await self._comms.notify(
                    item.id, f"Approval for {approval.target_phase} was not applied: {exc}"
                )
                continue
            except (RuntimeError, OSError) as exc:
                logger.exception("Applying approval %s for %s failed", approval.id, item.id)
                await self._comms.consume_approval(approval, outcome="failed")
                report.approvals_rejected.append(approval.id)
                await self._comms.notify(
                    item.id, f"Approval for {approval.target_phase} could not be carried out: {exc}"
                )
                continue

            touched.add(item.id)
            await self._comms.consume_approval(approval, outcome=outcome)
            report.approvals_applied.append(approval.id)

    async def _apply_approval(
        self, item: WorkItem, approval: Approval, report: ReconcileReport
    ) -> str:
        target = approval.target_phase
        if item.phase is Phase.VERIFICATION and target is Phase.IMPLEMENTING:
            await self._store.work_items.apply_event(item.id, Rework(approval.note))
            logger.info("Item %s returned for rework", item.id)
            return "rework"
        if target is Phase.DONE:
            return await self._integrate(item, report)
        await self._store.work_items.apply_event(item.id, Approve(target))
        logger.info("Item %s advanced to %s", item.id, target)
        return "applied"

    async def _integrate(self, item: WorkItem, report: ReconcileReport) -> str:
        # Guard before touching git so a rejected approval leaves trunk alone.
        if item.phase is not Phase.VERIFICATION:
            raise TransitionError(
                f"Only {Phase.VERIFICATION} items can be integrated", item_id=item.id
            )
        missing = missing_artifacts(Phase.DONE, item.artifacts)
        if missing:
            raise MissingArtifactError(Phase.DONE, missing, item_id=item.id)
        repo = await self._require_repo(item.id)

        result = await self._isolation.finalize(repo, item.id, title=item.title)
        if result.integrated:
            await self._store.work_items.apply_event(
                item.id,
                Approve(Phase.DONE),
                isolated_working_copy_path=None,
                branch_name=None,
            )
            report.integrated.append(item.id)
            await self._comms.notify(item.id, result.message)
            return "integrated"

        human_required = result.conflict_kind is ConflictKind.HUMAN_REQUIRED
        await self._store.work_items.apply_event(
            item.id,
            IntegrationConflict(human_required=human_required),
            artifacts={CONFLICT_ARTIFACT: result.message},
        )
        report.conflicts.append(item.id)
        who = "needs a human" if human_required else "returned for rework"
        await self._comms.notify(item.id, f"Integration conflict ({who}). {result.message}")
        return "conflict"

    async def _prune_worktrees(self, item_ids: Iterable[str]) -> int:
        repos: dict[str, Repo] = {}
        for item_id in item_ids:
            repo = await self._store.projects.get_repo_for_item(item_id)
            if repo is not None:
                repos[repo.id] = repo
        pruned = 0
        for repo in repos.values():
            try:
                pruned += await self._isolation.janitor(repo)
            except RuntimeError:
                logger.warning("Worktree prune failed for %s", repo.path, exc_info=True)
        return pruned

    # ------------------------------------------------------------------
    # Picking
    # ------------------------------------------------------------------

    async def snapshots(self) -> list[ItemSnapshot]:
        items = await self._store.work_items.list_in_phases(WORKABLE_PHASES)
        unread = await self._comms.unread_for(items)
        projects = {project.id: project for project in await self._store.projects.list_projects()}
        return [
            ItemSnapshot.from_item(
                item, projects.get(item.project_id), has_unread=item.id in unread
            )
            for item in items
        ]

    async def rank(self) -> list[PickedItem]:
        """Every actionable item in pick order, without any selection limit."""
        return rank_actionable(
            await self.snapshots(),
            now=self._clock(),
            starvation_hours=self._config.heartbeat.starvation_hours,
        )

    async def pick(self) -> list[PickedItem]:
        limit = self._config.heartbeat.resolve_max_concurrency()
        picked = pick_actionable(
            await self.snapshots(),
            now=self._clock(),
            limit=limit,
            starvation_hours=self._config.heartbeat.starvation_hours,
        )
        for candidate in picked:
            logger.info("Picked %s (score %.1f)", candidate.item_id, candidate.score.total)
        if not picked:
            logger.info("Nothing actionable this cycle")
        return picked

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, picked: list[PickedItem], deadline: float) -> list[ItemOutcome]:
        if not picked:
            return []
        if self._worker_budget(deadline) < 1:
            logger.warning("No cycle budget left to dispatch %d item(s)", len(picked))
            return [ItemOutcome(candidate.item_id, detail="no budget") for candidate in picked]

        results = await asyncio.gather(
            *(self._run_item(candidate.item_id, deadline) for candidate in picked),
            return_exceptions=True,
        )
        outcomes: list[ItemOutcome] = []
        for candidate, result in zip(picked, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, (asyncio.CancelledError, StoreUnavailableError)):
                    raise result
                logger.error("Item %s failed outside its run", candidate.item_id, exc_info=result)
                outcomes.append(ItemOutcome(candidate.item_id, detail=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    def _worker_budget(self, deadline: float) -> float:
        """Seconds a worker may run if it starts now, so its grace still ends inside the cycle."""
        heartbeat = self._config.heartbeat
        remaining = deadline - asyncio.get_running_loop().time()
        usable = remaining - heartbeat.timeout_grace_seconds - RECORD_RESERVE_SECONDS
        return min(float(heartbeat.lease_seconds), usable)

    async def _run_item(self, item_id: str, deadline: float) -> ItemOutcome:
        run_id = _new_run_id()
        work_items = self._store.work_items
        lease = await work_items.claim_lease(
            item_id, run_id, lease_seconds=self._config.heartbeat.lease_seconds
        )
        if lease is None:
            return ItemOutcome(item_id, detail="lease held elsewhere")

        outcome = ItemOutcome(item_id, run_id=run_id)
        sealed = False
        try:
            item = await work_items.get(item_id)
            if item is None:
                raise KeyError(item_id)
            prior = item.sub_state
            task_type = task_type_for(item.phase, item.sub_state)
            await self._store.runs.start(item_id, task_type, run_id=run_id)

            try:
                result = await self._invoke(item, run_id, deadline)
            except (ContentionError, StoreUnavailableError, *STORE_FAILURES):
                raise
            except Exception as exc:  # quality-allow-broad-except
                logger.exception("Preparing or running %s failed", item_id)
                result = WorkerResult.failure("error", f"{type(exc).__name__}: {exc}")

            outcome.status = result.run_status
            outcome.detail = result.error or ""
            await self._store.runs.seal(
                run_id,
                result.run_status,
                input_tokens=result.tokens_used.input,
                output_tokens=result.tokens_used.output,
                error=result.error,
                transcript_path=self._transcript_path(item_id, run_id),
            )
            sealed = True
            await self._record_result(item_id, run_id, result, prior=prior)
        except ContentionError as exc:
            logger.warning("Lost the lease on %s mid-run: %s", item_id, exc)
            outcome.detail = str(exc)
            if not sealed:
                await self._seal_quietly(run_id, str(exc))
        except StoreUnavailableError:
            raise
        except STORE_FAILURES as exc:
            raise StoreUnavailableError(f"Store failed during run {run_id}: {exc}") from exc
        except Exception as exc:  # quality-allow-broad-except
            logger.exception("Recording the run for %s failed", item_id)
            outcome.status = outcome.status or RunStatus.ERROR
            outcome.detail = str(exc)
            if not sealed:
                await self._seal_quietly(run_id, str(exc))
        finally:
            try:
                await work_items.release_lease(item_id, run_id)
            except STORE_FAILURES as exc:
                raise StoreUnavailableError(
                    f"Cannot release the lease on {item_id}: {exc}"
                ) from exc

        logger.info("Item %s finished run %s: %s", item_id, run_id, outcome.status)
        return outcome

    async def _invoke(self, item: WorkItem, run_id: str, deadline: float) -> WorkerResult:
        repo = await self._require_repo(item.id)
        path = await self._isolation.ensure_isolated_copy(
            repo, item.id, item.isolated_working_copy_path
        )
        unread = await self._comms.unread_messages(item)
        cursor = await self._comms.read_cursor(item.id)
        task_type = task_type_for(item.phase, item.sub_state)
        conflict_note = item.artifacts.get(CONFLICT_ARTIFACT) or None
        prompt = build_prompt(item, task_type, unread=unread, conflict_note=conflict_note)

        await self._store.work_items.apply_event(
            item.id,
            AgentStarted(),
            run_id=run_id,
            isolated_working_copy_path=str(path),
            branch_name=self._isolation.branch_name(item.id),
            seen_message_id=cursor,
            pre_run_sub_state=item.sub_state,
        )
        budget = self._worker_budget(deadline)
        if budget < 1:
            return WorkerResult.failure("timeout", "No cycle time left to run the worker")
        params = WorkerParams(
            item_id=item.id,
            run_id=run_id,
            task_type=task_type,
            working_copy_path=path,
            task_prompt=prompt,
            session_dir=self._sessions_dir / item.id,
            max_duration_ms=int(budget * 1000),
        )
        grace = self._config.heartbeat.timeout_grace_seconds
        try:
            return await asyncio.wait_for(self._worker.invoke(params), timeout=budget + grace)
        except TimeoutError:
            return WorkerResult.failure(
                "timeout", f"Worker did not return within {budget + grace:.0f}s"
            )

    async def _record_result(
        self,
        item_id: str,
        run_id: str,
        result: WorkerResult,
        *,
        prior: SubState | None,
    ) -> None:
        """Post the worker's messages and move the item according to its result."""
        await self._comms.post_worker_messages(item_id, result.messages, run_id=run_id)
        item = await self._store.work_items.get(item_id)
        if item is None:
            raise KeyError(item_id)

        changes: dict[str, object] = {"last_agent_activity_at": self._clock()}
        event: Event
        match result.run_status:
            case RunStatus.COMPLETED if result.phase_change is not None:
                event = AgentRequestedAdvance(result.phase_change)
                artifacts = {PHASE_ARTIFACTS[item.phase]: self._artifact_text(result)}
                if prior is SubState.RETURNED_FOR_REWORK:
                    artifacts[CONFLICT_ARTIFACT] = ""
                changes["artifacts"] = artifacts
            case RunStatus.COMPLETED if result.messages_of("question"):
                event = AgentAsked()
            case RunStatus.COMPLETED:
                event = AgentFinished(prior)
            case RunStatus.BLOCKED:
                event = AgentAsked()
            case _:
                event = AgentFailed(prior)
                await self._comms.notify(
                    item_id,
                    f"Run {run_id} ended with {result.status}: {result.error or 'no detail'}",
                    run_id=run_id,
                )

        try:
            await self._store.work_items.apply_event(item_id, event, run_id=run_id, **changes)
        except TransitionError as exc:
            if not isinstance(event, AgentRequestedAdvance):
                raise
            changes.pop("artifacts", None)
            await self._store.work_items.apply_event(
                item_id, AgentFinished(prior), run_id=run_id, **changes
            )
            await self._comms.notify(item_id, f"Ignored phase change request: {exc}", run_id=run_id)

    @staticmethod
    def _artifact_text(result: WorkerResult) -> str:
        completions = result.messages_of("completion") or result.messages
        return "\n\n".join(message.content.strip() for message in completions).strip()

    async def _require_repo(self, item_id: str) -> Repo:
        repo = await self._store.projects.get_repo_for_item(item_id)
        if repo is None:
            raise TransitionError(f"No repository is configured for {item_id}", item_id=item_id)
        return repo

    def _transcript_path(self, item_id: str, run_id: str) -> str | None:
        path = self._sessions_dir / item_id / f"{run_id}.log"
        return str(path) if path.exists() else None

    async def _seal_quietly(self, run_id: str, error: str) -> None:
        """Seal *run_id* as errored unless it is already sealed or gone."""
        try:
            with contextlib.suppress(SealedRunError, KeyError):
                await self._store.runs.seal(run_id, RunStatus.ERROR, error=error)
        except STORE_FAILURES as exc:
            raise StoreUnavailableError(f"Cannot seal run {run_id}: {exc}") from exc
