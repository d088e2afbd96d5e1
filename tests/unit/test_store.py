from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from bonsai.core.adapters.db.schema import Approval
from bonsai.core.adapters.db.store import Store
from bonsai.core.errors import ContentionError, SealedRunError, StoreUnavailableError
from bonsai.core.models.enums import Phase, RunStatus, SubState, TaskType
from bonsai.core.models.state_machine import AgentStarted, Approve
from bonsai.core.services.communications import CommunicationChannel
from bonsai.core.time import utc_now

if TYPE_CHECKING:
    from pathlib import Path

    from bonsai.core.adapters.db.schema import WorkItem


@pytest.fixture
async def item(store: Store, tmp_path: Path) -> WorkItem:
    repo = await store.projects.add_repo(tmp_path, name="scratch")
    project = await store.projects.add_project("Scratch", repo_id=repo.id)
    created = await store.work_items.create(project_id=project.id, title="Add caching")
    return await store.work_items.start(created.id)


class TestStoreLifecycle:
    async def test_ping_before_initialize_raises(self, tmp_path: Path) -> None:
        with pytest.raises(StoreUnavailableError):
            await Store(tmp_path / "db.sqlite").ping()

    async def test_ping_after_initialize(self, store: Store) -> None:
        await store.ping()

    async def test_ping_after_close_raises(self, tmp_path: Path) -> None:
        async with Store(tmp_path / "db.sqlite") as store:
            await store.ping()
        with pytest.raises(StoreUnavailableError):
            await store.ping()


class TestProjects:
    async def test_lookups(self, store: Store, item: WorkItem, tmp_path: Path) -> None:
        repo = await store.projects.get_repo_for_item(item.id)
        assert repo is not None
        assert repo.path == str(tmp_path.resolve())
        assert (await store.projects.get_repo(repo.id)).name == "scratch"
        project = await store.projects.get_project(item.project_id)
        assert project.repo_id == repo.id
        assert [p.id for p in await store.projects.list_projects()] == [project.id]
        assert await store.projects.get_repo_for_item("missing") is None


class TestWorkItems:
    async def test_start_moves_backlog_into_research(self, item: WorkItem) -> None:
        assert item.phase is Phase.RESEARCH
        assert item.sub_state is None

    async def test_unknown_field_is_rejected(self, store: Store, item: WorkItem) -> None:
        with pytest.raises(ValueError, match="Unknown work item field"):
            await store.work_items.update_fields(item.id, phase=Phase.DONE)

    async def test_artifacts_are_merged(self, store: Store, item: WorkItem) -> None:
        await store.work_items.update_fields(item.id, artifacts={"research": "notes"})
        updated = await store.work_items.update_fields(item.id, artifacts={"plan": "steps"})
        assert updated.artifacts == {"research": "notes", "plan": "steps"}

    async def test_apply_event_enforces_artifact_guard(self, store: Store, item: WorkItem) -> None:
        from bonsai.core.errors import MissingArtifactError

        with pytest.raises(MissingArtifactError):
            await store.work_items.apply_event(item.id, Approve(Phase.PLANNING))
        assert (await store.work_items.get(item.id)).phase is Phase.RESEARCH

    async def test_apply_event_for_missing_item(self, store: Store) -> None:
        with pytest.raises(KeyError):
            await store.work_items.apply_event("nope", AgentStarted())


class TestLeases:
    async def test_concurrent_claims_have_one_winner(self, store: Store, item: WorkItem) -> None:
        claims = await asyncio.gather(
            *(
                store.work_items.claim_lease(item.id, f"run-{index}", lease_seconds=60)
                for index in range(8)
            )
        )
        winners = [lease for lease in claims if lease is not None]
        assert len(winners) == 1
        stored = await store.work_items.get(item.id)
        assert stored.lease_owner_run_id == winners[0].owner_run_id

    async def test_expired_lease_can_be_claimed_again(self, store: Store, item: WorkItem) -> None:
        past = utc_now() - timedelta(minutes=10)
        assert await store.work_items.claim_lease(item.id, "old", lease_seconds=60, now=past)
        assert await store.work_items.claim_lease(item.id, "new", lease_seconds=60)

    async def test_release_only_by_owner(self, store: Store, item: WorkItem) -> None:
        await store.work_items.claim_lease(item.id, "owner", lease_seconds=60)
        assert not await store.work_items.release_lease(item.id, "intruder")
        assert await store.work_items.release_lease(item.id, "owner")
        assert (await store.work_items.get(item.id)).active_lock_until is None

    async def test_writes_require_lease_ownership(self, store: Store, item: WorkItem) -> None:
        await store.work_items.claim_lease(item.id, "owner", lease_seconds=60)
        with pytest.raises(ContentionError):
            await store.work_items.apply_event(item.id, AgentStarted(), run_id="intruder")
        updated = await store.work_items.apply_event(item.id, AgentStarted(), run_id="owner")
        assert updated.sub_state is SubState.AGENT_ACTIVE

    async def test_expired_lease_is_reclaimed_exactly_once(
        self, store: Store, item: WorkItem
    ) -> None:
        past = utc_now() - timedelta(minutes=10)
        await store.work_items.claim_lease(item.id, "crashed", lease_seconds=60, now=past)
        await store.work_items.apply_event(item.id, AgentStarted(), run_id="crashed")

        first, second = await asyncio.gather(
            store.work_items.reclaim_expired_leases(),
            store.work_items.reclaim_expired_leases(),
        )
        reclaimed = first + second
        assert [lease.owner_run_id for lease in reclaimed] == ["crashed"]
        stored = await store.work_items.get(item.id)
        assert stored.lease_owner_run_id is None
        assert stored.sub_state is None
        assert await store.work_items.reclaim_expired_leases() == []

    async def test_reclaimed_rework_run_keeps_rework_flag(
        self, store: Store, item: WorkItem
    ) -> None:
        past = utc_now() - timedelta(minutes=10)
        await store.work_items.claim_lease(item.id, "crashed", lease_seconds=60, now=past)
        await store.work_items.apply_event(
            item.id,
            AgentStarted(),
            run_id="crashed",
            pre_run_sub_state=SubState.RETURNED_FOR_REWORK,
        )

        await store.work_items.reclaim_expired_leases()
        stored = await store.work_items.get(item.id)
        assert stored.sub_state is SubState.RETURNED_FOR_REWORK

    async def test_live_lease_is_not_reclaimed(self, store: Store, item: WorkItem) -> None:
        await store.work_items.claim_lease(item.id, "live", lease_seconds=600)
        assert await store.work_items.reclaim_expired_leases() == []


class TestRuns:
    async def test_seal_once(self, store: Store, item: WorkItem) -> None:
        run = await store.runs.start(item.id, TaskType.RESEARCH, run_id="run-1")
        assert run.status is RunStatus.RUNNING
        sealed = await store.runs.seal(
            "run-1", RunStatus.COMPLETED, input_tokens=10, output_tokens=4
        )
        assert sealed.status is RunStatus.COMPLETED
        assert sealed.output_tokens == 4
        assert sealed.ended_at is not None
        with pytest.raises(SealedRunError):
            await store.runs.seal("run-1", RunStatus.ERROR)
        assert (await store.runs.get("run-1")).status is RunStatus.COMPLETED

    async def test_seal_as_running_is_rejected(self, store: Store, item: WorkItem) -> None:
        await store.runs.start(item.id, TaskType.RESEARCH, run_id="run-1")
        with pytest.raises(ValueError):
            await store.runs.seal("run-1", RunStatus.RUNNING)

    async def test_seal_unknown_run(self, store: Store) -> None:
        with pytest.raises(KeyError):
            await store.runs.seal("missing", RunStatus.ERROR)

    async def test_orphans_are_running_records_without_lease(
        self, store: Store, item: WorkItem
    ) -> None:
        await store.work_items.claim_lease(item.id, "current", lease_seconds=60)
        await store.runs.start(item.id, TaskType.RESEARCH, run_id="current")
        await store.runs.start(item.id, TaskType.RESEARCH, run_id="lost")
        orphans = await store.runs.list_orphaned()
        assert [run.id for run in orphans] == ["lost"]


class TestMessagesAndApprovals:
    async def test_unread_tracks_read_cursor(self, store: Store, item: WorkItem) -> None:
        assert await store.messages.items_with_unread([item]) == set()
        message = await store.messages.post_human(item.id, "Please also cover Windows")
        assert await store.messages.items_with_unread([item]) == {item.id}

        seen = await store.work_items.update_fields(item.id, seen_message_id=message.id)
        assert await store.messages.items_with_unread([seen]) == set()
        assert await store.messages.unread_human_messages(item.id, seen.seen_message_id) == []

    async def test_agent_messages_are_never_unread(self, store: Store, item: WorkItem) -> None:
        await store.messages.notice(item.id, "run timed out")
        assert await store.messages.items_with_unread([item]) == set()
        assert await store.messages.latest_id(item.id) > 0

    async def test_human_message_updates_activity(self, store: Store, item: WorkItem) -> None:
        await store.messages.post_human(item.id, "ping")
        assert (await store.work_items.get(item.id)).last_human_activity_at is not None

    async def test_approval_is_consumed_once(self, store: Store, item: WorkItem) -> None:
        approval = await store.approvals.record(item.id, Phase.PLANNING, note="looks good")
        assert await store.approvals.has_pending(item.id, Phase.PLANNING)
        assert [a.id for a in await store.approvals.list_pending()] == [approval.id]

        results = await asyncio.gather(
            store.approvals.consume(approval.id, outcome="applied"),
            store.approvals.consume(approval.id, outcome="applied"),
        )
        assert sorted(results) == [False, True]
        assert await store.approvals.list_pending() == []
        assert not await store.approvals.has_pending(item.id, Phase.PLANNING)

    async def test_unrecorded_approval_cannot_be_consumed(
        self, store: Store, item: WorkItem
    ) -> None:
        channel = CommunicationChannel(store.messages, store.approvals)
        unsaved = Approval(work_item_id=item.id, target_phase=Phase.PLANNING)
        with pytest.raises(ValueError, match="never recorded"):
            await channel.consume_approval(unsaved, outcome="applied")
