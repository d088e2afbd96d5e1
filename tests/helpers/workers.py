"""Scripted worker doubles for dispatcher tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from bonsai.core.services.worker import WorkerMessage, WorkerResult

if TYPE_CHECKING:
    from bonsai.core.services.worker import WorkerParams

type ResultFactory = Callable[[WorkerParams], WorkerResult]


class ScriptedWorker:
    """Returns results from a per-item script and records every invocation."""

    def __init__(
        self,
        results: dict[str, WorkerResult | ResultFactory] | None = None,
        *,
        default: WorkerResult | None = None,
        delay: float = 0.0,
    ) -> None:
        self.results = results or {}
        self.default = default or WorkerResult(
            status="completed", messages=[WorkerMessage(content="progress", kind="status")]
        )
        self.delay = delay
        self.calls: list[WorkerParams] = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, params: WorkerParams) -> WorkerResult:
        self.calls.append(params)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            scripted = self.results.get(params.item_id, self.default)
            if callable(scripted):
                return scripted(params)
            return scripted
        finally:
            self.active -= 1


class HangingWorker:
    """Never returns on its own; only the dispatcher's budget ends it."""

    async def invoke(self, params: WorkerParams) -> WorkerResult:
        del params
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class BudgetedWorker:
    """Runs for exactly the budget it is given, then reports a timeout."""

    def __init__(self) -> None:
        self.budgets: list[float] = []

    async def invoke(self, params: WorkerParams) -> WorkerResult:
        self.budgets.append(params.max_duration_seconds)
        await asyncio.sleep(params.max_duration_seconds)
        return WorkerResult.failure("timeout", "Used the whole budget")


class StubbornWorker:
    """Ignores the first cancellation and keeps waiting until cancelled again."""

    def __init__(self) -> None:
        self.ignored_cancel = False

    async def invoke(self, params: WorkerParams) -> WorkerResult:
        del params
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.ignored_cancel = True
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


def completed(*messages: tuple[str, str], phase_change: str | None = None) -> WorkerResult:
    return WorkerResult.model_validate(
        {
            "status": "completed",
            "messages": [{"content": content, "kind": kind} for content, kind in messages],
            "phaseChange": phase_change,
            "tokensUsed": {"input": 10, "output": 5},
        }
    )
