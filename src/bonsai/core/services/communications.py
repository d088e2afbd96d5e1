"""Human communication channel: messages, unread detection and approvals."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bonsai.core.models.enums import MessageAuthor, MessageKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from bonsai.core.adapters.db.repositories import ApprovalRepository, MessageRepository
    from bonsai.core.adapters.db.schema import Approval, Message, WorkItem
    from bonsai.core.services.worker import WorkerMessage

logger = logging.getLogger(__name__)

_WORKER_KINDS: dict[str, MessageKind] = {
    "question": MessageKind.QUESTION,
    "status": MessageKind.STATUS,
    "completion": MessageKind.COMPLETION,
}


class CommunicationChannel:
    """Thin facade over the message log and the approval signals.

    The external system of record writes human messages and approvals; the
    dispatcher only reads them, posts agent output and consumes approvals.
    """

    def __init__(self, messages: MessageRepository, approvals: ApprovalRepository) -> None:
        self._messages = messages
        self._approvals = approvals

    async def has_unread(self, item: WorkItem) -> bool:
        return bool(await self._messages.unread_human_messages(item.id, item.seen_message_id))

    async def unread_for(self, items: Iterable[WorkItem]) -> set[str]:
        """Return ids of *items* with human messages the agent has not seen."""
        return await self._messages.items_with_unread(items)

    async def unread_messages(self, item: WorkItem) -> list[Message]:
        return await self._messages.unread_human_messages(item.id, item.seen_message_id)

    async def read_cursor(self, item_id: str) -> int:
        """Message id up to which a run started now has seen everything."""
        return await self._messages.latest_id(item_id)

    async def pending_approvals(self) -> list[Approval]:
        return await self._approvals.list_pending()

    async def consume_approval(self, approval: Approval, *, outcome: str) -> bool:
        if approval.id is None:
            raise ValueError(f"Approval for {approval.work_item_id} was never recorded")
        consumed = await self._approvals.consume(approval.id, outcome=outcome)
        if not consumed:
            logger.debug("Approval %s was already consumed", approval.id)
        return consumed

    async def post_worker_messages(
        self, item_id: str, messages: Sequence[WorkerMessage], *, run_id: str
    ) -> list[Message]:
        """Append the worker's messages in the order it produced them."""
        posted: list[Message] = []
        for message in messages:
            if not message.content.strip():
                continue
            posted.append(
                await self._messages.append(
                    item_id,
                    author=MessageAuthor.AGENT,
                    kind=_WORKER_KINDS[message.kind],
                    content=message.content,
                    run_id=run_id,
                )
            )
        return posted

    async def notify(self, item_id: str, content: str, *, run_id: str | None = None) -> Message:
        logger.info("Notice for %s: %s", item_id, content)
        return await self._messages.notice(item_id, content, run_id=run_id)
