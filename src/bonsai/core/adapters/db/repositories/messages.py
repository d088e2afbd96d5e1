from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlmodel import col, select

from bonsai.core.adapters.db.repositories.base import RepositoryBase
from bonsai.core.adapters.db.schema import Message, WorkItem
from bonsai.core.models.enums import MessageAuthor, MessageKind

if TYPE_CHECKING:
    from collections.abc import Iterable


class MessageRepository(RepositoryBase):
    """Append-only message log; the core never edits or deletes messages."""

    async def append(
        self,
        work_item_id: str,
        *,
        author: MessageAuthor,
        kind: MessageKind,
        content: str,
        run_id: str | None = None,
    ) -> Message:
        async with self._lock:
            async with self._get_session() as session:
                message = Message(
                    work_item_id=work_item_id,
                    author=author,
                    kind=kind,
                    content=content,
                    run_id=run_id,
                )
                session.add(message)
                if author is MessageAuthor.HUMAN:
                    item = await session.get(WorkItem, work_item_id)
                    if item is not None:
                        item.last_human_activity_at = message.created_at
                        session.add(item)
                await session.commit()
                await session.refresh(message)
                return message

    async def post_human(self, work_item_id: str, content: str) -> Message:
        """Record a human comment (the external system of record writes these)."""
        return await self.append(
            work_item_id, author=MessageAuthor.HUMAN, kind=MessageKind.COMMENT, content=content
        )

    async def notice(
        self, work_item_id: str, content: str, *, run_id: str | None = None
    ) -> Message:
        """Record a system notice, e.g. for a non-completed run."""
        return await self.append(
            work_item_id,
            author=MessageAuthor.SYSTEM,
            kind=MessageKind.NOTICE,
            content=content,
            run_id=run_id,
        )

    async def list_for_item(self, work_item_id: str) -> list[Message]:
        async with self._get_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.work_item_id == work_item_id)
                .order_by(col(Message.id).asc())
            )
            return list(result.scalars().all())

    async def unread_human_messages(self, work_item_id: str, after_id: int) -> list[Message]:
        """Human messages newer than the agent's read cursor *after_id*."""
        async with self._get_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.work_item_id == work_item_id)
                .where(col(Message.author) == MessageAuthor.HUMAN)
                .where(col(Message.id) > after_id)
                .order_by(col(Message.id).asc())
            )
            return list(result.scalars().all())

    async def latest_id(self, work_item_id: str) -> int:
        async with self._get_session() as session:
            result = await session.execute(
                select(func.max(Message.id)).where(Message.work_item_id == work_item_id)
            )
            return int(result.scalar() or 0)

    async def items_with_unread(self, items: Iterable[WorkItem]) -> set[str]:
        """Return ids of *items* that have human messages past their read cursor."""
        cursors = {item.id: item.seen_message_id for item in items}
        if not cursors:
            return set()
        async with self._get_session() as session:
            result = await session.execute(
                select(Message.work_item_id, func.max(Message.id))
                .where(col(Message.work_item_id).in_(list(cursors)))
                .where(col(Message.author) == MessageAuthor.HUMAN)
                .group_by(col(Message.work_item_id))
            )
            return {
                item_id
                for item_id, newest in result.all()
                if newest is not None and newest > cursors.get(item_id, 0)
            }

