"""
planbot/features/sync/client.py

Device-side half of the sync protocol: merging pulled messages into local
state and batching rapid local edits into one push.

Used by the reference sync client and by tests that exercise push/pull
round trips end to end.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from planbot.models.sync import MessageOut, parse_client_time


logger = logging.getLogger("planbot.sync.client")

DEFAULT_QUIET_SECONDS = 1.5


def merge_messages(local: Iterable[MessageOut], incoming: Iterable[MessageOut]) -> List[MessageOut]:
    """Merge pulled messages into a local list.

    An incoming message whose msg_id is already known replaces the local copy;
    id-less messages are always kept. The result is sorted by created_at
    because pulls interleave arrival order across chats.
    """
    by_id: Dict[str, int] = {}
    merged: List[MessageOut] = []
    for msg in list(local) + list(incoming):
        if msg.msg_id is not None and msg.msg_id in by_id:
            merged[by_id[msg.msg_id]] = msg
            continue
        if msg.msg_id is not None:
            by_id[msg.msg_id] = len(merged)
        merged.append(msg)
    # sorted() is stable: equal timestamps keep local-then-incoming order
    return sorted(merged, key=lambda m: m.created_at)


def group_by_chat(items: Iterable[MessageOut]) -> Dict[str, List[MessageOut]]:
    grouped: Dict[str, List[MessageOut]] = {}
    for msg in items:
        grouped.setdefault(msg.chat_id, []).append(msg)
    return grouped


class PushDebouncer:
    """Cancellable deferred push with a fixed quiescence window.

    Every touch() restarts the window; the callback runs once the session has
    been quiet for `quiet_seconds`. Must be used from inside a running loop.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], quiet_seconds: float = DEFAULT_QUIET_SECONDS):
        self._callback = callback
        self.quiet_seconds = quiet_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def touch(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._fire_later())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Run the callback now if a push is pending."""
        if not self.pending:
            return
        self.cancel()
        await self._callback()

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.quiet_seconds)
        self._task = None
        try:
            await self._callback()
        except Exception:
            logger.exception("sync.debounced_push_failed")


class SyncTransport(Protocol):
    async def push(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...

    async def pull(self, since: Optional[str]) -> Dict[str, Any]: ...


class SyncSession:
    """One device's view of the user's chats, messages and task state."""

    def __init__(self, tg_id: int, transport: SyncTransport, quiet_seconds: float = DEFAULT_QUIET_SECONDS):
        self.tg_id = tg_id
        self.transport = transport
        self.messages: Dict[str, List[MessageOut]] = {}
        self.tasks_state: Dict[str, Any] = {"groups": []}
        self.cursor: Optional[datetime] = None
        self._outbox_chats: Dict[str, Dict[str, Any]] = {}
        self._outbox_messages: List[Dict[str, Any]] = []
        self._outbox_state: Optional[Dict[str, Any]] = None
        self.debouncer = PushDebouncer(self.push_now, quiet_seconds)

    def record_message(self, message: MessageOut) -> None:
        self.messages[message.chat_id] = merge_messages(self.messages.get(message.chat_id, []), [message])
        self._outbox_messages.append(message.model_dump(mode="json"))
        self.debouncer.touch()

    def record_chat(self, chat: Dict[str, Any]) -> None:
        self._outbox_chats[chat["chat_id"]] = chat
        self.debouncer.touch()

    def record_tasks_state(self, state: Dict[str, Any]) -> None:
        self.tasks_state = state
        self._outbox_state = state
        self.debouncer.touch()

    async def push_now(self) -> None:
        payload: Dict[str, Any] = {
            "tg_id": self.tg_id,
            "chats_upsert": list(self._outbox_chats.values()),
            "messages_upsert": list(self._outbox_messages),
        }
        if self._outbox_state is not None:
            payload["tasks_state"] = self._outbox_state
        sent_chats, sent_messages, sent_state = self._outbox_chats, self._outbox_messages, self._outbox_state
        self._outbox_chats, self._outbox_messages, self._outbox_state = {}, [], None
        try:
            await self.transport.push(payload)
        except BaseException:
            # put the batch back ahead of anything recorded while it was in flight
            self._outbox_chats = {**sent_chats, **self._outbox_chats}
            self._outbox_messages = sent_messages + self._outbox_messages
            if self._outbox_state is None:
                self._outbox_state = sent_state
            raise

    async def pull(self) -> None:
        since = self.cursor.isoformat() if self.cursor else None
        body = await self.transport.pull(since)
        incoming = [MessageOut.model_validate(m) for m in body.get("messages", [])]
        for chat_id, chat_msgs in group_by_chat(incoming).items():
            self.messages[chat_id] = merge_messages(self.messages.get(chat_id, []), chat_msgs)
        if isinstance(body.get("tasks_state"), dict) and self._outbox_state is None:
            self.tasks_state = body["tasks_state"]
        server_time = parse_client_time(body.get("server_time"))
        if server_time is not None:
            self.cursor = server_time

    @property
    def has_unsent_changes(self) -> bool:
        return bool(self._outbox_chats or self._outbox_messages or self._outbox_state is not None)

    async def close(self) -> None:
        """Push whatever is still queued, including batches a failed push put back."""
        self.debouncer.cancel()
        if self.has_unsent_changes:
            await self.push_now()
