"""
planbot/features/sync/service.py

Multi-device sync reconciliation.

Handles:
- push: merge client chats/messages/task state into the store
- pull: consistent snapshot of everything a device needs
- append_message: server-side writes (generated plans, attachments)

Merge policy is last-writer-wins everywhere except quota counters. Messages
with a client msg_id upsert by (tg_id, msg_id); messages without one are
always inserted, so resubmitting them duplicates rows.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import case, insert, select
from sqlalchemy.orm import Session

from planbot.core.database import as_utc, chats, get_db_session, messages, task_states, upsert
from planbot.features.quota.clock import normalize_now
from planbot.features.quota.service import require_tg_id, resolve_in_session
from planbot.models.sync import (
    DEFAULT_TASK_STATE,
    ChatOut,
    ChatUpsert,
    MessageOut,
    MessageUpsert,
    PullSnapshot,
    PushAck,
)
from planbot.models.user import QuotaUser


logger = logging.getLogger("planbot.sync")


def _upsert_chat(session: Session, tg_id: int, chat: ChatUpsert, now: datetime) -> None:
    stmt = upsert(session, chats).values(
        tg_id=tg_id,
        chat_id=chat.chat_id,
        title=chat.title,
        emoji=chat.emoji,
        updated_at=chat.updated_at or now,
    )
    # Only fields the client actually sent overwrite stored ones
    set_ = {"updated_at": stmt.excluded.updated_at}
    for field in ("title", "emoji"):
        if field in chat.model_fields_set:
            set_[field] = getattr(stmt.excluded, field)
    session.execute(
        stmt.on_conflict_do_update(index_elements=[chats.c.tg_id, chats.c.chat_id], set_=set_)
    )


def _touch_chat(session: Session, tg_id: int, chat_id: str, latest: datetime) -> None:
    """Create the chat if missing and raise updated_at to `latest` (never lower it)."""
    stmt = upsert(session, chats).values(tg_id=tg_id, chat_id=chat_id, updated_at=latest)
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=[chats.c.tg_id, chats.c.chat_id],
            set_={
                "updated_at": case(
                    (chats.c.updated_at < stmt.excluded.updated_at, stmt.excluded.updated_at),
                    else_=chats.c.updated_at,
                )
            },
        )
    )


def _write_message(
    session: Session,
    tg_id: int,
    chat_id: str,
    role: str,
    content: str,
    msg_id: Optional[str],
    created_at: datetime,
) -> None:
    values = dict(
        tg_id=tg_id,
        msg_id=msg_id,
        chat_id=chat_id,
        role=role,
        content=content,
        created_at=created_at,
    )
    if msg_id is None:
        session.execute(insert(messages).values(**values))
        return
    stmt = upsert(session, messages).values(**values)
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=[messages.c.tg_id, messages.c.msg_id],
            set_={
                "chat_id": stmt.excluded.chat_id,
                "role": stmt.excluded.role,
                "content": stmt.excluded.content,
                "created_at": stmt.excluded.created_at,
            },
        )
    )


def _merge_messages(
    session: Session, tg_id: int, rows: Iterable[MessageUpsert], now: datetime
) -> Tuple[int, int]:
    accepted = rejected = 0
    touched: Dict[str, datetime] = {}
    for row in rows:
        if not row.is_valid():
            rejected += 1
            continue
        created_at = row.created_at or now
        _write_message(session, tg_id, row.chat_id, row.role, row.content, row.msg_id, created_at)
        accepted += 1
        if row.chat_id not in touched or touched[row.chat_id] < created_at:
            touched[row.chat_id] = created_at
    for chat_id, latest in touched.items():
        _touch_chat(session, tg_id, chat_id, latest)
    return accepted, rejected


def _replace_task_state(session: Session, tg_id: int, state: Any, now: datetime) -> None:
    if not isinstance(state, dict):
        state = dict(DEFAULT_TASK_STATE)
    stmt = upsert(session, task_states).values(tg_id=tg_id, state=state, version=1, updated_at=now)
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=[task_states.c.tg_id],
            set_={
                "state": stmt.excluded.state,
                "version": task_states.c.version + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        )
    )


def append_message(
    session: Session,
    tg_id: int,
    chat_id: str,
    role: str,
    content: str,
    msg_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> None:
    created_at = normalize_now(created_at)
    _write_message(session, tg_id, chat_id, role, content, msg_id, created_at)
    _touch_chat(session, tg_id, chat_id, created_at)


def push(
    tg_id: Any,
    chats_upsert: Iterable[ChatUpsert] = (),
    messages_upsert: Iterable[MessageUpsert] = (),
    tasks_state: Any = None,
    now: Optional[datetime] = None,
) -> PushAck:
    """Merge one client batch. Invalid message rows are dropped and counted."""
    tg_id = require_tg_id(tg_id)
    now = normalize_now(now)
    chat_count = 0
    with get_db_session() as session:
        resolve_in_session(session, tg_id, now)
        for chat in chats_upsert:
            _upsert_chat(session, tg_id, chat, now)
            chat_count += 1
        accepted, rejected = _merge_messages(session, tg_id, messages_upsert, now)
        if tasks_state is not None:
            _replace_task_state(session, tg_id, tasks_state, now)

    if rejected:
        logger.info("sync.push.rejected_rows", extra={"tg_id": tg_id, "rejected": rejected})
    return PushAck(
        ok=True,
        server_time=now,
        accepted={"chats": chat_count, "messages": accepted},
        rejected=rejected,
    )


def load_task_state(session: Session, tg_id: int) -> Dict[str, Any]:
    row = session.execute(select(task_states.c.state).where(task_states.c.tg_id == tg_id)).first()
    if row is None or not isinstance(row.state, dict):
        return dict(DEFAULT_TASK_STATE)
    return row.state


def pull(tg_id: Any, since: Optional[datetime] = None, now: Optional[datetime] = None) -> Tuple[QuotaUser, PullSnapshot]:
    """
    Read-only projection plus a quota refresh.

    Chats come newest first; messages are grouped by chat and ordered by
    created_at (id breaks ties), never by arrival order.
    """
    tg_id = require_tg_id(tg_id)
    now = normalize_now(now)
    with get_db_session() as session:
        user = resolve_in_session(session, tg_id, now)

        chat_rows = session.execute(
            select(chats)
            .where(chats.c.tg_id == tg_id)
            .order_by(chats.c.updated_at.desc(), chats.c.chat_id)
        ).all()

        msg_stmt = select(messages).where(messages.c.tg_id == tg_id)
        if since is not None:
            msg_stmt = msg_stmt.where(messages.c.created_at >= normalize_now(since))
        msg_rows = session.execute(
            msg_stmt.order_by(messages.c.chat_id, messages.c.created_at, messages.c.id)
        ).all()

        state = load_task_state(session, tg_id)

    snapshot = PullSnapshot(
        chats=[
            ChatOut(chat_id=r.chat_id, title=r.title, emoji=r.emoji, updated_at=as_utc(r.updated_at))
            for r in chat_rows
        ],
        messages=[
            MessageOut(
                msg_id=r.msg_id,
                chat_id=r.chat_id,
                role=r.role,
                content=r.content,
                created_at=as_utc(r.created_at),
            )
            for r in msg_rows
        ],
        tasks_state=state,
        server_time=now,
    )
    return user, snapshot


def list_chat_messages(tg_id: int, chat_id: str, limit: int = 20) -> List[MessageOut]:
    """Most recent `limit` messages of one chat, oldest first (prompt context)."""
    with get_db_session() as session:
        rows = session.execute(
            select(messages)
            .where(messages.c.tg_id == tg_id, messages.c.chat_id == chat_id)
            .order_by(messages.c.created_at.desc(), messages.c.id.desc())
            .limit(limit)
        ).all()
    return [
        MessageOut(msg_id=r.msg_id, chat_id=r.chat_id, role=r.role, content=r.content, created_at=as_utc(r.created_at))
        for r in reversed(rows)
    ]
