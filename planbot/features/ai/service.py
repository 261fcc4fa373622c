"""Plan generation and attachment replies.

Quota is consumed BEFORE the model is called and is never refunded when the
model fails.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import update

from planbot.core.database import get_db_session, users
from planbot.core.errors import ValidationError
from planbot.features.ai.client import Attachment, LanguageModel
from planbot.features.ai.prompts import (
    build_attach_prompt,
    build_plan_prompt,
    extract_cards,
    strip_json_block,
)
from planbot.features.quota.clock import normalize_now
from planbot.features.quota.service import load_user, require_quota, require_tg_id
from planbot.features.sync.service import append_message, list_chat_messages
from planbot.models.user import QuotaUser

logger = logging.getLogger("planbot.ai")

HISTORY_LIMIT = 10


@dataclass(frozen=True)
class AssistantReply:
    text: str
    chat_id: str
    user: QuotaUser
    message_ids: List[str]
    cards: List[Dict[str, Any]] = field(default_factory=list)


def _require_chat_id(chat_id: Optional[str]) -> str:
    chat_id = (chat_id or "").strip()
    if not chat_id:
        raise ValidationError("chat_id is required", code="chat_id_required")
    return chat_id


def _store_exchange(
    tg_id: int,
    chat_id: str,
    user_content: Optional[str],
    reply: str,
    now: datetime,
    current_plan: Optional[Dict[str, Any]] = None,
) -> tuple:
    ids: List[str] = []
    with get_db_session() as session:
        if user_content:
            user_msg_id = f"srv-{uuid4()}"
            append_message(session, tg_id, chat_id, "user", user_content, msg_id=user_msg_id, created_at=now)
            ids.append(user_msg_id)
        reply_id = f"srv-{uuid4()}"
        # Same timestamp as the request; the surrogate id keeps the reply second
        append_message(session, tg_id, chat_id, "assistant", reply, msg_id=reply_id, created_at=now)
        ids.append(reply_id)
        if current_plan is not None:
            session.execute(
                update(users)
                .where(users.c.tg_id == tg_id)
                .values(current_plan=current_plan, updated_at=now)
            )
        user = load_user(session, tg_id)
    return ids, user


def create_plan(
    tg_id: Any,
    chat_id: Optional[str],
    llm: LanguageModel,
    text: Optional[str] = None,
    profile: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AssistantReply:
    tg_id = require_tg_id(tg_id)
    chat_id = _require_chat_id(chat_id)
    now = normalize_now(now)

    require_quota(tg_id, "plans", now)

    history = list_chat_messages(tg_id, chat_id, limit=HISTORY_LIMIT)
    raw = llm.generate(build_plan_prompt(text, profile, history))
    cards = extract_cards(raw)
    answer = strip_json_block(raw) or raw.strip()

    plan_snapshot = {
        "chat_id": chat_id,
        "text": answer,
        "cards": cards,
        "created_at": now.isoformat(),
    }
    ids, user = _store_exchange(tg_id, chat_id, (text or "").strip() or None, answer, now, plan_snapshot)
    logger.info("plan.created", extra={"tg_id": tg_id, "chat_id": chat_id, "cards": len(cards)})
    return AssistantReply(text=answer, chat_id=chat_id, user=user, message_ids=ids, cards=cards)


def attach_to_chat(
    tg_id: Any,
    chat_id: Optional[str],
    attachment: Attachment,
    llm: LanguageModel,
    text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AssistantReply:
    tg_id = require_tg_id(tg_id)
    chat_id = _require_chat_id(chat_id)
    now = normalize_now(now)
    if not attachment.data:
        raise ValidationError("file is empty", code="file_required")

    require_quota(tg_id, "media", now)

    raw = llm.generate(build_attach_prompt(text, attachment.filename), attachment)
    answer = raw.strip()

    note = (text or "").strip()
    user_content = f"[{attachment.filename or 'file'}] {note}".strip()
    ids, user = _store_exchange(tg_id, chat_id, user_content, answer, now)
    logger.info("chat.attachment_answered", extra={"tg_id": tg_id, "chat_id": chat_id, "mime_type": attachment.mime_type})
    return AssistantReply(text=answer, chat_id=chat_id, user=user, message_ids=ids)
