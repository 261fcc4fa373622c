"""
Multi-device sync routes.

- POST /api/sync/pull: full projection (optionally messages since a cursor)
- POST /api/sync/push: merge one batch of local edits
"""
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, field_validator

from planbot.features.quota.clock import normalize_now
from planbot.features.quota.service import user_payload
from planbot.features.sync.service import pull, push
from planbot.models.sync import ChatUpsert, MessageUpsert, PushAck, parse_client_time

router = APIRouter(prefix="/api/sync", tags=["sync"])


class PullRequest(BaseModel):
    tg_id: int
    since: Optional[datetime] = None

    @field_validator("since", mode="before")
    @classmethod
    def _parse_since(cls, v):
        return parse_client_time(v)


class PushRequest(BaseModel):
    tg_id: int
    chats_upsert: List[ChatUpsert] = []
    messages_upsert: List[MessageUpsert] = []
    tasks_state: Optional[Any] = None


@router.post("/pull")
def sync_pull(body: PullRequest):
    now = normalize_now()
    user, snapshot = pull(body.tg_id, since=body.since, now=now)
    return {**user_payload(user, now), **snapshot.model_dump(mode="json")}


@router.post("/push", response_model=PushAck)
def sync_push(body: PushRequest):
    return push(
        body.tg_id,
        chats_upsert=body.chats_upsert,
        messages_upsert=body.messages_upsert,
        tasks_state=body.tasks_state,
    )
