"""
planbot/models/sync.py

Wire shapes for the offline-first push/pull protocol.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_ROLES = ("user", "assistant")

# width of the chat_id and msg_id columns
ID_MAX_LENGTH = 100

DEFAULT_TASK_STATE: Dict[str, Any] = {"groups": []}


def _from_epoch_ms(value: Union[int, float]) -> datetime:
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {value!r}") from e


def parse_client_time(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Accept ISO-8601 strings, epoch milliseconds or datetimes; return aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = _from_epoch_ms(value)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.lstrip("-").isdigit():
            dt = _from_epoch_ms(int(raw))
        else:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f"Timestamp out of range: {value!r}") from e


class ChatUpsert(BaseModel):
    chat_id: str = Field(min_length=1, max_length=ID_MAX_LENGTH)
    title: Optional[str] = None
    emoji: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, v):
        return parse_client_time(v)


class MessageUpsert(BaseModel):
    """All fields optional; the reconciler drops invalid rows instead of failing the push."""
    msg_id: Optional[str] = None
    chat_id: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, v):
        try:
            return parse_client_time(v)
        except ValueError:
            return None

    @field_validator("msg_id", "chat_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    def is_valid(self) -> bool:
        return bool(
            self.chat_id
            and len(self.chat_id) <= ID_MAX_LENGTH
            and (self.msg_id is None or len(self.msg_id) <= ID_MAX_LENGTH)
            and self.role in MESSAGE_ROLES
            and self.content
            and self.content.strip()
        )


class ChatOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    chat_id: str
    title: Optional[str] = None
    emoji: Optional[str] = None
    updated_at: datetime


class MessageOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    msg_id: Optional[str] = None
    chat_id: str
    role: str
    content: str
    created_at: datetime


class PullSnapshot(BaseModel):
    chats: List[ChatOut]
    messages: List[MessageOut]
    tasks_state: Dict[str, Any]
    server_time: datetime


class PushAck(BaseModel):
    ok: bool = True
    server_time: datetime
    accepted: Dict[str, int]
    rejected: int = 0
