from fastapi import APIRouter
from pydantic import BaseModel

from planbot.features.quota.clock import normalize_now
from planbot.features.quota.service import resolve, user_payload

router = APIRouter(prefix="/api/user", tags=["user"])


class InitRequest(BaseModel):
    tg_id: int


@router.post("/init")
def init_user(body: InitRequest):
    """Create the user on first contact and return fresh counters."""
    now = normalize_now()
    user = resolve(body.tg_id, now)
    return user_payload(user, now)
