from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from planbot.core.errors import ValidationError
from planbot.features.ai.client import LanguageModel, get_language_model
from planbot.features.ai.service import create_plan
from planbot.features.quota.service import user_payload

router = APIRouter(prefix="/api/plan", tags=["plan"])


class PlanRequest(BaseModel):
    tg_id: int
    chat_id: str = Field(..., min_length=1, max_length=100)
    text: Optional[str] = Field(None, max_length=8000)
    profile: Optional[Dict[str, Any]] = None


@router.post("/create")
def create_plan_route(body: PlanRequest, llm: LanguageModel = Depends(get_language_model)):
    """
    Generate a plan for one chat.

    One `plans` unit is spent before the model runs.

    Errors:
        400 text_required: neither text nor profile given (no unit is spent)
        403 no_plans_left: daily limit reached
        502 ai_failed: model call failed (unit is not refunded)
    """
    if not (body.text and body.text.strip()) and not body.profile:
        raise ValidationError("Describe your day or send a profile", code="text_required")
    reply = create_plan(body.tg_id, body.chat_id, llm, text=body.text, profile=body.profile)
    return {
        **user_payload(reply.user),
        "text": reply.text,
        "cards": reply.cards,
        "chat_id": reply.chat_id,
        "message_ids": reply.message_ids,
    }
