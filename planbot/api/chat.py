from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from planbot.core.config import settings
from planbot.core.errors import PayloadTooLargeError
from planbot.features.ai.client import Attachment, LanguageModel, get_language_model
from planbot.features.ai.service import attach_to_chat
from planbot.features.quota.service import user_payload

router = APIRouter(prefix="/api/chat", tags=["chat"])

DEFAULT_MIME_TYPE = "application/octet-stream"


@router.post("/attach")
def attach_file(
    tg_id: int = Form(...),
    chat_id: str = Form(...),
    text: Optional[str] = Form(None),
    file: UploadFile = File(...),
    llm: LanguageModel = Depends(get_language_model),
):
    """Answer about an uploaded file. Spends one `media` unit."""
    limit = settings.MAX_UPLOAD_BYTES
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise PayloadTooLargeError(
            f"File exceeds {limit} bytes",
            extra={"max_bytes": limit},
        )

    attachment = Attachment(
        data=data,
        mime_type=file.content_type or DEFAULT_MIME_TYPE,
        filename=file.filename,
    )
    reply = attach_to_chat(tg_id, chat_id, attachment, llm, text=text)
    return {
        **user_payload(reply.user),
        "text": reply.text,
        "chat_id": reply.chat_id,
        "message_ids": reply.message_ids,
    }
