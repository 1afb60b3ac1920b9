from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_db
from .funnel.conversations import SCHEMA_EXTENDED, get_conversation, store_conversation
from .schemas import ConversationIn, ConversationOut


router = APIRouter(prefix="/api/chat", tags=["chat"])


def session_schema(request: Request) -> str:
    """Schema resolved at startup; extended until startup has run."""
    return getattr(request.app.state, "session_schema", SCHEMA_EXTENDED)


@router.post("/submit")
async def submit_conversation(
    payload: ConversationIn,
    schema: str = Depends(session_schema),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Store the full transcript of a finished conversation.

    Re-submitting the same ``sessionId`` updates the stored session.
    """
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="Missing required field: sessionId")
    try:
        return await store_conversation(db, payload, schema)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{session_id}", response_model=ConversationOut)
async def read_conversation(
    session_id: str,
    schema: str = Depends(session_schema),
    db: AsyncSession = Depends(get_db),
) -> ConversationOut:
    conversation = await get_conversation(db, session_id, schema)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationOut.model_validate(conversation)
