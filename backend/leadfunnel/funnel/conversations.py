"""Full conversation transcripts posted by the widget at the end of a chat."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ChatSession, utcnow
from ..schemas import ConversationIn
from .session_store import upsert_session
from .timewindow import parse_event_timestamp


logger = logging.getLogger("lead-funnel")

SCHEMA_EXTENDED = "extended"
SCHEMA_LEGACY = "legacy"

BASE_COLUMNS = (
    ChatSession.id,
    ChatSession.order_set_id,
    ChatSession.user_info,
    ChatSession.start_time,
    ChatSession.end_time,
    ChatSession.completion_percentage,
    ChatSession.total_time_ms,
    ChatSession.created_at,
)
EXTENDED_COLUMNS = (
    ChatSession.messages,
    ChatSession.session_metadata,
    ChatSession.question_answers,
)


def _optional_timestamp(value: Any):
    if value is None or value == "":
        return None
    return parse_event_timestamp(value)


def _user_info_dict(user_info: Any) -> dict[str, Any]:
    if isinstance(user_info, dict):
        return dict(user_info)
    if isinstance(user_info, str) and user_info:
        try:
            decoded = json.loads(user_info)
        except ValueError:
            return {"raw": user_info}
        if isinstance(decoded, dict):
            return decoded
        return {"raw": decoded}
    return {}


def conversation_values(payload: ConversationIn, schema: str) -> dict[str, Any]:
    """Column values for one transcript under the given session schema.

    The legacy table has no transcript columns, so the transcript is
    folded into ``user_info``.
    """
    total_time = payload.total_time
    if not total_time and payload.duration:
        total_time = payload.duration.get("milliseconds")
    values: dict[str, Any] = {
        "start_time": _optional_timestamp(payload.start_time),
        "end_time": _optional_timestamp(payload.end_time),
        "completion_percentage": payload.completion_percentage or None,
        "total_time_ms": int(total_time) if total_time else None,
    }
    if schema == SCHEMA_LEGACY:
        logger.warning("Transcript columns missing; storing session %s transcript in user_info", payload.session_id)
        values["user_info"] = {
            **_user_info_dict(payload.user_info),
            "messages": payload.messages,
            "metadata": payload.metadata,
            "questionAnswers": payload.question_answers,
        }
        return values
    values.update(
        {
            "user_info": payload.user_info,
            "messages": payload.messages,
            "session_metadata": payload.metadata,
            "question_answers": payload.question_answers,
        }
    )
    return values


async def store_conversation(
    db: AsyncSession,
    payload: ConversationIn,
    schema: str = SCHEMA_EXTENDED,
) -> dict[str, Any]:
    if not payload.session_id:
        raise ValueError("Missing required field: sessionId")
    await upsert_session(
        db,
        payload.session_id,
        payload.order_set_id,
        conversation_values(payload, schema),
        created_at=utcnow(),
    )
    return {
        "success": True,
        "sessionId": payload.session_id,
        "message": "Conversation stored successfully",
    }


def decode_json_field(name: str, value: Any) -> Any:
    """Parse JSON stored as text; undecodable blobs are returned untouched."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("Could not parse %s as JSON", name)
        return value


async def get_conversation(
    db: AsyncSession,
    session_id: str,
    schema: str = SCHEMA_EXTENDED,
) -> dict[str, Any] | None:
    columns = BASE_COLUMNS + (EXTENDED_COLUMNS if schema == SCHEMA_EXTENDED else ())
    result = await db.execute(select(*columns).where(ChatSession.id == session_id))
    row = result.mappings().one_or_none()
    if row is None:
        return None
    conversation = dict(row)
    if "session_metadata" in conversation:
        conversation["metadata"] = conversation.pop("session_metadata")
    for name in ("user_info", "messages", "metadata", "question_answers"):
        if name in conversation:
            conversation[name] = decode_json_field(name, conversation[name])
    return conversation
