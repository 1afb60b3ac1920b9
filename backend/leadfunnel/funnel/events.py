"""Append-only question event history."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EVENT_ANSWERED, ChatSession, DropoffPoint, QuestionEvent


def normalize_question_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def optional_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def append_question_event(
    db: AsyncSession,
    *,
    session_id: str,
    event_type: str,
    timestamp: datetime,
    order_set_id: str | None = None,
    question_id: Any = None,
    question_index: Any = None,
    answer: Any = None,
    time_to_answer_ms: Any = None,
    created_at: datetime | None = None,
) -> None:
    """Record one interaction.  Events are never updated or deduplicated here."""
    db.add(
        QuestionEvent(
            session_id=session_id,
            order_set_id=order_set_id or None,
            question_id=normalize_question_id(question_id),
            question_index=optional_int(question_index),
            event_type=event_type,
            answer=None if answer in (None, "") else str(answer),
            time_to_answer_ms=optional_int(time_to_answer_ms),
            timestamp=timestamp,
            created_at=created_at or timestamp,
        )
    )
    await db.commit()


async def has_answered_event(db: AsyncSession, session_id: str, question_id: Any) -> bool:
    result = await db.execute(
        select(QuestionEvent.id)
        .where(
            QuestionEvent.session_id == session_id,
            QuestionEvent.question_id == normalize_question_id(question_id),
            QuestionEvent.event_type == EVENT_ANSWERED,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def answered_question_ids(db: AsyncSession, session_id: str) -> set[str]:
    result = await db.execute(
        select(QuestionEvent.question_id)
        .where(
            QuestionEvent.session_id == session_id,
            QuestionEvent.event_type == EVENT_ANSWERED,
            QuestionEvent.question_id.is_not(None),
        )
        .distinct()
    )
    return {question_id for question_id in result.scalars().all()}


async def clear_transactional_data(db: AsyncSession) -> dict[str, int]:
    """Delete sessions, events and drop-off points; keep the order set catalog."""
    cleared: dict[str, int] = {}
    for label, model in (
        ("dropoff_points", DropoffPoint),
        ("question_events", QuestionEvent),
        ("chat_sessions", ChatSession),
    ):
        result = await db.execute(delete(model.__table__))
        cleared[label] = result.rowcount or 0
    await db.commit()
    return cleared
