"""Widget event ingestion.

Each handler takes the already-parsed event timestamp and the event's
``data`` object.  Handlers commit as they go: a failure part way through
leaves the earlier writes in place, which matches how the events are
replayed by the widget (each one is independent).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..flow.protocol import (
    ORDER_SET_SELECTED,
    QUESTION_ANSWERED,
    QUESTION_FLOW_COMPLETED,
    QUESTION_FLOW_DATA,
    QUESTION_STARTED,
)
from ..models import EVENT_ANSWERED, EVENT_STARTED, DropoffPoint
from .aggregator import SessionProgress, locate_dropoff
from .events import (
    answered_question_ids,
    append_question_event,
    has_answered_event,
    normalize_question_id,
    optional_int,
)
from .registry import OrderSetRegistry
from .session_store import (
    ensure_order_set,
    session_order_set_id,
    try_ensure_session,
    update_session,
    upsert_session,
)
from .timewindow import parse_event_timestamp


logger = logging.getLogger("lead-funnel")

UNKNOWN_EVENT_RESULT = {"success": False, "message": "Unknown event type"}

Handler = Callable[[AsyncSession, str, datetime, dict[str, Any]], Awaitable[dict[str, Any]]]


def _optional_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class AnalyticsService:
    """Dispatches widget events to the event store and session aggregate."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {
            ORDER_SET_SELECTED: self.handle_order_set_selected,
            QUESTION_STARTED: self.handle_question_started,
            QUESTION_ANSWERED: self.handle_question_answered,
            QUESTION_FLOW_COMPLETED: self.handle_question_flow_completed,
            QUESTION_FLOW_DATA: self.handle_question_flow_data,
        }

    async def handle_event(
        self,
        db: AsyncSession,
        event_type: str | None,
        session_id: str | None,
        timestamp: Any = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply one event.

        Raises ``ValueError`` for a missing session id or event type or an
        unparseable timestamp.  Unknown event types are not errors.
        """
        if not event_type or not session_id:
            raise ValueError("Missing required fields: eventType and sessionId")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("Unknown event type: %s", event_type)
            return dict(UNKNOWN_EVENT_RESULT)
        event_timestamp = parse_event_timestamp(timestamp)
        return await handler(db, str(session_id), event_timestamp, data or {})

    async def handle_batch(self, db: AsyncSession, events: list[Any]) -> dict[str, Any]:
        """Apply events one at a time; a failure never stops the rest."""
        errors = 0
        for item in events:
            try:
                if not isinstance(item, dict):
                    raise ValueError("Batch entries must be objects")
                await self.handle_event(
                    db,
                    item.get("eventType"),
                    item.get("sessionId"),
                    item.get("timestamp"),
                    item.get("data"),
                )
            except Exception as exc:
                await db.rollback()
                errors += 1
                logger.error("Batch event error: %s", exc)
        return {"success": True, "processed": len(events), "errors": errors}

    async def handle_order_set_selected(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        order_set_id = data.get("orderSetId") or None
        if order_set_id:
            created = await ensure_order_set(
                db,
                order_set_id,
                name=data.get("orderSetName"),
                description=data.get("description"),
                question_order=data.get("questionOrder"),
                created_at=timestamp,
            )
            if created:
                logger.info("Registered order set %s from widget metadata", order_set_id)

        await upsert_session(
            db,
            session_id,
            order_set_id,
            {"user_info": data.get("userInfo") or {}, "start_time": timestamp},
            created_at=timestamp,
        )
        return {"success": True}

    async def handle_question_started(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        await try_ensure_session(db, session_id, data.get("orderSetId"), timestamp)
        await append_question_event(
            db,
            session_id=session_id,
            event_type=EVENT_STARTED,
            timestamp=timestamp,
            order_set_id=data.get("orderSetId"),
            question_id=data.get("questionId"),
            question_index=data.get("questionIndex"),
        )
        return {"success": True}

    async def handle_question_answered(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        await try_ensure_session(db, session_id, data.get("orderSetId"), timestamp)
        await append_question_event(
            db,
            session_id=session_id,
            event_type=EVENT_ANSWERED,
            timestamp=timestamp,
            order_set_id=data.get("orderSetId"),
            question_id=data.get("questionId"),
            question_index=data.get("questionIndex"),
            answer=data.get("answer"),
            time_to_answer_ms=data.get("timeToAnswer"),
        )
        return {"success": True}

    async def handle_question_flow_completed(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        completion = _optional_float(data.get("completionPercentage"))
        await try_ensure_session(db, session_id, data.get("orderSetId"), timestamp)
        await update_session(
            db,
            session_id,
            {
                "end_time": timestamp,
                "completion_percentage": completion,
                "total_time_ms": optional_int(data.get("totalTime")),
            },
        )
        if completion is not None and completion < 100:
            await self._record_dropoff(db, session_id, timestamp, data.get("orderSetId"), completion)
        return {"success": True}

    async def _record_dropoff(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        order_set_id: str | None,
        completion: float,
    ) -> None:
        """Persist the first unanswered position of the session's order set."""
        order_set_id = order_set_id or await session_order_set_id(db, session_id)
        registry = await OrderSetRegistry.load(db, [order_set_id])
        progress = SessionProgress(
            session_id=session_id,
            order_set_id=order_set_id,
            answered=await answered_question_ids(db, session_id),
        )
        location = locate_dropoff(progress, registry)
        if location is None:
            logger.info("No drop-off position for session %s (order set %s)", session_id, order_set_id)
            return
        db.add(
            DropoffPoint(
                session_id=session_id,
                order_set_id=order_set_id,
                question_id=location.question_id,
                question_index=location.question_index,
                completion_at_dropoff=completion,
                timestamp=timestamp,
                created_at=timestamp,
            )
        )
        await db.commit()

    async def handle_question_flow_data(
        self,
        db: AsyncSession,
        session_id: str,
        timestamp: datetime,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """End-of-flow sync carrying every question of the flow.

        Answers already recorded incrementally are skipped so the sync
        never double-inserts them.
        """
        order_set_id = data.get("orderSetId") or None
        await try_ensure_session(db, session_id, order_set_id, timestamp)
        await upsert_session(
            db,
            session_id,
            order_set_id,
            {
                "user_info": data.get("userInfo") or {},
                "end_time": timestamp,
                "completion_percentage": _optional_float(data.get("completionPercentage")),
                "total_time_ms": optional_int(data.get("totalTime")),
            },
            created_at=timestamp,
        )

        question_order = [
            normalize_question_id(question_id) for question_id in data.get("questionOrder") or []
        ]
        questions = data.get("questions")
        if not isinstance(questions, list):
            return {"success": True}
        for question in questions:
            if not isinstance(question, dict) or not question.get("answered"):
                continue
            question_id = normalize_question_id(question.get("questionId"))
            if question_id is None or await has_answered_event(db, session_id, question_id):
                continue
            question_index = question_order.index(question_id) if question_id in question_order else None
            answered_at = timestamp
            if question.get("timestamp"):
                answered_at = parse_event_timestamp(question["timestamp"])
            await append_question_event(
                db,
                session_id=session_id,
                event_type=EVENT_ANSWERED,
                timestamp=answered_at,
                order_set_id=order_set_id,
                question_id=question_id,
                question_index=question_index,
                answer=question.get("answer"),
                time_to_answer_ms=question.get("timeToAnswer"),
                created_at=timestamp,
            )
        return {"success": True}


analytics_service = AnalyticsService()
