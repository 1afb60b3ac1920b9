from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from conftest import NOW, add_order_set, add_session
from leadfunnel.funnel.aggregator import compute_completion
from leadfunnel.funnel.ingest import AnalyticsService
from leadfunnel.funnel.session_store import execute_with_order_set_fallback, is_foreign_key_violation
from leadfunnel.models import ChatSession, DropoffPoint, OrderSet, QuestionEvent


TS = "2024-06-15T12:00:00Z"


@pytest.fixture
def service() -> AnalyticsService:
    return AnalyticsService()


async def count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def get_session(db, session_id: str) -> ChatSession | None:
    db.expire_all()
    return (await db.execute(select(ChatSession).where(ChatSession.id == session_id))).scalar_one_or_none()


@pytest.mark.asyncio
async def test_missing_ids_raise_value_error(db, service) -> None:
    with pytest.raises(ValueError):
        await service.handle_event(db, "question_started", None, TS, {})
    with pytest.raises(ValueError):
        await service.handle_event(db, None, "s1", TS, {})


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged_without_writes(db, service) -> None:
    result = await service.handle_event(db, "page_viewed", "s1", TS, {})

    assert result == {"success": False, "message": "Unknown event type"}
    assert await count(db, ChatSession) == 0


@pytest.mark.asyncio
async def test_order_set_selected_registers_unknown_order_set(db, service) -> None:
    result = await service.handle_event(
        db,
        "order_set_selected",
        "s1",
        TS,
        {"orderSetId": "set_9", "questionOrder": [3, 1], "userInfo": {"source": "ad"}},
    )

    assert result == {"success": True}
    order_set = (await db.execute(select(OrderSet).where(OrderSet.id == "set_9"))).scalar_one()
    assert order_set.name == "Order Set set_9"
    assert order_set.question_order == [3, 1]
    session = await get_session(db, "s1")
    assert session.order_set_id == "set_9"
    assert session.user_info == {"source": "ad"}


@pytest.mark.asyncio
async def test_repeated_selection_updates_the_same_session(db, service) -> None:
    await add_order_set(db, "A", [1, 2])
    await add_order_set(db, "B", [2, 1])

    await service.handle_event(db, "order_set_selected", "s1", TS, {"orderSetId": "A"})
    await service.handle_event(db, "order_set_selected", "s1", TS, {"orderSetId": "B"})

    assert await count(db, ChatSession) == 1
    assert (await get_session(db, "s1")).order_set_id == "B"


@pytest.mark.asyncio
async def test_question_events_create_placeholder_session(db, service) -> None:
    await add_order_set(db, "A", [1, 2])

    await service.handle_event(
        db,
        "question_answered",
        "s1",
        TS,
        {"orderSetId": "A", "questionId": 1, "questionIndex": 0, "answer": "Yes", "timeToAnswer": 900},
    )

    session = await get_session(db, "s1")
    assert session is not None
    assert session.order_set_id == "A"
    event = (await db.execute(select(QuestionEvent))).scalar_one()
    assert event.question_id == "1"
    assert event.event_type == "answered"
    assert event.time_to_answer_ms == 900


@pytest.mark.asyncio
async def test_dangling_order_set_reference_falls_back_to_null(db, service) -> None:
    await service.handle_event(
        db,
        "question_started",
        "s1",
        TS,
        {"orderSetId": "ghost", "questionId": 1, "questionIndex": 0},
    )

    session = await get_session(db, "s1")
    assert session is not None
    assert session.order_set_id is None
    event = (await db.execute(select(QuestionEvent))).scalar_one()
    assert event.order_set_id == "ghost"


@pytest.mark.asyncio
async def test_fallback_does_not_hide_other_integrity_errors(db) -> None:
    await add_session(db, "s1", None)

    def build(order_set_id):
        return ChatSession.__table__.insert().values(id="s1", order_set_id=order_set_id, created_at=NOW)

    with pytest.raises(IntegrityError) as excinfo:
        await execute_with_order_set_fallback(db, build, "ghost")
    assert not is_foreign_key_violation(excinfo.value)


@pytest.mark.asyncio
async def test_incomplete_flow_persists_first_gap_dropoff(db, service) -> None:
    await add_order_set(db, "A", [1, 2, 3])
    await add_session(db, "s1", "A", answered=[1, 3])

    await service.handle_event(
        db,
        "question_flow_completed",
        "s1",
        TS,
        {"orderSetId": "A", "completionPercentage": 66.67, "totalTime": 4200},
    )

    session = await get_session(db, "s1")
    assert session.completion_percentage == pytest.approx(66.67)
    assert session.total_time_ms == 4200
    assert session.end_time is not None
    dropoff = (await db.execute(select(DropoffPoint))).scalar_one()
    assert dropoff.question_id == "2"
    assert dropoff.question_index == 1
    assert dropoff.completion_at_dropoff == pytest.approx(66.67)


@pytest.mark.asyncio
async def test_unplaceable_incomplete_flow_records_no_dropoff(db, service) -> None:
    await service.handle_event(db, "order_set_selected", "s1", TS, {"orderSetId": "set_9"})
    await service.handle_event(
        db, "question_answered", "s1", TS, {"orderSetId": "set_9", "questionId": 1, "questionIndex": 0}
    )

    result = await service.handle_event(
        db, "question_flow_completed", "s1", TS, {"orderSetId": "set_9", "completionPercentage": 12.5}
    )

    assert result == {"success": True}
    assert (await get_session(db, "s1")).completion_percentage == pytest.approx(12.5)
    assert await count(db, DropoffPoint) == 0


@pytest.mark.asyncio
async def test_complete_flow_records_no_dropoff(db, service) -> None:
    await add_order_set(db, "A", [1, 2])
    await add_session(db, "s1", "A", answered=[1, 2])

    await service.handle_event(
        db, "question_flow_completed", "s1", TS, {"orderSetId": "A", "completionPercentage": 100}
    )

    assert await count(db, DropoffPoint) == 0


@pytest.mark.asyncio
async def test_replayed_answer_is_stored_twice_but_counted_once(db, service) -> None:
    await add_order_set(db, "A", [1, 2, 3])
    answer = {"orderSetId": "A", "questionId": 1, "questionIndex": 0, "answer": "Yes"}

    await service.handle_event(db, "question_answered", "s1", TS, answer)
    await service.handle_event(db, "question_answered", "s1", TS, answer)

    assert await count(db, QuestionEvent) == 2
    assert await compute_completion(db, "s1") == {"s1": pytest.approx(100 / 3)}


@pytest.mark.asyncio
async def test_flow_data_backfills_without_duplicates(db, service) -> None:
    await add_order_set(db, "A", [1, 2, 3])
    await add_session(db, "s1", "A", answered=[1])

    payload = {
        "orderSetId": "A",
        "questionOrder": [1, 2, 3],
        "completionPercentage": 66.67,
        "totalTime": 5000,
        "userInfo": {"name": "Pat"},
        "questions": [
            {"questionId": 1, "answered": True, "answer": "$10,000 - $14,999"},
            {"questionId": 2, "answered": False},
            {"questionId": 3, "answered": True, "answer": "Texas", "timestamp": 1718452800000},
        ],
    }
    await service.handle_event(db, "question_flow_data", "s1", TS, payload)
    await service.handle_event(db, "question_flow_data", "s1", TS, payload)

    events = (
        await db.execute(select(QuestionEvent).order_by(QuestionEvent.question_id))
    ).scalars().all()
    assert [(event.question_id, event.question_index) for event in events] == [("1", 0), ("3", 2)]
    session = await get_session(db, "s1")
    assert session.user_info == {"name": "Pat"}
    assert session.total_time_ms == 5000


@pytest.mark.asyncio
async def test_batch_counts_failures_and_keeps_going(db, service) -> None:
    result = await service.handle_batch(
        db,
        [
            {"eventType": "question_started", "sessionId": "s1", "timestamp": TS, "data": {"questionId": 1}},
            {"eventType": "question_started", "timestamp": TS},
            "not an object",
            {"eventType": "question_started", "sessionId": "s2", "timestamp": "never", "data": {}},
            {"eventType": "mystery", "sessionId": "s3"},
            {"eventType": "question_answered", "sessionId": "s1", "timestamp": TS, "data": {"questionId": 1}},
        ],
    )

    assert result == {"success": True, "processed": 6, "errors": 3}
    assert await count(db, QuestionEvent) == 2
