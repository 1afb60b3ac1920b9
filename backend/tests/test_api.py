from __future__ import annotations

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")
pytest.importorskip("firebase_admin")

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from leadfunnel import auth as auth_utils
from leadfunnel import main as main_module
from leadfunnel.db import enable_sqlite_foreign_keys, get_db, init_db


@pytest.fixture
def client(tmp_path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}", poolclass=NullPool)
    enable_sqlite_foreign_keys(engine)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async def fake_init_db() -> str:
        return await init_db(engine)

    async def override_get_db():
        async with factory() as session:
            yield session

    monkeypatch.setattr(main_module, "init_db", fake_init_db)
    monkeypatch.setattr(main_module, "AsyncSessionLocal", factory)
    main_module.app.dependency_overrides[get_db] = override_get_db
    main_module.app.dependency_overrides[auth_utils.require_admin] = lambda: {"uid": "admin-user"}

    with TestClient(main_module.app) as test_client:
        yield test_client
    main_module.app.dependency_overrides.clear()


def post_event(client: TestClient, event_type: str, session_id: str, **data):
    return client.post(
        "/api/analytics/event",
        json={"eventType": event_type, "sessionId": session_id, "data": data},
    )


def test_health_and_index(client: TestClient) -> None:
    health = client.get("/health").json()
    index = client.get("/").json()

    assert health["status"] == "ok"
    assert health["dbType"] == "sqlite"
    assert index["endpoints"]["analytics"] == "/api/analytics/event"


def test_event_requires_type_and_session(client: TestClient) -> None:
    response = client.post("/api/analytics/event", json={"eventType": "question_started"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required fields: eventType and sessionId"


def test_unknown_event_type_is_not_an_error(client: TestClient) -> None:
    response = post_event(client, "page_viewed", "s1")

    assert response.status_code == 200
    assert response.json() == {"success": False, "message": "Unknown event type"}


def test_invalid_timestamp_is_a_bad_request(client: TestClient) -> None:
    response = client.post(
        "/api/analytics/event",
        json={"eventType": "question_started", "sessionId": "s1", "timestamp": "soon", "data": {}},
    )

    assert response.status_code == 400


def test_batch_requires_an_array(client: TestClient) -> None:
    response = client.post("/api/analytics/batch", json={"events": {"eventType": "question_started"}})

    assert response.status_code == 400
    assert response.json()["detail"] == "Events must be an array"


def test_batch_reports_processed_and_errors(client: TestClient) -> None:
    response = client.post(
        "/api/analytics/batch",
        json={
            "events": [
                {"eventType": "question_started", "sessionId": "s1", "data": {"questionId": 1}},
                {"eventType": "question_started"},
                {"eventType": "question_answered", "sessionId": "s1", "data": {"questionId": 1}},
            ]
        },
    )

    assert response.json() == {"success": True, "processed": 3, "errors": 1}


def test_events_flow_into_dashboard_reports(client: TestClient) -> None:
    post_event(client, "order_set_selected", "s1", orderSetId="set_1", userInfo={})
    for index, question_id in enumerate((1, 2)):
        post_event(client, "question_started", "s1", orderSetId="set_1", questionId=question_id, questionIndex=index)
        post_event(
            client,
            "question_answered",
            "s1",
            orderSetId="set_1",
            questionId=question_id,
            questionIndex=index,
            answer="x",
            timeToAnswer=1000,
        )

    stats = client.get("/api/dashboard/stats?days=7").json()
    order_sets = client.get("/api/dashboard/order-sets").json()
    dropoffs = client.get("/api/dashboard/dropoffs").json()
    questions = client.get("/api/dashboard/questions").json()
    rates = client.get("/api/dashboard/completion-rates?days=1").json()

    assert stats == {
        "totalSessions": 1,
        "avgCompletion": 25.0,
        "avgTime": 0.0,
        "totalEvents": 4,
        "totalDropoffs": 1,
    }
    assert order_sets[0]["id"] == "set_1"
    assert order_sets[0]["name"] == "Standard Flow"
    assert order_sets[0]["questionCount"] == 8
    assert order_sets[0]["lowCompletionCount"] == 1
    assert dropoffs == [
        {
            "orderSetId": "set_1",
            "questionId": "3",
            "questionIndex": 2,
            "dropoffCount": 1,
            "avgCompletionAtDropoff": 25.0,
        }
    ]
    assert [(row["questionId"], row["answerRate"]) for row in questions] == [("1", 100.0), ("2", 100.0)]
    assert rates == {"high": 0, "medium": 0, "low": 1}


def test_summary_and_lenient_days(client: TestClient) -> None:
    summary = client.get("/api/dashboard/summary?days=abc")

    assert summary.status_code == 200
    assert summary.json()["days"] == 30
    assert summary.json()["stats"]["totalSessions"] == 0


def test_clear_data_keeps_the_catalog(client: TestClient) -> None:
    post_event(client, "question_answered", "s1", orderSetId="set_1", questionId=1)

    response = client.delete("/api/dashboard/clear-data")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["cleared"] == {"dropoff_points": 0, "question_events": 1, "chat_sessions": 1}
    assert client.get("/api/dashboard/stats").json()["totalSessions"] == 0

    post_event(client, "order_set_selected", "s2", orderSetId="set_4")
    order_sets = client.get("/api/dashboard/order-sets").json()
    assert order_sets[0]["id"] == "set_4"
    assert order_sets[0]["name"] == "Asset-First Approach"


def test_clear_data_requires_admin_token(client: TestClient) -> None:
    main_module.app.dependency_overrides.pop(auth_utils.require_admin)

    response = client.delete("/api/dashboard/clear-data")

    assert response.status_code == 401


def test_store_outage_maps_to_503(client: TestClient) -> None:
    class UnreachableDB:
        async def execute(self, *_args, **_kwargs):
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def unreachable_db():
        yield UnreachableDB()

    main_module.app.dependency_overrides[get_db] = unreachable_db

    response = client.get("/api/dashboard/stats")

    assert response.status_code == 503
    assert response.json() == {"error": "Analytics backend unavailable"}


def test_chat_submit_and_fetch(client: TestClient) -> None:
    response = client.post(
        "/api/chat/submit",
        json={
            "sessionId": "c1",
            "orderSetId": "set_1",
            "startTime": "2024-06-15T12:00:00Z",
            "messages": [{"role": "user", "text": "hello"}],
            "userInfo": {"name": "Pat"},
            "metadata": {"source": "widget"},
            "questionAnswers": {"1": "Over $100,000"},
            "duration": {"milliseconds": 4200},
        },
    )

    assert response.json() == {
        "success": True,
        "sessionId": "c1",
        "message": "Conversation stored successfully",
    }
    stored = client.get("/api/chat/c1").json()
    assert stored["order_set_id"] == "set_1"
    assert stored["messages"] == [{"role": "user", "text": "hello"}]
    assert stored["metadata"] == {"source": "widget"}
    assert stored["question_answers"] == {"1": "Over $100,000"}
    assert stored["total_time_ms"] == 4200


def test_chat_submit_with_unknown_order_set_still_stores(client: TestClient) -> None:
    client.post("/api/chat/submit", json={"sessionId": "c2", "orderSetId": "ghost"})

    stored = client.get("/api/chat/c2").json()

    assert stored["id"] == "c2"
    assert stored["order_set_id"] is None


def test_chat_validation_and_missing_session(client: TestClient) -> None:
    assert client.post("/api/chat/submit", json={"messages": []}).status_code == 400
    assert client.get("/api/chat/nope").status_code == 404
