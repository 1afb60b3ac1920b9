from __future__ import annotations

import pytest

from conftest import add_order_set
from leadfunnel.funnel.conversations import (
    conversation_values,
    decode_json_field,
    get_conversation,
    store_conversation,
)
from leadfunnel.schemas import ConversationIn


def build_payload(**overrides) -> ConversationIn:
    data = {
        "sessionId": "c1",
        "messages": [{"role": "bot", "text": "Hi"}],
        "userInfo": {"name": "Pat"},
        "metadata": {"page": "/relief"},
        "questionAnswers": {"4": "yes"},
        "totalTime": 3000,
    }
    data.update(overrides)
    return ConversationIn.model_validate(data)


def test_legacy_schema_folds_transcript_into_user_info() -> None:
    values = conversation_values(build_payload(), "legacy")

    assert "messages" not in values
    assert values["user_info"] == {
        "name": "Pat",
        "messages": [{"role": "bot", "text": "Hi"}],
        "metadata": {"page": "/relief"},
        "questionAnswers": {"4": "yes"},
    }
    assert values["total_time_ms"] == 3000


def test_duration_is_used_when_total_time_is_missing() -> None:
    values = conversation_values(build_payload(totalTime=None, duration={"milliseconds": 1234}), "extended")

    assert values["total_time_ms"] == 1234
    assert values["session_metadata"] == {"page": "/relief"}


def test_zero_completion_is_stored_as_missing() -> None:
    values = conversation_values(build_payload(completionPercentage=0), "extended")

    assert values["completion_percentage"] is None


def test_decode_json_field_leaves_undecodable_text() -> None:
    assert decode_json_field("messages", '[{"a": 1}]') == [{"a": 1}]
    assert decode_json_field("messages", "not json") == "not json"
    assert decode_json_field("messages", [1]) == [1]


@pytest.mark.asyncio
async def test_store_then_update_conversation(db) -> None:
    await add_order_set(db, "set_1", [1, 2])

    await store_conversation(db, build_payload(orderSetId="set_1"))
    await store_conversation(db, build_payload(orderSetId="set_1", messages=[], completionPercentage=50))
    db.expire_all()

    stored = await get_conversation(db, "c1")

    assert stored["order_set_id"] == "set_1"
    assert stored["messages"] == []
    assert stored["completion_percentage"] == 50.0
    assert stored["metadata"] == {"page": "/relief"}


@pytest.mark.asyncio
async def test_legacy_read_omits_transcript_columns(db) -> None:
    await store_conversation(db, build_payload(), "legacy")

    stored = await get_conversation(db, "c1", "legacy")

    assert "messages" not in stored
    assert stored["user_info"]["messages"] == [{"role": "bot", "text": "Hi"}]


@pytest.mark.asyncio
async def test_string_user_info_blob_is_decoded_on_read(db) -> None:
    await store_conversation(db, build_payload(userInfo='{"name": "Sam"}'))

    stored = await get_conversation(db, "c1")

    assert stored["user_info"] == {"name": "Sam"}


@pytest.mark.asyncio
async def test_missing_session_id_is_rejected(db) -> None:
    with pytest.raises(ValueError):
        await store_conversation(db, ConversationIn())
    assert await get_conversation(db, "missing") is None
