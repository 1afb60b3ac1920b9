"""Message protocol definitions for the chat flow.

Two vocabularies live here: the analytics event types the widget posts
to ``/api/analytics/event``, and the message types exchanged over the
``/ws/flow`` websocket when the server drives the question flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# Analytics event types
ORDER_SET_SELECTED = "order_set_selected"
QUESTION_STARTED = "question_started"
QUESTION_ANSWERED = "question_answered"
QUESTION_FLOW_COMPLETED = "question_flow_completed"
QUESTION_FLOW_DATA = "question_flow_data"

# Types of messages sent by the client
CLIENT_ANSWER = "client.answer"
CLIENT_STOP = "client.stop"

# Types of messages sent by the server
SERVER_STATUS = "server.status"
SERVER_QUESTION = "server.question"
SERVER_TEXT = "server.text"
SERVER_RETRY = "server.retry"
SERVER_SUMMARY = "server.summary"
SERVER_ERROR = "error"


def epoch_ms_to_iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


@dataclass
class AnalyticsEvent:
    """One event in the shape the ingestion endpoint accepts."""

    event_type: str
    session_id: str
    timestamp_ms: int
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp(self) -> str:
        return epoch_ms_to_iso(self.timestamp_ms)
