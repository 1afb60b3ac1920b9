"""SQLAlchemy models for the lead funnel analytics store.

Four tables back the funnel.  ``order_sets`` is the catalog of question
sequences.  ``chat_sessions`` holds one row per funnel attempt; its
``completion_percentage`` is whatever the widget reported and is only a
display cache.  ``question_events`` is the append-only event history
every report is recomputed from.  ``dropoff_points`` records where an
incomplete flow stopped, written once when the flow completes.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


JSONType = JSON().with_variant(JSONB(), "postgresql")

EVENT_STARTED = "started"
EVENT_ANSWERED = "answered"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderSet(Base):
    """A named sequence of question ids defining one funnel variant.

    ``question_order`` is normally a JSON array, but rows written by
    older tooling hold a JSON-encoded string; readers go through
    ``funnel.registry.decode_question_order``.
    """

    __tablename__ = "order_sets"

    id: str = Column(String(64), primary_key=True)
    name: str = Column(String(128), nullable=False)
    description: Optional[str] = Column(Text, nullable=True)
    question_order = Column(JSONType, nullable=True)
    active: bool = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ChatSession(Base):
    """One end-user funnel attempt, keyed by a client-generated id."""

    __tablename__ = "chat_sessions"

    id: str = Column(String(128), primary_key=True)
    order_set_id: Optional[str] = Column(
        String(64), ForeignKey("order_sets.id"), nullable=True
    )
    user_info = Column(JSONType, nullable=True)

    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    completion_percentage: Optional[float] = Column(Float, nullable=True)
    total_time_ms: Optional[int] = Column(Integer, nullable=True)

    messages = Column(JSONType, nullable=True)
    session_metadata = Column("metadata", JSONType, key="session_metadata", nullable=True)
    question_answers = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class QuestionEvent(Base):
    """An immutable record of a question being shown or answered."""

    __tablename__ = "question_events"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    session_id: str = Column(
        String(128), ForeignKey("chat_sessions.id"), nullable=False, index=True
    )
    order_set_id: Optional[str] = Column(String(64), nullable=True)
    question_id: Optional[str] = Column(String(64), nullable=True)
    question_index: Optional[int] = Column(Integer, nullable=True)
    event_type: str = Column(String(16), nullable=False)
    answer: Optional[str] = Column(Text, nullable=True)
    time_to_answer_ms: Optional[int] = Column(Integer, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class DropoffPoint(Base):
    """Where an incomplete flow stopped, persisted at completion time."""

    __tablename__ = "dropoff_points"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    session_id: str = Column(String(128), ForeignKey("chat_sessions.id"), nullable=False)
    order_set_id: Optional[str] = Column(String(64), nullable=True)
    question_id: Optional[str] = Column(String(64), nullable=True)
    question_index: Optional[int] = Column(Integer, nullable=True)
    completion_at_dropoff: Optional[float] = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
