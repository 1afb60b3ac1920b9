"""Pydantic schemas for input and output validation.

Request and report payloads use the camelCase keys the chat widget and
dashboard already speak; ``CamelModel`` maps them onto snake_case
attributes so report dataclasses can be validated directly.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class AnalyticsEventIn(CamelModel):
    """One widget event.  Required ids are checked by the route for a 400."""

    event_type: Optional[str] = Field(None, description="order_set_selected, question_started, ...")
    session_id: Optional[str] = Field(None, description="Client-generated session id")
    timestamp: Optional[Union[str, int, float]] = Field(None, description="ISO-8601 or epoch ms")
    data: Optional[dict[str, Any]] = Field(default_factory=dict)


class AnalyticsBatchIn(BaseModel):
    events: Any = None


class ConversationIn(CamelModel):
    """Full transcript posted by the widget when a conversation ends."""

    session_id: Optional[str] = None
    start_time: Optional[Union[str, int, float]] = None
    end_time: Optional[Union[str, int, float]] = None
    messages: list[Any] = Field(default_factory=list)
    user_info: Union[dict[str, Any], str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    question_answers: dict[str, Any] = Field(default_factory=dict)
    order_set_id: Optional[str] = None
    completion_percentage: Optional[float] = None
    total_time: Optional[int] = None
    duration: Optional[dict[str, Any]] = None


class ConversationOut(BaseModel):
    """A stored session with its JSON blobs decoded."""

    id: str
    order_set_id: Optional[str] = None
    user_info: Any = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    completion_percentage: Optional[float] = None
    total_time_ms: Optional[int] = None
    messages: Any = None
    metadata: Any = None
    question_answers: Any = None
    created_at: Optional[datetime] = None


class OverviewStatsOut(CamelModel):
    total_sessions: int = 0
    avg_completion: float = 0.0
    avg_time: float = 0.0
    total_events: int = 0
    total_dropoffs: int = 0


class OrderSetStatsOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    active: Optional[bool] = None
    question_count: int
    total_sessions: int = 0
    avg_completion: float = 0.0
    high_completion_count: int = 0
    medium_completion_count: int = 0
    low_completion_count: int = 0
    avg_time_ms: float = 0.0


class DropoffStatsOut(CamelModel):
    order_set_id: Optional[str] = None
    question_id: str
    question_index: int
    dropoff_count: int = 0
    avg_completion_at_dropoff: float = 0.0


class QuestionStatsOut(CamelModel):
    order_set_id: Optional[str] = None
    question_id: Optional[str] = None
    question_index: Optional[int] = None
    started_count: int = 0
    answered_count: int = 0
    avg_time_to_answer: float = 0.0
    answer_rate: float = 0.0


class CompletionRatesOut(CamelModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class DashboardSummaryOut(CamelModel):
    days: int
    since: datetime
    stats: OverviewStatsOut
    order_sets: list[OrderSetStatsOut]
    dropoffs: list[DropoffStatsOut]
    questions: list[QuestionStatsOut]
    completion_rates: CompletionRatesOut


class ClearDataOut(BaseModel):
    success: bool = True
    message: str
    cleared: dict[str, int]
