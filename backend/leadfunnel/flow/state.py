"""Server-side state machine for the lead question flow."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ..catalog import QUESTIONS, US_STATES, OrderSetSpec, QuestionSpec
from .protocol import (
    ORDER_SET_SELECTED,
    QUESTION_ANSWERED,
    QUESTION_FLOW_COMPLETED,
    QUESTION_FLOW_DATA,
    QUESTION_STARTED,
    AnalyticsEvent,
)


PHASE_IDLE = "IDLE"
PHASE_FLOW_SELECTED = "FLOW_SELECTED"
PHASE_ASKING = "ASKING"
PHASE_VALIDATING = "VALIDATING"
PHASE_COMPLETED = "COMPLETED"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^(\+?1[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})$")
NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s\-]+$")
DOLLAR_AMOUNT_PATTERN = re.compile(r"\$?(\d[\d,]*)")
YES_NO_ANSWERS = {"yes", "no", "y", "n", "true", "false"}

DEFAULT_RETRY_MESSAGE = "I didn't understand that. Could you please try again?"
RETRY_MESSAGES = {
    "fullName": "Please provide your full first and last name.",
    "email": (
        "That doesn't appear to be a valid email address. It's important that you supply your "
        "correct email so we can send you a copy of your tax settlement agreement. Please type "
        "out your correct email address."
    ),
    "phone1": (
        "That doesn't appear to be a valid phone number. Please enter your phone number in a "
        "format like (555) 123-4567 or 555-123-4567."
    ),
}


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email.strip()))


def validate_phone(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone)
    return bool(PHONE_PATTERN.match(phone.strip())) or 10 <= len(digits) <= 11


def validate_full_name(name: str) -> bool:
    """At least two words of letters or hyphens, each two letters or longer."""
    trimmed = name.strip()
    if " " not in trimmed or not NAME_PATTERN.match(trimmed):
        return False
    words = trimmed.split()
    if len(words) < 2:
        return False
    for word in words:
        if len(word.replace("-", "")) < 2:
            return False
        if word.startswith("-") or word.endswith("-"):
            return False
    return True


def parse_amount(answer: str) -> float | None:
    cleaned = re.sub(r"[^0-9.]", "", answer)
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_state(answer: str, spec: QuestionSpec) -> str | None:
    if not spec.accept_state_codes:
        return None
    state = US_STATES.get(answer.strip().upper())
    if state and state in spec.options:
        return state
    return None


def categorize_amount(answer: str, spec: QuestionSpec) -> str:
    """Map a typed amount onto its range label; labels pass through."""
    if answer in spec.quick_responses:
        return answer
    value = parse_amount(answer)
    if value is None:
        return answer
    for amount_range in spec.amount_ranges:
        if amount_range.minimum <= value <= amount_range.maximum:
            return amount_range.label
    return answer


def normalize_answer(answer: str, spec: QuestionSpec) -> str:
    if spec.amount_ranges:
        return categorize_amount(answer, spec)
    return normalize_state(answer, spec) or answer


def validate_answer(answer: str, spec: QuestionSpec) -> bool:
    if not answer or not answer.strip():
        return not spec.required

    if spec.lead_field == "fullName":
        return validate_full_name(answer)
    if spec.lead_field == "email":
        return validate_email(answer)
    if spec.lead_field == "phone1":
        return validate_phone(answer)

    if spec.type == "amount":
        if answer in spec.quick_responses:
            return True
        value = parse_amount(answer)
        if value is None:
            return False
        return spec.minimum is None or value >= spec.minimum
    if spec.type == "yesno":
        return answer.strip().lower() in YES_NO_ANSWERS
    if spec.type == "multiple_choice":
        return answer in spec.options or normalize_state(answer, spec) is not None
    if spec.type == "text" and spec.max_length is not None:
        return len(answer) <= spec.max_length
    return bool(answer.strip())


def follow_up_applies(answer: str, spec: QuestionSpec) -> bool:
    """Whether the answer crosses the question's follow-up threshold.

    Range labels such as "$50,000 - $74,999" are judged by their first
    amount.
    """
    if spec.follow_up_threshold is None:
        return False
    value: float | None = None
    if "$" in answer:
        match = DOLLAR_AMOUNT_PATTERN.search(answer)
        if match:
            value = float(match.group(1).replace(",", ""))
    if value is None:
        value = parse_amount(answer)
    return value is not None and value > spec.follow_up_threshold


@dataclass
class QuestionSlot:
    """One position of the order set and what happened to it."""

    question_id: int
    spec: QuestionSpec | None
    answered: bool = False
    answer: str | None = None
    raw_answer: str | None = None
    started_at_ms: int | None = None
    answered_at_ms: int | None = None
    time_to_answer_ms: int | None = None


@dataclass
class FlowSessionState:
    """Tracks one visitor's pass through an order set.

    Transitions return the analytics events they imply; the caller is
    responsible for delivering them.
    """

    session_id: str
    order_set: OrderSetSpec
    user_info: dict[str, Any] = field(default_factory=dict)
    phase: str = PHASE_IDLE
    current_index: int = 0
    started_at_ms: int | None = None
    completed_at_ms: int | None = None
    retry_message: str | None = None
    follow_up: str | None = None
    slots: list[QuestionSlot] = field(init=False)

    def __post_init__(self) -> None:
        self.slots = [
            QuestionSlot(question_id=question_id, spec=QUESTIONS.get(question_id))
            for question_id in self.order_set.order
        ]

    @property
    def completed(self) -> bool:
        return self.phase == PHASE_COMPLETED

    @property
    def answers(self) -> dict[int, str | None]:
        return {slot.question_id: slot.answer for slot in self.slots if slot.answered}

    @property
    def answered_count(self) -> int:
        return sum(1 for slot in self.slots if slot.answered)

    @property
    def completion_percentage(self) -> float:
        if not self.slots:
            return 0.0
        return self.answered_count / len(self.slots) * 100

    def current_slot(self) -> QuestionSlot | None:
        if self.phase not in {PHASE_ASKING, PHASE_VALIDATING}:
            return None
        if self.current_index >= len(self.slots):
            return None
        return self.slots[self.current_index]

    def _event(self, event_type: str, now_ms: int, data: dict[str, Any]) -> AnalyticsEvent:
        return AnalyticsEvent(event_type=event_type, session_id=self.session_id, timestamp_ms=now_ms, data=data)

    def select(self, now_ms: int) -> list[AnalyticsEvent]:
        if self.phase != PHASE_IDLE:
            return []
        self.phase = PHASE_FLOW_SELECTED
        return [
            self._event(
                ORDER_SET_SELECTED,
                now_ms,
                {
                    "orderSetId": self.order_set.id,
                    "orderSetName": self.order_set.name,
                    "questionOrder": list(self.order_set.order),
                    "userInfo": self.user_info,
                },
            )
        ]

    def start(self, now_ms: int) -> list[AnalyticsEvent]:
        if self.phase != PHASE_FLOW_SELECTED:
            return []
        self.started_at_ms = now_ms
        self.current_index = 0
        return self._ask(now_ms)

    def _ask(self, now_ms: int) -> list[AnalyticsEvent]:
        # Positions whose question is missing from the catalog are skipped.
        while self.current_index < len(self.slots) and self.slots[self.current_index].spec is None:
            self.current_index += 1
        if self.current_index >= len(self.slots):
            return self._complete(now_ms)
        slot = self.slots[self.current_index]
        slot.started_at_ms = now_ms
        self.phase = PHASE_ASKING
        return [
            self._event(
                QUESTION_STARTED,
                now_ms,
                {
                    "orderSetId": self.order_set.id,
                    "questionId": slot.question_id,
                    "questionIndex": self.current_index,
                    "timestamp": now_ms,
                },
            )
        ]

    def on_answer(self, answer: str, now_ms: int) -> list[AnalyticsEvent]:
        slot = self.current_slot()
        if slot is None or slot.spec is None:
            return []
        self.phase = PHASE_VALIDATING
        self.retry_message = None
        self.follow_up = None

        if not validate_answer(answer, slot.spec):
            self.retry_message = RETRY_MESSAGES.get(slot.spec.lead_field, DEFAULT_RETRY_MESSAGE)
            self.phase = PHASE_ASKING
            return []

        categorized = normalize_answer(answer, slot.spec)
        slot.answered = True
        slot.answer = categorized
        slot.raw_answer = answer
        slot.answered_at_ms = now_ms
        slot.time_to_answer_ms = now_ms - (slot.started_at_ms or now_ms)
        if follow_up_applies(categorized, slot.spec):
            self.follow_up = slot.spec.follow_up_message

        events = [
            self._event(
                QUESTION_ANSWERED,
                now_ms,
                {
                    "orderSetId": self.order_set.id,
                    "questionId": slot.question_id,
                    "questionIndex": self.current_index,
                    "answer": categorized,
                    "timeToAnswer": slot.time_to_answer_ms,
                    "timestamp": now_ms,
                },
            )
        ]
        self.current_index += 1
        events.extend(self._ask(now_ms))
        return events

    def stop(self, now_ms: int) -> list[AnalyticsEvent]:
        """End the flow early, reporting the partial completion."""
        if self.phase in {PHASE_IDLE, PHASE_COMPLETED}:
            return []
        return self._complete(now_ms)

    def _complete(self, now_ms: int) -> list[AnalyticsEvent]:
        self.phase = PHASE_COMPLETED
        self.completed_at_ms = now_ms
        total_time = now_ms - (self.started_at_ms or now_ms)
        completion = self.completion_percentage
        return [
            self._event(
                QUESTION_FLOW_COMPLETED,
                now_ms,
                {
                    "orderSetId": self.order_set.id,
                    "completionPercentage": completion,
                    "totalTime": total_time,
                    "questionsAnswered": self.answered_count,
                    "totalQuestions": len(self.slots),
                    "timestamp": now_ms,
                },
            ),
            self._event(
                QUESTION_FLOW_DATA,
                now_ms,
                {
                    "orderSetId": self.order_set.id,
                    "orderSetName": self.order_set.name,
                    "questionOrder": list(self.order_set.order),
                    "questions": [
                        {
                            "questionId": slot.question_id,
                            "answered": slot.answered,
                            "answer": slot.answer,
                            "timestamp": slot.answered_at_ms,
                            "timeToAnswer": slot.time_to_answer_ms,
                        }
                        for slot in self.slots
                    ],
                    "completionPercentage": completion,
                    "totalTime": total_time,
                    "userInfo": self.user_info,
                },
            ),
        ]

    def question_payload(self) -> dict[str, Any] | None:
        slot = self.current_slot()
        if slot is None or slot.spec is None:
            return None
        return {
            "questionId": slot.question_id,
            "questionIndex": self.current_index,
            "text": slot.spec.text,
            "type": slot.spec.type,
            "options": list(slot.spec.options or slot.spec.quick_responses),
        }

    def summary_payload(self) -> dict[str, Any]:
        return {
            "orderSetId": self.order_set.id,
            "phase": self.phase,
            "questionsAnswered": self.answered_count,
            "totalQuestions": len(self.slots),
            "completionPercentage": round(self.completion_percentage, 2),
            "answers": {str(question_id): answer for question_id, answer in self.answers.items()},
        }
