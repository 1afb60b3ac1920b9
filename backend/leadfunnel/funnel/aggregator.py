"""Funnel statistics recomputed from raw question events.

Nothing here reads ``chat_sessions.completion_percentage``: that column is
whatever the widget reported when the flow ended and can be stale or
missing.  Every completion figure is derived from the distinct answered
question ids of a session divided by the length of its order set.

Drop-offs use the first-gap rule: a session stopped at the first
position of its order set that has no answered event, so a session that
skipped question 2 but answered question 3 dropped at question 2.  A
session with no answers dropped at position 0.

The module is split in two layers.  The ``summarize_*``/``rank_*``
functions are pure reductions over ``SessionProgress`` records and an
``OrderSetRegistry``; the ``compute_*`` coroutines load those inputs for
a window and call them.  Both layers return empty or zero-valued results
for sparse data instead of raising.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EVENT_ANSWERED, EVENT_STARTED, ChatSession, QuestionEvent
from .registry import DEFAULT_QUESTION_COUNT, UNASSIGNED, OrderSetRegistry


HIGH_COMPLETION = 90.0
MEDIUM_COMPLETION = 50.0
DROPOFF_LIMIT = 50


@dataclass
class SessionProgress:
    """The inputs every per-session computation needs."""

    session_id: str
    order_set_id: str | None
    total_time_ms: int | None = None
    answered: set[str] = field(default_factory=set)

    @property
    def answered_count(self) -> int:
        return len(self.answered)


@dataclass
class OverviewStats:
    total_sessions: int = 0
    avg_completion: float = 0.0
    avg_time: float = 0.0
    total_events: int = 0
    total_dropoffs: int = 0


@dataclass
class OrderSetStats:
    id: str
    name: str
    description: str | None
    active: bool | None
    question_count: int
    total_sessions: int = 0
    avg_completion: float = 0.0
    high_completion_count: int = 0
    medium_completion_count: int = 0
    low_completion_count: int = 0
    avg_time_ms: float = 0.0


@dataclass
class DropoffStats:
    order_set_id: str | None
    question_id: str
    question_index: int
    dropoff_count: int = 0
    avg_completion_at_dropoff: float = 0.0


@dataclass
class QuestionStats:
    order_set_id: str | None
    question_id: str | None
    question_index: int | None
    started_count: int = 0
    answered_count: int = 0
    avg_time_to_answer: float = 0.0
    answer_rate: float = 0.0


@dataclass
class CompletionRates:
    high: int = 0
    medium: int = 0
    low: int = 0


@dataclass(frozen=True)
class DropoffLocation:
    order_set_id: str | None
    question_id: str
    question_index: int
    completion: float


# Pure reductions


def completion_percentage(answered_count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return answered_count / total * 100


def session_completion(progress: SessionProgress, registry: OrderSetRegistry) -> float:
    return completion_percentage(
        progress.answered_count, registry.question_count(progress.order_set_id)
    )


def completion_bucket(percentage: float) -> str | None:
    """``high``/``medium``/``low``; exactly 0% belongs to no bucket."""
    if percentage >= HIGH_COMPLETION:
        return "high"
    if percentage >= MEDIUM_COMPLETION:
        return "medium"
    if percentage > 0:
        return "low"
    return None


def first_gap(order: Sequence[str], answered: set[str]) -> int | None:
    for index, question_id in enumerate(order):
        if question_id not in answered:
            return index
    return None


def locate_dropoff(progress: SessionProgress, registry: OrderSetRegistry) -> DropoffLocation | None:
    """Where a session left its order set, or None if it finished.

    Sessions whose order set has no known question sequence cannot be
    placed and return None.
    """
    order = registry.resolve(progress.order_set_id)
    if order is None:
        return None
    total = len(order)
    if progress.answered_count >= total:
        return None
    index = first_gap(order, progress.answered)
    if index is None:
        return None
    return DropoffLocation(
        order_set_id=progress.order_set_id,
        question_id=order[index],
        question_index=index,
        completion=completion_percentage(progress.answered_count, total),
    )


def _finite_mean(values: Iterable[float | int | None]) -> float:
    usable = [float(value) for value in values if value is not None and math.isfinite(value)]
    if not usable:
        return 0.0
    return sum(usable) / len(usable)


def summarize_overview(
    sessions: Sequence[SessionProgress],
    registry: OrderSetRegistry,
    total_events: int = 0,
) -> OverviewStats:
    completions = [session_completion(progress, registry) for progress in sessions]
    dropoffs = sum(
        1
        for progress in sessions
        if progress.answered_count < registry.question_count(progress.order_set_id)
    )
    return OverviewStats(
        total_sessions=len(sessions),
        avg_completion=_finite_mean(completions),
        avg_time=_finite_mean(progress.total_time_ms for progress in sessions),
        total_events=total_events,
        total_dropoffs=dropoffs,
    )


def summarize_order_sets(
    sessions: Sequence[SessionProgress],
    registry: OrderSetRegistry,
) -> list[OrderSetStats]:
    """Per-order-set comparison.

    Sessions without an order set are reported under ``unassigned`` and
    sessions pointing at an order set missing from the catalog get their
    own row, so the totals always add up to the number of sessions.
    """
    grouped: dict[str, list[SessionProgress]] = {}
    for progress in sessions:
        grouped.setdefault(progress.order_set_id or UNASSIGNED, []).append(progress)

    stats: list[OrderSetStats] = []
    for key, members in grouped.items():
        entry = registry.get(key) if key != UNASSIGNED else None
        if entry is not None:
            row = OrderSetStats(
                id=key,
                name=entry.name,
                description=entry.description,
                active=entry.active,
                question_count=registry.question_count(key),
            )
        else:
            row = OrderSetStats(
                id=key,
                name="Unassigned" if key == UNASSIGNED else f"Order Set {key}",
                description=None,
                active=None,
                question_count=registry.default_question_count,
            )

        completions = []
        for progress in members:
            percentage = session_completion(progress, registry)
            completions.append(percentage)
            bucket = completion_bucket(percentage)
            if bucket == "high":
                row.high_completion_count += 1
            elif bucket == "medium":
                row.medium_completion_count += 1
            elif bucket == "low":
                row.low_completion_count += 1

        row.total_sessions = len(members)
        row.avg_completion = _finite_mean(completions)
        row.avg_time_ms = _finite_mean(progress.total_time_ms for progress in members)
        stats.append(row)

    stats.sort(key=lambda item: (-item.total_sessions, item.id))
    return stats


def rank_dropoffs(
    sessions: Sequence[SessionProgress],
    registry: OrderSetRegistry,
    limit: int = DROPOFF_LIMIT,
) -> list[DropoffStats]:
    buckets: dict[tuple[str | None, str, int], DropoffStats] = {}
    completion_sums: dict[tuple[str | None, str, int], float] = {}
    for progress in sessions:
        location = locate_dropoff(progress, registry)
        if location is None:
            continue
        key = (location.order_set_id, location.question_id, location.question_index)
        if key not in buckets:
            buckets[key] = DropoffStats(
                order_set_id=location.order_set_id,
                question_id=location.question_id,
                question_index=location.question_index,
            )
            completion_sums[key] = 0.0
        buckets[key].dropoff_count += 1
        completion_sums[key] += location.completion

    ranked = []
    for key, stats in buckets.items():
        stats.avg_completion_at_dropoff = completion_sums[key] / stats.dropoff_count
        ranked.append(stats)
    ranked.sort(key=lambda item: (-item.dropoff_count, item.order_set_id or "", item.question_index))
    return ranked[:limit]


def completion_histogram(
    sessions: Sequence[SessionProgress],
    registry: OrderSetRegistry,
) -> CompletionRates:
    rates = CompletionRates()
    for progress in sessions:
        bucket = completion_bucket(session_completion(progress, registry))
        if bucket is not None:
            setattr(rates, bucket, getattr(rates, bucket) + 1)
    return rates


def answer_rate(answered_count: int, started_count: int) -> float:
    if started_count <= 0:
        return 0.0
    return answered_count / started_count * 100


# Store-backed loaders


async def load_session_progress(
    db: AsyncSession,
    since: datetime | None = None,
    session_ids: Iterable[str] | None = None,
) -> list[SessionProgress]:
    """Sessions created in the window with their answered question ids.

    Answer events are filtered by the same window as the sessions, so a
    session created in the window only counts answers recorded in it.
    """
    session_query = select(ChatSession.id, ChatSession.order_set_id, ChatSession.total_time_ms)
    answered_query = (
        select(QuestionEvent.session_id, QuestionEvent.question_id)
        .join(ChatSession, ChatSession.id == QuestionEvent.session_id)
        .where(
            QuestionEvent.event_type == EVENT_ANSWERED,
            QuestionEvent.question_id.is_not(None),
        )
        .distinct()
    )
    if since is not None:
        session_query = session_query.where(ChatSession.created_at >= since)
        answered_query = answered_query.where(
            ChatSession.created_at >= since,
            QuestionEvent.created_at >= since,
        )
    if session_ids is not None:
        wanted = sorted(set(session_ids))
        if not wanted:
            return []
        session_query = session_query.where(ChatSession.id.in_(wanted))
        answered_query = answered_query.where(QuestionEvent.session_id.in_(wanted))

    sessions = {
        row.id: SessionProgress(
            session_id=row.id,
            order_set_id=row.order_set_id,
            total_time_ms=row.total_time_ms,
        )
        for row in (await db.execute(session_query)).all()
    }
    for row in (await db.execute(answered_query)).all():
        progress = sessions.get(row.session_id)
        if progress is not None:
            progress.answered.add(row.question_id)
    return list(sessions.values())


async def count_question_events(db: AsyncSession, since: datetime) -> int:
    result = await db.execute(
        select(func.count(QuestionEvent.id)).where(QuestionEvent.created_at >= since)
    )
    return int(result.scalar_one() or 0)


async def _registry_for(
    db: AsyncSession,
    sessions: Sequence[SessionProgress],
    default_question_count: int,
) -> OrderSetRegistry:
    return await OrderSetRegistry.load(
        db,
        (progress.order_set_id for progress in sessions),
        default_question_count=default_question_count,
    )


# Report operations


async def compute_completion(
    db: AsyncSession,
    session_ids: str | Iterable[str],
    since: datetime | None = None,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> dict[str, float]:
    """Live completion percentage for one session id or a set of them."""
    if isinstance(session_ids, str):
        session_ids = [session_ids]
    sessions = await load_session_progress(db, since, session_ids)
    registry = await _registry_for(db, sessions, default_question_count)
    return {progress.session_id: session_completion(progress, registry) for progress in sessions}


async def compute_dropoffs(
    db: AsyncSession,
    since: datetime,
    limit: int = DROPOFF_LIMIT,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> list[DropoffStats]:
    sessions = await load_session_progress(db, since)
    registry = await _registry_for(db, sessions, default_question_count)
    return rank_dropoffs(sessions, registry, limit)


async def compute_question_stats(db: AsyncSession, since: datetime) -> list[QuestionStats]:
    started = func.count(case((QuestionEvent.event_type == EVENT_STARTED, 1)))
    answered = func.count(case((QuestionEvent.event_type == EVENT_ANSWERED, 1)))
    avg_time = func.avg(
        case((QuestionEvent.event_type == EVENT_ANSWERED, QuestionEvent.time_to_answer_ms))
    )
    result = await db.execute(
        select(
            QuestionEvent.order_set_id,
            QuestionEvent.question_id,
            QuestionEvent.question_index,
            started.label("started_count"),
            answered.label("answered_count"),
            avg_time.label("avg_time_to_answer"),
        )
        .where(QuestionEvent.created_at >= since)
        .group_by(
            QuestionEvent.order_set_id,
            QuestionEvent.question_id,
            QuestionEvent.question_index,
        )
    )
    stats = [
        QuestionStats(
            order_set_id=row.order_set_id,
            question_id=row.question_id,
            question_index=row.question_index,
            started_count=int(row.started_count or 0),
            answered_count=int(row.answered_count or 0),
            avg_time_to_answer=float(row.avg_time_to_answer or 0),
            answer_rate=answer_rate(int(row.answered_count or 0), int(row.started_count or 0)),
        )
        for row in result.all()
    ]
    stats.sort(
        key=lambda item: (
            item.order_set_id or "",
            item.question_index if item.question_index is not None else -1,
            item.question_id or "",
        )
    )
    return stats


async def compute_order_set_stats(
    db: AsyncSession,
    since: datetime,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> list[OrderSetStats]:
    sessions = await load_session_progress(db, since)
    registry = await _registry_for(db, sessions, default_question_count)
    return summarize_order_sets(sessions, registry)


async def compute_overview_stats(
    db: AsyncSession,
    since: datetime,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> OverviewStats:
    sessions = await load_session_progress(db, since)
    registry = await _registry_for(db, sessions, default_question_count)
    total_events = await count_question_events(db, since)
    return summarize_overview(sessions, registry, total_events)


async def compute_completion_rates(
    db: AsyncSession,
    since: datetime,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> CompletionRates:
    sessions = await load_session_progress(db, since)
    registry = await _registry_for(db, sessions, default_question_count)
    return completion_histogram(sessions, registry)
