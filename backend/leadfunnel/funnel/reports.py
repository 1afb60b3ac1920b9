"""Named dashboard reports.

Each report resolves its window once with ``window_start`` and hands the
same instant to every query it issues.  Figures are rounded here, at the
presentation edge, never inside the aggregator.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas import (
    CompletionRatesOut,
    DashboardSummaryOut,
    DropoffStatsOut,
    OrderSetStatsOut,
    OverviewStatsOut,
    QuestionStatsOut,
)
from ..settings import settings
from . import aggregator
from .timewindow import window_start


def resolve_days(days: int | None) -> int:
    if days is None or days < 1:
        return settings.default_days
    return days


def _round(value: float) -> float:
    return round(value, 2)


async def get_dashboard_stats(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> OverviewStatsOut:
    since = window_start(resolve_days(days), now)
    stats = await aggregator.compute_overview_stats(
        db, since, default_question_count=settings.default_question_count
    )
    return OverviewStatsOut.model_validate(replace(stats, avg_completion=_round(stats.avg_completion)))


async def get_order_set_stats(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> list[OrderSetStatsOut]:
    since = window_start(resolve_days(days), now)
    stats = await aggregator.compute_order_set_stats(
        db, since, default_question_count=settings.default_question_count
    )
    return [
        OrderSetStatsOut.model_validate(replace(item, avg_completion=_round(item.avg_completion)))
        for item in stats
    ]


async def get_dropoff_stats(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> list[DropoffStatsOut]:
    since = window_start(resolve_days(days), now)
    ranked = await aggregator.compute_dropoffs(
        db,
        since,
        limit=settings.dropoff_limit,
        default_question_count=settings.default_question_count,
    )
    return [
        DropoffStatsOut.model_validate(
            replace(item, avg_completion_at_dropoff=_round(item.avg_completion_at_dropoff))
        )
        for item in ranked
    ]


async def get_question_stats(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> list[QuestionStatsOut]:
    since = window_start(resolve_days(days), now)
    stats = await aggregator.compute_question_stats(db, since)
    return [
        QuestionStatsOut.model_validate(replace(item, answer_rate=_round(item.answer_rate)))
        for item in stats
    ]


async def get_completion_rates(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> CompletionRatesOut:
    since = window_start(resolve_days(days), now)
    rates = await aggregator.compute_completion_rates(
        db, since, default_question_count=settings.default_question_count
    )
    return CompletionRatesOut.model_validate(rates)


async def get_dashboard_summary(
    db: AsyncSession, days: int | None = None, *, now: datetime | None = None
) -> DashboardSummaryOut:
    """All reports for one window, pinned to a single ``now``."""
    days = resolve_days(days)
    now = now or datetime.now().astimezone()
    return DashboardSummaryOut(
        days=days,
        since=window_start(days, now),
        stats=await get_dashboard_stats(db, days, now=now),
        order_sets=await get_order_set_stats(db, days, now=now),
        dropoffs=await get_dropoff_stats(db, days, now=now),
        questions=await get_question_stats(db, days, now=now),
        completion_rates=await get_completion_rates(db, days, now=now),
    )
