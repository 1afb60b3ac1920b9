import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from .db import get_db
from .funnel import reports
from .funnel.events import clear_transactional_data
from .schemas import (
    ClearDataOut,
    CompletionRatesOut,
    DashboardSummaryOut,
    DropoffStatsOut,
    OrderSetStatsOut,
    OverviewStatsOut,
    QuestionStatsOut,
)


logger = logging.getLogger("lead-funnel")

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


def parse_days(days: Optional[str] = None) -> Optional[int]:
    """Lenient ``days`` query parameter; junk falls back to the default window."""
    if days is None:
        return None
    try:
        return int(days.strip())
    except ValueError:
        return None


@router.get("/stats", response_model=OverviewStatsOut)
async def dashboard_stats(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> OverviewStatsOut:
    """Headline figures for the window."""
    return await reports.get_dashboard_stats(db, days)


@router.get("/order-sets", response_model=list[OrderSetStatsOut])
async def order_set_stats(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> list[OrderSetStatsOut]:
    return await reports.get_order_set_stats(db, days)


@router.get("/dropoffs", response_model=list[DropoffStatsOut])
async def dropoff_stats(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> list[DropoffStatsOut]:
    """Most frequent abandonment positions, busiest first."""
    return await reports.get_dropoff_stats(db, days)


@router.get("/questions", response_model=list[QuestionStatsOut])
async def question_stats(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> list[QuestionStatsOut]:
    return await reports.get_question_stats(db, days)


@router.get("/completion-rates", response_model=CompletionRatesOut)
async def completion_rates(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> CompletionRatesOut:
    return await reports.get_completion_rates(db, days)


@router.get("/summary", response_model=DashboardSummaryOut)
async def dashboard_summary(
    days: Optional[int] = Depends(parse_days),
    db: AsyncSession = Depends(get_db),
) -> DashboardSummaryOut:
    """Every report for the same window in one response."""
    return await reports.get_dashboard_summary(db, days)


@router.delete("/clear-data", response_model=ClearDataOut)
async def clear_data(
    current_user: dict = Depends(auth_utils.require_admin),
    db: AsyncSession = Depends(get_db),
) -> ClearDataOut:
    """Delete sessions, question events and drop-off points.

    The order set catalog is left intact.
    """
    cleared = await clear_transactional_data(db)
    logger.warning("Analytics data cleared by %s: %s", current_user.get("uid"), cleared)
    return ClearDataOut(message="All analytics data has been cleared", cleared=cleared)
