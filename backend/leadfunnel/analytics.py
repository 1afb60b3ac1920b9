from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_db
from .funnel.ingest import analytics_service
from .schemas import AnalyticsBatchIn, AnalyticsEventIn


router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.post("/event")
async def track_event(
    payload: AnalyticsEventIn,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Record one widget event.

    Unknown event types are acknowledged with ``success: false`` rather
    than rejected, so older widgets never see errors for events this
    service does not understand yet.
    """
    if not payload.event_type or not payload.session_id:
        raise HTTPException(status_code=400, detail="Missing required fields: eventType and sessionId")
    try:
        return await analytics_service.handle_event(
            db,
            payload.event_type,
            payload.session_id,
            payload.timestamp,
            payload.data,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/batch")
async def track_batch(
    payload: AnalyticsBatchIn,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Record events in order; failures are counted, not raised."""
    if not isinstance(payload.events, list):
        raise HTTPException(status_code=400, detail="Events must be an array")
    return await analytics_service.handle_batch(db, payload.events)
