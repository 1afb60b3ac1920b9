"""Main FastAPI application entry point."""

from __future__ import annotations

import contextlib
import logging
import random
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from .analytics import router as analytics_router
from .catalog import find_order_set, offered_order_sets
from .chat import router as chat_router
from .dashboard import router as dashboard_router
from .db import AsyncSessionLocal, init_db
from .flow.protocol import (
    CLIENT_ANSWER,
    CLIENT_STOP,
    SERVER_ERROR,
    SERVER_QUESTION,
    SERVER_RETRY,
    SERVER_STATUS,
    SERVER_SUMMARY,
    SERVER_TEXT,
    AnalyticsEvent,
)
from .flow.state import FlowSessionState
from .funnel.ingest import analytics_service
from .settings import settings


logger = logging.getLogger("lead-funnel")

SERVICE_NAME = "TRE Chatbot Analytics API"
SERVICE_VERSION = "1.0.0"

app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.include_router(analytics_router)
app.include_router(dashboard_router)
app.include_router(chat_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("%s %s", request.method, request.url.path)
    return await call_next(request)


def is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    if is_connectivity_error(exc):
        logger.error("Analytics store unreachable during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Analytics backend unavailable"})
    logger.exception("Database error during %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Database error"})


@app.exception_handler(OSError)
async def store_unreachable_handler(request: Request, exc: OSError) -> JSONResponse:
    logger.error("Analytics store unreachable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "Analytics backend unavailable"})


@app.on_event("startup")
async def startup_event() -> None:
    """Create tables, resolve the session schema and seed the catalog."""
    app.state.session_schema = await init_db()
    logger.info(
        "Analytics store initialised; db_type=%s; session schema=%s",
        settings.db_type,
        app.state.session_schema,
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "dbType": settings.db_type,
    }


@app.get("/")
async def index() -> dict[str, object]:
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "endpoints": {
            "analytics": "/api/analytics/event",
            "dashboard": "/api/dashboard/stats",
            "chat": "/api/chat/submit",
            "flow": "/ws/flow",
            "health": "/health",
        },
    }


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _record_events(events: list[AnalyticsEvent]) -> None:
    """Feed flow events to ingestion; failures are logged, never raised."""
    if not events:
        return
    async with AsyncSessionLocal() as db:
        for event in events:
            try:
                await analytics_service.handle_event(
                    db,
                    event.event_type,
                    event.session_id,
                    event.timestamp,
                    event.data,
                )
            except Exception as exc:
                await db.rollback()
                logger.exception("Failed to record %s for session %s: %s", event.event_type, event.session_id, exc)


async def _send_prompt(ws: WebSocket, state: FlowSessionState) -> None:
    if state.completed:
        await ws.send_json({"type": SERVER_SUMMARY, **state.summary_payload()})
        return
    question = state.question_payload()
    if question is not None:
        await ws.send_json({"type": SERVER_QUESTION, **question})


@app.websocket("/ws/flow")
async def flow_websocket(ws: WebSocket) -> None:
    """Drive one visitor through an order set, question by question."""
    await ws.accept()

    session_id = ws.query_params.get("session_id", "").strip() or f"session_{uuid.uuid4().hex}"
    order_set_id = ws.query_params.get("order_set", "").strip()
    if order_set_id:
        order_set = find_order_set(order_set_id)
        if order_set is None or not order_set.offered:
            await ws.send_json({"type": SERVER_ERROR, "message": f"Unknown order set: {order_set_id}"})
            await ws.close(code=1008)
            return
    else:
        order_set = random.choice(offered_order_sets())

    state = FlowSessionState(session_id=session_id, order_set=order_set)
    try:
        now_ms = _now_ms()
        await _record_events(state.select(now_ms) + state.start(now_ms))
        await ws.send_json(
            {
                "type": SERVER_STATUS,
                "state": "connected",
                "sessionId": session_id,
                "orderSetId": order_set.id,
            }
        )
        await _send_prompt(ws, state)

        while not state.completed:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError):
                await ws.send_json({"type": SERVER_ERROR, "message": "Malformed JSON message"})
                continue

            if not isinstance(message, dict):
                await ws.send_json({"type": SERVER_ERROR, "message": "Messages must be JSON objects"})
                continue

            message_type = str(message.get("type", "")).strip()
            if message_type == CLIENT_ANSWER:
                events = state.on_answer(str(message.get("text", "")), _now_ms())
                if state.retry_message:
                    await ws.send_json({"type": SERVER_RETRY, "message": state.retry_message})
                    continue
                await _record_events(events)
                if state.follow_up:
                    await ws.send_json({"type": SERVER_TEXT, "text": state.follow_up})
                await _send_prompt(ws, state)
            elif message_type == CLIENT_STOP:
                await _record_events(state.stop(_now_ms()))
                await ws.send_json({"type": SERVER_SUMMARY, **state.summary_payload()})
                break
            else:
                await ws.send_json({"type": SERVER_ERROR, "message": f"Unsupported message type: {message_type}"})
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.exception("Unexpected error in /ws/flow: %s", exc)
        with contextlib.suppress(RuntimeError):
            await ws.send_json({"type": SERVER_ERROR, "message": f"Flow session error: {exc}"})
    finally:
        # A visitor who leaves mid-flow is a drop-off.
        await _record_events(state.stop(_now_ms()))
        with contextlib.suppress(RuntimeError):
            await ws.close()
