"""Writes to the ``chat_sessions`` aggregate.

Every write that carries an order set reference goes through
``execute_with_order_set_fallback``: when the store rejects the
reference as a foreign-key violation the same write is retried once
with the reference cleared.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import insert_ignore
from ..models import ChatSession, OrderSet


logger = logging.getLogger("lead-funnel")

FOREIGN_KEY_VIOLATION = "23503"


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    original = getattr(exc, "orig", None)
    code = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if code == FOREIGN_KEY_VIOLATION:
        return True
    return "foreign key" in str(original or exc).lower()


async def execute_with_order_set_fallback(
    db: AsyncSession,
    build: Callable[[str | None], Any],
    order_set_id: str | None,
) -> str | None:
    """Run ``build(order_set_id)`` and commit, nulling the reference on FK failure.

    Returns the order set id that was actually written.
    """
    try:
        await db.execute(build(order_set_id))
        await db.commit()
        return order_set_id
    except IntegrityError as exc:
        await db.rollback()
        if order_set_id is None or not is_foreign_key_violation(exc):
            raise
        logger.warning("Order set %s not found; writing session without it", order_set_id)
    await db.execute(build(None))
    await db.commit()
    return None


async def session_exists(db: AsyncSession, session_id: str) -> bool:
    result = await db.execute(select(ChatSession.id).where(ChatSession.id == session_id))
    return result.scalar_one_or_none() is not None


async def session_order_set_id(db: AsyncSession, session_id: str) -> str | None:
    result = await db.execute(select(ChatSession.order_set_id).where(ChatSession.id == session_id))
    return result.scalar_one_or_none()


async def ensure_order_set(
    db: AsyncSession,
    order_set_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    question_order: Any = None,
    created_at: datetime | None = None,
) -> bool:
    """Create a minimal order set from client metadata if it is unknown.

    Returns True when a row was inserted.
    """
    result = await db.execute(select(OrderSet.id).where(OrderSet.id == order_set_id))
    if result.scalar_one_or_none() is not None:
        return False
    values: dict[str, Any] = {
        "id": order_set_id,
        "name": name or f"Order Set {order_set_id}",
        "description": description,
        "question_order": list(question_order) if isinstance(question_order, (list, tuple)) else None,
        "active": True,
    }
    if created_at is not None:
        values["created_at"] = created_at
    inserted = await db.execute(insert_ignore(db, OrderSet, values))
    await db.commit()
    return bool(inserted.rowcount)


async def ensure_session(
    db: AsyncSession,
    session_id: str,
    order_set_id: str | None,
    timestamp: datetime,
) -> None:
    """Create a placeholder session if the id has not been seen.

    Concurrent events for the same new session race here; the insert is
    conflict-ignoring so the loser is a no-op.
    """
    if await session_exists(db, session_id):
        return

    def build(order_set: str | None):
        return insert_ignore(
            db,
            ChatSession,
            {
                "id": session_id,
                "order_set_id": order_set,
                "user_info": {},
                "start_time": timestamp,
                "created_at": timestamp,
            },
        )

    await execute_with_order_set_fallback(db, build, order_set_id or None)


async def upsert_session(
    db: AsyncSession,
    session_id: str,
    order_set_id: str | None,
    values: dict[str, Any],
    *,
    created_at: datetime,
) -> str | None:
    """Update the session if it exists, otherwise insert it."""
    if await session_exists(db, session_id):

        def build(order_set: str | None):
            return (
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(order_set_id=order_set, **values)
            )

    else:

        def build(order_set: str | None):
            return insert(ChatSession).values(
                id=session_id,
                order_set_id=order_set,
                created_at=created_at,
                **values,
            )

    return await execute_with_order_set_fallback(db, build, order_set_id or None)


async def update_session(db: AsyncSession, session_id: str, values: dict[str, Any]) -> None:
    """Plain update of fields that carry no order set reference."""
    await db.execute(
        update(ChatSession).where(ChatSession.id == session_id).values(**values)
    )
    await db.commit()


async def try_ensure_session(
    db: AsyncSession,
    session_id: str,
    order_set_id: str | None,
    timestamp: datetime,
) -> None:
    """``ensure_session`` that logs store errors instead of raising them.

    The event append that follows will surface a real failure.
    """
    try:
        await ensure_session(db, session_id, order_set_id, timestamp)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Could not ensure session %s exists: %s", session_id, exc)
