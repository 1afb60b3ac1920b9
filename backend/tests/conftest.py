from __future__ import annotations

from datetime import datetime, timezone

import pytest

pytest.importorskip("sqlalchemy")
pytest.importorskip("aiosqlite")

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from leadfunnel.db import enable_sqlite_foreign_keys
from leadfunnel.models import Base, ChatSession, OrderSet, QuestionEvent


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite store with foreign keys enforced."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(test_engine)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def add_order_set(db: AsyncSession, order_set_id: str, question_order, **extra) -> None:
    db.add(
        OrderSet(
            id=order_set_id,
            name=extra.pop("name", f"Set {order_set_id}"),
            question_order=question_order,
            created_at=extra.pop("created_at", NOW),
            **extra,
        )
    )
    await db.commit()


async def add_session(
    db: AsyncSession,
    session_id: str,
    order_set_id: str | None,
    *,
    answered=(),
    created_at: datetime = NOW,
    **extra,
) -> None:
    db.add(ChatSession(id=session_id, order_set_id=order_set_id, user_info={}, created_at=created_at, **extra))
    await db.commit()
    for index, question_id in enumerate(answered):
        db.add(
            QuestionEvent(
                session_id=session_id,
                order_set_id=order_set_id,
                question_id=str(question_id),
                question_index=index,
                event_type="answered",
                timestamp=created_at,
                created_at=created_at,
            )
        )
    await db.commit()
