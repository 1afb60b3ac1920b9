"""Session-count diagnostics.

Compares what the stored ``completion_percentage`` column says with what
the event log implies, and looks for sessions the order-set grouping
would lose.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ChatSession, OrderSet
from .aggregator import (
    HIGH_COMPLETION,
    MEDIUM_COMPLETION,
    completion_histogram,
    load_session_progress,
)
from .registry import DEFAULT_QUESTION_COUNT, UNASSIGNED, OrderSetRegistry

SAMPLE_SIZE = 10


@dataclass
class SessionDiagnostics:
    since: datetime
    total_sessions: int = 0
    sessions_by_order_set: dict[str, int] = field(default_factory=dict)
    order_sets: list[dict[str, Any]] = field(default_factory=list)
    orphaned_order_sets: dict[str, int] = field(default_factory=dict)
    stored_completion: dict[str, int] = field(default_factory=dict)
    computed_completion: dict[str, int] = field(default_factory=dict)
    completed_sessions: int = 0
    dropoff_sessions: int = 0
    recent_sessions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def grouped_total(self) -> int:
        return sum(self.sessions_by_order_set.values())

    @property
    def grouping_matches(self) -> bool:
        return self.grouped_total == self.total_sessions


def stored_completion_bucket(value: float | None) -> str:
    """Bucket of the stored column; missing and zero both count as not completed."""
    if value is None or value == 0:
        return "not_completed"
    if value >= HIGH_COMPLETION:
        return "high"
    if value >= MEDIUM_COMPLETION:
        return "medium"
    return "low"


async def diagnose_sessions(
    db: AsyncSession,
    since: datetime,
    default_question_count: int = DEFAULT_QUESTION_COUNT,
) -> SessionDiagnostics:
    report = SessionDiagnostics(since=since)

    rows = (
        await db.execute(
            select(
                ChatSession.id,
                ChatSession.order_set_id,
                ChatSession.completion_percentage,
                ChatSession.created_at,
            )
            .where(ChatSession.created_at >= since)
            .order_by(ChatSession.created_at.desc())
        )
    ).all()
    report.total_sessions = len(rows)

    order_set_rows = (
        await db.execute(select(OrderSet.id, OrderSet.name, OrderSet.active).order_by(OrderSet.id))
    ).all()
    known_ids = {row.id for row in order_set_rows}
    report.order_sets = [
        {"id": row.id, "name": row.name, "active": bool(row.active)} for row in order_set_rows
    ]

    stored = {"high": 0, "medium": 0, "low": 0, "not_completed": 0}
    for row in rows:
        key = row.order_set_id or UNASSIGNED
        report.sessions_by_order_set[key] = report.sessions_by_order_set.get(key, 0) + 1
        if row.order_set_id and row.order_set_id not in known_ids:
            report.orphaned_order_sets[row.order_set_id] = (
                report.orphaned_order_sets.get(row.order_set_id, 0) + 1
            )
        stored[stored_completion_bucket(row.completion_percentage)] += 1
    report.stored_completion = stored
    report.sessions_by_order_set = dict(
        sorted(report.sessions_by_order_set.items(), key=lambda item: item[1], reverse=True)
    )

    sessions = await load_session_progress(db, since)
    registry = await OrderSetRegistry.load(
        db,
        (progress.order_set_id for progress in sessions),
        default_question_count=default_question_count,
    )
    rates = completion_histogram(sessions, registry)
    report.computed_completion = {"high": rates.high, "medium": rates.medium, "low": rates.low}
    for progress in sessions:
        if progress.answered_count >= registry.question_count(progress.order_set_id):
            report.completed_sessions += 1
        else:
            report.dropoff_sessions += 1

    report.recent_sessions = [
        {
            "id": row.id,
            "order_set_id": row.order_set_id,
            "completion_percentage": row.completion_percentage,
            "created_at": row.created_at,
        }
        for row in rows[:SAMPLE_SIZE]
    ]
    return report


def format_report(report: SessionDiagnostics) -> list[str]:
    lines = [f"Total sessions since {report.since.isoformat()}: {report.total_sessions}", ""]
    lines.append("Sessions by order set:")
    for order_set_id, count in report.sessions_by_order_set.items():
        lines.append(f"  {order_set_id}: {count}")
    missing = report.total_sessions - report.grouped_total
    lines.append(f"  total from grouping: {report.grouped_total} ({'match' if missing == 0 else f'missing {missing}'})")
    lines.append("")
    lines.append("Order sets in store:")
    for order_set in report.order_sets:
        lines.append(f"  {order_set['id']}: {order_set['name']} (active: {order_set['active']})")
    if report.orphaned_order_sets:
        lines.append("")
        lines.append("Orphaned order set references:")
        for order_set_id, count in report.orphaned_order_sets.items():
            lines.append(f"  {order_set_id}: {count}")
    lines.append("")
    lines.append("Stored completion column: " + ", ".join(f"{k}={v}" for k, v in report.stored_completion.items()))
    lines.append("Recomputed from events:   " + ", ".join(f"{k}={v}" for k, v in report.computed_completion.items()))
    analysed = report.completed_sessions + report.dropoff_sessions
    if analysed:
        lines.append(
            f"Completed {report.completed_sessions} ({report.completed_sessions / analysed * 100:.1f}%), "
            f"dropped off {report.dropoff_sessions} ({report.dropoff_sessions / analysed * 100:.1f}%)"
        )
    lines.append("")
    lines.append(f"Most recent sessions (up to {SAMPLE_SIZE}):")
    for index, session in enumerate(report.recent_sessions, start=1):
        lines.append(
            f"  {index}. {session['id'][:20]} order_set={session['order_set_id'] or 'NULL'} "
            f"completion={session['completion_percentage']} created_at={session['created_at']}"
        )
    return lines
