from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, add_order_set, add_session
from leadfunnel.funnel import reports
from leadfunnel.funnel.aggregator import compute_completion
from leadfunnel.models import QuestionEvent


LATER = NOW + timedelta(hours=1)


async def seed_funnel(db) -> None:
    await add_order_set(db, "A", [1, 2, 3], description="three questions")
    await add_order_set(db, "inactive", [1, 2], active=False)
    await add_session(db, "s-complete", "A", answered=[1, 2, 3], total_time_ms=6000)
    await add_session(db, "s-skipped", "A", answered=[1, 3], total_time_ms=2000)
    await add_session(db, "s-none", None, answered=[])
    await add_session(db, "s-old", "A", answered=[1], created_at=NOW - timedelta(days=45))


@pytest.mark.asyncio
async def test_dashboard_stats_recompute_from_events(db) -> None:
    await seed_funnel(db)

    stats = await reports.get_dashboard_stats(db, 30, now=LATER)

    assert stats.total_sessions == 3
    assert stats.avg_completion == pytest.approx(round((100 + 200 / 3 + 0) / 3, 2))
    assert stats.avg_time == pytest.approx(4000.0)
    assert stats.total_events == 5
    assert stats.total_dropoffs == 2


@pytest.mark.asyncio
async def test_stored_completion_column_is_ignored(db) -> None:
    await add_order_set(db, "A", [1, 2])
    await add_session(db, "s1", "A", answered=[1], completion_percentage=100.0)

    rates = await reports.get_completion_rates(db, 30, now=LATER)

    assert (rates.high, rates.medium, rates.low) == (0, 1, 0)


@pytest.mark.asyncio
async def test_order_set_report_includes_unassigned_and_orphans(db) -> None:
    await seed_funnel(db)

    rows = await reports.get_order_set_stats(db, 30, now=LATER)
    by_id = {row.id: row for row in rows}

    assert set(by_id) == {"A", "unassigned"}
    assert by_id["A"].total_sessions == 2
    assert by_id["A"].avg_completion == pytest.approx(83.33)
    assert by_id["A"].high_completion_count == 1
    assert by_id["A"].medium_completion_count == 1
    assert by_id["A"].question_count == 3
    assert by_id["unassigned"].total_sessions == 1


@pytest.mark.asyncio
async def test_dropoff_report_uses_first_gap(db) -> None:
    await seed_funnel(db)

    rows = await reports.get_dropoff_stats(db, 30, now=LATER)

    assert len(rows) == 1
    assert rows[0].order_set_id == "A"
    assert rows[0].question_id == "2"
    assert rows[0].question_index == 1
    assert rows[0].dropoff_count == 1
    assert rows[0].avg_completion_at_dropoff == pytest.approx(66.67)


@pytest.mark.asyncio
async def test_question_report_counts_started_and_answered(db) -> None:
    await add_order_set(db, "A", [1, 2])
    await add_session(db, "s1", "A")
    for event_type, time_to_answer in (("started", None), ("answered", 1500), ("started", None)):
        db.add(
            QuestionEvent(
                session_id="s1",
                order_set_id="A",
                question_id="1",
                question_index=0,
                event_type=event_type,
                time_to_answer_ms=time_to_answer,
                timestamp=NOW,
                created_at=NOW,
            )
        )
    await db.commit()

    rows = await reports.get_question_stats(db, 30, now=LATER)

    assert len(rows) == 1
    assert rows[0].started_count == 2
    assert rows[0].answered_count == 1
    assert rows[0].avg_time_to_answer == pytest.approx(1500.0)
    assert rows[0].answer_rate == 50.0


@pytest.mark.asyncio
async def test_reports_on_empty_store_are_zero(db) -> None:
    summary = await reports.get_dashboard_summary(db, None, now=LATER)

    assert summary.days == 30
    assert summary.stats.total_sessions == 0
    assert summary.stats.avg_completion == 0.0
    assert summary.order_sets == []
    assert summary.dropoffs == []
    assert summary.questions == []
    assert summary.completion_rates.high == 0


@pytest.mark.asyncio
async def test_window_excludes_old_sessions_and_their_events(db) -> None:
    await seed_funnel(db)

    wide = await reports.get_dashboard_stats(db, 90, now=LATER)

    assert wide.total_sessions == 4
    assert wide.total_events == 6


@pytest.mark.asyncio
async def test_compute_completion_for_single_session(db) -> None:
    await seed_funnel(db)

    completion = await compute_completion(db, "s-skipped")

    assert completion == {"s-skipped": pytest.approx(200 / 3)}
