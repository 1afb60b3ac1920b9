from __future__ import annotations

import pytest

from conftest import add_order_set
from leadfunnel.funnel.registry import OrderSetRegistry, decode_question_order


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ([1, 2, 3], ["1", "2", "3"]),
        ("[6, 4, 7]", ["6", "4", "7"]),
        ([], []),
        ("not json", None),
        ('{"a": 1}', None),
        (None, None),
    ],
)
def test_decode_question_order(raw, expected) -> None:
    assert decode_question_order(raw) == expected


@pytest.mark.asyncio
async def test_registry_loads_requested_order_sets(db) -> None:
    await add_order_set(db, "A", [1, 2, 3])
    await add_order_set(db, "B", "[4, 5]")
    await add_order_set(db, "broken", "garbage")

    registry = await OrderSetRegistry.load(db, ["A", "B", "broken", "ghost", None])

    assert registry.resolve("A") == ["1", "2", "3"]
    assert registry.resolve("B") == ["4", "5"]
    assert registry.question_count("A") == 3
    assert registry.question_count("broken") == 8
    assert registry.question_count("ghost") == 8
    assert registry.question_count(None) == 8
    assert "ghost" not in registry


@pytest.mark.asyncio
async def test_registry_without_ids_is_empty(db) -> None:
    await add_order_set(db, "A", [1, 2])

    registry = await OrderSetRegistry.load(db, [None, ""], default_question_count=5)

    assert list(registry) == []
    assert registry.question_count("A") == 5
