"""Order set lookups used by every funnel computation.

A session whose order set cannot be found still gets a completion
percentage: its denominator falls back to ``DEFAULT_QUESTION_COUNT``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import OrderSet


logger = logging.getLogger("lead-funnel")

DEFAULT_QUESTION_COUNT = 8
UNASSIGNED = "unassigned"


def decode_question_order(raw: Any) -> list[str] | None:
    """Normalise a stored ``question_order`` to a list of question ids.

    Native arrays and JSON-encoded strings are both accepted.  Anything
    that does not decode to an array returns ``None``.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable question_order %r", raw[:80])
            return None
    if isinstance(raw, (list, tuple)):
        return [str(question_id) for question_id in raw]
    return None


@dataclass(frozen=True)
class OrderSetEntry:
    id: str
    name: str
    description: str | None
    active: bool
    question_order: list[str] | None


class OrderSetRegistry:
    """In-memory view of the order sets referenced by one report."""

    def __init__(
        self,
        entries: Iterable[OrderSetEntry] = (),
        default_question_count: int = DEFAULT_QUESTION_COUNT,
    ) -> None:
        self._entries = {entry.id: entry for entry in entries}
        self.default_question_count = default_question_count

    @classmethod
    async def load(
        cls,
        db: AsyncSession,
        order_set_ids: Iterable[str | None] | None = None,
        default_question_count: int = DEFAULT_QUESTION_COUNT,
    ) -> "OrderSetRegistry":
        """Load the given order sets, or the whole catalog when ids is None."""
        statement = select(
            OrderSet.id,
            OrderSet.name,
            OrderSet.description,
            OrderSet.active,
            OrderSet.question_order,
        )
        if order_set_ids is not None:
            wanted = sorted({order_set_id for order_set_id in order_set_ids if order_set_id})
            if not wanted:
                return cls(default_question_count=default_question_count)
            statement = statement.where(OrderSet.id.in_(wanted))
        result = await db.execute(statement)
        entries = [
            OrderSetEntry(
                id=row.id,
                name=row.name,
                description=row.description,
                active=bool(row.active),
                question_order=decode_question_order(row.question_order),
            )
            for row in result.all()
        ]
        return cls(entries, default_question_count=default_question_count)

    def get(self, order_set_id: str | None) -> OrderSetEntry | None:
        if not order_set_id:
            return None
        return self._entries.get(order_set_id)

    def resolve(self, order_set_id: str | None) -> list[str] | None:
        """The question sequence for an order set, or None when unknown."""
        entry = self.get(order_set_id)
        if entry is None:
            return None
        return entry.question_order

    def question_count(self, order_set_id: str | None) -> int:
        order = self.resolve(order_set_id)
        if order is None:
            return self.default_question_count
        return len(order)

    def __contains__(self, order_set_id: object) -> bool:
        return order_set_id in self._entries

    def __iter__(self):
        return iter(self._entries.values())
