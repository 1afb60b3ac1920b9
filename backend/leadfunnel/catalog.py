"""Built-in question definitions and order sets offered by the chat widget."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AmountRange:
    minimum: float
    maximum: float
    label: str


@dataclass(frozen=True)
class QuestionSpec:
    """One funnel question and the rules used to accept an answer."""

    id: int
    text: str
    type: str
    lead_field: str
    required: bool = True
    options: tuple[str, ...] = ()
    quick_responses: tuple[str, ...] = ()
    amount_ranges: tuple[AmountRange, ...] = ()
    minimum: float | None = None
    accept_state_codes: bool = False
    follow_up_threshold: float | None = None
    follow_up_message: str | None = None
    max_length: int | None = None


@dataclass(frozen=True)
class OrderSetSpec:
    id: str
    name: str
    description: str
    order: tuple[int, ...]
    offered: bool = field(default=True)


US_STATES: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "FL": "Florida", "GA": "Georgia",
    "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois", "IN": "Indiana", "IA": "Iowa",
    "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi", "MO": "Missouri",
    "MT": "Montana", "NE": "Nebraska", "NV": "Nevada", "NH": "New Hampshire", "NJ": "New Jersey",
    "NM": "New Mexico", "NY": "New York", "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio",
    "OK": "Oklahoma", "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont",
    "VA": "Virginia", "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}

AMOUNT_RANGES = (
    AmountRange(0, 7499, "Less than $7,500"),
    AmountRange(7500, 9999, "$7,500 - $9,999"),
    AmountRange(10000, 14999, "$10,000 - $14,999"),
    AmountRange(15000, 29999, "$15,000 - $29,999"),
    AmountRange(30000, 49999, "$30,000 - $49,999"),
    AmountRange(50000, 74999, "$50,000 - $74,999"),
    AmountRange(75000, 99999, "$75,000 - $99,999"),
    AmountRange(100000, float("inf"), "Over $100,000"),
)

QUESTIONS: dict[int, QuestionSpec] = {
    1: QuestionSpec(
        id=1,
        text="Approximately how much do you owe in taxes?",
        type="amount",
        lead_field="TaxAmount",
        quick_responses=tuple(amount_range.label for amount_range in AMOUNT_RANGES),
        amount_ranges=AMOUNT_RANGES,
        minimum=0,
        follow_up_threshold=10000,
        follow_up_message="We specialize in cases over $10,000. Let me help you explore your options.",
    ),
    2: QuestionSpec(
        id=2,
        text="What type of tax debt do you have?",
        type="multiple_choice",
        lead_field="TaxType",
        options=("Federal", "State", "Federal & State"),
    ),
    3: QuestionSpec(
        id=3,
        text="What state do you live in?",
        type="multiple_choice",
        lead_field="state",
        options=tuple(US_STATES.values()),
        accept_state_codes=True,
    ),
    4: QuestionSpec(
        id=4,
        text="Are any of your tax returns unfiled?",
        type="yesno",
        lead_field="FileStatus",
    ),
    5: QuestionSpec(
        id=5,
        text="Are you currently employed?",
        type="yesno",
        lead_field="Employment",
    ),
    6: QuestionSpec(
        id=6,
        text="What is your full name?",
        type="text",
        lead_field="fullName",
    ),
    7: QuestionSpec(
        id=7,
        text=(
            "What is your email address? (This will be used to send you a copy of our "
            "agreement, never for spam.)"
        ),
        type="text",
        lead_field="email",
    ),
    8: QuestionSpec(
        id=8,
        text="What is your phone number?",
        type="text",
        lead_field="phone1",
    ),
}

DEFAULT_ORDER_SETS: tuple[OrderSetSpec, ...] = (
    OrderSetSpec("set_1", "Standard Flow", "Traditional question flow", (1, 2, 3, 4, 5, 6, 7, 8)),
    OrderSetSpec(
        "set_2",
        "Debt-First Approach",
        "Focus on debt duration first",
        (2, 1, 3, 5, 6, 4, 7, 8),
        offered=False,
    ),
    OrderSetSpec(
        "set_3",
        "Financial-First Approach",
        "Start with IRS notices and financial situation",
        (3, 1, 2, 5, 6, 4, 7, 8),
        offered=False,
    ),
    OrderSetSpec(
        "set_4",
        "Asset-First Approach",
        "Prioritize asset and employment questions",
        (6, 4, 7, 2, 1, 5, 3, 8),
    ),
)


def find_order_set(order_set_id: str) -> OrderSetSpec | None:
    for order_set in DEFAULT_ORDER_SETS:
        if order_set.id == order_set_id:
            return order_set
    return None


def offered_order_sets() -> list[OrderSetSpec]:
    return [order_set for order_set in DEFAULT_ORDER_SETS if order_set.offered]
