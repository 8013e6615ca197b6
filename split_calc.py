# split_calc.py
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from utils import ZERO, parse_non_negative_or_default, to_decimal

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"


class BillError(Exception):
    pass


class InvalidIndex(BillError, IndexError):
    """A claimed item index does not point at an extracted item."""

    def __init__(self, index, item_count: int):
        self.index = index
        self.item_count = item_count
        super().__init__(f"item index {index!r} is out of range for {item_count} item(s)")


@dataclass(frozen=True)
class PersonShare:
    person_id: int
    name: str
    claimed: Tuple[int, ...]
    subtotal: Decimal
    proportion: Decimal
    tax: Decimal
    tip: Decimal
    total: Decimal


@dataclass(frozen=True)
class Summary:
    subtotal: Decimal
    tax_rate: Optional[Decimal]
    tax_amount: Decimal
    tip_amount: Decimal
    grand_total: Decimal
    people: List[PersonShare] = field(default_factory=list)


def check_index(index, item_count: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < item_count:
        raise InvalidIndex(index, item_count)
    return index


def tip_amount_for(subtotal: Decimal, tip) -> Decimal:
    if tip is None:
        return ZERO
    value = parse_non_negative_or_default(tip.value)
    if tip.kind == PERCENTAGE:
        return subtotal * (value / 100)
    return value


def compute_summary(items, people, tax_rate, tip) -> Summary:
    """
    Allocate tax and tip across people in proportion to the items they claimed.

    A shared item counts at full price toward every claimant, so claimed
    subtotals may exceed the bill subtotal. Nothing is rounded here; callers
    round for display only.
    """
    prices = [item.price for item in items]
    subtotal = sum(prices, ZERO)
    rate = parse_non_negative_or_default(tax_rate)
    tax_amount = subtotal * (rate / 100)
    tip_amount = tip_amount_for(subtotal, tip)
    grand_total = subtotal + tax_amount + tip_amount

    shares = []
    for person in people:
        claimed = tuple(sorted(check_index(i, len(prices)) for i in person.claimed))
        person_subtotal = sum((prices[i] for i in claimed), ZERO)
        proportion = person_subtotal / subtotal if subtotal > 0 else ZERO
        person_tax = tax_amount * proportion
        person_tip = tip_amount * proportion
        shares.append(PersonShare(
            person_id=person.id,
            name=person.name,
            claimed=claimed,
            subtotal=person_subtotal,
            proportion=proportion,
            tax=person_tax,
            tip=person_tip,
            total=person_subtotal + person_tax + person_tip,
        ))

    return Summary(
        subtotal=subtotal,
        tax_rate=None if to_decimal(tax_rate) is None else rate,
        tax_amount=tax_amount,
        tip_amount=tip_amount,
        grand_total=grand_total,
        people=shares,
    )


def derive_tax_rate(subtotal_on_bill, tax_on_bill) -> Optional[Decimal]:
    """Tax rate in percent implied by the bill's own subtotal and tax lines, or None."""
    subtotal = to_decimal(subtotal_on_bill)
    tax = to_decimal(tax_on_bill)
    if subtotal is None or tax is None or subtotal <= 0:
        return None
    return (tax / subtotal * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def compute_even_split(items, people_count, tax_rate=None, tip=None) -> dict:
    """Split the grand total (items plus tax and tip) evenly, rounded to cents per person."""
    try:
        n = int(people_count)
    except (TypeError, ValueError):
        raise ValueError('"people" must be a positive integer') from None
    if n <= 0:
        raise ValueError('"people" must be a positive integer')

    total = compute_summary(items, [], tax_rate, tip).grand_total
    per_person = (total / n).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return {
        "total": total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        "people": n,
        "per_person": per_person,
    }
