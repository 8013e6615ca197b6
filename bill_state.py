# bill_state.py
"""
In-memory bill state for one splitting session: extracted items, the people
at the table, what each of them claimed, and the tax/tip settings.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Set, Tuple

from split_calc import FIXED_AMOUNT, PERCENTAGE, Summary, check_index, compute_summary, derive_tax_rate
from utils import ZERO, parse_non_negative_or_default, to_decimal

logger = logging.getLogger(__name__)

TIP_KIND_ALIASES = {
    "percentage": PERCENTAGE,
    "percent": PERCENTAGE,
    "%": PERCENTAGE,
    "fixed_amount": FIXED_AMOUNT,
    "amount": FIXED_AMOUNT,
    "fixed": FIXED_AMOUNT,
}


@dataclass(frozen=True)
class Item:
    """A single extracted line of the receipt"""
    name: str
    price: Decimal


@dataclass
class Person:
    id: int
    name: str
    claimed: Set[int] = field(default_factory=set)


@dataclass
class TaxSpec:
    rate: Optional[Decimal] = None

    @classmethod
    def from_bill(cls, subtotal_on_bill, tax_on_bill) -> "TaxSpec":
        return cls(rate=derive_tax_rate(subtotal_on_bill, tax_on_bill))


@dataclass
class TipSpec:
    kind: str = PERCENTAGE
    value: Decimal = ZERO


def normalize_tip_kind(kind) -> str:
    normalized = TIP_KIND_ALIASES.get(str(kind or PERCENTAGE).strip().lower())
    if normalized is None:
        raise ValueError(f"unknown tip kind: {kind!r}")
    return normalized


def item_from_dict(raw) -> Item:
    if not isinstance(raw, dict):
        raise ValueError("each item must be an object with 'item' and 'price'")
    name = str(raw.get("item") or raw.get("name") or "").strip()
    price = to_decimal(raw.get("price"))
    if price is None or price < 0:
        raise ValueError(f"item {name!r} has an invalid price: {raw.get('price')!r}")
    return Item(name=name, price=price)


class BillState:
    """
    Items, people, tax and tip for one bill.

    There is always at least one person; a fresh bill starts with "Person 1".
    """

    def __init__(self):
        self.items: List[Item] = []
        self.people: List[Person] = []
        self.tax = TaxSpec()
        self.tip = TipSpec()
        self._next_id = 1
        self.add_person()

    # --- items ---

    def load_extraction(self, result: dict) -> Optional[Decimal]:
        """
        Replace the items with a fresh extraction result and auto-fill the tax
        rate from the bill's stated subtotal and tax. Existing claims refer to
        the old item list, so they are dropped.
        """
        self.items = [item_from_dict(raw) for raw in result.get("items") or []]
        for person in self.people:
            person.claimed.clear()
        self.tax = TaxSpec.from_bill(result.get("subtotalAmountOnBill"), result.get("taxAmountOnBill"))
        if self.tax.rate is None:
            logger.info("Could not auto-detect tax rate from bill; leaving it blank")
        else:
            logger.info("Auto-detected tax rate: %s%%", self.tax.rate)
        return self.tax.rate

    # --- tax & tip ---

    def set_tax_rate(self, raw) -> Optional[Decimal]:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            self.tax = TaxSpec()
        else:
            self.tax = TaxSpec(rate=parse_non_negative_or_default(raw))
        return self.tax.rate

    def set_tip(self, kind, raw) -> TipSpec:
        self.tip = TipSpec(kind=normalize_tip_kind(kind), value=parse_non_negative_or_default(raw))
        return self.tip

    # --- people ---

    def find_person(self, person_id) -> Optional[Person]:
        return next((p for p in self.people if p.id == person_id), None)

    def add_person(self, name: Optional[str] = None) -> Person:
        person_id = self._next_id
        self._next_id += 1
        name = str(name or "").strip() or f"Person {person_id}"
        person = Person(id=person_id, name=name)
        self.people.append(person)
        return person

    def remove_person(self, person_id) -> bool:
        person = self.find_person(person_id)
        if person is None or len(self.people) <= 1:
            return False
        self.people.remove(person)
        return True

    def rename_person(self, person_id, name: str) -> Optional[Person]:
        person = self.find_person(person_id)
        if person is not None:
            person.name = name
        return person

    def toggle_claim(self, person_id, index, claimed: Optional[bool] = None) -> Optional[Person]:
        """Flip (or force, when `claimed` is given) a person's claim on an item."""
        check_index(index, len(self.items))
        person = self.find_person(person_id)
        if person is None:
            return None
        if claimed is None:
            claimed = index not in person.claimed
        if claimed:
            person.claimed.add(index)
        else:
            person.claimed.discard(index)
        return person

    # --- output ---

    def summary(self) -> Summary:
        return compute_summary(self.items, self.people, self.tax.rate, self.tip)

    def to_dict(self) -> dict:
        return {
            "items": [{"item": it.name, "price": str(it.price)} for it in self.items],
            "people": [
                {"id": p.id, "name": p.name, "claimed": sorted(p.claimed)}
                for p in self.people
            ],
            "taxRate": None if self.tax.rate is None else str(self.tax.rate),
            "tip": {"kind": self.tip.kind, "value": str(self.tip.value)},
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "BillState":
        """
        Build a bill from the JSON shape produced by `to_dict`. Claimed indices
        are stored as given and only checked when a summary is computed.
        """
        if not isinstance(payload, dict):
            raise ValueError("bill must be a JSON object")
        items = payload.get("items") or []
        people = payload.get("people") or []
        if not isinstance(items, list) or not isinstance(people, list):
            raise ValueError("'items' and 'people' must be lists")

        bill = cls()
        bill.items = [item_from_dict(raw) for raw in items]
        if people:
            bill.people = []
            bill._next_id = 1
        for raw in people:
            if not isinstance(raw, dict):
                raise ValueError("each person must be an object")
            claimed = raw.get("claimed", raw.get("selectedItems")) or []
            if not isinstance(claimed, list):
                raise ValueError("'claimed' must be a list of item indices")
            person = bill.add_person(raw.get("name"))
            if raw.get("id") is not None:
                if isinstance(raw["id"], bool) or not isinstance(raw["id"], int):
                    raise ValueError(f"person id must be an integer: {raw['id']!r}")
                other = bill.find_person(raw["id"])
                if other is not None and other is not person:
                    raise ValueError(f"duplicate person id: {raw['id']!r}")
                person.id = raw["id"]
                bill._next_id = max(bill._next_id, person.id + 1)
            try:
                person.claimed = set(claimed)
            except TypeError:
                raise ValueError("'claimed' must be a list of item indices") from None

        bill.set_tax_rate(payload.get("taxRate"))
        tip = payload.get("tip") or {}
        if not isinstance(tip, dict):
            raise ValueError("'tip' must be an object with 'kind' and 'value'")
        bill.set_tip(tip.get("kind"), tip.get("value"))
        return bill


class BillStore:
    """
    Per-session bills, keyed by an opaque session id.

    Bills idle for longer than `idle_seconds` are dropped, and once more than
    `max_bills` are held the least recently used ones go first.
    """

    def __init__(self, max_bills: int = 1000, idle_seconds: float = 3600, clock=time.monotonic):
        self.max_bills = max_bills
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._bills: "OrderedDict[str, Tuple[BillState, float]]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    def _evict(self, now: float) -> None:
        while self._bills:
            session_id, (_, last_used) = next(iter(self._bills.items()))
            if len(self._bills) <= self.max_bills and now - last_used <= self.idle_seconds:
                break
            del self._bills[session_id]
            logger.debug("Evicted bill for session %s", session_id)

    def peek(self, session_id: Optional[str]) -> Optional[BillState]:
        """The stored bill for `session_id`, or None; never creates one."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            entry = self._bills.get(session_id) if session_id else None
            if entry is None:
                return None
            self._bills[session_id] = (entry[0], now)
            self._bills.move_to_end(session_id)
            return entry[0]

    def get(self, session_id: str) -> BillState:
        with self._lock:
            now = self._clock()
            entry = self._bills.get(session_id)
            bill = BillState() if entry is None else entry[0]
            self._bills[session_id] = (bill, now)
            self._bills.move_to_end(session_id)
            self._evict(now)
            return bill

    def discard(self, session_id: Optional[str]) -> None:
        with self._lock:
            self._bills.pop(session_id, None)

    def __contains__(self, session_id):
        return session_id in self._bills

    def __len__(self):
        return len(self._bills)
