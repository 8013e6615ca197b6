# test_bill_state.py
from decimal import Decimal

import pytest

from bill_state import BillState, BillStore, TaxSpec
from split_calc import FIXED_AMOUNT, PERCENTAGE, InvalidIndex

EXTRACTION = {
    "items": [{"item": "Burger", "price": Decimal("12.99")}, {"item": "Fries", "price": Decimal("4.50")}],
    "subtotalAmountOnBill": Decimal("17.49"),
    "taxAmountOnBill": Decimal("1.50"),
}


def loaded_bill():
    bill = BillState()
    bill.load_extraction(EXTRACTION)
    return bill


def test_new_bill_has_one_person():
    bill = BillState()
    assert [(p.id, p.name) for p in bill.people] == [(1, "Person 1")]
    assert bill.tax.rate is None
    assert bill.tip.kind == PERCENTAGE


def test_load_extraction_auto_fills_tax_rate():
    bill = loaded_bill()
    assert [it.name for it in bill.items] == ["Burger", "Fries"]
    assert bill.tax.rate == Decimal("8.58")


def test_load_extraction_without_bill_subtotal_leaves_rate_blank():
    bill = BillState()
    rate = bill.load_extraction({"items": EXTRACTION["items"], "subtotalAmountOnBill": 0, "taxAmountOnBill": 1})
    assert rate is None
    assert bill.tax.rate is None


def test_load_extraction_clears_old_claims():
    bill = loaded_bill()
    bill.toggle_claim(1, 0)
    bill.load_extraction(EXTRACTION)
    assert bill.people[0].claimed == set()


def test_tax_spec_from_bill():
    assert TaxSpec.from_bill(17.49, 1.50).rate == Decimal("8.58")
    assert TaxSpec.from_bill(None, 1.50).rate is None


def test_set_tax_rate_is_tolerant():
    bill = loaded_bill()
    assert bill.set_tax_rate("7.5") == Decimal("7.5")
    assert bill.set_tax_rate("lots") == 0
    assert bill.set_tax_rate("") is None


def test_set_tip_accepts_amount_alias():
    bill = loaded_bill()
    tip = bill.set_tip("amount", "4")
    assert tip.kind == FIXED_AMOUNT
    assert tip.value == Decimal("4")
    with pytest.raises(ValueError):
        bill.set_tip("bribe", "4")


def test_add_person_gets_unique_ids_after_removal():
    bill = BillState()
    second = bill.add_person()
    bill.remove_person(second.id)
    third = bill.add_person("Carol")
    assert third.id == 3
    assert [p.name for p in bill.people] == ["Person 1", "Carol"]


def test_remove_last_person_is_noop():
    bill = BillState()
    assert bill.remove_person(1) is False
    assert len(bill.people) == 1


def test_remove_unknown_person_is_noop():
    bill = BillState()
    bill.add_person()
    assert bill.remove_person(42) is False
    assert len(bill.people) == 2


def test_rename_person():
    bill = BillState()
    bill.rename_person(1, "Alice")
    assert bill.people[0].name == "Alice"
    assert bill.rename_person(99, "Ghost") is None


def test_toggle_claim_flips_and_forces():
    bill = loaded_bill()
    bill.toggle_claim(1, 0)
    assert bill.people[0].claimed == {0}
    bill.toggle_claim(1, 0)
    assert bill.people[0].claimed == set()
    bill.toggle_claim(1, 1, claimed=True)
    bill.toggle_claim(1, 1, claimed=True)
    assert bill.people[0].claimed == {1}


def test_toggle_claim_out_of_range_leaves_state_alone():
    bill = loaded_bill()
    bill.toggle_claim(1, 1)
    with pytest.raises(InvalidIndex):
        bill.toggle_claim(1, 5)
    assert bill.people[0].claimed == {1}


def test_summary_uses_current_state():
    bill = loaded_bill()
    bill.rename_person(1, "Alice")
    bill.toggle_claim(1, 0)
    bill.set_tip("percentage", "15")
    s = bill.summary()
    assert s.tax_rate == Decimal("8.58")
    assert s.people[0].name == "Alice"
    assert s.people[0].subtotal == Decimal("12.99")


def test_dict_round_trip_keeps_people_and_claims():
    bill = loaded_bill()
    bill.add_person("Bob")
    bill.toggle_claim(2, 1)
    bill.set_tip(FIXED_AMOUNT, "3")
    copy = BillState.from_dict(bill.to_dict())
    assert copy.to_dict() == bill.to_dict()
    assert copy.add_person().id == 3


def test_from_dict_rejects_bad_item_price():
    with pytest.raises(ValueError):
        BillState.from_dict({"items": [{"item": "x", "price": "free"}]})


def test_from_dict_rejects_duplicate_ids():
    with pytest.raises(ValueError):
        BillState.from_dict({"people": [{"id": 1}, {"id": 1}]})


@pytest.mark.parametrize("bad_id", ["x", 1.5, True])
def test_from_dict_rejects_non_integer_ids(bad_id):
    with pytest.raises(ValueError, match="integer"):
        BillState.from_dict({"people": [{"id": bad_id}]})


def test_store_keeps_sessions_apart():
    store = BillStore()
    a = store.get("a")
    a.add_person("Zed")
    assert len(store.get("b").people) == 1
    assert store.get("a") is a
    store.discard("a")
    store.discard("missing")
    assert "a" not in store
    assert len(store) == 1


def test_store_peek_never_creates():
    store = BillStore()
    assert store.peek("nobody") is None
    assert store.peek(None) is None
    assert len(store) == 0
    bill = store.get("a")
    assert store.peek("a") is bill


def test_store_drops_least_recently_used_over_cap():
    store = BillStore(max_bills=2)
    store.get("a")
    store.get("b")
    store.peek("a")
    store.get("c")
    assert "a" in store and "c" in store
    assert "b" not in store
    assert len(store) == 2


def test_store_expires_idle_bills():
    now = [0.0]
    store = BillStore(idle_seconds=60, clock=lambda: now[0])
    store.get("old")
    now[0] = 30.0
    store.get("fresh")
    now[0] = 75.0
    assert store.peek("old") is None
    assert store.peek("fresh") is not None
    assert len(store) == 1
