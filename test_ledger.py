"""
test_ledger.py
==============
Unit tests for the usage ledger over the in-memory store.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from errors import StorageError, UsageLimitExceeded
from ledger import InMemoryUsageStore, UsageLedger
from rules import Coupon, DiscountType


def make_coupon(**extra):
    fields = dict(id="c1", name="Ten off", code="TEN", discount_type=DiscountType.FIXED, discount_value=10)
    fields.update(extra)
    return Coupon(**fields)


@pytest.fixture
def ledger():
    return UsageLedger(InMemoryUsageStore())


class TestReserveConfirm:

    def test_confirm_counts_and_records(self, ledger):
        token = ledger.reserve(make_coupon(), "u1")
        record = ledger.confirm(token, "order-1", Decimal("10"))
        assert record.order_id == "order-1"
        assert record.user_id == "u1"
        assert ledger.load_usage("c1", "u1").usage_count == 1
        assert ledger.load_usage("c1", "u1").per_user_count == 1
        assert ledger.records("c1") == [record]
        assert ledger.pending() == []

    def test_reservation_is_not_usage(self, ledger):
        ledger.reserve(make_coupon(), None)
        assert ledger.load_usage("c1").usage_count == 0
        assert len(ledger.pending()) == 1

    def test_limit_counts_reservations(self, ledger):
        coupon = make_coupon(usage_limit=1)
        ledger.reserve(coupon, None)
        with pytest.raises(UsageLimitExceeded) as exc:
            ledger.reserve(coupon, None)
        assert exc.value.reason == "usage limit reached"
        assert exc.value.rule_id == "c1"

    def test_release_frees_the_slot(self, ledger):
        coupon = make_coupon(usage_limit=1)
        token = ledger.reserve(coupon, None)
        ledger.release(token)
        ledger.release(token)  # idempotent
        ledger.confirm(ledger.reserve(coupon, None), "order-1", Decimal("10"))
        assert ledger.load_usage("c1").usage_count == 1

    def test_confirm_after_release(self, ledger):
        token = ledger.reserve(make_coupon(), None)
        ledger.release(token)
        with pytest.raises(StorageError):
            ledger.confirm(token, "order-1", Decimal("10"))

    def test_seeded_usage(self):
        store = InMemoryUsageStore()
        store.seed("c1", usage_count=2, per_user={"u1": 1})
        ledger = UsageLedger(store)
        with pytest.raises(UsageLimitExceeded):
            ledger.reserve(make_coupon(usage_limit=2), "u2")
        assert ledger.load_usage("c1", "u1").per_user_count == 1


class TestPerUser:

    def test_per_user_limit(self, ledger):
        coupon = make_coupon(per_user_limit=1)
        ledger.confirm(ledger.reserve(coupon, "u1"), "order-1", Decimal("10"))
        with pytest.raises(UsageLimitExceeded) as exc:
            ledger.reserve(coupon, "u1")
        assert exc.value.reason == "per-user limit reached"
        ledger.reserve(coupon, "u2")

    def test_per_user_limit_needs_user(self, ledger):
        with pytest.raises(UsageLimitExceeded) as exc:
            ledger.reserve(make_coupon(per_user_limit=1), None)
        assert exc.value.reason == "sign-in required"

    def test_failed_user_claim_keeps_global_counter(self, ledger):
        coupon = make_coupon(usage_limit=5, per_user_limit=1)
        ledger.reserve(coupon, "u1")
        with pytest.raises(UsageLimitExceeded):
            ledger.reserve(coupon, "u1")
        assert ledger.store.try_reserve("c1", None, 2, None) is None


class TestConcurrency:

    def test_never_oversells(self, ledger):
        coupon = make_coupon(usage_limit=5)

        def attempt(n):
            try:
                token = ledger.reserve(coupon, None)
            except UsageLimitExceeded:
                return False
            ledger.confirm(token, f"order-{n}", Decimal("10"))
            return True

        with ThreadPoolExecutor(max_workers=16) as pool:
            outcomes = list(pool.map(attempt, range(50)))

        assert outcomes.count(True) == 5
        assert ledger.load_usage("c1").usage_count == 5
        assert len(ledger.records("c1")) == 5


def test_cancel_without_reservation():
    with pytest.raises(StorageError):
        InMemoryUsageStore().cancel("c1", None)
