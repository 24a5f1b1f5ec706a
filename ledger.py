"""
ledger.py
=========
Usage Ledger: gates redemptions on usage counters.

Two-phase protocol, run only when a cart is finalized:

- reserve(rule, user)  -> claims one usage slot atomically, or raises
                          UsageLimitExceeded when the slot is gone.
- confirm(token, ...)  -> turns the claim into a redemption and writes
                          the UsageRecord.
- release(token)       -> gives the slot back when the order fails.

Counters live behind a UsageStore. A store must make the claim a single
compare-and-increment per counter: ``used + reserved < limit``, so two
concurrent reservations for the last slot can never both win.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from conditions import REASON_PER_USER_LIMIT, REASON_SIGN_IN, REASON_USAGE_LIMIT
from errors import StorageError, UsageLimitExceeded
from rules import AnyRule
from schemas import UsageRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    usage_count: int = 0
    per_user_count: int = 0


@dataclass(frozen=True)
class ReservationToken:
    token_id: str
    rule_id: str
    user_id: Optional[str]
    reserved_at: datetime


class UsageStore(ABC):
    """Storage contract for usage counters and the redemption audit trail."""

    @abstractmethod
    def load_usage(self, rule_id: str, user_id: Optional[str] = None) -> UsageSnapshot:
        """Confirmed redemptions, globally and for one user."""

    @abstractmethod
    def try_reserve(
        self,
        rule_id: str,
        user_id: Optional[str],
        usage_limit: Optional[int],
        per_user_limit: Optional[int],
    ) -> Optional[str]:
        """
        Atomically claim one slot on the rule counter and, when user_id is
        given, on the (rule, user) counter. Both claims succeed or neither
        does. Returns None on success, otherwise the rejection reason.

        May raise StaleReadError when a concurrent writer got in the way.
        """

    @abstractmethod
    def commit(self, rule_id: str, user_id: Optional[str], record: UsageRecord) -> None:
        """Move one reserved slot to used and append the record."""

    @abstractmethod
    def cancel(self, rule_id: str, user_id: Optional[str]) -> None:
        """Give one reserved slot back."""

    @abstractmethod
    def records(self, rule_id: Optional[str] = None) -> List[UsageRecord]:
        """Redemption audit trail, oldest first."""


# ─────────────── In-memory store ───────────────

@dataclass
class _Counter:
    used: int = 0
    reserved: int = 0

    def has_room(self, limit: Optional[int]) -> bool:
        return limit is None or self.used + self.reserved < limit


class InMemoryUsageStore(UsageStore):
    """
    Process-local store. Each rule gets its own lock, so unrelated rules
    never wait on each other.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._counters: Dict[str, _Counter] = {}
        self._user_counters: Dict[Tuple[str, str], _Counter] = {}
        self._records: List[UsageRecord] = []

    def _lock_for(self, rule_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(rule_id, threading.Lock())

    def seed(self, rule_id: str, usage_count: int = 0, per_user: Optional[Dict[str, int]] = None) -> None:
        """Preload confirmed counts, e.g. from a previous process."""
        with self._lock_for(rule_id):
            self._counters[rule_id] = _Counter(used=usage_count)
            for user_id, count in (per_user or {}).items():
                self._user_counters[(rule_id, user_id)] = _Counter(used=count)

    def load_usage(self, rule_id, user_id=None):
        with self._lock_for(rule_id):
            counter = self._counters.get(rule_id, _Counter())
            user_counter = self._user_counters.get((rule_id, user_id), _Counter()) if user_id else _Counter()
            return UsageSnapshot(usage_count=counter.used, per_user_count=user_counter.used)

    def try_reserve(self, rule_id, user_id, usage_limit, per_user_limit):
        with self._lock_for(rule_id):
            counter = self._counters.setdefault(rule_id, _Counter())
            if not counter.has_room(usage_limit):
                return REASON_USAGE_LIMIT
            user_counter = None
            if user_id is not None:
                user_counter = self._user_counters.setdefault((rule_id, user_id), _Counter())
                if not user_counter.has_room(per_user_limit):
                    return REASON_PER_USER_LIMIT
            counter.reserved += 1
            if user_counter is not None:
                user_counter.reserved += 1
            return None

    def commit(self, rule_id, user_id, record):
        with self._lock_for(rule_id):
            counters = self._held_counters(rule_id, user_id)
            for counter in counters:
                counter.reserved -= 1
                counter.used += 1
            with self._registry_lock:
                self._records.append(record)

    def cancel(self, rule_id, user_id):
        with self._lock_for(rule_id):
            for counter in self._held_counters(rule_id, user_id):
                counter.reserved -= 1

    def _held_counters(self, rule_id: str, user_id: Optional[str]) -> List[_Counter]:
        counters = [self._counters.get(rule_id)]
        if user_id is not None:
            counters.append(self._user_counters.get((rule_id, user_id)))
        if any(counter is None or counter.reserved <= 0 for counter in counters):
            raise StorageError(f"No reservation held for rule {rule_id}")
        return counters

    def records(self, rule_id=None):
        with self._registry_lock:
            return [r for r in self._records if rule_id is None or r.rule_id == rule_id]


# ─────────────── Ledger ───────────────

class UsageLedger:
    def __init__(self, store: UsageStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[str, ReservationToken] = {}

    @property
    def store(self) -> UsageStore:
        return self._store

    def load_usage(self, rule_id: str, user_id: Optional[str] = None) -> UsageSnapshot:
        return self._store.load_usage(rule_id, user_id)

    def reserve(self, rule: AnyRule, user_id: Optional[str]) -> ReservationToken:
        if rule.per_user_limit is not None and user_id is None:
            raise UsageLimitExceeded(rule.id, REASON_SIGN_IN)

        reason = self._store.try_reserve(rule.id, user_id, rule.usage_limit, rule.per_user_limit)
        if reason is not None:
            logger.info("Reservation refused for rule %s (user %s): %s", rule.id, user_id, reason)
            raise UsageLimitExceeded(rule.id, reason)

        token = ReservationToken(
            token_id=uuid.uuid4().hex,
            rule_id=rule.id,
            user_id=user_id,
            reserved_at=self._clock(),
        )
        with self._lock:
            self._pending[token.token_id] = token
        return token

    def confirm(self, token: ReservationToken, order_id: str, discount_applied: Decimal) -> UsageRecord:
        with self._lock:
            if token.token_id not in self._pending:
                raise StorageError(f"Reservation {token.token_id} is not pending")

        record = UsageRecord(
            rule_id=token.rule_id,
            user_id=token.user_id,
            order_id=order_id,
            discount_applied=discount_applied,
            used_at=self._clock(),
        )
        self._store.commit(token.rule_id, token.user_id, record)
        with self._lock:
            self._pending.pop(token.token_id, None)
        logger.info("Rule %s redeemed on order %s (discount %s)", token.rule_id, order_id, discount_applied)
        return record

    def release(self, token: ReservationToken) -> None:
        """Idempotent: releasing a settled token does nothing."""
        with self._lock:
            if self._pending.pop(token.token_id, None) is None:
                return
        self._store.cancel(token.rule_id, token.user_id)

    def pending(self) -> List[ReservationToken]:
        with self._lock:
            return list(self._pending.values())

    def records(self, rule_id: Optional[str] = None) -> List[UsageRecord]:
        return self._store.records(rule_id)
