"""
storage.py
==========
SQL-backed collaborators of the engine.

- SqlRuleRepository: admin CRUD over rules plus the snapshot read
  (load_active_rules) the engine consumes.
- SqlUsageStore: usage counters with atomic conditional increments and
  the redemption audit trail.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from conditions import REASON_PER_USER_LIMIT, REASON_USAGE_LIMIT
from errors import InvalidRuleError, StaleReadError, StorageError
from ledger import UsageSnapshot, UsageStore
from rules import AnyRule, Coupon, RuleBody, RuleSet, RuleStatus
from schemas import RuleKind, UsageRecord, as_utc, utcnow

logger = logging.getLogger(__name__)

_RULE_ADAPTER = TypeAdapter(RuleBody)


# ─────────────────────────── Rules ───────────────────────────

class SqlRuleRepository:
    def __init__(self, db: Session):
        self._db = db

    def _usage_counts(self) -> Dict[str, int]:
        return {c.rule_id: c.usage_count for c in self._db.query(models.RuleUsageCounter).populate_existing().all()}

    def _to_rule(self, row: models.PricingRule, usage_count: int = 0) -> AnyRule:
        data = dict(row.details)
        limit = data.get("usage_limit")
        # An admin may have lowered the limit below what was already redeemed
        if limit is not None:
            usage_count = min(usage_count, limit)
        data.update(id=row.id, usage_count=usage_count)
        return _RULE_ADAPTER.validate_python(data)

    def _live_rows(self):
        return self._db.query(models.PricingRule).filter(models.PricingRule.is_deleted == False)  # noqa: E712

    def load_active_rules(self, now: Optional[datetime] = None) -> RuleSet:
        """
        Snapshot of every rule that may still apply at ``now``.

        Coupons are kept whatever their status so that an expired coupon is
        reported as expired instead of as an unknown code. Promotions and
        combos are limited to ACTIVE ones that have not ended.
        """
        now = as_utc(now) or utcnow()
        counts = self._usage_counts()
        rules = []
        for row in self._live_rows().order_by(models.PricingRule.id).all():
            if row.kind != RuleKind.COUPON.value and row.status != RuleStatus.ACTIVE.value:
                continue
            try:
                rule = self._to_rule(row, counts.get(row.id, 0))
            except (InvalidRuleError, ValidationError) as exc:
                logger.warning("Skipping malformed rule %s: %s", row.id, exc)
                continue
            if not isinstance(rule, Coupon) and rule.end_date is not None and rule.end_date <= now:
                continue
            rules.append(rule)
        return RuleSet.from_rules(rules)

    def list_rules(self, kind: Optional[RuleKind] = None) -> List[AnyRule]:
        query = self._live_rows()
        if kind is not None:
            query = query.filter(models.PricingRule.kind == kind.value)
        counts = self._usage_counts()
        return [self._to_rule(row, counts.get(row.id, 0)) for row in query.order_by(models.PricingRule.id).all()]

    def get_rule(self, rule_id: str) -> Optional[AnyRule]:
        row = self._live_rows().filter(models.PricingRule.id == rule_id).first()
        if row is None:
            return None
        counter = self._db.get(models.RuleUsageCounter, rule_id, populate_existing=True)
        return self._to_rule(row, counter.usage_count if counter else 0)

    def _ensure_code_free(self, rule: AnyRule) -> None:
        if not isinstance(rule, Coupon):
            return
        clash = (
            self._db.query(models.PricingRule)
            .filter(models.PricingRule.code == rule.code, models.PricingRule.id != rule.id)
            .first()
        )
        if clash is not None:
            raise InvalidRuleError("Coupon code already exists")

    @staticmethod
    def _details(rule: AnyRule) -> dict:
        return rule.model_dump(mode="json", exclude={"id", "usage_count"})

    def create_rule(self, rule: AnyRule) -> AnyRule:
        if self._db.get(models.PricingRule, rule.id) is not None:
            raise InvalidRuleError(f"Rule id already exists: {rule.id}")
        self._ensure_code_free(rule)

        self._db.add(models.PricingRule(
            id=rule.id,
            kind=rule.kind,
            code=rule.code if isinstance(rule, Coupon) else None,
            status=rule.status.value,
            details=self._details(rule),
        ))
        if self._db.get(models.RuleUsageCounter, rule.id) is None:
            self._db.add(models.RuleUsageCounter(rule_id=rule.id, usage_count=0, reserved_count=0))
        self._db.commit()
        return self.get_rule(rule.id)

    def update_rule(self, rule_id: str, rule: AnyRule) -> Optional[AnyRule]:
        row = self._live_rows().filter(models.PricingRule.id == rule_id).first()
        if row is None:
            return None
        if row.kind != rule.kind:
            raise InvalidRuleError(f"Rule {rule_id} is a {row.kind}, not a {rule.kind}")
        rule = rule.model_copy(update={"id": rule_id})
        self._ensure_code_free(rule)

        row.code = rule.code if isinstance(rule, Coupon) else None
        row.status = rule.status.value
        row.details = self._details(rule)
        self._db.commit()
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        """Soft delete: the row stays for the audit trail."""
        row = self._live_rows().filter(models.PricingRule.id == rule_id).first()
        if row is None:
            return False
        row.is_deleted = True
        # Free the code for reuse
        row.code = None
        self._db.commit()
        return True


# ─────────────────────────── Usage counters ───────────────────────────

def _is_write_conflict(exc: OperationalError) -> bool:
    message = str(exc.orig).lower()
    return "locked" in message or "serializ" in message or "deadlock" in message


class SqlUsageStore(UsageStore):
    """
    Each claim is one conditional UPDATE
    (``reserved_count + 1 WHERE usage_count + reserved_count < limit``),
    so the database serializes concurrent claims on the same row.
    """

    def __init__(self, db: Session):
        self._db = db

    def load_usage(self, rule_id, user_id=None):
        counter = self._db.get(models.RuleUsageCounter, rule_id, populate_existing=True)
        user_counter = None
        if user_id is not None:
            user_counter = self._db.get(
                models.UserUsageCounter, {"rule_id": rule_id, "user_id": user_id}, populate_existing=True
            )
        return UsageSnapshot(
            usage_count=counter.usage_count if counter else 0,
            per_user_count=user_counter.usage_count if user_counter else 0,
        )

    def _claim(self, model, key: Dict[str, str], limit: Optional[int]) -> bool:
        stmt = update(model).where(*[getattr(model, column) == value for column, value in key.items()])
        if limit is not None:
            stmt = stmt.where(model.usage_count + model.reserved_count < limit)
        stmt = stmt.values(reserved_count=model.reserved_count + 1).execution_options(synchronize_session=False)
        if self._db.execute(stmt).rowcount == 1:
            return True

        if self._db.get(model, key, populate_existing=True) is not None:
            return False
        # First ever claim on this counter
        if limit is not None and limit <= 0:
            return False
        self._db.add(model(**key, usage_count=0, reserved_count=1))
        self._db.flush()
        return True

    def try_reserve(self, rule_id, user_id, usage_limit, per_user_limit):
        try:
            if not self._claim(models.RuleUsageCounter, {"rule_id": rule_id}, usage_limit):
                self._db.rollback()
                return REASON_USAGE_LIMIT
            if user_id is not None:
                key = {"rule_id": rule_id, "user_id": user_id}
                if not self._claim(models.UserUsageCounter, key, per_user_limit):
                    self._db.rollback()
                    return REASON_PER_USER_LIMIT
            self._db.commit()
            return None
        except IntegrityError as exc:
            # Another checkout created the counter row first
            self._db.rollback()
            raise StaleReadError(f"Counter for rule {rule_id} was created concurrently") from exc
        except OperationalError as exc:
            self._db.rollback()
            if _is_write_conflict(exc):
                raise StaleReadError(f"Write conflict on counter for rule {rule_id}") from exc
            raise StorageError(f"Could not reserve usage of rule {rule_id}") from exc
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise StorageError(f"Could not reserve usage of rule {rule_id}") from exc

    def _settle(self, model, key: Dict[str, str], used: int) -> None:
        stmt = (
            update(model)
            .where(*[getattr(model, column) == value for column, value in key.items()])
            .where(model.reserved_count > 0)
            .values(reserved_count=model.reserved_count - 1, usage_count=model.usage_count + used)
            .execution_options(synchronize_session=False)
        )
        if self._db.execute(stmt).rowcount != 1:
            raise StorageError(f"No reservation held for rule {key['rule_id']}")

    def _settle_all(self, rule_id: str, user_id: Optional[str], used: int) -> None:
        self._settle(models.RuleUsageCounter, {"rule_id": rule_id}, used)
        if user_id is not None:
            self._settle(models.UserUsageCounter, {"rule_id": rule_id, "user_id": user_id}, used)

    def commit(self, rule_id, user_id, record):
        try:
            self._settle_all(rule_id, user_id, used=1)
            self._db.add(models.UsageRecordRow(
                rule_id=record.rule_id,
                user_id=record.user_id,
                order_id=record.order_id,
                discount_applied=record.discount_applied,
                used_at=record.used_at,
            ))
            self._db.commit()
        except StorageError:
            self._db.rollback()
            raise
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise StorageError(f"Could not confirm usage of rule {rule_id}") from exc

    def cancel(self, rule_id, user_id):
        try:
            self._settle_all(rule_id, user_id, used=0)
            self._db.commit()
        except StorageError:
            self._db.rollback()
            raise
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise StorageError(f"Could not release usage of rule {rule_id}") from exc

    def records(self, rule_id=None):
        query = self._db.query(models.UsageRecordRow)
        if rule_id is not None:
            query = query.filter(models.UsageRecordRow.rule_id == rule_id)
        return [
            UsageRecord(
                rule_id=row.rule_id,
                user_id=row.user_id,
                order_id=row.order_id,
                discount_applied=Decimal(row.discount_applied),
                used_at=as_utc(row.used_at),
            )
            for row in query.order_by(models.UsageRecordRow.id).all()
        ]
