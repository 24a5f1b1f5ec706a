from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, Numeric
from sqlalchemy.sql import func
from database import Base


class PricingRule(Base):
    """
    Database model for coupons, promotions and combos.

    kind: 'COUPON' | 'PROMOTION' | 'COMBO'
    details: JSON field holding the rule body as the API receives it,
        minus id and usage_count (the count lives in rule_usage_counters).
    """
    __tablename__ = "pricing_rules"

    id = Column(String, primary_key=True, index=True)
    kind = Column(String, nullable=False, index=True)
    code = Column(String, unique=True, nullable=True, index=True)  # Coupons only
    status = Column(String, nullable=False)
    details = Column(JSON, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class RuleUsageCounter(Base):
    """Confirmed and in-flight redemptions of one rule."""
    __tablename__ = "rule_usage_counters"

    rule_id = Column(String, primary_key=True)
    usage_count = Column(Integer, default=0, nullable=False)
    reserved_count = Column(Integer, default=0, nullable=False)


class UserUsageCounter(Base):
    """Confirmed and in-flight redemptions of one rule by one customer."""
    __tablename__ = "user_usage_counters"

    rule_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    usage_count = Column(Integer, default=0, nullable=False)
    reserved_count = Column(Integer, default=0, nullable=False)


class UsageRecordRow(Base):
    """Append-only redemption audit trail."""
    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rule_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    order_id = Column(String, nullable=False)
    discount_applied = Column(Numeric(12, 2), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=False)
