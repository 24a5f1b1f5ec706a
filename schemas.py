from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from config import settings


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Decimal internally, plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """Immutable model with camelCase wire names; snake_case is accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RuleKind(str, Enum):
    COUPON = "COUPON"
    PROMOTION = "PROMOTION"
    COMBO = "COMBO"


# ─────────────── Cart schemas ───────────────

class CartLine(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price: Money  # Price per unit
    category_ids: Tuple[str, ...] = ()

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("unit_price")
    @classmethod
    def price_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Price cannot be negative")
        # Line totals must be exact in minor units, or rounding drifts past the cart total
        if v != v.quantize(Decimal(1).scaleb(-settings.CURRENCY_DECIMALS)):
            raise ValueError(f"Price cannot have more than {settings.CURRENCY_DECIMALS} decimal places")
        return v

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(CamelModel):
    """Cart snapshot handed to the engine. Never mutated during resolution."""

    lines: Tuple[CartLine, ...] = ()
    customer_id: Optional[str] = None
    is_first_order: bool = False

    @property
    def cart_total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))


class EvaluationContext(CamelModel):
    """
    Everything the condition evaluator needs besides the cart itself.

    prior_usage maps rule id -> number of redemptions this customer
    already has for that rule.
    """

    now: datetime
    customer_id: Optional[str] = None
    is_first_order: bool = False
    prior_usage: Dict[str, int] = Field(default_factory=dict)

    @field_validator("now")
    @classmethod
    def now_is_aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def for_cart(
        cls,
        cart: Cart,
        now: Optional[datetime] = None,
        prior_usage: Optional[Dict[str, int]] = None,
    ) -> "EvaluationContext":
        return cls(
            now=now or utcnow(),
            customer_id=cart.customer_id,
            is_first_order=cart.is_first_order,
            prior_usage=prior_usage or {},
        )


# ─────────────── Pricing result ───────────────

class AppliedRule(CamelModel):
    rule_id: str
    rule_kind: RuleKind
    adjustment: Money  # Absolute discount granted by this rule
    shipping_waived: bool = False


class RejectedRule(CamelModel):
    rule_id: str
    reason: str


class UsageRecord(CamelModel):
    """One confirmed redemption. Append-only."""

    rule_id: str
    user_id: Optional[str] = None
    order_id: str
    discount_applied: Money
    used_at: datetime


class PricingResult(CamelModel):
    applied_rules: Tuple[AppliedRule, ...] = ()
    total_discount: Money = Decimal("0")
    final_total: Money = Decimal("0")
    rejected_rules: Tuple[RejectedRule, ...] = ()
    shipping_waived: bool = False
    usage_records: Tuple[UsageRecord, ...] = ()

    @property
    def applied_ids(self) -> Tuple[str, ...]:
        return tuple(applied.rule_id for applied in self.applied_rules)


# ─────────────── Request / Response bodies ───────────────

class PricingRequest(CamelModel):
    cart: Cart
    coupon_code: Optional[str] = None
    now: Optional[datetime] = None  # Evaluation time override, defaults to server time


class FinalizeRequest(PricingRequest):
    order_id: str


class CouponValidateRequest(CamelModel):
    code: str
    cart: Cart
    now: Optional[datetime] = None


class CouponValidateResponse(CamelModel):
    valid: bool
    discount: Money = Decimal("0")
    shipping_waived: bool = False
    message: Optional[str] = None
