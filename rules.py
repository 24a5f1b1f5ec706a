"""
rules.py
========
Rule Model: the three kinds of price adjustment sources.

- Coupon:    applied only when the customer enters its code.
- Promotion: applied automatically; may or may not stack with others.
- Combo:     item bundling (BUNDLE, BOGO, MULTI_BUY).

All three share an envelope (id, name, status, validity window, usage
counters) and are validated at construction. Malformed data raises
InvalidRuleError.
"""

import secrets
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import Field, field_validator, model_validator

from errors import InvalidRuleError, RuleNotFoundError
from schemas import CamelModel, Money, as_utc


class RuleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
    FREE_SHIPPING = "FREE_SHIPPING"


class ComboType(str, Enum):
    BUNDLE = "BUNDLE"
    BOGO = "BOGO"
    MULTI_BUY = "MULTI_BUY"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _new_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(5)}"


# ─────────────── Envelope ───────────────

class RuleBase(CamelModel):
    id: str
    name: str
    description: str = ""
    status: RuleStatus = RuleStatus.ACTIVE
    start_date: Optional[datetime] = None  # None => no lower bound
    end_date: Optional[datetime] = None    # None => no upper bound, exclusive otherwise
    usage_limit: Optional[int] = None
    usage_count: int = 0
    per_user_limit: Optional[int] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_are_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def check_envelope(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise InvalidRuleError(f"Rule {self.id}: end date precedes start date")
        if self.usage_limit is not None and self.usage_limit < 0:
            raise InvalidRuleError(f"Rule {self.id}: usage limit cannot be negative")
        if self.per_user_limit is not None and self.per_user_limit < 0:
            raise InvalidRuleError(f"Rule {self.id}: per-user limit cannot be negative")
        if self.usage_count < 0:
            raise InvalidRuleError(f"Rule {self.id}: usage count cannot be negative")
        if self.usage_limit is not None and self.usage_count > self.usage_limit:
            raise InvalidRuleError(f"Rule {self.id}: usage count exceeds usage limit")
        return self


class DiscountRule(RuleBase):
    """Condition and effect surface shared by coupons and promotions."""

    discount_type: DiscountType
    discount_value: Money = Decimal("0")  # Percent for PERCENTAGE, amount for FIXED
    max_discount: Optional[Money] = None  # Cap for PERCENTAGE

    # Conditions
    min_order_amount: Optional[Money] = None
    min_quantity: Optional[int] = None
    applicable_products: Tuple[str, ...] = ()
    applicable_categories: Tuple[str, ...] = ()
    excluded_products: Tuple[str, ...] = ()

    # Audience
    restricted_to_users: Tuple[str, ...] = ()  # Empty => everybody
    first_order_only: bool = False

    @model_validator(mode="after")
    def check_discount(self):
        if self.discount_value < 0:
            raise InvalidRuleError(f"Rule {self.id}: discount value cannot be negative")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise InvalidRuleError(f"Rule {self.id}: percentage discount must be between 0 and 100")
        if self.max_discount is not None and self.max_discount < 0:
            raise InvalidRuleError(f"Rule {self.id}: max discount cannot be negative")
        if self.min_order_amount is not None and self.min_order_amount < 0:
            raise InvalidRuleError(f"Rule {self.id}: minimum order amount cannot be negative")
        if self.min_quantity is not None and self.min_quantity < 0:
            raise InvalidRuleError(f"Rule {self.id}: minimum quantity cannot be negative")
        return self

    @property
    def has_scope(self) -> bool:
        return bool(self.applicable_products or self.applicable_categories)


class Coupon(DiscountRule):
    kind: Literal["COUPON"] = "COUPON"
    id: str = Field(default_factory=lambda: _new_id("cpn"))
    code: str  # User-facing code, e.g. "SAVE20"

    @field_validator("code")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = normalize_code(v)
        if not v:
            raise InvalidRuleError("Coupon code cannot be empty")
        return v


class Promotion(DiscountRule):
    kind: Literal["PROMOTION"] = "PROMOTION"
    id: str = Field(default_factory=lambda: _new_id("promo"))
    stackable: bool = False
    priority: int = 0  # Higher applies first among stackable promotions


class ComboItem(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1
    required: bool = True  # Must be in cart for combo to apply

    @model_validator(mode="after")
    def check_quantity(self):
        if self.quantity <= 0:
            raise InvalidRuleError(f"Combo item {self.product_id}: quantity must be positive")
        return self


class Combo(RuleBase):
    kind: Literal["COMBO"] = "COMBO"
    id: str = Field(default_factory=lambda: _new_id("combo"))
    items: Tuple[ComboItem, ...] = ()
    combo_type: ComboType = ComboType.BUNDLE

    # BUNDLE pricing
    original_price: Optional[Money] = None  # Sum of individual prices
    combo_price: Optional[Money] = None

    # BOGO / MULTI_BUY pricing
    buy_quantity: Optional[int] = None  # Buy X
    get_quantity: Optional[int] = None  # Get Y
    get_discount: Optional[Money] = None  # At Z% off (100 = free)

    @model_validator(mode="after")
    def check_combo(self):
        if not self.items:
            raise InvalidRuleError(f"Combo {self.id}: items cannot be empty")
        if self.combo_type == ComboType.BUNDLE:
            if self.original_price is None or self.combo_price is None:
                raise InvalidRuleError(f"Combo {self.id}: bundle needs original and combo price")
            if self.combo_price < 0:
                raise InvalidRuleError(f"Combo {self.id}: combo price cannot be negative")
            if self.savings < 0:
                raise InvalidRuleError(f"Combo {self.id}: combo price exceeds original price")
        else:
            if not self.buy_quantity or self.buy_quantity < 1:
                raise InvalidRuleError(f"Combo {self.id}: buy quantity must be at least 1")
            if not self.get_quantity or self.get_quantity < 1:
                raise InvalidRuleError(f"Combo {self.id}: get quantity must be at least 1")
            if self.get_discount is None or not 0 <= self.get_discount <= 100:
                raise InvalidRuleError(f"Combo {self.id}: get discount must be between 0 and 100")
        return self

    @property
    def savings(self) -> Decimal:
        if self.original_price is None or self.combo_price is None:
            return Decimal("0")
        return self.original_price - self.combo_price


AnyRule = Union[Coupon, Promotion, Combo]

# Tagged by ``kind``; a missing or unknown kind is a plain validation error
RuleBody = Annotated[AnyRule, Field(discriminator="kind")]


# ─────────────── Snapshot ───────────────

class RuleSet(CamelModel):
    """
    Consistent snapshot of the rule catalog, read once per resolution.

    Passed explicitly into the engine; nothing holds it globally.
    """

    coupons: Tuple[Coupon, ...] = ()
    promotions: Tuple[Promotion, ...] = ()
    combos: Tuple[Combo, ...] = ()

    @model_validator(mode="after")
    def check_unique(self):
        seen = set()
        for rule in self.all_rules():
            if rule.id in seen:
                raise InvalidRuleError(f"Duplicate rule id: {rule.id}")
            seen.add(rule.id)
        codes = [coupon.code for coupon in self.coupons]
        if len(codes) != len(set(codes)):
            raise InvalidRuleError("Coupon codes must be unique")
        return self

    @classmethod
    def from_rules(cls, rules: Iterable[AnyRule]) -> "RuleSet":
        coupons: List[Coupon] = []
        promotions: List[Promotion] = []
        combos: List[Combo] = []
        for rule in rules:
            if isinstance(rule, Coupon):
                coupons.append(rule)
            elif isinstance(rule, Promotion):
                promotions.append(rule)
            elif isinstance(rule, Combo):
                combos.append(rule)
            else:
                raise InvalidRuleError(f"Unsupported rule kind: {type(rule).__name__}")
        return cls(coupons=tuple(coupons), promotions=tuple(promotions), combos=tuple(combos))

    def all_rules(self) -> Tuple[AnyRule, ...]:
        return self.combos + self.promotions + self.coupons

    def find_coupon(self, code: str) -> Coupon:
        wanted = normalize_code(code)
        for coupon in self.coupons:
            if coupon.code == wanted:
                return coupon
        raise RuleNotFoundError(code)

    def only(self, rule_ids: Iterable[str]) -> "RuleSet":
        keep = set(rule_ids)
        return RuleSet.from_rules(rule for rule in self.all_rules() if rule.id in keep)
