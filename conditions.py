"""
conditions.py
=============
Condition Evaluator: does a cart satisfy a rule's conditions?

Checks run cheapest first and stop at the first failure:

1. status is ACTIVE and ``now`` falls inside [start_date, end_date)
2. restricted_to_users contains the customer
3. first_order_only holds
4. global usage limit not reached
5. the customer's own usage below per_user_limit
6. min_order_amount / min_quantity, measured on the rule's scope
7. at least one cart line inside the scope

Excluded products are dropped from the scope before any threshold is
measured. Combos instead require every ``required`` item in the cart.

Unmet conditions are reported as a short reason string, never raised.
"""

from decimal import Decimal
from typing import List, Optional

from errors import InvalidRuleError
from rules import AnyRule, Combo, ComboItem, Coupon, DiscountRule, Promotion, RuleBase, RuleStatus
from schemas import Cart, CartLine, EvaluationContext

REASON_INACTIVE = "inactive"
REASON_EXPIRED = "expired"
REASON_NOT_STARTED = "not yet active"
REASON_RESTRICTED = "not available for this customer"
REASON_FIRST_ORDER = "first order only"
REASON_USAGE_LIMIT = "usage limit reached"
REASON_PER_USER_LIMIT = "per-user limit reached"
REASON_SIGN_IN = "sign-in required"
REASON_MIN_ORDER = "minimum order amount not met"
REASON_MIN_QUANTITY = "minimum quantity not met"
REASON_NO_ITEMS = "no applicable items in cart"
REASON_COMBO_INCOMPLETE = "required combo items missing"


# ─────────────── Scope helpers ───────────────

def line_in_scope(rule: DiscountRule, line: CartLine) -> bool:
    if line.product_id in rule.excluded_products:
        return False
    if not rule.has_scope:
        return True
    if line.product_id in rule.applicable_products:
        return True
    return any(category in rule.applicable_categories for category in line.category_ids)


def scoped_line_indexes(rule: DiscountRule, cart: Cart) -> List[int]:
    return [i for i, line in enumerate(cart.lines) if line_in_scope(rule, line)]


def line_matches_item(line: CartLine, item: ComboItem) -> bool:
    if line.product_id != item.product_id:
        return False
    return item.variant_id is None or line.variant_id == item.variant_id


def combo_item_quantity(cart: Cart, item: ComboItem) -> int:
    return sum(line.quantity for line in cart.lines if line_matches_item(line, item))


# ─────────────── Individual checks ───────────────

def _check_window(rule: RuleBase, context: EvaluationContext) -> Optional[str]:
    if rule.status == RuleStatus.EXPIRED:
        return REASON_EXPIRED
    if rule.status != RuleStatus.ACTIVE:
        return REASON_INACTIVE
    if rule.start_date is not None and context.now < rule.start_date:
        return REASON_NOT_STARTED
    if rule.end_date is not None and context.now >= rule.end_date:
        return REASON_EXPIRED
    return None


def _check_audience(rule: DiscountRule, context: EvaluationContext) -> Optional[str]:
    if rule.restricted_to_users and context.customer_id not in rule.restricted_to_users:
        return REASON_RESTRICTED
    if rule.first_order_only and not context.is_first_order:
        return REASON_FIRST_ORDER
    return None


def _check_usage(rule: RuleBase, context: EvaluationContext) -> Optional[str]:
    if rule.usage_limit is not None and rule.usage_count >= rule.usage_limit:
        return REASON_USAGE_LIMIT
    if rule.per_user_limit is not None:
        if context.customer_id is None:
            return REASON_SIGN_IN
        if context.prior_usage.get(rule.id, 0) >= rule.per_user_limit:
            return REASON_PER_USER_LIMIT
    return None


def _check_thresholds(rule: DiscountRule, cart: Cart) -> Optional[str]:
    lines = [cart.lines[i] for i in scoped_line_indexes(rule, cart)]
    if rule.min_order_amount is not None:
        scope_total = sum((line.line_total for line in lines), Decimal("0"))
        if scope_total < rule.min_order_amount:
            return REASON_MIN_ORDER
    if rule.min_quantity is not None:
        if sum(line.quantity for line in lines) < rule.min_quantity:
            return REASON_MIN_QUANTITY
    if not lines:
        return REASON_NO_ITEMS
    return None


def _check_combo_items(rule: Combo, cart: Cart) -> Optional[str]:
    any_present = False
    for item in rule.items:
        quantity = combo_item_quantity(cart, item)
        if item.required and quantity < item.quantity:
            return REASON_COMBO_INCOMPLETE
        any_present = any_present or quantity > 0
    if not any_present:
        return REASON_NO_ITEMS
    return None


# ─────────────── Entry points ───────────────

def rejection_reason(rule: AnyRule, cart: Cart, context: EvaluationContext) -> Optional[str]:
    """
    Returns None when the rule applies to the cart, otherwise why not.

    Raises InvalidRuleError only for rule objects this module cannot
    evaluate; callers turn that into a rejection as well.
    """
    reason = _check_window(rule, context)
    if reason:
        return reason

    if isinstance(rule, (Coupon, Promotion)):
        return (
            _check_audience(rule, context)
            or _check_usage(rule, context)
            or _check_thresholds(rule, cart)
        )
    if isinstance(rule, Combo):
        return _check_usage(rule, context) or _check_combo_items(rule, cart)
    raise InvalidRuleError(f"Unsupported rule kind: {type(rule).__name__}")


def matches(rule: AnyRule, cart: Cart, context: EvaluationContext) -> bool:
    return rejection_reason(rule, cart, context) is None
