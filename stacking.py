"""
stacking.py
===========
Stacking Arbiter: which matched rules apply, and in which order.

Policy:
1. Combos go first. They bundle items rather than discount the cart, so
   they never conflict with coupons or promotions. They are taken greedily,
   largest saving first, and each consumes the units it bundles.
2. At most one coupon applies: the one the customer entered.
3. Among promotions only stackable ones combine. The best non-stackable
   promotion (largest discount, then earliest start, then smallest id)
   suppresses every other promotion and competes with the coupon; the
   larger discount of the two wins.
4. Promotions (by priority) and then the coupon are applied one after the
   other, each against what the previous ones left of the cart.
5. The cumulative discount never exceeds the pre-discount cart total.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from effects import ZERO, Adjustment, CartState, compute, quantize_money
from rules import AnyRule, Combo, Coupon, Promotion
from schemas import AppliedRule, Cart, RejectedRule, RuleKind

REASON_NO_DISCOUNT = "no discount for this cart"

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Arbitration:
    applied: Tuple[AppliedRule, ...]
    rejected: Tuple[RejectedRule, ...]
    total_discount: Decimal
    shipping_waived: bool


def rank_key(rule: AnyRule, amount: Decimal):
    """Total order: bigger discount first, then earlier start, then smaller id."""
    return (-amount, rule.start_date or _EARLIEST, rule.id)


def _applied(rule: AnyRule, adjustment: Adjustment) -> AppliedRule:
    return AppliedRule(
        rule_id=rule.id,
        rule_kind=RuleKind(rule.kind),
        adjustment=adjustment.amount,
        shipping_waived=adjustment.shipping_waived,
    )


def _apply_combos(cart: Cart, combos: Sequence[Combo], state: CartState, applied: List, rejected: List) -> None:
    pending = list(combos)
    while pending:
        scored = [(compute(combo, cart, state), combo) for combo in pending]
        viable = []
        for adjustment, combo in scored:
            if adjustment.is_applicable:
                viable.append((adjustment, combo))
            else:
                rejected.append(RejectedRule(rule_id=combo.id, reason=REASON_NO_DISCOUNT))
        if not viable:
            return
        adjustment, best = min(viable, key=lambda pair: rank_key(pair[1], pair[0].amount))
        state.apply(adjustment)
        applied.append(_applied(best, adjustment))
        pending = [combo for _, combo in viable if combo is not best]


def _stacking_order(promotions: Sequence[Promotion]) -> List[Promotion]:
    return sorted(promotions, key=lambda p: (-p.priority, p.start_date or _EARLIEST, p.id))


def _select_discounts(
    cart: Cart,
    promotions: Sequence[Promotion],
    coupon: Optional[Coupon],
    state: CartState,
    rejected: List,
) -> List[AnyRule]:
    stackable = [p for p in promotions if p.stackable]
    exclusive = []
    for promotion in promotions:
        if promotion.stackable:
            continue
        adjustment = compute(promotion, cart, state)
        if adjustment.is_applicable:
            exclusive.append((adjustment.amount, promotion))
        else:
            rejected.append(RejectedRule(rule_id=promotion.id, reason=REASON_NO_DISCOUNT))

    tail = [coupon] if coupon is not None else []
    if not exclusive:
        return _stacking_order(stackable) + tail

    best_amount, best = min(exclusive, key=lambda pair: rank_key(pair[1], pair[0]))
    if coupon is not None and rank_key(coupon, compute(coupon, cart, state).amount) < rank_key(best, best_amount):
        # Coupon beats every non-stackable promotion; stackable ones still join it
        for _, promotion in exclusive:
            rejected.append(RejectedRule(rule_id=promotion.id, reason=f"superseded by coupon {coupon.code}"))
        return _stacking_order(stackable) + tail

    reason = f"superseded by non-stackable promotion {best.id}"
    losers = stackable + [promotion for _, promotion in exclusive if promotion is not best] + tail
    for rule in losers:
        rejected.append(RejectedRule(rule_id=rule.id, reason=reason))
    return [best]


def arbitrate(
    cart: Cart,
    combos: Sequence[Combo] = (),
    promotions: Sequence[Promotion] = (),
    coupon: Optional[Coupon] = None,
) -> Arbitration:
    """
    Pick and price the subset of matched rules that actually applies.

    All rules passed in must already have passed the condition evaluator.
    """
    state = CartState.for_cart(cart)
    pristine_total = state.total
    applied: List[AppliedRule] = []
    rejected: List[RejectedRule] = []

    _apply_combos(cart, combos, state, applied, rejected)

    for rule in _select_discounts(cart, promotions, coupon, state, rejected):
        adjustment = compute(rule, cart, state)
        if not adjustment.is_applicable:
            rejected.append(RejectedRule(rule_id=rule.id, reason=REASON_NO_DISCOUNT))
            continue
        state.apply(adjustment)
        applied.append(_applied(rule, adjustment))

    total_discount = min(sum((a.adjustment for a in applied), ZERO), pristine_total)
    return Arbitration(
        applied=tuple(applied),
        rejected=tuple(rejected),
        total_discount=quantize_money(total_discount),
        shipping_waived=any(a.shipping_waived for a in applied),
    )
