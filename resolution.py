"""
resolution.py
=============
Resolution Engine: cart + rule snapshot in, PricingResult out.

- resolve()                  pure preview over a snapshot; touches nothing.
- ResolutionEngine.preview   resolve() against counters read from the ledger.
- ResolutionEngine.finalize  preview on fresh counters, reserve every
                             selected rule in stacking order, re-arbitrate
                             when a reservation is lost, confirm the rest.

Rules that fail evaluation, that turn out malformed, or that would give no
discount are excluded with a reason; they never abort the resolution.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from conditions import rejection_reason
from config import settings
from effects import compute, quantize_money
from errors import CheckoutConflictError, InvalidRuleError, StaleReadError, UsageLimitExceeded
from ledger import ReservationToken, UsageLedger
from rules import AnyRule, Combo, Coupon, Promotion, RuleSet, normalize_code
from schemas import Cart, EvaluationContext, PricingResult, RejectedRule, UsageRecord
from stacking import REASON_NO_DISCOUNT, arbitrate

logger = logging.getLogger(__name__)


def _candidates(rules: RuleSet, coupon: Optional[Coupon]) -> List[AnyRule]:
    return list(rules.combos) + list(rules.promotions) + ([coupon] if coupon is not None else [])


def _evaluate(
    candidates: Sequence[AnyRule],
    cart: Cart,
    context: EvaluationContext,
    dropped: Dict[str, str],
) -> Tuple[List[AnyRule], List[RejectedRule]]:
    matched: List[AnyRule] = []
    rejected: List[RejectedRule] = []
    for rule in candidates:
        reason = dropped.get(rule.id)
        if reason is None:
            try:
                reason = rejection_reason(rule, cart, context)
                if reason is None and not compute(rule, cart).is_applicable:
                    reason = REASON_NO_DISCOUNT
            except InvalidRuleError as exc:
                logger.warning("Excluding malformed rule %s: %s", rule.id, exc)
                reason = f"invalid rule: {exc}"
        if reason is None:
            matched.append(rule)
        else:
            rejected.append(RejectedRule(rule_id=rule.id, reason=reason))
    return matched, rejected


def _price(
    cart: Cart,
    rules: RuleSet,
    coupon: Optional[Coupon],
    context: EvaluationContext,
    dropped: Optional[Dict[str, str]] = None,
) -> PricingResult:
    matched, rejected = _evaluate(_candidates(rules, coupon), cart, context, dropped or {})
    arbitration = arbitrate(
        cart,
        combos=[rule for rule in matched if isinstance(rule, Combo)],
        promotions=[rule for rule in matched if isinstance(rule, Promotion)],
        coupon=next((rule for rule in matched if isinstance(rule, Coupon)), None),
    )
    cart_total = quantize_money(cart.cart_total)
    return PricingResult(
        applied_rules=arbitration.applied,
        total_discount=arbitration.total_discount,
        final_total=cart_total - arbitration.total_discount,
        rejected_rules=tuple(rejected) + arbitration.rejected,
        shipping_waived=arbitration.shipping_waived,
    )


def _lookup_coupon(rules: RuleSet, coupon_code: Optional[str]) -> Optional[Coupon]:
    if not normalize_code(coupon_code):
        return None
    return rules.find_coupon(coupon_code)


def resolve(
    cart: Cart,
    rules: RuleSet,
    coupon_code: Optional[str] = None,
    context: Optional[EvaluationContext] = None,
) -> PricingResult:
    """
    Price a cart against a rule snapshot without side effects.

    Raises RuleNotFoundError when coupon_code matches no coupon.
    """
    context = context or EvaluationContext.for_cart(cart)
    return _price(cart, rules, _lookup_coupon(rules, coupon_code), context)


class ResolutionEngine:
    def __init__(
        self,
        ledger: UsageLedger,
        max_attempts: Optional[int] = None,
        max_rearbitration_passes: Optional[int] = None,
    ):
        self.ledger = ledger
        self.max_attempts = max_attempts or settings.FINALIZE_MAX_ATTEMPTS
        if max_rearbitration_passes is None:
            max_rearbitration_passes = settings.MAX_REARBITRATION_PASSES
        self.max_rearbitration_passes = max_rearbitration_passes

    def _refresh(
        self,
        rules: RuleSet,
        coupon_code: Optional[str],
        context: EvaluationContext,
    ) -> Tuple[RuleSet, Optional[Coupon], EvaluationContext]:
        """Candidate rules with their counters re-read from the ledger."""
        coupon = _lookup_coupon(rules, coupon_code)
        prior_usage = dict(context.prior_usage)
        fresh = []
        for rule in _candidates(rules, coupon):
            usage = self.ledger.load_usage(rule.id, context.customer_id)
            if usage.usage_count != rule.usage_count:
                logger.debug(
                    "Rule %s usage moved from %d to %d since the snapshot",
                    rule.id, rule.usage_count, usage.usage_count,
                )
                rule = rule.model_copy(update={"usage_count": usage.usage_count})
            if context.customer_id is not None:
                prior_usage[rule.id] = usage.per_user_count
            fresh.append(rule)

        fresh_rules = RuleSet.from_rules(fresh)
        fresh_coupon = fresh_rules.coupons[0] if coupon is not None else None
        return fresh_rules, fresh_coupon, context.model_copy(update={"prior_usage": prior_usage})

    def preview(
        self,
        cart: Cart,
        rules: RuleSet,
        coupon_code: Optional[str] = None,
        context: Optional[EvaluationContext] = None,
    ) -> PricingResult:
        """Advisory pricing for cart display. Reads counters, reserves nothing."""
        context = context or EvaluationContext.for_cart(cart)
        fresh_rules, coupon, context = self._refresh(rules, coupon_code, context)
        return _price(cart, fresh_rules, coupon, context)

    def finalize(
        self,
        cart: Cart,
        rules: RuleSet,
        order_id: str,
        coupon_code: Optional[str] = None,
        context: Optional[EvaluationContext] = None,
    ) -> PricingResult:
        """
        Price the cart and redeem every applied rule for ``order_id``.

        Write conflicts on the counters are retried a bounded number of times;
        after that CheckoutConflictError asks the customer to retry checkout.
        Other storage failures propagate once the outstanding reservations are
        released. Confirms are not transactional across rules: redemptions
        confirmed before a failing confirm stay committed and are logged.
        """
        context = context or EvaluationContext.for_cart(cart)
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._finalize_once(cart, rules, order_id, coupon_code, context)
            except StaleReadError as exc:
                logger.warning(
                    "Counter conflict finalizing order %s (attempt %d of %d): %s",
                    order_id, attempt, self.max_attempts, exc,
                )
        raise CheckoutConflictError(f"Could not finalize order {order_id}, please retry checkout")

    def _reserve_in_order(
        self,
        result: PricingResult,
        by_id: Dict[str, AnyRule],
        user_id: Optional[str],
        held: Dict[str, ReservationToken],
    ) -> Optional[Tuple[str, str]]:
        """
        Reserve applied rules in stacking order. On the first refusal, release
        every claim on rules after it and return (rule id, reason).
        """
        applied = result.applied_rules
        for position, applied_rule in enumerate(applied):
            if applied_rule.rule_id in held:
                continue
            try:
                held[applied_rule.rule_id] = self.ledger.reserve(by_id[applied_rule.rule_id], user_id)
            except UsageLimitExceeded as exc:
                # Later rules were priced on top of this one
                for later in applied[position + 1:]:
                    token = held.pop(later.rule_id, None)
                    if token is not None:
                        self.ledger.release(token)
                return applied_rule.rule_id, exc.reason
        return None

    def _finalize_once(
        self,
        cart: Cart,
        rules: RuleSet,
        order_id: str,
        coupon_code: Optional[str],
        context: EvaluationContext,
    ) -> PricingResult:
        fresh_rules, coupon, context = self._refresh(rules, coupon_code, context)
        by_id = {rule.id: rule for rule in fresh_rules.all_rules()}
        held: Dict[str, ReservationToken] = {}
        dropped: Dict[str, str] = {}
        records: List[UsageRecord] = []

        try:
            result = _price(cart, fresh_rules, coupon, context)
            passes = 0
            while True:
                lost = self._reserve_in_order(result, by_id, context.customer_id, held)
                if lost is None:
                    break
                rule_id, reason = lost
                dropped[rule_id] = reason
                if passes >= self.max_rearbitration_passes:
                    result = self._price_held(cart, fresh_rules, coupon, context, held, dropped, result)
                    break
                passes += 1
                logger.info("Re-arbitrating order %s without rule %s (%s)", order_id, rule_id, reason)
                result = _price(cart, fresh_rules, coupon, context, dropped)

            for rule_id in list(held):
                if rule_id not in result.applied_ids:
                    self.ledger.release(held.pop(rule_id))

            for applied in result.applied_rules:
                records.append(self.ledger.confirm(held[applied.rule_id], order_id, applied.adjustment))
                del held[applied.rule_id]
        except Exception:
            if records:
                # Confirmed redemptions are committed and stay counted
                logger.error(
                    "Order %s failed after redeeming %s",
                    order_id, ", ".join(f"{r.rule_id} ({r.discount_applied})" for r in records),
                )
            for token in held.values():
                self.ledger.release(token)
            raise

        return result.model_copy(update={"usage_records": tuple(records)})

    @staticmethod
    def _price_held(
        cart: Cart,
        rules: RuleSet,
        coupon: Optional[Coupon],
        context: EvaluationContext,
        held: Dict[str, ReservationToken],
        dropped: Dict[str, str],
        previous: PricingResult,
    ) -> PricingResult:
        """Last resort: price only the rules whose slots are already reserved."""
        held_coupon = coupon if coupon is not None and coupon.id in held else None
        result = _price(cart, rules.only(held), held_coupon, context)

        known = set(result.applied_ids) | {r.rule_id for r in result.rejected_rules}
        carried = [r for r in previous.rejected_rules if r.rule_id not in known]
        known |= {r.rule_id for r in carried}
        carried += [RejectedRule(rule_id=rule_id, reason=reason) for rule_id, reason in dropped.items() if rule_id not in known]
        return result.model_copy(update={"rejected_rules": result.rejected_rules + tuple(carried)})
