"""
effects.py
==========
Effect Calculator: the monetary adjustment a matched rule produces.

Implemented Cases:
------------------
1. PERCENTAGE:
   - scope total * value / 100, capped at max_discount.

2. FIXED:
   - the fixed value, never more than the scope total.

3. FREE_SHIPPING:
   - no cart amount at all; raises the shipping_waived flag instead, since
     shipping is priced elsewhere.

4. Combo BUNDLE:
   - (original_price - combo_price) per complete bundle the cart can form.

5. Combo BOGO / MULTI_BUY:
   - for every buy+get matching units, get units at get_discount% off.
   - a trailing group below buy_quantity earns nothing.
   - the cheapest matching units are the ones discounted.

Amounts are rounded half-up to the currency minor unit. Every discount is
spread over the lines it touches, so rules stacked afterwards measure
their scope against the already reduced line totals.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from conditions import line_matches_item, scoped_line_indexes
from config import settings
from errors import InvalidRuleError
from rules import AnyRule, Combo, ComboItem, ComboType, Coupon, DiscountRule, DiscountType, Promotion
from schemas import Cart

MINOR_UNIT = Decimal(1).scaleb(-settings.CURRENCY_DECIMALS)
ZERO = Decimal("0")


def quantize_money(value) -> Decimal:
    return Decimal(value).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Adjustment:
    amount: Decimal = ZERO
    allocations: Tuple[Tuple[int, Decimal], ...] = ()  # (line index, share of amount)
    consumed: Tuple[Tuple[int, int], ...] = ()  # (line index, units bundled by a combo)
    shipping_waived: bool = False

    @property
    def scope(self) -> Tuple[int, ...]:
        return tuple(index for index, _ in self.allocations)

    @property
    def is_applicable(self) -> bool:
        return self.amount > 0 or self.shipping_waived


@dataclass
class CartState:
    """Per-line running totals and units not yet bundled, while rules stack up."""

    totals: List[Decimal]
    available: List[int]

    @classmethod
    def for_cart(cls, cart: Cart) -> "CartState":
        return cls(
            totals=[quantize_money(line.line_total) for line in cart.lines],
            available=[line.quantity for line in cart.lines],
        )

    def apply(self, adjustment: Adjustment) -> None:
        for index, amount in adjustment.allocations:
            self.totals[index] -= amount
        for index, units in adjustment.consumed:
            self.available[index] -= units

    @property
    def total(self) -> Decimal:
        return sum(self.totals, ZERO)


def spread(amount: Decimal, weights: Sequence[Tuple[int, Decimal]]) -> Tuple[Tuple[int, Decimal], ...]:
    """
    Split amount across lines proportionally to their weights.
    Rounding drift lands on the heaviest line.
    """
    base = sum((weight for _, weight in weights), ZERO)
    if base <= 0:
        return tuple((index, ZERO) for index, _ in weights)

    shares = [quantize_money(weight / base * amount) for _, weight in weights]
    heaviest = max(range(len(weights)), key=lambda k: weights[k][1])
    shares[heaviest] += amount - sum(shares, ZERO)
    return tuple((index, share) for (index, _), share in zip(weights, shares))


# ─────────────────────────── Coupons / Promotions ───────────────────────────

def _discount_adjustment(rule: DiscountRule, cart: Cart, state: CartState) -> Adjustment:
    scope = scoped_line_indexes(rule, cart)
    weights = [(index, state.totals[index]) for index in scope]
    scope_total = sum((weight for _, weight in weights), ZERO)
    untouched = tuple((index, ZERO) for index in scope)

    if rule.discount_type == DiscountType.FREE_SHIPPING:
        return Adjustment(allocations=untouched, shipping_waived=True)

    if rule.discount_type == DiscountType.PERCENTAGE:
        amount = scope_total * rule.discount_value / 100
        if rule.max_discount is not None:
            amount = min(amount, rule.max_discount)
    elif rule.discount_type == DiscountType.FIXED:
        amount = min(rule.discount_value, scope_total)
    else:
        raise InvalidRuleError(f"Rule {rule.id}: unsupported discount type {rule.discount_type}")

    amount = min(quantize_money(amount), scope_total)
    if amount <= 0:
        return Adjustment(allocations=untouched)
    return Adjustment(amount=amount, allocations=spread(amount, weights))


# ─────────────────────────── Combos ───────────────────────────

def _available_units(cart: Cart, state: CartState, item: ComboItem) -> int:
    return sum(
        state.available[index]
        for index, line in enumerate(cart.lines)
        if line_matches_item(line, item)
    )


def _bundle_adjustment(rule: Combo, cart: Cart, state: CartState) -> Adjustment:
    # Only required items limit how many bundles fit; optional ones ride along
    gating = [item for item in rule.items if item.required] or list(rule.items)
    bundles = min(_available_units(cart, state, item) // item.quantity for item in gating)
    if bundles <= 0 or rule.savings <= 0:
        return Adjustment()

    consumed: Dict[int, int] = {}
    for item in rule.items:
        needed = item.quantity * bundles
        for index, line in enumerate(cart.lines):
            if needed == 0:
                break
            if not line_matches_item(line, item):
                continue
            take = min(state.available[index] - consumed.get(index, 0), needed)
            if take > 0:
                consumed[index] = consumed.get(index, 0) + take
                needed -= take

    weights = [
        (index, min(cart.lines[index].unit_price * units, state.totals[index]))
        for index, units in sorted(consumed.items())
    ]
    bundled_value = quantize_money(sum((weight for _, weight in weights), ZERO))
    amount = min(quantize_money(rule.savings * bundles), bundled_value)
    if amount <= 0:
        return Adjustment()
    return Adjustment(
        amount=amount,
        allocations=spread(amount, weights),
        consumed=tuple(sorted(consumed.items())),
    )


def _multi_buy_adjustment(rule: Combo, cart: Cart, state: CartState) -> Adjustment:
    units: List[Tuple[Decimal, int]] = []  # (unit price, line index), one entry per unit
    for index, line in enumerate(cart.lines):
        if any(line_matches_item(line, item) for item in rule.items):
            units.extend([(line.unit_price, index)] * state.available[index])

    group_size = rule.buy_quantity + rule.get_quantity
    full_groups, remainder = divmod(len(units), group_size)
    rewarded = full_groups * rule.get_quantity
    grouped = full_groups * group_size
    if remainder >= rule.buy_quantity:
        # Trailing group reached buy_quantity: reward from the buy_quantity-th unit on
        rewarded += min(rule.get_quantity, remainder - rule.buy_quantity + 1)
        grouped += remainder
    if rewarded == 0:
        return Adjustment()

    units.sort()
    reward_units = units[:rewarded]
    paying_units = units[len(units) - (grouped - rewarded):] if grouped > rewarded else []

    rate = rule.get_discount / 100
    per_line: Dict[int, Decimal] = {}
    for price, index in reward_units:
        per_line[index] = per_line.get(index, ZERO) + price * rate

    consumed: Dict[int, int] = {}
    for _, index in reward_units + paying_units:
        consumed[index] = consumed.get(index, 0) + 1

    allocations = tuple(
        (index, min(quantize_money(value), state.totals[index]))
        for index, value in sorted(per_line.items())
    )
    amount = sum((share for _, share in allocations), ZERO)
    if amount <= 0:
        return Adjustment()
    return Adjustment(amount=amount, allocations=allocations, consumed=tuple(sorted(consumed.items())))


# ─────────────────────────── Entry point ───────────────────────────

def compute(rule: AnyRule, cart: Cart, state: Optional[CartState] = None) -> Adjustment:
    """
    Adjustment for a rule whose conditions already hold.

    ``state`` carries what earlier rules left of each line; by default the
    pristine cart is used.
    """
    if state is None:
        state = CartState.for_cart(cart)

    if isinstance(rule, (Coupon, Promotion)):
        return _discount_adjustment(rule, cart, state)
    if isinstance(rule, Combo):
        if rule.combo_type == ComboType.BUNDLE:
            return _bundle_adjustment(rule, cart, state)
        if rule.combo_type in (ComboType.BOGO, ComboType.MULTI_BUY):
            return _multi_buy_adjustment(rule, cart, state)
        raise InvalidRuleError(f"Combo {rule.id}: unsupported combo type {rule.combo_type}")
    raise InvalidRuleError(f"Unsupported rule kind: {type(rule).__name__}")
