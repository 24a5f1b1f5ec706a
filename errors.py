"""
errors.py
=========
Error kinds raised by the pricing engine.

Evaluation problems are recovered locally by excluding the rule; only
storage failures during reserve/confirm reach the caller.
"""


class PricingError(Exception):
    """Base class for all pricing engine errors."""


class InvalidRuleError(PricingError):
    """
    Rule data is malformed.

    Not a ValueError: pydantic lets it escape validation unchanged, so the
    admin layer sees this type instead of a generic ValidationError.
    """


class RuleNotFoundError(PricingError):
    """The customer supplied a coupon code that does not exist."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid coupon code: {code}")


class UsageLimitExceeded(PricingError):
    """A reservation lost the race for the last usage slot."""

    def __init__(self, rule_id: str, reason: str = "usage limit reached"):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Rule {rule_id}: {reason}")


class StaleReadError(PricingError):
    """Usage counters changed underneath a write; re-read and try again."""


class StorageError(PricingError):
    """The storage collaborator failed while reserving or confirming usage."""


class CheckoutConflictError(StorageError):
    """Finalize kept hitting write conflicts; the customer should retry checkout."""
