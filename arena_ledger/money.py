"""
Fixed-point money helpers.

Every balance is held as an integer number of cents. Conversion from caller
input happens once, at the ledger boundary, and tier splits are computed on
cents with floor division so no binary float ever touches a stored value.
"""

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum

from .errors import ValidationError


def to_cents(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if isinstance(amount, float) and not math.isfinite(amount):
        raise ValidationError(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
        if not value.is_finite():
            raise ValidationError(f"Invalid amount: {amount!r}")
        return int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount!r}") from e


def from_cents(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2)


class WithdrawalTier(str, Enum):
    PERFECT = "PERFECT"
    PARTIAL = "PARTIAL"
    POOR = "POOR"

    @classmethod
    def for_ratio(cls, success_ratio) -> "WithdrawalTier":
        ratio = validate_ratio(success_ratio)
        if ratio == 1.0:
            return cls.PERFECT
        if ratio >= 0.5:
            return cls.PARTIAL
        return cls.POOR

    @property
    def payout_fraction(self) -> Decimal:
        return _FRACTIONS[self][0]

    @property
    def retained_fraction(self) -> Decimal:
        return _FRACTIONS[self][1]


_FRACTIONS = {
    WithdrawalTier.PERFECT: (Decimal("1.10"), Decimal("0")),
    WithdrawalTier.PARTIAL: (Decimal("0.50"), Decimal("0.50")),
    WithdrawalTier.POOR: (Decimal("0.75"), Decimal("0.25")),
}


def validate_ratio(success_ratio) -> float:
    if isinstance(success_ratio, bool) or not isinstance(success_ratio, (int, float, Decimal)):
        raise ValidationError(f"Invalid success ratio: {success_ratio!r}")
    ratio = float(success_ratio)
    if not math.isfinite(ratio) or ratio < 0.0 or ratio > 1.0:
        raise ValidationError(f"Success ratio must be within [0, 1], got {success_ratio!r}")
    return ratio


def split_cents(balance_cents: int, tier: WithdrawalTier) -> tuple[int, int]:
    """Return ``(paid_out, retained)`` in cents for a tier.

    The perfect tier floors the bonus-inclusive total; the other two floor the
    payout and leave the remainder as retained. The perfect tier therefore
    differs from ``balance * 1.1`` by up to one cent, which callers log but
    do not correct.
    """
    if balance_cents < 0:
        raise ValidationError(f"Cannot split a negative balance: {balance_cents}")
    if tier is WithdrawalTier.PERFECT:
        return balance_cents * 11 // 10, 0
    if tier is WithdrawalTier.PARTIAL:
        paid = balance_cents // 2
        return paid, balance_cents - paid
    paid = balance_cents * 3 // 4
    return paid, balance_cents - paid


def expected_total_cents(balance_cents: int, tier: WithdrawalTier) -> Decimal:
    if tier is WithdrawalTier.PERFECT:
        return Decimal(balance_cents) * tier.payout_fraction
    return Decimal(balance_cents)
