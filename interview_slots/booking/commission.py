# Splits a booking's gross amount between the platform and the interviewer.
from decimal import Decimal, ROUND_DOWN
from typing import NamedTuple, Sequence, Tuple

from .error_utils import ValidationError

CENT = Decimal('0.01')


class Split(NamedTuple):
    platform_fee: Decimal
    provider_payout: Decimal


def _check_rate(rate) -> Decimal:
    rate = Decimal(str(rate))
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise ValidationError(f"Commission rate {rate} must be between 0 and 1")
    return rate


class FlatRateCommission:
    """
    Same commission rate for every booking.
    """

    def __init__(self, rate):
        self.rate = _check_rate(rate)

    def rate_for(self, gross_amount: Decimal) -> Decimal:
        return self.rate

    def __repr__(self):
        return f"FlatRateCommission({self.rate})"


class TieredCommission:
    """
    Rate picked by the size of the booking. tiers is a list of (lower_bound, rate) pairs and the rate of the highest
    tier whose bound is at or below the gross amount applies to the whole amount.
    """

    def __init__(self, tiers: Sequence[Tuple[Decimal, Decimal]]):
        if not tiers:
            raise ValidationError("A tiered commission needs at least one tier")
        self.tiers = sorted(((Decimal(str(bound)), _check_rate(rate)) for bound, rate in tiers),
                            key=lambda tier: tier[0])
        if self.tiers[0][0] > 0:
            raise ValidationError("The lowest commission tier must start at 0")

    def rate_for(self, gross_amount: Decimal) -> Decimal:
        rate = self.tiers[0][1]
        for bound, tier_rate in self.tiers:
            if gross_amount >= bound:
                rate = tier_rate
        return rate

    def __repr__(self):
        return f"TieredCommission({self.tiers})"


def split(gross_amount: Decimal, policy) -> Split:
    """
    Input: gross amount in currency units (two decimal places) and a commission policy.

    Returns: Split(platform_fee, provider_payout). The payout is rounded down to the cent and the fee takes the
    remainder, so platform_fee + provider_payout == gross_amount exactly.
    """
    gross_amount = Decimal(gross_amount)
    if gross_amount < 0:
        raise ValidationError("Gross amount cannot be negative")
    rate = policy.rate_for(gross_amount)
    provider_payout = (gross_amount * (1 - rate)).quantize(CENT, rounding=ROUND_DOWN)
    platform_fee = gross_amount - provider_payout
    return Split(platform_fee, provider_payout)
