"""
Interest and Penalty Module

Flat-rate interest (quoted as a percentage per 30 days) and the overdue
penalty policy. Both calculators are pure: no I/O, no shared mutable state,
safe to call from any thread.
"""

from decimal import Decimal
from typing import Optional

from .currency import Numeric, to_decimal, round_money


DAYS_PER_PERIOD = Decimal('30')
DAYS_PER_YEAR = Decimal('365')
DEFAULT_GRACE_PERIOD_DAYS = 10
DEFAULT_PENALTY_RATE = Decimal('0.12')


class InterestCalculator:
    """
    Flat-rate interest: computed once on the original principal for the full
    term, never on a declining balance and never compounded.
    """

    @staticmethod
    def total_interest(principal: Optional[Numeric], rate30: Numeric, duration_days: Numeric) -> Decimal:
        """
        Total interest owed over the loan term.

        Args:
            principal: Amount lent
            rate30: Interest percentage charged per 30 days (2 means 2%)
            duration_days: Term length in days, fractional periods allowed

        Returns:
            Unrounded interest. A missing or non-positive principal accrues
            no interest and returns 0 rather than raising.
        """
        if principal is None:
            return Decimal('0')
        principal = to_decimal(principal)
        if principal <= 0:
            return Decimal('0')

        periods = to_decimal(duration_days) / DAYS_PER_PERIOD
        return (to_decimal(rate30) / Decimal('100')) * principal * periods

    @staticmethod
    def interest_for_periods(principal: Numeric, rate30: Numeric, periods: Numeric) -> Decimal:
        """Interest for a whole number of 30-day periods"""
        return InterestCalculator.total_interest(principal, rate30, to_decimal(periods) * DAYS_PER_PERIOD)


class PenaltyCalculator:
    """
    Overdue penalty: simple interest at an annual rate, pro-rated daily, on the
    overdue amount for each day beyond the grace period.

    Penalties are advisory figures. They are never added to a loan's
    outstanding balance.
    """

    def __init__(self, annual_rate: Numeric = DEFAULT_PENALTY_RATE,
                 grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS):
        self.annual_rate = to_decimal(annual_rate)
        self.grace_period_days = grace_period_days

    @classmethod
    def from_config(cls, config) -> 'PenaltyCalculator':
        return cls(config.penalty_rate, config.penalty_grace_period_days)

    def overdue_penalty(self, overdue_amount: Numeric, overdue_days: int,
                        grace_period_days: Optional[int] = None) -> Decimal:
        """
        Penalty for a balance that is ``overdue_days`` past due.

        Returns:
            0 while within the grace period, otherwise
            ``amount * annual_rate * (charged_days / 365)`` rounded to cents
        """
        grace = self.grace_period_days if grace_period_days is None else grace_period_days
        if overdue_days <= grace:
            return Decimal('0.00')

        amount = to_decimal(overdue_amount)
        if amount <= 0:
            return Decimal('0.00')

        charged_days = Decimal(overdue_days - grace)
        penalty = amount * self.annual_rate * (charged_days / DAYS_PER_YEAR)
        return round_money(penalty)


def overdue_penalty(overdue_amount: Numeric, overdue_days: int,
                    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS) -> Decimal:
    """Penalty with the default 12% per annum policy"""
    return PenaltyCalculator().overdue_penalty(overdue_amount, overdue_days, grace_period_days)
