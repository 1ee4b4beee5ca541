"""
Installment Schedule Module

Builds the advisory repayment plan shown to borrowers when a loan is created
or renewed. Schedules are derived data: they are never persisted and never
feed back into balance arithmetic.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum

from .currency import Numeric, to_decimal, round_money
from .exceptions import UnsupportedFrequency
from .interest import InterestCalculator, DAYS_PER_PERIOD


OPEN_ENDED_NOTE = (
    "Interest-only monthly payment. Principal remains outstanding until "
    "settlement or fixed schedule created."
)


class PaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    @classmethod
    def parse(cls, value) -> 'PaymentFrequency':
        """Accept an enum member or its (case-insensitive) name"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise UnsupportedFrequency(value)


@dataclass(frozen=True)
class Installment:
    """Single entry in a repayment schedule"""
    number: int
    due_date: date
    principal_portion: Decimal
    interest_portion: Decimal
    total_due: Decimal
    note: Optional[str] = None
    authoritative: bool = True     # False for the open-ended interest-only plan


class ScheduleGenerator:
    """
    Splits principal and flat interest evenly across installments.

    Each portion is rounded on its own and ``total_due`` is the rounded
    unrounded sum, so the installments may drift from the total owed by a few
    cents. The drift is left as is; the balance is always computed from
    payments, never from the schedule.
    """

    def generate(self, principal: Numeric, rate30: Numeric, start_date: date,
                 duration_days: Optional[Numeric], frequency,
                 duration_months: Optional[int] = None) -> List[Installment]:
        """
        Generate the installment plan for a set of loan terms.

        Args:
            principal: Amount lent
            rate30: Interest percentage per 30 days
            start_date: First due date
            duration_days: Term in days (DAILY and WEEKLY)
            frequency: DAILY, WEEKLY or MONTHLY
            duration_months: Fixed term in months (MONTHLY)

        Returns:
            Installments in due-date order

        Raises:
            UnsupportedFrequency: For any other frequency
        """
        frequency = PaymentFrequency.parse(frequency)
        principal = to_decimal(principal)
        days = to_decimal(duration_days or 0)

        if frequency == PaymentFrequency.DAILY:
            count = max(1, int(days.quantize(Decimal('1'), rounding=ROUND_HALF_UP)))
            interest = InterestCalculator.total_interest(principal, rate30, days)
            return self._even_split(principal, interest, start_date, count, step_days=1)

        if frequency == PaymentFrequency.WEEKLY:
            count = max(1, math.ceil(days / 7))
            interest = InterestCalculator.total_interest(principal, rate30, days)
            return self._even_split(principal, interest, start_date, count, step_days=7)

        if duration_months and duration_months > 0:
            # Each month counts as one 30-day interest period
            interest = InterestCalculator.interest_for_periods(principal, rate30, duration_months)
            return self._even_split(principal, interest, start_date, int(duration_months),
                                    step_days=int(DAYS_PER_PERIOD))

        monthly_interest = round_money(
            InterestCalculator.interest_for_periods(principal, rate30, 1)
        )
        return [Installment(
            number=1,
            due_date=start_date,
            principal_portion=Decimal('0.00'),
            interest_portion=monthly_interest,
            total_due=monthly_interest,
            note=OPEN_ENDED_NOTE,
            authoritative=False
        )]

    def generate_for_loan(self, loan) -> List[Installment]:
        """Generate the plan for a stored loan's terms"""
        terms = loan.terms
        if terms.duration_days is not None:
            days = terms.duration_days
        elif terms.duration_months is not None:
            days = terms.duration_months * int(DAYS_PER_PERIOD)
        elif terms.frequency == PaymentFrequency.MONTHLY:
            days = int(DAYS_PER_PERIOD)
        else:
            days = 0

        return self.generate(
            principal=terms.principal.amount,
            rate30=terms.rate30,
            start_date=terms.start_date,
            duration_days=days,
            frequency=terms.frequency,
            duration_months=terms.duration_months
        )

    @staticmethod
    def _even_split(principal: Decimal, interest: Decimal, start_date: date,
                    count: int, step_days: int) -> List[Installment]:
        per_principal = principal / count
        per_interest = interest / count
        principal_portion = round_money(per_principal)
        interest_portion = round_money(per_interest)
        total_due = round_money(per_principal + per_interest)

        return [
            Installment(
                number=i + 1,
                due_date=start_date + timedelta(days=i * step_days),
                principal_portion=principal_portion,
                interest_portion=interest_portion,
                total_due=total_due
            )
            for i in range(count)
        ]
