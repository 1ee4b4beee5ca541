"""
Outstanding Balance Module

The single place a loan's balance is computed. Payment receipts, notification
text, the dashboard and the payment forecast all read balances from here.
"""

import calendar
from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Iterable

from .currency import Money
from .interest import InterestCalculator


@dataclass(frozen=True)
class LoanBalance:
    """Point-in-time balance of one loan"""
    total_owed: Money
    total_paid: Money
    outstanding: Money

    @property
    def is_paid_off(self) -> bool:
        return self.outstanding.is_zero()


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class OutstandingCalculator:
    """Balance and due-date arithmetic over a loan and its payments"""

    def total_owed(self, loan) -> Money:
        """Principal plus flat interest for the full term, rounded once"""
        principal = loan.terms.principal
        interest = InterestCalculator.total_interest(
            principal.amount, loan.terms.rate30, loan.terms.interest_days
        )
        return Money(principal.amount + interest, principal.currency)

    def outstanding(self, loan, payments: Iterable) -> LoanBalance:
        """
        Compute what the borrower still owes.

        Args:
            loan: Loan whose terms give the total owed
            payments: Every payment recorded against the loan, banked or not

        Returns:
            LoanBalance; overpayment is absorbed, outstanding never goes below 0
        """
        currency = loan.terms.principal.currency
        total_owed = self.total_owed(loan)

        paid = sum((payment.amount.amount for payment in payments), Decimal('0'))
        total_paid = Money(paid, currency)

        remaining = total_owed.amount - total_paid.amount
        outstanding = Money(max(Decimal('0'), remaining), currency)

        return LoanBalance(total_owed=total_owed, total_paid=total_paid, outstanding=outstanding)

    def expected_completion_date(self, loan) -> date:
        """
        Date the loan should be repaid by: start plus the day count, plus
        calendar months for a fixed monthly term, or one month when open-ended.
        """
        terms = loan.terms
        if terms.duration_days is not None:
            return terms.start_date + timedelta(days=terms.duration_days)
        if terms.duration_months is not None:
            return add_months(terms.start_date, terms.duration_months)
        return add_months(terms.start_date, 1)

    def is_overdue(self, loan, as_of: date) -> bool:
        return as_of > self.expected_completion_date(loan)

    def overdue_days(self, loan, as_of: date) -> int:
        return max(0, (as_of - self.expected_completion_date(loan)).days)
