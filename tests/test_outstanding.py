"""
Test suite for outstanding balance calculations

Tests total owed, overpayment absorption and the expected completion date
used for overdue detection.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_engine.currency import Money, Currency
from loan_engine.loans import Loan, LoanTerms, Payment
from loan_engine.outstanding import OutstandingCalculator, add_months
from loan_engine.schedule import PaymentFrequency


NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_loan(principal="5000", rate30="5", start=date(2024, 1, 1),
              frequency=PaymentFrequency.MONTHLY, **kwargs) -> Loan:
    terms = LoanTerms(
        principal=Money(Decimal(principal), Currency.LKR),
        rate30=Decimal(rate30),
        start_date=start,
        frequency=frequency,
        **kwargs
    )
    return Loan(id="loan-1", created_at=NOW, updated_at=NOW, display_id="L0001",
                borrower_id="cust-1", terms=terms)


def make_payment(amount: str, payment_id: str = "pay-1") -> Payment:
    return Payment(id=payment_id, created_at=NOW, updated_at=NOW, loan_id="loan-1",
                   borrower_id="cust-1", amount=Money(Decimal(amount), Currency.LKR),
                   paid_at=NOW)


class TestOutstanding:
    """Test balance computation"""

    def setup_method(self):
        self.calculator = OutstandingCalculator()

    def test_two_month_loan_after_one_payment(self):
        loan = make_loan(duration_months=2)

        balance = self.calculator.outstanding(loan, [make_payment("2000")])

        assert balance.total_owed == Money(Decimal('5500.00'), Currency.LKR)
        assert balance.total_paid == Money(Decimal('2000.00'), Currency.LKR)
        assert balance.outstanding == Money(Decimal('3500.00'), Currency.LKR)

    def test_no_payments(self):
        loan = make_loan(principal="10000", rate30="10", duration_days=30,
                         frequency=PaymentFrequency.DAILY)
        balance = self.calculator.outstanding(loan, [])
        assert balance.outstanding.amount == Decimal('11000.00')
        assert not balance.is_paid_off

    def test_overpayment_is_absorbed(self):
        loan = make_loan(duration_months=2)
        payments = [make_payment("5000", "p1"), make_payment("1000", "p2")]

        balance = self.calculator.outstanding(loan, payments)

        assert balance.outstanding.is_zero()
        assert balance.total_paid.amount == Decimal('6000.00')
        assert balance.is_paid_off

    def test_open_ended_loan_owes_one_period(self):
        loan = make_loan(principal="2000", rate30="10")
        assert self.calculator.total_owed(loan).amount == Decimal('2200.00')

    def test_total_owed_rounded_once(self):
        # 1000 * 1% * (10/30) = 3.333...
        loan = make_loan(principal="1000", rate30="1", duration_days=10,
                         frequency=PaymentFrequency.DAILY)
        assert self.calculator.total_owed(loan).amount == Decimal('1003.33')


class TestExpectedCompletion:
    """Test due dates and overdue detection"""

    def setup_method(self):
        self.calculator = OutstandingCalculator()

    def test_day_based_term(self):
        loan = make_loan(duration_days=30, frequency=PaymentFrequency.DAILY)
        assert self.calculator.expected_completion_date(loan) == date(2024, 1, 31)

    def test_month_based_term_clamps_to_month_end(self):
        loan = make_loan(start=date(2024, 1, 31), duration_months=1)
        assert self.calculator.expected_completion_date(loan) == date(2024, 2, 29)

    def test_open_ended_is_one_month(self):
        loan = make_loan(start=date(2024, 1, 15))
        assert self.calculator.expected_completion_date(loan) == date(2024, 2, 15)

    def test_overdue_only_after_expected_date(self):
        loan = make_loan(duration_days=30, frequency=PaymentFrequency.DAILY)

        assert not self.calculator.is_overdue(loan, date(2024, 1, 31))
        assert self.calculator.is_overdue(loan, date(2024, 2, 1))
        assert self.calculator.overdue_days(loan, date(2024, 1, 20)) == 0
        assert self.calculator.overdue_days(loan, date(2024, 2, 11)) == 11


class TestAddMonths:

    @pytest.mark.parametrize("start,months,expected", [
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2023, 1, 31), 1, date(2023, 2, 28)),
        (date(2024, 11, 15), 3, date(2025, 2, 15)),
        (date(2024, 3, 31), 12, date(2025, 3, 31)),
    ])
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected
