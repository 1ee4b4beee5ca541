"""
Test suite for schedule module

Tests installment counts, due dates and the even split of principal and
interest for every repayment frequency.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from loan_engine.currency import Money, Currency
from loan_engine.exceptions import UnsupportedFrequency
from loan_engine.loans import Loan, LoanTerms
from loan_engine.schedule import ScheduleGenerator, PaymentFrequency, Installment


START = date(2024, 1, 1)


class TestScheduleGenerator:
    """Test schedule generation"""

    def setup_method(self):
        self.generator = ScheduleGenerator()

    def test_daily_thirty_days(self):
        schedule = self.generator.generate(Decimal('10000'), Decimal('10'), START, 30, "DAILY")

        assert len(schedule) == 30
        assert all(i.principal_portion == Decimal('333.33') for i in schedule)
        assert all(i.interest_portion == Decimal('33.33') for i in schedule)
        # Rounded from the unrounded per-installment sum, 366.666...
        assert all(abs(i.total_due - Decimal('366.66')) <= Decimal('0.01') for i in schedule)
        assert schedule[0].due_date == START
        assert schedule[-1].due_date == START + timedelta(days=29)
        assert [i.number for i in schedule] == list(range(1, 31))

    def test_daily_drift_is_within_a_cent_per_installment(self):
        schedule = self.generator.generate(Decimal('10000'), Decimal('10'), START, 30, PaymentFrequency.DAILY)
        total = sum(i.total_due for i in schedule)
        assert abs(total - Decimal('11000')) <= Decimal('0.01') * len(schedule)

    def test_daily_rounds_fractional_days_half_up(self):
        schedule = self.generator.generate(Decimal('1000'), Decimal('3'), START, Decimal('10.5'), "DAILY")
        assert len(schedule) == 11

    def test_daily_zero_days_still_has_one_installment(self):
        schedule = self.generator.generate(Decimal('1000'), Decimal('3'), START, 0, "DAILY")
        assert len(schedule) == 1
        assert schedule[0].principal_portion == Decimal('1000.00')
        assert schedule[0].interest_portion == Decimal('0.00')

    def test_weekly(self):
        schedule = self.generator.generate(Decimal('10000'), Decimal('10'), START, 30, "WEEKLY")

        assert len(schedule) == 5
        assert schedule[0].principal_portion == Decimal('2000.00')
        assert schedule[0].interest_portion == Decimal('200.00')
        assert schedule[0].total_due == Decimal('2200.00')
        assert [i.due_date for i in schedule] == [START + timedelta(days=7 * n) for n in range(5)]

    def test_monthly_fixed_term(self):
        schedule = self.generator.generate(
            Decimal('5000'), Decimal('5'), START, 60, "MONTHLY", duration_months=2
        )

        assert len(schedule) == 2
        assert schedule[0].principal_portion == Decimal('2500.00')
        assert schedule[0].interest_portion == Decimal('250.00')
        assert schedule[0].total_due == Decimal('2750.00')
        assert schedule[1].due_date == START + timedelta(days=30)
        assert all(i.authoritative for i in schedule)

    def test_monthly_open_ended_is_advisory_interest_only(self):
        schedule = self.generator.generate(Decimal('5000'), Decimal('5'), START, 30, "MONTHLY")

        assert len(schedule) == 1
        installment = schedule[0]
        assert installment.principal_portion == Decimal('0.00')
        assert installment.interest_portion == Decimal('250.00')
        assert installment.total_due == Decimal('250.00')
        assert installment.due_date == START
        assert not installment.authoritative
        assert "Interest-only" in installment.note

    def test_unsupported_frequency(self):
        with pytest.raises(UnsupportedFrequency):
            self.generator.generate(Decimal('1000'), Decimal('5'), START, 30, "YEARLY")

    def test_frequency_parse_is_case_insensitive(self):
        assert PaymentFrequency.parse("weekly") == PaymentFrequency.WEEKLY


class TestScheduleForLoan:
    """Test deriving the schedule from stored loan terms"""

    def _loan(self, **term_kwargs) -> Loan:
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        terms = LoanTerms(
            principal=Money(Decimal('5000'), Currency.LKR),
            rate30=Decimal('5'),
            start_date=START,
            **term_kwargs
        )
        return Loan(id="loan-1", created_at=now, updated_at=now, display_id="L0001",
                    borrower_id="cust-1", terms=terms)

    def test_duration_months_on_daily_loan_counts_thirty_day_months(self):
        loan = self._loan(frequency=PaymentFrequency.DAILY, duration_months=2)
        schedule = ScheduleGenerator().generate_for_loan(loan)
        assert len(schedule) == 60

    def test_monthly_fixed_loan(self):
        loan = self._loan(frequency=PaymentFrequency.MONTHLY, duration_months=2)
        schedule = ScheduleGenerator().generate_for_loan(loan)
        assert [i.total_due for i in schedule] == [Decimal('2750.00'), Decimal('2750.00')]

    def test_open_ended_loan(self):
        loan = self._loan(frequency=PaymentFrequency.MONTHLY)
        schedule = ScheduleGenerator().generate_for_loan(loan)
        assert len(schedule) == 1
        assert not schedule[0].authoritative
