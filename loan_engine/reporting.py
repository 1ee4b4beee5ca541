"""
Reporting Module

Loan book dashboard figures and the collections forecast. Every balance is
taken from OutstandingCalculator; penalties are reported alongside balances,
never added to them.
"""

import csv
import io
from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any

from .clock import Clock, SystemClock
from .currency import round_money
from .customers import CustomerDirectory
from .exceptions import InvalidInput
from .interest import PenaltyCalculator
from .loans import LoanState
from .outstanding import OutstandingCalculator
from .repository import LoanRepository
from .schedule import ScheduleGenerator


@dataclass(frozen=True)
class DashboardStats:
    """Loan book summary as of one day"""
    as_of: date
    active_loans: int
    completed_loans: int
    active_customers: int
    overdue_loans: int
    pending_deposit: Decimal
    total_to_be_collected: Decimal
    advisory_penalties: Decimal

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['as_of'] = self.as_of.isoformat()
        for key in ('pending_deposit', 'total_to_be_collected', 'advisory_penalties'):
            result[key] = str(result[key])
        return result


@dataclass(frozen=True)
class PaymentPrediction:
    """One installment expected within the forecast window"""
    loan_id: str
    display_id: str
    borrower_id: str
    customer_name: Optional[str]
    mobile_phone: Optional[str]
    expected_date: date
    expected_amount: Decimal
    frequency: str
    installment_number: int
    total_installments: int


@dataclass
class PaymentForecast:
    start: date
    end: date
    predictions: List[PaymentPrediction] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return round_money(sum((p.expected_amount for p in self.predictions), Decimal('0')))

    @property
    def loan_count(self) -> int:
        return len({p.loan_id for p in self.predictions})

    def to_csv(self) -> str:
        """Export predictions as CSV"""
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            'expected_date', 'display_id', 'customer_name', 'mobile_phone',
            'expected_amount', 'frequency', 'installment_number', 'total_installments'
        ])
        for p in self.predictions:
            writer.writerow([
                p.expected_date.isoformat(), p.display_id, p.customer_name or '',
                p.mobile_phone or '', str(p.expected_amount), p.frequency,
                p.installment_number, p.total_installments
            ])
        return output.getvalue()


class ReportingService:
    """Read-only reports over the loan book"""

    def __init__(
        self,
        repository: LoanRepository,
        customers: CustomerDirectory,
        clock: Optional[Clock] = None,
        penalty_calculator: Optional[PenaltyCalculator] = None
    ):
        self.repository = repository
        self.customers = customers
        self.clock = clock or SystemClock()
        self.penalties = penalty_calculator or PenaltyCalculator()
        self.calculator = OutstandingCalculator()
        self.schedules = ScheduleGenerator()

    def dashboard_stats(self, as_of: Optional[date] = None) -> DashboardStats:
        """
        Summary figures for the loan book.

        Args:
            as_of: Day to evaluate overdue status on; defaults to today

        Returns:
            DashboardStats
        """
        as_of = as_of or self.clock.today()
        loans = self.repository.find_loans()
        payments = self.repository.payments_by_loan()

        active = [loan for loan in loans if loan.state == LoanState.ACTIVE]
        completed = [loan for loan in loans if loan.state == LoanState.COMPLETED]

        overdue = 0
        to_collect = Decimal('0')
        penalties = Decimal('0')
        for loan in active:
            balance = self.calculator.outstanding(loan, payments.get(loan.id, []))
            to_collect += balance.outstanding.amount
            if self.calculator.is_overdue(loan, as_of):
                overdue += 1
                penalties += self.penalties.overdue_penalty(
                    balance.outstanding.amount, self.calculator.overdue_days(loan, as_of)
                )

        pending = sum(
            (p.amount.amount for p in self.repository.find_unbanked_payments()),
            Decimal('0')
        )

        return DashboardStats(
            as_of=as_of,
            active_loans=len(active),
            completed_loans=len(completed),
            active_customers=self.customers.count_active(),
            overdue_loans=overdue,
            pending_deposit=round_money(pending),
            total_to_be_collected=round_money(to_collect),
            advisory_penalties=round_money(penalties)
        )

    def predict_payments(self, start: date, end: date) -> PaymentForecast:
        """
        Installments expected from ACTIVE loans between two dates, inclusive.

        Installments already covered by the loan's payments are skipped; a
        partly covered installment contributes only its uncovered part, and no
        loan is forecast to pay more than its outstanding balance.

        Raises:
            InvalidInput: If ``start`` is after ``end``
        """
        if start is None or end is None:
            raise InvalidInput("start and end dates are required")
        if start > end:
            raise InvalidInput("Start date must be before or equal to end date")

        forecast = PaymentForecast(start=start, end=end)
        payments = self.repository.payments_by_loan()

        for loan in self.repository.find_loans(states=[LoanState.ACTIVE]):
            balance = self.calculator.outstanding(loan, payments.get(loan.id, []))
            if balance.outstanding.is_zero():
                continue

            customer = self.customers.get(loan.borrower_id)
            schedule = self.schedules.generate_for_loan(loan)
            paid = balance.total_paid.amount
            remaining = balance.outstanding.amount
            cumulative = Decimal('0')

            for installment in schedule:
                if remaining <= 0 or installment.due_date > end:
                    break
                cumulative += installment.total_due
                if cumulative <= paid:
                    continue

                uncovered = min(installment.total_due, cumulative - paid)
                if installment.due_date < start:
                    continue

                expected = min(uncovered, remaining)
                remaining -= expected
                forecast.predictions.append(PaymentPrediction(
                    loan_id=loan.id,
                    display_id=loan.display_id,
                    borrower_id=loan.borrower_id,
                    customer_name=customer.full_name if customer else None,
                    mobile_phone=customer.mobile_phone if customer else None,
                    expected_date=installment.due_date,
                    expected_amount=round_money(expected),
                    frequency=loan.terms.frequency.value,
                    installment_number=installment.number,
                    total_installments=len(schedule)
                ))

        forecast.predictions.sort(key=lambda p: (p.expected_date, p.display_id))
        return forecast
