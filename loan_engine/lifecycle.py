"""
Loan Lifecycle Module

Creates loans and moves them through their states. Each operation is one
atomic unit: the precondition check, every write it causes, its audit event
and its notification intents commit together or not at all. Notifications
are dispatched only after the unit has committed.
"""

import uuid
from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any, Iterable

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Money, Currency, Numeric, to_decimal
from .customers import CustomerDirectory
from .exceptions import (
    LoanEngineError, InvalidInput, BorrowerHasActiveLoan, TransactionConflict
)
from .loans import (
    Loan, LoanTerms, LoanState, LoanOperation, Payment, PaymentKind, next_state
)
from .logging_config import get_logger, log_action
from .notifications import (
    NotificationKind, NotificationOutbox, NotificationDispatcher
)
from .outstanding import OutstandingCalculator, LoanBalance
from .repository import LoanRepository
from .schedule import ScheduleGenerator, Installment, PaymentFrequency
from .storage import StorageInterface, create_storage


logger = get_logger("loan_engine.lifecycle")


@dataclass(frozen=True)
class LoanCreation:
    loan: Loan
    schedule: List[Installment]


@dataclass(frozen=True)
class PaymentReceipt:
    payment: Payment
    balance: LoanBalance


@dataclass(frozen=True)
class SettlementResult:
    loan: Loan
    payment: Payment


@dataclass(frozen=True)
class RenewalResult:
    old_loan: Loan
    new_loan: Loan
    schedule: List[Installment]


class _Unit:
    """Side effects collected while an atomic unit runs"""

    def __init__(self):
        self.intent_ids: List[str] = []
        self.committed_logs: List[tuple] = []


class LoanLifecycle:
    """
    Loan lifecycle state machine

    Every transition is looked up in the central transition table; a
    forbidden one raises LoanNotActive before anything is written.
    """

    def __init__(
        self,
        storage: StorageInterface,
        customers: Optional[CustomerDirectory] = None,
        clock: Optional[Clock] = None,
        config: Optional[LoanEngineConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.customers = customers or CustomerDirectory(storage, self.clock)
        self.audit = audit_trail or AuditTrail(storage, self.clock)
        self.repository = LoanRepository(
            storage,
            display_id_prefix=self.config.display_id_prefix,
            display_id_width=self.config.display_id_width
        )
        self.dispatcher = dispatcher or NotificationDispatcher.from_config(
            self.config, NotificationOutbox(storage, self.clock), self.customers
        )
        self.outbox = self.dispatcher.outbox
        self.calculator = OutstandingCalculator()
        self.schedules = ScheduleGenerator()
        self.default_currency = Currency[self.config.default_currency]

    @classmethod
    def from_config(cls, config: Optional[LoanEngineConfig] = None,
                    clock: Optional[Clock] = None, gateway=None) -> 'LoanLifecycle':
        """Build storage, directory and dispatcher from configuration"""
        config = config or get_config()
        clock = clock or SystemClock()
        storage = create_storage(config)
        customers = CustomerDirectory(storage, clock)
        outbox = NotificationOutbox(storage, clock)
        dispatcher = NotificationDispatcher.from_config(config, outbox, customers, gateway=gateway)
        return cls(storage, customers=customers, clock=clock, config=config, dispatcher=dispatcher)

    # Operations

    def create_loan(
        self,
        borrower_id: str,
        principal,
        rate30: Numeric,
        start_date: date,
        frequency,
        duration_days: Optional[int] = None,
        duration_months: Optional[int] = None,
        guarantor_ids: Optional[Iterable[str]] = None
    ) -> LoanCreation:
        """
        Open a new ACTIVE loan for a borrower.

        Args:
            borrower_id: Customer taking the loan
            principal: Amount lent (Money, or a number in the default currency)
            rate30: Interest percentage per 30 days
            start_date: Loan start and first due date
            frequency: DAILY, WEEKLY or MONTHLY
            duration_days: Term in days
            duration_months: Term in months; neither means open-ended
            guarantor_ids: Customers guaranteeing the loan

        Returns:
            LoanCreation with the stored loan and its advisory schedule

        Raises:
            InvalidInput: For malformed terms
            NotFound: If the borrower or a guarantor is unknown
            BorrowerHasActiveLoan: If the borrower already has an ACTIVE loan
        """
        terms = self._build_terms(principal, rate30, start_date, frequency,
                                  duration_days, duration_months)
        guarantors = self._guarantor_list(borrower_id, guarantor_ids)

        def work(unit: _Unit) -> Loan:
            self.customers.require(borrower_id)
            for guarantor_id in guarantors:
                self.customers.require(guarantor_id)

            self._ensure_no_active_loan(borrower_id)
            return self._open_loan(unit, borrower_id, terms, guarantors, renewed_from=None)

        loan = self._run("loan.create", borrower_id, work)
        return LoanCreation(loan=loan, schedule=self.schedules.generate_for_loan(loan))

    def record_payment(self, loan_id: str, amount, note: str = "") -> PaymentReceipt:
        """
        Record a regular payment against an ACTIVE loan.

        The loan stays ACTIVE even when the balance reaches zero; completion
        is an explicit operator action.
        """
        amount = self._positive_amount(amount, "Payment amount")

        def work(unit: _Unit) -> PaymentReceipt:
            loan = self.repository.get_loan(loan_id)
            next_state(loan.id, loan.state, LoanOperation.RECORD_PAYMENT)

            payment = self._insert_payment(loan, amount, note or "", PaymentKind.REGULAR)
            balance = self.calculator.outstanding(loan, self.repository.find_payments_by_loan(loan.id))

            self.audit.log_event(
                AuditEventType.PAYMENT_RECORDED, "loan", loan.id,
                metadata={
                    'payment_id': payment.id,
                    'amount': payment.amount.amount,
                    'total_paid': self.repository.sum_payments_by_loan(loan.id, loan.currency).amount,
                    'outstanding': balance.outstanding.amount
                }
            )
            self._notify(unit, NotificationKind.PAYMENT_RECEIVED, loan, {
                'display_id': loan.display_id,
                'amount': payment.amount.to_string(),
                'outstanding': balance.outstanding.to_string()
            })
            unit.committed_logs.append((
                f"Recorded payment of {payment.amount.to_string()} on {loan.display_id}",
                "loan.payment", loan, {'payment_id': payment.id,
                                       'outstanding': str(balance.outstanding.amount)}
            ))
            return PaymentReceipt(payment=payment, balance=balance)

        return self._run("loan.payment", loan_id, work)

    def settle(self, loan_id: str, settlement_amount, note: Optional[str] = None) -> SettlementResult:
        """Close an ACTIVE loan with a single settlement payment"""
        amount = self._positive_amount(settlement_amount, "Settlement amount")

        def work(unit: _Unit) -> SettlementResult:
            loan = self.repository.get_loan(loan_id)
            target = next_state(loan.id, loan.state, LoanOperation.SETTLE)

            payment = self._insert_payment(loan, amount, note or "Loan settlement", PaymentKind.SETTLEMENT)
            settled = self.repository.update_loan_status(loan.id, loan.state, target, self.clock.now())

            self.audit.log_event(
                AuditEventType.LOAN_SETTLED, "loan", loan.id,
                metadata={'payment_id': payment.id, 'amount': payment.amount.amount}
            )
            self._notify(unit, NotificationKind.LOAN_SETTLED, settled, {'display_id': settled.display_id})
            unit.committed_logs.append((
                f"Settled {settled.display_id} with {payment.amount.to_string()}",
                "loan.settle", settled, {'payment_id': payment.id}
            ))
            return SettlementResult(loan=settled, payment=payment)

        return self._run("loan.settle", loan_id, work)

    def complete(self, loan_id: str) -> Loan:
        """Mark an ACTIVE loan as paid off"""
        return self._transition(
            loan_id, LoanOperation.COMPLETE, AuditEventType.LOAN_COMPLETED,
            NotificationKind.LOAN_COMPLETED
        )

    def default(self, loan_id: str) -> Loan:
        """Write off an ACTIVE loan; the borrower is not notified"""
        return self._transition(loan_id, LoanOperation.DEFAULT, AuditEventType.LOAN_DEFAULTED, None)

    def renew(
        self,
        old_loan_id: str,
        new_terms: LoanTerms,
        outstanding_amount,
        guarantor_ids: Optional[Iterable[str]] = None
    ) -> RenewalResult:
        """
        Replace an ACTIVE loan with a new one for the same borrower.

        The old loan becomes RENEWED and a new ACTIVE loan is created in the
        same unit. No payment is written against the old loan; the
        ``outstanding_amount`` carried over is reported, not booked.

        Args:
            old_loan_id: Loan being renewed
            new_terms: Terms of the successor loan
            outstanding_amount: Balance rolled into the new loan, for the notice
            guarantor_ids: Guarantors of the new loan; defaults to the old loan's
        """
        if not isinstance(new_terms, LoanTerms):
            raise InvalidInput("new_terms must be LoanTerms")
        carried = self._non_negative_amount(outstanding_amount, new_terms.principal.currency)

        def work(unit: _Unit) -> RenewalResult:
            old = self.repository.get_loan(old_loan_id)
            target = next_state(old.id, old.state, LoanOperation.RENEW)

            guarantors = self._guarantor_list(
                old.borrower_id,
                old.guarantor_ids if guarantor_ids is None else guarantor_ids
            )
            self.customers.require(old.borrower_id)
            for guarantor_id in guarantors:
                self.customers.require(guarantor_id)

            renewed = self.repository.update_loan_status(old.id, old.state, target, self.clock.now())
            self._ensure_no_active_loan(old.borrower_id)

            new_loan = self._open_loan(unit, old.borrower_id, new_terms, guarantors,
                                       renewed_from=old.id, notify=False)

            self.audit.log_event(
                AuditEventType.LOAN_RENEWED, "loan", old.id,
                metadata={
                    'new_loan_id': new_loan.id,
                    'new_display_id': new_loan.display_id,
                    'outstanding_amount': carried.amount
                }
            )
            self._notify(unit, NotificationKind.LOAN_RENEWED, renewed, {
                'display_id': renewed.display_id,
                'outstanding_amount': carried.to_string(),
                'new_display_id': new_loan.display_id
            })
            self._notify(unit, NotificationKind.NEW_LOAN, new_loan, self._new_loan_params(new_loan))
            unit.committed_logs.append((
                f"Renewed {renewed.display_id} as {new_loan.display_id}",
                "loan.renew", renewed, {'new_loan_id': new_loan.id,
                                        'outstanding_amount': str(carried.amount)}
            ))
            return RenewalResult(old_loan=renewed, new_loan=new_loan, schedule=[])

        result = self._run("loan.renew", old_loan_id, work)
        return RenewalResult(
            old_loan=result.old_loan,
            new_loan=result.new_loan,
            schedule=self.schedules.generate_for_loan(result.new_loan)
        )

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.repository.find_loan_by_id(loan_id)

    def get_loan_by_display_id(self, display_id: str) -> Optional[Loan]:
        return self.repository.find_loan_by_display_id(display_id)

    def list_loans(self, states: Optional[Iterable[LoanState]] = None) -> List[Loan]:
        return self.repository.find_loans(states=states)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        return self.repository.find_loans(borrower_id=customer_id)

    def get_guaranteed_loans(self, customer_id: str) -> List[Loan]:
        """Loans the customer stands guarantor for, in any state"""
        return self.repository.find_loans_guaranteed_by(customer_id)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        return self.repository.find_payments_by_loan(loan_id)

    def get_balance(self, loan_id: str) -> LoanBalance:
        loan = self.repository.get_loan(loan_id)
        return self.calculator.outstanding(loan, self.repository.find_payments_by_loan(loan.id))

    def get_schedule(self, loan_id: str) -> List[Installment]:
        return self.schedules.generate_for_loan(self.repository.get_loan(loan_id))

    # Internals

    def _run(self, action: str, subject_id: str, work: Callable[[_Unit], Any]) -> Any:
        """
        Run ``work`` in an atomic unit, retrying on write conflicts.

        A retry re-runs the whole unit, precondition checks included, so an
        operation that lost a race fails with the error the new state calls for.
        """
        attempts = max(1, self.config.transaction_max_retries + 1)
        for attempt in range(1, attempts + 1):
            unit = _Unit()
            try:
                with self.repository.atomic():
                    result = work(unit)
                break
            except TransactionConflict as e:
                if attempt >= attempts:
                    log_action(logger, "error", f"{action} gave up after {attempt} attempts: {e}",
                               action=action, resource=subject_id)
                    raise
                logger.warning(f"{action} conflict on attempt {attempt}, retrying: {e}")
            except LoanEngineError as e:
                log_action(logger, "warning", f"{action} rejected: {e}",
                           action=action, resource=subject_id,
                           extra={'error': e.__class__.__name__})
                raise

        for message, logged_action, loan, extra in unit.committed_logs:
            log_action(logger, "info", message, action=logged_action,
                       resource=f"loan:{loan.display_id}", correlation_id=loan.id,
                       extra=extra)

        self.dispatcher.schedule(unit.intent_ids)
        return result

    def _transition(self, loan_id: str, operation: LoanOperation,
                    event_type: AuditEventType, notification: Optional[NotificationKind]) -> Loan:
        def work(unit: _Unit) -> Loan:
            loan = self.repository.get_loan(loan_id)
            target = next_state(loan.id, loan.state, operation)
            updated = self.repository.update_loan_status(loan.id, loan.state, target, self.clock.now())

            self.audit.log_event(
                event_type, "loan", loan.id,
                metadata={'from_state': loan.state, 'to_state': target}
            )
            if notification is not None:
                self._notify(unit, notification, updated, {'display_id': updated.display_id})
            unit.committed_logs.append((
                f"Loan {updated.display_id} {loan.state.value} -> {target.value}",
                f"loan.{operation.value}", updated, None
            ))
            return updated

        return self._run(f"loan.{operation.value}", loan_id, work)

    def _open_loan(self, unit: _Unit, borrower_id: str, terms: LoanTerms,
                   guarantors: List[str], renewed_from: Optional[str],
                   notify: bool = True) -> Loan:
        """Allocate a display id and insert a new ACTIVE loan; caller holds the unit"""
        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            display_id=self.repository.next_display_id(),
            borrower_id=borrower_id,
            terms=terms,
            state=LoanState.ACTIVE,
            guarantor_ids=list(guarantors),
            renewed_from=renewed_from
        )
        self.repository.insert_loan(loan)
        for guarantor_id in guarantors:
            self.repository.link_guarantor(loan.id, guarantor_id)

        self.audit.log_event(
            AuditEventType.LOAN_CREATED, "loan", loan.id,
            metadata={
                'display_id': loan.display_id,
                'borrower_id': borrower_id,
                'principal': terms.principal.amount,
                'rate30': terms.rate30,
                'frequency': terms.frequency,
                'renewed_from': renewed_from
            }
        )
        if notify:
            self._notify(unit, NotificationKind.NEW_LOAN, loan, self._new_loan_params(loan))
        unit.committed_logs.append((
            f"Created loan {loan.display_id} for {terms.principal.to_string()}",
            "loan.create", loan, {'borrower_id': borrower_id}
        ))
        return loan

    def _ensure_no_active_loan(self, borrower_id: str) -> None:
        active = self.repository.find_active_loans_by_borrower(borrower_id)
        if active:
            raise BorrowerHasActiveLoan(borrower_id, [loan.display_id for loan in active])

    def _insert_payment(self, loan: Loan, amount, note: str, kind: PaymentKind) -> Payment:
        now = self.clock.now()
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            amount=self._in_currency(amount, loan.currency),
            paid_at=now,
            note=note,
            kind=kind
        )
        self.repository.insert_payment(payment)
        return payment

    def _notify(self, unit: _Unit, kind: NotificationKind, loan: Loan, params: Dict[str, Any]) -> None:
        if not self.dispatcher.enabled:
            return
        intent = self.outbox.enqueue(kind, loan.borrower_id, loan.id, params)
        unit.intent_ids.append(intent.id)

    @staticmethod
    def _new_loan_params(loan: Loan) -> Dict[str, Any]:
        terms = loan.terms
        if terms.duration_months is not None:
            duration = f"{terms.duration_months} months"
        elif terms.duration_days is not None:
            duration = f"{terms.duration_days} days"
        else:
            duration = "open-ended"
        return {
            'display_id': loan.display_id,
            'principal': terms.principal.to_string(),
            'rate30': terms.rate30,
            'duration': duration,
            'frequency': terms.frequency.value.capitalize()
        }

    def _build_terms(self, principal, rate30, start_date, frequency,
                     duration_days, duration_months) -> LoanTerms:
        if not isinstance(start_date, date):
            raise InvalidInput(f"start_date must be a date, got {start_date!r}")
        try:
            rate = to_decimal(rate30)
        except ValueError as e:
            raise InvalidInput(str(e))
        return LoanTerms(
            principal=self._in_currency(principal, self.default_currency),
            rate30=rate,
            start_date=start_date,
            frequency=PaymentFrequency.parse(frequency),
            duration_days=duration_days,
            duration_months=duration_months
        )

    @staticmethod
    def _guarantor_list(borrower_id: str, guarantor_ids: Optional[Iterable[str]]) -> List[str]:
        guarantors = list(dict.fromkeys(guarantor_ids or []))
        if borrower_id in guarantors:
            raise InvalidInput("A borrower cannot guarantee their own loan")
        return guarantors

    @staticmethod
    def _in_currency(value, currency: Currency) -> Money:
        if isinstance(value, Money):
            if value.currency != currency:
                raise InvalidInput(
                    f"Amount is in {value.currency.code}, loan is in {currency.code}"
                )
            return value
        try:
            return Money(to_decimal(value), currency)
        except ValueError as e:
            raise InvalidInput(str(e))

    def _positive_amount(self, value, label: str):
        """Validate an amount before opening a unit; currency is checked later"""
        try:
            amount = value.amount if isinstance(value, Money) else to_decimal(value)
        except ValueError as e:
            raise InvalidInput(str(e))
        if amount <= Decimal('0'):
            raise InvalidInput(f"{label} must be positive, got {amount}")
        return value

    def _non_negative_amount(self, value, currency: Currency) -> Money:
        amount = self._in_currency(value, currency)
        if amount.amount < 0:
            raise InvalidInput(f"Outstanding amount must not be negative, got {amount.amount}")
        return amount
