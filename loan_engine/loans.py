"""
Loan Module

Loan terms, loan and payment records, guarantor links, and the lifecycle
transition table. Every lifecycle operation asks ``next_state`` whether it is
allowed; there are no per-operation status checks elsewhere.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency, to_decimal
from .exceptions import InvalidInput, LoanNotActive
from .schedule import PaymentFrequency
from .storage import StorageRecord


class LoanState(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"          # Sole initial state; accepts payments
    COMPLETED = "COMPLETED"    # Paid off, asserted by the operator
    DEFAULTED = "DEFAULTED"    # Written off as uncollectible
    SETTLED = "SETTLED"        # Closed by a single settlement payment
    RENEWED = "RENEWED"        # Superseded by a successor loan


class PaymentKind(Enum):
    """Why a payment was taken"""
    REGULAR = "REGULAR"          # Ordinary installment payment
    SETTLEMENT = "SETTLEMENT"    # Full settlement, closes the loan


class LoanOperation(Enum):
    """Operations that consult the transition table"""
    RECORD_PAYMENT = "record_payment"
    SETTLE = "settle"
    COMPLETE = "complete"
    DEFAULT = "default"
    RENEW = "renew"


# (current state, operation) -> resulting state. Anything missing is forbidden.
TRANSITIONS: Dict[tuple, LoanState] = {
    (LoanState.ACTIVE, LoanOperation.RECORD_PAYMENT): LoanState.ACTIVE,
    (LoanState.ACTIVE, LoanOperation.SETTLE): LoanState.SETTLED,
    (LoanState.ACTIVE, LoanOperation.COMPLETE): LoanState.COMPLETED,
    (LoanState.ACTIVE, LoanOperation.DEFAULT): LoanState.DEFAULTED,
    (LoanState.ACTIVE, LoanOperation.RENEW): LoanState.RENEWED,
}


def allowed_from(operation: LoanOperation) -> List[LoanState]:
    """States from which an operation may run"""
    return [state for (state, op) in TRANSITIONS if op is operation]


def next_state(loan_id: str, current: LoanState, operation: LoanOperation) -> LoanState:
    """
    Look up the state an operation leads to.

    Raises:
        LoanNotActive: If the operation is not defined from ``current``
    """
    result = TRANSITIONS.get((current, operation))
    if result is None:
        required = allowed_from(operation)
        raise LoanNotActive(
            loan_id,
            current_state=current,
            required_state=required[0] if len(required) == 1 else required,
            operation=operation
        )
    return result


@dataclass
class LoanTerms:
    """Financial terms of a loan; immutable once the loan exists"""
    principal: Money
    rate30: Decimal                         # Percent per 30 days, e.g. 10 for 10%
    start_date: date
    frequency: PaymentFrequency
    duration_days: Optional[int] = None
    duration_months: Optional[int] = None

    def __post_init__(self):
        self.frequency = PaymentFrequency.parse(self.frequency)
        self.rate30 = to_decimal(self.rate30)

        if not self.principal.is_positive():
            raise InvalidInput(f"Principal must be positive, got {self.principal.amount}")
        if self.rate30 < 0:
            raise InvalidInput(f"Interest rate must not be negative, got {self.rate30}")
        if self.duration_days is not None and self.duration_months is not None:
            raise InvalidInput("Set either duration_days or duration_months, not both")
        for name in ("duration_days", "duration_months"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or int(value) != value or value <= 0:
                raise InvalidInput(f"{name} must be a positive whole number, got {value}")
            setattr(self, name, int(value))

    @property
    def is_open_ended(self) -> bool:
        return self.duration_days is None and self.duration_months is None

    @property
    def interest_days(self) -> Decimal:
        """Days of interest owed: the day count, whole 30-day months, or one period"""
        if self.duration_days is not None:
            return Decimal(self.duration_days)
        if self.duration_months is not None:
            return Decimal(self.duration_months * 30)
        return Decimal('30')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal_amount': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'rate30': str(self.rate30),
            'start_date': self.start_date.isoformat(),
            'frequency': self.frequency.value,
            'duration_days': self.duration_days,
            'duration_months': self.duration_months,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Money(Decimal(data['principal_amount']), Currency[data['currency']]),
            rate30=Decimal(data['rate30']),
            start_date=date.fromisoformat(data['start_date']),
            frequency=PaymentFrequency(data['frequency']),
            duration_days=data.get('duration_days'),
            duration_months=data.get('duration_months'),
        )


@dataclass
class Loan(StorageRecord):
    """One credit extension to a borrower"""
    display_id: str
    borrower_id: str
    terms: LoanTerms
    state: LoanState = LoanState.ACTIVE
    guarantor_ids: List[str] = field(default_factory=list)
    renewed_from: Optional[str] = None      # Predecessor loan id, informational only

    @property
    def is_active(self) -> bool:
        return self.state is LoanState.ACTIVE

    @property
    def currency(self) -> Currency:
        return self.terms.principal.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'display_id': self.display_id,
            'borrower_id': self.borrower_id,
            'terms': self.terms.to_dict(),
            'state': self.state.value,
            'guarantor_ids': list(self.guarantor_ids),
            'renewed_from': self.renewed_from,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            display_id=data['display_id'],
            borrower_id=data['borrower_id'],
            terms=LoanTerms.from_dict(data['terms']),
            state=LoanState(data['state']),
            guarantor_ids=list(data.get('guarantor_ids') or []),
            renewed_from=data.get('renewed_from'),
        )


@dataclass
class Payment(StorageRecord):
    """Immutable, append-only record of money received against one loan"""
    loan_id: str
    borrower_id: str
    amount: Money
    paid_at: datetime
    note: str = ""
    kind: PaymentKind = PaymentKind.REGULAR
    banked: bool = False
    bank_account_id: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidInput(f"Payment amount must be positive, got {self.amount.amount}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'borrower_id': self.borrower_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'paid_at': self.paid_at.isoformat(),
            'note': self.note,
            'kind': self.kind.value,
            'banked': self.banked,
            'bank_account_id': self.bank_account_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            paid_at=datetime.fromisoformat(data['paid_at']),
            note=data.get('note') or "",
            kind=PaymentKind(data.get('kind', PaymentKind.REGULAR.value)),
            banked=bool(data.get('banked', False)),
            bank_account_id=data.get('bank_account_id'),
        )
