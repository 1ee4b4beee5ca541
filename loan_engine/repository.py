"""
Loan Repository Module

Persistence primitives the lifecycle is written against. Every method is a
single storage read or write; callers that need several of them to succeed
or fail together wrap them in ``atomic()``.
"""

import re
from decimal import Decimal
from datetime import datetime
from typing import Dict, List, Optional, Iterable

from .currency import Money, Currency
from .exceptions import TransactionConflict, PersistenceError, NotFound
from .loans import Loan, LoanState, Payment
from .storage import StorageInterface


class LoanRepository:
    """Loans, payments, guarantor links and the display-id sequence"""

    LOANS_TABLE = "loans"
    PAYMENTS_TABLE = "payments"
    GUARANTORS_TABLE = "loan_guarantors"
    SEQUENCES_TABLE = "sequences"
    DISPLAY_ID_SEQUENCE = "loan_display_id"

    def __init__(self, storage: StorageInterface, display_id_prefix: str = "L",
                 display_id_width: int = 4):
        self.storage = storage
        self.display_id_prefix = display_id_prefix
        self.display_id_width = display_id_width
        self._display_id_pattern = re.compile(rf"^{re.escape(display_id_prefix)}(\d+)$")

    def atomic(self):
        """Open (or join) an atomic unit on the underlying storage"""
        return self.storage.atomic()

    # Loans

    def find_loan_by_id(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.LOANS_TABLE, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        """Like find_loan_by_id but raises NotFound"""
        loan = self.find_loan_by_id(loan_id)
        if loan is None:
            raise NotFound("Loan", loan_id)
        return loan

    def find_loan_by_display_id(self, display_id: str) -> Optional[Loan]:
        matches = self.storage.find(self.LOANS_TABLE, {'display_id': display_id})
        return Loan.from_dict(matches[0]) if matches else None

    def find_active_loans_by_borrower(self, borrower_id: str) -> List[Loan]:
        matches = self.storage.find(self.LOANS_TABLE, {
            'borrower_id': borrower_id,
            'state': LoanState.ACTIVE.value
        })
        return [Loan.from_dict(data) for data in matches]

    def find_loans(self, states: Optional[Iterable[LoanState]] = None,
                   borrower_id: Optional[str] = None) -> List[Loan]:
        """Loans in creation order, optionally filtered by state and borrower"""
        wanted = {state.value for state in states} if states is not None else None
        loans = []
        for data in self.storage.load_all(self.LOANS_TABLE):
            if wanted is not None and data['state'] not in wanted:
                continue
            if borrower_id is not None and data['borrower_id'] != borrower_id:
                continue
            loans.append(Loan.from_dict(data))
        return loans

    def insert_loan(self, loan: Loan) -> None:
        if self.storage.exists(self.LOANS_TABLE, loan.id):
            raise PersistenceError(f"Loan {loan.id} already exists")
        if self.find_loan_by_display_id(loan.display_id) is not None:
            raise TransactionConflict(f"Display id {loan.display_id} is already taken")
        self.storage.save(self.LOANS_TABLE, loan.id, loan.to_dict())

    def update_loan_status(self, loan_id: str, expected: LoanState, new_state: LoanState,
                           updated_at: datetime) -> Loan:
        """
        Compare-and-set the loan state.

        Raises:
            NotFound: If the loan does not exist
            TransactionConflict: If the stored state is no longer ``expected``
        """
        loan = self.get_loan(loan_id)
        if loan.state != expected:
            raise TransactionConflict(
                f"Loan {loan_id} changed concurrently: expected {expected.value}, "
                f"found {loan.state.value}"
            )
        loan.state = new_state
        loan.updated_at = updated_at
        self.storage.save(self.LOANS_TABLE, loan.id, loan.to_dict())
        return loan

    # Display ids

    def _display_number(self, display_id: str) -> Optional[int]:
        match = self._display_id_pattern.match(display_id or "")
        return int(match.group(1)) if match else None

    def find_highest_loan_display_id(self) -> Optional[str]:
        highest = None
        highest_number = -1
        for data in self.storage.load_all(self.LOANS_TABLE):
            number = self._display_number(data.get('display_id'))
            if number is not None and number > highest_number:
                highest, highest_number = data['display_id'], number
        return highest

    def format_display_id(self, number: int) -> str:
        return f"{self.display_id_prefix}{number:0{self.display_id_width}d}"

    def next_display_id(self) -> str:
        """
        Allocate the next display id.

        Must run inside the same atomic unit as the insert that uses it; a
        rolled-back unit gives the number back.
        """
        with self.storage.atomic():
            sequence = self.storage.load(self.SEQUENCES_TABLE, self.DISPLAY_ID_SEQUENCE) or {}
            counter = int(sequence.get('value', 0))

            highest = self.find_highest_loan_display_id()
            if highest is not None:
                counter = max(counter, self._display_number(highest))

            counter += 1
            self.storage.save(self.SEQUENCES_TABLE, self.DISPLAY_ID_SEQUENCE, {
                'id': self.DISPLAY_ID_SEQUENCE,
                'value': counter
            })
            return self.format_display_id(counter)

    # Guarantors

    def link_guarantor(self, loan_id: str, customer_id: str) -> None:
        link_id = f"{loan_id}:{customer_id}"
        self.storage.save(self.GUARANTORS_TABLE, link_id, {
            'id': link_id,
            'loan_id': loan_id,
            'customer_id': customer_id
        })

    def find_guarantor_ids(self, loan_id: str) -> List[str]:
        links = self.storage.find(self.GUARANTORS_TABLE, {'loan_id': loan_id})
        return [link['customer_id'] for link in links]

    def find_loans_guaranteed_by(self, customer_id: str) -> List[Loan]:
        links = self.storage.find(self.GUARANTORS_TABLE, {'customer_id': customer_id})
        loans = [self.find_loan_by_id(link['loan_id']) for link in links]
        return [loan for loan in loans if loan is not None]

    # Payments

    def insert_payment(self, payment: Payment) -> None:
        if self.storage.exists(self.PAYMENTS_TABLE, payment.id):
            raise PersistenceError(f"Payment {payment.id} already exists")
        self.storage.save(self.PAYMENTS_TABLE, payment.id, payment.to_dict())

    def find_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.PAYMENTS_TABLE, payment_id)
        return Payment.from_dict(data) if data else None

    def find_payments_by_loan(self, loan_id: str) -> List[Payment]:
        matches = self.storage.find(self.PAYMENTS_TABLE, {'loan_id': loan_id})
        return [Payment.from_dict(data) for data in matches]

    def sum_payments_by_loan(self, loan_id: str, currency: Currency) -> Money:
        total = sum(
            (Decimal(data['amount']) for data in self.storage.find(self.PAYMENTS_TABLE, {'loan_id': loan_id})),
            Decimal('0')
        )
        return Money(total, currency)

    def find_unbanked_payments(self) -> List[Payment]:
        matches = self.storage.find(self.PAYMENTS_TABLE, {'banked': False})
        return [Payment.from_dict(data) for data in matches]

    def mark_payments_banked(self, payment_ids: Iterable[str], bank_account_id: str,
                             banked_at: datetime) -> List[Payment]:
        """
        Flag unbanked payments as banked. Already-banked or unknown ids are
        skipped; the payments actually changed are returned.
        """
        changed = []
        for payment_id in dict.fromkeys(payment_ids):
            payment = self.find_payment(payment_id)
            if payment is None or payment.banked:
                continue
            payment.banked = True
            payment.bank_account_id = bank_account_id
            payment.updated_at = banked_at
            self.storage.save(self.PAYMENTS_TABLE, payment.id, payment.to_dict())
            changed.append(payment)
        return changed

    def all_payments(self) -> List[Payment]:
        return [Payment.from_dict(data) for data in self.storage.load_all(self.PAYMENTS_TABLE)]

    def payments_by_loan(self) -> Dict[str, List[Payment]]:
        """Every payment grouped by loan id, one table scan"""
        grouped: Dict[str, List[Payment]] = {}
        for payment in self.all_payments():
            grouped.setdefault(payment.loan_id, []).append(payment)
        return grouped
