"""
Deposit Module

Banking of collected payments. Collectors take cash in the field; a deposit
marks a batch of those payments as paid into a bank account. Banking never
changes a loan balance.
"""

import uuid
from decimal import Decimal
from dataclasses import dataclass
from typing import List, Optional, Iterable

from .audit import AuditTrail, AuditEventType
from .bank_accounts import BankAccountDirectory
from .clock import Clock, SystemClock
from .currency import round_money
from .exceptions import InvalidInput
from .loans import Payment
from .logging_config import get_logger, log_action
from .repository import LoanRepository


logger = get_logger("loan_engine.deposits")


@dataclass(frozen=True)
class DepositSummary:
    deposit_id: str
    bank_account_id: str
    deposited: List[Payment]
    total_amount: Decimal
    payment_ids: List[str]


class DepositService:
    """Moves payments from pending deposit to banked"""

    def __init__(self, repository: LoanRepository, audit_trail: AuditTrail,
                 bank_accounts: BankAccountDirectory, clock: Optional[Clock] = None):
        self.repository = repository
        self.audit = audit_trail
        self.bank_accounts = bank_accounts
        self.clock = clock or SystemClock()

    def list_unbanked(self) -> List[Payment]:
        """Payments still waiting to be deposited, oldest first"""
        return self.repository.find_unbanked_payments()

    def pending_total(self) -> Decimal:
        return round_money(sum((p.amount.amount for p in self.list_unbanked()), Decimal('0')))

    def deposit(self, payment_ids: Iterable[str], bank_account_id: str) -> DepositSummary:
        """
        Bank a batch of payments.

        Ids that are unknown or already banked are ignored. The batch is one
        atomic unit.

        Raises:
            InvalidInput: If no ids or no bank account are given, or none of
                the ids is an unbanked payment
            NotFound: If the bank account does not exist or is closed
        """
        payment_ids = list(payment_ids or [])
        if not payment_ids:
            raise InvalidInput("payment_ids must not be empty")
        if not bank_account_id:
            raise InvalidInput("bank_account_id is required")

        deposit_id = str(uuid.uuid4())
        with self.repository.atomic():
            self.bank_accounts.require(bank_account_id)
            deposited = self.repository.mark_payments_banked(
                payment_ids, bank_account_id, self.clock.now()
            )
            if not deposited:
                raise InvalidInput("No valid unbanked payments found to deposit")

            total = round_money(sum((p.amount.amount for p in deposited), Decimal('0')))
            self.audit.log_event(
                AuditEventType.PAYMENTS_BANKED, "deposit", deposit_id,
                metadata={
                    'bank_account_id': bank_account_id,
                    'payment_ids': [p.id for p in deposited],
                    'total_amount': total
                }
            )

        log_action(logger, "info", f"Deposited {len(deposited)} payments totalling {total}",
                   action="payments.deposit", resource=f"bank_account:{bank_account_id}",
                   correlation_id=deposit_id, extra={'payment_count': len(deposited)})

        return DepositSummary(
            deposit_id=deposit_id,
            bank_account_id=bank_account_id,
            deposited=deposited,
            total_amount=total,
            payment_ids=[p.id for p in deposited]
        )
