"""
Bank Account Module

Accounts that collected payments are deposited into.
"""

import uuid
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .clock import Clock, SystemClock
from .exceptions import InvalidInput, NotFound
from .storage import StorageInterface, StorageRecord


REQUIRED_FIELDS = ("nickname", "account_name", "account_number", "bank", "branch")


@dataclass
class BankAccount(StorageRecord):
    """Deposit target"""
    nickname: str
    account_name: str
    account_number: str
    bank: str
    branch: str
    active: bool = True     # Closed accounts stay referenced by banked payments

    def __post_init__(self):
        missing = [name for name in REQUIRED_FIELDS if not (getattr(self, name) or "").strip()]
        if missing:
            raise InvalidInput(f"Bank account fields are required: {', '.join(missing)}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BankAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            nickname=data['nickname'],
            account_name=data['account_name'],
            account_number=data['account_number'],
            bank=data['bank'],
            branch=data['branch'],
            active=data.get('active', True),
        )


class BankAccountDirectory:
    """Registers and looks up bank accounts"""

    TABLE = "bank_accounts"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def register(self, nickname: str, account_name: str, account_number: str,
                 bank: str, branch: str) -> BankAccount:
        """
        Add a bank account.

        Raises:
            InvalidInput: If any field is blank
        """
        now = self.clock.now()
        account = BankAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            nickname=nickname,
            account_name=account_name,
            account_number=account_number,
            bank=bank,
            branch=branch
        )
        with self.storage.atomic():
            self.storage.save(self.TABLE, account.id, account.to_dict())
        return account

    def get(self, account_id: str) -> Optional[BankAccount]:
        data = self.storage.load(self.TABLE, account_id)
        return BankAccount.from_dict(data) if data else None

    def require(self, account_id: str) -> BankAccount:
        """Get an open bank account or raise NotFound"""
        account = self.get(account_id) if account_id else None
        if account is None or not account.active:
            raise NotFound("BankAccount", account_id)
        return account

    def update(self, account_id: str, **fields) -> BankAccount:
        """
        Change account details.

        Raises:
            NotFound: If the account does not exist or is closed
            InvalidInput: For unknown or blank fields
        """
        unknown = set(fields) - set(REQUIRED_FIELDS)
        if unknown:
            raise InvalidInput(f"Unknown bank account fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            data = self.require(account_id).to_dict()
            data.update(fields)
            data['updated_at'] = self.clock.now().isoformat()
            account = BankAccount.from_dict(data)
            self.storage.save(self.TABLE, account.id, account.to_dict())
        return account

    def close(self, account_id: str) -> BankAccount:
        """Stop accepting deposits into an account"""
        with self.storage.atomic():
            account = self.require(account_id)
            account.active = False
            account.updated_at = self.clock.now()
            self.storage.save(self.TABLE, account.id, account.to_dict())
        return account

    def list_active(self) -> List[BankAccount]:
        """Open accounts, newest first"""
        accounts = [BankAccount.from_dict(data)
                    for data in self.storage.find(self.TABLE, {'active': True})]
        return sorted(accounts, key=lambda account: account.created_at, reverse=True)
