"""
Customer Directory Module

Borrowers and guarantors the loan book refers to. The engine only needs to
know that a customer exists and how to reach them by SMS.
"""

import re
import uuid
from datetime import datetime, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .clock import Clock, SystemClock
from .exceptions import InvalidInput, NotFound
from .storage import StorageInterface, StorageRecord


@dataclass
class Customer(StorageRecord):
    """Borrower or guarantor profile"""
    full_name: str
    mobile_phone: str
    national_id_no: Optional[str] = None
    permanent_address: Optional[str] = None
    date_of_birth: Optional[date] = None
    active: bool = True     # Hidden customers keep their loan history

    def __post_init__(self):
        if not self.full_name or not self.full_name.strip():
            raise InvalidInput("Customer full name is required")
        if not re.search(r'\d', self.mobile_phone or ""):
            raise InvalidInput(f"Invalid mobile phone: {self.mobile_phone!r}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['date_of_birth'] = self.date_of_birth.isoformat() if self.date_of_birth else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            mobile_phone=data['mobile_phone'],
            national_id_no=data.get('national_id_no'),
            permanent_address=data.get('permanent_address'),
            date_of_birth=date.fromisoformat(data['date_of_birth']) if data.get('date_of_birth') else None,
            active=data.get('active', True),
        )


class CustomerDirectory:
    """Registers and looks up customers"""

    TABLE = "customers"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def register(
        self,
        full_name: str,
        mobile_phone: str,
        national_id_no: Optional[str] = None,
        permanent_address: Optional[str] = None,
        date_of_birth: Optional[date] = None
    ) -> Customer:
        """
        Add a customer to the directory.

        Raises:
            InvalidInput: For a missing name or phone, or a national id that
                is already registered
        """
        now = self.clock.now()
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name.strip() if full_name else full_name,
            mobile_phone=mobile_phone,
            national_id_no=national_id_no,
            permanent_address=permanent_address,
            date_of_birth=date_of_birth
        )

        with self.storage.atomic():
            if national_id_no and self.storage.find(self.TABLE, {'national_id_no': national_id_no}):
                raise InvalidInput(f"National id {national_id_no} is already registered")
            self.storage.save(self.TABLE, customer.id, customer.to_dict())

        return customer

    def get(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.TABLE, customer_id)
        return Customer.from_dict(data) if data else None

    def require(self, customer_id: str) -> Customer:
        """Get an active customer or raise NotFound"""
        customer = self.get(customer_id)
        if customer is None or not customer.active:
            raise NotFound("Customer", customer_id)
        return customer

    def deactivate(self, customer_id: str) -> Customer:
        """Hide a customer; existing loans are untouched"""
        with self.storage.atomic():
            customer = self.require(customer_id)
            customer.active = False
            customer.updated_at = self.clock.now()
            self.storage.save(self.TABLE, customer.id, customer.to_dict())
        return customer

    def list_active(self) -> List[Customer]:
        return [Customer.from_dict(data) for data in self.storage.find(self.TABLE, {'active': True})]

    def count_active(self) -> int:
        return len(self.storage.find(self.TABLE, {'active': True}))
