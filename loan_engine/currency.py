"""
Money and Rounding Module

Currency codes, the immutable Money value type and the canonical 2-decimal
rounding policy used by every output boundary of the engine.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext, InvalidOperation
from dataclasses import dataclass
from enum import Enum
from typing import Union

# High precision for intermediate arithmetic; rounding happens only at output
getcontext().prec = 28

CENT = Decimal('0.01')

Numeric = Union[Decimal, int, str, float]


class Currency(Enum):
    """ISO 4217 currency codes with precision info"""
    LKR = ("LKR", 2)  # Sri Lankan Rupee
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    INR = ("INR", 2)  # Indian Rupee
    KES = ("KES", 2)  # Kenyan Shilling

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a number or numeric string to Decimal without going through
    binary float representation.

    Raises:
        ValueError: If the value cannot be converted
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Numeric) -> Decimal:
    """
    Round to 2 decimal places, half away from zero.

    This is the single rounding policy of the engine. Calculators keep full
    precision internally and call this only on the values they return.
    """
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Persisted amounts (principal, payments) always use this class.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        # Round to currency precision
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def _check_currency(self, other: 'Money', action: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {action} {self.currency.code} and {other.currency.code}")

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for logs and notification text"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
