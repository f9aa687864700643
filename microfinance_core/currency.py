"""
Money and Currency Module

ISO 4217 currency codes and an immutable Money type with proper Decimal
precision. NEVER uses float for monetary values. Raw inputs are parsed into
Money once, at the boundary, by parse_money().
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum
import re

from .exceptions import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    NGN = ("NGN", 2)  # Nigerian Naira
    GHS = ("GHS", 2)  # Ghanaian Cedi
    KES = ("KES", 2)  # Kenyan Shilling
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    XOF = ("XOF", 0)  # West African CFA franc, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Amounts are rounded half-up to the currency precision on construction.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Union[Decimal, int]) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

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

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


def round_half_up(value: Decimal, places: int = 2) -> Decimal:
    """Round a Decimal half-up to a fixed number of places"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "₦1,250.50"

    Returns:
        Decimal value

    Raises:
        InvalidAmount: If string cannot be converted to a finite Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidAmount("Amount must be a non-empty numeric string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot: comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")
    if not result.is_finite():
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")
    return result


def parse_money(value, currency: Currency, field: str = "amount", allow_zero: bool = False) -> Money:
    """
    Parse a raw input into a validated Money value

    Accepts Money, Decimal, int, float or numeric string. Floats are
    converted through their string form so 0.1 stays 0.1.

    Raises:
        InvalidAmount: If the value is non-numeric, in another currency,
            or not strictly positive (zero allowed with allow_zero)
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmount(
                f"Amount currency {value.currency.code} does not match {currency.code}",
                field=field,
            )
        money = value
    else:
        if isinstance(value, bool) or value is None:
            raise InvalidAmount(f"{field} must be a number", field=field)
        if isinstance(value, str):
            try:
                amount = decimal_from_string(value)
            except InvalidAmount as e:
                raise InvalidAmount(e.message, field=field)
        elif isinstance(value, (int, float, Decimal)):
            try:
                amount = Decimal(str(value))
            except InvalidOperation:
                raise InvalidAmount(f"{field} must be a number", field=field)
            if not amount.is_finite():
                raise InvalidAmount(f"{field} must be a finite number", field=field)
        else:
            raise InvalidAmount(f"{field} must be a number", field=field)
        money = Money(amount, currency)

    if money.is_negative() or (money.is_zero() and not allow_zero):
        raise InvalidAmount(f"{field} must be greater than zero", field=field)
    return money
