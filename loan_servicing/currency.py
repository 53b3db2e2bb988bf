"""
Money & Precision Module

ISO 4217 currency codes and fixed-point Decimal money. Every monetary value in
the core is a Money quantized to its currency's precision. NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

RATE_PRECISION = Decimal('0.01')
# Largest amount accepted anywhere in the core; keeps quantize within context precision
MAX_AMOUNT = Decimal("1000000000000")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    PHP = ("PHP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Arithmetic re-quantizes so results never carry sub-cent residue.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = self.amount
        try:
            if not isinstance(amount, Decimal):
                amount = Decimal(str(amount))
            if not amount.is_finite() or abs(amount) > MAX_AMOUNT:
                raise ValidationError(
                    f"Amount must be a finite value of at most {MAX_AMOUNT:,}",
                    {"amount": amount, "currency": self.currency.code}
                )
            rounded = amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {self.amount}", {"amount": self.amount})
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def clamp_at_zero(self) -> 'Money':
        """Return zero in place of a negative amount"""
        if self.is_negative():
            return Money.zero(self.currency)
        return self

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data['amount']), Currency[data['currency']])


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a user-entered amount such as "1,234.50" or "$99.95".

    A single comma followed by at most two digits is read as a decimal
    separator; any other comma is a thousands separator.

    Raises:
        ValidationError: If the text is empty, unparseable or not finite
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Amount is required", {"amount": value})

    clean_value = re.sub(r'[\s$€£¥₱]', '', value)

    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1 and len(clean_value.split(',')[1]) <= 2:
        clean_value = clean_value.replace(',', '.')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        amount = Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value}", {"amount": value})
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value}", {"amount": value})
    return amount


def quantize_rate(rate) -> Decimal:
    """Round an annual percentage rate to two decimal places"""
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
        if value.is_finite():
            return value.quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        pass
    raise ValidationError(f"Invalid interest rate: {rate}", {"interest_rate": rate})
