"""
Money Module

Loan amounts are Decimal values tied to a currency and rounded half-up to
the currency's minor unit. Floats are never accepted as-is: anything that
is not already a Decimal goes through ``str`` first.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum

getcontext().prec = 28


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class Currency(Enum):
    """Supported currencies as (ISO code, minor-unit digits)"""
    LKR = ("LKR", 2)
    USD = ("USD", 2)
    INR = ("INR", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}") from None


@dataclass(frozen=True)
class Money:
    """Immutable currency amount; arithmetic across currencies raises ValueError"""
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = _as_decimal(self.amount).quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', amount)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _same_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._same_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor) -> 'Money':
        return Money(self.amount * _as_decimal(factor), self.currency)

    def __truediv__(self, divisor) -> 'Money':
        return Money(self.amount / _as_decimal(divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, Money)
            and self.currency == other.currency
            and self.amount == other.amount
        )

    def __hash__(self) -> int:
        return hash((self.currency.code, self.amount))

    def __lt__(self, other: 'Money') -> bool:
        self._same_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        return self < other or self == other

    def __gt__(self, other: 'Money') -> bool:
        self._same_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        return self > other or self == other

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def to_string(self) -> str:
        """e.g. 'LKR 500,000.00'"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data['amount']), Currency.from_code(data['currency']))
