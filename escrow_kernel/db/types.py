"""
Module: escrow_kernel.db.types
Responsibility: Money coercion and rounding helpers plus the column types that
    persist money as integer minor units and timestamps as UTC.
Architecture position: Kernel > DB.  May be imported by models/, domain/ and
    services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats reach arithmetic.  to_money() routes float input through str()
      so 0.1 becomes exactly Decimal("0.1").
    - round_money() is the only sanctioned rounding function (ROUND_HALF_UP,
      two decimal places).
    - CentsAmount refuses to persist a sub-cent value instead of silently
      rounding it.
    - UTCDateTime always hands back timezone-aware UTC datetimes, on every
      backend.

Failure modes:
    - InvalidAmountError for NaN, infinity, booleans, unparsable strings.
    - ValueError from CentsAmount / UTCDateTime on values that cannot be
      stored without loss.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from sqlalchemy import BigInteger, DateTime
from sqlalchemy.types import TypeDecorator

from escrow_kernel.exceptions import InvalidAmountError

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: object) -> Decimal:
    """
    Coerce an int/str/float/Decimal into a finite Decimal.

    The result is NOT rounded; callers decide whether sub-cent precision is
    an error or should be rounded (round_money).

    Raises:
        InvalidAmountError: If the value is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(value, "not a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmountError(value, "not a number") from None
    else:
        raise InvalidAmountError(value, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmountError(value, "amount must be finite")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value half-up to the given decimal places.

    Raises:
        InvalidAmountError: If the value has too many digits to quantize.
    """
    quantize_str = "0." + "0" * decimal_places
    try:
        return value.quantize(Decimal(quantize_str), rounding=rounding)
    except InvalidOperation:
        raise InvalidAmountError(value, "amount is out of range") from None


def is_whole_cents(value: Decimal) -> bool:
    """True if the value has no precision below one cent."""
    try:
        return value == value.quantize(CENT)
    except InvalidOperation:
        raise InvalidAmountError(value, "amount is out of range") from None


def money_from_cents(value: int) -> Decimal:
    """
    Create a money value from integer minor units.

    Example:
        money_from_cents(1050) -> Decimal("10.50")
    """
    return (Decimal(value) / 100).quantize(CENT)


class CentsAmount(TypeDecorator):
    """
    Money stored as BIGINT minor units.

    Contract:
        Python side is always a two-place Decimal; the database never sees a
        fractional value, so sums computed in SQL are exact on every backend.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        amount = value if isinstance(value, Decimal) else to_money(value)
        if not is_whole_cents(amount):
            raise ValueError(f"Refusing to store sub-cent amount {amount}")
        return int(amount.quantize(CENT) * 100)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return money_from_cents(int(value))


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime persisted as naive UTC.

    SQLite drops tzinfo on round trip; normalising on both sides keeps
    deadline comparisons between stored and clock-supplied values valid.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime requires a timezone-aware datetime")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
