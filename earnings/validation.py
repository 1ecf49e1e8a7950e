from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, TypeVar

from .exceptions import ValidationError

MAX_PAGE_SIZE = 200

E = TypeVar("E", bound=Enum)


def to_amount(value: Any) -> Decimal:
    """Coerce to a finite Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount {value!r}", reason="invalid_amount")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount {value!r}", reason="invalid_amount")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount {value!r}", reason="invalid_amount")
    return amount


def positive_amount(value: Any) -> Decimal:
    amount = to_amount(value)
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}", reason="non_positive_amount")
    return amount


def parse_enum(enum_cls: type[E], value: Any, reason: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown value {value!r}; expected one of: {allowed}", reason=reason)


def check_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", reason="invalid_page")
    if offset < 0:
        raise ValidationError("offset cannot be negative", reason="invalid_page")
