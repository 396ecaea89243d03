from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError

_CENT = Decimal("0.01")


def to_minor_units(value: Decimal | str | int | float) -> int:
    """Convert a decimal major-unit amount ("12.50") to integer minor units (1250)."""
    try:
        amount = Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    return int(amount * 100)


def format_minor_units(amount: int) -> str:
    return str((Decimal(amount) / 100).quantize(_CENT))
