import secrets
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

CENT = Decimal("0.01")


def gen_transaction_id(purchaser_id) -> str:
    # e.g. TXN-42-20261018153012-9F2C0A7D11B4E6C3
    ts = timezone.now().strftime("%Y%m%d%H%M%S")
    return f"TXN-{purchaser_id}-{ts}-{secrets.token_hex(8).upper()}"


def to_decimal(amount) -> Decimal:
    """Parse a major-unit amount; floats go through ``str`` so 0.1 stays 0.1."""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def to_minor_units(amount) -> int:
    """Convert major units to paisa, rounding half-up on the cent."""
    value = to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(CENT)
