"""
Currency minor-unit conversion.

Amounts are stored as integers in the currency's smallest unit. The number of
decimal places is a property of the currency, never of the provider.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import re
from typing import Optional, Union

DEFAULT_DECIMAL_PLACES = 2

CURRENCY_DECIMALS = {
    # Zero-decimal currencies (amounts in SMS are whole units)
    "RWF": 0,
    "CDF": 0,
    "TZS": 0,
    "BIF": 0,
    "XOF": 0,
    "XAF": 0,
    "UGX": 0,
    # Two-decimal currencies
    "GHS": 2,
    "KES": 2,
    "ZAR": 2,
    "ZMW": 2,
    "NGN": 2,
    "MZN": 2,
    "USD": 2,
    "EUR": 2,
}

# Display symbol and position for format_amount
CURRENCY_SYMBOLS = {
    "GHS": ("₵", True),
    "KES": ("KSh", True),
    "ZMW": ("K", True),
    "ZAR": ("R", True),
    "NGN": ("₦", True),
    "USD": ("$", True),
    "TZS": ("TSh", True),
    "UGX": ("USh", True),
    "RWF": ("FRw", False),
    "CDF": ("FC", False),
    "BIF": ("FBu", False),
    "XOF": ("FCFA", False),
    "XAF": ("FCFA", False),
    "EUR": ("€", False),
    "MZN": ("MT", False),
}

_AMOUNT_CLEANUP = re.compile(r"[,\s]")

Number = Union[Decimal, int, str]


def decimal_places(currency_code: str) -> int:
    """Get the number of minor-unit decimal places for a currency."""
    return CURRENCY_DECIMALS.get((currency_code or "").upper(), DEFAULT_DECIMAL_PLACES)


def parse_amount(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse an amount string as printed in an SMS.

    Strips thousands separators (commas and spaces) before conversion.

    Args:
        text: Amount text like "1,500.00" or "10 000"

    Returns:
        Decimal amount, or None if the text is not a number
    """
    if text is None:
        return None

    cleaned = _AMOUNT_CLEANUP.sub("", text).rstrip(".")
    if not cleaned:
        return None

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None

    if not value.is_finite():
        return None
    return value


def to_minor_units(amount: Number, currency_code: str) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        amount: Amount in major units (Decimal, int or numeric string)
        currency_code: ISO 4217 currency code

    Returns:
        Amount in the currency's smallest unit, rounded half-up

    Raises:
        ValueError: If the amount cannot be parsed
    """
    if isinstance(amount, str):
        parsed = parse_amount(amount)
        if parsed is None:
            raise ValueError(f"Invalid amount: {amount!r}")
        amount = parsed

    scaled = Decimal(amount).scaleb(decimal_places(currency_code))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(minor_units: int, currency_code: str) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    places = decimal_places(currency_code)
    return Decimal(int(minor_units)).scaleb(-places).quantize(Decimal(1).scaleb(-places))


def format_amount(minor_units: int, currency_code: str) -> str:
    """
    Format an amount for display.

    Returns:
        Formatted string like "₵50.00" or "1,500 FRw"
    """
    code = (currency_code or "").upper()
    places = decimal_places(code)
    formatted = f"{from_minor_units(minor_units, code):,.{places}f}"

    symbol, before = CURRENCY_SYMBOLS.get(code, (code, False))
    if before:
        return f"{symbol}{formatted}"
    return f"{formatted} {symbol}"
