from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

TOKEN_DECIMALS = 18
PRICE_DECIMALS = 8


def units_to_decimal(value: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Exact token amount for a base-unit integer (only the exponent changes)."""
    return Decimal(f"{int(value)}e-{decimals}")


def format_units(value: int, decimals: int = TOKEN_DECIMALS) -> str:
    """ethers-style formatting: 5 * 10**18 -> "5.0", 125 * 10**16 -> "1.25"."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(int(value)), 10 ** decimals)
    frac_s = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_s}"


def format_decimal(value: Decimal) -> str:
    s = f"{value.normalize():f}"
    return s if "." in s else s + ".0"


def day_label(timestamp_ms: int) -> str:
    d = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return f"{d.month:02d}/{d.day:02d}"
