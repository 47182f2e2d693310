"""
Money helpers — parse and format in-game currency amounts.

The server prints amounts like "$1,250", "1.5k" or "2m"; players type
the same shorthand into /add and /payout.
"""

import re
from typing import Optional

_SUFFIXES = {
    "k": 1_000,
    "m": 1_000_000,
    "b": 1_000_000_000,
    "t": 1_000_000_000_000,
}

_AMOUNT_RE = re.compile(r"^(\d+(?:\.\d+)?)([kmbt]?)$")


def parse_money_amount(text) -> Optional[float]:
    """Parse "1,500", "$2.5k", "3M" into a float. Returns None when unparseable."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text)

    cleaned = str(text).strip().lower().replace(",", "").lstrip("$")
    match = _AMOUNT_RE.match(cleaned)
    if not match:
        return None

    value = float(match.group(1))
    suffix = match.group(2)
    if suffix:
        value *= _SUFFIXES[suffix]
    return value


def format_number_short(value: float) -> str:
    """1500 → "1.50k", 2000000 → "2m", 999.9 → "999"."""
    for suffix, size in (("t", 1e12), ("b", 1e9), ("m", 1e6), ("k", 1e3)):
        if value >= size:
            return f"{value / size:.2f}".removesuffix(".00") + suffix
    return str(int(value // 1))


def format_pay_amount(value: float) -> str:
    """Exact amount for a /pay command: 1235 → "1235", 1234.5 → "1234.5"."""
    return f"{value:.2f}".rstrip("0").rstrip(".")


def format_money(value: float) -> str:
    """Full form with thousands separators, e.g. "$1,234.50"."""
    if float(value).is_integer():
        return f"${int(value):,}"
    return f"${value:,.2f}"


def format_uptime(seconds: float) -> str:
    if seconds is None or seconds < 0:
        return "N/A"
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"
