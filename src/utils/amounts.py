"""Money parsing for bank-formatted amount text."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# ISO 4217 minor-unit exponents (UF is quoted with four decimals)
CURRENCY_EXPONENTS: dict[str, int] = {
    "CLP": 0,
    "USD": 2,
    "EUR": 2,
    "UF": 4,
}

_DIGITS = re.compile(r"[\d.,]+")


class AmountFormatError(ValueError):
    """Raised when an amount string cannot be interpreted."""


def parse_amount(value: str | None) -> Decimal:
    """Parse amounts such as ``1.234.567``, ``-1.234,56``, ``$ 15.000`` or ``(2.500)``.

    A single dot followed by exactly three digits is a thousands separator,
    matching Chilean bank exports where CLP amounts carry no decimals.
    """
    if value is None:
        raise AmountFormatError("Amount is required")
    text = value.strip()
    if not text:
        raise AmountFormatError("Amount is empty")

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = re.sub(r"(?i)clp|\$|\s", "", text)
    if text.endswith("-"):
        negative = True
        text = text[:-1]
    if text.startswith("-"):
        negative = True
        text = text[1:]
    elif text.startswith("+"):
        text = text[1:]

    if not _DIGITS.fullmatch(text) or not any(ch.isdigit() for ch in text):
        raise AmountFormatError(f"Invalid amount: {value!r}")

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        tail = text.rpartition(",")[2]
        if text.count(",") == 1 and len(tail) != 3:
            text = text.replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "." in text:
        tail = text.rpartition(".")[2]
        if text.count(".") > 1 or len(tail) == 3:
            text = text.replace(".", "")

    try:
        amount = Decimal(text)
    except InvalidOperation as exc:
        raise AmountFormatError(f"Invalid amount: {value!r}") from exc
    return -amount if negative else amount


def to_minor_units(amount: Decimal, currency: str = "CLP") -> int:
    """Convert a Decimal amount to integer minor units using ROUND_HALF_UP."""
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), 2)
    scaled = (amount * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)
