"""Chilean RUT (Rol Único Tributario) helpers."""

import re

RUT_PATTERN = re.compile(r"\b(\d{1,2}\.?\d{3}\.?\d{3})\s?-?\s?([0-9Kk])\b")


def compute_check_digit(body: int) -> str:
    """Modulo 11 check digit for a RUT body."""
    total = 0
    factor = 2
    while body > 0:
        total += (body % 10) * factor
        body //= 10
        factor = 2 if factor == 7 else factor + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def normalize_rut(value: str | None) -> str | None:
    """Normalize a RUT to ``NNNNNNNN-D`` or return None when it is malformed."""
    if not value:
        return None
    cleaned = re.sub(r"[^0-9Kk]", "", value).upper()
    if len(cleaned) < 2:
        return None
    body, dv = cleaned[:-1], cleaned[-1]
    if not body.isdigit():
        return None
    return f"{int(body)}-{dv}"


def is_valid_rut(value: str | None) -> bool:
    normalized = normalize_rut(value)
    if normalized is None:
        return False
    body, dv = normalized.split("-")
    return compute_check_digit(int(body)) == dv


def extract_rut(text: str) -> str | None:
    """Return the first valid RUT found in free text, normalized."""
    for match in RUT_PATTERN.finditer(text or ""):
        candidate = normalize_rut(f"{match.group(1)}-{match.group(2)}")
        if candidate and is_valid_rut(candidate):
            return candidate
    return None
