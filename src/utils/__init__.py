"""Utility functions and helpers."""

from .amounts import AmountFormatError, parse_amount, to_minor_units
from .exceptions import (
    raise_bad_request,
    raise_conflict,
    raise_not_found,
    raise_too_large,
)
from .rut import extract_rut, is_valid_rut, normalize_rut

__all__ = [
    "AmountFormatError",
    "extract_rut",
    "is_valid_rut",
    "normalize_rut",
    "parse_amount",
    "raise_bad_request",
    "raise_conflict",
    "raise_not_found",
    "raise_too_large",
    "to_minor_units",
]
