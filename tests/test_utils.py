"""Tests for amount and RUT helpers."""

from decimal import Decimal

import pytest

from src.utils.amounts import AmountFormatError, parse_amount, to_minor_units
from src.utils.rut import compute_check_digit, extract_rut, is_valid_rut, normalize_rut


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1.234.567", Decimal("1234567")),
        ("-1.234,56", Decimal("-1234.56")),
        ("$ 15.000", Decimal("15000")),
        ("(2.500)", Decimal("-2500")),
        ("15.000-", Decimal("-15000")),
        ("1,5", Decimal("1.5")),
        ("12.5", Decimal("12.5")),
        ("1,234,567.89", Decimal("1234567.89")),
        ("CLP 900", Decimal("900")),
    ],
)
def test_parse_amount_formats(text: str, expected: Decimal) -> None:
    assert parse_amount(text) == expected


@pytest.mark.parametrize("text", [None, "", "   ", "abc", "-", "1.2.3x"])
def test_parse_amount_rejects_garbage(text) -> None:
    with pytest.raises(AmountFormatError):
        parse_amount(text)


def test_to_minor_units_rounds_half_up() -> None:
    assert to_minor_units(Decimal("150000.5")) == 150_001
    assert to_minor_units(Decimal("12.345"), "USD") == 1235
    assert to_minor_units(Decimal("-1.005"), "EUR") == -101


def test_check_digit() -> None:
    assert compute_check_digit(12345678) == "5"
    assert compute_check_digit(76086428) == "5"
    assert compute_check_digit(96505760) == "9"


def test_normalize_rut_formats() -> None:
    assert normalize_rut("76.086.428-5") == "76086428-5"
    assert normalize_rut("0076086428-5") == "76086428-5"
    assert normalize_rut("12345678k") == "12345678-K"
    assert normalize_rut("") is None
    assert normalize_rut("5") is None


def test_is_valid_rut() -> None:
    assert is_valid_rut("76.086.428-5")
    assert not is_valid_rut("76.086.428-4")
    assert not is_valid_rut(None)


def test_extract_rut_skips_invalid_candidates() -> None:
    text = "TRANSF 76.086.428-4 A 12.345.678-5 PAGO"
    assert extract_rut(text) == "12345678-5"
    assert extract_rut("PAGO SIN RUT") is None
