"""Tests for statement row normalization and deduplication."""

from datetime import date

import pytest

from src.models import BankCode, Direction
from src.services.normalization import (
    NormalizationError,
    compute_dedup_hash,
    extract_document_number,
    normalize_description,
    normalize_row,
    normalize_transactions,
    parse_date,
)
from src.services.parsing import RawTransaction

ACCOUNT = "00-123-45678-01"


def _rows() -> list[RawTransaction]:
    rows = [
        RawTransaction(fecha=f"{day:02d}/03/2024", descripcion=f"PAGO PROVEEDOR {day}", monto=f"-{day}.000", linea=day)
        for day in range(1, 10)
    ]
    # Same movement exported twice
    rows.append(RawTransaction(fecha="01/03/2024", descripcion="PAGO PROVEEDOR 1", monto="-1.000", linea=10))
    return rows


class TestNormalizeDescription:
    def test_accents_case_and_abbreviations(self) -> None:
        assert normalize_description("TEF Pago  Proveedor Ñuñoa") == (
            "TRANSFERENCIA ELECTRONICA PAGO PROVEEDOR NUNOA"
        )

    def test_noise_is_removed(self) -> None:
        assert normalize_description("compra *** tienda (123) #norte") == "COMPRA TIENDA NORTE"


class TestParseDate:
    def test_bank_format(self) -> None:
        assert parse_date("05/03/2024", "%d/%m/%Y") == date(2024, 3, 5)

    def test_fallback_iso(self) -> None:
        assert parse_date("2024-03-05", "%d/%m/%Y") == date(2024, 3, 5)

    def test_two_digit_year_pivot(self) -> None:
        assert parse_date("05/03/24") == date(2024, 3, 5)
        assert parse_date("01/01/99") == date(1999, 1, 1)

    @pytest.mark.parametrize("value", ["", None, "31/02/2024", "ayer"])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValueError):
            parse_date(value)


def test_extract_document_number_strips_leading_zeros() -> None:
    assert extract_document_number("PAGO FACTURA 004521") == "4521"
    assert extract_document_number("FOLIO: 77") == "77"
    assert extract_document_number("PAGO SIN REFERENCIA") is None


def test_dedup_hash_is_stable_and_amount_sensitive() -> None:
    first = compute_dedup_hash(ACCOUNT, date(2024, 3, 1), -1000, "PAGO")
    assert first == compute_dedup_hash(ACCOUNT, date(2024, 3, 1), -1000, "PAGO")
    assert first != compute_dedup_hash(ACCOUNT, date(2024, 3, 1), 1000, "PAGO")
    assert len(first) == 64


class TestNormalizeRow:
    def test_cargo_row(self) -> None:
        raw = RawTransaction(
            fecha="01/03/2024",
            descripcion="TRANSF A DISTRIBUIDORA 76.086.428-5 FACT 4521",
            monto="-150.000",
            saldo="850.000",
            linea=4,
        )
        record = normalize_row(raw, BankCode.BANCO_CHILE, account_id=ACCOUNT)

        assert record.fecha == date(2024, 3, 1)
        assert record.monto == -150_000
        assert record.tipo is Direction.CARGO
        assert record.saldo == 850_000
        assert record.rut_contraparte == "76086428-5"
        assert record.numero_documento == "4521"
        assert record.descripcion_normalizada.startswith("TRANSFERENCIA A DISTRIBUIDORA")

    def test_usd_minor_units(self) -> None:
        raw = RawTransaction(fecha="2024-03-01", descripcion="WIRE IN", monto="1.234,56")
        record = normalize_row(raw, BankCode.BCI, account_id=ACCOUNT, currency="usd")
        assert record.monto == 123_456
        assert record.tipo is Direction.ABONO
        assert record.currency == "USD"

    def test_zero_amount_names_the_field(self) -> None:
        raw = RawTransaction(fecha="01/03/2024", descripcion="AJUSTE", monto="0", linea=7)
        with pytest.raises(NormalizationError) as excinfo:
            normalize_row(raw, BankCode.BANCO_CHILE, account_id=ACCOUNT)
        assert excinfo.value.field == "monto"
        assert excinfo.value.linea == 7

    def test_bad_date_names_the_field(self) -> None:
        raw = RawTransaction(fecha="99/99/2024", descripcion="X", monto="100")
        with pytest.raises(NormalizationError) as excinfo:
            normalize_row(raw, BankCode.BANCO_CHILE, account_id=ACCOUNT)
        assert excinfo.value.field == "fecha"


class TestNormalizeTransactions:
    def test_duplicate_row_collapses(self) -> None:
        result = normalize_transactions(_rows(), BankCode.BANCO_CHILE, account_id=ACCOUNT)

        assert len(result.records) == 9
        assert result.duplicates == 1
        assert not result.errors

    def test_reimport_is_idempotent(self) -> None:
        first = normalize_transactions(_rows(), BankCode.BANCO_CHILE, account_id=ACCOUNT)
        second = normalize_transactions(
            _rows(),
            BankCode.BANCO_CHILE,
            account_id=ACCOUNT,
            existing_hashes={record.dedup_hash for record in first.records},
        )

        assert second.records == []
        assert second.duplicates == 10

    def test_bad_rows_are_reported_not_fatal(self) -> None:
        rows = [
            *_rows()[:2],
            RawTransaction(fecha="01/03/2024", descripcion="SIN MONTO", monto="abc", linea=42),
        ]
        result = normalize_transactions(rows, "bancochile", account_id=ACCOUNT)

        assert len(result.records) == 2
        assert [error.to_dict()["linea"] for error in result.errors] == [42]
        assert result.errors[0].to_dict()["field"] == "monto"
