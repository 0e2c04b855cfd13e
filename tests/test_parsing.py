"""Tests for bank statement parsing."""

import io
from datetime import datetime

import pytest
from openpyxl import Workbook

from src.models import BankCode, FileFormat
from src.services.parsing import (
    CorruptFile,
    EmptyStatement,
    UnsupportedFormat,
    detect_delimiter,
    detect_format,
    fold_text,
    get_layout,
    parse_csv_text,
    parse_pdf_text,
    parse_statement,
)

BANCO_CHILE_CSV = """Cartola Cuenta Corriente N° 00-123-45678-01
Saldo Anterior: 1.000.000
Fecha;Descripción;Cargos;Abonos;Saldo
01/03/2024;TRANSFERENCIA A DISTRIBUIDORA LOS ANDES 76.086.428-5;150.000;;850.000
;PAGO FACTURA 4521;;;
05/03/2024;DEPOSITO CLIENTE ACME;;500.000;1.350.000
08/03/2024;COMISION MANTENCION;4.500;;1.345.500
Total;;154.500;500.000;
Saldo Final: 1.345.500
"""

BANCO_CHILE_PDF_TEXT = """BANCO DE CHILE
Cuenta Corriente N° 00-123-45678-01
Saldo Anterior 1.000.000
FECHA DESCRIPCION CARGOS ABONOS SALDO
01/03/2024 TRANSFERENCIA A DISTRIBUIDORA 150.000 850.000
LOS ANDES SPA
05/03/2024 DEPOSITO CLIENTE ACME 500.000 1.350.000
Página 1 de 1
"""


def test_fold_text_strips_accents_and_spacing() -> None:
    assert fold_text("  Depósito   CLIENTE Ñuñoa ") == "deposito cliente nunoa"


def test_get_layout_rejects_unknown_bank() -> None:
    with pytest.raises(UnsupportedFormat):
        get_layout("itau")


class TestDetectFormat:
    def test_pdf_magic_bytes(self) -> None:
        assert detect_format(b"%PDF-1.7\n...") is FileFormat.PDF

    def test_csv_text(self) -> None:
        assert detect_format(BANCO_CHILE_CSV.encode("utf-8")) is FileFormat.CSV

    def test_empty_file(self) -> None:
        with pytest.raises(EmptyStatement):
            detect_format(b"   \n")

    def test_xlsx_magic_bytes(self) -> None:
        assert detect_format(b"PK\x03\x04rest-of-zip") is FileFormat.EXCEL

    def test_legacy_xls_is_unsupported(self) -> None:
        with pytest.raises(UnsupportedFormat):
            detect_format(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1rest")

    def test_xlsx_extension_without_header_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            detect_format(b"Fecha;Descripcion;Monto\n", "cartola.xlsx")

    def test_pdf_extension_without_header_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            detect_format(b"not really a pdf", "cartola.pdf")

    def test_text_without_columns_is_unsupported(self) -> None:
        with pytest.raises(UnsupportedFormat):
            detect_format(b"hello world")


def test_detect_delimiter_prefers_consistent_counts() -> None:
    lines = ["a;b;c", "1;2,5;3", "4;5;6"]
    assert detect_delimiter(lines) == ";"


class TestCsvParsing:
    def test_rows_header_and_balances(self) -> None:
        statement = parse_csv_text(BANCO_CHILE_CSV, get_layout(BankCode.BANCO_CHILE))

        assert statement.file_format is FileFormat.CSV
        assert statement.account_number == "001234567801"
        assert statement.saldo_inicial == "1.000.000"
        assert statement.saldo_final == "1.345.500"
        assert [row.monto for row in statement.transactions] == ["-150.000", "500.000", "-4.500"]

    def test_wrapped_description_is_merged(self) -> None:
        statement = parse_csv_text(BANCO_CHILE_CSV, get_layout(BankCode.BANCO_CHILE))

        first = statement.transactions[0]
        assert first.descripcion.endswith("PAGO FACTURA 4521")
        assert first.saldo == "850.000"

    def test_totals_row_is_ignored(self) -> None:
        statement = parse_csv_text(BANCO_CHILE_CSV, get_layout(BankCode.BANCO_CHILE))
        assert all(not row.descripcion.lower().startswith("total") for row in statement.transactions)
        assert len(statement.transactions) == 3

    def test_single_amount_column(self) -> None:
        text = "Fecha,Detalle,Monto\n2024-03-02,PAGO PROVEEDOR,-25.000\n2024-03-03,ABONO VENTA,40.000\n"
        statement = parse_csv_text(text, get_layout(BankCode.BCI))
        assert [row.monto for row in statement.transactions] == ["-25.000", "40.000"]

    def test_missing_header_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            parse_csv_text("a;b;c\n1;2;3\n", get_layout(BankCode.SANTANDER))


class TestPdfTextParsing:
    def test_wrapped_lines_and_running_balance_signs(self) -> None:
        statement = parse_pdf_text(BANCO_CHILE_PDF_TEXT, get_layout(BankCode.BANCO_CHILE))

        assert statement.account_number == "001234567801"
        assert len(statement.transactions) == 2

        cargo, abono = statement.transactions
        assert cargo.descripcion == "TRANSFERENCIA A DISTRIBUIDORA LOS ANDES SPA"
        assert cargo.monto == "-150.000"
        assert cargo.saldo == "850.000"
        assert abono.monto == "500.000"

    def test_page_markers_close_open_rows(self) -> None:
        text = BANCO_CHILE_PDF_TEXT + "texto de pie de pagina\n"
        statement = parse_pdf_text(text, get_layout(BankCode.BANCO_CHILE))
        assert statement.transactions[-1].descripcion == "DEPOSITO CLIENTE ACME"

    def test_trailing_minus_marks_cargo(self) -> None:
        text = "02/03/2024 GIRO CAJERO 20.000-\n"
        statement = parse_pdf_text(text, get_layout(BankCode.BANCO_CHILE))
        assert statement.transactions[0].monto == "-20.000"


class TestParseStatement:
    def test_csv_dispatch(self) -> None:
        statement = parse_statement(BANCO_CHILE_CSV.encode("utf-8"), "bancochile")
        assert statement.bank is BankCode.BANCO_CHILE
        assert len(statement.transactions) == 3

    def test_latin1_content(self) -> None:
        statement = parse_statement(BANCO_CHILE_CSV.encode("latin-1"), BankCode.BANCO_CHILE)
        assert len(statement.transactions) == 3

    def test_header_only_is_empty(self) -> None:
        with pytest.raises(EmptyStatement):
            parse_statement(b"Fecha;Descripcion;Monto\n", BankCode.BANCO_CHILE)

    def test_unknown_bank(self) -> None:
        with pytest.raises(UnsupportedFormat):
            parse_statement(BANCO_CHILE_CSV.encode("utf-8"), "itau")

    def test_garbage_pdf_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            parse_statement(b"%PDF-1.4 garbage", BankCode.BANCO_CHILE)

    def test_format_given_as_string(self) -> None:
        statement = parse_statement(BANCO_CHILE_CSV.encode("utf-8"), "bancochile", "csv")
        assert statement.file_format is FileFormat.CSV
        assert len(statement.transactions) == 3

    def test_pdf_given_as_string_takes_pdf_path(self) -> None:
        with pytest.raises(CorruptFile):
            parse_statement(b"%PDF-1.4 garbage", BankCode.BANCO_CHILE, "pdf")

    def test_unknown_format_string(self) -> None:
        with pytest.raises(UnsupportedFormat):
            parse_statement(BANCO_CHILE_CSV.encode("utf-8"), "bancochile", "docx")


def build_workbook(rows: list[list[object]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestExcelParsing:
    ROWS: list[list[object]] = [
        ["Cartola Cuenta Corriente N° 00-123-45678-01"],
        ["Fecha", "Descripción", "Cargos", "Abonos", "Saldo"],
        [datetime(2024, 3, 1), "TRANSFERENCIA A DISTRIBUIDORA LOS ANDES 76.086.428-5", 150000, None, 850000],
        [None, "PAGO FACTURA 4521", None, None, None],
        [datetime(2024, 3, 5), "DEPOSITO CLIENTE ACME", None, 500000, 1350000],
        [datetime(2024, 3, 8), "COMISION MANTENCION", 4500.5, None, 1345499.5],
        ["Total", None, 154500.5, 500000, None],
    ]

    def test_workbook_is_detected_and_parsed(self) -> None:
        content = build_workbook(self.ROWS)

        assert detect_format(content, "cartola.xlsx") is FileFormat.EXCEL
        statement = parse_statement(content, BankCode.BANCO_CHILE)

        assert statement.file_format is FileFormat.EXCEL
        assert statement.account_number == "001234567801"
        assert [row.fecha for row in statement.transactions] == ["01/03/2024", "05/03/2024", "08/03/2024"]
        assert [row.monto for row in statement.transactions] == ["-150000", "500000", "-4500,5"]

    def test_wrapped_description_row_is_merged(self) -> None:
        statement = parse_statement(build_workbook(self.ROWS), "bancochile", FileFormat.EXCEL)

        first = statement.transactions[0]
        assert first.descripcion.endswith("PAGO FACTURA 4521")
        assert first.saldo == "850000"

    def test_dates_follow_bank_layout(self) -> None:
        content = build_workbook(
            [["Fecha", "Detalle", "Monto"], [datetime(2024, 3, 2), "PAGO PROVEEDOR", -25000]]
        )
        statement = parse_statement(content, BankCode.BCI)
        layout = get_layout(BankCode.BCI)
        assert statement.transactions[0].fecha == datetime(2024, 3, 2).strftime(layout.date_format)
        assert statement.transactions[0].monto == "-25000"

    def test_sheet_without_header_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            parse_statement(build_workbook([["a", "b"], [1, 2]]), BankCode.SANTANDER)

    def test_broken_zip_is_corrupt(self) -> None:
        with pytest.raises(CorruptFile):
            parse_statement(b"PK\x03\x04not-a-real-archive", BankCode.BANCO_CHILE)
