"""Bank statement parsing.

Turns raw statement files into ordered raw transaction rows. The strategies
are PDF text layout, delimited CSV exports and .xlsx workbooks; the bank
decides the layout details (date columns, ignored lines, header metadata).
Banks are a closed set of tags resolved through ``BANK_LAYOUTS``; a new bank is a new
entry in that table.

Parsing is a pure transform: nothing here touches the database.
"""

import csv
import io
import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import pdfplumber
from openpyxl import load_workbook

from src.logger import get_logger
from src.models import BankCode, FileFormat
from src.utils.amounts import AmountFormatError, parse_amount

logger = get_logger(__name__)


class ParseError(Exception):
    """Statement could not be turned into transaction rows."""


class UnsupportedFormat(ParseError):
    """File type or bank layout is not supported."""


class CorruptFile(ParseError):
    """File is damaged, undecodable, or lacks the expected structure."""


class EmptyStatement(ParseError):
    """Statement was readable but contains no transaction rows."""


@dataclass(frozen=True)
class RawTransaction:
    """One statement row as text, before normalization.

    ``monto`` is signed: cargos (debits) carry a leading minus.
    """

    fecha: str
    descripcion: str
    monto: str
    saldo: str | None = None
    referencia: str | None = None
    fecha_valor: str | None = None
    linea: int = 0


@dataclass
class ParsedStatement:
    bank: BankCode
    file_format: FileFormat
    transactions: list[RawTransaction] = field(default_factory=list)
    account_number: str | None = None
    saldo_inicial: str | None = None
    saldo_final: str | None = None


@dataclass(frozen=True)
class BankLayout:
    """Per-bank layout description shared by both parsing strategies."""

    bank: BankCode
    date_format: str
    date_token: str
    has_value_date: bool = False


_DMY_SLASH = r"\d{2}/\d{2}/\d{4}"
_DMY_DASH = r"\d{2}-\d{2}-\d{4}"
_DMY_SHORT = r"\d{2}/\d{2}/\d{2}"
_ISO = r"\d{4}-\d{2}-\d{2}"

BANK_LAYOUTS: dict[BankCode, BankLayout] = {
    BankCode.BANCO_CHILE: BankLayout(BankCode.BANCO_CHILE, "%d/%m/%Y", _DMY_SLASH),
    BankCode.BANCO_ESTADO: BankLayout(
        BankCode.BANCO_ESTADO, "%d-%m-%Y", rf"(?:{_DMY_DASH}|{_DMY_SHORT})"
    ),
    BankCode.SANTANDER: BankLayout(
        BankCode.SANTANDER, "%d/%m/%Y", _DMY_SLASH, has_value_date=True
    ),
    BankCode.BCI: BankLayout(
        BankCode.BCI, "%Y-%m-%d", rf"(?:{_ISO}|{_DMY_SLASH})", has_value_date=True
    ),
}

# Headers, footers, page markers and totals; any of these also ends a wrapped description
IGNORE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^p[aá]gina\s+\d+",
        r"^p[aá]g\.\s*\d+",
        r"^page\s+\d+",
        r"^total",
        r"^saldo\s+(anterior|inicial|final|actual|disponible|contable)",
        r"^fecha\s+(valor\s+)?(descripci[oó]n|detalle|glosa)",
        r"^movimientos",
        r"^-+$",
        r"^=+$",
    )
)

HEADER_PATTERNS = {
    "account_number": re.compile(r"(?:cuenta|cta\.?)\s*(?:corriente|vista)?\s*(?:n[°º]|nro\.?)?\s*[:#]?\s*(\d[\d-]{4,})", re.IGNORECASE),
    "saldo_inicial": re.compile(r"saldo\s+(?:anterior|inicial)\s*[:#]?\s*\$?\s*(-?[\d.,]+)", re.IGNORECASE),
    "saldo_final": re.compile(r"saldo\s+(?:final|actual)\s*[:#]?\s*\$?\s*(-?[\d.,]+)", re.IGNORECASE),
}

# Grouped thousands or up to three digits; longer bare numbers stay in the description
AMOUNT_TOKEN = re.compile(r"^-?(?:\d{1,3}(?:\.\d{3})+|\d{1,3})(?:,\d{1,2})?-?$")

CREDIT_HINTS = (
    "abono",
    "deposito",
    "transferencia de",
    "traspaso de",
    "recibida",
    "recibido",
    "devolucion",
    "reverso",
)

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "fecha": ("fecha", "fecha movimiento", "fecha operacion", "fecha transaccion", "date"),
    "fecha_valor": ("fecha valor", "fecha contable"),
    "descripcion": ("descripcion", "detalle", "glosa", "concepto", "description"),
    "cargo": ("cargo", "cargos", "debito", "debitos", "debe", "giros", "egreso"),
    "abono": ("abono", "abonos", "credito", "creditos", "haber", "depositos", "ingreso"),
    "monto": ("monto", "importe", "valor", "amount"),
    "saldo": ("saldo", "saldo disponible", "saldo contable", "balance"),
    "referencia": (
        "referencia",
        "n documento",
        "nro documento",
        "numero documento",
        "documento",
        "n operacion",
    ),
}

CSV_DELIMITERS = (";", ",", "\t", "|")


def fold_text(value: str) -> str:
    """Lowercase, accent-free, single-spaced text for loose comparisons."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def get_layout(bank: BankCode | str) -> BankLayout:
    try:
        code = BankCode(bank)
    except ValueError as exc:
        raise UnsupportedFormat(f"Unsupported bank: {bank}") from exc
    return BANK_LAYOUTS[code]


# =============================================================================
# Format detection
# =============================================================================


def decode_text(content: bytes | str) -> str:
    """Decode statement bytes as UTF-8 (BOM tolerated) with a Latin-1 fallback."""
    if isinstance(content, str):
        text = content
    else:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("latin-1")
    if "\x00" in text:
        raise CorruptFile("File contains binary data")
    return text


def detect_delimiter(lines: list[str]) -> str | None:
    """Pick the delimiter with the most consistent non-zero count across sample lines."""
    sample = [line for line in lines if line.strip()][:10]
    if not sample:
        return None
    best: tuple[int, int, int] | None = None
    chosen = None
    for delimiter in CSV_DELIMITERS:
        counts = [line.count(delimiter) for line in sample]
        if max(counts) == 0:
            continue
        mode = max(set(counts), key=counts.count)
        if mode == 0:
            continue
        score = (counts.count(mode), mode, -CSV_DELIMITERS.index(delimiter))
        if best is None or score > best:
            best = score
            chosen = delimiter
    return chosen


def detect_format(content: bytes | str, filename: str | None = None) -> FileFormat:
    """Infer the statement file format from magic bytes, then from text structure."""
    if isinstance(content, bytes):
        if not content.strip():
            raise EmptyStatement("File is empty")
        if content.startswith(b"%PDF-"):
            return FileFormat.PDF
        if content.startswith(b"PK\x03\x04"):
            return FileFormat.EXCEL
        if content.startswith(b"\xd0\xcf\x11\xe0"):
            raise UnsupportedFormat("Legacy .xls workbooks are not supported; save the statement as .xlsx")
        if filename and filename.lower().endswith(".pdf"):
            raise CorruptFile("File has a .pdf extension but no PDF header")
        if filename and filename.lower().endswith(".xlsx"):
            raise CorruptFile("File has a .xlsx extension but is not a workbook")
    elif not content.strip():
        raise EmptyStatement("File is empty")

    try:
        text = decode_text(content)
    except CorruptFile as exc:
        raise UnsupportedFormat("Binary file of unknown type") from exc
    if detect_delimiter(text.splitlines()) is None:
        raise UnsupportedFormat("Unrecognized statement format")
    return FileFormat.CSV


# =============================================================================
# PDF strategy
# =============================================================================


def extract_pdf_text(content: bytes) -> str:
    """Extract the text layer of every page."""
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as exc:
        raise CorruptFile(f"Unable to read PDF: {exc}") from exc

    text = "\n".join(pages)
    if not text.strip():
        raise CorruptFile("PDF has no extractable text layer")
    return text


def _extract_header(lines: list[str], statement: ParsedStatement) -> None:
    for line in lines:
        for key, pattern in HEADER_PATTERNS.items():
            if getattr(statement, key) is not None:
                continue
            match = pattern.search(line)
            if match:
                value = match.group(1)
                setattr(statement, key, value.replace("-", "") if key == "account_number" else value)


def _is_ignored(line: str) -> bool:
    return any(pattern.search(line) for pattern in IGNORE_PATTERNS)


def _split_amounts(rest: str) -> tuple[str, list[str]]:
    """Split trailing amount tokens (at most three) off a line remainder."""
    tokens = re.sub(r"\$\s*", "", rest).split()
    amounts: list[str] = []
    while tokens and len(amounts) < 3 and AMOUNT_TOKEN.match(tokens[-1]):
        amounts.insert(0, tokens.pop())
    return " ".join(tokens), amounts


def _looks_like_credit(description: str) -> bool:
    folded = fold_text(description)
    return any(hint in folded for hint in CREDIT_HINTS)


def _to_decimal(value: str | None) -> Decimal | None:
    if value is None:
        return None
    try:
        return parse_amount(value)
    except AmountFormatError:
        return None


def _signed_movement(
    movement: str,
    saldo: str | None,
    previous_saldo: Decimal | None,
    description: str,
) -> str:
    """Resolve the sign of an unsigned movement token."""
    unsigned = movement.strip("-")
    if movement.startswith("-") or movement.endswith("-"):
        return f"-{unsigned}"

    value = _to_decimal(unsigned)
    current = _to_decimal(saldo)
    if value is not None and current is not None and previous_saldo is not None:
        if previous_saldo - value == current:
            return f"-{unsigned}"
        if previous_saldo + value == current:
            return unsigned

    return unsigned if _looks_like_credit(description) else f"-{unsigned}"


def _build_pdf_row(
    fecha: str,
    fecha_valor: str | None,
    description: str,
    amounts: list[str],
    previous_saldo: Decimal | None,
    line_no: int,
) -> RawTransaction:
    saldo: str | None = None
    if len(amounts) == 3:
        cargo, abono, balance = (_to_decimal(token) for token in amounts)
        consistent = (
            previous_saldo is not None
            and None not in (cargo, abono, balance)
            and previous_saldo - abs(cargo) + abs(abono) == balance
        )
        if not consistent:
            # Leading token was a trailing number of the description
            description = f"{description} {amounts[0]}"
            amounts = amounts[1:]

    if len(amounts) == 3:
        saldo = amounts[2]
        net = abs(abono) - abs(cargo)
        monto = str(net) if cargo and abono else (f"-{amounts[0].strip('-')}" if cargo else amounts[1])
    elif len(amounts) == 2:
        movement, saldo = amounts
        monto = _signed_movement(movement, saldo, previous_saldo, description)
    else:
        monto = _signed_movement(amounts[0], None, previous_saldo, description)

    referencia = None
    words = description.split()
    if words and words[-1].isdigit() and len(words[-1]) >= 4:
        referencia = words[-1]

    return RawTransaction(
        fecha=fecha,
        descripcion=description,
        monto=monto,
        saldo=saldo,
        referencia=referencia,
        fecha_valor=fecha_valor,
        linea=line_no,
    )


def parse_pdf_text(text: str, layout: BankLayout) -> ParsedStatement:
    """Parse extracted PDF text with the bank's line layout.

    A line that starts with a date opens a row; following plain-text lines are
    wrapped description cells and are merged into the open row.
    """
    statement = ParsedStatement(bank=layout.bank, file_format=FileFormat.PDF)
    lines = [line.strip() for line in text.splitlines()]
    _extract_header(lines, statement)

    value_date = rf"(?:\s+(?P<fecha_valor>{layout.date_token}))?" if layout.has_value_date else ""
    row_start = re.compile(rf"^(?P<fecha>{layout.date_token}){value_date}\s+(?P<rest>.+)$")

    previous_saldo = _to_decimal(statement.saldo_inicial)
    open_row: dict | None = None
    rows: list[dict] = []

    for line_no, line in enumerate(lines, start=1):
        if not line:
            continue
        if _is_ignored(line):
            open_row = None
            continue

        match = row_start.match(line)
        if match:
            description, amounts = _split_amounts(match.group("rest"))
            if not amounts:
                logger.debug("PDF row without amounts skipped", bank=layout.bank.value, line=line_no)
                open_row = None
                continue
            open_row = {
                "fecha": match.group("fecha"),
                "fecha_valor": match.groupdict().get("fecha_valor"),
                "description": description,
                "amounts": amounts,
                "line_no": line_no,
            }
            rows.append(open_row)
        elif open_row is not None:
            open_row["description"] = f"{open_row['description']} {line}".strip()

    for row in rows:
        raw = _build_pdf_row(
            row["fecha"],
            row["fecha_valor"],
            row["description"],
            row["amounts"],
            previous_saldo,
            row["line_no"],
        )
        statement.transactions.append(raw)
        if raw.saldo is not None:
            previous_saldo = _to_decimal(raw.saldo)

    return statement


# =============================================================================
# CSV strategy
# =============================================================================


def _header_key(cell: str) -> str:
    folded = fold_text(cell)
    return " ".join(re.sub(r"[^a-z0-9 ]", " ", folded).split())


def _map_header(row: list[str]) -> dict[str, int] | None:
    mapping: dict[str, int] = {}
    for index, cell in enumerate(row):
        key = _header_key(cell)
        for column, aliases in COLUMN_ALIASES.items():
            if column not in mapping and key in aliases:
                mapping[column] = index
                break
    has_amount = "monto" in mapping or "cargo" in mapping or "abono" in mapping
    if "fecha" in mapping and "descripcion" in mapping and has_amount:
        return mapping
    return None


def _cell(row: list[str], mapping: dict[str, int], column: str) -> str:
    index = mapping.get(column)
    if index is None or index >= len(row):
        return ""
    return row[index].strip()


def _csv_amount(row: list[str], mapping: dict[str, int]) -> str:
    cargo = _cell(row, mapping, "cargo")
    abono = _cell(row, mapping, "abono")
    if cargo and _to_decimal(cargo):
        return f"-{cargo.strip('-').strip()}"
    if abono and _to_decimal(abono):
        return abono.strip("+").strip()
    return _cell(row, mapping, "monto")


def _parse_table(
    rows: Iterable[tuple[int, list[str]]],
    layout: BankLayout,
    statement: ParsedStatement,
) -> ParsedStatement:
    """Locate the header row through column aliases and read the movements below it.

    Shared by the CSV and Excel strategies; ``rows`` yields (line number, cells).
    """
    mapping: dict[str, int] | None = None
    date_pattern = re.compile(rf"^{layout.date_token}$|^{_DMY_SLASH}$|^{_DMY_DASH}$|^{_ISO}$")
    last: RawTransaction | None = None

    for line_no, row in rows:
        if not any(cell.strip() for cell in row):
            continue
        joined = " ".join(cell.strip() for cell in row if cell.strip())

        if mapping is None:
            mapping = _map_header(row)
            if mapping is None:
                _extract_header([joined], statement)
            continue

        fecha = _cell(row, mapping, "fecha")
        description = _cell(row, mapping, "descripcion")
        if fold_text(fecha).startswith("total") or fold_text(description).startswith("total"):
            continue
        if not date_pattern.match(fecha):
            if not fecha and description and last is not None and not _csv_amount(row, mapping):
                # Wrapped description cell exported as its own row
                merged = RawTransaction(
                    fecha=last.fecha,
                    descripcion=f"{last.descripcion} {description}",
                    monto=last.monto,
                    saldo=last.saldo,
                    referencia=last.referencia,
                    fecha_valor=last.fecha_valor,
                    linea=last.linea,
                )
                statement.transactions[-1] = merged
                last = merged
            else:
                _extract_header([joined], statement)
            continue

        last = RawTransaction(
            fecha=fecha,
            descripcion=description,
            monto=_csv_amount(row, mapping),
            saldo=_cell(row, mapping, "saldo") or None,
            referencia=_cell(row, mapping, "referencia") or None,
            fecha_valor=_cell(row, mapping, "fecha_valor") or None,
            linea=line_no,
        )
        statement.transactions.append(last)

    if mapping is None:
        raise CorruptFile("No recognizable header row (fecha, descripcion, monto/cargo/abono)")
    return statement


def parse_csv_text(text: str, layout: BankLayout) -> ParsedStatement:
    """Parse a delimited export."""
    statement = ParsedStatement(bank=layout.bank, file_format=FileFormat.CSV)
    delimiter = detect_delimiter(text.splitlines())
    if delimiter is None:
        raise CorruptFile("No column delimiter found")

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    return _parse_table(enumerate(reader, start=1), layout, statement)


# =============================================================================
# Excel strategy
# =============================================================================


def _excel_number(value: int | float | Decimal) -> str:
    """Render a numeric cell the way the bank would print it."""
    if isinstance(value, int):
        return str(value)
    number = Decimal(str(value))
    if number == number.to_integral_value():
        return str(int(number))
    whole, _, fraction = format(number, "f").partition(".")
    if len(fraction) == 3:
        # A three-digit tail reads as a thousands group
        fraction += "0"
    return f"{whole},{fraction}"


def _excel_cell(value: Any, layout: BankLayout) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime | date):
        return value.strftime(layout.date_format)
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int | float | Decimal):
        return _excel_number(value)
    return str(value).strip()


def read_excel_rows(content: bytes, layout: BankLayout) -> list[tuple[int, list[str]]]:
    """Cell text of the first worksheet, one entry per spreadsheet row."""
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise CorruptFile(f"Unable to read Excel workbook: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        return [
            (line_no, [_excel_cell(value, layout) for value in row])
            for line_no, row in enumerate(sheet.iter_rows(values_only=True), start=1)
        ]
    finally:
        workbook.close()


def parse_excel(content: bytes, layout: BankLayout) -> ParsedStatement:
    """Parse an .xlsx cartola with the same header aliases as CSV exports."""
    statement = ParsedStatement(bank=layout.bank, file_format=FileFormat.EXCEL)
    return _parse_table(read_excel_rows(content, layout), layout, statement)


# =============================================================================
# Dispatch
# =============================================================================


def parse_statement(
    content: bytes | str,
    bank: BankCode | str,
    file_format: FileFormat | str | None = None,
    *,
    filename: str | None = None,
) -> ParsedStatement:
    """Parse a statement file for the given bank.

    Raises:
        UnsupportedFormat: unknown bank or file type
        CorruptFile: unreadable content or missing structure
        EmptyStatement: readable statement without transaction rows
    """
    layout = get_layout(bank)
    if file_format is None:
        resolved = detect_format(content, filename)
    else:
        try:
            resolved = FileFormat(file_format)
        except ValueError as exc:
            raise UnsupportedFormat(f"Unsupported file format: {file_format}") from exc

    if resolved in (FileFormat.PDF, FileFormat.EXCEL) and isinstance(content, str):
        raise CorruptFile(f"{resolved.value.upper()} content must be bytes")
    if resolved == FileFormat.PDF:
        statement = parse_pdf_text(extract_pdf_text(content), layout)
    elif resolved == FileFormat.EXCEL:
        statement = parse_excel(content, layout)
    else:
        statement = parse_csv_text(decode_text(content), layout)

    if not statement.transactions:
        raise EmptyStatement(f"No transactions found in {layout.bank.value} statement")

    logger.info(
        "Statement parsed",
        bank=layout.bank.value,
        file_format=resolved.value,
        rows=len(statement.transactions),
    )
    return statement
