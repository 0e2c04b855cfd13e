"""Normalization of parsed statement rows.

Converts raw rows into transaction records with integer minor-unit amounts,
calendar dates and matching-friendly descriptions, and collapses duplicates
using a stable hash over (account, date, amount, description).

Rows that cannot be normalized are skipped and reported; they never abort
the batch.
"""

import hashlib
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from src.logger import get_logger
from src.models import BankCode, Direction
from src.services.parsing import RawTransaction, fold_text, get_layout
from src.utils.amounts import AmountFormatError, parse_amount, to_minor_units
from src.utils.rut import extract_rut

logger = get_logger(__name__)

ABBREVIATIONS: dict[str, str] = {
    "TEF": "TRANSFERENCIA ELECTRONICA",
    "TRANSF": "TRANSFERENCIA",
    "TRF": "TRANSFERENCIA",
    "PAC": "PAGO AUTOMATICO CUENTA",
    "PAT": "PAGO AUTOMATICO TARJETA",
    "CHQ": "CHEQUE",
    "COM": "COMISION",
    "INT": "INTERES",
    "DIV": "DIVIDENDO",
    "DEP": "DEPOSITO",
    "RET": "RETIRO",
    "GTO": "GASTO",
    "ABN": "ABONO",
    "CRG": "CARGO",
    "SRV": "SERVICIO",
    "MANT": "MANTENCION",
    "SEG": "SEGURO",
    "CTA": "CUENTA",
    "NRO": "NUMERO",
    "REF": "REFERENCIA",
}

_ABBREVIATION_RE = re.compile(r"\b(" + "|".join(sorted(ABBREVIATIONS, key=len, reverse=True)) + r")\b")

CLEANUP_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\*+"), " "),
    (re.compile(r"\(\d+\)"), " "),
    (re.compile(r"(\d{2})/(\d{2})/(\d{2,4})"), r"\1-\2-\3"),
    (re.compile(r"[^A-Z0-9\-./ ]"), " "),
    (re.compile(r"^[.,;:\-_ ]+|[.,;:\-_ ]+$"), ""),
)

DOCUMENT_NUMBER_RE = re.compile(
    r"\b(?:FACT(?:URA)?|FOLIO|DOC(?:UMENTO)?|N[°º]|NRO\.?)\s*[:#]?\s*(\d{1,10})\b",
    re.IGNORECASE,
)

FALLBACK_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d", "%d.%m.%Y", "%Y/%m/%d")


class NormalizationError(Exception):
    """A single statement row that could not be normalized."""

    def __init__(self, linea: int, field_name: str, value: Any, reason: str) -> None:
        super().__init__(f"Row {linea}: {field_name} {reason} ({value!r})")
        self.linea = linea
        self.field = field_name
        self.value = value
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "linea": self.linea,
            "field": self.field,
            "value": None if self.value is None else str(self.value),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class NormalizedTransaction:
    account_id: str
    bank: BankCode
    fecha: date
    descripcion: str
    descripcion_normalizada: str
    monto: int
    tipo: Direction
    currency: str
    dedup_hash: str
    saldo: int | None = None
    fecha_valor: date | None = None
    referencia: str | None = None
    rut_contraparte: str | None = None
    numero_documento: str | None = None
    linea: int = 0


@dataclass
class NormalizationResult:
    records: list[NormalizedTransaction] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)
    duplicates: int = 0


def normalize_description(text: str) -> str:
    """Uppercase, accent-free, abbreviation-expanded description for matching."""
    folded = fold_text(text).upper()
    for pattern, replacement in CLEANUP_PATTERNS:
        folded = pattern.sub(replacement, folded)
    expanded = _ABBREVIATION_RE.sub(lambda m: ABBREVIATIONS[m.group(1)], folded)
    return " ".join(expanded.split())


def parse_date(value: str | None, date_format: str | None = None) -> date:
    """Parse a statement date, trying the bank's own format first.

    Two-digit years pivot at 50: ``99`` is 1999 and ``26`` is 2026.
    """
    if not value or not value.strip():
        raise ValueError("Date is required")
    text = value.strip()
    formats = [date_format] if date_format else []
    formats.extend(fmt for fmt in FALLBACK_DATE_FORMATS if fmt != date_format)
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    short = re.fullmatch(r"(\d{2})[/-](\d{2})[/-](\d{2})", text)
    if short:
        day, month, yy = (int(part) for part in short.groups())
        year = 1900 + yy if yy > 50 else 2000 + yy
        return date(year, month, day)
    raise ValueError(f"Invalid date format: {value}")


def extract_document_number(text: str) -> str | None:
    match = DOCUMENT_NUMBER_RE.search(text or "")
    if match is None:
        return None
    return match.group(1).lstrip("0") or "0"


def compute_dedup_hash(account_id: str, fecha: date, monto: int, descripcion_normalizada: str) -> str:
    """SHA-256 over account, ISO date, signed amount and a description hash."""
    description_hash = hashlib.sha256(descripcion_normalizada.encode("utf-8")).hexdigest()
    components = [account_id, fecha.isoformat(), str(monto), description_hash]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


def normalize_row(
    raw: RawTransaction,
    bank: BankCode,
    *,
    account_id: str,
    currency: str = "CLP",
) -> NormalizedTransaction:
    """Normalize one row. Raises NormalizationError naming the offending field."""
    layout = get_layout(bank)

    try:
        fecha = parse_date(raw.fecha, layout.date_format)
    except ValueError as exc:
        raise NormalizationError(raw.linea, "fecha", raw.fecha, "is not a valid date") from exc

    try:
        amount = parse_amount(raw.monto)
    except AmountFormatError as exc:
        raise NormalizationError(raw.linea, "monto", raw.monto, "is not a valid amount") from exc
    monto = to_minor_units(amount, currency)
    if monto == 0:
        raise NormalizationError(raw.linea, "monto", raw.monto, "is zero")

    saldo = None
    if raw.saldo:
        try:
            saldo = to_minor_units(parse_amount(raw.saldo), currency)
        except AmountFormatError:
            logger.debug("Unparseable running balance ignored", linea=raw.linea, saldo=raw.saldo)

    fecha_valor = None
    if raw.fecha_valor:
        try:
            fecha_valor = parse_date(raw.fecha_valor, layout.date_format)
        except ValueError:
            logger.debug("Unparseable value date ignored", linea=raw.linea)

    descripcion = " ".join((raw.descripcion or "").split())
    if not descripcion:
        raise NormalizationError(raw.linea, "descripcion", raw.descripcion, "is empty")
    normalizada = normalize_description(descripcion)

    return NormalizedTransaction(
        account_id=account_id,
        bank=layout.bank,
        fecha=fecha,
        descripcion=descripcion,
        descripcion_normalizada=normalizada,
        monto=monto,
        tipo=Direction.CARGO if monto < 0 else Direction.ABONO,
        currency=currency.upper(),
        dedup_hash=compute_dedup_hash(account_id, fecha, monto, normalizada),
        saldo=saldo,
        fecha_valor=fecha_valor,
        referencia=raw.referencia,
        rut_contraparte=extract_rut(descripcion),
        numero_documento=extract_document_number(descripcion) or raw.referencia,
        linea=raw.linea,
    )


def normalize_transactions(
    raw_rows: Sequence[RawTransaction],
    bank: BankCode | str,
    *,
    account_id: str,
    currency: str = "CLP",
    existing_hashes: Iterable[str] = (),
) -> NormalizationResult:
    """Normalize and deduplicate parsed rows.

    Rows whose hash was already seen, in this batch or in ``existing_hashes``
    (earlier imports), are counted as duplicates and dropped.
    """
    code = get_layout(bank).bank
    seen = set(existing_hashes)
    result = NormalizationResult()

    for raw in raw_rows:
        try:
            record = normalize_row(raw, code, account_id=account_id, currency=currency)
        except NormalizationError as exc:
            result.errors.append(exc)
            continue
        if record.dedup_hash in seen:
            result.duplicates += 1
            continue
        seen.add(record.dedup_hash)
        result.records.append(record)

    if result.errors:
        logger.warning(
            "Statement rows skipped during normalization",
            bank=code.value,
            account_id=account_id,
            skipped=len(result.errors),
        )
    logger.info(
        "Statement normalized",
        bank=code.value,
        account_id=account_id,
        records=len(result.records),
        duplicates=result.duplicates,
    )
    return result
