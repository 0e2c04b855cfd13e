"""SII document matcher.

Scores a bank transaction against accounting documents and returns a ranked,
explained candidate list. Scoring is a pure function of its inputs.
"""

import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Any, Protocol
from uuid import UUID

import yaml

from src.config import settings
from src.logger import get_logger, log_exception
from src.models import Direction, DocumentType
from src.services.parsing import fold_text
from src.utils.rut import extract_rut, normalize_rut

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


class ConfigError(ValueError):
    """Matcher configuration is missing or invalid."""


class MatchingError(Exception):
    """A document cannot be scored (missing or malformed data)."""


class MatchReason(str, Enum):
    EXACT_AMOUNT = "exact_amount"
    NEAR_AMOUNT = "near_amount"
    CLOSE_AMOUNT = "close_amount"
    SAME_DAY = "same_day"
    DATE_WITHIN_WINDOW = "date_within_window"
    SAME_ISSUER_RUT = "same_issuer_rut"
    SIMILAR_NAME = "similar_name"
    FOLIO_REFERENCE = "folio_reference"
    LEARNED_PATTERN = "learned_pattern"
    DOCUMENT_TYPE_MISMATCH = "document_type_mismatch"


def _default_compatibility() -> dict[Direction, frozenset[DocumentType]]:
    return {
        Direction.CARGO: frozenset(
            {
                DocumentType.FACTURA,
                DocumentType.BOLETA,
                DocumentType.NOTA_DEBITO,
                DocumentType.GUIA_DESPACHO,
            }
        ),
        Direction.ABONO: frozenset(
            {DocumentType.FACTURA, DocumentType.BOLETA, DocumentType.NOTA_CREDITO}
        ),
    }


@dataclass(frozen=True)
class MatcherConfig:
    """Matcher weights, tolerances and thresholds.

    Amounts are integer minor units. ``near_credit`` and ``close_credit`` are
    the fractions of the amount weight awarded inside each tolerance band.
    """

    weight_amount: float = 0.45
    weight_date: float = 0.25
    weight_rut: float = 0.20
    weight_name: float = 0.05
    weight_folio: float = 0.05
    learned_pattern_boost: float = 0.10

    amount_absolute_tolerance: int = 100
    amount_near_percent: float = 0.01
    amount_close_percent: float = 0.05
    near_credit: float = 0.78
    close_credit: float = 0.44

    date_window_days: int = 30
    date_grace_days: int = 3
    name_similarity_threshold: float = 0.6

    min_score: float = 0.30
    partial_threshold: float = 0.50
    type_mismatch_cap: float = 0.40
    auto_accept_threshold: float | None = None
    top_k: int = 5

    compatibility: Mapping[Direction, frozenset[DocumentType]] = field(
        default_factory=_default_compatibility
    )

    def __post_init__(self) -> None:
        weights = (
            self.weight_amount,
            self.weight_date,
            self.weight_rut,
            self.weight_name,
            self.weight_folio,
            self.learned_pattern_boost,
        )
        if any(weight < 0 for weight in weights):
            raise ConfigError("Matcher weights must be non-negative")
        bounded = {
            "amount_near_percent": self.amount_near_percent,
            "amount_close_percent": self.amount_close_percent,
            "near_credit": self.near_credit,
            "close_credit": self.close_credit,
            "name_similarity_threshold": self.name_similarity_threshold,
            "min_score": self.min_score,
            "partial_threshold": self.partial_threshold,
            "type_mismatch_cap": self.type_mismatch_cap,
        }
        if self.auto_accept_threshold is not None:
            bounded["auto_accept_threshold"] = self.auto_accept_threshold
        for name, value in bounded.items():
            if not 0 <= value <= 1:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        if self.amount_absolute_tolerance < 0:
            raise ConfigError("amount_absolute_tolerance must be non-negative")
        if self.date_grace_days < 0 or self.date_window_days <= self.date_grace_days:
            raise ConfigError("date_window_days must exceed date_grace_days >= 0")
        if self.top_k < 1:
            raise ConfigError("top_k must be at least 1")

    @property
    def auto_accept_enabled(self) -> bool:
        return self.auto_accept_threshold is not None

    def is_compatible(self, direction: Direction, document_type: DocumentType) -> bool:
        allowed = self.compatibility.get(Direction(direction))
        if allowed is None:
            return True
        return DocumentType(document_type) in allowed


def _parse_threshold(value: Any) -> float | None:
    # YAML reads a bare ``off`` as False
    if value is None or value is False:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "off", "none", "null"):
        return None
    return float(value)


def _parse_compatibility(raw: Mapping[str, Any]) -> dict[Direction, frozenset[DocumentType]]:
    table = _default_compatibility()
    for direction, types in raw.items():
        table[Direction(direction)] = frozenset(DocumentType(t) for t in types or ())
    return table


def load_matcher_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MatcherConfig:
    """Build a MatcherConfig from YAML plus environment overrides.

    Resolution order for the file: explicit ``path``, then
    ``settings.reconciliation_config_path``, then ``config/reconciliation.yaml``.
    An explicitly named file must exist. Returns a new value on every call.
    """
    env = os.environ if env is None else env
    explicit = path or settings.reconciliation_config_path
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    elif explicit:
        raise ConfigError(f"Matcher config not found: {config_path}")

    scoring = raw.get("scoring") or {}
    weights = scoring.get("weights") or {}
    thresholds = scoring.get("thresholds") or {}
    tolerances = scoring.get("tolerances") or {}
    credit = scoring.get("amount_credit") or {}
    defaults = MatcherConfig()

    try:
        values: dict[str, Any] = {
            "weight_amount": float(weights.get("amount", defaults.weight_amount)),
            "weight_date": float(weights.get("date", defaults.weight_date)),
            "weight_rut": float(weights.get("rut", defaults.weight_rut)),
            "weight_name": float(weights.get("name", defaults.weight_name)),
            "weight_folio": float(weights.get("folio", defaults.weight_folio)),
            "learned_pattern_boost": float(
                scoring.get("learned_pattern_boost", defaults.learned_pattern_boost)
            ),
            "amount_absolute_tolerance": int(
                tolerances.get("amount_absolute", defaults.amount_absolute_tolerance)
            ),
            "amount_near_percent": float(
                tolerances.get("amount_near_percent", defaults.amount_near_percent)
            ),
            "amount_close_percent": float(
                tolerances.get("amount_close_percent", defaults.amount_close_percent)
            ),
            "near_credit": float(credit.get("near", defaults.near_credit)),
            "close_credit": float(credit.get("close", defaults.close_credit)),
            "date_window_days": int(tolerances.get("date_window_days", defaults.date_window_days)),
            "date_grace_days": int(tolerances.get("date_grace_days", defaults.date_grace_days)),
            "name_similarity_threshold": float(
                tolerances.get("name_similarity", defaults.name_similarity_threshold)
            ),
            "min_score": float(thresholds.get("min_score", defaults.min_score)),
            "partial_threshold": float(thresholds.get("partial", defaults.partial_threshold)),
            "type_mismatch_cap": float(
                thresholds.get("type_mismatch_cap", defaults.type_mismatch_cap)
            ),
            "auto_accept_threshold": _parse_threshold(thresholds.get("auto_accept")),
            "top_k": int(scoring.get("top_k", defaults.top_k)),
            "compatibility": _parse_compatibility(raw.get("compatibility") or {}),
        }

        if "RECONCILIATION_AUTO_ACCEPT_THRESHOLD" in env:
            values["auto_accept_threshold"] = _parse_threshold(
                env["RECONCILIATION_AUTO_ACCEPT_THRESHOLD"]
            )
        if env.get("RECONCILIATION_MIN_SCORE"):
            values["min_score"] = float(env["RECONCILIATION_MIN_SCORE"])
        if env.get("RECONCILIATION_DATE_WINDOW_DAYS"):
            values["date_window_days"] = int(env["RECONCILIATION_DATE_WINDOW_DAYS"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid matcher configuration: {exc}") from exc

    return MatcherConfig(**values)


# =============================================================================
# Inputs and results
# =============================================================================


class MatchableTransaction(Protocol):
    fecha: date
    monto: int
    tipo: Direction
    currency: str
    descripcion: str
    descripcion_normalizada: str
    referencia: str | None
    rut_contraparte: str | None
    numero_documento: str | None


class MatchableDocument(Protocol):
    id: UUID
    document_type: DocumentType
    folio: int
    fecha_emision: date
    rut_emisor: str
    razon_social: str | None
    monto_total: int
    currency: str


class LearnedPattern(Protocol):
    keywords: str
    rut_emisor: str


@dataclass(frozen=True)
class CandidateMatch:
    """One scored document. ``day_diff`` is document date minus transaction date."""

    documento_id: UUID
    score: float
    reasons: tuple[MatchReason, ...]
    amount_diff: int
    day_diff: int

    def sort_key(self) -> tuple[float, int, int, str]:
        return (-self.score, self.amount_diff, abs(self.day_diff), str(self.documento_id))

    def to_dict(self) -> dict[str, Any]:
        return {
            "documento_id": str(self.documento_id),
            "score": self.score,
            "reasons": [reason.value for reason in self.reasons],
            "amount_diff": self.amount_diff,
            "day_diff": self.day_diff,
        }


# =============================================================================
# Signals
# =============================================================================

LEGAL_SUFFIXES = re.compile(
    r"\b(?:ltda|limitada|spa|s\.?a\.?|sociedad anonima|eirl|e\.i\.r\.l\.?|cia|y cia)\b\.?"
)


def score_amount(
    txn_amount: int, doc_amount: int, config: MatcherConfig
) -> tuple[float, MatchReason | None]:
    diff = abs(abs(txn_amount) - abs(doc_amount))
    if diff == 0:
        return config.weight_amount, MatchReason.EXACT_AMOUNT
    base = abs(doc_amount)
    near_tolerance = max(config.amount_absolute_tolerance, base * config.amount_near_percent)
    if diff <= near_tolerance:
        return config.weight_amount * config.near_credit, MatchReason.NEAR_AMOUNT
    if diff <= base * config.amount_close_percent:
        return config.weight_amount * config.close_credit, MatchReason.CLOSE_AMOUNT
    return 0.0, None


def score_date(day_diff: int, config: MatcherConfig) -> tuple[float, MatchReason | None]:
    """Full weight inside the grace days, linear decay to zero at the window edge."""
    distance = abs(day_diff)
    if distance <= config.date_grace_days:
        return config.weight_date, MatchReason.SAME_DAY
    if distance >= config.date_window_days:
        return 0.0, None
    span = config.date_window_days - config.date_grace_days
    factor = (config.date_window_days - distance) / span
    return config.weight_date * factor, MatchReason.DATE_WITHIN_WINDOW


def clean_company_name(name: str) -> str:
    folded = fold_text(name)
    stripped = LEGAL_SUFFIXES.sub(" ", folded)
    return " ".join(re.sub(r"[^a-z0-9 ]", " ", stripped).split())


def name_similarity(description: str, razon_social: str | None) -> float:
    """Similarity of an issuer name to a description, 0..1."""
    if not razon_social or not description:
        return 0.0
    name = clean_company_name(razon_social)
    text = " ".join(re.sub(r"[^a-z0-9 ]", " ", fold_text(description)).split())
    if not name or not text:
        return 0.0
    if name in text:
        return 1.0
    name_tokens = set(name.split())
    text_tokens = set(text.split())
    containment = len(name_tokens & text_tokens) / len(name_tokens)
    ratio = SequenceMatcher(None, name, text).ratio()
    return max(containment, ratio)


def references_folio(txn: MatchableTransaction, folio: int) -> bool:
    target = str(folio)
    for ref in (txn.numero_documento, txn.referencia):
        if ref and ref.strip().lstrip("0") == target:
            return True
    pattern = re.compile(rf"(?<!\d)0*{re.escape(target)}(?!\d)")
    return bool(pattern.search(txn.referencia or "") or pattern.search(txn.descripcion or ""))


def pattern_applies(pattern: LearnedPattern, description: str, rut: str | None) -> bool:
    if rut is None or normalize_rut(pattern.rut_emisor) != rut:
        return False
    keywords = fold_text(pattern.keywords).split()
    if not keywords:
        return False
    words = set(fold_text(description).split())
    return all(keyword in words for keyword in keywords)


def _counterpart_rut(txn: MatchableTransaction) -> str | None:
    return normalize_rut(txn.rut_contraparte) or extract_rut(txn.descripcion or "")


def score_document(
    txn: MatchableTransaction,
    document: MatchableDocument,
    config: MatcherConfig,
    patterns: Sequence[LearnedPattern] = (),
) -> CandidateMatch | None:
    """Score one document. Returns None below the floor, raises MatchingError on bad data."""
    if document.monto_total is None or document.monto_total == 0:
        raise MatchingError(f"Document {document.id} has no total amount")
    if document.fecha_emision is None:
        raise MatchingError(f"Document {document.id} has no emission date")
    try:
        document_type = DocumentType(document.document_type)
    except ValueError as exc:
        raise MatchingError(f"Document {document.id} has unknown type") from exc
    if document.currency and txn.currency and document.currency.upper() != txn.currency.upper():
        return None

    reasons: list[MatchReason] = []
    score = 0.0

    amount_diff = abs(abs(txn.monto) - abs(document.monto_total))
    day_diff = (document.fecha_emision - txn.fecha).days

    for value, reason in (
        score_amount(txn.monto, document.monto_total, config),
        score_date(day_diff, config),
    ):
        if reason is not None and value > 0:
            score += value
            reasons.append(reason)

    txn_rut = _counterpart_rut(txn)
    doc_rut = normalize_rut(document.rut_emisor)
    if txn_rut and doc_rut and txn_rut == doc_rut and config.weight_rut > 0:
        score += config.weight_rut
        reasons.append(MatchReason.SAME_ISSUER_RUT)

    description = txn.descripcion_normalizada or txn.descripcion or ""
    if (
        config.weight_name > 0
        and name_similarity(description, document.razon_social) >= config.name_similarity_threshold
    ):
        score += config.weight_name
        reasons.append(MatchReason.SIMILAR_NAME)

    if config.weight_folio > 0 and references_folio(txn, document.folio):
        score += config.weight_folio
        reasons.append(MatchReason.FOLIO_REFERENCE)

    if config.learned_pattern_boost > 0 and any(
        pattern_applies(p, description, doc_rut) for p in patterns
    ):
        score += config.learned_pattern_boost
        reasons.append(MatchReason.LEARNED_PATTERN)

    if not config.is_compatible(txn.tipo, document_type):
        score = min(score, config.type_mismatch_cap)
        reasons.append(MatchReason.DOCUMENT_TYPE_MISMATCH)

    score = round(min(score, 1.0), 4)
    if score <= 0 or score < config.min_score:
        return None

    return CandidateMatch(
        documento_id=document.id,
        score=score,
        reasons=tuple(reasons),
        amount_diff=amount_diff,
        day_diff=day_diff,
    )


def rank_candidates(candidates: Iterable[CandidateMatch], top_k: int) -> list[CandidateMatch]:
    """Highest score first; ties by amount difference, then day distance, then id."""
    return sorted(candidates, key=CandidateMatch.sort_key)[:top_k]


def match_transaction(
    txn: MatchableTransaction,
    documents: Iterable[MatchableDocument],
    config: MatcherConfig,
    patterns: Sequence[LearnedPattern] = (),
) -> list[CandidateMatch]:
    """Ranked candidate list for one transaction.

    Documents with malformed data are logged and skipped.
    """
    candidates = []
    seen: set[UUID] = set()
    for document in documents:
        if document.id in seen:
            continue
        seen.add(document.id)
        try:
            candidate = score_document(txn, document, config, patterns)
        except MatchingError as exc:
            log_exception(
                logger,
                exc,
                "Document skipped during matching",
                level="warning",
                include_traceback=False,
                documento_id=str(document.id),
            )
            continue
        if candidate is not None:
            candidates.append(candidate)
    return rank_candidates(candidates, config.top_k)
