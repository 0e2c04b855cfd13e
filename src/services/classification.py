"""Categorization rules engine.

Rules are evaluated in a fixed order and the first matching rule assigns the
category. No match is a valid outcome: the transaction is left as
``UNCATEGORIZED`` for a person to categorize.
"""

import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.logger import get_logger, log_exception
from src.models import (
    UNCATEGORIZED,
    BankCode,
    BankTransaction,
    CategorizationRule,
    CategorizationRuleSet,
    Direction,
)
from src.services.parsing import fold_text

logger = get_logger(__name__)

CLIENT_RULE_SET_NAME = "Reglas del cliente"


class RuleDefinitionError(ValueError):
    """Rule has no predicate or an invalid pattern."""


class Categorizable(Protocol):
    descripcion: str
    descripcion_normalizada: str
    monto: int
    tipo: Direction
    bank: BankCode


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}(?:s|es)?\b")


@dataclass(frozen=True)
class Rule:
    """One predicate in a rule chain.

    The text predicate holds when any keyword or any regex matches. Amount
    range (absolute minor units), direction and bank narrow it further.
    """

    categoria: str
    name: str = ""
    palabras_clave: tuple[str, ...] = ()
    patrones: tuple[str, ...] = ()
    monto_min: int | None = None
    monto_max: int | None = None
    tipo: Direction | None = None
    banco: BankCode | None = None
    prioridad: int = 100
    client_specific: bool = False
    veces_aplicada: int = 0
    id: UUID | None = None
    _keywords: tuple[tuple[str, re.Pattern[str]], ...] = field(
        default=(), init=False, repr=False, compare=False
    )
    _compiled: tuple[re.Pattern[str], ...] = field(
        default=(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        keywords = tuple(fold_text(k) for k in self.palabras_clave if k and k.strip())
        has_predicate = (
            keywords
            or self.patrones
            or self.monto_min is not None
            or self.monto_max is not None
            or self.tipo is not None
            or self.banco is not None
        )
        if not has_predicate:
            raise RuleDefinitionError(f"Rule {self.name or self.categoria!r} has no predicate")
        if self.monto_min is not None and self.monto_max is not None and self.monto_min > self.monto_max:
            raise RuleDefinitionError("monto_min is greater than monto_max")

        compiled = []
        for pattern in self.patrones:
            try:
                compiled.append(re.compile(pattern, re.IGNORECASE))
            except re.error as exc:
                raise RuleDefinitionError(f"Invalid pattern {pattern!r}: {exc}") from exc

        object.__setattr__(self, "palabras_clave", keywords)
        object.__setattr__(self, "_keywords", tuple((k, _keyword_pattern(k)) for k in keywords))
        object.__setattr__(self, "_compiled", tuple(compiled))

    @property
    def has_text_predicate(self) -> bool:
        return bool(self._keywords or self._compiled)

    def evaluate(self, txn: Categorizable) -> tuple[bool, int]:
        """Return (matched, keyword hits)."""
        if self.tipo is not None and Direction(txn.tipo) != self.tipo:
            return False, 0
        if self.banco is not None and BankCode(txn.bank) != self.banco:
            return False, 0
        amount = abs(txn.monto)
        if self.monto_min is not None and amount < self.monto_min:
            return False, 0
        if self.monto_max is not None and amount > self.monto_max:
            return False, 0

        if not self.has_text_predicate:
            return True, 0

        normalized = txn.descripcion_normalizada or txn.descripcion or ""
        folded = fold_text(normalized)
        hits = sum(1 for _, pattern in self._keywords if pattern.search(folded))
        if hits:
            return True, hits
        original = txn.descripcion or ""
        if any(p.search(normalized) or p.search(original) for p in self._compiled):
            return True, 0
        return False, 0

    def confidence(self, keyword_hits: int) -> float:
        score = 0.7
        if self.palabras_clave:
            score += 0.2 * (keyword_hits / len(self.palabras_clave))
        if self.client_specific:
            score += 0.1
        if self.veces_aplicada > 10:
            score += 0.05
        return round(min(score, 1.0), 4)


@dataclass(frozen=True)
class CategorizationResult:
    categoria: str
    rule_id: UUID | None = None
    rule_name: str | None = None
    confidence: float = 0.0

    @property
    def is_categorized(self) -> bool:
        return self.categoria != UNCATEGORIZED


NO_MATCH = CategorizationResult(categoria=UNCATEGORIZED)


def apply_rules(txn: Categorizable, rules: Sequence[Rule]) -> CategorizationResult:
    """Category of the first matching rule, or the uncategorized sentinel."""
    for rule in rules:
        matched, hits = rule.evaluate(txn)
        if matched:
            return CategorizationResult(
                categoria=rule.categoria,
                rule_id=rule.id,
                rule_name=rule.name or None,
                confidence=rule.confidence(hits),
            )
    return NO_MATCH


def order_rules(rules: Sequence[Rule]) -> list[Rule]:
    """Client rules before global ones, then by priority, then by name."""
    return sorted(rules, key=lambda r: (not r.client_specific, r.prioridad, r.name))


DEFAULT_CATEGORY_KEYWORDS: tuple[tuple[str, Direction | None, tuple[str, ...]], ...] = (
    ("TRF", None, ("traspaso", "entre cuentas", "transferencia propia")),
    ("REM", Direction.CARGO, ("sueldo", "remuneracion", "afp", "isapre", "fonasa", "previred", "cotizacion")),
    ("IMP", Direction.CARGO, ("impuesto", "sii", "iva", "ppm", "f29", "tesoreria")),
    (
        "SER",
        Direction.CARGO,
        ("luz", "agua", "gas", "telefono", "internet", "enel", "aguas", "entel", "movistar", "vtr"),
    ),
    ("FIN", None, ("interes", "comision", "mantencion", "cargo bancario", "seguro")),
    ("VEN", Direction.ABONO, ("venta", "ingreso", "deposito cliente", "pago recibido", "abono factura")),
    ("COM", Direction.CARGO, ("compra", "proveedor", "pago a", "transferencia a")),
)

DEFAULT_RULES: tuple[Rule, ...] = tuple(
    Rule(
        categoria=categoria,
        name=f"default_{categoria.lower()}",
        palabras_clave=keywords,
        tipo=tipo,
        prioridad=1000 + index * 10,
    )
    for index, (categoria, tipo, keywords) in enumerate(DEFAULT_CATEGORY_KEYWORDS)
)

_GENERIC_WORDS = frozenset(
    {
        "transferencia",
        "electronica",
        "pago",
        "cargo",
        "abono",
        "cuenta",
        "numero",
        "referencia",
        "para",
        "desde",
        "con",
        "por",
        "del",
        "los",
        "las",
    }
)


def significant_words(description: str, limit: int = 3) -> list[str]:
    """First description words longer than two letters that carry meaning."""
    words = []
    for word in fold_text(description).split():
        if len(word) <= 2 or not word.isalpha() or word in _GENERIC_WORDS:
            continue
        words.append(word)
        if len(words) == limit:
            break
    return words


def suggest_rule(txn: Categorizable, categoria: str) -> Rule:
    """Build a client rule that would categorize similar transactions."""
    words = significant_words(txn.descripcion_normalizada or txn.descripcion)
    if not words:
        raise RuleDefinitionError("Description has no significant words to build a rule from")
    pattern = r".*".join(rf"\b{re.escape(word)}\b" for word in words)
    return Rule(
        categoria=categoria,
        name=f"auto_{'_'.join(words)}"[:100],
        patrones=(pattern,),
        tipo=Direction(txn.tipo),
        prioridad=50,
        client_specific=True,
    )


# =============================================================================
# Persistence
# =============================================================================


def rule_from_model(model: CategorizationRule, *, client_specific: bool) -> Rule:
    return Rule(
        id=model.id,
        categoria=model.categoria,
        name=model.name,
        palabras_clave=tuple(model.palabras_clave or ()),
        patrones=tuple(model.patrones or ()),
        monto_min=model.monto_min,
        monto_max=model.monto_max,
        tipo=model.tipo,
        banco=model.banco,
        prioridad=model.prioridad,
        client_specific=client_specific,
        veces_aplicada=model.veces_aplicada,
    )


async def load_rules(
    db: AsyncSession,
    client_id: UUID,
    *,
    include_defaults: bool | None = None,
) -> list[Rule]:
    """Active client and global rules in evaluation order, defaults last."""
    result = await db.execute(
        select(CategorizationRule, CategorizationRuleSet.client_id)
        .join(CategorizationRuleSet, CategorizationRule.rule_set_id == CategorizationRuleSet.id)
        .where(CategorizationRuleSet.active.is_(True))
        .where(CategorizationRule.activa.is_(True))
        .where(
            or_(
                CategorizationRuleSet.client_id == client_id,
                CategorizationRuleSet.client_id.is_(None),
            )
        )
    )

    rules: list[Rule] = []
    for model, owner in result.all():
        try:
            rules.append(rule_from_model(model, client_specific=owner is not None))
        except RuleDefinitionError as exc:
            log_exception(
                logger,
                exc,
                "Stored rule skipped",
                level="warning",
                include_traceback=False,
                rule_id=str(model.id),
            )

    ordered = order_rules(rules)
    use_defaults = settings.use_default_rules if include_defaults is None else include_defaults
    if use_defaults:
        ordered.extend(DEFAULT_RULES)
    return ordered


async def categorize_transactions(
    db: AsyncSession,
    transactions: Sequence[BankTransaction],
    rules: Sequence[Rule],
) -> int:
    """Apply rules to each transaction and bump usage counters. Returns categorized count."""
    usage: Counter[UUID] = Counter()
    categorized = 0
    for txn in transactions:
        outcome = apply_rules(txn, rules)
        txn.categoria = outcome.categoria
        txn.categoria_regla_id = outcome.rule_id
        txn.categoria_confianza = outcome.confidence if outcome.is_categorized else None
        if outcome.is_categorized:
            categorized += 1
            if outcome.rule_id is not None:
                usage[outcome.rule_id] += 1

    for rule_id, count in usage.items():
        await db.execute(
            update(CategorizationRule)
            .where(CategorizationRule.id == rule_id)
            .values(veces_aplicada=CategorizationRule.veces_aplicada + count)
        )
    await db.flush()
    return categorized


async def get_client_rule_set(db: AsyncSession, client_id: UUID) -> CategorizationRuleSet:
    result = await db.execute(
        select(CategorizationRuleSet)
        .where(CategorizationRuleSet.client_id == client_id)
        .where(CategorizationRuleSet.name == CLIENT_RULE_SET_NAME)
    )
    rule_set = result.scalar_one_or_none()
    if rule_set is None:
        rule_set = CategorizationRuleSet(client_id=client_id, name=CLIENT_RULE_SET_NAME, active=True)
        db.add(rule_set)
        await db.flush()
    return rule_set


async def create_rule(db: AsyncSession, client_id: UUID, data: dict[str, Any]) -> CategorizationRule:
    """Validate and persist a client rule. Raises RuleDefinitionError."""
    Rule(
        categoria=data["categoria"],
        name=data.get("name", ""),
        palabras_clave=tuple(data.get("palabras_clave") or ()),
        patrones=tuple(data.get("patrones") or ()),
        monto_min=data.get("monto_min"),
        monto_max=data.get("monto_max"),
        tipo=data.get("tipo"),
        banco=data.get("banco"),
    )
    rule_set = await get_client_rule_set(db, client_id)
    model = CategorizationRule(
        rule_set_id=rule_set.id,
        name=data.get("name") or data["categoria"],
        categoria=data["categoria"],
        prioridad=data.get("prioridad", 100),
        palabras_clave=list(data.get("palabras_clave") or []),
        patrones=list(data.get("patrones") or []),
        monto_min=data.get("monto_min"),
        monto_max=data.get("monto_max"),
        tipo=data.get("tipo"),
        banco=data.get("banco"),
        activa=True,
        veces_aplicada=0,
    )
    db.add(model)
    await db.flush()
    logger.info("Categorization rule created", client_id=str(client_id), rule_id=str(model.id))
    return model


async def list_rules(
    db: AsyncSession,
    client_id: UUID,
    *,
    include_global: bool = True,
) -> list[CategorizationRule]:
    owner = CategorizationRuleSet.client_id == client_id
    if include_global:
        owner = or_(owner, CategorizationRuleSet.client_id.is_(None))
    result = await db.execute(
        select(CategorizationRule)
        .join(CategorizationRuleSet, CategorizationRule.rule_set_id == CategorizationRuleSet.id)
        .where(owner)
        .where(CategorizationRuleSet.active.is_(True))
        .where(CategorizationRule.activa.is_(True))
        .order_by(CategorizationRuleSet.client_id.is_(None), CategorizationRule.prioridad, CategorizationRule.name)
    )
    return list(result.scalars())


async def deactivate_rule(db: AsyncSession, client_id: UUID, rule_id: UUID) -> CategorizationRule | None:
    """Deactivate a client-owned rule. Returns None when the client has no such active rule."""
    result = await db.execute(
        select(CategorizationRule)
        .join(CategorizationRuleSet, CategorizationRule.rule_set_id == CategorizationRuleSet.id)
        .where(CategorizationRule.id == rule_id)
        .where(CategorizationRule.activa.is_(True))
        .where(CategorizationRuleSet.client_id == client_id)
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        return None
    rule.activa = False
    await db.flush()
    logger.info("Categorization rule deactivated", client_id=str(client_id), rule_id=str(rule_id))
    return rule
