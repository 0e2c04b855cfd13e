"""Reconciliation pipeline orchestration.

A run walks a fixed sequence of steps for one (client, period) scope:

    import -> normalize -> categorize -> match -> validate -> alert -> approve

An executor claims a step by a compare-and-set on the run's ``version`` and
commits the claim. The step then runs inside a savepoint and is committed
together with the run's advance, so a step's output is durable before the
next step starts. A second executor or a stale resume loses the
compare-and-set and gets ``ConcurrentRunError``.

Pause and operator failure are cooperative. While a step is claimed they are
recorded as ``pending_action`` without touching ``version``; the executor
applies them when it records the step result, so a running pass always
completes. Alerts are dispatched only after the step that raised them commits.
Steps are idempotent, which makes resume and retry from any step safe.
"""

import hashlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog.contextvars import bound_contextvars

from src.config import settings
from src.logger import async_log_timing, get_logger, log_exception
from src.models import (
    LINKED_STATUSES,
    OPEN_STATUSES,
    AccountingDocument,
    BankTransaction,
    MatchCandidate,
    MatchPattern,
    OperatorAction,
    PipelineAlert,
    PipelineRun,
    PipelineState,
    StatementFile,
    StatementFileStatus,
    TransactionStatus,
)
from src.services.alerts import AlertEvent, AlertSeverity, AlertSink, AlertType, LoggingAlertSink
from src.services.classification import categorize_transactions, load_rules
from src.services.documents import DocumentStore, SqlDocumentStore, candidate_pool
from src.services.matching import MatcherConfig, match_transaction
from src.services.normalization import (
    extract_document_number,
    normalize_description,
    normalize_transactions,
)
from src.services.parsing import ParseError, detect_format, get_layout, parse_statement
from src.services.review import append_note, period_bounds, set_status
from src.utils.amounts import AmountFormatError, parse_amount, to_minor_units
from src.utils.rut import extract_rut

logger = get_logger(__name__)

STEP_ORDER: tuple[PipelineState, ...] = (
    PipelineState.IMPORT,
    PipelineState.NORMALIZE,
    PipelineState.CATEGORIZE,
    PipelineState.MATCH,
    PipelineState.VALIDATE,
    PipelineState.ALERT,
    PipelineState.APPROVE,
)


def _build_transitions() -> dict[PipelineState, frozenset[PipelineState]]:
    table: dict[PipelineState, set[PipelineState]] = {
        PipelineState.PENDING: {PipelineState.IMPORT, PipelineState.FAILED},
        PipelineState.COMPLETED: set(),
        PipelineState.PAUSED: set(STEP_ORDER) | {PipelineState.FAILED},
        PipelineState.FAILED: set(STEP_ORDER),
    }
    for index, step in enumerate(STEP_ORDER):
        following = STEP_ORDER[index + 1] if index + 1 < len(STEP_ORDER) else PipelineState.COMPLETED
        table[step] = {following, PipelineState.PAUSED, PipelineState.FAILED}
    return {state: frozenset(targets) for state, targets in table.items()}


TRANSITIONS = _build_transitions()


class PipelineError(Exception):
    pass


class RunNotFoundError(PipelineError, LookupError):
    pass


class InvalidTransitionError(PipelineError):
    pass


class ConcurrentRunError(PipelineError):
    """The run row changed since it was read."""


class PipelineStepError(PipelineError):
    """A step raised; the run is failed with this message."""

    def __init__(self, step: PipelineState, cause: BaseException) -> None:
        super().__init__(f"Step '{step.value}' failed: {cause}")
        self.step = step
        self.cause = cause


def assert_transition(source: PipelineState | str, target: PipelineState | str) -> None:
    source, target = PipelineState(source), PipelineState(target)
    if target not in TRANSITIONS[source]:
        raise InvalidTransitionError(f"Cannot move run from {source.value} to {target.value}")


# =============================================================================
# Run row access
# =============================================================================


async def get_run(
    db: AsyncSession,
    run_id: UUID,
    *,
    client_id: UUID | None = None,
) -> PipelineRun:
    stmt = select(PipelineRun).where(PipelineRun.id == run_id)
    if client_id is not None:
        stmt = stmt.where(PipelineRun.client_id == client_id)
    run = await db.scalar(stmt)
    if run is None:
        raise RunNotFoundError(f"Pipeline run {run_id} not found")
    return run


async def _compare_and_set(
    db: AsyncSession,
    run: PipelineRun,
    expected_version: int,
    *conditions: Any,
    **values: Any,
) -> PipelineRun:
    result = await db.execute(
        update(PipelineRun)
        .where(PipelineRun.id == run.id)
        .where(PipelineRun.version == expected_version)
        .where(*conditions)
        .values(version=expected_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentRunError(f"Pipeline run {run.id} was modified concurrently")
    await db.refresh(run)
    return run


async def _transition(
    db: AsyncSession,
    run: PipelineRun,
    target: PipelineState,
    **values: Any,
) -> PipelineRun:
    source = PipelineState(run.state)
    assert_transition(source, target)
    await _compare_and_set(db, run, run.version, state=target, **values)
    await db.commit()
    logger.info(
        "Pipeline run transitioned",
        run_id=str(run.id),
        source=source.value,
        target=target.value,
        paso_actual=run.paso_actual,
    )
    return run


# =============================================================================
# Lifecycle
# =============================================================================


async def create_run(
    db: AsyncSession,
    client_id: UUID,
    year: int,
    month: int,
) -> tuple[PipelineRun, bool]:
    """Return the open run for the period, creating one if none exists.

    Returns:
        (run, created)
    """
    period_bounds(year, month)
    existing = await db.scalar(
        select(PipelineRun)
        .where(PipelineRun.client_id == client_id)
        .where(PipelineRun.period_year == year)
        .where(PipelineRun.period_month == month)
        .where(PipelineRun.state != PipelineState.COMPLETED)
        .order_by(PipelineRun.created_at.desc())
        .limit(1)
    )
    if existing is not None:
        return existing, False

    run = PipelineRun(
        client_id=client_id,
        period_year=year,
        period_month=month,
        state=PipelineState.PENDING,
        paso_actual=0,
        total_pasos=len(STEP_ORDER),
    )
    db.add(run)
    await db.commit()
    await db.refresh(run)
    logger.info("Pipeline run created", run_id=str(run.id), client_id=str(client_id), period=run.period_label)
    return run, True


async def list_runs(
    db: AsyncSession,
    client_id: UUID,
    *,
    year: int | None = None,
    month: int | None = None,
    state: PipelineState | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PipelineRun], int]:
    conditions = [PipelineRun.client_id == client_id]
    if year is not None:
        conditions.append(PipelineRun.period_year == year)
    if month is not None:
        conditions.append(PipelineRun.period_month == month)
    if state is not None:
        conditions.append(PipelineRun.state == state)

    total = await db.scalar(select(func.count(PipelineRun.id)).where(*conditions))
    result = await db.execute(
        select(PipelineRun)
        .where(*conditions)
        .order_by(PipelineRun.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars()), total or 0


async def attach_statement(
    db: AsyncSession,
    run: PipelineRun,
    *,
    content: bytes,
    filename: str,
    bank: str,
    account_id: str,
    currency: str | None = None,
) -> tuple[StatementFile, bool]:
    """Attach a statement file to a run for the next ``import`` step.

    The format is detected eagerly so unsupported uploads fail immediately.
    Re-attaching identical bytes returns the existing file.

    Raises:
        UnsupportedFormat: Unknown bank or unsupported file type
        InvalidTransitionError: Run is already completed
    """
    if run.state == PipelineState.COMPLETED:
        raise InvalidTransitionError("Cannot attach statements to a completed run")
    layout = get_layout(bank)
    file_format = detect_format(content, filename)
    file_hash = hashlib.sha256(content).hexdigest()

    existing = await db.scalar(
        select(StatementFile)
        .where(StatementFile.run_id == run.id)
        .where(StatementFile.file_hash == file_hash)
    )
    if existing is not None:
        return existing, False

    statement = StatementFile(
        client_id=run.client_id,
        run_id=run.id,
        account_id=account_id,
        bank=layout.bank,
        file_format=file_format,
        filename=filename,
        file_hash=file_hash,
        content=content,
        currency=(currency or settings.default_currency).upper(),
        status=StatementFileStatus.PENDING,
    )
    db.add(statement)
    await db.flush()
    logger.info(
        "Statement attached",
        run_id=str(run.id),
        statement_file_id=str(statement.id),
        bank=layout.bank.value,
        file_format=file_format.value,
        size=len(content),
    )
    return statement, True


async def start_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    run = await get_run(db, run_id)
    return await _transition(
        db, run, PipelineState.IMPORT, paso_actual=1, started_at=datetime.now(UTC)
    )


async def request_action(
    db: AsyncSession,
    run_id: UUID,
    action: OperatorAction,
    reason: str | None = None,
) -> bool:
    """Record a pause or failure for the step being executed. Does not commit.

    Returns False when no step is claimed, in which case the caller applies
    the action directly. A pending failure is never downgraded to a pause.
    """
    if action == OperatorAction.FAIL:
        values: dict[str, Any] = {"pending_action": action.value, "pending_reason": reason}
    else:
        values = {"pending_action": func.coalesce(PipelineRun.pending_action, action.value)}
    result = await db.execute(
        update(PipelineRun)
        .where(PipelineRun.id == run_id)
        .where(PipelineRun.executing_step.is_not(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def pause_run(db: AsyncSession, run_id: UUID, *, client_id: UUID | None = None) -> PipelineRun:
    """Pause the run at its next step boundary.

    A run sitting between steps pauses immediately. A run whose step is
    executing keeps running that step; the pause is applied when the step
    result is recorded.
    """
    run = await get_run(db, run_id, client_id=client_id)
    current = PipelineState(run.state)
    if current not in STEP_ORDER:
        raise InvalidTransitionError(f"Cannot pause a run in state {current.value}")
    if await request_action(db, run.id, OperatorAction.PAUSE):
        await db.commit()
        await db.refresh(run)
        logger.info("Pause requested for executing step", run_id=str(run.id), step=run.executing_step)
        return run
    return await _transition(db, run, PipelineState.PAUSED, paused_from=current.value)


async def resume_run(db: AsyncSession, run_id: UUID, *, client_id: UUID | None = None) -> PipelineRun:
    """Re-enter the step the run was paused at."""
    run = await get_run(db, run_id, client_id=client_id)
    if run.state != PipelineState.PAUSED or run.paused_from is None:
        raise InvalidTransitionError(f"Run {run_id} is not paused")
    return await _transition(db, run, PipelineState(run.paused_from), paused_from=None)


async def retry_run(db: AsyncSession, run_id: UUID, *, client_id: UUID | None = None) -> PipelineRun:
    """Operator retry of the step that failed."""
    run = await get_run(db, run_id, client_id=client_id)
    if run.state != PipelineState.FAILED:
        raise InvalidTransitionError(f"Run {run_id} has not failed")
    target = PipelineState(run.failed_step) if run.failed_step else PipelineState.IMPORT
    values: dict[str, Any] = {"failed_step": None, "error_message": None}
    if run.paso_actual == 0:
        values.update(paso_actual=1, started_at=datetime.now(UTC))
    return await _transition(db, run, target, **values)


def _active_step(run: PipelineRun) -> str | None:
    state = PipelineState(run.state)
    if state in STEP_ORDER:
        return state.value
    if state == PipelineState.PAUSED:
        return run.paused_from
    return None


async def fail_run(
    db: AsyncSession,
    run_id: UUID,
    reason: str,
    *,
    client_id: UUID | None = None,
) -> PipelineRun:
    """Operator abort. Applied at the step boundary when a step is executing."""
    run = await get_run(db, run_id, client_id=client_id)
    if PipelineState(run.state) in STEP_ORDER and await request_action(
        db, run.id, OperatorAction.FAIL, reason
    ):
        await db.commit()
        await db.refresh(run)
        logger.info("Failure requested for executing step", run_id=str(run.id), step=run.executing_step)
        return run
    return await _transition(
        db,
        run,
        PipelineState.FAILED,
        failed_step=_active_step(run),
        paused_from=None,
        error_message=reason,
    )


# =============================================================================
# Steps
# =============================================================================


@dataclass
class StepContext:
    db: AsyncSession
    run: PipelineRun
    config: MatcherConfig
    store: DocumentStore


@dataclass
class StepResult:
    counters: dict[str, int] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False
    # Alerts persisted by the step, dispatched once the step commits
    events: list[AlertEvent] = field(default_factory=list)


def _scope_conditions(run: PipelineRun) -> list[Any]:
    start, end = period_bounds(run.period_year, run.period_month)
    return [
        BankTransaction.client_id == run.client_id,
        BankTransaction.fecha >= start,
        BankTransaction.fecha < end,
    ]


async def _scope_transactions(db: AsyncSession, run: PipelineRun) -> list[BankTransaction]:
    result = await db.execute(
        select(BankTransaction)
        .where(*_scope_conditions(run))
        .order_by(BankTransaction.fecha, BankTransaction.id)
    )
    return list(result.scalars())


def _header_amount(value: str | None, currency: str) -> int | None:
    if not value:
        return None
    try:
        return to_minor_units(parse_amount(value), currency)
    except AmountFormatError:
        return None


async def _step_import(ctx: StepContext) -> StepResult:
    db, run = ctx.db, ctx.run
    files = list(
        (
            await db.execute(
                select(StatementFile)
                .where(StatementFile.run_id == run.id)
                .where(
                    StatementFile.status.in_(
                        [StatementFileStatus.PENDING, StatementFileStatus.FAILED]
                    )
                )
                .order_by(StatementFile.created_at, StatementFile.id)
            )
        ).scalars()
    )
    if not files:
        return StepResult()

    account_ids = sorted({f.account_id for f in files})
    existing_hashes = set(
        (
            await db.execute(
                select(BankTransaction.dedup_hash)
                .where(BankTransaction.client_id == run.client_id)
                .where(BankTransaction.account_id.in_(account_ids))
            )
        ).scalars()
    )

    inserted = 0
    for statement in files:
        try:
            parsed = parse_statement(
                statement.content,
                statement.bank,
                statement.file_format,
                filename=statement.filename,
            )
        except ParseError as exc:
            statement.status = StatementFileStatus.FAILED
            statement.error_message = f"{type(exc).__name__}: {exc}"
            log_exception(
                logger,
                exc,
                "Statement file failed to parse",
                level="warning",
                include_traceback=False,
                statement_file_id=str(statement.id),
            )
            continue

        result = normalize_transactions(
            parsed.transactions,
            statement.bank,
            account_id=statement.account_id,
            currency=statement.currency,
            existing_hashes=existing_hashes,
        )
        for record in result.records:
            db.add(
                BankTransaction(
                    client_id=run.client_id,
                    account_id=record.account_id,
                    statement_file_id=statement.id,
                    bank=record.bank,
                    fecha=record.fecha,
                    fecha_valor=record.fecha_valor,
                    descripcion=record.descripcion,
                    descripcion_normalizada=record.descripcion_normalizada,
                    monto=record.monto,
                    tipo=record.tipo,
                    saldo=record.saldo,
                    currency=record.currency,
                    referencia=record.referencia,
                    rut_contraparte=record.rut_contraparte,
                    numero_documento=record.numero_documento,
                    dedup_hash=record.dedup_hash,
                    status=TransactionStatus.PENDING,
                    notas=[],
                )
            )
            existing_hashes.add(record.dedup_hash)

        statement.status = StatementFileStatus.IMPORTED
        statement.error_message = None
        statement.imported_count = len(result.records)
        statement.duplicate_count = result.duplicates
        statement.skipped_rows = [error.to_dict() for error in result.errors]
        statement.saldo_inicial = _header_amount(parsed.saldo_inicial, statement.currency)
        statement.saldo_final = _header_amount(parsed.saldo_final, statement.currency)
        inserted += len(result.records)

    await db.flush()
    imported = run.resultado.get("transacciones_importadas", 0) + inserted
    return StepResult(counters={"transacciones_importadas": imported})


async def _step_normalize(ctx: StepContext) -> StepResult:
    transactions = await _scope_transactions(ctx.db, ctx.run)
    for txn in transactions:
        if not txn.descripcion_normalizada:
            txn.descripcion_normalizada = normalize_description(txn.descripcion)
        if txn.rut_contraparte is None:
            txn.rut_contraparte = extract_rut(txn.descripcion)
        if txn.numero_documento is None:
            txn.numero_documento = extract_document_number(txn.descripcion) or txn.referencia
    await ctx.db.flush()
    return StepResult(counters={"transacciones_normalizadas": len(transactions)})


async def _step_categorize(ctx: StepContext) -> StepResult:
    transactions = await _scope_transactions(ctx.db, ctx.run)
    pending = [txn for txn in transactions if txn.is_uncategorized]
    if pending:
        rules = await load_rules(ctx.db, ctx.run.client_id)
        await categorize_transactions(ctx.db, pending, rules)
    categorized = sum(1 for txn in transactions if not txn.is_uncategorized)
    return StepResult(counters={"transacciones_categorizadas": categorized})


async def _step_match(ctx: StepContext) -> StepResult:
    db, run, config = ctx.db, ctx.run, ctx.config
    transactions = await _scope_transactions(db, run)
    patterns = list(
        (await db.execute(select(MatchPattern).where(MatchPattern.client_id == run.client_id))).scalars()
    )
    used_document_ids = set(
        (
            await db.execute(
                select(BankTransaction.documento_id)
                .where(BankTransaction.client_id == run.client_id)
                .where(BankTransaction.documento_id.is_not(None))
            )
        ).scalars()
    )

    for txn in transactions:
        if TransactionStatus(txn.status) not in OPEN_STATUSES:
            continue
        pool = await candidate_pool(ctx.store, run.client_id, txn, config)
        candidates = match_transaction(txn, pool, config, patterns)

        await db.execute(
            delete(MatchCandidate)
            .where(MatchCandidate.transaction_id == txn.id)
            .execution_options(synchronize_session=False)
        )
        for rank, candidate in enumerate(candidates, start=1):
            db.add(
                MatchCandidate(
                    transaction_id=txn.id,
                    documento_id=candidate.documento_id,
                    rank=rank,
                    score=candidate.score,
                    reasons=[reason.value for reason in candidate.reasons],
                    amount_diff=candidate.amount_diff,
                    day_diff=candidate.day_diff,
                )
            )

        if not candidates:
            txn.match_score = None
            set_status(txn, TransactionStatus.UNMATCHED)
            continue

        top = candidates[0]
        txn.match_score = top.score
        if (
            config.auto_accept_enabled
            and top.score >= config.auto_accept_threshold
            and top.documento_id not in used_document_ids
        ):
            set_status(txn, TransactionStatus.MATCHED, top.documento_id)
            append_note(txn, "auto_match", documento_id=top.documento_id, score=top.score)
            used_document_ids.add(top.documento_id)
        elif top.score >= config.partial_threshold:
            set_status(txn, TransactionStatus.PARTIAL)
        else:
            set_status(txn, TransactionStatus.PENDING)

    await db.flush()
    matched = sum(1 for txn in transactions if TransactionStatus(txn.status) in LINKED_STATUSES)
    return StepResult(counters={"transacciones_matched": matched})


async def _step_validate(ctx: StepContext) -> StepResult:
    db, run, config = ctx.db, ctx.run, ctx.config
    issues: list[dict[str, Any]] = []

    files = list(
        (
            await db.execute(
                select(StatementFile)
                .where(StatementFile.run_id == run.id)
                .order_by(StatementFile.created_at, StatementFile.id)
            )
        ).scalars()
    )
    for statement in files:
        if statement.status == StatementFileStatus.FAILED:
            issues.append(
                {
                    "type": AlertType.STATEMENT_FAILED.value,
                    "statement_file_id": str(statement.id),
                    "filename": statement.filename,
                    "message": statement.error_message,
                }
            )
            continue
        if (
            statement.status != StatementFileStatus.IMPORTED
            or statement.saldo_inicial is None
            or statement.saldo_final is None
            or statement.duplicate_count
        ):
            continue
        total = await db.scalar(
            select(func.coalesce(func.sum(BankTransaction.monto), 0)).where(
                BankTransaction.statement_file_id == statement.id
            )
        )
        actual = statement.saldo_inicial + int(total or 0)
        if actual != statement.saldo_final:
            issues.append(
                {
                    "type": AlertType.BALANCE_MISMATCH.value,
                    "statement_file_id": str(statement.id),
                    "filename": statement.filename,
                    "expected": statement.saldo_final,
                    "actual": actual,
                    "difference": statement.saldo_final - actual,
                }
            )

    linked = (
        await db.execute(
            select(BankTransaction, AccountingDocument)
            .join(AccountingDocument, BankTransaction.documento_id == AccountingDocument.id)
            .where(*_scope_conditions(run))
            .order_by(BankTransaction.fecha, BankTransaction.id)
        )
    ).all()
    for txn, document in linked:
        difference = abs(txn.monto) - abs(document.monto_total)
        tolerance = max(
            config.amount_absolute_tolerance,
            abs(document.monto_total) * config.amount_near_percent,
        )
        if abs(difference) > tolerance:
            issues.append(
                {
                    "type": AlertType.AMOUNT_MISMATCH.value,
                    "transaction_id": str(txn.id),
                    "documento_id": str(document.id),
                    "difference": difference,
                }
            )

    return StepResult(counters={"errores": len(issues)}, values={"validation_issues": issues})


_ISSUE_SEVERITY = {
    AlertType.STATEMENT_FAILED.value: AlertSeverity.HIGH,
    AlertType.BALANCE_MISMATCH.value: AlertSeverity.HIGH,
    AlertType.AMOUNT_MISMATCH.value: AlertSeverity.MEDIUM,
}


def _issue_event(run: PipelineRun, issue: dict[str, Any]) -> AlertEvent:
    alert_type = AlertType(issue["type"])
    transaction_id = issue.get("transaction_id")
    subject = issue.get("statement_file_id") or transaction_id
    if alert_type == AlertType.STATEMENT_FAILED:
        message = f"Statement {issue.get('filename')} could not be imported"
    elif alert_type == AlertType.BALANCE_MISMATCH:
        message = f"Statement {issue.get('filename')} balance differs by {issue.get('difference')}"
    else:
        message = f"Linked document amount differs by {issue.get('difference')}"
    return AlertEvent(
        alert_type=alert_type,
        severity=_ISSUE_SEVERITY[alert_type.value],
        run_id=run.id,
        transaction_id=UUID(transaction_id) if transaction_id else None,
        message=message,
        payload={"subject": subject, **{k: v for k, v in issue.items() if k != "type"}},
    )


async def _persist_alerts(
    db: AsyncSession,
    run: PipelineRun,
    events: list[AlertEvent],
) -> list[AlertEvent]:
    """Persist alerts not seen before for this run and return them for dispatch."""
    existing = set(
        (
            await db.execute(select(PipelineAlert.dedup_key).where(PipelineAlert.run_id == run.id))
        ).scalars()
    )
    fresh: list[AlertEvent] = []
    for event in events:
        if event.dedup_key in existing:
            continue
        existing.add(event.dedup_key)
        db.add(
            PipelineAlert(
                run_id=run.id,
                dedup_key=event.dedup_key,
                alert_type=event.alert_type.value,
                severity=event.severity.value,
                transaction_id=event.transaction_id,
                message=event.message,
                payload=event.payload,
            )
        )
        fresh.append(event)
    await db.flush()
    return fresh


async def _step_alert(ctx: StepContext) -> StepResult:
    db, run = ctx.db, ctx.run
    events = [_issue_event(run, issue) for issue in run.validation_issues or []]

    threshold = settings.alert_low_confidence_threshold
    uncategorized = 0
    for txn in await _scope_transactions(db, run):
        if txn.is_uncategorized:
            uncategorized += 1
        status = TransactionStatus(txn.status)
        if txn.match_score is None:
            continue
        awaiting = status in (TransactionStatus.PENDING, TransactionStatus.PARTIAL)
        weak_link = status in LINKED_STATUSES and txn.match_score < threshold
        if awaiting or weak_link:
            events.append(
                AlertEvent(
                    alert_type=AlertType.LOW_CONFIDENCE_MATCH,
                    severity=AlertSeverity.MEDIUM if txn.match_score < threshold else AlertSeverity.LOW,
                    run_id=run.id,
                    transaction_id=txn.id,
                    message=f"Best candidate scored {txn.match_score:.2f}",
                    payload={"score": txn.match_score, "status": status.value},
                )
            )
    if uncategorized:
        events.append(
            AlertEvent(
                alert_type=AlertType.UNCATEGORIZED,
                severity=AlertSeverity.LOW,
                run_id=run.id,
                message=f"{uncategorized} transactions without category",
                payload={"subject": "period", "count": uncategorized},
            )
        )

    fresh = await _persist_alerts(db, run, events)
    total = await db.scalar(
        select(func.count(PipelineAlert.id)).where(PipelineAlert.run_id == run.id)
    )
    return StepResult(counters={"alertas_generadas": total or 0}, events=fresh)


async def _step_approve(ctx: StepContext) -> StepResult:
    awaiting = await ctx.db.scalar(
        select(func.count(BankTransaction.id))
        .where(*_scope_conditions(ctx.run))
        .where(BankTransaction.status.in_([TransactionStatus.PENDING, TransactionStatus.PARTIAL]))
        .where(BankTransaction.candidates.any())
    )
    if awaiting:
        logger.info("Run awaiting confirmations", run_id=str(ctx.run.id), awaiting=awaiting)
        return StepResult(blocked=True)
    return StepResult()


StepHandler = Callable[[StepContext], Awaitable[StepResult]]

STEP_HANDLERS: dict[PipelineState, StepHandler] = {
    PipelineState.IMPORT: _step_import,
    PipelineState.NORMALIZE: _step_normalize,
    PipelineState.CATEGORIZE: _step_categorize,
    PipelineState.MATCH: _step_match,
    PipelineState.VALIDATE: _step_validate,
    PipelineState.ALERT: _step_alert,
    PipelineState.APPROVE: _step_approve,
}


# =============================================================================
# Execution
# =============================================================================


async def _record_failure(
    db: AsyncSession,
    run: PipelineRun,
    step: PipelineState,
    expected_version: int,
    error: PipelineStepError,
    sink: AlertSink,
) -> PipelineRun:
    log_exception(logger, error.cause, "Pipeline step failed", run_id=str(run.id), step=step.value)
    await db.refresh(run)
    await _compare_and_set(
        db,
        run,
        expected_version,
        state=PipelineState.FAILED,
        failed_step=step.value,
        error_message=str(error),
        executing_step=None,
        pending_action=None,
        pending_reason=None,
    )
    event = AlertEvent(
        alert_type=AlertType.RUN_FAILED,
        severity=AlertSeverity.CRITICAL,
        run_id=run.id,
        message=str(error),
        # One alert per failed attempt; a retry that fails again alerts again
        payload={"subject": f"{step.value}:{expected_version}", "step": step.value},
    )
    fresh = await _persist_alerts(db, run, [event])
    await db.commit()
    for alert in fresh:
        sink.emit(alert)
    return run


def _boundary_values(
    run: PipelineRun,
    state: PipelineState,
    result: StepResult,
    pending_action: str | None,
    pending_reason: str | None,
) -> dict[str, Any]:
    """Run row values recording a finished step, with any operator request applied."""
    values = dict(result.values)
    values.update(
        resultado={**run.resultado, **result.counters},
        executing_step=None,
        pending_action=None,
        pending_reason=None,
    )
    if result.blocked:
        following = state
    elif state == PipelineState.APPROVE:
        if pending_action is not None:
            logger.info("Operator request dropped, run completed", run_id=str(run.id), action=pending_action)
        values.update(
            state=PipelineState.COMPLETED,
            paso_actual=run.total_pasos,
            completed_at=datetime.now(UTC),
        )
        return values
    else:
        index = STEP_ORDER.index(state)
        following = STEP_ORDER[index + 1]
        values["paso_actual"] = index + 2

    if pending_action == OperatorAction.FAIL.value:
        values.update(
            state=PipelineState.FAILED,
            failed_step=following.value,
            error_message=pending_reason or "Failed by operator",
        )
    elif pending_action == OperatorAction.PAUSE.value:
        values.update(state=PipelineState.PAUSED, paused_from=following.value)
    else:
        values["state"] = following
    return values


async def _finish_step(
    db: AsyncSession,
    run: PipelineRun,
    state: PipelineState,
    expected_version: int,
    result: StepResult,
) -> PipelineRun:
    """Record the step result at the boundary.

    Operator requests do not bump ``version``, so the write is also
    conditioned on the request that was read; a request landing in between
    causes a re-read instead of being lost.
    """
    while True:
        row = (
            await db.execute(
                select(PipelineRun.version, PipelineRun.pending_action, PipelineRun.pending_reason)
                .where(PipelineRun.id == run.id)
            )
        ).one()
        if row.version != expected_version:
            raise ConcurrentRunError(f"Pipeline run {run.id} was modified concurrently")
        values = _boundary_values(run, state, result, row.pending_action, row.pending_reason)
        try:
            return await _compare_and_set(
                db,
                run,
                expected_version,
                PipelineRun.pending_action.is_not_distinct_from(row.pending_action),
                **values,
            )
        except ConcurrentRunError:
            continue


async def run_next_step(
    db: AsyncSession,
    run_id: UUID,
    *,
    config: MatcherConfig,
    alert_sink: AlertSink | None = None,
    store: DocumentStore | None = None,
) -> PipelineRun:
    """Execute exactly one step of the run and persist its outcome.

    The step is claimed first, so a second executor of the same run is
    rejected. A failing step moves the run to ``failed`` and returns it. A
    pause or failure requested meanwhile is applied after the step's output
    is committed. If another writer advanced the run while the step was
    running, the step's work is rolled back and ``ConcurrentRunError`` is
    raised.
    """
    run = await get_run(db, run_id)
    state = PipelineState(run.state)
    if state not in STEP_ORDER:
        raise InvalidTransitionError(f"Run in state {state.value} has no step to execute")

    await _compare_and_set(db, run, run.version, executing_step=state.value)
    await db.commit()
    expected_version = run.version

    sink = alert_sink or LoggingAlertSink()
    ctx = StepContext(db=db, run=run, config=config, store=store or SqlDocumentStore(db))

    try:
        async with async_log_timing("pipeline_step", logger=logger, step=state.value):
            async with db.begin_nested():
                result = await STEP_HANDLERS[state](ctx)
    except Exception as exc:
        return await _record_failure(
            db, run, state, expected_version, PipelineStepError(state, exc), sink
        )

    try:
        await _finish_step(db, run, state, expected_version, result)
    except ConcurrentRunError:
        await db.rollback()
        await db.refresh(run)
        logger.warning(
            "Step result discarded, run changed while executing",
            run_id=str(run.id),
            step=state.value,
            state=PipelineState(run.state).value,
        )
        raise
    await db.commit()
    for event in result.events:
        sink.emit(event)

    logger.info(
        "Pipeline step completed",
        run_id=str(run.id),
        step=state.value,
        blocked=result.blocked,
        paso_actual=run.paso_actual,
    )
    return run


async def execute_run(
    db: AsyncSession,
    run_id: UUID,
    *,
    config: MatcherConfig,
    alert_sink: AlertSink | None = None,
    store: DocumentStore | None = None,
    stop_after: PipelineState | None = None,
) -> PipelineRun:
    """Run steps until the run is terminal, paused, blocked in approve, or ``stop_after`` is done.

    The persisted state is re-read at every step boundary, which is where a
    pause or an operator failure takes effect.
    """
    if stop_after is not None and PipelineState(stop_after) not in STEP_ORDER:
        raise ValueError(f"stop_after must be a step, got {stop_after}")

    run = await get_run(db, run_id)
    with bound_contextvars(
        run_id=str(run.id), client_id=str(run.client_id), period=run.period_label
    ):
        if run.state == PipelineState.PENDING:
            run = await start_run(db, run.id)

        while True:
            await db.refresh(run)
            state = PipelineState(run.state)
            if state not in STEP_ORDER:
                break
            run = await run_next_step(
                db, run.id, config=config, alert_sink=alert_sink, store=store
            )
            if run.state == PipelineState.APPROVE and state == PipelineState.APPROVE:
                break
            if stop_after is not None and state == stop_after:
                break

    logger.info(
        "Pipeline execution returned",
        run_id=str(run.id),
        state=PipelineState(run.state).value,
        paso_actual=run.paso_actual,
    )
    return run


# =============================================================================
# Queries
# =============================================================================


async def list_alerts(db: AsyncSession, run_id: UUID) -> list[PipelineAlert]:
    result = await db.execute(
        select(PipelineAlert)
        .where(PipelineAlert.run_id == run_id)
        .order_by(PipelineAlert.created_at, PipelineAlert.dedup_key)
    )
    return list(result.scalars())


async def get_pipeline_stats(db: AsyncSession, client_id: UUID) -> dict[str, Any]:
    rows = await db.execute(
        select(PipelineRun.state, func.count(PipelineRun.id))
        .where(PipelineRun.client_id == client_id)
        .group_by(PipelineRun.state)
    )
    by_state = {PipelineState(state).value: count for state, count in rows.all()}
    last_completed = await db.scalar(
        select(PipelineRun)
        .where(PipelineRun.client_id == client_id)
        .where(PipelineRun.state == PipelineState.COMPLETED)
        .order_by(PipelineRun.completed_at.desc())
        .limit(1)
    )
    return {
        "total_runs": sum(by_state.values()),
        "runs_by_state": by_state,
        "last_completed": last_completed,
    }
