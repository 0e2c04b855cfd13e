"""Reconciliation pipeline API router."""

from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status

from src.config import settings
from src.deps import AlertSinkDep, DbSession, MatcherConfigDep
from src.models import BankCode, PipelineState
from src.schemas import (
    ExecuteRunRequest,
    FailRunRequest,
    PipelineAlertListResponse,
    PipelineAlertResponse,
    PipelineRunCreate,
    PipelineRunListResponse,
    PipelineRunResponse,
    PipelineStatsResponse,
    StatementFileResponse,
)
from src.services.parsing import ParseError
from src.services.pipeline import (
    ConcurrentRunError,
    InvalidTransitionError,
    PipelineError,
    RunNotFoundError,
    attach_statement,
    create_run,
    execute_run,
    fail_run,
    get_pipeline_stats,
    get_run,
    list_alerts,
    list_runs,
    pause_run,
    resume_run,
    retry_run,
)
from src.utils.exceptions import raise_bad_request, raise_conflict, raise_not_found, raise_too_large

router = APIRouter(prefix="/pipeline", tags=["pipeline"])

ClientId = Annotated[UUID, Query(description="Owning client (tenant) id")]


def _raise_pipeline_error(exc: PipelineError) -> NoReturn:
    if isinstance(exc, RunNotFoundError):
        raise_not_found("Pipeline run", cause=exc)
    if isinstance(exc, (InvalidTransitionError, ConcurrentRunError)):
        raise_conflict(str(exc), cause=exc)
    raise_bad_request(str(exc), cause=exc)


@router.post("/runs", response_model=PipelineRunResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline_run(
    payload: PipelineRunCreate,
    response: Response,
    db: DbSession,
) -> PipelineRunResponse:
    """Create a run for the period, or return the one still open."""
    run, created = await create_run(db, payload.client_id, payload.period_year, payload.period_month)
    if not created:
        response.status_code = status.HTTP_200_OK
    return PipelineRunResponse.model_validate(run)


@router.get("/runs", response_model=PipelineRunListResponse)
async def list_pipeline_runs(
    db: DbSession,
    client_id: ClientId,
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    state: PipelineState | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> PipelineRunListResponse:
    runs, total = await list_runs(
        db, client_id, year=year, month=month, state=state, limit=limit, offset=offset
    )
    return PipelineRunListResponse(
        items=[PipelineRunResponse.model_validate(run) for run in runs],
        total=total,
    )


@router.get("/stats", response_model=PipelineStatsResponse)
async def pipeline_stats(db: DbSession, client_id: ClientId) -> PipelineStatsResponse:
    stats = await get_pipeline_stats(db, client_id)
    last = stats["last_completed"]
    return PipelineStatsResponse(
        total_runs=stats["total_runs"],
        runs_by_state=stats["runs_by_state"],
        last_completed=PipelineRunResponse.model_validate(last) if last else None,
    )


@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_pipeline_run(run_id: UUID, db: DbSession, client_id: ClientId) -> PipelineRunResponse:
    try:
        run = await get_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.post(
    "/runs/{run_id}/statements",
    response_model=StatementFileResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_statement(
    run_id: UUID,
    response: Response,
    db: DbSession,
    client_id: ClientId,
    file: Annotated[UploadFile, File()],
    bank: Annotated[BankCode, Form()],
    account_id: Annotated[str, Form(min_length=1, max_length=64)],
    currency: Annotated[str | None, Form(max_length=3)] = None,
) -> StatementFileResponse:
    """Attach a bank statement (PDF, CSV or .xlsx) for the run's next import step."""
    try:
        run = await get_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)

    content = await file.read()
    if len(content) > settings.max_statement_bytes:
        raise_too_large(f"Statement exceeds {settings.max_statement_bytes} bytes")
    if not content:
        raise_bad_request("Statement file is empty")

    try:
        statement, created = await attach_statement(
            db,
            run,
            content=content,
            filename=file.filename or "statement",
            bank=bank,
            account_id=account_id,
            currency=currency,
        )
    except ParseError as exc:
        raise_bad_request(str(exc), cause=exc)
    except PipelineError as exc:
        _raise_pipeline_error(exc)

    await db.commit()
    await db.refresh(statement)
    if not created:
        response.status_code = status.HTTP_200_OK
    return StatementFileResponse.model_validate(statement)


@router.post("/runs/{run_id}/execute", response_model=PipelineRunResponse)
async def execute_pipeline_run(
    run_id: UUID,
    db: DbSession,
    client_id: ClientId,
    config: MatcherConfigDep,
    alert_sink: AlertSinkDep,
    payload: ExecuteRunRequest | None = None,
) -> PipelineRunResponse:
    """Run steps until the run completes, fails, pauses or waits for confirmations."""
    stop_after = payload.stop_after if payload else None
    if stop_after is not None and stop_after in (
        PipelineState.PENDING,
        PipelineState.COMPLETED,
        PipelineState.FAILED,
        PipelineState.PAUSED,
    ):
        raise_bad_request(f"stop_after must name a step, got {stop_after.value}")
    try:
        await get_run(db, run_id, client_id=client_id)
        run = await execute_run(
            db, run_id, config=config, alert_sink=alert_sink, stop_after=stop_after
        )
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.post("/runs/{run_id}/pause", response_model=PipelineRunResponse)
async def pause_pipeline_run(run_id: UUID, db: DbSession, client_id: ClientId) -> PipelineRunResponse:
    try:
        run = await pause_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.post("/runs/{run_id}/resume", response_model=PipelineRunResponse)
async def resume_pipeline_run(run_id: UUID, db: DbSession, client_id: ClientId) -> PipelineRunResponse:
    try:
        run = await resume_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.post("/runs/{run_id}/retry", response_model=PipelineRunResponse)
async def retry_pipeline_run(run_id: UUID, db: DbSession, client_id: ClientId) -> PipelineRunResponse:
    try:
        run = await retry_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.post("/runs/{run_id}/fail", response_model=PipelineRunResponse)
async def fail_pipeline_run(
    run_id: UUID,
    payload: FailRunRequest,
    db: DbSession,
    client_id: ClientId,
) -> PipelineRunResponse:
    try:
        run = await fail_run(db, run_id, payload.reason, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    return PipelineRunResponse.model_validate(run)


@router.get("/runs/{run_id}/alerts", response_model=PipelineAlertListResponse)
async def list_pipeline_alerts(
    run_id: UUID,
    db: DbSession,
    client_id: ClientId,
) -> PipelineAlertListResponse:
    try:
        await get_run(db, run_id, client_id=client_id)
    except PipelineError as exc:
        _raise_pipeline_error(exc)
    alerts = await list_alerts(db, run_id)
    return PipelineAlertListResponse(
        items=[PipelineAlertResponse.model_validate(alert) for alert in alerts],
        total=len(alerts),
    )
