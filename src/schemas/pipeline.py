"""Pydantic schemas for pipeline runs."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from src.models import BankCode, FileFormat, PipelineState, StatementFileStatus
from src.schemas.base import BaseResponse, ListResponse


class PipelineRunCreate(BaseModel):
    client_id: UUID
    period_year: int = Field(..., ge=2000, le=2100)
    period_month: int = Field(..., ge=1, le=12)


class PipelineRunResponse(BaseResponse):
    id: UUID
    client_id: UUID
    period_year: int
    period_month: int
    state: PipelineState
    paso_actual: int
    total_pasos: int
    paused_from: str | None
    failed_step: str | None
    executing_step: str | None = None
    pending_action: str | None = None
    resultado: dict[str, int]
    validation_issues: list[dict[str, Any]]
    error_message: str | None
    version: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


PipelineRunListResponse = ListResponse[PipelineRunResponse]


class ExecuteRunRequest(BaseModel):
    """Execute steps until the run blocks, or stop after the named step."""

    stop_after: PipelineState | None = None


class FailRunRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class StatementFileResponse(BaseResponse):
    id: UUID
    run_id: UUID | None
    account_id: str
    bank: BankCode
    file_format: FileFormat
    filename: str
    file_hash: str
    currency: str
    status: StatementFileStatus
    error_message: str | None
    imported_count: int
    duplicate_count: int
    skipped_rows: list[dict[str, Any]]
    created_at: datetime


class PipelineAlertResponse(BaseResponse):
    id: UUID
    run_id: UUID
    alert_type: str
    severity: str
    transaction_id: UUID | None
    message: str
    payload: dict[str, Any]
    created_at: datetime


PipelineAlertListResponse = ListResponse[PipelineAlertResponse]


class PipelineStatsResponse(BaseModel):
    total_runs: int
    runs_by_state: dict[str, int]
    last_completed: PipelineRunResponse | None = None
