"""Pydantic schemas package."""

from src.schemas.base import BaseResponse, ListResponse
from src.schemas.pipeline import (
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
from src.schemas.rules import (
    RuleCreate,
    RuleListResponse,
    RuleResponse,
    RuleSuggestionResponse,
    RuleSuggestRequest,
)
from src.schemas.summary import ReconciliationSummaryResponse
from src.schemas.transactions import (
    BankTransactionListResponse,
    BankTransactionResponse,
    CandidateListResponse,
    ConfirmMatchRequest,
    MatchCandidateResponse,
    RejectMatchRequest,
    UndoMatchRequest,
)

__all__ = [
    "BankTransactionListResponse",
    "BankTransactionResponse",
    "BaseResponse",
    "CandidateListResponse",
    "ConfirmMatchRequest",
    "ExecuteRunRequest",
    "FailRunRequest",
    "ListResponse",
    "MatchCandidateResponse",
    "PipelineAlertListResponse",
    "PipelineAlertResponse",
    "PipelineRunCreate",
    "PipelineRunListResponse",
    "PipelineRunResponse",
    "PipelineStatsResponse",
    "ReconciliationSummaryResponse",
    "RejectMatchRequest",
    "RuleCreate",
    "RuleListResponse",
    "RuleResponse",
    "RuleSuggestRequest",
    "RuleSuggestionResponse",
    "StatementFileResponse",
    "UndoMatchRequest",
]
