"""SQLAlchemy models package."""

from src.models.document import AccountingDocument, DocumentType
from src.models.matching import MatchCandidate, MatchPattern
from src.models.pipeline import OperatorAction, PipelineAlert, PipelineRun, PipelineState
from src.models.rules import CategorizationRule, CategorizationRuleSet
from src.models.statement import BankCode, FileFormat, StatementFile, StatementFileStatus
from src.models.transaction import (
    LINKED_STATUSES,
    OPEN_STATUSES,
    UNCATEGORIZED,
    BankTransaction,
    Direction,
    TransactionStatus,
)

__all__ = [
    "LINKED_STATUSES",
    "OPEN_STATUSES",
    "UNCATEGORIZED",
    "AccountingDocument",
    "BankCode",
    "BankTransaction",
    "CategorizationRule",
    "CategorizationRuleSet",
    "Direction",
    "DocumentType",
    "FileFormat",
    "MatchCandidate",
    "MatchPattern",
    "OperatorAction",
    "PipelineAlert",
    "PipelineRun",
    "PipelineState",
    "StatementFile",
    "StatementFileStatus",
    "TransactionStatus",
]
