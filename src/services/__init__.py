"""Services package."""

from src.services.alerts import AlertEvent, AlertSink, LoggingAlertSink
from src.services.classification import (
    DEFAULT_RULES,
    CategorizationResult,
    Rule,
    RuleDefinitionError,
    apply_rules,
    load_rules,
    order_rules,
    suggest_rule,
)
from src.services.documents import DocumentRecord, DocumentStore, SqlDocumentStore, candidate_pool
from src.services.matching import (
    CandidateMatch,
    ConfigError,
    MatcherConfig,
    MatchingError,
    MatchReason,
    load_matcher_config,
    match_transaction,
)
from src.services.normalization import (
    NormalizationError,
    NormalizationResult,
    NormalizedTransaction,
    normalize_transactions,
)
from src.services.parsing import (
    CorruptFile,
    EmptyStatement,
    ParsedStatement,
    ParseError,
    RawTransaction,
    UnsupportedFormat,
    parse_statement,
)
from src.services.pipeline import (
    ConcurrentRunError,
    InvalidTransitionError,
    PipelineStepError,
    create_run,
    execute_run,
    pause_run,
    resume_run,
    retry_run,
    run_next_step,
)
from src.services.review import ConfirmationError, confirm_match, reject_match, undo_match
from src.services.summary import get_reconciliation_summary

__all__ = [
    "DEFAULT_RULES",
    "AlertEvent",
    "AlertSink",
    "CandidateMatch",
    "CategorizationResult",
    "ConcurrentRunError",
    "ConfigError",
    "ConfirmationError",
    "CorruptFile",
    "DocumentRecord",
    "DocumentStore",
    "EmptyStatement",
    "InvalidTransitionError",
    "LoggingAlertSink",
    "MatchReason",
    "MatcherConfig",
    "MatchingError",
    "NormalizationError",
    "NormalizationResult",
    "NormalizedTransaction",
    "ParseError",
    "ParsedStatement",
    "PipelineStepError",
    "RawTransaction",
    "Rule",
    "RuleDefinitionError",
    "SqlDocumentStore",
    "UnsupportedFormat",
    "apply_rules",
    "candidate_pool",
    "confirm_match",
    "create_run",
    "execute_run",
    "get_reconciliation_summary",
    "load_matcher_config",
    "load_rules",
    "match_transaction",
    "normalize_transactions",
    "order_rules",
    "parse_statement",
    "pause_run",
    "reject_match",
    "resume_run",
    "retry_run",
    "run_next_step",
    "suggest_rule",
    "undo_match",
]
