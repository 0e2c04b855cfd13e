"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from src.deps import DbSession, MatcherConfigDep

    async def my_endpoint(db: DbSession, config: MatcherConfigDep):
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.services.alerts import AlertSink, LoggingAlertSink
from src.services.matching import MatcherConfig, load_matcher_config


def get_matcher_config() -> MatcherConfig:
    return load_matcher_config()


def get_alert_sink() -> AlertSink:
    return LoggingAlertSink()


DbSession = Annotated[AsyncSession, Depends(get_db)]
MatcherConfigDep = Annotated[MatcherConfig, Depends(get_matcher_config)]
AlertSinkDep = Annotated[AlertSink, Depends(get_alert_sink)]

__all__ = ["AlertSinkDep", "DbSession", "MatcherConfigDep", "get_alert_sink", "get_matcher_config"]
