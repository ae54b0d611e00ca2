"""Database models."""

from timeledger.db.models.session import ACTIVE_STATUS_KEY, ActiveSessionStatus, Session
from timeledger.db.models.slot import (
    DEPOSIT,
    WITHDRAWAL,
    BankTransaction,
    DailyStudyLog,
    daily_study_logs,
)

__all__ = [
    "ACTIVE_STATUS_KEY",
    "ActiveSessionStatus",
    "BankTransaction",
    "DEPOSIT",
    "DailyStudyLog",
    "Session",
    "WITHDRAWAL",
    "daily_study_logs",
]
