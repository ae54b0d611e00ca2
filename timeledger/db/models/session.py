"""Session ledger models."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from timeledger.db.base import Base
from timeledger.db.types import UUIDText

ACTIVE_STATUS_KEY = "current_session"


class Session(Base):
    """A tracked work interval. ``end_time`` is NULL while it is running."""

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDText(),
        primary_key=True,
        default=uuid.uuid4,
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime())
    # Whole seconds, kept in step with end_time
    duration: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "end_time IS NULL OR end_time > start_time",
            name="ck_sessions_end_after_start",
        ),
        CheckConstraint(
            "(end_time IS NULL) = (duration IS NULL)",
            name="ck_sessions_duration_with_end",
        ),
        Index("idx_sessions_start_time", "start_time"),
        Index("idx_sessions_end_time", "end_time"),
    )

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def close(self, end_time: datetime) -> None:
        self.end_time = end_time
        self.duration = int((end_time - self.start_time).total_seconds())

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.start_time} -> {self.end_time}>"


# At most one open session, whatever path writes it
Index(
    "uq_sessions_single_open",
    Session.end_time.is_(None),
    unique=True,
    sqlite_where=Session.end_time.is_(None),
)


class ActiveSessionStatus(Base):
    """Singleton pointer to the running session."""

    __tablename__ = "status"

    key: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        default=ACTIVE_STATUS_KEY,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUIDText(),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    __table_args__ = (
        CheckConstraint(f"key = '{ACTIVE_STATUS_KEY}'", name="ck_status_singleton"),
    )
