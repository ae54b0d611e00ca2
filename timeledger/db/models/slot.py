"""Slot grid and time bank models."""

from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Table, Text
from sqlalchemy.orm import Mapped, mapped_column

from timeledger.core.slots import TIME_SLOTS, SlotWindow
from timeledger.db.base import Base

DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"


def _slot_column(slot: SlotWindow) -> Column[int]:
    return Column(
        slot.db_column,
        Integer,
        CheckConstraint(f"{slot.db_column} >= 0", name=f"ck_{slot.db_column}_non_negative"),
        nullable=False,
        default=0,
        server_default="0",
    )


daily_study_logs = Table(
    "daily_study_logs",
    Base.metadata,
    Column("session_date", String(10), primary_key=True),
    *(_slot_column(slot) for slot in TIME_SLOTS),
)


class DailyStudyLog(Base):
    """One row per local date; one minutes column per slot window."""

    __table__ = daily_study_logs

    def minutes(self, slot: SlotWindow) -> int:
        return getattr(self, slot.db_column) or 0

    def set_minutes(self, slot: SlotWindow, value: int) -> None:
        setattr(self, slot.db_column, value)

    @property
    def total_minutes(self) -> int:
        return sum(self.minutes(slot) for slot in TIME_SLOTS)


class BankTransaction(Base):
    """Append-only deposit/withdrawal entry of the time bank."""

    __tablename__ = "time_bank_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_timestamp: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC).replace(tzinfo=None),
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    source_session_date: Mapped[str] = mapped_column(String(10), nullable=False)
    source_slot_key: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            f"type IN ('{DEPOSIT}', '{WITHDRAWAL}')",
            name="ck_bank_transaction_type",
        ),
        CheckConstraint("minutes > 0", name="ck_bank_transaction_minutes_positive"),
        Index("idx_bank_transactions_timestamp", "transaction_timestamp"),
    )
