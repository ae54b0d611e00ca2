"""Fixed-slot tracking with a time bank for excess minutes."""

from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.datetime_utils import Clock
from timeledger.core.errors import (
    BankEmptyError,
    InvalidFormatError,
    NothingToRedeemError,
    SlotAlreadyFullError,
)
from timeledger.core.logging import get_logger
from timeledger.core.slots import SHIFTS, TIME_SLOTS, SlotWindow, find_slot
from timeledger.db.models import DEPOSIT, WITHDRAWAL, BankTransaction, DailyStudyLog
from timeledger.db.session import transaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class LogResult:
    logged_minutes: int
    banked_minutes: int


@dataclass(frozen=True)
class RedeemResult:
    success: bool
    actual_redeemed: int
    new_slot_value: int


@dataclass(frozen=True)
class SlotReading:
    slot: SlotWindow
    minutes: int
    target: int


@dataclass(frozen=True)
class ShiftTotal:
    name: str
    logged_minutes: int
    target_minutes: int


def _date_key(day: date) -> str:
    return day.isoformat()


class SlotStore:
    """Per-day slot grid plus an append-only bank ledger."""

    mode = "slot"

    def __init__(self, db: AsyncSession, clock: Clock, target_minutes: int = 30) -> None:
        self.db = db
        self.clock = clock
        self.target_minutes = target_minutes

    async def _get_row(self, day: date) -> DailyStudyLog | None:
        return await self.db.get(DailyStudyLog, _date_key(day))

    async def _get_or_create_row(self, day: date) -> DailyStudyLog:
        row = await self._get_row(day)
        if row is None:
            row = DailyStudyLog(session_date=_date_key(day))
            for slot in TIME_SLOTS:
                row.set_minutes(slot, 0)
            self.db.add(row)
        return row

    async def _balance(self) -> int:
        signed = case(
            (BankTransaction.type == DEPOSIT, BankTransaction.minutes),
            else_=-BankTransaction.minutes,
        )
        result = await self.db.execute(select(func.coalesce(func.sum(signed), 0)))
        return int(result.scalar_one())

    async def log_slot(self, day: date, slot_key: str, minutes: int) -> LogResult:
        """
        Overwrite a slot with ``minutes`` capped at the target.

        Minutes over the target are deposited in the bank in the same
        transaction.
        """
        if minutes < 0:
            raise InvalidFormatError(str(minutes), "a non-negative number of minutes")
        slot = find_slot(slot_key)
        logged = min(minutes, self.target_minutes)
        banked = max(0, minutes - self.target_minutes)

        async with transaction(self.db):
            row = await self._get_or_create_row(day)
            row.set_minutes(slot, logged)
            if banked > 0:
                self.db.add(
                    BankTransaction(
                        transaction_timestamp=self.clock.now_naive(),
                        type=DEPOSIT,
                        minutes=banked,
                        source_session_date=_date_key(day),
                        source_slot_key=slot.store_value,
                        description=f"Excess from {slot.display_name}",
                    )
                )
            await self.db.flush()

        logger.info(
            "Slot logged",
            extra={"date": _date_key(day), "slot": slot.key, "logged": logged, "banked": banked},
        )
        return LogResult(logged_minutes=logged, banked_minutes=banked)

    async def redeem(self, day: date, slot_key: str, requested: int) -> RedeemResult:
        """
        Move banked minutes into an under-filled slot.

        Redeems ``min(requested, target - current, balance)``.

        Raises:
            BankEmptyError: balance is zero
            SlotAlreadyFullError: slot is at or above its target
            NothingToRedeemError: the request resolves to zero minutes
        """
        slot = find_slot(slot_key)

        async with transaction(self.db):
            balance = await self._balance()
            if balance <= 0:
                raise BankEmptyError()

            row = await self._get_or_create_row(day)
            current = row.minutes(slot)
            room = self.target_minutes - current
            if room <= 0:
                raise SlotAlreadyFullError(slot.display_name, _date_key(day), current, self.target_minutes)

            actual = min(requested, room, balance)
            if actual <= 0:
                raise NothingToRedeemError(requested)

            new_value = current + actual
            row.set_minutes(slot, new_value)
            self.db.add(
                BankTransaction(
                    transaction_timestamp=self.clock.now_naive(),
                    type=WITHDRAWAL,
                    minutes=actual,
                    source_session_date=_date_key(day),
                    source_slot_key=slot.store_value,
                    description=f"Redeemed into {slot.display_name}",
                )
            )
            await self.db.flush()

        logger.info(
            "Bank redeemed",
            extra={"date": _date_key(day), "slot": slot.key, "redeemed": actual},
        )
        return RedeemResult(success=True, actual_redeemed=actual, new_slot_value=new_value)

    async def bank_balance(self) -> int:
        async with transaction(self.db):
            return await self._balance()

    async def transaction_history(self, limit: int = 20, offset: int = 0) -> list[BankTransaction]:
        """Bank transactions, newest first."""
        async with transaction(self.db):
            result = await self.db.execute(
                select(BankTransaction)
                .order_by(BankTransaction.transaction_timestamp.desc(), BankTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def slot_minutes(self, day: date, slot_key: str) -> int:
        slot = find_slot(slot_key)
        async with transaction(self.db):
            row = await self._get_row(day)
        return row.minutes(slot) if row else 0

    async def day_slots(self, day: date) -> list[SlotReading]:
        """Every slot of ``day`` in window order; zero when nothing was logged."""
        async with transaction(self.db):
            row = await self._get_row(day)
        return [
            SlotReading(slot=slot, minutes=row.minutes(slot) if row else 0, target=self.target_minutes)
            for slot in TIME_SLOTS
        ]

    async def daily_total(self, day: date) -> int:
        """Minutes logged across all slots of ``day``."""
        async with transaction(self.db):
            row = await self._get_row(day)
        return row.total_minutes if row else 0

    async def shift_totals(self, day: date) -> list[ShiftTotal]:
        readings = await self.day_slots(day)
        totals = []
        for shift in SHIFTS:
            in_shift = [r for r in readings if shift.contains(r.slot)]
            totals.append(
                ShiftTotal(
                    name=shift.name,
                    logged_minutes=sum(r.minutes for r in in_shift),
                    target_minutes=self.target_minutes * len(in_shift),
                )
            )
        return totals

    async def reset_day(self, day: date) -> bool:
        """Zero every slot of ``day``; the bank is left untouched."""
        async with transaction(self.db):
            row = await self._get_row(day)
            if row is None:
                return False
            for slot in TIME_SLOTS:
                row.set_minutes(slot, 0)

        logger.info("Day reset", extra={"date": _date_key(day)})
        return True

    async def daily_totals(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> dict[date, int]:
        """Seconds per day with any logged minutes, ascending."""
        totals: dict[date, int] = {}
        for row in await self._rows(date_from, date_to):
            if row.total_minutes > 0:
                totals[date.fromisoformat(row.session_date)] = row.total_minutes * 60
        return totals

    async def entry_durations(self) -> list[int]:
        return [
            row.minutes(slot) * 60
            for row in await self._rows()
            for slot in TIME_SLOTS
            if row.minutes(slot) > 0
        ]

    async def in_progress_seconds(self) -> int:
        return 0

    async def _rows(self, date_from: date | None = None, date_to: date | None = None) -> list[DailyStudyLog]:
        stmt = select(DailyStudyLog)
        if date_from is not None:
            stmt = stmt.where(DailyStudyLog.session_date >= _date_key(date_from))
        if date_to is not None:
            stmt = stmt.where(DailyStudyLog.session_date <= _date_key(date_to))
        async with transaction(self.db):
            result = await self.db.execute(stmt.order_by(DailyStudyLog.session_date))
            return list(result.scalars().all())
