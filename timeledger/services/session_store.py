"""Session ledger: start/stop, manual entry, edits and import/export.

Every public operation runs in one transaction on the injected AsyncSession.
Decision reads (active-session and overlap checks) happen inside the same
transaction as the write they guard.
"""

import re
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError
from sqlalchemy import String, and_, delete, or_, select, type_coerce
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.datetime_utils import Clock
from timeledger.core.errors import (
    AlreadyActiveError,
    AmbiguousIdError,
    InvalidFormatError,
    InvalidRangeError,
    NoActiveSessionError,
    NotFoundError,
    OverlapError,
    SessionActiveError,
)
from timeledger.core.filters import FilterExpression, FilterField, FilterOperator
from timeledger.core.logging import get_logger
from timeledger.core.timeparse import parse_clock_time, parse_relative_adjustment
from timeledger.db.models import ACTIVE_STATUS_KEY, ActiveSessionStatus, Session
from timeledger.db.session import transaction
from timeledger.services.reporting import aggregate_by_local_day
from timeledger.services.transfer import ImportRecord

logger = get_logger(__name__)

_ID_PREFIX_RE = re.compile(r"^[0-9a-f-]+$")


def intervals_overlap(
    start_a: datetime,
    end_a: datetime | None,
    start_b: datetime,
    end_b: datetime | None,
) -> bool:
    """Half-open ``[start, end)`` overlap test; a None end is unbounded."""
    a_ends_after_b_starts = end_a is None or end_a > start_b
    a_starts_before_b_ends = end_b is None or start_a < end_b
    return a_ends_after_b_starts and a_starts_before_b_ends


@dataclass(frozen=True)
class Found:
    session: Session


@dataclass(frozen=True)
class NotFound:
    prefix: str


@dataclass(frozen=True)
class Ambiguous:
    prefix: str
    matches: list[Session]


Resolution = Found | NotFound | Ambiguous


@dataclass(frozen=True)
class SessionSnapshot:
    """Detached copy of a session; errors carry these since rollback expires ORM rows."""

    id: uuid.UUID
    start_time: datetime
    end_time: datetime | None
    duration: int | None

    @classmethod
    def of(cls, session: Session) -> "SessionSnapshot":
        return cls(
            id=session.id,
            start_time=session.start_time,
            end_time=session.end_time,
            duration=session.duration,
        )


def _snapshots(sessions: Sequence[Session]) -> list[SessionSnapshot]:
    return [SessionSnapshot.of(s) for s in sessions]


@dataclass(frozen=True)
class ActiveStatus:
    session: Session
    elapsed_seconds: int


@dataclass
class SessionQuery:
    """List filter. ``on_date`` and the date range are mutually exclusive."""

    on_date: date | None = None
    date_from: date | None = None
    date_to: date | None = None
    expression: FilterExpression | None = None
    descending: bool = False
    include_active: bool = True


class SkipReason(str, Enum):
    INVALID_FORMAT = "invalid_format"
    INVALID_RANGE = "invalid_range"
    OVERLAP = "overlap"


@dataclass
class SkippedEntry:
    index: int
    entry: Any
    reason: SkipReason
    detail: str = ""


@dataclass
class ImportResult:
    imported: list[Session] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return len(self.imported)


class SessionStore:
    """Interval-based tracking store."""

    mode = "session"

    def __init__(self, db: AsyncSession, clock: Clock, short_id_length: int = 8) -> None:
        self.db = db
        self.clock = clock
        self.short_id_length = short_id_length

    # ------------------------------------------------------------------
    # Active session state machine
    # ------------------------------------------------------------------

    async def find_active(self) -> Session | None:
        result = await self.db.execute(select(Session).where(Session.end_time.is_(None)))
        return result.scalar_one_or_none()

    async def start(self) -> Session:
        """Open a new session at the current instant."""
        try:
            async with transaction(self.db):
                active = await self.find_active()
                if active is not None:
                    raise AlreadyActiveError(SessionSnapshot.of(active))

                now = self.clock.now_naive()
                conflicts = await self.find_overlaps(now, None)
                if conflicts:
                    raise OverlapError(_snapshots(conflicts))

                session = Session(id=uuid.uuid4(), start_time=now)
                self.db.add(session)
                # The status row references the session; insert the session first
                await self.db.flush()
                self.db.add(ActiveSessionStatus(session_id=session.id, start_time=now))
                await self.db.flush()
        except IntegrityError as e:
            # Only a session opened between our check and insert means "already active"
            async with transaction(self.db):
                active = await self.find_active()
            if active is None:
                raise
            raise AlreadyActiveError(SessionSnapshot.of(active)) from e

        logger.info(
            "Session started",
            extra={"session_id": str(session.id), "start_time": session.start_time.isoformat()},
        )
        return session

    async def stop(self) -> Session:
        """Close the running session at the current instant."""
        async with transaction(self.db):
            session = await self.find_active()
            if session is None:
                raise NoActiveSessionError()

            now = self.clock.now_naive()
            if now <= session.start_time:
                raise InvalidRangeError(session.start_time, now)

            session.close(now)
            await self.db.execute(delete(ActiveSessionStatus))

        logger.info(
            "Session stopped",
            extra={"session_id": str(session.id), "duration": session.duration},
        )
        return session

    async def status(self) -> ActiveStatus | None:
        async with transaction(self.db):
            session = await self.find_active()
        if session is None:
            return None
        elapsed = int((self.clock.now_naive() - session.start_time).total_seconds())
        return ActiveStatus(session=session, elapsed_seconds=max(0, elapsed))

    async def in_progress_seconds(self) -> int:
        current = await self.status()
        return current.elapsed_seconds if current else 0

    # ------------------------------------------------------------------
    # Manual entries
    # ------------------------------------------------------------------

    async def add_completed(self, start: datetime, end: datetime) -> Session:
        """
        Record a closed session.

        Naive datetimes are local wall-clock time.

        Raises:
            InvalidRangeError: end is not strictly after start
            OverlapError: the interval overlaps stored sessions
        """
        start_utc = self.clock.to_storage(start)
        end_utc = self.clock.to_storage(end)
        if end_utc <= start_utc:
            raise InvalidRangeError(start, end)

        async with transaction(self.db):
            conflicts = await self.find_overlaps(start_utc, end_utc)
            if conflicts:
                raise OverlapError(_snapshots(conflicts))
            session = Session(id=uuid.uuid4(), start_time=start_utc)
            session.close(end_utc)
            self.db.add(session)
            await self.db.flush()

        logger.info(
            "Session added",
            extra={"session_id": str(session.id), "duration": session.duration},
        )
        return session

    async def add_duration_ending_now(self, seconds: int) -> Session:
        """Record a session of ``seconds`` that ends at the current instant."""
        if seconds <= 0:
            now = self.clock.now()
            raise InvalidRangeError(now, now, "Duration must be positive.")
        end = self.clock.now().replace(microsecond=0)
        return await self.add_completed(end - timedelta(seconds=seconds), end)

    async def edit(
        self,
        prefix: str,
        new_start: str | datetime | None = None,
        new_end: str | datetime | None = None,
    ) -> Session:
        """
        Change the start and/or end of the session matching ``prefix``.

        String values are either a relative adjustment (``+15m``, ``-1h``)
        applied to the original field or a clock time on the local date of
        the original field. The running session may only have its start
        moved, and only to a point before now.
        """
        if new_start is None and new_end is None:
            raise InvalidFormatError("", "--start and/or --end", "Nothing to edit. Give a new start and/or end.")

        async with transaction(self.db):
            session = await self._require(prefix)

            if session.is_open and new_end is not None:
                raise SessionActiveError(SessionSnapshot.of(session), "edit the end of")

            start = session.start_time
            if new_start is not None:
                start = self._resolve_edit_value(new_start, session.start_time)

            end = session.end_time
            if new_end is not None and session.end_time is not None:
                end = self._resolve_edit_value(new_end, session.end_time)

            limit = end if end is not None else self.clock.now_naive()
            if limit <= start:
                raise InvalidRangeError(start, limit)

            conflicts = await self.find_overlaps(start, end, exclude_id=session.id)
            if conflicts:
                raise OverlapError(_snapshots(conflicts))

            session.start_time = start
            if end is not None:
                session.close(end)
            else:
                status = await self.db.get(ActiveSessionStatus, ACTIVE_STATUS_KEY)
                if status is not None:
                    status.start_time = start
            await self.db.flush()

        logger.info(
            "Session edited",
            extra={"session_id": str(session.id), "start_time": start.isoformat()},
        )
        return session

    def _resolve_edit_value(self, value: str | datetime, original: datetime) -> datetime:
        if isinstance(value, datetime):
            return self.clock.to_storage(value)
        adjustment = parse_relative_adjustment(value)
        if adjustment is not None:
            return original + adjustment.delta
        wall_clock = self.clock.to_local(original).replace(tzinfo=None)
        return self.clock.to_storage(parse_clock_time(value, wall_clock))

    async def delete_by_id_prefix(self, prefix: str) -> Session:
        """Delete exactly one closed session matching ``prefix``."""
        async with transaction(self.db):
            session = await self._require(prefix)
            if session.is_open:
                raise SessionActiveError(SessionSnapshot.of(session), "delete")
            await self.db.delete(session)

        logger.info("Session deleted", extra={"session_id": str(session.id)})
        return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def resolve_id_prefix(self, prefix: str) -> Resolution:
        """Resolve an id prefix to one session without raising on 0 or >1 matches."""
        needle = prefix.strip().lower()
        if not needle or not _ID_PREFIX_RE.match(needle):
            raise InvalidFormatError(prefix, "a hexadecimal session id prefix")

        result = await self.db.execute(
            select(Session)
            .where(type_coerce(Session.id, String).like(f"{needle}%"))
            .order_by(Session.start_time)
        )
        matches = list(result.scalars().all())
        if not matches:
            return NotFound(prefix=needle)
        if len(matches) > 1:
            return Ambiguous(prefix=needle, matches=matches)
        return Found(session=matches[0])

    async def _require(self, prefix: str) -> Session:
        resolution = await self.resolve_id_prefix(prefix)
        if isinstance(resolution, NotFound):
            raise NotFoundError(resolution.prefix)
        if isinstance(resolution, Ambiguous):
            raise AmbiguousIdError(resolution.prefix, _snapshots(resolution.matches))
        return resolution.session

    async def find_overlaps(
        self,
        start: datetime,
        end: datetime | None,
        exclude_id: uuid.UUID | None = None,
    ) -> list[Session]:
        """Stored sessions overlapping ``[start, end)``; open sessions are unbounded."""
        conditions = [or_(Session.end_time.is_(None), Session.end_time > start)]
        if end is not None:
            conditions.append(Session.start_time < end)
        if exclude_id is not None:
            conditions.append(Session.id != exclude_id)

        result = await self.db.execute(
            select(Session).where(and_(*conditions)).order_by(Session.start_time)
        )
        return list(result.scalars().all())

    async def list_sessions(self, query: SessionQuery | None = None) -> list[Session]:
        query = query or SessionQuery()
        if query.on_date and (query.date_from or query.date_to):
            raise InvalidFormatError(
                "--date with --from/--to", "either a date or a range",
                "Use either a single date or a date range, not both.",
            )

        stmt = select(Session)
        if query.on_date:
            day_start, day_end = self.clock.day_bounds(query.on_date)
            stmt = stmt.where(Session.start_time >= day_start, Session.start_time < day_end)
        else:
            range_start, range_end = self.clock.range_bounds(query.date_from, query.date_to)
            if range_start is not None:
                stmt = stmt.where(Session.start_time >= range_start)
            if range_end is not None:
                stmt = stmt.where(Session.start_time < range_end)

        if query.expression is not None:
            stmt = stmt.where(*self._expression_conditions(query.expression))
        if not query.include_active:
            stmt = stmt.where(Session.end_time.is_not(None))

        order = Session.start_time.desc() if query.descending else Session.start_time.asc()
        async with transaction(self.db):
            result = await self.db.execute(stmt.order_by(order))
            return list(result.scalars().all())

    def _expression_conditions(self, expression: FilterExpression) -> list[Any]:
        if expression.field is FilterField.DATE:
            day_start, day_end = self.clock.day_bounds(expression.value)
            return [Session.start_time >= day_start, Session.start_time < day_end]

        column = Session.duration
        if expression.operator is FilterOperator.GT:
            return [column > expression.value]
        if expression.operator is FilterOperator.GE:
            return [column >= expression.value]
        return [column == expression.value]

    async def closed_sessions(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Session]:
        """Closed sessions starting in the inclusive local-date range, ascending."""
        return await self.list_sessions(
            SessionQuery(date_from=date_from, date_to=date_to, include_active=False)
        )

    # ------------------------------------------------------------------
    # Aggregation inputs
    # ------------------------------------------------------------------

    async def daily_totals(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> dict[date, int]:
        return aggregate_by_local_day(await self.closed_sessions(date_from, date_to), self.clock)

    async def entry_durations(self) -> list[int]:
        return [s.duration or 0 for s in await self.closed_sessions()]

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    async def import_sessions(
        self,
        entries: Sequence[Any],
        skip_overlaps: bool = False,
    ) -> ImportResult:
        """
        Import closed sessions with fresh ids.

        Malformed, open or non-positive entries are always skipped. An
        overlap, with stored sessions or earlier entries of the same batch,
        is skipped when ``skip_overlaps`` is set; otherwise the whole batch
        is rolled back and OverlapError raised.
        """
        result = ImportResult()

        async with transaction(self.db):
            for index, raw in enumerate(entries):
                try:
                    record = ImportRecord.model_validate(raw)
                except ValidationError as e:
                    result.skipped.append(
                        SkippedEntry(index, raw, SkipReason.INVALID_FORMAT, str(e.errors()[0]["msg"]))
                    )
                    continue

                if record.end_time is None:
                    result.skipped.append(
                        SkippedEntry(index, raw, SkipReason.INVALID_FORMAT, "missing end_time")
                    )
                    continue

                start = self.clock.to_storage(record.start_time)
                end = self.clock.to_storage(record.end_time)
                if end <= start:
                    result.skipped.append(
                        SkippedEntry(index, raw, SkipReason.INVALID_RANGE, "end is not after start")
                    )
                    continue

                conflicts = await self.find_overlaps(start, end)
                if conflicts:
                    if not skip_overlaps:
                        raise OverlapError(
                            _snapshots(conflicts),
                            f"Import entry #{index + 1} overlaps {len(conflicts)} existing session(s). "
                            "Nothing was imported.",
                        )
                    result.skipped.append(
                        SkippedEntry(index, raw, SkipReason.OVERLAP, f"{len(conflicts)} conflict(s)")
                    )
                    continue

                session = Session(id=uuid.uuid4(), start_time=start)
                session.close(end)
                self.db.add(session)
                await self.db.flush()
                result.imported.append(session)

        logger.info(
            "Sessions imported",
            extra={"imported": result.imported_count, "skipped": len(result.skipped)},
        )
        return result

    async def export_sessions(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Session]:
        return await self.closed_sessions(date_from, date_to)
