"""Tests for the session ledger store."""

import random
import uuid
from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

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
from timeledger.db.models import ActiveSessionStatus, Session
from timeledger.services.session_store import (
    Ambiguous,
    Found,
    NotFound,
    SessionQuery,
    SkipReason,
    intervals_overlap,
)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """Naive January 2024 wall-clock time (the test clock is UTC)."""
    return datetime(2024, 1, day, hour, minute)


async def count_rows(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestIntervalsOverlap:
    """Test the half-open overlap predicate."""

    def test_partial_overlap(self):
        """Test that partially overlapping intervals overlap."""
        assert intervals_overlap(at(1, 9), at(1, 10), at(1, 9, 30), at(1, 10, 30))

    def test_adjacent_intervals_do_not_overlap(self):
        """Test that touching endpoints are not an overlap."""
        assert not intervals_overlap(at(1, 9), at(1, 10), at(1, 10), at(1, 11))
        assert not intervals_overlap(at(1, 10), at(1, 11), at(1, 9), at(1, 10))

    def test_containment(self):
        """Test that a contained interval overlaps."""
        assert intervals_overlap(at(1, 9), at(1, 12), at(1, 10), at(1, 11))

    def test_open_interval_is_unbounded(self):
        """Test that an open interval overlaps anything after its start."""
        assert intervals_overlap(at(1, 9), None, at(3, 9), at(3, 10))
        assert not intervals_overlap(at(1, 9), None, at(1, 7), at(1, 9))


class TestStartStop:
    """Test the active-session state machine."""

    @pytest.mark.asyncio
    async def test_start_creates_open_session_and_status(self, session_store, db, fake_now):
        """Test that start opens a session at now and records the status row."""
        session = await session_store.start()

        assert session.end_time is None
        assert session.duration is None
        assert session.start_time == fake_now.current.replace(tzinfo=None)
        status = await db.get(ActiveSessionStatus, "current_session")
        assert status.session_id == session.id

    @pytest.mark.asyncio
    async def test_start_twice_fails(self, session_store, db):
        """Test that start while running raises AlreadyActiveError."""
        await session_store.start()

        with pytest.raises(AlreadyActiveError):
            await session_store.start()

        assert await count_rows(db, Session) == 1

    @pytest.mark.asyncio
    async def test_storage_rejects_second_open_session(self, session_store, db):
        """Test that the unique index rejects a second open row written directly."""
        await session_store.start()

        db.add(Session(id=uuid.uuid4(), start_time=at(5, 13)))
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_stop_closes_session(self, session_store, db, fake_now):
        """Test that stop sets the end, computes duration and clears status."""
        started = await session_store.start()
        fake_now.advance(hours=1, minutes=2, seconds=3)

        stopped = await session_store.stop()

        assert stopped.id == started.id
        assert stopped.duration == 3723
        assert stopped.end_time == fake_now.current.replace(tzinfo=None)
        assert await count_rows(db, ActiveSessionStatus) == 0
        assert await session_store.find_active() is None

    @pytest.mark.asyncio
    async def test_stop_without_active_fails(self, session_store):
        """Test that stop while idle raises NoActiveSessionError."""
        with pytest.raises(NoActiveSessionError):
            await session_store.stop()

    @pytest.mark.asyncio
    async def test_start_after_stop(self, session_store, fake_now):
        """Test that a new session can start once the previous one stopped."""
        await session_store.start()
        fake_now.advance(minutes=30)
        await session_store.stop()
        fake_now.advance(minutes=5)

        second = await session_store.start()
        assert second.end_time is None

    @pytest.mark.asyncio
    async def test_start_rejected_before_end_of_recorded_session(self, session_store):
        """Test that start fails when a recorded session ends after now."""
        await session_store.add_completed(at(5, 11), at(5, 13))

        with pytest.raises(OverlapError):
            await session_store.start()

    @pytest.mark.asyncio
    async def test_status_reports_elapsed(self, session_store, fake_now):
        """Test that status reports the running session and elapsed seconds."""
        assert await session_store.status() is None

        await session_store.start()
        fake_now.advance(minutes=10)
        current = await session_store.status()

        assert current.elapsed_seconds == 600

    @pytest.mark.asyncio
    async def test_start_on_empty_store(self, session_store, db):
        """Test that the first start of a fresh journal succeeds and links the status row."""
        session = await session_store.start()

        assert await count_rows(db, Session) == 1
        result = await db.execute(select(ActiveSessionStatus.session_id))
        assert result.scalar_one() == session.id

    @pytest.mark.asyncio
    async def test_unrelated_integrity_failure_not_reported_as_active(self, session_store, db):
        """Test that a storage conflict with no open session propagates unchanged."""
        closed = await session_store.add_completed(at(1, 9), at(1, 10))
        # Stale status row pointing at a closed session
        db.add(ActiveSessionStatus(session_id=closed.id, start_time=at(1, 9)))
        await db.commit()
        db.expunge_all()

        with pytest.raises(IntegrityError):
            await session_store.start()

        assert await session_store.find_active() is None


class TestAddCompleted:
    """Test manual entry of closed sessions."""

    @pytest.mark.asyncio
    async def test_add_records_duration(self, session_store):
        """Test that duration equals end minus start in seconds."""
        session = await session_store.add_completed(at(1, 9), at(1, 10, 30))

        assert session.duration == 5400
        assert session.start_time == at(1, 9)
        assert session.end_time == at(1, 10, 30)

    @pytest.mark.asyncio
    async def test_overlap_rejected_and_store_unchanged(self, session_store, db):
        """Test that 09:30-10:30 is rejected against 09:00-10:00 and nothing is written."""
        existing = await session_store.add_completed(at(1, 9), at(1, 10))

        with pytest.raises(OverlapError) as exc_info:
            await session_store.add_completed(at(1, 9, 30), at(1, 10, 30))

        assert [c.id for c in exc_info.value.conflicts] == [existing.id]
        assert exc_info.value.conflicts[0].start_time == at(1, 9)
        assert await count_rows(db, Session) == 1

    @pytest.mark.asyncio
    async def test_returned_session_readable_after_rejection(self, session_store):
        """Test that a previously returned session keeps its state after a later rollback."""
        existing = await session_store.add_completed(at(1, 9), at(1, 10))

        with pytest.raises(OverlapError):
            await session_store.add_completed(at(1, 9, 30), at(1, 10, 30))

        assert existing.duration == 3600
        assert existing.end_time == at(1, 10)

    @pytest.mark.asyncio
    async def test_random_intervals_stay_pairwise_disjoint(self, session_store, db):
        """Test that seeded random inserts keep stored sessions disjoint and rejections write nothing."""
        rng = random.Random(8)
        accepted: list[tuple[datetime, datetime]] = []

        for _ in range(80):
            start = at(1, 0) + timedelta(minutes=rng.randrange(0, 3 * 24 * 60, 5))
            end = start + timedelta(minutes=rng.randrange(5, 6 * 60, 5))
            before = await count_rows(db, Session)
            clashes = any(intervals_overlap(s, e, start, end) for s, e in accepted)

            try:
                session = await session_store.add_completed(start, end)
            except OverlapError:
                assert clashes
                assert await count_rows(db, Session) == before
                continue

            assert not clashes
            accepted.append((session.start_time, session.end_time))

        stored = await session_store.list_sessions(SessionQuery())
        assert len(stored) == len(accepted)
        for i, first in enumerate(stored):
            for second in stored[i + 1:]:
                assert not intervals_overlap(
                    first.start_time, first.end_time, second.start_time, second.end_time
                )

    @pytest.mark.asyncio
    async def test_adjacent_sessions_allowed(self, session_store, db):
        """Test that a session may start exactly when another ends."""
        await session_store.add_completed(at(1, 9), at(1, 10))
        await session_store.add_completed(at(1, 10), at(1, 11))

        assert await count_rows(db, Session) == 2

    @pytest.mark.asyncio
    async def test_nothing_after_running_session_start(self, session_store):
        """Test that an open session blocks entries after its start."""
        await session_store.start()

        with pytest.raises(OverlapError):
            await session_store.add_completed(at(5, 13), at(5, 14))
        await session_store.add_completed(at(5, 10), at(5, 11))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("end_hour", [9, 8])
    async def test_invalid_range(self, session_store, end_hour):
        """Test that end at or before start raises InvalidRangeError."""
        with pytest.raises(InvalidRangeError):
            await session_store.add_completed(at(1, 9), at(1, end_hour))

    @pytest.mark.asyncio
    async def test_aware_inputs_are_absolute(self, session_store):
        """Test that timezone-aware inputs are stored as UTC instants."""
        tz = UTC
        session = await session_store.add_completed(
            datetime(2024, 1, 1, 9, tzinfo=tz), datetime(2024, 1, 1, 10, tzinfo=tz)
        )
        assert session.start_time == at(1, 9)

    @pytest.mark.asyncio
    async def test_add_duration_ending_now(self, session_store, fake_now):
        """Test that a duration entry ends at the current instant."""
        session = await session_store.add_duration_ending_now(2700)

        assert session.end_time == fake_now.current.replace(tzinfo=None)
        assert session.duration == 2700

    @pytest.mark.asyncio
    async def test_add_non_positive_duration(self, session_store):
        """Test that a zero duration is rejected."""
        with pytest.raises(InvalidRangeError):
            await session_store.add_duration_ending_now(0)


class TestIdResolution:
    """Test shared id-prefix resolution, edit and delete lookups."""

    @pytest.fixture
    async def twins(self, db):
        """Two sessions sharing the prefix abcd."""
        first = Session(id=uuid.UUID("abcd0001-0000-4000-8000-000000000000"), start_time=at(2, 9))
        first.close(at(2, 10))
        second = Session(id=uuid.UUID("abcd0002-0000-4000-8000-000000000000"), start_time=at(2, 11))
        second.close(at(2, 12))
        db.add_all([first, second])
        await db.commit()
        return first, second

    @pytest.mark.asyncio
    async def test_found(self, session_store, twins):
        """Test that a unique prefix resolves to its session."""
        resolution = await session_store.resolve_id_prefix("ABCD0001")
        assert isinstance(resolution, Found)
        assert resolution.session.id == twins[0].id

    @pytest.mark.asyncio
    async def test_ambiguous(self, session_store, twins):
        """Test that a shared prefix lists every match."""
        resolution = await session_store.resolve_id_prefix("abcd")
        assert isinstance(resolution, Ambiguous)
        assert {s.id for s in resolution.matches} == {twins[0].id, twins[1].id}

    @pytest.mark.asyncio
    async def test_not_found(self, session_store, twins):
        """Test that an unmatched prefix is NotFound."""
        assert isinstance(await session_store.resolve_id_prefix("ffff"), NotFound)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prefix", ["", "xyz", "ab%"])
    async def test_malformed_prefix(self, session_store, prefix):
        """Test that empty or non-hex prefixes raise InvalidFormatError."""
        with pytest.raises(InvalidFormatError):
            await session_store.resolve_id_prefix(prefix)

    @pytest.mark.asyncio
    async def test_delete_ambiguous_lists_matches(self, session_store, db, twins):
        """Test that delete refuses an ambiguous prefix and deletes nothing."""
        with pytest.raises(AmbiguousIdError) as exc_info:
            await session_store.delete_by_id_prefix("abcd")

        assert len(exc_info.value.matches) == 2
        assert await count_rows(db, Session) == 2

    @pytest.mark.asyncio
    async def test_delete_unique_prefix(self, session_store, db, twins):
        """Test that delete removes exactly the matching session."""
        deleted = await session_store.delete_by_id_prefix("abcd0002")

        assert deleted.id == twins[1].id
        assert await count_rows(db, Session) == 1

    @pytest.mark.asyncio
    async def test_delete_not_found(self, session_store, twins):
        """Test that delete of an unknown prefix raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await session_store.delete_by_id_prefix("0000")

    @pytest.mark.asyncio
    async def test_delete_active_session_refused(self, session_store, db):
        """Test that the running session cannot be deleted."""
        active = await session_store.start()

        with pytest.raises(SessionActiveError):
            await session_store.delete_by_id_prefix(str(active.id)[:8])
        assert await count_rows(db, Session) == 1


class TestEdit:
    """Test editing start and end times."""

    @pytest.mark.asyncio
    async def test_relative_end_adjustment(self, session_store):
        """Test that +30m is applied to the original end."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))

        edited = await session_store.edit(str(session.id), new_end="+30m")

        assert edited.end_time == at(1, 10, 30)
        assert edited.duration == 5400

    @pytest.mark.asyncio
    async def test_absolute_start_on_original_date(self, session_store):
        """Test that a clock time is applied to the original field's date."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))

        edited = await session_store.edit(str(session.id)[:8], new_start="8:15 AM")

        assert edited.start_time == at(1, 8, 15)
        assert edited.duration == 6300

    @pytest.mark.asyncio
    async def test_edit_into_overlap_rejected(self, session_store):
        """Test that an edit creating an overlap fails and leaves the session unchanged."""
        first = await session_store.add_completed(at(1, 9), at(1, 10))
        await session_store.add_completed(at(1, 11), at(1, 12))

        with pytest.raises(OverlapError):
            await session_store.edit(str(first.id), new_end="11:30")

        unchanged = await session_store.list_sessions(SessionQuery(on_date=date(2024, 1, 1)))
        assert unchanged[0].end_time == at(1, 10)

    @pytest.mark.asyncio
    async def test_edit_excludes_itself_from_overlap(self, session_store):
        """Test that shrinking a session does not conflict with itself."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))

        edited = await session_store.edit(str(session.id), new_start="+15m", new_end="-15m")

        assert edited.duration == 1800

    @pytest.mark.asyncio
    async def test_edit_inverted_range(self, session_store):
        """Test that moving the end before the start raises InvalidRangeError."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))

        with pytest.raises(InvalidRangeError):
            await session_store.edit(str(session.id), new_end="08:00")

    @pytest.mark.asyncio
    async def test_edit_nothing(self, session_store):
        """Test that an edit without changes is rejected."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))
        with pytest.raises(InvalidFormatError):
            await session_store.edit(str(session.id))

    @pytest.mark.asyncio
    async def test_edit_bad_time_text(self, session_store):
        """Test that unparseable edit text raises InvalidFormatError."""
        session = await session_store.add_completed(at(1, 9), at(1, 10))
        with pytest.raises(InvalidFormatError):
            await session_store.edit(str(session.id), new_end="later")

    @pytest.mark.asyncio
    async def test_active_end_cannot_be_edited(self, session_store):
        """Test that the running session's end cannot be set."""
        active = await session_store.start()

        with pytest.raises(SessionActiveError):
            await session_store.edit(str(active.id), new_end="+1h")

    @pytest.mark.asyncio
    async def test_active_start_can_move_back(self, session_store, db, fake_now):
        """Test that moving the running session's start keeps the status row in sync."""
        active = await session_store.start()
        fake_now.advance(minutes=10)

        edited = await session_store.edit(str(active.id), new_start="-30m")

        assert edited.start_time == at(5, 11, 30)
        assert edited.end_time is None
        result = await db.execute(select(ActiveSessionStatus.start_time))
        assert result.scalar_one() == at(5, 11, 30)

    @pytest.mark.asyncio
    async def test_active_start_cannot_pass_now(self, session_store):
        """Test that the running session's start must stay before now."""
        active = await session_store.start()

        with pytest.raises(InvalidRangeError):
            await session_store.edit(str(active.id), new_start="+1h")

    @pytest.mark.asyncio
    async def test_random_edits_keep_sessions_disjoint(self, session_store, db):
        """Test that seeded random edits never leave overlapping sessions behind."""
        rng = random.Random(42)
        ids = [
            (await session_store.add_completed(at(day, 9), at(day, 10))).id
            for day in (1, 2, 3)
        ]

        for _ in range(60):
            target = rng.choice(ids)
            new_start = at(1, 0) + timedelta(minutes=rng.randrange(0, 3 * 24 * 60, 15))
            new_end = new_start + timedelta(minutes=rng.randrange(-60, 12 * 60, 15))
            before = {
                s.id: (s.start_time, s.end_time)
                for s in await session_store.list_sessions(SessionQuery())
            }

            try:
                await session_store.edit(str(target), new_start=new_start, new_end=new_end)
            except (OverlapError, InvalidRangeError):
                after = {
                    s.id: (s.start_time, s.end_time)
                    for s in await session_store.list_sessions(SessionQuery())
                }
                assert after == before

            stored = await session_store.list_sessions(SessionQuery())
            assert len(stored) == 3
            for i, first in enumerate(stored):
                for second in stored[i + 1:]:
                    assert not intervals_overlap(
                        first.start_time, first.end_time, second.start_time, second.end_time
                    )


class TestListSessions:
    """Test listing and filtering."""

    @pytest.fixture
    async def sample(self, session_store):
        return [
            await session_store.add_completed(at(1, 9), at(1, 10)),
            await session_store.add_completed(at(1, 14), at(1, 16)),
            await session_store.add_completed(at(3, 9), at(3, 9, 30)),
            await session_store.add_completed(at(4, 8), at(4, 11)),
        ]

    @pytest.mark.asyncio
    async def test_on_date(self, session_store, sample):
        """Test filtering to a single local date."""
        sessions = await session_store.list_sessions(SessionQuery(on_date=date(2024, 1, 1)))
        assert [s.id for s in sessions] == [sample[0].id, sample[1].id]

    @pytest.mark.asyncio
    async def test_inclusive_range_descending(self, session_store, sample):
        """Test an inclusive date range with newest first."""
        sessions = await session_store.list_sessions(
            SessionQuery(date_from=date(2024, 1, 3), date_to=date(2024, 1, 4), descending=True)
        )
        assert [s.id for s in sessions] == [sample[3].id, sample[2].id]

    @pytest.mark.asyncio
    async def test_duration_expression(self, session_store, sample):
        """Test a duration >= filter expression."""
        expression = FilterExpression(FilterField.DURATION, FilterOperator.GE, 7200)
        sessions = await session_store.list_sessions(SessionQuery(expression=expression))
        assert [s.id for s in sessions] == [sample[1].id, sample[3].id]

    @pytest.mark.asyncio
    async def test_date_expression(self, session_store, sample):
        """Test a date = filter expression."""
        expression = FilterExpression(FilterField.DATE, FilterOperator.EQ, date(2024, 1, 3))
        sessions = await session_store.list_sessions(SessionQuery(expression=expression))
        assert [s.id for s in sessions] == [sample[2].id]

    @pytest.mark.asyncio
    async def test_date_and_range_exclusive(self, session_store):
        """Test that a single date and a range cannot be combined."""
        with pytest.raises(InvalidFormatError):
            await session_store.list_sessions(
                SessionQuery(on_date=date(2024, 1, 1), date_from=date(2024, 1, 1))
            )

    @pytest.mark.asyncio
    async def test_active_excluded_on_request(self, session_store, sample):
        """Test that the running session can be left out."""
        await session_store.start()

        everything = await session_store.list_sessions()
        closed = await session_store.list_sessions(SessionQuery(include_active=False))

        assert len(everything) == 5
        assert len(closed) == 4

    @pytest.mark.asyncio
    async def test_daily_totals(self, session_store, sample):
        """Test that closed sessions are summed per local day."""
        totals = await session_store.daily_totals()
        assert totals == {
            date(2024, 1, 1): 3 * 3600,
            date(2024, 1, 3): 1800,
            date(2024, 1, 4): 3 * 3600,
        }


class TestImportExport:
    """Test batch import policies and export selection."""

    @pytest.fixture
    def entries(self):
        return [
            {"start_time": "2024-01-01T08:00:00Z", "end_time": "2024-01-01T09:00:00Z"},
            {"start_time": "2024-01-01T10:30:00Z", "end_time": "2024-01-01T11:30:00Z"},
            {"start_time": "2024-01-01T12:00:00Z", "end_time": "2024-01-01T13:00:00Z"},
        ]

    @pytest.mark.asyncio
    async def test_abort_on_overlap(self, session_store, db, entries):
        """Test that an overlapping entry aborts the whole batch."""
        await session_store.add_completed(at(1, 10), at(1, 11))

        with pytest.raises(OverlapError):
            await session_store.import_sessions(entries, skip_overlaps=False)

        assert await count_rows(db, Session) == 1

    @pytest.mark.asyncio
    async def test_skip_overlaps(self, session_store, db, entries):
        """Test that only the overlapping entry is skipped when requested."""
        await session_store.add_completed(at(1, 10), at(1, 11))

        result = await session_store.import_sessions(entries, skip_overlaps=True)

        assert result.imported_count == 2
        assert [(s.index, s.reason) for s in result.skipped] == [(1, SkipReason.OVERLAP)]
        assert await count_rows(db, Session) == 3

    @pytest.mark.asyncio
    async def test_overlap_within_batch(self, session_store):
        """Test that entries are checked against earlier entries of the same batch."""
        entries = [
            {"start_time": "2024-01-01T08:00:00Z", "end_time": "2024-01-01T09:00:00Z"},
            {"start_time": "2024-01-01T08:30:00Z", "end_time": "2024-01-01T09:30:00Z"},
        ]

        result = await session_store.import_sessions(entries, skip_overlaps=True)

        assert result.imported_count == 1
        assert result.skipped[0].reason is SkipReason.OVERLAP

    @pytest.mark.asyncio
    async def test_invalid_entries_skipped(self, session_store):
        """Test that malformed, open and inverted entries are skipped with reasons."""
        entries = [
            {"start_time": "not a time", "end_time": "2024-01-01T09:00:00Z"},
            {"end_time": "2024-01-01T09:00:00Z"},
            {"start_time": "2024-01-01T08:00:00Z"},
            {"start_time": "2024-01-01T10:00:00Z", "end_time": "2024-01-01T09:00:00Z"},
            "garbage",
        ]

        result = await session_store.import_sessions(entries)

        assert result.imported_count == 0
        assert [s.reason for s in result.skipped] == [
            SkipReason.INVALID_FORMAT,
            SkipReason.INVALID_FORMAT,
            SkipReason.INVALID_FORMAT,
            SkipReason.INVALID_RANGE,
            SkipReason.INVALID_FORMAT,
        ]

    @pytest.mark.asyncio
    async def test_imported_ids_are_regenerated(self, session_store):
        """Test that an imported id is never reused."""
        given = "abcd0001-0000-4000-8000-000000000000"
        result = await session_store.import_sessions(
            [{"id": given, "start_time": "2024-01-01T08:00:00Z", "end_time": "2024-01-01T09:00:00Z", "duration": 1}]
        )

        assert str(result.imported[0].id) != given
        assert result.imported[0].duration == 3600

    @pytest.mark.asyncio
    async def test_ignored_fields_accept_any_type(self, session_store):
        """Test that non-string ids and non-numeric durations do not cause a skip."""
        result = await session_store.import_sessions(
            [
                {"id": 7, "start_time": "2024-01-01T08:00:00Z", "end_time": "2024-01-01T09:00:00Z"},
                {"id": None, "start_time": "2024-01-02T08:00:00Z", "end_time": "2024-01-02T09:00:00Z", "duration": "1h"},
            ]
        )

        assert result.imported_count == 2
        assert result.skipped == []

    @pytest.mark.asyncio
    async def test_export_closed_sessions_in_range(self, session_store, fake_now):
        """Test that export returns closed sessions in range, ascending."""
        late = await session_store.add_completed(at(3, 9), at(3, 10))
        early = await session_store.add_completed(at(2, 9), at(2, 10))
        await session_store.add_completed(at(4, 9), at(4, 10))
        await session_store.start()

        exported = await session_store.export_sessions(date(2024, 1, 2), date(2024, 1, 3))

        assert [s.id for s in exported] == [early.id, late.id]
