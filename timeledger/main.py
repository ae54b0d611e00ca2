"""time-ledger command line entry point."""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger import __version__
from timeledger.core.config import Settings, default_data_dir, get_settings
from timeledger.core.datetime_utils import Clock
from timeledger.core.errors import (
    AmbiguousIdError,
    InvalidFormatError,
    LedgerError,
    OverlapError,
    StorageError,
)
from timeledger.core.filters import parse_date, parse_filter
from timeledger.core.logging import get_logger, log_error, set_command, setup_logging
from timeledger.core.timeparse import (
    format_clock_time,
    format_date,
    format_duration,
    format_duration_hhmm,
    format_time_ampm,
    parse_clock_time,
    parse_duration,
    shorten_id,
)
from timeledger.db.models import Session
from timeledger.db.session import open_database
from timeledger.services.reporting import ReportService
from timeledger.services.session_store import SessionQuery, SessionStore
from timeledger.services.slot_store import SlotStore
from timeledger.services.store import get_store
from timeledger.services.transfer import load_import_entries, sessions_to_json

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_LEDGER_ERROR = 1
EXIT_STORAGE_ERROR = 2
EXIT_INTERRUPTED = 130


@dataclass
class CommandContext:
    settings: Settings
    clock: Clock
    db: AsyncSession

    @property
    def sessions(self) -> SessionStore:
        return SessionStore(self.db, self.clock, short_id_length=self.settings.short_id_length)

    @property
    def slots(self) -> SlotStore:
        return SlotStore(self.db, self.clock, target_minutes=self.settings.slot_target_minutes)

    @property
    def reports(self) -> ReportService:
        store = get_store(self.settings, self.db, self.clock)
        return ReportService(store, self.clock, self.settings.daily_goal_seconds)

    def short(self, session: Session) -> str:
        return shorten_id(session.id, self.settings.short_id_length)

    def describe(self, session: Session) -> str:
        end = format_clock_time(session.end_time, self.clock)
        duration = format_duration(session.duration) if session.duration is not None else "running"
        return (
            f"{self.short(session)}  {format_date(session.start_time, self.clock)}  "
            f"{format_clock_time(session.start_time, self.clock)} - {end}  {duration}"
        )


# ----------------------------------------------------------------------
# Argument helpers
# ----------------------------------------------------------------------


def _parse_day(ctx: CommandContext, text: str | None) -> date:
    return parse_date(text, ctx.clock.today()) if text else ctx.clock.today()


def parse_time_range(text: str, day: date, clock: Clock) -> tuple[datetime, datetime]:
    """Parse ``"HH:MM[ AM/PM] - HH:MM[ AM/PM]"`` on ``day``; an earlier end rolls to the next day."""
    parts = [part.strip() for part in text.split("-")]
    if len(parts) != 2 or not all(parts):
        raise InvalidFormatError(text, '"HH:MM[ AM/PM] - HH:MM[ AM/PM]"')
    # Parse wall-clock times on a naive reference; the zone offset is resolved per instant
    reference = datetime.combine(day, time.min)
    start = parse_clock_time(parts[0], reference)
    end = parse_clock_time(parts[1], reference)
    if end < start:
        end += timedelta(days=1)
    return clock.localize(start), clock.localize(end)


def _positive_minutes(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid minutes: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError("minutes must not be negative")
    return value


# ----------------------------------------------------------------------
# Session commands
# ----------------------------------------------------------------------


async def cmd_start(ctx: CommandContext, args: argparse.Namespace) -> None:
    session = await ctx.sessions.start()
    print(f"Session {ctx.short(session)} started at {format_clock_time(session.start_time, ctx.clock)}.")


async def cmd_stop(ctx: CommandContext, args: argparse.Namespace) -> None:
    session = await ctx.sessions.stop()
    print(f"Session {ctx.short(session)} stopped. Duration: {format_duration(session.duration)}.")


async def cmd_status(ctx: CommandContext, args: argparse.Namespace) -> None:
    current = await ctx.sessions.status()
    if current is None:
        print("No active session.")
        return
    print(
        f"Active session {ctx.short(current.session)} since "
        f"{format_clock_time(current.session.start_time, ctx.clock)} "
        f"({format_duration(current.elapsed_seconds)} elapsed)."
    )


async def cmd_add(ctx: CommandContext, args: argparse.Namespace) -> None:
    if args.range:
        start, end = parse_time_range(args.range, _parse_day(ctx, args.date), ctx.clock)
        session = await ctx.sessions.add_completed(start, end)
    else:
        if args.date:
            raise InvalidFormatError(
                args.date, "no date", "--date cannot be used with --duration; it always ends now."
            )
        seconds = parse_duration(args.duration)
        if seconds is None:
            raise InvalidFormatError(args.duration, 'a duration such as "45m" or "1h 30m"')
        session = await ctx.sessions.add_duration_ending_now(seconds)
    print(f"Added session {ctx.describe(session)}")


async def cmd_edit(ctx: CommandContext, args: argparse.Namespace) -> None:
    session = await ctx.sessions.edit(args.id, new_start=args.start, new_end=args.end)
    print(f"Updated session {ctx.describe(session)}")


async def cmd_delete(ctx: CommandContext, args: argparse.Namespace) -> None:
    session = await ctx.sessions.delete_by_id_prefix(args.id)
    print(f"Deleted session {ctx.describe(session)}")


async def cmd_list(ctx: CommandContext, args: argparse.Namespace) -> None:
    today = ctx.clock.today()
    query = SessionQuery(descending=args.desc)
    if args.filter:
        query.expression = parse_filter(args.filter, today)
    if not args.all:
        if args.date_from or args.date_to:
            query.date_from = parse_date(args.date_from, today) if args.date_from else None
            query.date_to = parse_date(args.date_to, today) if args.date_to else None
        elif not args.filter:
            query.on_date = _parse_day(ctx, args.date)
        elif args.date:
            query.on_date = parse_date(args.date, today)

    sessions = await ctx.sessions.list_sessions(query)
    if not sessions:
        print("No sessions found.")
        return
    for session in sessions:
        print(ctx.describe(session))
    total = sum(s.duration or 0 for s in sessions)
    print(f"{len(sessions)} session(s), total {format_duration(total)}")


async def cmd_export(ctx: CommandContext, args: argparse.Namespace) -> None:
    today = ctx.clock.today()
    date_from = parse_date(args.start, today) if args.start else None
    date_to = parse_date(args.end, today) if args.end else None
    sessions = await ctx.sessions.export_sessions(date_from, date_to)
    payload = sessions_to_json(sessions)

    if args.output == "-":
        print(payload)
        return
    if args.output:
        path = Path(args.output).expanduser()
    else:
        stamp = ctx.clock.to_local(ctx.clock.now()).strftime("%Y%m%d-%H%M%S")
        path = default_data_dir() / "exports" / f"time-ledger-export-{stamp}.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload + "\n", encoding="utf-8")
    except OSError as e:
        raise LedgerError(f"Cannot write export file {path}: {e}") from e
    print(f"Exported {len(sessions)} session(s) to {path}")


async def cmd_import(ctx: CommandContext, args: argparse.Namespace) -> None:
    try:
        text = Path(args.file).expanduser().read_text(encoding="utf-8")
    except OSError as e:
        raise LedgerError(f"Cannot read import file {args.file}: {e}") from e
    result = await ctx.sessions.import_sessions(load_import_entries(text), skip_overlaps=args.skip_overlaps)
    print(f"Imported {result.imported_count} session(s).")
    if result.skipped:
        print(f"Skipped {len(result.skipped)} entr{'y' if len(result.skipped) == 1 else 'ies'}:")
        for skipped in result.skipped:
            print(f"  #{skipped.index + 1}: {skipped.reason.value} ({skipped.detail})")


# ----------------------------------------------------------------------
# Reporting commands
# ----------------------------------------------------------------------


async def cmd_summary(ctx: CommandContext, args: argparse.Namespace) -> None:
    days = await ctx.reports.summary(month=args.month, year=args.year)
    if not days:
        print("No recorded time for this period.")
        return
    for day in days:
        mark = "goal met" if day.goal_met else "-"
        print(f"{day.date.isoformat()}  {format_duration_hhmm(day.total_seconds)}  {mark}")
    total = sum(d.total_seconds for d in days)
    print(f"Total: {format_duration(total)} over {len(days)} day(s)")


async def cmd_report(ctx: CommandContext, args: argparse.Namespace) -> None:
    report = await ctx.reports.report()
    if report is None:
        print("No recorded time yet.")
        return
    print(f"Tracking period: {report.first_day} to {report.last_day}")
    print(f"Total time: {format_duration(report.total_seconds)}")
    print(f"Entries: {report.entry_count}")
    print(f"Average entry: {format_duration(report.average_entry_seconds)}")
    print(f"Average per active day: {format_duration(report.average_daily_seconds)}")
    print(
        f"Goal success: {report.goal_met_days}/{report.active_days} day(s) "
        f"({report.goal_success_rate:.1f}%)"
    )
    print(f"Current streak: {report.streaks.current} day(s)")
    print(f"Longest streak: {report.streaks.longest} day(s)")
    print(f"Consistency: {report.consistency}")
    print(f"Best day: {report.best_day[0]} ({format_duration(report.best_day[1])})")
    print(f"Worst day: {report.worst_day[0]} ({format_duration(report.worst_day[1])})")
    print("By weekday:")
    for weekday, total in report.weekday_totals.items():
        print(f"  {weekday:<9}  {format_duration(total)}")


async def cmd_eta(ctx: CommandContext, args: argparse.Namespace) -> None:
    progress = await ctx.reports.eta()
    print(f"Today: {format_duration(progress.total_seconds)} of {format_duration(progress.goal_seconds)}")
    if progress.achieved:
        print("Daily goal reached.")
        return
    print(f"Remaining: {format_duration(progress.remaining_seconds)}")
    if progress.estimated_finish is not None:
        print(f"Estimated finish: {format_time_ampm(progress.estimated_finish, ctx.clock)}")


# ----------------------------------------------------------------------
# Slot / bank commands
# ----------------------------------------------------------------------


async def cmd_log(ctx: CommandContext, args: argparse.Namespace) -> None:
    day = _parse_day(ctx, args.date)
    result = await ctx.slots.log_slot(day, args.slot, args.minutes)
    print(f"Logged {result.logged_minutes}m in {args.slot} on {day.isoformat()}.")
    if result.banked_minutes:
        print(f"Banked {result.banked_minutes}m.")


async def cmd_slots(ctx: CommandContext, args: argparse.Namespace) -> None:
    day = _parse_day(ctx, args.date)
    store = ctx.slots
    for reading in await store.day_slots(day):
        print(f"{reading.slot.display_name}  {reading.minutes:>3}/{reading.target}m")
    for shift in await store.shift_totals(day):
        print(f"Shift {shift.name}: {shift.logged_minutes}/{shift.target_minutes}m")
    print(f"Total for {day.isoformat()}: {await store.daily_total(day)}m")


async def cmd_bank(ctx: CommandContext, args: argparse.Namespace) -> None:
    store = ctx.slots
    if args.bank_command == "redeem":
        day = _parse_day(ctx, args.date)
        result = await store.redeem(day, args.slot, args.minutes)
        print(
            f"Redeemed {result.actual_redeemed}m into {args.slot} on {day.isoformat()}. "
            f"Slot now {result.new_slot_value}m."
        )
        print(f"Bank balance: {await store.bank_balance()}m")
    elif args.bank_command == "history":
        transactions = await store.transaction_history(limit=args.limit, offset=args.offset)
        if not transactions:
            print("No bank transactions.")
            return
        for tx in transactions:
            print(
                f"{format_date(tx.transaction_timestamp, ctx.clock)} "
                f"{format_clock_time(tx.transaction_timestamp, ctx.clock)}  "
                f"{tx.type:<10} {tx.minutes:>4}m  {tx.source_session_date} {tx.source_slot_key}"
            )
    else:
        print(f"Bank balance: {await store.bank_balance()}m")


async def cmd_reset_day(ctx: CommandContext, args: argparse.Namespace) -> None:
    day = _parse_day(ctx, args.date)
    if await ctx.slots.reset_day(day):
        print(f"Reset all slots for {day.isoformat()}.")
    else:
        print(f"Nothing logged on {day.isoformat()}.")


Handler = Callable[[CommandContext, argparse.Namespace], Awaitable[None]]

COMMANDS: dict[str, Handler] = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "add": cmd_add,
    "edit": cmd_edit,
    "delete": cmd_delete,
    "list": cmd_list,
    "export": cmd_export,
    "import": cmd_import,
    "summary": cmd_summary,
    "report": cmd_report,
    "eta": cmd_eta,
    "log": cmd_log,
    "slots": cmd_slots,
    "bank": cmd_bank,
    "reset-day": cmd_reset_day,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="time-ledger", description="Personal time-tracking journal.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", help="Path to the journal database file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("start", help="Start a session now")
    sub.add_parser("stop", help="Stop the running session")
    sub.add_parser("status", help="Show the running session")

    add = sub.add_parser("add", help="Add a completed session")
    add_mode = add.add_mutually_exclusive_group(required=True)
    add_mode.add_argument("-r", "--range", help='Time range, e.g. "09:00 - 10:30" or "8:00 AM - 1:15 PM"')
    add_mode.add_argument("-L", "--duration", help='Duration ending now, e.g. "45m" or "1h 30m"')
    add.add_argument("-d", "--date", help="YYYY-MM-DD, today or yesterday (with --range)")

    edit = sub.add_parser("edit", help="Edit a session's start and/or end")
    edit.add_argument("id", help="Session id prefix")
    edit.add_argument("-s", "--start", help='New start: "HH:MM[ AM/PM]" or "+15m"/"-1h"')
    edit.add_argument("-e", "--end", help='New end: "HH:MM[ AM/PM]" or "+15m"/"-1h"')

    delete = sub.add_parser("delete", help="Delete a session")
    delete.add_argument("id", help="Session id prefix")

    lst = sub.add_parser("list", help="List sessions (today by default)")
    lst.add_argument("-d", "--date", help="YYYY-MM-DD, today, yesterday or tomorrow")
    lst.add_argument("--from", dest="date_from", help="Range start date (inclusive)")
    lst.add_argument("--to", dest="date_to", help="Range end date (inclusive)")
    lst.add_argument("-a", "--all", action="store_true", help="List every session")
    lst.add_argument("-f", "--filter", help='Filter expression, e.g. "duration>=1h" or "date=yesterday"')
    lst.add_argument("--desc", action="store_true", help="Newest first")

    summary = sub.add_parser("summary", help="Daily totals against the goal")
    summary.add_argument("-m", "--month", help="YYYY-MM")
    summary.add_argument("-y", "--year", help="YYYY")

    sub.add_parser("report", help="Whole-history statistics")
    sub.add_parser("eta", help="Time remaining to today's goal")

    export = sub.add_parser("export", help="Export sessions as JSON")
    export.add_argument("-o", "--output", help='Output file, "-" for stdout')
    export.add_argument("-s", "--start", help="Start date (inclusive)")
    export.add_argument("-e", "--end", help="End date (inclusive)")

    imp = sub.add_parser("import", help="Import sessions from JSON")
    imp.add_argument("file", help="JSON file to import")
    imp.add_argument("--skip-overlaps", action="store_true", help="Skip overlapping entries instead of aborting")

    log = sub.add_parser("log", help="Log minutes into a slot")
    log.add_argument("-d", "--date", help="YYYY-MM-DD (defaults to today)")
    log.add_argument("-s", "--slot", required=True, help='"S08_09", "08:00 - 09:00" or "08:00 AM - 09:00 AM"')
    log.add_argument("-m", "--minutes", required=True, type=_positive_minutes, help="Minutes studied")

    slots = sub.add_parser("slots", help="Show a day's slots")
    slots.add_argument("-d", "--date", help="YYYY-MM-DD (defaults to today)")

    bank = sub.add_parser("bank", help="Time bank")
    bank_sub = bank.add_subparsers(dest="bank_command")
    bank_sub.add_parser("balance", help="Show the bank balance")
    redeem = bank_sub.add_parser("redeem", help="Redeem banked minutes into a slot")
    redeem.add_argument("-d", "--date", help="YYYY-MM-DD (defaults to today)")
    redeem.add_argument("-s", "--slot", required=True, help="Slot identifier")
    redeem.add_argument("-m", "--minutes", required=True, type=int, help="Minutes to redeem")
    history = bank_sub.add_parser("history", help="Recent bank transactions")
    history.add_argument("-n", "--limit", type=int, default=20)
    history.add_argument("--offset", type=int, default=0)

    reset = sub.add_parser("reset-day", help="Zero every slot of a day")
    reset.add_argument("-d", "--date", help="YYYY-MM-DD (defaults to today)")

    return parser


def _print_error_details(error: LedgerError, clock: Clock, id_length: int) -> None:
    if isinstance(error, OverlapError):
        related = error.conflicts
    elif isinstance(error, AmbiguousIdError):
        related = error.matches
    else:
        return
    for session in related:
        end = format_clock_time(session.end_time, clock)
        print(
            f"  {shorten_id(session.id, id_length)}  {format_date(session.start_time, clock)}  "
            f"{format_clock_time(session.start_time, clock)} - {end}",
            file=sys.stderr,
        )


async def execute(args: argparse.Namespace, settings: Settings, clock: Clock) -> None:
    """Open the journal, run one command, close the journal."""
    async with open_database(settings.database_url) as db:
        ctx = CommandContext(settings=settings, clock=clock, db=db)
        await COMMANDS[args.command](ctx, args)


def main(argv: Sequence[str] | None = None, clock: Clock | None = None) -> int:
    """Parse arguments, run the command and return the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        if args.db:
            settings = settings.model_copy(update={"database_path": args.db})
    except ValidationError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_LEDGER_ERROR

    setup_logging(level=settings.log_level, json_logs=settings.json_logs)
    set_command(args.command)
    clock = clock or Clock(tz=settings.tz)

    try:
        asyncio.run(execute(args, settings, clock))
    except StorageError as e:
        log_error(logger, "Storage failure", e, extra={"database": str(settings.database_file)})
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_STORAGE_ERROR
    except LedgerError as e:
        logger.info("Command rejected", extra={"kind": e.kind})
        print(f"Error: {e.message}", file=sys.stderr)
        _print_error_details(e, clock, settings.short_id_length)
        return EXIT_LEDGER_ERROR
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    return EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
