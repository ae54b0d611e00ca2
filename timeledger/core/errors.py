"""Typed errors raised by the ledger core.

Every validation failure surfaces as a subclass of ``LedgerError`` carrying
the data the caller needs to explain it. ``StorageError`` is the only kind
that signals a broken store rather than a rejected request.
"""

from collections.abc import Sequence
from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""

    kind = "LedgerError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidFormatError(LedgerError):
    """Malformed time, duration, date, filter or slot text."""

    kind = "InvalidInputFormat"

    def __init__(self, text: str, expected: str, message: str | None = None) -> None:
        self.text = text
        self.expected = expected
        super().__init__(message or f'Invalid format "{text}". Expected {expected}.')


class InvalidRangeError(LedgerError):
    """End is not strictly after start once all adjustments are applied."""

    kind = "InvalidRange"

    def __init__(self, start: Any, end: Any, message: str | None = None) -> None:
        self.start = start
        self.end = end
        super().__init__(message or "End time must be after start time.")


class OverlapError(LedgerError):
    """Proposed interval conflicts with existing sessions."""

    kind = "Overlap"

    def __init__(self, conflicts: Sequence[Any], message: str | None = None) -> None:
        self.conflicts = list(conflicts)
        super().__init__(
            message or f"Interval overlaps with {len(self.conflicts)} existing session(s)."
        )


class AlreadyActiveError(LedgerError):
    """A session is already running."""

    kind = "AlreadyActive"

    def __init__(self, active: Any = None) -> None:
        self.active = active
        super().__init__("A session is already active. Stop it first.")


class NoActiveSessionError(LedgerError):
    """No running session to stop."""

    kind = "NoActiveSession"

    def __init__(self) -> None:
        super().__init__("No active session found.")


class SessionActiveError(LedgerError):
    """Operation is not allowed on the running session."""

    kind = "SessionActive"

    def __init__(self, session: Any, action: str) -> None:
        self.session = session
        super().__init__(f"Cannot {action} the active session. Stop it first.")


class NotFoundError(LedgerError):
    """No record matches the id prefix."""

    kind = "NotFound"

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        super().__init__(f'No session found with ID starting with "{prefix}".')


class AmbiguousIdError(LedgerError):
    """More than one record matches the id prefix."""

    kind = "Ambiguous"

    def __init__(self, prefix: str, matches: Sequence[Any]) -> None:
        self.prefix = prefix
        self.matches = list(matches)
        super().__init__(
            f'{len(self.matches)} sessions match "{prefix}". Use a longer prefix.'
        )


class BankEmptyError(LedgerError):
    """Nothing in the time bank to redeem."""

    kind = "BankEmpty"

    def __init__(self) -> None:
        super().__init__("Time bank is empty. Cannot redeem.")


class SlotAlreadyFullError(LedgerError):
    """Slot is already at or above its target."""

    kind = "SlotAlreadyFull"

    def __init__(self, slot: str, session_date: str, current: int, target: int) -> None:
        self.slot = slot
        self.session_date = session_date
        self.current = current
        self.target = target
        super().__init__(
            f"Slot {slot} on {session_date} is already at or above target "
            f"({current}m / {target}m). No redemption needed."
        )


class NothingToRedeemError(LedgerError):
    """Requested redemption resolves to zero minutes."""

    kind = "NothingToRedeem"

    def __init__(self, requested: int) -> None:
        self.requested = requested
        super().__init__(f"Cannot redeem {requested} minute(s). Request a positive amount.")


class StorageError(LedgerError):
    """Underlying persistence failure."""

    kind = "StorageError"
