"""JSON export/import schemas for sessions."""

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, TypeAdapter

from timeledger.core.datetime_utils import ensure_utc
from timeledger.core.errors import InvalidFormatError
from timeledger.db.models import Session

IMPORT_PATTERN = "a JSON array of {start_time, end_time} records"


class SessionRecord(BaseModel):
    """Exported session. Timestamps are ISO-8601 UTC."""

    id: str
    start_time: datetime
    end_time: datetime
    duration: int

    @classmethod
    def from_session(cls, session: Session) -> "SessionRecord":
        return cls(
            id=str(session.id),
            start_time=ensure_utc(session.start_time),
            end_time=ensure_utc(session.end_time),
            duration=session.duration,
        )


class ImportRecord(BaseModel):
    """Imported session. ``id`` and ``duration`` are accepted and ignored."""

    start_time: datetime
    end_time: datetime | None = None
    id: Any = None
    duration: Any = None


_export_adapter = TypeAdapter(list[SessionRecord])


def sessions_to_json(sessions: Iterable[Session]) -> str:
    """Serialize closed sessions as a pretty JSON array."""
    records = [SessionRecord.from_session(s) for s in sessions if s.end_time is not None]
    return _export_adapter.dump_json(records, indent=2).decode()


def load_import_entries(text: str) -> list[Any]:
    """Parse import text into raw entries; each is validated on import."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidFormatError(text[:40], IMPORT_PATTERN, f"Import file is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise InvalidFormatError(text[:40], IMPORT_PATTERN, "Import file must contain a JSON array.")
    return data
