"""Common capability shared by the session and slot stores."""

from datetime import date
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.config import Settings
from timeledger.core.datetime_utils import Clock
from timeledger.services.session_store import SessionStore
from timeledger.services.slot_store import SlotStore


class TrackingStore(Protocol):
    """What reporting needs from a store, whichever model backs it."""

    mode: str

    async def daily_totals(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> dict[date, int]: ...

    async def entry_durations(self) -> list[int]: ...

    async def in_progress_seconds(self) -> int: ...


def get_store(settings: Settings, db: AsyncSession, clock: Clock) -> SessionStore | SlotStore:
    """Build the store selected by ``settings.store_mode``."""
    if settings.store_mode == "slot":
        return SlotStore(db, clock, target_minutes=settings.slot_target_minutes)
    return SessionStore(db, clock, short_id_length=settings.short_id_length)
