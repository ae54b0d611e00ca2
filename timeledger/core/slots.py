"""Fixed daily slot windows used by the slot/bank model."""

from dataclasses import dataclass

from timeledger.core.errors import InvalidFormatError


@dataclass(frozen=True)
class SlotWindow:
    key: str
    db_column: str
    store_value: str
    display_name: str
    start_hour: int


def _hour_label(hour: int) -> str:
    suffix = "AM" if hour % 24 < 12 else "PM"
    return f"{(hour % 12) or 12:02d}:00 {suffix}"


def _build_window(start_hour: int) -> SlotWindow:
    end_hour = (start_hour + 1) % 24
    return SlotWindow(
        key=f"S{start_hour:02d}_{end_hour:02d}",
        db_column=f"s{start_hour:02d}_{end_hour:02d}_min",
        store_value=f"{start_hour:02d}:00 - {end_hour:02d}:00",
        display_name=f"{_hour_label(start_hour)} - {_hour_label(end_hour)}",
        start_hour=start_hour,
    )


# 16 one-hour windows, 08:00 through midnight
TIME_SLOTS: tuple[SlotWindow, ...] = tuple(_build_window(h) for h in range(8, 24))


@dataclass(frozen=True)
class Shift:
    name: str
    start_hour: int
    end_hour: int

    def contains(self, slot: SlotWindow) -> bool:
        return self.start_hour <= slot.start_hour < self.end_hour


SHIFTS: tuple[Shift, ...] = (
    Shift("8 AM - 12 PM", 8, 12),
    Shift("12 PM - 4 PM", 12, 16),
    Shift("4 PM - 8 PM", 16, 20),
    Shift("8 PM - 12 AM", 20, 24),
)


def find_slot(identifier: str) -> SlotWindow:
    """Look a slot up by key, store value or display name."""
    needle = identifier.strip()
    for slot in TIME_SLOTS:
        if needle.upper() == slot.key or needle == slot.store_value or needle.upper() == slot.display_name:
            return slot
    raise InvalidFormatError(
        identifier, 'a slot key ("S08_09"), range ("08:00 - 09:00") or name ("08:00 AM - 09:00 AM")'
    )
