"""Working-time arithmetic on shift calendars."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from .domain import ShiftCalendar
from .errors import CalendarUnavailable, InvalidRequest
from .repository import InMemoryRepository, RecordNotFoundError

DEFAULT_LOOKBACK_DAYS = 366

Window = Tuple[datetime, datetime]


class WorkingCalendar(Protocol):
    """Capability that converts working time into wall-clock instants."""

    def subtract_working_time(self, end: datetime, duration: timedelta) -> datetime:
        ...


def _check_duration(duration: timedelta) -> None:
    if duration < timedelta(0):
        raise InvalidRequest(f"Working time must not be negative, got {duration}")


def _shift_windows(calendar: ShiftCalendar, day: date) -> List[Window]:
    if day in calendar.non_working_days:
        return []
    weekday = day.weekday()
    windows = []
    for shift in calendar.shifts:
        if weekday not in shift.weekdays:
            continue
        shift_start = datetime.combine(day, shift.start_time)
        shift_end = datetime.combine(day, shift.end_time)
        if shift_end <= shift_start:
            shift_end += timedelta(days=1)
        windows.append((shift_start, shift_end))
    return windows


def _previous_shift_window(
    calendar: ShiftCalendar, reference: datetime, lookback_days: int
) -> Optional[Window]:
    """Return the latest working window ending at or before reference."""

    best: Optional[Window] = None
    for day_offset in range(0, lookback_days + 1):
        candidate_day = reference.date() - timedelta(days=day_offset)
        # Shifts are shorter than a day, nothing earlier can end later.
        latest_possible_end = datetime.combine(candidate_day + timedelta(days=2), time.min)
        if best is not None and latest_possible_end <= best[1]:
            break
        for shift_start, shift_end in _shift_windows(calendar, candidate_day):
            if shift_start >= reference:
                continue
            window_end = min(shift_end, reference)
            if best is None or window_end > best[1]:
                best = (shift_start, window_end)
    return best


@dataclass(frozen=True)
class ContinuousCalendar:
    """Calendar without non-working periods: working time is elapsed time."""

    id: str = "24H"

    def subtract_working_time(self, end: datetime, duration: timedelta) -> datetime:
        _check_duration(duration)
        return end - duration


class ShiftCalendarClock:
    """Walks the shift windows of a :class:`ShiftCalendar`.

    Working time is consumed from the end instant towards
    the past, skipping non-working days and the gaps between shifts. When no
    working window exists within ``lookback_days`` the calendar is treated as
    unavailable.
    """

    def __init__(
        self, calendar: ShiftCalendar, *, lookback_days: int = DEFAULT_LOOKBACK_DAYS
    ) -> None:
        if not calendar.shifts:
            raise CalendarUnavailable(calendar.id, f"Calendar {calendar.id!r} has no shifts")
        self.calendar = calendar
        self.lookback_days = max(lookback_days, 1)

    @property
    def id(self) -> str:
        return self.calendar.id

    def subtract_working_time(self, end: datetime, duration: timedelta) -> datetime:
        _check_duration(duration)
        remaining = duration
        cursor = end
        while remaining > timedelta(0):
            window = _previous_shift_window(self.calendar, cursor, self.lookback_days)
            if window is None:
                raise CalendarUnavailable(
                    self.calendar.id,
                    f"Calendar {self.calendar.id!r} has no working time within "
                    f"{self.lookback_days} days before {cursor:%Y-%m-%d %H:%M}",
                )
            window_start, window_end = window
            allocation = min(window_end - window_start, remaining)
            cursor = window_end - allocation
            remaining -= allocation
        return cursor


class CalendarRegistry:
    """Resolves calendar references to working calendars."""

    def __init__(
        self,
        calendars: Optional[InMemoryRepository[ShiftCalendar]] = None,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ) -> None:
        self.calendars = calendars if calendars is not None else InMemoryRepository()
        self.lookback_days = lookback_days
        self._registered: Dict[str, WorkingCalendar] = {}

    def register(self, calendar_ref: str, calendar: WorkingCalendar) -> None:
        """Bind a reference to a calendar that is not backed by shifts."""

        self._registered[calendar_ref] = calendar

    def resolve(self, calendar_ref: Optional[str]) -> WorkingCalendar:
        if calendar_ref is None:
            raise CalendarUnavailable(None, "No calendar assigned")
        registered = self._registered.get(calendar_ref)
        if registered is not None:
            return registered
        try:
            calendar = self.calendars.get(calendar_ref)
        except RecordNotFoundError as exc:
            raise CalendarUnavailable(calendar_ref) from exc
        return ShiftCalendarClock(calendar, lookback_days=self.lookback_days)

    def subtract_working_time(
        self, calendar_ref: Optional[str], end: datetime, duration: timedelta
    ) -> datetime:
        return self.resolve(calendar_ref).subtract_working_time(end, duration)


__all__ = [
    "DEFAULT_LOOKBACK_DAYS",
    "WorkingCalendar",
    "ContinuousCalendar",
    "ShiftCalendarClock",
    "CalendarRegistry",
]
