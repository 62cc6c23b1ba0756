"""Backward scheduling of an ordered chain of process steps.

Given the instant by which an order must be complete, the scheduler walks the
chain from the last step to the first and asks each step's working-time
calendar when the step has to start so that it finishes exactly when its
successor begins.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from numbers import Number
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, cast

from .calendar import ContinuousCalendar, WorkingCalendar
from .errors import CalendarUnavailable, InvalidRequest

logger = logging.getLogger(__name__)

DurationEstimator = Callable[["ProcessStep", float], timedelta]
ActivityCheck = Callable[["ProcessStep", datetime], bool]


def always_active(step: "ProcessStep", moment: datetime) -> bool:
    return True


class CalendarLookup(Protocol):
    def subtract_working_time(
        self, calendar_ref: Optional[str], end: datetime, duration: timedelta
    ) -> datetime:
        ...


@dataclass(frozen=True)
class ProcessStep:
    """A schedulable step with pluggable duration and validity checks."""

    id: str
    estimator: DurationEstimator
    calendar_ref: Optional[str] = None
    activity: ActivityCheck = always_active

    def estimate_duration(self, quantity: float) -> timedelta:
        return self.estimator(self, quantity)

    def is_active(self, moment: datetime) -> bool:
        return self.activity(self, moment)


@dataclass(frozen=True)
class ScheduleRequest:
    """Immutable input of a single backward scheduling run."""

    steps: Tuple[ProcessStep, ...]
    completion_instant: Optional[datetime]
    quantity: float
    trailing_offset: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class ScheduleResult(Mapping):
    """Start instant per scheduled step, in evaluation (last to first) order.

    ``start_instant`` is where the cursor stopped: the start of the earliest
    active step, or ``completion_instant`` when no step was scheduled.
    """

    completion_instant: datetime
    start_instant: datetime
    start_dates: Mapping[str, datetime] = field(default_factory=dict)
    calendar_fallbacks: Tuple[str, ...] = ()

    def __getitem__(self, step_id: str) -> datetime:
        return self.start_dates[step_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.start_dates)

    def __len__(self) -> int:
        return len(self.start_dates)

    def __hash__(self) -> int:
        return hash(
            (
                self.completion_instant,
                self.start_instant,
                tuple(self.start_dates.items()),
                self.calendar_fallbacks,
            )
        )

    @property
    def lead_time(self) -> timedelta:
        return self.completion_instant - self.start_instant


class QuantityPolicy:
    """Raise a proposed quantity to at least the reorder quantity."""

    @staticmethod
    def adjust(quantity: float, reorder_quantity: Optional[float]) -> float:
        if reorder_quantity is None:
            return quantity
        return max(quantity, reorder_quantity)


class BackwardScheduler:
    """Computes the latest start of every step of a chain.

    Calendar references that cannot be resolved are scheduled on
    ``fallback_calendar`` and reported in ``ScheduleResult.calendar_fallbacks``.
    """

    def __init__(
        self,
        calendars: CalendarLookup,
        *,
        fallback_calendar: Optional[WorkingCalendar] = None,
    ) -> None:
        self.calendars = calendars
        self.fallback_calendar = fallback_calendar or ContinuousCalendar()

    @staticmethod
    def validate(request: ScheduleRequest) -> None:
        if request.completion_instant is None:
            raise InvalidRequest("A completion instant is required")
        if not isinstance(request.completion_instant, datetime):
            raise InvalidRequest(
                f"Completion instant must be a datetime, got {request.completion_instant!r}"
            )
        if isinstance(request.quantity, bool) or not isinstance(request.quantity, Number):
            raise InvalidRequest(f"Quantity must be a number, got {request.quantity!r}")
        if request.quantity < 0:
            raise InvalidRequest(f"Quantity must not be negative, got {request.quantity}")
        if not isinstance(request.trailing_offset, timedelta):
            raise InvalidRequest("Trailing offset must be a timedelta")
        if request.trailing_offset < timedelta(0):
            raise InvalidRequest("Trailing offset must not be negative")
        seen = set()
        for step in request.steps:
            if not isinstance(step, ProcessStep):
                raise InvalidRequest(f"Not a process step: {step!r}")
            if step.id in seen:
                raise InvalidRequest(f"Step {step.id!r} appears more than once")
            seen.add(step.id)

    def schedule(self, request: ScheduleRequest) -> ScheduleResult:
        self.validate(request)
        completion_instant = cast(datetime, request.completion_instant)
        end_cursor = completion_instant
        start_dates: Dict[str, datetime] = {}
        fallbacks: List[str] = []
        last_index = len(request.steps) - 1

        for index in range(last_index, -1, -1):
            step = request.steps[index]
            if not step.is_active(end_cursor):
                logger.debug("Step %s is not active at %s, skipped", step.id, end_cursor)
                continue
            duration = step.estimate_duration(request.quantity)
            if duration < timedelta(0):
                raise InvalidRequest(
                    f"Step {step.id!r} estimated a negative duration ({duration})"
                )
            if index == last_index:
                duration += request.trailing_offset
            start = self._subtract(step, end_cursor, duration, fallbacks)
            start_dates[step.id] = start
            logger.debug("Step %s scheduled %s -> %s", step.id, start, end_cursor)
            end_cursor = start

        return ScheduleResult(
            completion_instant=completion_instant,
            start_instant=end_cursor,
            start_dates=MappingProxyType(start_dates),
            calendar_fallbacks=tuple(fallbacks),
        )

    def _subtract(
        self,
        step: ProcessStep,
        end: datetime,
        duration: timedelta,
        fallbacks: List[str],
    ) -> datetime:
        try:
            return self.calendars.subtract_working_time(step.calendar_ref, end, duration)
        except CalendarUnavailable as exc:
            logger.warning(
                "Calendar unavailable for step %s (%s), using fallback calendar", step.id, exc
            )
            fallbacks.append(step.id)
        try:
            return self.fallback_calendar.subtract_working_time(end, duration)
        except CalendarUnavailable as exc:
            logger.warning(
                "Fallback calendar unavailable for step %s (%s), using continuous time",
                step.id,
                exc,
            )
            return ContinuousCalendar().subtract_working_time(end, duration)


def schedule_steps(
    steps: Sequence[ProcessStep],
    completion_instant: datetime,
    quantity: float,
    calendars: CalendarLookup,
    *,
    trailing_offset: timedelta = timedelta(0),
    fallback_calendar: Optional[WorkingCalendar] = None,
) -> ScheduleResult:
    """Convenience wrapper building the request and the scheduler in one call."""

    request = ScheduleRequest(
        steps=tuple(steps),
        completion_instant=completion_instant,
        quantity=quantity,
        trailing_offset=trailing_offset,
    )
    scheduler = BackwardScheduler(calendars, fallback_calendar=fallback_calendar)
    return scheduler.schedule(request)


__all__ = [
    "DurationEstimator",
    "ActivityCheck",
    "always_active",
    "CalendarLookup",
    "ProcessStep",
    "ScheduleRequest",
    "ScheduleResult",
    "QuantityPolicy",
    "BackwardScheduler",
    "schedule_steps",
]
