"""Exceptions raised by the planning layer."""

from __future__ import annotations

from typing import Optional


class PlanningError(RuntimeError):
    """Base exception for planning errors."""


class InvalidRequest(PlanningError, ValueError):
    """Raised when a scheduling request is incomplete or malformed."""


class CalendarUnavailable(PlanningError):
    """Raised when a working-time calendar cannot be resolved or used."""

    def __init__(self, calendar_ref: Optional[str], message: str = "") -> None:
        self.calendar_ref = calendar_ref
        super().__init__(message or f"Calendar {calendar_ref!r} is not available")


class DependencyLookupFailed(PlanningError):
    """Describes a failed lookup of routing or duration data."""

    def __init__(self, product_id: str, message: str = "") -> None:
        self.product_id = product_id
        super().__init__(message or f"No routing found for product {product_id!r}")


__all__ = [
    "PlanningError",
    "InvalidRequest",
    "CalendarUnavailable",
    "DependencyLookupFailed",
]
