"""Material requirements planning for proposed purchase and production orders.

This package provides data models, working-time calendars, a backward
scheduler for routing task chains, and a service layer that turns projected
shortages into proposed requirements.
"""

from .domain import (
    Product,
    ProductType,
    ProposedOrder,
    Requirement,
    RequirementStatus,
    RequirementType,
    Routing,
    RoutingTask,
    Shift,
    ShiftCalendar,
)
from .errors import CalendarUnavailable, DependencyLookupFailed, InvalidRequest, PlanningError
from .scheduler import (
    BackwardScheduler,
    ProcessStep,
    QuantityPolicy,
    ScheduleRequest,
    ScheduleResult,
)
from .services import MRPService, PlanningOptions, StartDateCalculation

__all__ = [
    "Product",
    "ProductType",
    "ProposedOrder",
    "Requirement",
    "RequirementStatus",
    "RequirementType",
    "Routing",
    "RoutingTask",
    "Shift",
    "ShiftCalendar",
    "CalendarUnavailable",
    "DependencyLookupFailed",
    "InvalidRequest",
    "PlanningError",
    "BackwardScheduler",
    "ProcessStep",
    "QuantityPolicy",
    "ScheduleRequest",
    "ScheduleResult",
    "MRPService",
    "PlanningOptions",
    "StartDateCalculation",
]
