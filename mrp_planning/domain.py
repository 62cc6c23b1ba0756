"""Core data structures for material requirements planning."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import List, Optional, Set, Tuple


class ProductType(str, Enum):
    """Product classification relevant for requirement planning."""

    FINISHED_GOOD = "FINISHED_GOOD"
    SUBASSEMBLY = "SUBASSEMBLY"
    RAW_MATERIAL = "RAW_MATERIAL"
    WIP = "WIP"


class RequirementType(str, Enum):
    """Kind of requirement created for a proposed order."""

    INTERNAL = "INTERNAL_REQUIREMENT"
    PRODUCT = "PRODUCT_REQUIREMENT"


class RequirementStatus(str, Enum):
    """Lifecycle stages for a requirement."""

    PROPOSED = "REQ_PROPOSED"
    APPROVED = "REQ_APPROVED"
    ORDERED = "REQ_ORDERED"
    REJECTED = "REQ_REJECTED"


def is_active(
    from_date: Optional[datetime], thru_date: Optional[datetime], moment: datetime
) -> bool:
    """Return whether a validity window contains ``moment``.

    Open bounds are unlimited; ``thru_date`` is exclusive.
    """

    if from_date is not None and from_date > moment:
        return False
    if thru_date is not None and thru_date <= moment:
        return False
    return True


@dataclass(slots=True)
class Product:
    """Product master data."""

    id: str
    name: str
    product_type: ProductType = ProductType.FINISHED_GOOD
    is_virtual: bool = False
    virtual_product_id: Optional[str] = None


@dataclass(slots=True)
class ProductFacility:
    """Replenishment settings of a product at a facility."""

    product_id: str
    facility_id: str
    days_to_ship: int = 0
    reorder_quantity: Optional[float] = None
    minimum_stock: Optional[float] = None

    @property
    def key(self) -> str:
        return f"{self.product_id}@{self.facility_id}"


@dataclass(slots=True)
class Shift:
    """Definition of a daily working shift."""

    name: str
    start_time: time
    end_time: time
    weekdays: Tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.weekdays:
            raise ValueError("A shift must define at least one weekday")
        for weekday in self.weekdays:
            if weekday < 0 or weekday > 6:
                raise ValueError("Weekday indices must be in range 0..6")
        if self.end_time == self.start_time:
            raise ValueError("Shift end time must differ from start time")


@dataclass(slots=True)
class ShiftCalendar:
    """Collection of shifts and non-working days used for working time."""

    id: str
    name: str
    shifts: List[Shift]
    non_working_days: Set[date] = field(default_factory=set)

    def add_non_working_day(self, day: date) -> None:
        self.non_working_days.add(day)


@dataclass(slots=True)
class RoutingTask:
    """A single production operation of a routing."""

    id: str
    name: str
    setup_time: timedelta = timedelta(0)
    run_time_per_unit: timedelta = timedelta(0)
    calendar_id: Optional[str] = None
    from_date: Optional[datetime] = None
    thru_date: Optional[datetime] = None
    estimate_method: Optional[str] = None
    description: str = ""

    def is_active(self, moment: datetime) -> bool:
        return is_active(self.from_date, self.thru_date, moment)


@dataclass(slots=True)
class Routing:
    """Ordered sequence of routing tasks that produces a product."""

    id: str
    product_id: str
    name: str
    tasks: List[RoutingTask] = field(default_factory=list)
    from_date: Optional[datetime] = None
    thru_date: Optional[datetime] = None

    def is_active(self, moment: datetime) -> bool:
        return is_active(self.from_date, self.thru_date, moment)


@dataclass(slots=True)
class BomComponent:
    """Manufacturing component association between two products."""

    id: str
    product_id: str
    component_id: str
    quantity: float = 1.0
    from_date: Optional[datetime] = None
    thru_date: Optional[datetime] = None

    def is_active(self, moment: datetime) -> bool:
        return is_active(self.from_date, self.thru_date, moment)


@dataclass(frozen=True, slots=True)
class ProposedOrder:
    """A not yet committed purchase or production request.

    Instances are immutable; planning steps return adjusted copies.
    """

    product: Product
    facility_id: str
    manufacturing_facility_id: str
    is_built: bool
    required_by_date: datetime
    quantity: float
    requirement_start_date: Optional[datetime] = None
    mrp_name: Optional[str] = None

    @property
    def product_id(self) -> str:
        return self.product.id

    def with_quantity(self, quantity: float) -> "ProposedOrder":
        return replace(self, quantity=quantity)

    def with_requirement_start_date(self, start: Optional[datetime]) -> "ProposedOrder":
        return replace(self, requirement_start_date=start)

    def with_mrp_name(self, mrp_name: Optional[str]) -> "ProposedOrder":
        return replace(self, mrp_name=mrp_name)


@dataclass(slots=True)
class Requirement:
    """Persisted proposal created from a proposed order."""

    id: str
    product_id: str
    facility_id: str
    required_by_date: datetime
    quantity: float
    requirement_type: RequirementType
    status: RequirementStatus = RequirementStatus.PROPOSED
    requirement_start_date: Optional[datetime] = None
    description: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


__all__ = [
    "ProductType",
    "RequirementType",
    "RequirementStatus",
    "is_active",
    "Product",
    "ProductFacility",
    "Shift",
    "ShiftCalendar",
    "RoutingTask",
    "Routing",
    "BomComponent",
    "ProposedOrder",
    "Requirement",
]
