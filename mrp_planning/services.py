"""Service layer that proposes orders for projected shortages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from .calendar import (
    DEFAULT_LOOKBACK_DAYS,
    CalendarRegistry,
    ContinuousCalendar,
    WorkingCalendar,
)
from .domain import (
    BomComponent,
    Product,
    ProductFacility,
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
from .repository import InMemoryRepository, RecordNotFoundError
from .scheduler import (
    BackwardScheduler,
    ProcessStep,
    QuantityPolicy,
    ScheduleRequest,
    ScheduleResult,
)

logger = logging.getLogger(__name__)

CONTINUOUS_CALENDAR_ID = "24H"
DEFAULT_REQUIREMENT_DESCRIPTION = "Automatically generated by MRP"

TaskTimeEstimator = Callable[[RoutingTask, float], timedelta]

TASK_TIME_ESTIMATORS: Dict[str, TaskTimeEstimator] = {}


def register_task_time_estimator(name: str, estimator: TaskTimeEstimator) -> None:
    """Make ``estimator`` available to routing tasks through ``estimate_method``."""

    TASK_TIME_ESTIMATORS[name] = estimator


def estimate_task_time(task: RoutingTask, quantity: float) -> timedelta:
    """Setup time plus run time for ``quantity`` units, unless the task names
    a registered estimator."""

    if task.estimate_method:
        try:
            estimator = TASK_TIME_ESTIMATORS[task.estimate_method]
        except KeyError as exc:
            raise DependencyLookupFailed(
                task.id,
                f"Unknown estimate method {task.estimate_method!r} on task {task.id!r}",
            ) from exc
        return estimator(task, quantity)
    return task.setup_time + task.run_time_per_unit * float(quantity)


def _or_new(repository: Optional[InMemoryRepository]) -> InMemoryRepository:
    return repository if repository is not None else InMemoryRepository()


@dataclass(slots=True)
class PlanningOptions:
    """Configuration values controlling requirement planning."""

    working_hours_per_day: float = 8.0
    supplier_calendar_id: Optional[str] = CONTINUOUS_CALENDAR_ID
    fallback_calendar_id: Optional[str] = None
    calendar_lookback_days: int = DEFAULT_LOOKBACK_DAYS
    default_facility_id: str = "MAIN"


@dataclass(frozen=True)
class StartDateCalculation:
    """Outcome of a start-date calculation for a proposed order.

    ``failure`` is set when routing data could not be found; the schedule is
    then empty and the start date equals the required-by date.
    """

    requirement_start_date: datetime
    task_start_dates: Mapping[str, datetime] = field(
        default_factory=lambda: MappingProxyType({})
    )
    routing_id: Optional[str] = None
    calendar_fallbacks: Tuple[str, ...] = ()
    failure: Optional[DependencyLookupFailed] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class ProposalOutcome:
    """Aggregate result returned after proposing an order."""

    order: ProposedOrder
    calculation: StartDateCalculation
    requirement_id: Optional[str]


class MRPService:
    """Facade that exposes requirement planning use-cases to clients."""

    def __init__(
        self,
        product_repo: Optional[InMemoryRepository[Product]] = None,
        product_facility_repo: Optional[InMemoryRepository[ProductFacility]] = None,
        shift_calendar_repo: Optional[InMemoryRepository[ShiftCalendar]] = None,
        routing_repo: Optional[InMemoryRepository[Routing]] = None,
        bom_repo: Optional[InMemoryRepository[BomComponent]] = None,
        requirement_repo: Optional[InMemoryRepository[Requirement]] = None,
        *,
        options: Optional[PlanningOptions] = None,
    ) -> None:
        # Empty repositories are falsy, so test against None explicitly.
        self.products = _or_new(product_repo)
        self.product_facilities = _or_new(product_facility_repo)
        self.shift_calendars = _or_new(shift_calendar_repo)
        self.routings = _or_new(routing_repo)
        self.bom = _or_new(bom_repo)
        self.requirements = _or_new(requirement_repo)
        self.planning_options = options if options is not None else PlanningOptions()
        self.calendars = self._build_calendar_registry()

    def _build_calendar_registry(self) -> CalendarRegistry:
        registry = CalendarRegistry(
            self.shift_calendars,
            lookback_days=self.planning_options.calendar_lookback_days,
        )
        registry.register(CONTINUOUS_CALENDAR_ID, ContinuousCalendar(CONTINUOUS_CALENDAR_ID))
        return registry

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_planning_options(
        self,
        *,
        working_hours_per_day: float,
        supplier_calendar_id: Optional[str] = CONTINUOUS_CALENDAR_ID,
        fallback_calendar_id: Optional[str] = None,
        calendar_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        default_facility_id: str = "MAIN",
    ) -> PlanningOptions:
        """Apply new planning parameters.

        A fallback calendar that cannot be resolved is rejected, the current
        options stay in place.
        """

        if fallback_calendar_id:
            try:
                self.calendars.resolve(fallback_calendar_id)
            except CalendarUnavailable as exc:
                raise InvalidRequest(
                    f"Fallback calendar {fallback_calendar_id!r} does not exist"
                ) from exc
        self.planning_options = PlanningOptions(
            working_hours_per_day=min(max(working_hours_per_day, 0.0), 24.0),
            supplier_calendar_id=supplier_calendar_id or None,
            fallback_calendar_id=fallback_calendar_id or None,
            calendar_lookback_days=max(calendar_lookback_days, 1),
            default_facility_id=default_facility_id or "MAIN",
        )
        self.calendars = self._build_calendar_registry()
        return self.planning_options

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def register_product(
        self,
        name: str,
        *,
        product_id: Optional[str] = None,
        product_type: ProductType = ProductType.FINISHED_GOOD,
        is_virtual: bool = False,
        virtual_product_id: Optional[str] = None,
    ) -> Product:
        if virtual_product_id is not None and virtual_product_id not in self.products:
            raise RecordNotFoundError(f"Virtual product {virtual_product_id!r} does not exist")
        product = Product(
            id=product_id or str(uuid4()),
            name=name,
            product_type=product_type,
            is_virtual=is_virtual,
            virtual_product_id=virtual_product_id,
        )
        self.products.add(product.id, product)
        return product

    def set_product_facility(
        self,
        product_id: str,
        facility_id: str,
        *,
        days_to_ship: int = 0,
        reorder_quantity: Optional[float] = None,
        minimum_stock: Optional[float] = None,
    ) -> ProductFacility:
        self.products.get(product_id)
        product_facility = ProductFacility(
            product_id=product_id,
            facility_id=facility_id,
            days_to_ship=max(days_to_ship, 0),
            reorder_quantity=reorder_quantity,
            minimum_stock=minimum_stock,
        )
        self.product_facilities.upsert(product_facility.key, product_facility)
        return product_facility

    def get_product_facility(self, product_id: str, facility_id: str) -> Optional[ProductFacility]:
        try:
            return self.product_facilities.get(f"{product_id}@{facility_id}")
        except RecordNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Shift calendar management
    # ------------------------------------------------------------------
    def create_shift_calendar(
        self,
        name: str,
        shifts: Sequence[Shift],
        *,
        calendar_id: Optional[str] = None,
        non_working_days: Optional[Sequence[date]] = None,
    ) -> ShiftCalendar:
        if not shifts:
            raise ValueError("A shift calendar must contain at least one shift")
        calendar = ShiftCalendar(
            id=calendar_id or str(uuid4()),
            name=name,
            shifts=list(shifts),
            non_working_days=set(non_working_days or ()),
        )
        self.shift_calendars.add(calendar.id, calendar)
        return calendar

    def add_non_working_day(self, calendar_id: str, day: date) -> ShiftCalendar:
        calendar = self.shift_calendars.get(calendar_id)
        calendar.add_non_working_day(day)
        self.shift_calendars.upsert(calendar.id, calendar)
        return calendar

    # ------------------------------------------------------------------
    # Routings and bills of material
    # ------------------------------------------------------------------
    @staticmethod
    def build_routing_task(
        name: str,
        *,
        setup_time: timedelta = timedelta(0),
        run_time_per_unit: timedelta = timedelta(0),
        calendar_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        thru_date: Optional[datetime] = None,
        estimate_method: Optional[str] = None,
        description: str = "",
    ) -> RoutingTask:
        return RoutingTask(
            id=str(uuid4()),
            name=name,
            setup_time=setup_time,
            run_time_per_unit=run_time_per_unit,
            calendar_id=calendar_id,
            from_date=from_date,
            thru_date=thru_date,
            estimate_method=estimate_method,
            description=description,
        )

    def create_routing(
        self,
        product_id: str,
        name: str,
        tasks: Sequence[RoutingTask],
        *,
        from_date: Optional[datetime] = None,
        thru_date: Optional[datetime] = None,
    ) -> Routing:
        if product_id not in self.products:
            raise RecordNotFoundError(f"Product {product_id!r} does not exist")
        routing = Routing(
            id=str(uuid4()),
            product_id=product_id,
            name=name,
            tasks=list(tasks),
            from_date=from_date,
            thru_date=thru_date,
        )
        self.routings.add(routing.id, routing)
        return routing

    def add_bom_component(
        self,
        product_id: str,
        component_id: str,
        *,
        quantity: float = 1.0,
        from_date: Optional[datetime] = None,
        thru_date: Optional[datetime] = None,
    ) -> BomComponent:
        for required in (product_id, component_id):
            if required not in self.products:
                raise RecordNotFoundError(f"Product {required!r} does not exist")
        if product_id == component_id:
            raise ValueError("A product cannot be its own component")
        component = BomComponent(
            id=str(uuid4()),
            product_id=product_id,
            component_id=component_id,
            quantity=quantity,
            from_date=from_date,
            thru_date=thru_date,
        )
        self.bom.add(component.id, component)
        return component

    def components_of(self, product_id: str, as_of: Optional[datetime] = None) -> List[BomComponent]:
        return [
            component
            for component in self.bom
            if component.product_id == product_id
            and (as_of is None or component.is_active(as_of))
        ]

    def find_routing(self, product_id: str, as_of: datetime) -> Optional[Routing]:
        for routing in self.routings:
            if routing.product_id == product_id and routing.is_active(as_of):
                return routing
        return None

    def resolve_routing(self, product: Product, as_of: datetime) -> Routing:
        """Routing of the product, or of its virtual product when it has none."""

        routing = self.find_routing(product.id, as_of)
        if routing is not None:
            return routing
        if product.virtual_product_id:
            routing = self.find_routing(product.virtual_product_id, as_of)
            if routing is not None:
                logger.debug(
                    "Using routing %s of virtual product %s for %s",
                    routing.id,
                    product.virtual_product_id,
                    product.id,
                )
                return routing
        raise DependencyLookupFailed(product.id)

    def is_built(self, product: Product, as_of: datetime) -> bool:
        try:
            self.resolve_routing(product, as_of)
        except DependencyLookupFailed:
            return bool(self.components_of(product.id, as_of))
        return True

    @staticmethod
    def routing_steps(routing: Routing) -> List[ProcessStep]:
        return [
            ProcessStep(
                id=task.id,
                estimator=lambda step, quantity, task=task: estimate_task_time(task, quantity),
                calendar_ref=task.calendar_id,
                activity=lambda step, moment, task=task: task.is_active(moment),
            )
            for task in routing.tasks
        ]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _fallback_calendar(self) -> WorkingCalendar:
        fallback_id = self.planning_options.fallback_calendar_id
        if fallback_id is not None:
            try:
                return self.calendars.resolve(fallback_id)
            except CalendarUnavailable:
                # Removed from the repository after the options were set.
                logger.warning("Fallback calendar %s is not available", fallback_id)
        return ContinuousCalendar(CONTINUOUS_CALENDAR_ID)

    def scheduler(self) -> BackwardScheduler:
        return BackwardScheduler(self.calendars, fallback_calendar=self._fallback_calendar())

    def lead_time_offset(self, days_to_ship: int) -> timedelta:
        """Working time covered by ``days_to_ship`` working days."""

        return timedelta(hours=days_to_ship * self.planning_options.working_hours_per_day)

    def schedule_routing(
        self,
        routing: Routing,
        completion_instant: datetime,
        quantity: float,
        *,
        trailing_offset: timedelta = timedelta(0),
    ) -> ScheduleResult:
        request = ScheduleRequest(
            steps=tuple(self.routing_steps(routing)),
            completion_instant=completion_instant,
            quantity=quantity,
            trailing_offset=trailing_offset,
        )
        return self.scheduler().schedule(request)

    def calculate_start_date(
        self,
        order: ProposedOrder,
        days_to_ship: int,
        routing: Optional[Routing] = None,
    ) -> StartDateCalculation:
        """Compute when supply for ``order`` has to start.

        Built products are scheduled backwards through their routing, the
        shipping time being appended to the last task. Purchased products
        start ``days_to_ship`` working days before the required date on the
        supplier calendar.
        """

        if order.required_by_date is None:
            raise InvalidRequest("A required-by date is required")
        trailing_offset = self.lead_time_offset(days_to_ship)
        if not order.is_built:
            lead_time = ProcessStep(
                id=f"{order.product_id}:supplier-lead-time",
                estimator=lambda step, quantity: timedelta(0),
                calendar_ref=self.planning_options.supplier_calendar_id,
            )
            result = self.scheduler().schedule(
                ScheduleRequest(
                    steps=(lead_time,),
                    completion_instant=order.required_by_date,
                    quantity=order.quantity,
                    trailing_offset=trailing_offset,
                )
            )
            return StartDateCalculation(
                requirement_start_date=result.start_instant,
                calendar_fallbacks=result.calendar_fallbacks,
            )

        if routing is None:
            try:
                routing = self.resolve_routing(order.product, order.required_by_date)
            except DependencyLookupFailed as exc:
                logger.warning("No routing found for product %s", order.product_id)
                return StartDateCalculation(
                    requirement_start_date=order.required_by_date,
                    failure=exc,
                )
        try:
            result = self.schedule_routing(
                routing,
                order.required_by_date,
                order.quantity,
                trailing_offset=trailing_offset,
            )
        except DependencyLookupFailed as exc:
            logger.warning("Task time estimation failed for routing %s: %s", routing.id, exc)
            return StartDateCalculation(
                requirement_start_date=order.required_by_date,
                routing_id=routing.id,
                failure=exc,
            )
        return StartDateCalculation(
            requirement_start_date=result.start_instant,
            task_start_dates=result.start_dates,
            routing_id=routing.id,
            calendar_fallbacks=result.calendar_fallbacks,
        )

    # ------------------------------------------------------------------
    # Quantities and requirements
    # ------------------------------------------------------------------
    def calculate_quantity_to_supply(
        self, order: ProposedOrder, reorder_quantity: Optional[float] = None
    ) -> ProposedOrder:
        """Raise the order quantity to the reorder quantity.

        Without an explicit value the reorder quantity configured for the
        product at the order's facility is used.
        """

        if reorder_quantity is None:
            product_facility = self.get_product_facility(order.product_id, order.facility_id)
            if product_facility is not None:
                reorder_quantity = product_facility.reorder_quantity
        quantity = QuantityPolicy.adjust(order.quantity, reorder_quantity)
        if quantity == order.quantity:
            return order
        return order.with_quantity(quantity)

    def explosion_start_date(
        self,
        product_id: str,
        facility_id: str,
        required_by: datetime,
        *,
        _path: Tuple[str, ...] = (),
    ) -> datetime:
        """Earliest start over the manufacturing BOM below ``product_id``.

        The root and work-in-process components start ``days_to_ship``
        calendar days before the date they are required by, and their
        components are required by that start. Any other component gets its
        own requirement, so it is taken to be available when required.
        """

        if product_id in _path:
            raise PlanningError(
                f"Bill of materials contains a cycle: {' -> '.join((*_path, product_id))}"
            )
        if _path and self.products.get(product_id).product_type != ProductType.WIP:
            return required_by
        product_facility = self.get_product_facility(product_id, facility_id)
        days_to_ship = product_facility.days_to_ship if product_facility else 0
        earliest = required_by - timedelta(days=days_to_ship)
        node_start = earliest
        for component in self.components_of(product_id, required_by):
            child_start = self.explosion_start_date(
                component.component_id,
                facility_id,
                node_start,
                _path=(*_path, product_id),
            )
            if child_start < earliest:
                earliest = child_start
        return earliest

    def create_requirement(self, order: ProposedOrder) -> Optional[str]:
        """Persist ``order`` as a proposed requirement and return its id.

        Work-in-process products never get requirements; ``None`` is returned
        for them.
        """

        if order.product.product_type == ProductType.WIP:
            logger.debug("No requirement for work in process product %s", order.product_id)
            return None
        start_date = order.requirement_start_date
        if order.is_built:
            start_date = self.explosion_start_date(
                order.product_id,
                order.manufacturing_facility_id,
                order.required_by_date,
            )
        if order.mrp_name is not None:
            description = f"MRP_{order.mrp_name}"
        else:
            description = DEFAULT_REQUIREMENT_DESCRIPTION
        requirement = Requirement(
            id=str(uuid4()),
            product_id=order.product_id,
            facility_id=order.manufacturing_facility_id if order.is_built else order.facility_id,
            required_by_date=order.required_by_date,
            requirement_start_date=start_date,
            quantity=order.quantity,
            requirement_type=RequirementType.INTERNAL if order.is_built else RequirementType.PRODUCT,
            status=RequirementStatus.PROPOSED,
            description=description,
        )
        self.requirements.add(requirement.id, requirement)
        logger.info(
            "Created requirement %s for %s x %s due %s",
            requirement.id,
            requirement.quantity,
            requirement.product_id,
            requirement.required_by_date,
        )
        return requirement.id

    def list_requirements(self, *, product_id: Optional[str] = None) -> List[Requirement]:
        requirements = [
            requirement
            for requirement in self.requirements
            if product_id is None or requirement.product_id == product_id
        ]
        requirements.sort(key=lambda requirement: requirement.required_by_date)
        return requirements

    def propose_order(
        self,
        product_id: str,
        required_by_date: datetime,
        quantity: float,
        *,
        facility_id: Optional[str] = None,
        manufacturing_facility_id: Optional[str] = None,
        is_built: Optional[bool] = None,
        days_to_ship: Optional[int] = None,
        mrp_name: Optional[str] = None,
    ) -> ProposalOutcome:
        """Build a proposed order for a shortage and record it as requirement."""

        if quantity < 0:
            raise InvalidRequest(f"Quantity must not be negative, got {quantity}")
        product = self.products.get(product_id)
        facility_id = facility_id or self.planning_options.default_facility_id
        manufacturing_facility_id = manufacturing_facility_id or facility_id
        if is_built is None:
            is_built = self.is_built(product, required_by_date)
        if days_to_ship is None:
            product_facility = self.get_product_facility(product_id, facility_id)
            days_to_ship = product_facility.days_to_ship if product_facility else 0
        order = ProposedOrder(
            product=product,
            facility_id=facility_id,
            manufacturing_facility_id=manufacturing_facility_id,
            is_built=is_built,
            required_by_date=required_by_date,
            quantity=quantity,
            mrp_name=mrp_name,
        )
        order = self.calculate_quantity_to_supply(order)
        calculation = self.calculate_start_date(order, days_to_ship)
        order = order.with_requirement_start_date(calculation.requirement_start_date)
        requirement_id = self.create_requirement(order)
        return ProposalOutcome(order=order, calculation=calculation, requirement_id=requirement_id)


__all__ = [
    "CONTINUOUS_CALENDAR_ID",
    "DEFAULT_REQUIREMENT_DESCRIPTION",
    "TASK_TIME_ESTIMATORS",
    "register_task_time_estimator",
    "estimate_task_time",
    "PlanningOptions",
    "StartDateCalculation",
    "ProposalOutcome",
    "MRPService",
]
