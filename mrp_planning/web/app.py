"""FastAPI-based JSON interface for requirement planning."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from ..domain import ProductType, Requirement, Shift
from ..errors import DependencyLookupFailed, InvalidRequest, PlanningError
from ..repository import RecordNotFoundError
from ..services import MRPService, PlanningOptions
from ..storage import MRPDatabase

logger = logging.getLogger(__name__)


class ProposalIn(BaseModel):
    product_id: str
    required_by_date: datetime
    quantity: float = Field(ge=0)
    facility_id: Optional[str] = None
    manufacturing_facility_id: Optional[str] = None
    is_built: Optional[bool] = None
    days_to_ship: Optional[int] = Field(default=None, ge=0)
    mrp_name: Optional[str] = None


class ProposalOut(BaseModel):
    requirement_id: Optional[str]
    product_id: str
    quantity: float
    is_built: bool
    required_by_date: datetime
    requirement_start_date: datetime
    routing_id: Optional[str] = None
    task_start_dates: Dict[str, datetime] = {}
    calendar_fallbacks: List[str] = []
    failure: Optional[str] = None


class ScheduleIn(BaseModel):
    completion_instant: datetime
    quantity: float = Field(ge=0)
    days_to_ship: int = Field(default=0, ge=0)


class ScheduleOut(BaseModel):
    routing_id: str
    completion_instant: datetime
    start_instant: datetime
    start_dates: Dict[str, datetime]
    calendar_fallbacks: List[str] = []


class RequirementOut(BaseModel):
    id: str
    product_id: str
    facility_id: str
    requirement_type: str
    status: str
    required_by_date: datetime
    requirement_start_date: Optional[datetime]
    quantity: float
    description: str

    @classmethod
    def from_requirement(cls, requirement: Requirement) -> "RequirementOut":
        return cls(
            id=requirement.id,
            product_id=requirement.product_id,
            facility_id=requirement.facility_id,
            requirement_type=requirement.requirement_type.value,
            status=requirement.status.value,
            required_by_date=requirement.required_by_date,
            requirement_start_date=requirement.requirement_start_date,
            quantity=requirement.quantity,
            description=requirement.description,
        )


def create_app(
    database_path: str = "mrp.sqlite3",
    *,
    options: Optional[PlanningOptions] = None,
    demo_data: bool = True,
) -> FastAPI:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
    database = MRPDatabase(database_path)
    service = MRPService(
        product_repo=database.products,
        product_facility_repo=database.product_facilities,
        shift_calendar_repo=database.shift_calendars,
        routing_repo=database.routings,
        bom_repo=database.bom,
        requirement_repo=database.requirements,
        options=options,
    )
    if demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="MRP Planning")
    app.state.mrp_service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.post("/proposals", response_model=ProposalOut)
    async def propose_order(payload: ProposalIn, request: Request):
        service: MRPService = request.app.state.mrp_service
        try:
            outcome = service.propose_order(
                payload.product_id,
                payload.required_by_date,
                payload.quantity,
                facility_id=payload.facility_id,
                manufacturing_facility_id=payload.manufacturing_facility_id,
                is_built=payload.is_built,
                days_to_ship=payload.days_to_ship,
                mrp_name=payload.mrp_name,
            )
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidRequest as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except PlanningError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        calculation = outcome.calculation
        return ProposalOut(
            requirement_id=outcome.requirement_id,
            product_id=outcome.order.product_id,
            quantity=outcome.order.quantity,
            is_built=outcome.order.is_built,
            required_by_date=outcome.order.required_by_date,
            requirement_start_date=calculation.requirement_start_date,
            routing_id=calculation.routing_id,
            task_start_dates=dict(calculation.task_start_dates),
            calendar_fallbacks=list(calculation.calendar_fallbacks),
            failure=str(calculation.failure) if calculation.failure else None,
        )

    @app.post("/products/{product_id}/schedule", response_model=ScheduleOut)
    async def schedule_product(product_id: str, payload: ScheduleIn, request: Request):
        service: MRPService = request.app.state.mrp_service
        try:
            product = service.products.get(product_id)
            routing = service.resolve_routing(product, payload.completion_instant)
            result = service.schedule_routing(
                routing,
                payload.completion_instant,
                payload.quantity,
                trailing_offset=service.lead_time_offset(payload.days_to_ship),
            )
        except (RecordNotFoundError, DependencyLookupFailed) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidRequest as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except PlanningError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return ScheduleOut(
            routing_id=routing.id,
            completion_instant=result.completion_instant,
            start_instant=result.start_instant,
            start_dates=dict(result),
            calendar_fallbacks=list(result.calendar_fallbacks),
        )

    @app.get("/requirements", response_model=List[RequirementOut])
    async def list_requirements(request: Request, product_id: Optional[str] = None):
        service: MRPService = request.app.state.mrp_service
        return [
            RequirementOut.from_requirement(requirement)
            for requirement in service.list_requirements(product_id=product_id)
        ]

    @app.get("/requirements/{requirement_id}", response_model=RequirementOut)
    async def get_requirement(requirement_id: str, request: Request):
        service: MRPService = request.app.state.mrp_service
        try:
            requirement = service.requirements.get(requirement_id)
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return RequirementOut.from_requirement(requirement)

    return app


def ensure_demo_data(service: MRPService) -> None:
    if len(service.products) > 0:
        return

    two_shift = service.create_shift_calendar(
        name="Standard Zweischicht",
        calendar_id="ZWEISCHICHT",
        shifts=[
            Shift(
                name="Frühschicht",
                start_time=time(6, 0),
                end_time=time(14, 0),
                weekdays=tuple(range(0, 5)),
            ),
            Shift(
                name="Spätschicht",
                start_time=time(14, 0),
                end_time=time(22, 0),
                weekdays=tuple(range(0, 5)),
            ),
        ],
    )
    supplier = service.create_shift_calendar(
        name="Lieferant",
        calendar_id="SUPPLIER",
        shifts=[
            Shift(
                name="Tagdienst",
                start_time=time(8, 0),
                end_time=time(16, 0),
                weekdays=tuple(range(0, 5)),
            )
        ],
    )
    service.planning_options.supplier_calendar_id = supplier.id

    frame = service.register_product("Maschinenträger", product_id="MT-100")
    sheet = service.register_product(
        "Feinblech S355", product_id="FB-355", product_type=ProductType.RAW_MATERIAL
    )
    service.add_bom_component(frame.id, sheet.id, quantity=12.5)
    service.set_product_facility(frame.id, "MAIN", days_to_ship=1, reorder_quantity=5)
    service.set_product_facility(sheet.id, "MAIN", days_to_ship=5, reorder_quantity=200)
    service.create_routing(
        frame.id,
        "Maschinenträger fertigen",
        [
            service.build_routing_task(
                "Laserzuschnitt",
                setup_time=timedelta(minutes=15),
                run_time_per_unit=timedelta(minutes=40),
                calendar_id=two_shift.id,
            ),
            service.build_routing_task(
                "Kanten",
                setup_time=timedelta(minutes=15),
                run_time_per_unit=timedelta(minutes=20),
                calendar_id=two_shift.id,
            ),
            service.build_routing_task(
                "Schweißen",
                setup_time=timedelta(minutes=30),
                run_time_per_unit=timedelta(hours=1, minutes=30),
                calendar_id=two_shift.id,
            ),
        ],
    )

    required_by = datetime.combine(date.today() + timedelta(days=14), time(14, 0))
    service.propose_order(frame.id, required_by, 3, mrp_name="DEMO")
    service.propose_order(sheet.id, required_by - timedelta(days=7), 40, mrp_name="DEMO")
    logger.info("Demo data created")
