import dataclasses
from datetime import date, datetime, time, timedelta

import pytest

from mrp_planning.domain import ProductType, ProposedOrder, RequirementStatus, RequirementType, Shift
from mrp_planning.errors import DependencyLookupFailed, InvalidRequest, PlanningError
from mrp_planning.repository import RecordNotFoundError
from mrp_planning.services import (
    CONTINUOUS_CALENDAR_ID,
    DEFAULT_REQUIREMENT_DESCRIPTION,
    TASK_TIME_ESTIMATORS,
    MRPService,
    estimate_task_time,
)

REQUIRED_BY = datetime(2024, 1, 10)


@pytest.fixture
def service() -> MRPService:
    return MRPService()


@pytest.fixture
def bracket(service):
    product = service.register_product("Bracket", product_id="BRACKET")
    service.create_routing(
        product.id,
        "Bracket routing",
        [
            service.build_routing_task(
                "Cut",
                setup_time=timedelta(hours=1),
                run_time_per_unit=timedelta(hours=1),
                calendar_id=CONTINUOUS_CALENDAR_ID,
            ),
            service.build_routing_task(
                "Weld",
                setup_time=timedelta(hours=1),
                run_time_per_unit=timedelta(hours=1),
                calendar_id=CONTINUOUS_CALENDAR_ID,
            ),
        ],
    )
    return product


@pytest.fixture
def bolt(service):
    return service.register_product("Bolt", product_id="BOLT", product_type=ProductType.RAW_MATERIAL)


def proposed(product, *, is_built=True, quantity=2.0, **kwargs) -> ProposedOrder:
    kwargs.setdefault("required_by_date", REQUIRED_BY)
    return ProposedOrder(
        product=product,
        facility_id="WAREHOUSE",
        manufacturing_facility_id="PLANT",
        is_built=is_built,
        quantity=quantity,
        **kwargs,
    )


def task_ids(service, product_id):
    routing = service.find_routing(product_id, REQUIRED_BY)
    return [task.id for task in routing.tasks]


def test_estimate_task_time_uses_setup_and_run_time(service):
    task = service.build_routing_task(
        "Mill", setup_time=timedelta(minutes=30), run_time_per_unit=timedelta(minutes=15)
    )
    assert estimate_task_time(task, 4) == timedelta(minutes=90)
    assert estimate_task_time(task, 0) == timedelta(minutes=30)


def test_built_product_is_scheduled_through_its_routing(service, bracket):
    cut, weld = task_ids(service, bracket.id)

    calculation = service.calculate_start_date(proposed(bracket), days_to_ship=1)

    assert calculation.ok
    # 3h weld plus 8 working hours of shipping, then 3h cut.
    assert calculation.task_start_dates[weld] == datetime(2024, 1, 9, 13)
    assert calculation.task_start_dates[cut] == datetime(2024, 1, 9, 10)
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 10)
    assert calculation.routing_id == service.find_routing(bracket.id, REQUIRED_BY).id


def test_working_hours_per_day_controls_shipping_offset(service, bracket):
    service.update_planning_options(working_hours_per_day=24)
    cut, weld = task_ids(service, bracket.id)
    calculation = service.calculate_start_date(proposed(bracket), days_to_ship=1)
    assert calculation.task_start_dates[weld] == datetime(2024, 1, 8, 21)


def test_start_date_calculation_does_not_touch_the_order(service, bracket):
    order = proposed(bracket)
    calculation = service.calculate_start_date(order, days_to_ship=0)
    assert order.requirement_start_date is None
    updated = order.with_requirement_start_date(calculation.requirement_start_date)
    assert updated.requirement_start_date == datetime(2024, 1, 9, 18)
    with pytest.raises(dataclasses.FrozenInstanceError):
        order.quantity = 10


def test_explicit_routing_is_used(service, bracket):
    other = service.register_product("Other", product_id="OTHER")
    routing = service.create_routing(
        other.id,
        "Quick",
        [service.build_routing_task("Assemble", setup_time=timedelta(hours=2), calendar_id="24H")],
    )
    calculation = service.calculate_start_date(proposed(bracket), 0, routing=routing)
    assert calculation.routing_id == routing.id
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 22)


def test_variant_uses_the_routing_of_its_virtual_product(service, bracket):
    variant = service.register_product("Bracket, red", product_id="BRACKET-RED", virtual_product_id=bracket.id)
    calculation = service.calculate_start_date(proposed(variant), days_to_ship=0)
    assert calculation.ok
    assert calculation.routing_id == service.find_routing(bracket.id, REQUIRED_BY).id
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 18)


def test_routing_outside_its_validity_window_is_not_found(service):
    product = service.register_product("Seasonal", product_id="SEASONAL")
    service.create_routing(
        product.id,
        "Summer",
        [service.build_routing_task("Paint", setup_time=timedelta(hours=1), calendar_id="24H")],
        thru_date=datetime(2024, 1, 1),
    )
    assert service.find_routing(product.id, REQUIRED_BY) is None


def test_missing_routing_is_reported_as_a_typed_failure(service):
    product = service.register_product("Orphan", product_id="ORPHAN")
    calculation = service.calculate_start_date(proposed(product), days_to_ship=2)
    assert not calculation.ok
    assert isinstance(calculation.failure, DependencyLookupFailed)
    assert calculation.failure.product_id == "ORPHAN"
    assert dict(calculation.task_start_dates) == {}
    assert calculation.requirement_start_date == REQUIRED_BY


def test_unknown_estimate_method_is_reported_as_a_typed_failure(service):
    product = service.register_product("Custom", product_id="CUSTOM")
    service.create_routing(
        product.id,
        "Custom",
        [service.build_routing_task("Special", estimate_method="does-not-exist", calendar_id="24H")],
    )
    calculation = service.calculate_start_date(proposed(product), days_to_ship=0)
    assert isinstance(calculation.failure, DependencyLookupFailed)
    assert calculation.requirement_start_date == REQUIRED_BY


def test_registered_estimator_is_used(service, monkeypatch):
    monkeypatch.setitem(TASK_TIME_ESTIMATORS, "per-batch", lambda task, quantity: timedelta(hours=5))
    product = service.register_product("Batch", product_id="BATCH")
    service.create_routing(
        product.id,
        "Batch",
        [service.build_routing_task("Cure", estimate_method="per-batch", calendar_id="24H")],
    )
    calculation = service.calculate_start_date(proposed(product, quantity=100), days_to_ship=0)
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 19)


def test_inactive_task_is_left_out(service):
    product = service.register_product("Legacy", product_id="LEGACY")
    retired = service.build_routing_task(
        "Deburr", setup_time=timedelta(hours=4), calendar_id="24H", thru_date=datetime(2023, 12, 31)
    )
    service.create_routing(
        product.id,
        "Legacy",
        [retired, service.build_routing_task("Pack", setup_time=timedelta(hours=1), calendar_id="24H")],
    )
    calculation = service.calculate_start_date(proposed(product), days_to_ship=0)
    assert retired.id not in calculation.task_start_dates
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 23)


def test_task_with_unknown_calendar_falls_back(service):
    product = service.register_product("Drifter", product_id="DRIFTER")
    task = service.build_routing_task("Drill", setup_time=timedelta(hours=2), calendar_id="GONE")
    service.create_routing(product.id, "Drifter", [task])
    calculation = service.calculate_start_date(proposed(product), days_to_ship=0)
    assert calculation.calendar_fallbacks == (task.id,)
    assert calculation.requirement_start_date == datetime(2024, 1, 9, 22)


def test_purchased_product_uses_the_supplier_calendar(service, bolt):
    supplier = service.create_shift_calendar(
        "Supplier",
        [Shift(name="Day", start_time=time(8, 0), end_time=time(16, 0), weekdays=tuple(range(5)))],
        calendar_id="SUPPLIER",
    )
    service.update_planning_options(working_hours_per_day=8, supplier_calendar_id=supplier.id)
    # Wednesday noon, two working days of eight hours back.
    order = proposed(bolt, is_built=False, required_by_date=datetime(2024, 3, 6, 12))

    calculation = service.calculate_start_date(order, days_to_ship=2)

    assert calculation.requirement_start_date == datetime(2024, 3, 4, 12)
    assert calculation.calendar_fallbacks == ()
    assert dict(calculation.task_start_dates) == {}


def test_purchased_product_uses_continuous_time_by_default(service, bolt):
    order = proposed(bolt, is_built=False, required_by_date=datetime(2024, 3, 6, 12))
    calculation = service.calculate_start_date(order, days_to_ship=2)
    assert calculation.requirement_start_date == datetime(2024, 3, 5, 20)
    assert calculation.calendar_fallbacks == ()


def test_purchased_product_without_supplier_calendar_falls_back(service, bolt):
    service.update_planning_options(working_hours_per_day=8, supplier_calendar_id=None)
    order = proposed(bolt, is_built=False, required_by_date=datetime(2024, 3, 6, 12))
    calculation = service.calculate_start_date(order, days_to_ship=2)
    assert calculation.requirement_start_date == datetime(2024, 3, 5, 20)
    assert calculation.calendar_fallbacks == ("BOLT:supplier-lead-time",)


def test_configured_fallback_calendar_is_used(service, bolt):
    service.create_shift_calendar(
        "Office",
        [Shift(name="Day", start_time=time(8, 0), end_time=time(16, 0), weekdays=tuple(range(5)))],
        calendar_id="OFFICE",
    )
    service.update_planning_options(
        working_hours_per_day=8, supplier_calendar_id=None, fallback_calendar_id="OFFICE"
    )
    order = proposed(bolt, is_built=False, required_by_date=datetime(2024, 3, 6, 12))
    calculation = service.calculate_start_date(order, days_to_ship=1)
    assert calculation.requirement_start_date == datetime(2024, 3, 5, 12)


def test_unknown_fallback_calendar_is_rejected(service, bolt):
    with pytest.raises(InvalidRequest):
        service.update_planning_options(working_hours_per_day=8, fallback_calendar_id="TYPO")
    assert service.planning_options.fallback_calendar_id is None
    outcome = service.propose_order(bolt.id, datetime(2024, 3, 6, 12), 5)
    assert outcome.requirement_id is not None


def test_fallback_calendar_without_working_time_ends_on_continuous_time(service, bolt):
    service.create_shift_calendar(
        "Wednesdays",
        [Shift(name="Day", start_time=time(8, 0), end_time=time(16, 0), weekdays=(2,))],
        calendar_id="WED",
    )
    service.update_planning_options(
        working_hours_per_day=8,
        supplier_calendar_id=None,
        fallback_calendar_id="WED",
        calendar_lookback_days=3,
    )

    # Monday 06:00, no Wednesday within three days before.
    outcome = service.propose_order(bolt.id, datetime(2024, 3, 11, 6), 5, days_to_ship=1)

    assert outcome.calculation.requirement_start_date == datetime(2024, 3, 10, 22)
    assert outcome.calculation.calendar_fallbacks == ("BOLT:supplier-lead-time",)


def test_fallback_calendar_removed_after_configuration(service, bolt):
    service.create_shift_calendar(
        "Office",
        [Shift(name="Day", start_time=time(8, 0), end_time=time(16, 0), weekdays=tuple(range(5)))],
        calendar_id="OFFICE",
    )
    service.update_planning_options(
        working_hours_per_day=8, supplier_calendar_id=None, fallback_calendar_id="OFFICE"
    )
    service.shift_calendars.remove("OFFICE")
    order = proposed(bolt, is_built=False, required_by_date=datetime(2024, 3, 6, 12))
    calculation = service.calculate_start_date(order, days_to_ship=1)
    assert calculation.requirement_start_date == datetime(2024, 3, 6, 4)


def test_negative_days_to_ship_is_invalid(service, bolt):
    with pytest.raises(InvalidRequest):
        service.calculate_start_date(proposed(bolt, is_built=False), days_to_ship=-1)


def test_quantity_is_raised_to_the_explicit_reorder_quantity(service, bolt):
    order = proposed(bolt, quantity=3)
    adjusted = service.calculate_quantity_to_supply(order, reorder_quantity=50)
    assert adjusted.quantity == 50
    assert order.quantity == 3


def test_quantity_uses_the_product_facility_reorder_quantity(service, bolt):
    service.set_product_facility(bolt.id, "WAREHOUSE", reorder_quantity=25)
    assert service.calculate_quantity_to_supply(proposed(bolt, quantity=3)).quantity == 25
    assert service.calculate_quantity_to_supply(proposed(bolt, quantity=30)).quantity == 30


def test_quantity_without_reorder_quantity_is_unchanged(service, bolt):
    order = proposed(bolt, quantity=3)
    assert service.calculate_quantity_to_supply(order) is order


def test_explosion_start_date_expands_work_in_process_only(service):
    frame = service.register_product("Frame", product_id="FRAME")
    tube = service.register_product("Tube", product_id="TUBE", product_type=ProductType.WIP)
    steel = service.register_product("Steel", product_id="STEEL", product_type=ProductType.RAW_MATERIAL)
    service.add_bom_component(frame.id, tube.id, quantity=4)
    service.add_bom_component(tube.id, steel.id, quantity=2.5)
    service.set_product_facility(frame.id, "PLANT", days_to_ship=1)
    service.set_product_facility(tube.id, "PLANT", days_to_ship=5)
    service.set_product_facility(steel.id, "PLANT", days_to_ship=2)

    start = service.explosion_start_date(frame.id, "PLANT", datetime(2024, 1, 20))

    # Steel is purchased on its own requirement, its lead time does not count.
    assert start == datetime(2024, 1, 14)


def test_purchased_component_does_not_move_the_start(service):
    frame = service.register_product("Frame", product_id="FRAME")
    sheet = service.register_product("Sheet", product_id="SHEET", product_type=ProductType.RAW_MATERIAL)
    service.add_bom_component(frame.id, sheet.id)
    service.set_product_facility(frame.id, "PLANT", days_to_ship=1)
    service.set_product_facility(sheet.id, "PLANT", days_to_ship=30)

    start = service.explosion_start_date(frame.id, "PLANT", datetime(2024, 3, 1))

    assert start == datetime(2024, 2, 29)


def test_explosion_start_date_rejects_cycles(service):
    first = service.register_product("First", product_id="FIRST", product_type=ProductType.WIP)
    second = service.register_product("Second", product_id="SECOND", product_type=ProductType.WIP)
    service.add_bom_component(first.id, second.id)
    service.add_bom_component(second.id, first.id)
    with pytest.raises(PlanningError):
        service.explosion_start_date(first.id, "PLANT", REQUIRED_BY)


def test_no_requirement_for_work_in_process(service):
    wip = service.register_product("Half-finished", product_id="WIP", product_type=ProductType.WIP)
    assert service.create_requirement(proposed(wip)) is None
    assert len(service.requirements) == 0


def test_purchase_requirement(service, bolt):
    start = datetime(2024, 1, 8, 9)
    order = proposed(bolt, is_built=False).with_requirement_start_date(start)

    requirement_id = service.create_requirement(order)

    requirement = service.requirements.get(requirement_id)
    assert requirement.requirement_type == RequirementType.PRODUCT
    assert requirement.status == RequirementStatus.PROPOSED
    assert requirement.facility_id == "WAREHOUSE"
    assert requirement.requirement_start_date == start
    assert requirement.required_by_date == REQUIRED_BY
    assert requirement.quantity == 2.0
    assert requirement.description == DEFAULT_REQUIREMENT_DESCRIPTION


def test_internal_requirement_starts_at_the_explosion_start(service, bracket):
    service.set_product_facility(bracket.id, "PLANT", days_to_ship=3)
    order = proposed(bracket).with_mrp_name("WEEKLY")

    requirement = service.requirements.get(service.create_requirement(order))

    assert requirement.requirement_type == RequirementType.INTERNAL
    assert requirement.facility_id == "PLANT"
    assert requirement.requirement_start_date == datetime(2024, 1, 7)
    assert requirement.description == "MRP_WEEKLY"


def test_propose_order_for_a_purchased_product(service, bolt):
    service.set_product_facility(bolt.id, "MAIN", days_to_ship=1, reorder_quantity=100)

    outcome = service.propose_order(bolt.id, REQUIRED_BY, 12, mrp_name="RUN1")

    assert not outcome.order.is_built
    assert outcome.order.quantity == 100
    assert outcome.order.requirement_start_date == datetime(2024, 1, 9, 16)
    requirement = service.requirements.get(outcome.requirement_id)
    assert requirement.quantity == 100
    assert requirement.facility_id == "MAIN"
    assert requirement.requirement_start_date == datetime(2024, 1, 9, 16)
    assert requirement.description == "MRP_RUN1"


def test_propose_order_for_a_built_product(service, bracket):
    outcome = service.propose_order(bracket.id, REQUIRED_BY, 2, facility_id="PLANT")
    assert outcome.order.is_built
    assert outcome.calculation.ok
    assert len(outcome.calculation.task_start_dates) == 2
    assert [r.id for r in service.list_requirements(product_id=bracket.id)] == [outcome.requirement_id]


def test_propose_order_validates_input(service, bolt):
    with pytest.raises(InvalidRequest):
        service.propose_order(bolt.id, REQUIRED_BY, -5)
    with pytest.raises(RecordNotFoundError):
        service.propose_order("NOPE", REQUIRED_BY, 5)


def test_master_data_references_are_checked(service):
    with pytest.raises(RecordNotFoundError):
        service.create_routing("NOPE", "Ghost", [])
    with pytest.raises(RecordNotFoundError):
        service.register_product("Variant", virtual_product_id="NOPE")
    with pytest.raises(ValueError):
        service.create_shift_calendar("Empty", [])


def test_non_working_day_is_persisted(service):
    calendar = service.create_shift_calendar(
        "Plant",
        [Shift(name="Day", start_time=time(7, 0), end_time=time(15, 0), weekdays=(0, 1, 2, 3, 4))],
    )
    service.add_non_working_day(calendar.id, date(2024, 12, 24))
    assert date(2024, 12, 24) in service.shift_calendars.get(calendar.id).non_working_days
