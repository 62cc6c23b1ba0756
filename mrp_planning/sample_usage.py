"""Demonstration script for requirement planning."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from . import MRPService, ProductType, Shift


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    mrp = MRPService()

    # Kalender
    two_shift = mrp.create_shift_calendar(
        name="Standard Zweischicht",
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
    supplier_calendar = mrp.create_shift_calendar(
        name="Lieferant",
        shifts=[
            Shift(
                name="Tagdienst",
                start_time=time(8, 0),
                end_time=time(16, 0),
                weekdays=tuple(range(0, 5)),
            )
        ],
    )
    mrp.update_planning_options(
        working_hours_per_day=8.0,
        supplier_calendar_id=supplier_calendar.id,
    )

    # Stammdaten
    shaft = mrp.register_product("Antriebswelle", product_id="AW-42")
    round_stock = mrp.register_product(
        "Rundmaterial 42CrMo4", product_id="RM-42", product_type=ProductType.RAW_MATERIAL
    )
    mrp.add_bom_component(shaft.id, round_stock.id, quantity=3.2)
    mrp.set_product_facility(shaft.id, "MAIN", days_to_ship=1, reorder_quantity=10)
    mrp.set_product_facility(round_stock.id, "MAIN", days_to_ship=7, reorder_quantity=150)

    # Arbeitsplan
    mrp.create_routing(
        shaft.id,
        "Welle fertigen",
        [
            mrp.build_routing_task(
                "Zuschnitt sägen",
                setup_time=timedelta(minutes=15),
                run_time_per_unit=timedelta(minutes=6),
                calendar_id=two_shift.id,
            ),
            mrp.build_routing_task(
                "Drehen",
                setup_time=timedelta(minutes=30),
                run_time_per_unit=timedelta(minutes=25),
                calendar_id=two_shift.id,
            ),
            mrp.build_routing_task(
                "Schleifen",
                setup_time=timedelta(minutes=15),
                run_time_per_unit=timedelta(minutes=10),
                calendar_id=two_shift.id,
            ),
        ],
    )

    required_by = datetime.combine(date.today() + timedelta(days=21), time(14, 0))
    outcome = mrp.propose_order(shaft.id, required_by, 4, mrp_name="WOCHE")

    print("Fertigungsvorschlag")
    print(f" - Menge: {outcome.order.quantity:g} (Mindestlosgröße angewendet)")
    print(f" - Benötigt bis: {required_by:%d.%m.%Y %H:%M}")
    print(f" - Start laut Arbeitsplan: {outcome.calculation.requirement_start_date:%d.%m.%Y %H:%M}")
    routing = mrp.find_routing(shaft.id, required_by)
    for task in routing.tasks if routing else ():
        start = outcome.calculation.task_start_dates.get(task.id)
        if start is not None:
            print(f"   {task.name}: Start {start:%d.%m %H:%M}")

    purchase = mrp.propose_order(round_stock.id, required_by - timedelta(days=5), 12.8)
    print("\nBestellvorschlag")
    print(f" - Menge: {purchase.order.quantity:g}")
    print(f" - Bestellen bis: {purchase.calculation.requirement_start_date:%d.%m.%Y %H:%M}")

    print("\nBedarfe")
    for requirement in mrp.list_requirements():
        print(
            f" - {requirement.product_id} {requirement.requirement_type.value}: "
            f"{requirement.quantity:g} bis {requirement.required_by_date:%d.%m.%Y}"
        )


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
