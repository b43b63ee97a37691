"""Integration tests describing end-to-end Fabric ERP workflows.

These scenarios drive the engine through a workbook on disk, persisting and
reloading between steps the way the command-line front-end does.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from fabric_erp import analytics, constants, core_logic, orders, purchasing


MOMENT = datetime(2024, 5, 17, 10, 30, tzinfo=UTC)


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_fabric_lifecycle_survives_persistence(runtime_context):
    """Catalog, purchase, order and sale data should round-trip through disk."""

    context = runtime_context
    fabric = core_logic.create_fabric(
        context,
        core_logic.FabricCommand(
            name="Ikat Cotton",
            opening_quantity=Decimal("5"),
            cost_price=Decimal("120.00"),
            selling_price=Decimal("200.00"),
            product_code="IKT-01",
            timestamp=MOMENT,
        ),
    )
    context = _reload(context)

    purchasing.commit_purchase(
        context,
        purchasing.PurchaseCommand(
            supplier_name="Pochampally Looms",
            lines=[
                purchasing.PurchaseLine(fabric_id=fabric.fabric_id, quantity=Decimal("20"), unit_price=Decimal("110.00")),
                purchasing.PurchaseLine(name="Mangalagiri", quantity=Decimal("8"), unit_price=Decimal("90.00")),
            ],
            order_number="PO-1",
            status=constants.PurchaseStatus.RECEIVED,
            timestamp=MOMENT + timedelta(hours=1),
        ),
    )
    context = _reload(context)

    orders.commit_order(
        context,
        orders.OrderCommand(
            lines=[orders.OrderLine(fabric.fabric_id, Decimal("6"), Decimal("200.00"))],
            reference="Order-A",
            timestamp=MOMENT + timedelta(hours=2),
        ),
    )
    sale = orders.commit_sale(
        context,
        orders.SaleCommand(
            customer_name="Meera",
            lines=[orders.OrderLine(fabric.fabric_id, Decimal("4"), Decimal("210.00"))],
            timestamp=MOMENT + timedelta(hours=3),
        ),
    )
    context = _reload(context)

    assert core_logic.current_stock(context, fabric.fabric_id) == Decimal("15")
    assert core_logic.get_fabric(context, fabric.fabric_id).cost_price == Decimal("110")
    new_fabric = core_logic.find_by_code_or_name(context, None, "Mangalagiri")
    assert new_fabric is not None
    assert core_logic.current_stock(context, new_fabric.fabric_id) == Decimal("8")

    references = [group.reference for group in core_logic.group_by_reference(context)]
    assert references == ["PO-1", "Order-A", sale.reference]
    assert [r.invoice_number for r in orders.list_sales(context)] == ["INV-20240517-001"]
    assert len(purchasing.list_purchases(context)) == 2

    # newest ledger entry of the fabric is the sale
    (row,) = [r for r in core_logic.list_fabrics(context) if r.fabric.fabric_id == fabric.fabric_id]
    assert row.latest_source == "Sales"
    assert row.latest_payment_mode == "Cash"


def test_failed_batch_is_not_persisted(runtime_context):
    """A rejected order leaves nothing behind to be saved."""

    context = runtime_context
    first = core_logic.create_fabric(context, core_logic.FabricCommand(name="A", opening_quantity=Decimal("2")))
    second = core_logic.create_fabric(context, core_logic.FabricCommand(name="B", opening_quantity=Decimal("2")))

    with pytest.raises(core_logic.InsufficientStockError):
        orders.commit_order(
            context,
            orders.OrderCommand(
                lines=[
                    orders.OrderLine(first.fabric_id, Decimal("1"), Decimal("1")),
                    orders.OrderLine(second.fabric_id, Decimal("3"), Decimal("1")),
                ]
            ),
        )
    context = _reload(context)

    assert core_logic.list_movements(context) == []
    assert core_logic.calculate_inventory(context) == {first.fabric_id: Decimal("2"), second.fabric_id: Decimal("2")}


def test_ids_stay_unique_after_rollback_and_reload(runtime_context):
    """Sequence counters only move forward, even across failed batches."""

    context = runtime_context
    fabric = core_logic.create_fabric(context, core_logic.FabricCommand(name="A", opening_quantity=Decimal("5")))
    core_logic.append_movement(
        context,
        core_logic.MovementCommand(fabric.fabric_id, constants.Direction.OUT, Decimal("1"), Decimal("1")),
    )
    with pytest.raises(core_logic.InsufficientStockError):
        orders.commit_order(
            context,
            orders.OrderCommand(
                lines=[
                    orders.OrderLine(fabric.fabric_id, Decimal("1"), Decimal("1")),
                    orders.OrderLine(fabric.fabric_id, Decimal("9"), Decimal("1")),
                ]
            ),
        )
    context = _reload(context)

    later = core_logic.append_movement(
        context,
        core_logic.MovementCommand(fabric.fabric_id, constants.Direction.IN, Decimal("1"), Decimal("1")),
    )
    ids = [m.movement_id for m in core_logic.list_movements(context)]
    assert len(ids) == len(set(ids)) == 2
    assert later.movement_id == max(ids)


def test_delete_fabric_persists_cascade(runtime_context):
    """Deleting a fabric removes its ledger rows from the saved workbook."""

    context = runtime_context
    keep = core_logic.create_fabric(context, core_logic.FabricCommand(name="Keep", opening_quantity=Decimal("1")))
    drop = core_logic.create_fabric(context, core_logic.FabricCommand(name="Drop", opening_quantity=Decimal("1")))
    for fabric in (keep, drop):
        core_logic.append_movement(
            context,
            core_logic.MovementCommand(fabric.fabric_id, "in", Decimal("2"), Decimal("3")),
        )

    core_logic.delete_fabric(context, drop.fabric_id)
    context = _reload(context)

    assert [f.fabric_id for f in core_logic.list_fabric_rows(context)] == [keep.fabric_id]
    assert {m.fabric_id for m in core_logic.list_movements(context)} == {keep.fabric_id}
    assert analytics.total_fabrics(context) == 1


def test_low_stock_threshold_comes_from_config(config_factory):
    """The configured threshold drives the default low-stock report."""

    bundle = config_factory(low_stock_threshold="3")
    context = core_logic.load_runtime_context(bundle.config_path)
    core_logic.create_fabric(context, core_logic.FabricCommand(name="Scarce", opening_quantity=Decimal("2")))
    core_logic.create_fabric(context, core_logic.FabricCommand(name="Plenty", opening_quantity=Decimal("3")))

    assert [item.name for item in analytics.low_stock(context)] == ["Scarce"]
