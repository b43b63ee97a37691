"""Tests for outbound batches: e-commerce orders and counter sales."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fabric_erp import core_logic, orders


MOMENT = datetime(2024, 5, 17, 10, 30, tzinfo=UTC)


def _line(fabric_id: int, quantity: str, price: str = "150.00") -> orders.OrderLine:
    return orders.OrderLine(fabric_id=fabric_id, quantity=Decimal(quantity), unit_price=Decimal(price))


def _sale(lines, *, when=MOMENT, customer="Asha") -> orders.SaleCommand:
    return orders.SaleCommand(customer_name=customer, lines=lines, timestamp=when)


@pytest.fixture
def stocked(fabric_factory):
    """Two fabrics with ten and four units on hand."""

    return fabric_factory("Cotton", opening="10"), fabric_factory("Silk", opening="4")


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def test_commit_order_writes_one_out_movement_per_line(context, stocked):
    """Each line becomes an out movement sharing the order reference."""

    cotton, silk = stocked
    result = orders.commit_order(
        context,
        orders.OrderCommand(lines=[_line(cotton.fabric_id, "3"), _line(silk.fabric_id, "1", "400.00")], timestamp=MOMENT),
    )

    assert result.reference == f"Order-{core_logic.epoch_millis(MOMENT)}"
    assert [m.direction for m in result.movements] == ["out", "out"]
    assert {m.reference for m in result.movements} == {result.reference}
    assert {m.source for m in result.movements} == {"E-commerce"}
    assert {m.payment_mode for m in result.movements} == {"UPI"}
    assert result.total_quantity == Decimal("4")
    assert result.total_amount == Decimal("850.00")
    assert core_logic.current_stock(context, cotton.fabric_id) == Decimal("7")
    assert core_logic.current_stock(context, silk.fabric_id) == Decimal("3")


def test_commit_order_keeps_supplied_reference_and_channel(context, stocked):
    """Caller-supplied reference, source and payment mode win over defaults."""

    cotton, _ = stocked
    result = orders.commit_order(
        context,
        orders.OrderCommand(
            lines=[_line(cotton.fabric_id, "1")],
            reference="WEB-77",
            source="Marketplace",
            payment_mode="Card",
            timestamp=MOMENT,
        ),
    )

    (group,) = core_logic.group_by_reference(context, "WEB-77")
    assert group.movements == result.movements
    assert result.movements[0].source == "Marketplace"
    assert result.movements[0].payment_mode == "Card"


def test_commit_order_is_all_or_nothing(context, stocked):
    """One short line should reject the whole order without writing anything."""

    cotton, silk = stocked
    with pytest.raises(core_logic.InsufficientStockError) as excinfo:
        orders.commit_order(
            context,
            orders.OrderCommand(lines=[_line(cotton.fabric_id, "5"), _line(silk.fabric_id, "6")], timestamp=MOMENT),
        )

    assert excinfo.value.fabric_id == silk.fabric_id
    assert core_logic.list_movements(context) == []
    assert core_logic.current_stock(context, cotton.fabric_id) == Decimal("10")


def test_commit_order_sums_repeated_fabric_lines(context, stocked):
    """Lines for the same fabric are checked against stock together."""

    _, silk = stocked
    with pytest.raises(core_logic.InsufficientStockError) as excinfo:
        orders.commit_order(
            context,
            orders.OrderCommand(lines=[_line(silk.fabric_id, "3"), _line(silk.fabric_id, "2")], timestamp=MOMENT),
        )

    assert excinfo.value.requested == Decimal("5")
    assert core_logic.current_stock(context, silk.fabric_id) == Decimal("4")


def test_commit_order_exact_stock_reaches_zero(context, stocked):
    """Ordering exactly the available stock is allowed."""

    _, silk = stocked
    orders.commit_order(context, orders.OrderCommand(lines=[_line(silk.fabric_id, "4")], timestamp=MOMENT))
    assert core_logic.current_stock(context, silk.fabric_id) == Decimal("0")


def test_commit_order_rejects_empty_batch(context):
    """Orders need at least one line."""

    with pytest.raises(core_logic.EmptyBatchError):
        orders.commit_order(context, orders.OrderCommand(lines=[]))


def test_commit_order_unknown_fabric_raises_not_found(context, stocked):
    """Lines referencing unknown fabrics reject the batch."""

    cotton, _ = stocked
    with pytest.raises(core_logic.NotFoundError):
        orders.commit_order(
            context,
            orders.OrderCommand(lines=[_line(cotton.fabric_id, "1"), _line(999, "1")], timestamp=MOMENT),
        )
    assert core_logic.list_movements(context) == []


@pytest.mark.parametrize(
    "quantity, price",
    [("0", "10.00"), ("-2", "10.00"), ("1", "-1.00"), ("NaN", "10.00"), ("Infinity", "10.00"), ("1", "NaN")],
)
def test_commit_order_validates_line_values(context, stocked, quantity, price):
    """Non-positive or non-finite quantities and bad prices are validation errors."""

    cotton, _ = stocked
    with pytest.raises(core_logic.ValidationError):
        orders.commit_order(context, orders.OrderCommand(lines=[_line(cotton.fabric_id, quantity, price)]))


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_commit_sale_writes_receipts_and_movements(context, stocked):
    """A sale writes one receipt and one out movement per line under one invoice."""

    cotton, silk = stocked
    result = orders.commit_sale(context, _sale([_line(cotton.fabric_id, "2"), _line(silk.fabric_id, "1", "400.00")]))

    assert result.reference == "INV-20240517-001"
    assert {m.source for m in result.movements} == {"Sales"}
    assert {m.payment_mode for m in result.movements} == {"Cash"}

    receipts = orders.list_sales(context)
    assert len(receipts) == 2
    assert {r.invoice_number for r in receipts} == {"INV-20240517-001"}
    assert {r.customer_name for r in receipts} == {"Asha"}
    assert {r.unit for r in receipts} == {"mtr"}
    assert sum((r.total_amount for r in receipts), Decimal("0")) == Decimal("700.00")


def test_invoice_numbers_count_per_day(context, stocked):
    """The invoice sequence advances within a day and restarts the next day."""

    cotton, _ = stocked
    first = orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")]))
    second = orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], when=MOMENT + timedelta(hours=5)))
    next_day = orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], when=MOMENT + timedelta(days=1)))

    assert [first.reference, second.reference, next_day.reference] == [
        "INV-20240517-001",
        "INV-20240517-002",
        "INV-20240518-001",
    ]


def test_next_invoice_number_uses_utc_day(context):
    """An early-morning sale in UTC+05:30 still belongs to the previous UTC day."""

    when = datetime(2024, 5, 18, 4, 0, tzinfo=timezone(timedelta(hours=5, minutes=30)))
    assert orders.next_invoice_number(context, when) == "INV-20240517-001"


def test_commit_sale_requires_customer_name(context, stocked):
    """A sale without a customer is rejected before anything is written."""

    cotton, _ = stocked
    with pytest.raises(core_logic.ValidationError) as excinfo:
        orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], customer=" "))
    assert excinfo.value.field == "customer_name"
    assert orders.list_sales(context) == []


def test_commit_sale_rolls_back_on_shortage(context, stocked):
    """Insufficient stock on any line leaves no receipts and no movements."""

    cotton, silk = stocked
    with pytest.raises(core_logic.InsufficientStockError):
        orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1"), _line(silk.fabric_id, "9")]))

    assert orders.list_sales(context) == []
    assert core_logic.list_movements(context) == []
    assert orders.next_invoice_number(context, MOMENT) == "INV-20240517-001"


def test_list_sales_newest_first(context, stocked):
    """Receipts are listed newest first."""

    cotton, _ = stocked
    orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], customer="Early"))
    orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], customer="Late", when=MOMENT + timedelta(hours=1)))

    assert [r.customer_name for r in orders.list_sales(context)] == ["Late", "Early"]


def test_list_sales_activity_merges_orders_with_receipts(context, stocked):
    """E-commerce order lines appear beside counter sales, newest first."""

    cotton, silk = stocked
    orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")], customer="Asha"))
    orders.commit_order(
        context,
        orders.OrderCommand(
            lines=[_line(silk.fabric_id, "2", "90.00")],
            reference="WEB-7",
            customer_name="Devi",
            timestamp=MOMENT + timedelta(hours=1),
        ),
    )
    core_logic.append_movement(
        context,
        core_logic.MovementCommand(cotton.fabric_id, "out", Decimal("1"), Decimal("1"), timestamp=MOMENT),
    )

    entries = orders.list_sales_activity(context)

    assert [(e.kind, e.invoice_number) for e in entries] == [("order", "WEB-7"), ("receipt", "INV-20240517-001")]
    order = entries[0]
    assert order.customer_name == orders.ORDER_CUSTOMER_NAME
    assert order.fabric_name == "Silk"
    assert order.total_amount == Decimal("180.00")
    assert order.payment_method == "UPI"
    assert order.notes == "E-commerce"


def test_list_sales_activity_puts_receipts_first_on_equal_timestamps(context, stocked):
    cotton, _ = stocked
    orders.commit_order(context, orders.OrderCommand(lines=[_line(cotton.fabric_id, "1")], timestamp=MOMENT))
    orders.commit_sale(context, _sale([_line(cotton.fabric_id, "1")]))

    assert [e.kind for e in orders.list_sales_activity(context)] == ["receipt", "order"]
