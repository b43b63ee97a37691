"""Tests for the read-only dashboard rollups."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from fabric_erp import analytics, core_logic, orders


MOMENT = datetime(2024, 5, 17, 10, 30, tzinfo=UTC)


@pytest.fixture
def catalog(context, fabric_factory):
    """Three fabrics across two types and suppliers, with some traffic."""

    cotton = fabric_factory("Cotton", opening="20", fabric_type="Cotton", supplier="Weavers", cost_price=Decimal("50.00"))
    silk = fabric_factory("Silk", opening="5", fabric_type="Silk", supplier="Weavers", cost_price=Decimal("200.00"))
    linen = fabric_factory("Linen", opening="0", fabric_type="Cotton", supplier="Looms", cost_price=Decimal("80.00"))

    orders.commit_order(
        context,
        orders.OrderCommand(
            lines=[orders.OrderLine(cotton.fabric_id, Decimal("4"), Decimal("100.00"))],
            timestamp=MOMENT,
        ),
    )
    orders.commit_sale(
        context,
        orders.SaleCommand(
            customer_name="Ravi",
            lines=[orders.OrderLine(silk.fabric_id, Decimal("1"), Decimal("300.00"))],
            payment_method="Card",
            timestamp=MOMENT,
        ),
    )
    return cotton, silk, linen


def test_total_value_uses_positive_stock_at_cost(context, catalog):
    """Value is stock times cost price, summed over fabrics with stock."""

    # cotton 16 x 50 + silk 4 x 200; linen has no stock
    assert analytics.total_value(context) == Decimal("1600.00")
    assert analytics.total_fabrics(context) == 3


def test_low_stock_uses_configured_threshold(context, catalog):
    """Fabrics under the threshold are listed, lowest stock first."""

    _, silk, linen = catalog
    items = analytics.low_stock(context)
    assert [item.fabric_id for item in items] == [linen.fabric_id, silk.fabric_id]
    assert items[1].current_stock == Decimal("4")


def test_low_stock_accepts_explicit_threshold(context, catalog):
    """An explicit threshold overrides the configured one."""

    assert analytics.low_stock(context, Decimal("1")) == [
        analytics.LowStockItem(catalog[2].fabric_id, "Linen", catalog[2].product_code, Decimal("0"))
    ]


def test_low_stock_agrees_with_current_stock(context, catalog):
    """Dashboard figures come from the same projector as order validation."""

    for item in analytics.low_stock(context, Decimal("1000")):
        assert item.current_stock == core_logic.current_stock(context, item.fabric_id)


def test_top_suppliers_and_stock_by_type(context, catalog):
    """Suppliers rank by catalog entries; stock sums per fabric type."""

    assert analytics.top_suppliers(context) == [("Weavers", 2), ("Looms", 1)]
    assert analytics.stock_by_type(context) == [("Cotton", Decimal("16")), ("Silk", Decimal("4"))]


def test_channel_and_payment_breakdowns(context, catalog):
    """Movements are counted and valued per channel and per payment mode."""

    channels = {row.label: (row.count, row.total_value) for row in analytics.channel_breakdown(context)}
    payments = {row.label: (row.count, row.total_value) for row in analytics.payment_breakdown(context)}

    assert channels == {"E-commerce": (1, Decimal("400.00")), "Sales": (1, Decimal("300.00"))}
    assert payments == {"UPI": (1, Decimal("400.00")), "Card": (1, Decimal("300.00"))}


def test_summarize_bundles_every_rollup(context, catalog):
    """summarize should expose each rollup in one snapshot."""

    summary = analytics.summarize(context, low_stock_threshold=Decimal("5"))

    assert summary.total_fabrics == 3
    assert summary.total_value == Decimal("1600.00")
    assert [item.name for item in summary.low_stock] == ["Linen", "Silk"]
    assert summary.channel_breakdown[0].label == "E-commerce"


def test_analytics_on_empty_store(context):
    """An empty store reports zeros rather than failing."""

    summary = analytics.summarize(context)
    assert summary.total_fabrics == 0
    assert summary.total_value == Decimal("0")
    assert summary.low_stock == ()
    assert summary.top_suppliers == ()
