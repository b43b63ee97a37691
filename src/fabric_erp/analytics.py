"""Read-only rollups over the catalog and the ledger.

Every stock figure here comes from :func:`core_logic.current_stock`, so the
dashboard can never disagree with what order validation sees.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from . import core_logic, data_manager, log


@dataclass(frozen=True)
class LowStockItem:
    fabric_id: int
    name: str
    product_code: str
    current_stock: Decimal


@dataclass(frozen=True)
class Breakdown:
    """Movement count and summed value for one channel or payment mode."""

    label: str
    count: int
    total_value: Decimal


@dataclass(frozen=True)
class AnalyticsSummary:
    total_fabrics: int
    total_value: Decimal
    low_stock: Tuple[LowStockItem, ...]
    top_suppliers: Tuple[Tuple[str, int], ...]
    stock_by_type: Tuple[Tuple[str, Decimal], ...]
    channel_breakdown: Tuple[Breakdown, ...]
    payment_breakdown: Tuple[Breakdown, ...]


def _stock_snapshot(context: core_logic.RuntimeContext) -> List[Tuple[data_manager.FabricRow, Decimal]]:
    with context._lock:
        inventory = core_logic.calculate_inventory(context)
        return [(fabric, inventory[fabric.fabric_id]) for fabric in core_logic.list_fabric_rows(context)]


def total_fabrics(context: core_logic.RuntimeContext) -> int:
    return len(core_logic.list_fabric_rows(context))


def total_value(context: core_logic.RuntimeContext) -> Decimal:
    """Sum ``stock x cost price`` over fabrics whose stock is positive."""
    return sum(
        (stock * fabric.cost_price for fabric, stock in _stock_snapshot(context) if stock > 0),
        Decimal("0"),
    )


def low_stock(context: core_logic.RuntimeContext, threshold: Optional[Decimal] = None) -> List[LowStockItem]:
    """List fabrics whose current stock is below ``threshold``.

    The threshold defaults to ``LowStockThreshold`` from the configuration.
    """
    limit = threshold if threshold is not None else context.settings.low_stock_threshold
    items = [
        LowStockItem(
            fabric_id=fabric.fabric_id,
            name=fabric.name,
            product_code=fabric.product_code,
            current_stock=stock,
        )
        for fabric, stock in _stock_snapshot(context)
        if stock < limit
    ]
    return sorted(items, key=lambda item: (item.current_stock, item.fabric_id))


def top_suppliers(context: core_logic.RuntimeContext, limit: int = 5) -> List[Tuple[str, int]]:
    """Rank suppliers by the number of catalog entries they provide."""
    counts: Dict[str, int] = {}
    for fabric in core_logic.list_fabric_rows(context):
        if fabric.supplier:
            counts[fabric.supplier] = counts.get(fabric.supplier, 0) + 1
    ranked = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
    return ranked[:limit]


def stock_by_type(context: core_logic.RuntimeContext) -> List[Tuple[str, Decimal]]:
    """Sum current stock per fabric type, largest first."""
    totals: Dict[str, Decimal] = {}
    for fabric, stock in _stock_snapshot(context):
        totals[fabric.fabric_type] = totals.get(fabric.fabric_type, Decimal("0")) + stock
    return sorted(totals.items(), key=lambda pair: (-pair[1], pair[0]))


def _breakdown(
    context: core_logic.RuntimeContext,
    key: Callable[[data_manager.MovementRow], Optional[str]],
) -> List[Breakdown]:
    counts: Dict[str, int] = {}
    values: Dict[str, Decimal] = {}
    for movement in core_logic.list_movements(context):
        label = key(movement)
        if label is None:
            continue
        counts[label] = counts.get(label, 0) + 1
        values[label] = values.get(label, Decimal("0")) + movement.total_value
    rows = [Breakdown(label=label, count=counts[label], total_value=values[label]) for label in counts]
    return sorted(rows, key=lambda row: (-row.total_value, row.label))


def channel_breakdown(context: core_logic.RuntimeContext) -> List[Breakdown]:
    """Count and value of ledger entries per source channel."""
    return _breakdown(context, lambda movement: movement.source)


def payment_breakdown(context: core_logic.RuntimeContext) -> List[Breakdown]:
    """Count and value of ledger entries per payment mode."""
    return _breakdown(context, lambda movement: movement.payment_mode)


def summarize(context: core_logic.RuntimeContext, *, low_stock_threshold: Optional[Decimal] = None) -> AnalyticsSummary:
    """Bundle every rollup into one dashboard snapshot."""
    summary = AnalyticsSummary(
        total_fabrics=total_fabrics(context),
        total_value=total_value(context),
        low_stock=tuple(low_stock(context, low_stock_threshold)),
        top_suppliers=tuple(top_suppliers(context)),
        stock_by_type=tuple(stock_by_type(context)),
        channel_breakdown=tuple(channel_breakdown(context)),
        payment_breakdown=tuple(payment_breakdown(context)),
    )
    log.debug(
        "Calculated analytics: fabrics=%d value=%s low_stock=%d",
        summary.total_fabrics,
        summary.total_value,
        len(summary.low_stock),
    )
    return summary
