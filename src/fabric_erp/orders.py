"""Outbound batch processing: e-commerce orders and point-of-sale sales.

Both workflows validate every line before writing anything and then append
one ``out`` movement per line under a shared reference, inside a single
:func:`core_logic.transaction`. A sale additionally writes a receipt row per
line and takes its reference from the day-scoped invoice counter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import Direction, MovementSource


ORDER_CUSTOMER_NAME = "Online Customer"


@dataclass(frozen=True)
class OrderLine:
    """One requested fabric quantity at an agreed unit price."""

    fabric_id: int
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True)
class OrderCommand:
    """User intent for an e-commerce order.

    Customer details travel with the command for logging only; the ledger
    has no customer columns.
    """

    lines: Sequence[OrderLine]
    reference: Optional[str] = None
    source: Optional[str] = None
    payment_mode: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SalesEntry:
    """One line of the combined sales listing.

    ``kind`` is ``"receipt"`` for counter sales and ``"order"`` for
    e-commerce order lines read from the ledger.
    """

    kind: str
    fabric_id: int
    fabric_name: Optional[str]
    customer_name: str
    quantity: Decimal
    unit: Optional[str]
    unit_price: Decimal
    total_amount: Decimal
    sale_date: str
    invoice_number: Optional[str]
    payment_method: Optional[str]
    payment_status: Optional[str]
    status: str
    notes: Optional[str]


@dataclass(frozen=True)
class SaleCommand:
    """User intent for a counter sale that issues an invoice."""

    customer_name: str
    lines: Sequence[OrderLine]
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    payment_method: Optional[str] = None
    payment_status: str = "Paid"
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    status: str = "completed"
    timestamp: Optional[datetime] = None


def validate_outbound_lines(context: core_logic.RuntimeContext, lines: Sequence[OrderLine]) -> Dict[int, Decimal]:
    """Check every line of an outbound batch before anything is written.

    Quantities requested for the same fabric on several lines are summed and
    checked together against its current stock.

    Returns:
        dict[int, Decimal]: Total requested quantity per fabric.

    Raises:
        EmptyBatchError: If ``lines`` is empty.
        ValidationError: If a quantity is not positive or a price is negative.
        NotFoundError: If a line references an unknown fabric.
        InsufficientStockError: If any fabric lacks the requested stock.
    """
    if not lines:
        log.error("Rejected outbound batch without line items")
        raise core_logic.EmptyBatchError()

    requested: Dict[int, Decimal] = {}
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)
        core_logic.require_nonnegative_money(line.unit_price, field_name="unit_price")
        core_logic.get_fabric(context, line.fabric_id)
        requested[line.fabric_id] = requested.get(line.fabric_id, Decimal("0")) + line.quantity

    for fabric_id, quantity in requested.items():
        core_logic.require_available_stock(context, fabric_id, quantity)
    return requested


def _append_out_movements(
    context: core_logic.RuntimeContext,
    lines: Sequence[OrderLine],
    *,
    reference: str,
    source: str,
    payment_mode: str,
    timestamp: datetime,
) -> List[data_manager.MovementRow]:
    return [
        core_logic.append_movement(
            context,
            core_logic.MovementCommand(
                fabric_id=line.fabric_id,
                direction=Direction.OUT,
                quantity=line.quantity,
                unit_price=line.unit_price,
                reference=reference,
                source=source,
                payment_mode=payment_mode,
                timestamp=timestamp,
            ),
        )
        for line in lines
    ]


def _batch_result(reference: str, movements: Sequence[data_manager.MovementRow]) -> core_logic.BatchResult:
    return core_logic.BatchResult(
        reference=reference,
        movements=tuple(movements),
        total_quantity=sum((m.quantity for m in movements), Decimal("0")),
        total_amount=sum((m.total_value for m in movements), Decimal("0")),
    )


def commit_order(context: core_logic.RuntimeContext, command: OrderCommand) -> core_logic.BatchResult:
    """Validate and commit an e-commerce order as one all-or-nothing batch.

    The shared reference defaults to ``Order-<epoch millis>``; source and
    payment mode default to the configured order channel values.

    Raises:
        EmptyBatchError, ValidationError, NotFoundError, InsufficientStockError:
            The batch is rejected and no movement is written.
    """
    timestamp = core_logic.resolve_timestamp(command.timestamp)
    reference = command.reference or f"Order-{core_logic.epoch_millis(timestamp)}"

    with core_logic.transaction(context):
        validate_outbound_lines(context, command.lines)
        movements = _append_out_movements(
            context,
            command.lines,
            reference=reference,
            source=command.source or context.settings.order_source,
            payment_mode=command.payment_mode or context.settings.order_payment_mode,
            timestamp=timestamp,
        )

    result = _batch_result(reference, movements)
    log.info(
        "Committed order '%s' for '%s' with %d lines (quantity=%s, amount=%s)",
        reference,
        command.customer_name or "-",
        len(movements),
        result.total_quantity,
        result.total_amount,
    )
    if command.customer_email or command.customer_phone or command.delivery_address:
        log.debug(
            "Order '%s' contact: email=%s phone=%s address=%s",
            reference,
            command.customer_email,
            command.customer_phone,
            command.delivery_address,
        )
    return result


def list_sales(context: core_logic.RuntimeContext) -> List[data_manager.SaleRow]:
    """Return sale receipts, newest first."""
    sales = core_logic.cached_rows(context, "sales", data_manager.iter_sales)
    return sorted(sales, key=lambda s: (core_logic.parse_timestamp(s.sale_date), s.sale_id), reverse=True)


def _receipt_entry(sale: data_manager.SaleRow, names: Dict[int, str]) -> SalesEntry:
    return SalesEntry(
        kind="receipt",
        fabric_id=sale.fabric_id,
        fabric_name=names.get(sale.fabric_id),
        customer_name=sale.customer_name,
        quantity=sale.quantity,
        unit=sale.unit,
        unit_price=sale.unit_price,
        total_amount=sale.total_amount,
        sale_date=sale.sale_date,
        invoice_number=sale.invoice_number,
        payment_method=sale.payment_method,
        payment_status=sale.payment_status,
        status=sale.status,
        notes=sale.notes,
    )


def _order_entry(movement: data_manager.MovementRow, fabric: Optional[data_manager.FabricRow]) -> SalesEntry:
    return SalesEntry(
        kind="order",
        fabric_id=movement.fabric_id,
        fabric_name=fabric.name if fabric else None,
        customer_name=ORDER_CUSTOMER_NAME,
        quantity=movement.quantity,
        unit=fabric.unit if fabric else None,
        unit_price=movement.unit_price,
        total_amount=movement.total_value,
        sale_date=movement.movement_date,
        invoice_number=movement.reference,
        payment_method=movement.payment_mode,
        payment_status="Paid",
        status="completed",
        notes=movement.source,
    )


def list_sales_activity(context: core_logic.RuntimeContext) -> List[SalesEntry]:
    """Return counter sales and e-commerce order lines together, newest first.

    Order lines come straight from the ledger: every ``out`` movement stamped
    with the configured order channel appears with its reference standing in
    for the invoice number. On equal timestamps receipts sort before orders.
    """
    fabrics = {fabric.fabric_id: fabric for fabric in core_logic.list_fabric_rows(context)}
    names = {fabric_id: fabric.name for fabric_id, fabric in fabrics.items()}
    entries = [_receipt_entry(sale, names) for sale in list_sales(context)]
    channel = context.settings.order_source
    entries.extend(
        _order_entry(movement, fabrics.get(movement.fabric_id))
        for movement in core_logic.list_movements(context)
        if movement.direction == Direction.OUT.value and movement.source == channel
    )
    # stable sort keeps receipts ahead of orders on equal timestamps
    return sorted(entries, key=lambda entry: core_logic.parse_timestamp(entry.sale_date), reverse=True)


def next_invoice_number(context: core_logic.RuntimeContext, when: Optional[datetime] = None) -> str:
    """Return the next ``INV-YYYYMMDD-NNN`` number for the UTC day of ``when``.

    ``NNN`` is one more than the number of distinct invoices already issued
    that day. Should that number be taken anyway, the sequence moves on to
    the next free one.
    """
    day = core_logic.resolve_timestamp(when).astimezone(UTC).date()
    sales = core_logic.cached_rows(context, "sales", data_manager.iter_sales)
    issued_today = {
        sale.invoice_number
        for sale in sales
        if core_logic.parse_timestamp(sale.sale_date).astimezone(UTC).date() == day
    }
    issued = {sale.invoice_number for sale in sales}

    sequence = len(issued_today) + 1
    invoice = f"INV-{day:%Y%m%d}-{sequence:03d}"
    while invoice in issued:
        sequence += 1
        invoice = f"INV-{day:%Y%m%d}-{sequence:03d}"
    return invoice


def commit_sale(context: core_logic.RuntimeContext, command: SaleCommand) -> core_logic.BatchResult:
    """Validate and commit a counter sale as one all-or-nothing batch.

    Each line produces an ``out`` movement with source ``Sales`` and a sale
    receipt; all of them share the invoice number allocated for the day.

    Raises:
        ValidationError: If the customer name is missing or a line is invalid.
        EmptyBatchError, NotFoundError, InsufficientStockError: The batch is
            rejected and nothing is written.
    """
    customer_name = core_logic.require_text(command.customer_name, field_name="customer_name")
    timestamp = core_logic.resolve_timestamp(command.timestamp)
    payment_method = command.payment_method or context.settings.sale_payment_mode

    with core_logic.transaction(context) as journal:
        validate_outbound_lines(context, command.lines)
        invoice = next_invoice_number(context, timestamp)
        movements = _append_out_movements(
            context,
            command.lines,
            reference=invoice,
            source=MovementSource.SALES.value,
            payment_mode=payment_method,
            timestamp=timestamp,
        )
        for line in command.lines:
            fabric = core_logic.get_fabric(context, line.fabric_id)
            sale = data_manager.SaleRow(
                sale_id=data_manager.next_sequence(context.workbook, "SaleID"),
                fabric_id=line.fabric_id,
                customer_name=customer_name,
                customer_email=command.customer_email,
                customer_phone=command.customer_phone,
                quantity=line.quantity,
                unit=fabric.unit,
                unit_price=line.unit_price,
                total_amount=line.quantity * line.unit_price,
                sale_date=timestamp.isoformat(),
                invoice_number=invoice,
                payment_method=payment_method,
                payment_status=command.payment_status,
                delivery_address=command.delivery_address,
                notes=command.notes,
                status=command.status,
            )
            data_manager.append_sale(context.workbook, sale, journal=journal)
        core_logic.invalidate_cache(context, "sales")

    result = _batch_result(invoice, movements)
    log.info(
        "Committed sale '%s' for '%s' with %d lines (amount=%s)",
        invoice,
        customer_name,
        len(movements),
        result.total_amount,
    )
    return result
