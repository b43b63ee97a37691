"""Inbound batch processing: purchase orders from suppliers.

A purchase may touch the catalog as well as the ledger. Lines naming an
existing fabric overwrite its prices; lines describing an unknown item create
it inline. Receipts are always written, ``in`` movements only once the batch
is ``received``. Everything happens inside one :func:`core_logic.transaction`,
so a failing line undoes the catalog changes of the lines before it too.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Union

from . import core_logic, data_manager, log
from .constants import Direction, MovementSource, PurchaseStatus


@dataclass(frozen=True)
class PurchaseLine:
    """One purchased quantity, identified by fabric id or by description."""

    quantity: Decimal
    unit_price: Decimal
    fabric_id: Optional[int] = None
    name: Optional[str] = None
    product_code: Optional[str] = None
    mrp: Decimal = Decimal("0.00")
    selling_price: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for a purchase order."""

    supplier_name: str
    lines: Sequence[PurchaseLine]
    order_number: Optional[str] = None
    status: Union[PurchaseStatus, str] = PurchaseStatus.ORDERED
    payment_terms: Optional[str] = None
    timestamp: Optional[datetime] = None


def coerce_status(value: Union[PurchaseStatus, str]) -> PurchaseStatus:
    if isinstance(value, PurchaseStatus):
        return value
    try:
        return PurchaseStatus(value)
    except ValueError as exc:
        raise core_logic.ValidationError("status", f"must be one of {[s.value for s in PurchaseStatus]}") from exc


def resolve_line(
    context: core_logic.RuntimeContext,
    line: PurchaseLine,
    *,
    line_number: int,
    supplier_name: str,
    order_number: str,
    timestamp: datetime,
) -> Tuple[data_manager.FabricRow, bool]:
    """Map a purchase line onto a catalog entry, creating one if needed.

    Returns:
        tuple[FabricRow, bool]: The resolved fabric and whether it was
            created by this call.

    Raises:
        UnresolvableLineError: If the line names an unknown fabric id or
            carries neither a fabric id nor a name.
    """
    if line.fabric_id is not None:
        try:
            core_logic.get_fabric(context, line.fabric_id)
        except core_logic.NotFoundError as exc:
            raise core_logic.UnresolvableLineError(f"fabric id {line.fabric_id}", line_number=line_number) from exc
        # Purchase defines the new price, even when it is lower.
        fabric = core_logic.update_fabric(
            context,
            line.fabric_id,
            cost_price=line.unit_price,
            mrp=line.mrp,
            selling_price=line.selling_price,
        )
        return fabric, False

    if not line.name or not line.name.strip():
        log.error("Purchase line %d has neither a fabric id nor a name", line_number)
        raise core_logic.UnresolvableLineError(line.product_code or "", line_number=line_number)

    code = line.product_code or core_logic.generate_product_code(context, timestamp)
    existing = core_logic.find_by_code_or_name(context, code, line.name)
    if existing is not None:
        log.debug("Purchase line %d matched existing fabric %s", line_number, existing.fabric_id)
        return existing, False

    fabric = core_logic.create_fabric(
        context,
        core_logic.FabricCommand(
            name=line.name,
            fabric_type="General",
            opening_quantity=Decimal("0"),
            cost_price=line.unit_price,
            mrp=line.mrp,
            selling_price=line.selling_price,
            product_code=code,
            supplier=supplier_name,
            description=f"Added via Purchase PO#{order_number}",
            timestamp=timestamp,
        ),
    )
    return fabric, True


def commit_purchase(context: core_logic.RuntimeContext, command: PurchaseCommand) -> core_logic.BatchResult:
    """Validate, resolve and commit a purchase as one all-or-nothing batch.

    Lines are processed in order. Each writes a purchase receipt carrying the
    shared order number; when the batch status is ``received`` each also
    appends an ``in`` movement with source ``Purchase``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (PurchaseCommand): Structured purchase intent.

    Returns:
        core_logic.BatchResult: Order number, appended movements, totals and
            the ids of fabrics created along the way.

    Raises:
        ValidationError: If the supplier, status or a line value is invalid.
        EmptyBatchError: If no lines are supplied.
        UnresolvableLineError: If a line cannot be mapped to a fabric. Every
            write of the batch is rolled back first.
    """
    supplier_name = core_logic.require_text(command.supplier_name, field_name="supplier_name")
    status = coerce_status(command.status)
    if not command.lines:
        log.error("Rejected purchase without line items")
        raise core_logic.EmptyBatchError()
    for line in command.lines:
        core_logic.require_positive_quantity(line.quantity)
        core_logic.require_nonnegative_money(line.unit_price, field_name="unit_price")
        core_logic.require_nonnegative_money(line.mrp, field_name="mrp")
        core_logic.require_nonnegative_money(line.selling_price, field_name="selling_price")

    timestamp = core_logic.resolve_timestamp(command.timestamp)
    order_number = command.order_number or f"PO-{core_logic.epoch_millis(timestamp)}"

    movements: List[data_manager.MovementRow] = []
    created: List[int] = []
    total_quantity = Decimal("0")
    total_amount = Decimal("0")

    with core_logic.transaction(context) as journal:
        for line_number, line in enumerate(command.lines, start=1):
            fabric, was_created = resolve_line(
                context,
                line,
                line_number=line_number,
                supplier_name=supplier_name,
                order_number=order_number,
                timestamp=timestamp,
            )
            if was_created:
                created.append(fabric.fabric_id)

            line_total = line.quantity * line.unit_price
            receipt = data_manager.PurchaseRow(
                purchase_id=data_manager.next_sequence(context.workbook, "PurchaseID"),
                fabric_id=fabric.fabric_id,
                supplier_name=supplier_name,
                quantity=line.quantity,
                unit=fabric.unit,
                unit_price=line.unit_price,
                total_amount=line_total,
                order_date=timestamp.isoformat(),
                order_number=order_number,
                payment_terms=command.payment_terms,
                status=status.value,
            )
            data_manager.append_purchase(context.workbook, receipt, journal=journal)
            core_logic.invalidate_cache(context, "purchases")

            if status is PurchaseStatus.RECEIVED:
                movements.append(
                    core_logic.append_movement(
                        context,
                        core_logic.MovementCommand(
                            fabric_id=fabric.fabric_id,
                            direction=Direction.IN,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            reference=order_number,
                            source=MovementSource.PURCHASE.value,
                            payment_mode="Pending",
                            timestamp=timestamp,
                        ),
                    )
                )
            total_quantity += line.quantity
            total_amount += line_total

    log.info(
        "Committed purchase '%s' from '%s' with %d lines (status=%s, new fabrics=%d)",
        order_number,
        supplier_name,
        len(command.lines),
        status.value,
        len(created),
    )
    return core_logic.BatchResult(
        reference=order_number,
        movements=tuple(movements),
        total_quantity=total_quantity,
        total_amount=total_amount,
        created_fabric_ids=tuple(created),
    )


def list_purchases(context: core_logic.RuntimeContext) -> List[data_manager.PurchaseRow]:
    """Return purchase receipts, newest first."""
    purchases = core_logic.cached_rows(context, "purchases", data_manager.iter_purchases)
    return sorted(
        purchases,
        key=lambda p: (core_logic.parse_timestamp(p.order_date), p.purchase_id),
        reverse=True,
    )
