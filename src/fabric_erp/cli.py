"""Command-line entry points for the fabric ERP toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the engine, and
printing results. Keeping the CLI thin ensures the same operations can be
reused by tests, scripts, or an HTTP front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import analytics, core_logic, log, orders, purchasing
from .constants import Direction, MovementSource, PurchaseStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


LINE_HELP = "Line item as comma separated key=value pairs; repeat for more lines."


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fabric-erp",
        description="Command-line tools for the Fabric ERP inventory workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search from the working directory).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as orders and purchases."""
    specs = {
        "add-fabric": register_add_fabric_command(subparsers),
        "update-fabric": register_update_fabric_command(subparsers),
        "delete-fabric": register_delete_fabric_command(subparsers),
        "movement": register_movement_command(subparsers),
        "order": register_order_command(subparsers),
        "sale": register_sale_command(subparsers),
        "purchase": register_purchase_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "fabrics": register_fabrics_command(subparsers),
        "search": register_search_command(subparsers),
        "movements": register_movements_command(subparsers),
        "group": register_group_command(subparsers),
        "sales": register_sales_command(subparsers),
        "storefront": register_storefront_command(subparsers),
        "purchases": register_purchases_command(subparsers),
        "analytics": register_analytics_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_fabric_fields(parser: argparse.ArgumentParser, *, creating: bool) -> None:
    parser.add_argument("--name", required=creating)
    parser.add_argument("--product-code", default=None)
    parser.add_argument("--type", dest="fabric_type", default="General" if creating else None)
    parser.add_argument("--color", default=None)
    parser.add_argument("--pattern", default=None)
    parser.add_argument("--unit", default=None)
    parser.add_argument("--cost-price", default="0" if creating else None)
    parser.add_argument("--mrp", default="0" if creating else None)
    parser.add_argument("--selling-price", default="0" if creating else None)
    parser.add_argument("--supplier", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--image-ref", default=None)


def register_add_fabric_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-fabric``."""
    name = "add-fabric"
    help_text = "Register a new fabric in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_fabric_fields(parser, creating=True)
        parser.add_argument("--quantity", default="0", help="Opening quantity (fixed after creation).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_fabric, mutates=True)


def register_update_fabric_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-fabric``."""
    name = "update-fabric"
    help_text = "Overwrite descriptive or pricing fields of a fabric."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--fabric-id", type=int, required=True)
        _add_fabric_fields(parser, creating=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_fabric, mutates=True)


def register_delete_fabric_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-fabric``."""
    name = "delete-fabric"
    help_text = "Delete a fabric together with its ledger entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--fabric-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_fabric, mutates=True)


def register_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movement``."""
    name = "movement"
    help_text = "Append a manual stock movement to the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--fabric-id", type=int, required=True)
        parser.add_argument("--direction", choices=[member.value for member in Direction], required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--source", default=MovementSource.MANUAL_ENTRY.value)
        parser.add_argument("--payment-mode", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movement, mutates=True)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""
    name = "order"
    help_text = "Commit a multi-line e-commerce order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--line", dest="lines", action="append", default=[], help=LINE_HELP)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--source", default=None)
        parser.add_argument("--payment-mode", default=None)
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--customer-email", default=None)
        parser.add_argument("--customer-phone", default=None)
        parser.add_argument("--delivery-address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Commit a multi-line counter sale and issue an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--customer-email", default=None)
        parser.add_argument("--customer-phone", default=None)
        parser.add_argument("--line", dest="lines", action="append", default=[], help=LINE_HELP)
        parser.add_argument("--payment-method", default=None)
        parser.add_argument("--payment-status", default="Paid")
        parser.add_argument("--delivery-address", default=None)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Commit a multi-line purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier", dest="supplier_name", required=True)
        parser.add_argument("--line", dest="lines", action="append", default=[], help=LINE_HELP)
        parser.add_argument("--order-number", default=None)
        parser.add_argument(
            "--status",
            choices=[member.value for member in PurchaseStatus],
            default=PurchaseStatus.ORDERED.value,
        )
        parser.add_argument("--payment-terms", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase, mutates=True)


def _simple_read_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--fabric-id", type=int, default=None)

    return _simple_read_command("stock", "Display current stock levels.", run_stock_report, configure)


def register_fabrics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``fabrics``."""
    return _simple_read_command("fabrics", "List the catalog with derived stock.", run_fabrics_report)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--query", "-q", default=None)
        parser.add_argument("--type", dest="fabric_type", default=None)
        parser.add_argument("--color", default=None)
        parser.add_argument("--supplier", default=None)

    return _simple_read_command("search", "Search the catalog.", run_search_report, configure)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--fabric-id", type=int, default=None)

    return _simple_read_command("movements", "Display the inventory ledger.", run_movements_report, configure)


def register_group_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``group``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--reference", default=None)

    return _simple_read_command("group", "Rebuild batches from shared references.", run_group_report, configure)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    return _simple_read_command("sales", "Display counter sales and e-commerce orders.", run_sales_report)


def register_storefront_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``storefront``."""
    return _simple_read_command("storefront", "List fabrics available to order.", run_storefront_report)


def register_purchases_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchases``."""
    return _simple_read_command("purchases", "Display purchase receipts.", run_purchases_report)


def register_analytics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``analytics``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--low-stock-threshold", default=None)

    return _simple_read_command("analytics", "Display stock value and breakdowns.", run_analytics_report, configure)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_decimal(raw: Optional[str], *, field_name: str) -> Optional[Decimal]:
    """Parse a decimal argument, keeping ``None`` as ``None``."""
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise core_logic.ValidationError(field_name, f"is not a number: {raw!r}") from exc
    if not value.is_finite():
        raise core_logic.ValidationError(field_name, f"is not a finite number: {raw!r}")
    return value


def parse_line(raw: str) -> Dict[str, str]:
    """Split ``key=value,key=value`` into a dictionary."""
    fields: Dict[str, str] = {}
    for chunk in raw.split(","):
        if not chunk.strip():
            continue
        key, sep, value = chunk.partition("=")
        if not sep:
            raise core_logic.ValidationError("line", f"expected key=value, got {chunk!r}")
        fields[key.strip()] = value.strip()
    return fields


def translate_order_lines(raw_lines: Sequence[str]) -> List[orders.OrderLine]:
    """Translate ``--line fabric_id=..,quantity=..,unit_price=..`` values."""
    lines = []
    for raw in raw_lines:
        fields = parse_line(raw)
        try:
            fabric_id = int(fields["fabric_id"])
            quantity = fields["quantity"]
            unit_price = fields["unit_price"]
        except KeyError as exc:
            raise core_logic.ValidationError(str(exc.args[0]), "is required on every line") from exc
        except ValueError as exc:
            raise core_logic.ValidationError("fabric_id", "must be an integer") from exc
        lines.append(
            orders.OrderLine(
                fabric_id=fabric_id,
                quantity=parse_decimal(quantity, field_name="quantity"),
                unit_price=parse_decimal(unit_price, field_name="unit_price"),
            )
        )
    return lines


def translate_purchase_lines(raw_lines: Sequence[str]) -> List[purchasing.PurchaseLine]:
    """Translate purchase ``--line`` values (``fabric_id`` or ``name`` based)."""
    lines = []
    for raw in raw_lines:
        fields = parse_line(raw)
        if "quantity" not in fields or "unit_price" not in fields:
            raise core_logic.ValidationError("line", "quantity and unit_price are required on every line")
        try:
            fabric_id = int(fields["fabric_id"]) if fields.get("fabric_id") else None
        except ValueError as exc:
            raise core_logic.ValidationError("fabric_id", "must be an integer") from exc
        lines.append(
            purchasing.PurchaseLine(
                fabric_id=fabric_id,
                name=fields.get("name"),
                product_code=fields.get("product_code"),
                quantity=parse_decimal(fields["quantity"], field_name="quantity"),
                unit_price=parse_decimal(fields["unit_price"], field_name="unit_price"),
                mrp=parse_decimal(fields.get("mrp", "0"), field_name="mrp"),
                selling_price=parse_decimal(fields.get("selling_price", "0"), field_name="selling_price"),
            )
        )
    return lines


def translate_add_fabric(args: argparse.Namespace) -> core_logic.FabricCommand:
    """Translate CLI args into a fabric creation command."""
    return core_logic.FabricCommand(
        name=args.name,
        fabric_type=args.fabric_type,
        opening_quantity=parse_decimal(args.quantity, field_name="quantity"),
        unit=args.unit,
        cost_price=parse_decimal(args.cost_price, field_name="cost_price"),
        mrp=parse_decimal(args.mrp, field_name="mrp"),
        selling_price=parse_decimal(args.selling_price, field_name="selling_price"),
        product_code=args.product_code,
        color=args.color,
        pattern=args.pattern,
        supplier=args.supplier,
        description=args.description,
        image_ref=args.image_ref,
    )


def translate_update_fabric(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the fields to overwrite; unset flags are skipped."""
    text_fields = {
        "name": args.name,
        "product_code": args.product_code,
        "fabric_type": args.fabric_type,
        "color": args.color,
        "pattern": args.pattern,
        "unit": args.unit,
        "supplier": args.supplier,
        "description": args.description,
        "image_ref": args.image_ref,
    }
    fields: Dict[str, Any] = {key: value for key, value in text_fields.items() if value is not None}
    for price_field in core_logic.PRICE_FIELDS:
        raw = getattr(args, price_field)
        if raw is not None:
            fields[price_field] = parse_decimal(raw, field_name=price_field)
    return fields


def translate_movement(args: argparse.Namespace) -> core_logic.MovementCommand:
    """Translate CLI args into a manual movement command."""
    return core_logic.MovementCommand(
        fabric_id=args.fabric_id,
        direction=Direction(args.direction),
        quantity=parse_decimal(args.quantity, field_name="quantity"),
        unit_price=parse_decimal(args.unit_price, field_name="unit_price"),
        reference=args.reference,
        source=args.source,
        payment_mode=args.payment_mode,
    )


def translate_order(args: argparse.Namespace) -> orders.OrderCommand:
    """Translate CLI args into an order command."""
    return orders.OrderCommand(
        lines=translate_order_lines(args.lines),
        reference=args.reference,
        source=args.source,
        payment_mode=args.payment_mode,
        customer_name=args.customer_name,
        customer_email=args.customer_email,
        customer_phone=args.customer_phone,
        delivery_address=args.delivery_address,
    )


def translate_sale(args: argparse.Namespace) -> orders.SaleCommand:
    """Translate CLI args into a sale command."""
    return orders.SaleCommand(
        customer_name=args.customer_name,
        lines=translate_order_lines(args.lines),
        customer_email=args.customer_email,
        customer_phone=args.customer_phone,
        payment_method=args.payment_method,
        payment_status=args.payment_status,
        delivery_address=args.delivery_address,
        notes=args.notes,
    )


def translate_purchase(args: argparse.Namespace) -> purchasing.PurchaseCommand:
    """Translate CLI args into a purchase command."""
    return purchasing.PurchaseCommand(
        supplier_name=args.supplier_name,
        lines=translate_purchase_lines(args.lines),
        order_number=args.order_number,
        status=PurchaseStatus(args.status),
        payment_terms=args.payment_terms,
    )


def run_add_fabric(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the fabric creation workflow."""
    fabric = core_logic.create_fabric(context, translate_add_fabric(args))
    print(f"Created fabric {fabric.fabric_id} ({fabric.product_code})")
    return 0


def run_update_fabric(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the fabric update workflow."""
    core_logic.update_fabric(context, args.fabric_id, **translate_update_fabric(args))
    print(f"Updated fabric {args.fabric_id}")
    return 0


def run_delete_fabric(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the fabric deletion workflow."""
    deleted = core_logic.delete_fabric(context, args.fabric_id)
    print(f"Deleted fabric {args.fabric_id}" if deleted else f"Fabric {args.fabric_id} was already absent")
    return 0


def run_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual ledger entry workflow."""
    movement = core_logic.append_movement(context, translate_movement(args))
    print(f"Recorded movement {movement.movement_id}")
    return 0


def _print_batch(label: str, result: core_logic.BatchResult) -> None:
    print(f"{label} {result.reference}: {len(result.movements)} movements, "
          f"quantity {result.total_quantity}, amount {result.total_amount}")


def run_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order workflow."""
    _print_batch("Order", orders.commit_order(context, translate_order(args)))
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    _print_batch("Invoice", orders.commit_sale(context, translate_sale(args)))
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow."""
    result = purchasing.commit_purchase(context, translate_purchase(args))
    _print_batch("Purchase", result)
    if result.created_fabric_ids:
        print("New fabrics: " + ", ".join(str(fabric_id) for fabric_id in result.created_fabric_ids))
    return 0


def _print_fabric_rows(rows: Iterable[core_logic.FabricStock]) -> None:
    for row in rows:
        fabric = row.fabric
        print(
            f"{fabric.fabric_id:>5}  {fabric.product_code:<14} {fabric.name:<24} "
            f"{row.current_stock:>10} {fabric.unit:<4} {row.latest_source or '-'} / {row.latest_payment_mode or '-'}"
        )


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if getattr(args, "fabric_id", None) is not None:
        print(core_logic.current_stock(context, args.fabric_id))
        return 0
    for fabric_id, stock in core_logic.calculate_inventory(context).items():
        print(f"{fabric_id:>5}  {stock}")
    return 0


def run_fabrics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the catalog listing workflow."""
    _print_fabric_rows(core_logic.list_fabrics(context))
    return 0


def run_search_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the catalog search workflow."""
    _print_fabric_rows(
        core_logic.search_fabrics(
            context,
            query=args.query,
            fabric_type=args.fabric_type,
            color=args.color,
            supplier=args.supplier,
        )
    )
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger reporting workflow."""
    for movement in core_logic.list_movements(context, fabric_id=getattr(args, "fabric_id", None)):
        print(
            f"{movement.movement_id:>6}  {movement.movement_date}  fabric {movement.fabric_id:<5} "
            f"{movement.direction:<3} {movement.quantity:>10} x {movement.unit_price} = {movement.total_value}  "
            f"{movement.reference or '-'}  {movement.source or '-'}  {movement.payment_mode or '-'}"
        )
    return 0


def run_group_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reference grouping workflow."""
    for group in core_logic.group_by_reference(context, getattr(args, "reference", None)):
        print(f"{group.reference}: {group.line_count} lines, quantity {group.total_quantity}, value {group.total_value}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales reporting workflow."""
    for entry in orders.list_sales_activity(context):
        print(
            f"{entry.kind:<7} {entry.invoice_number or '-'}  {entry.sale_date}  {entry.customer_name}  "
            f"{entry.fabric_name or entry.fabric_id} {entry.quantity} {entry.unit or ''} x {entry.unit_price} "
            f"= {entry.total_amount}  {entry.payment_method or '-'}"
        )
    return 0


def run_storefront_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the storefront listing workflow."""
    for item in core_logic.list_storefront(context):
        print(f"{item.fabric_id:>5}  {item.name:<24} {item.fabric_type:<12} {item.stock} {item.unit} @ {item.price}")
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase receipt reporting workflow."""
    for purchase in purchasing.list_purchases(context):
        print(
            f"{purchase.order_number}  {purchase.order_date}  {purchase.supplier_name}  fabric {purchase.fabric_id} "
            f"{purchase.quantity} {purchase.unit} x {purchase.unit_price} = {purchase.total_amount}  {purchase.status}"
        )
    return 0


def run_analytics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the analytics reporting workflow."""
    threshold = parse_decimal(getattr(args, "low_stock_threshold", None), field_name="low_stock_threshold")
    summary = analytics.summarize(context, low_stock_threshold=threshold)
    print(f"Fabrics: {summary.total_fabrics}")
    print(f"Stock value: {summary.total_value}")
    print("Low stock:")
    for item in summary.low_stock:
        print(f"  {item.fabric_id:>5}  {item.product_code:<14} {item.name:<24} {item.current_stock}")
    print("Top suppliers:")
    for supplier, count in summary.top_suppliers:
        print(f"  {supplier}: {count}")
    print("Stock by type:")
    for fabric_type, quantity in summary.stock_by_type:
        print(f"  {fabric_type}: {quantity}")
    print("Channels:")
    for row in summary.channel_breakdown:
        print(f"  {row.label}: {row.count} movements, {row.total_value}")
    print("Payment modes:")
    for row in summary.payment_breakdown:
        print(f"  {row.label}: {row.count} movements, {row.total_value}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.NotFoundError):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
