"""Data access layer for the fabric ERP.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
4. Journalling: recording enough about each write to undo it, which is what
   gives multi-line batches their all-or-nothing behavior.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
FABRICS_SHEET = SheetName.FABRICS.value
MOVEMENTS_SHEET = SheetName.MOVEMENTS.value
SALES_SHEET = SheetName.SALES.value
PURCHASES_SHEET = SheetName.PURCHASES.value
SEQUENCES_SHEET = SheetName.SEQUENCES.value

# Mutable fabric attributes mapped to their ``Fabrics`` column headers.
FABRIC_FIELD_COLUMNS = {
    "product_code": "ProductCode",
    "name": "Name",
    "fabric_type": "FabricType",
    "color": "Color",
    "pattern": "Pattern",
    "unit": "Unit",
    "cost_price": "CostPrice",
    "mrp": "MRP",
    "selling_price": "SellingPrice",
    "supplier": "Supplier",
    "description": "Description",
    "image_ref": "ImageRef",
    "updated_at": "UpdatedAt",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_unit: str = "mtr"
    low_stock_threshold: Decimal = Decimal("10")
    order_source: str = "E-commerce"
    order_payment_mode: str = "UPI"
    sale_payment_mode: str = "Cash"


@dataclass(frozen=True)
class FabricRow:
    """In-memory view of a row from the ``Fabrics`` sheet."""

    fabric_id: int
    product_code: str
    name: str
    fabric_type: str
    color: Optional[str]
    pattern: Optional[str]
    opening_quantity: Decimal
    unit: str
    cost_price: Decimal
    mrp: Decimal
    selling_price: Decimal
    supplier: Optional[str]
    description: Optional[str]
    image_ref: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``InventoryMovements`` sheet."""

    movement_id: int
    fabric_id: int
    direction: str
    quantity: Decimal
    unit_price: Decimal
    total_value: Decimal
    reference: Optional[str]
    source: Optional[str]
    payment_mode: Optional[str]
    movement_date: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: int
    fabric_id: int
    customer_name: str
    customer_email: Optional[str]
    customer_phone: Optional[str]
    quantity: Decimal
    unit: str
    unit_price: Decimal
    total_amount: Decimal
    sale_date: str
    invoice_number: str
    payment_method: Optional[str]
    payment_status: Optional[str]
    delivery_address: Optional[str]
    notes: Optional[str]
    status: str


@dataclass(frozen=True)
class PurchaseRow:
    """In-memory view of a row from the ``Purchases`` sheet."""

    purchase_id: int
    fabric_id: int
    supplier_name: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    total_amount: Decimal
    order_date: str
    order_number: str
    payment_terms: Optional[str]
    status: str


@dataclass
class Journal:
    """Undo log for the writes performed inside one transaction scope.

    Entries are replayed in reverse by :meth:`rollback`. Row indices stay
    valid because the owning context holds its writer lock for the whole
    scope, so no other writer can shift rows underneath the journal.
    """

    entries: List[Tuple[Any, ...]] = field(default_factory=list)

    def record_append(self, sheet_name: str, row_index: int) -> None:
        self.entries.append(("append", sheet_name, row_index))

    def record_update(self, sheet_name: str, row_index: int, column: int, previous: Any) -> None:
        self.entries.append(("update", sheet_name, row_index, column, previous))

    def __len__(self) -> int:
        return len(self.entries)

    def rollback(self, workbook: Workbook) -> int:
        """Undo every recorded write, newest first, and return how many."""

        undone = 0
        while self.entries:
            entry = self.entries.pop()
            sheet = workbook[entry[1]]
            if entry[0] == "append":
                sheet.delete_rows(entry[2])
            else:
                _, _, row_index, column, previous = entry
                sheet.cell(row=row_index, column=column, value=previous)
            undone += 1
        log.debug("Rolled back %d journalled writes", undone)
        return undone


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. Every ``[Defaults]`` option is
    optional and falls back to the dataclass default. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required option is missing.
        ValueError: If ``LowStockThreshold`` is not a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    defaults = ConfigSettings(data_file=data_file_path, shop_name=shop_name, schema_version=schema_version)
    threshold_raw = parser.get("Defaults", "LowStockThreshold", fallback=None)
    try:
        threshold = Decimal(threshold_raw) if threshold_raw is not None else defaults.low_stock_threshold
    except ArithmeticError as exc:
        raise ValueError(f"Invalid LowStockThreshold: {threshold_raw!r}") from exc

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_unit=parser.get("Defaults", "Unit", fallback=defaults.default_unit),
        low_stock_threshold=threshold,
        order_source=parser.get("Defaults", "OrderSource", fallback=defaults.order_source),
        order_payment_mode=parser.get("Defaults", "OrderPaymentMode", fallback=defaults.order_payment_mode),
        sale_payment_mode=parser.get("Defaults", "SalePaymentMode", fallback=defaults.sale_payment_mode),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_fabrics(workbook: Workbook) -> Iterable[FabricRow]:
    """Iterate over fabric records stored on the ``Fabrics`` worksheet."""

    for raw in _iter_sheet(workbook, FABRICS_SHEET):
        yield deserialize_fabric(raw)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Stream ledger entries from the ``InventoryMovements`` worksheet.

    Rows are yielded in sheet order, which is insertion order because the
    ledger is append-only.
    """

    for raw in _iter_sheet(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_purchases(workbook: Workbook) -> Iterable[PurchaseRow]:
    for raw in _iter_sheet(workbook, PURCHASES_SHEET):
        yield deserialize_purchase(raw)


def _append_row(workbook: Workbook, sheet_name: str, values: list[object], journal: Optional[Journal]) -> int:
    sheet = workbook[sheet_name]
    sheet.append(values)
    row_index = sheet.max_row
    if journal is not None:
        journal.record_append(sheet_name, row_index)
    return row_index


def append_fabric(workbook: Workbook, record: FabricRow, *, journal: Optional[Journal] = None) -> None:
    """Append a fabric record to the ``Fabrics`` worksheet."""

    _append_row(workbook, FABRICS_SHEET, serialize_fabric(record), journal)


def append_movement(workbook: Workbook, record: MovementRow, *, journal: Optional[Journal] = None) -> None:
    """Append a ledger entry to the ``InventoryMovements`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    _append_row(workbook, MOVEMENTS_SHEET, serialize_movement(record), journal)


def append_sale(workbook: Workbook, record: SaleRow, *, journal: Optional[Journal] = None) -> None:
    """Append a sale receipt to the ``Sales`` worksheet."""

    _append_row(workbook, SALES_SHEET, serialize_sale(record), journal)


def append_purchase(workbook: Workbook, record: PurchaseRow, *, journal: Optional[Journal] = None) -> None:
    """Append a purchase receipt to the ``Purchases`` worksheet."""

    _append_row(workbook, PURCHASES_SHEET, serialize_purchase(record), journal)


def update_fabric(
    workbook: Workbook,
    fabric_id: int,
    *,
    field_values: dict[str, Any],
    journal: Optional[Journal] = None,
) -> None:
    """Update selected columns for an existing fabric.

    The function locates the row whose ``FabricID`` matches ``fabric_id``,
    validates that each requested column exists in the header row, and then
    writes the provided values into the corresponding cells. Previous cell
    values are journalled so the change can be rolled back.

    Args:
        workbook (Workbook): Workbook containing the fabrics sheet.
        fabric_id (int): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.
        journal (Journal | None): Undo log of the surrounding transaction.

    Raises:
        KeyError: If the fabric or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, FABRICS_SHEET, "FabricID", fabric_id)
    if row_index is None:
        raise KeyError(f"Fabric not found: {fabric_id}")

    sheet = workbook[FABRICS_SHEET]
    header_map = _header_map(sheet)

    for column_name in field_values:
        if column_name not in header_map:
            raise KeyError(f"Unknown fabric field: {column_name}")

    for column_name, value in field_values.items():
        col = header_map[column_name]
        cell = sheet.cell(row=row_index, column=col)
        if journal is not None:
            journal.record_update(FABRICS_SHEET, row_index, col, cell.value)
        cell.value = value


def delete_fabric(workbook: Workbook, fabric_id: int) -> bool:
    """Remove the fabric row and report whether one existed."""

    row_index = locate_row(workbook, FABRICS_SHEET, "FabricID", fabric_id)
    if row_index is None:
        return False
    workbook[FABRICS_SHEET].delete_rows(row_index)
    return True


def delete_movements_for_fabric(workbook: Workbook, fabric_id: int) -> int:
    """Remove every ledger row referencing ``fabric_id`` and return the count."""

    sheet = workbook[MOVEMENTS_SHEET]
    fabric_col = _header_map(sheet)["FabricID"]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[fabric_col - 1] is not None and int(row[fabric_col - 1]) == fabric_id
    ]
    # Delete bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def next_sequence(workbook: Workbook, name: str) -> int:
    """Allocate the next value of the named counter on the ``Sequences`` sheet.

    Counters only move forward, including across rolled-back transactions,
    so identifiers are never reused even after deletions.
    """

    sheet = workbook[SEQUENCES_SHEET]
    row_index = locate_row(workbook, SEQUENCES_SHEET, "Name", name)
    if row_index is None:
        sheet.append([name, 1])
        return 1
    cell = sheet.cell(row=row_index, column=2)
    value = int(cell.value or 0) + 1
    cell.value = value
    return value


def _header_map(sheet) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_fabric(record: FabricRow) -> list[object]:
    """Convert a fabric dataclass into the worksheet column ordering."""

    return [
        record.fabric_id,
        record.product_code,
        record.name,
        record.fabric_type,
        record.color,
        record.pattern,
        record.opening_quantity,
        record.unit,
        record.cost_price,
        record.mrp,
        record.selling_price,
        record.supplier,
        record.description,
        record.image_ref,
        record.created_at,
        record.updated_at,
    ]


def serialize_movement(record: MovementRow) -> list[object]:
    """Convert a ledger dataclass into the ``InventoryMovements`` column order."""

    return [
        record.movement_id,
        record.fabric_id,
        record.direction,
        record.quantity,
        record.unit_price,
        record.total_value,
        record.reference,
        record.source,
        record.payment_mode,
        record.movement_date,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.fabric_id,
        record.customer_name,
        record.customer_email,
        record.customer_phone,
        record.quantity,
        record.unit,
        record.unit_price,
        record.total_amount,
        record.sale_date,
        record.invoice_number,
        record.payment_method,
        record.payment_status,
        record.delivery_address,
        record.notes,
        record.status,
    ]


def serialize_purchase(record: PurchaseRow) -> list[object]:
    return [
        record.purchase_id,
        record.fabric_id,
        record.supplier_name,
        record.quantity,
        record.unit,
        record.unit_price,
        record.total_amount,
        record.order_date,
        record.order_number,
        record.payment_terms,
        record.status,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_fabric(raw_row: Sequence[object]) -> FabricRow:
    """Convert a raw worksheet row into a strongly typed fabric record.

    Numeric columns become :class:`~decimal.Decimal` instances and the code
    and name are coerced to ``str`` so Excel's habit of turning digit-only
    codes into numbers does not leak into comparisons.
    """

    (
        fabric_id,
        product_code,
        name,
        fabric_type,
        color,
        pattern,
        opening_quantity,
        unit,
        cost_price,
        mrp,
        selling_price,
        supplier,
        description,
        image_ref,
        created_at,
        updated_at,
    ) = raw_row

    return FabricRow(
        fabric_id=int(fabric_id),
        product_code=str(product_code) if product_code is not None else "",
        name=str(name) if name is not None else "",
        fabric_type=str(fabric_type) if fabric_type is not None else "",
        color=_to_text(color),
        pattern=_to_text(pattern),
        opening_quantity=_to_decimal(opening_quantity),
        unit=str(unit) if unit is not None else "",
        cost_price=_to_decimal(cost_price, "0.00"),
        mrp=_to_decimal(mrp, "0.00"),
        selling_price=_to_decimal(selling_price, "0.00"),
        supplier=_to_text(supplier),
        description=_to_text(description),
        image_ref=_to_text(image_ref),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    """Convert a raw worksheet row into a strongly typed ledger entry."""

    (
        movement_id,
        fabric_id,
        direction,
        quantity,
        unit_price,
        total_value,
        reference,
        source,
        payment_mode,
        movement_date,
    ) = raw_row

    return MovementRow(
        movement_id=int(movement_id),
        fabric_id=int(fabric_id),
        direction=str(direction) if direction is not None else "",
        quantity=_to_decimal(quantity),
        unit_price=_to_decimal(unit_price, "0.00"),
        total_value=_to_decimal(total_value, "0.00"),
        reference=_to_text(reference),
        source=_to_text(source),
        payment_mode=_to_text(payment_mode),
        movement_date=str(movement_date) if movement_date is not None else "",
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    (
        sale_id,
        fabric_id,
        customer_name,
        customer_email,
        customer_phone,
        quantity,
        unit,
        unit_price,
        total_amount,
        sale_date,
        invoice_number,
        payment_method,
        payment_status,
        delivery_address,
        notes,
        status,
    ) = raw_row

    return SaleRow(
        sale_id=int(sale_id),
        fabric_id=int(fabric_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        customer_email=_to_text(customer_email),
        customer_phone=_to_text(customer_phone),
        quantity=_to_decimal(quantity),
        unit=str(unit) if unit is not None else "",
        unit_price=_to_decimal(unit_price, "0.00"),
        total_amount=_to_decimal(total_amount, "0.00"),
        sale_date=str(sale_date) if sale_date is not None else "",
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        payment_method=_to_text(payment_method),
        payment_status=_to_text(payment_status),
        delivery_address=_to_text(delivery_address),
        notes=_to_text(notes),
        status=str(status) if status is not None else "",
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    (
        purchase_id,
        fabric_id,
        supplier_name,
        quantity,
        unit,
        unit_price,
        total_amount,
        order_date,
        order_number,
        payment_terms,
        status,
    ) = raw_row

    return PurchaseRow(
        purchase_id=int(purchase_id),
        fabric_id=int(fabric_id),
        supplier_name=str(supplier_name) if supplier_name is not None else "",
        quantity=_to_decimal(quantity),
        unit=str(unit) if unit is not None else "",
        unit_price=_to_decimal(unit_price, "0.00"),
        total_amount=_to_decimal(total_amount, "0.00"),
        order_date=str(order_date) if order_date is not None else "",
        order_number=str(order_number) if order_number is not None else "",
        payment_terms=_to_text(payment_terms),
        status=str(status) if status is not None else "",
    )
