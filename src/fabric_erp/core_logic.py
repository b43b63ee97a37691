"""Ledger engine for the fabric ERP.

This module owns the fabric catalog, the append-only inventory ledger and the
stock projector that derives current stock from it. It consumes the Data
Access Layer (DAL) for all I/O and is the only place where stock is computed:
listing, search, analytics and every outbound check go through
:func:`current_stock`.

Multi-line workflows (orders, sales, purchases) live in sibling modules and
compose the operations defined here inside a single :func:`transaction`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Direction


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint.

    Subclasses carry structured attributes for the caller to render and an
    ``http_status`` hint for API front-ends.
    """

    http_status = 400

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, **self.details()}


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when a required field is missing or a value is out of range."""

    def __init__(self, field_name: str, reason: str) -> None:
        super().__init__(f"{field_name}: {reason}")
        self.field = field_name
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"field": self.field, "reason": self.reason}


class EmptyBatchError(ValidationError):
    """Raised when a batch operation receives no line items."""

    def __init__(self) -> None:
        super().__init__("lines", "at least one line item is required")


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced fabric is unknown."""

    http_status = 404

    def __init__(self, fabric_id: object) -> None:
        super().__init__(f"Unknown fabric id: {fabric_id}")
        self.fabric_id = fabric_id

    def details(self) -> Dict[str, Any]:
        return {"fabric_id": self.fabric_id}


class InsufficientStockError(BusinessRuleViolation):
    """Raised when an outbound quantity exceeds the derived current stock."""

    def __init__(self, fabric_id: int, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient stock for fabric {fabric_id}: requested {requested}, available {available}"
        )
        self.fabric_id = fabric_id
        self.requested = requested
        self.available = available

    def details(self) -> Dict[str, Any]:
        return {"fabric_id": self.fabric_id, "requested": self.requested, "available": self.available}


class ConstraintViolationError(BusinessRuleViolation):
    """Raised when a write would break a uniqueness constraint."""

    def __init__(self, field_name: str, value: object) -> None:
        super().__init__(f"Duplicate {field_name}: {value}")
        self.field = field_name
        self.value = value

    def details(self) -> Dict[str, Any]:
        return {"field": self.field, "value": self.value}


class UnresolvableLineError(BusinessRuleViolation):
    """Raised when a purchase line can be neither matched nor created."""

    def __init__(self, description: str, *, line_number: Optional[int] = None) -> None:
        super().__init__(f"Could not process item: {description}")
        self.description = description
        self.line_number = line_number

    def details(self) -> Dict[str, Any]:
        return {"description": self.description, "line_number": self.line_number}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and shared state used by the engine.

    Each context owns its writer lock, so tests and tools can run isolated
    stores side by side.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _state: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class FabricCommand:
    """User intent for creating a catalog entry."""

    name: str
    fabric_type: str = "General"
    opening_quantity: Decimal = Decimal("0")
    unit: Optional[str] = None
    cost_price: Decimal = Decimal("0.00")
    mrp: Decimal = Decimal("0.00")
    selling_price: Decimal = Decimal("0.00")
    product_code: Optional[str] = None
    color: Optional[str] = None
    pattern: Optional[str] = None
    supplier: Optional[str] = None
    description: Optional[str] = None
    image_ref: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class MovementCommand:
    """User intent for appending one ledger entry."""

    fabric_id: int
    direction: Union[Direction, str]
    quantity: Decimal
    unit_price: Decimal
    reference: Optional[str] = None
    source: Optional[str] = None
    payment_mode: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class FabricStock:
    """A fabric together with the values derived from its ledger entries."""

    fabric: data_manager.FabricRow
    current_stock: Decimal
    latest_source: Optional[str]
    latest_payment_mode: Optional[str]


@dataclass(frozen=True)
class StorefrontItem:
    """A fabric as offered to shop customers."""

    fabric_id: int
    name: str
    fabric_type: str
    color: Optional[str]
    pattern: Optional[str]
    description: Optional[str]
    price: Decimal
    unit: str
    stock: Decimal
    image_ref: Optional[str]
    supplier: Optional[str]
    available: bool


@dataclass(frozen=True)
class ReferenceGroup:
    """One logical transaction rebuilt from movements sharing a reference."""

    reference: str
    movements: Tuple[data_manager.MovementRow, ...]
    total_quantity: Decimal
    total_value: Decimal

    @property
    def line_count(self) -> int:
        return len(self.movements)


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a committed multi-line order, sale or purchase."""

    reference: str
    movements: Tuple[data_manager.MovementRow, ...]
    total_quantity: Decimal
    total_amount: Decimal
    created_fabric_ids: Tuple[int, ...] = ()


UPDATABLE_FABRIC_FIELDS = frozenset(data_manager.FABRIC_FIELD_COLUMNS) - {"updated_at"}
PRICE_FIELDS = ("cost_price", "mrp", "selling_price")


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into timezone-aware values.

    Naive datetimes are interpreted as UTC so every stored date compares
    cleanly with every other.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string written by this module back into a datetime."""

    return resolve_timestamp(datetime.fromisoformat(value))


def epoch_millis(when: datetime) -> int:
    return int(when.timestamp() * 1000)


def get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The engine keeps in-memory caches keyed by sheet (fabrics, movements,
    sales, purchases). Buckets are plain dictionaries holding precomputed
    query results so repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    With no names every bucket is dropped.
    """

    with context._lock:
        if not names:
            context._cache.clear()
            return
        log.debug("Invalidating cache buckets: %s", ", ".join(names))
        for name in names:
            context._cache.pop(name, None)


def cached_rows(context: RuntimeContext, name: str, loader: Callable[[Workbook], Iterable[Any]]) -> List[Any]:
    """Return a copy of the rows ``loader`` yields, memoized under ``name``."""

    with context._lock:
        bucket = get_cache_bucket(context, name)
        if "all" not in bucket:
            bucket["all"] = list(loader(context.workbook))
            log.debug("Populated %s cache with %d entries", name, len(bucket["all"]))
        return list(bucket["all"])


def _ensure_fabrics_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the fabric cache bucket with ``all``, ``by_id`` and ``by_code``."""

    with context._lock:
        bucket = get_cache_bucket(context, "fabrics")
        if "all" not in bucket:
            all_fabrics = list(data_manager.iter_fabrics(context.workbook))
            bucket["all"] = all_fabrics
            bucket["by_id"] = {fabric.fabric_id: fabric for fabric in all_fabrics}
            bucket["by_code"] = {fabric.product_code: fabric for fabric in all_fabrics}
            log.debug("Populated fabrics cache with %d entries", len(all_fabrics))
        return bucket


def _ensure_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the ledger cache bucket with ``all`` and ``by_fabric``.

    Because movements are immutable after creation, caching the full list
    grouped per fabric keeps stock reads from rescanning the sheet.
    """

    with context._lock:
        bucket = get_cache_bucket(context, "movements")
        if "all" not in bucket:
            all_movements = list(data_manager.iter_movements(context.workbook))
            by_fabric: Dict[int, List[data_manager.MovementRow]] = {}
            for movement in all_movements:
                by_fabric.setdefault(movement.fabric_id, []).append(movement)
            bucket["all"] = all_movements
            bucket["by_fabric"] = by_fabric
            log.debug("Populated movements cache with %d entries", len(all_movements))
        return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


@contextmanager
def transaction(context: RuntimeContext) -> Iterator[data_manager.Journal]:
    """Run a block as one all-or-nothing unit of work.

    The context's writer lock is held for the whole block, so a stock check
    and the appends that depend on it cannot interleave with another writer.
    Every write is journalled; if the block raises, the journal is replayed
    backwards and the exception propagates. Nested calls join the outermost
    scope.

    Yields:
        data_manager.Journal: Undo log that write helpers record into.
    """

    with context._lock:
        active = context._state.get("journal")
        if active is not None:
            yield active
            return

        journal = data_manager.Journal()
        context._state["journal"] = journal
        try:
            yield journal
        except BaseException:
            undone = journal.rollback(context.workbook)
            invalidate_cache(context)
            log.warning("Transaction rolled back; %d writes undone", undone)
            raise
        finally:
            context._state.pop("journal", None)


def require_positive_quantity(quantity: Decimal, *, field_name: str = "quantity") -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is missing, not finite, zero or
            negative.
    """
    if quantity is None or not quantity.is_finite() or quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError(field_name, "must be greater than zero")


def require_nonnegative_money(amount: Decimal, *, field_name: str = "amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is missing, not finite or less than
            zero.
    """
    if amount is None or not amount.is_finite() or amount < Decimal("0"):
        log.error("Monetary value validation failed for %s: %s", field_name, amount)
        raise ValidationError(field_name, "must be zero or positive")


def require_text(value: Optional[str], *, field_name: str) -> str:
    if value is None or not str(value).strip():
        log.error("Required field '%s' is missing", field_name)
        raise ValidationError(field_name, "is required")
    return str(value).strip()


def coerce_direction(value: Union[Direction, str]) -> Direction:
    """Return ``value`` as a :class:`Direction`, rejecting anything else."""
    if isinstance(value, Direction):
        return value
    try:
        return Direction(value)
    except ValueError as exc:
        raise ValidationError("direction", f"must be one of {[d.value for d in Direction]}") from exc


# ---------------------------------------------------------------------------
# Fabric catalog
# ---------------------------------------------------------------------------


def list_fabric_rows(context: RuntimeContext) -> List[data_manager.FabricRow]:
    """Return every catalog row in sheet order."""
    return list(_ensure_fabrics_cache(context)["all"])


def get_fabric(context: RuntimeContext, fabric_id: int) -> data_manager.FabricRow:
    """Resolve a fabric record by its identifier.

    Raises:
        NotFoundError: If ``fabric_id`` is absent from the catalog.
    """
    cache = _ensure_fabrics_cache(context)
    try:
        return cache["by_id"][fabric_id]
    except KeyError as exc:
        log.warning("Fabric lookup failed for id '%s'", fabric_id)
        raise NotFoundError(fabric_id) from exc


def find_by_code_or_name(
    context: RuntimeContext,
    code: Optional[str],
    name: Optional[str],
) -> Optional[data_manager.FabricRow]:
    """Return the first fabric, in catalog order, matching the code or the name."""
    for fabric in _ensure_fabrics_cache(context)["all"]:
        if (code and fabric.product_code == code) or (name and fabric.name == name):
            return fabric
    return None


def generate_product_code(context: RuntimeContext, when: Optional[datetime] = None) -> str:
    """Generate ``ITEM-`` plus the last six digits of the epoch milliseconds.

    A generated code never collides: when the candidate is taken, the
    millisecond counter is advanced until a free code is found.
    """
    millis = epoch_millis(resolve_timestamp(when))
    taken = _ensure_fabrics_cache(context)["by_code"]
    code = f"ITEM-{str(millis)[-6:]}"
    while code in taken:
        millis += 1
        code = f"ITEM-{str(millis)[-6:]}"
    return code


def create_fabric(context: RuntimeContext, command: FabricCommand) -> data_manager.FabricRow:
    """Validate and append a new catalog entry.

    The opening quantity becomes the fixed baseline that ledger movements
    accumulate on; it is never changed afterwards.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (FabricCommand): Structured creation intent.

    Returns:
        data_manager.FabricRow: Newly appended fabric.

    Raises:
        ValidationError: If the name is missing, or the opening quantity or a
            price is negative.
        ConstraintViolationError: If the product code is already taken.
    """
    name = require_text(command.name, field_name="name")
    opening_quantity = command.opening_quantity if command.opening_quantity is not None else Decimal("0")
    if not opening_quantity.is_finite() or opening_quantity < Decimal("0"):
        log.error("Opening quantity validation failed: %s", opening_quantity)
        raise ValidationError("opening_quantity", "must be zero or positive")
    for price_field in PRICE_FIELDS:
        require_nonnegative_money(getattr(command, price_field), field_name=price_field)

    timestamp = resolve_timestamp(command.timestamp)
    with transaction(context) as journal:
        if command.product_code:
            product_code = command.product_code.strip()
            if product_code in _ensure_fabrics_cache(context)["by_code"]:
                log.error("Product code '%s' already exists", product_code)
                raise ConstraintViolationError("product_code", product_code)
        else:
            product_code = generate_product_code(context, timestamp)

        fabric = data_manager.FabricRow(
            fabric_id=data_manager.next_sequence(context.workbook, "FabricID"),
            product_code=product_code,
            name=name,
            fabric_type=command.fabric_type or "General",
            color=command.color,
            pattern=command.pattern,
            opening_quantity=opening_quantity,
            unit=command.unit or context.settings.default_unit,
            cost_price=command.cost_price,
            mrp=command.mrp,
            selling_price=command.selling_price,
            supplier=command.supplier,
            description=command.description,
            image_ref=command.image_ref,
            created_at=timestamp.isoformat(),
            updated_at=timestamp.isoformat(),
        )
        data_manager.append_fabric(context.workbook, fabric, journal=journal)
        invalidate_cache(context, "fabrics")

    log.info(
        "Created fabric %s '%s' (code=%s, opening=%s %s)",
        fabric.fabric_id,
        fabric.name,
        fabric.product_code,
        fabric.opening_quantity,
        fabric.unit,
    )
    return fabric


def update_fabric(context: RuntimeContext, fabric_id: int, **fields: Any) -> data_manager.FabricRow:
    """Overwrite descriptive and pricing fields of an existing fabric.

    Only the supplied fields change; ``updated_at`` is always bumped. The
    opening quantity is write-once and cannot be changed here.

    Raises:
        ValidationError: For ``opening_quantity``, unknown fields, an empty
            name or code, or negative prices.
        NotFoundError: If ``fabric_id`` is unknown.
        ConstraintViolationError: If the new product code belongs to another
            fabric.
    """
    if "opening_quantity" in fields or "quantity" in fields:
        log.error("Rejected attempt to change the opening quantity of fabric %s", fabric_id)
        raise ValidationError("opening_quantity", "is write-once and cannot be updated")
    unknown = sorted(set(fields) - UPDATABLE_FABRIC_FIELDS)
    if unknown:
        raise ValidationError(unknown[0], "is not an updatable fabric field")
    if "name" in fields:
        fields["name"] = require_text(fields["name"], field_name="name")
    if "product_code" in fields:
        fields["product_code"] = require_text(fields["product_code"], field_name="product_code")
    for price_field in PRICE_FIELDS:
        if price_field in fields:
            require_nonnegative_money(fields[price_field], field_name=price_field)

    with transaction(context) as journal:
        current = get_fabric(context, fabric_id)
        new_code = fields.get("product_code")
        if new_code is not None and new_code != current.product_code:
            if new_code in _ensure_fabrics_cache(context)["by_code"]:
                log.error("Product code '%s' already exists", new_code)
                raise ConstraintViolationError("product_code", new_code)

        fields["updated_at"] = resolve_timestamp(None).isoformat()
        column_values = {data_manager.FABRIC_FIELD_COLUMNS[name]: value for name, value in fields.items()}
        data_manager.update_fabric(context.workbook, fabric_id, field_values=column_values, journal=journal)
        invalidate_cache(context, "fabrics")
        updated = get_fabric(context, fabric_id)

    log.info("Updated fabric %s (%s)", fabric_id, ", ".join(sorted(fields)))
    return updated


def delete_fabric(context: RuntimeContext, fabric_id: int) -> bool:
    """Delete a fabric and cascade the deletion to its ledger entries.

    Deleting an unknown id is a successful no-op that returns ``False``; any
    orphaned movements carrying that id are still removed.

    Raises:
        KeyError: If either sheet lacks its ``FabricID`` column. Nothing is
            deleted in that case.
    """
    with context._lock:
        # Both sheets are resolved before the first row is removed.
        data_manager.locate_row(context.workbook, data_manager.FABRICS_SHEET, "FabricID", fabric_id)
        removed = data_manager.delete_movements_for_fabric(context.workbook, fabric_id)
        deleted = data_manager.delete_fabric(context.workbook, fabric_id)
        invalidate_cache(context, "fabrics", "movements")

    if deleted:
        log.info("Deleted fabric %s and %d ledger entries", fabric_id, removed)
    else:
        log.warning("Delete requested for unknown fabric %s; %d orphan entries removed", fabric_id, removed)
    return deleted


def _fabric_stock(context: RuntimeContext, fabric: data_manager.FabricRow) -> FabricStock:
    latest = latest_movement(context, fabric.fabric_id)
    return FabricStock(
        fabric=fabric,
        current_stock=current_stock(context, fabric.fabric_id),
        latest_source=latest.source if latest else None,
        latest_payment_mode=latest.payment_mode if latest else None,
    )


def _newest_first(fabrics: Iterable[data_manager.FabricRow]) -> List[data_manager.FabricRow]:
    return sorted(fabrics, key=lambda f: (parse_timestamp(f.created_at), f.fabric_id), reverse=True)


def list_fabrics(context: RuntimeContext) -> List[FabricStock]:
    """Return every fabric with its derived stock, newest first."""
    return [_fabric_stock(context, fabric) for fabric in _newest_first(list_fabric_rows(context))]


def search_fabrics(
    context: RuntimeContext,
    *,
    query: Optional[str] = None,
    fabric_type: Optional[str] = None,
    color: Optional[str] = None,
    supplier: Optional[str] = None,
) -> List[FabricStock]:
    """Filter the catalog and attach derived stock to each match.

    ``query`` is a case-insensitive substring match against the name,
    description and product code; the other filters are exact matches.
    """
    needle = query.lower() if query else None
    matches = []
    for fabric in list_fabric_rows(context):
        if needle and not any(
            needle in (value or "").lower() for value in (fabric.name, fabric.description, fabric.product_code)
        ):
            continue
        if fabric_type and fabric.fabric_type != fabric_type:
            continue
        if color and fabric.color != color:
            continue
        if supplier and fabric.supplier != supplier:
            continue
        matches.append(fabric)
    return [_fabric_stock(context, fabric) for fabric in _newest_first(matches)]


def list_storefront(context: RuntimeContext) -> List[StorefrontItem]:
    """Return the fabrics a customer can order, sorted by name.

    Only fabrics with positive current stock are listed. The price offered is
    the selling price.
    """
    items = []
    for fabric in list_fabric_rows(context):
        stock = current_stock(context, fabric.fabric_id)
        if stock <= Decimal("0"):
            continue
        items.append(
            StorefrontItem(
                fabric_id=fabric.fabric_id,
                name=fabric.name,
                fabric_type=fabric.fabric_type,
                color=fabric.color,
                pattern=fabric.pattern,
                description=fabric.description,
                price=fabric.selling_price,
                unit=fabric.unit,
                stock=stock,
                image_ref=fabric.image_ref,
                supplier=fabric.supplier,
                available=stock > Decimal("0"),
            )
        )
    return sorted(items, key=lambda item: (item.name.lower(), item.fabric_id))


# ---------------------------------------------------------------------------
# Inventory ledger and stock projector
# ---------------------------------------------------------------------------


def project_stock(opening_quantity: Decimal, movements: Iterable[data_manager.MovementRow]) -> Decimal:
    """Fold ledger entries onto an opening quantity.

    Returns ``opening_quantity + sum(in) - sum(out)``.

    Raises:
        ValueError: If a movement carries a direction outside ``in``/``out``.
    """
    balance = opening_quantity
    for movement in movements:
        if movement.direction == Direction.IN.value:
            balance += movement.quantity
        elif movement.direction == Direction.OUT.value:
            balance -= movement.quantity
        else:
            raise ValueError(f"Unknown movement direction {movement.direction!r} on {movement.movement_id}")
    return balance


def movements_for(context: RuntimeContext, fabric_id: int) -> List[data_manager.MovementRow]:
    """Return the ledger entries of one fabric in insertion order."""
    return list(_ensure_movements_cache(context)["by_fabric"].get(fabric_id, ()))


def current_stock(context: RuntimeContext, fabric_id: int) -> Decimal:
    """Derive the current stock of a fabric from its opening quantity and ledger.

    Raises:
        NotFoundError: If ``fabric_id`` is unknown.
    """
    with context._lock:
        fabric = get_fabric(context, fabric_id)
        return project_stock(fabric.opening_quantity, movements_for(context, fabric_id))


def calculate_inventory(context: RuntimeContext) -> Dict[int, Decimal]:
    """Compute current stock for every fabric, keyed by fabric id."""
    with context._lock:
        inventory = {fabric.fabric_id: current_stock(context, fabric.fabric_id) for fabric in list_fabric_rows(context)}
    log.debug("Calculated inventory balances for %d fabrics", len(inventory))
    return inventory


def _movement_sort_key(movement: data_manager.MovementRow) -> Tuple[datetime, int]:
    return parse_timestamp(movement.movement_date), movement.movement_id


def latest_movement(context: RuntimeContext, fabric_id: int) -> Optional[data_manager.MovementRow]:
    """Return the most recent ledger entry of a fabric.

    Entries are ordered by movement date and then by id, so the later insert
    wins when two entries share a timestamp.
    """
    movements = movements_for(context, fabric_id)
    if not movements:
        return None
    return max(movements, key=_movement_sort_key)


def require_available_stock(context: RuntimeContext, fabric_id: int, requested: Decimal) -> Decimal:
    """Ensure ``requested`` can leave the fabric's stock and return the stock.

    Raises:
        NotFoundError: If ``fabric_id`` is unknown.
        InsufficientStockError: If ``requested`` exceeds current stock.
    """
    available = current_stock(context, fabric_id)
    if available < requested:
        log.error(
            "Insufficient stock for fabric %s. Available: %s, Requested: %s",
            fabric_id,
            available,
            requested,
        )
        raise InsufficientStockError(fabric_id, requested, available)
    return available


def append_movement(context: RuntimeContext, command: MovementCommand) -> data_manager.MovementRow:
    """Validate and append one ledger entry.

    ``total_value`` is computed here once and stored, so later price changes
    never rewrite history. Outbound entries go through the same stock check
    as batch orders.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (MovementCommand): Structured movement intent.

    Returns:
        data_manager.MovementRow: Newly appended ledger entry.

    Raises:
        ValidationError: If the direction is not ``in``/``out``, the quantity
            is not positive or the unit price is negative.
        NotFoundError: If the fabric is unknown.
        InsufficientStockError: If an outbound quantity exceeds current stock.
    """
    direction = coerce_direction(command.direction)
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.unit_price, field_name="unit_price")

    timestamp = resolve_timestamp(command.timestamp)
    with transaction(context) as journal:
        get_fabric(context, command.fabric_id)
        if direction is Direction.OUT:
            require_available_stock(context, command.fabric_id, command.quantity)

        movement = data_manager.MovementRow(
            movement_id=data_manager.next_sequence(context.workbook, "MovementID"),
            fabric_id=command.fabric_id,
            direction=direction.value,
            quantity=command.quantity,
            unit_price=command.unit_price,
            total_value=command.quantity * command.unit_price,
            reference=command.reference,
            source=command.source,
            payment_mode=command.payment_mode,
            movement_date=timestamp.isoformat(),
        )
        data_manager.append_movement(context.workbook, movement, journal=journal)
        invalidate_cache(context, "movements")

    log.info(
        "Recorded '%s' movement %s for fabric %s (quantity=%s, reference=%s)",
        movement.direction,
        movement.movement_id,
        movement.fabric_id,
        movement.quantity,
        movement.reference,
    )
    return movement


def list_movements(context: RuntimeContext, *, fabric_id: Optional[int] = None) -> List[data_manager.MovementRow]:
    """Return ledger entries newest first, optionally for a single fabric."""
    if fabric_id is not None:
        movements = movements_for(context, fabric_id)
    else:
        movements = list(_ensure_movements_cache(context)["all"])
    return sorted(movements, key=_movement_sort_key, reverse=True)


def group_movements(movements: Sequence[data_manager.MovementRow]) -> List[ReferenceGroup]:
    """Group entries by shared reference, in order of first appearance.

    Entries without a reference belong to no batch and are skipped.
    """
    grouped: Dict[str, List[data_manager.MovementRow]] = {}
    for movement in movements:
        if not movement.reference:
            continue
        grouped.setdefault(movement.reference, []).append(movement)

    return [
        ReferenceGroup(
            reference=reference,
            movements=tuple(lines),
            total_quantity=sum((line.quantity for line in lines), Decimal("0")),
            total_value=sum((line.total_value for line in lines), Decimal("0")),
        )
        for reference, lines in grouped.items()
    ]


def group_by_reference(context: RuntimeContext, reference: Optional[str] = None) -> List[ReferenceGroup]:
    """Rebuild logical transactions from the ledger's shared references.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        reference (str | None): When given, only that reference is grouped.

    Returns:
        list[ReferenceGroup]: One group per distinct reference, with summed
            quantity and value.
    """
    movements = _ensure_movements_cache(context)["all"]
    if reference is not None:
        movements = [movement for movement in movements if movement.reference == reference]
    return group_movements(movements)
