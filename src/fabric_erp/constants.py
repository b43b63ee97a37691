"""Enumerations shared across the fabric ERP modules.

Centralises domain constants so that the data access layer (DAL), the
ledger engine, and the command-line front-end rely on a single source of
truth for closed tags and sheet identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class Direction(str, Enum):
    """Closed set of stock movement directions recorded in the ledger."""

    IN = "in"
    OUT = "out"


class PurchaseStatus(str, Enum):
    """Lifecycle states of a purchase batch."""

    ORDERED = "ordered"
    PENDING = "pending"
    RECEIVED = "received"


class MovementSource(str, Enum):
    """Channels that stamp movements written by the engine itself."""

    ECOMMERCE = "E-commerce"
    SALES = "Sales"
    PURCHASE = "Purchase"
    MANUAL_ENTRY = "Manual Entry"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    FABRICS = "Fabrics"
    MOVEMENTS = "InventoryMovements"
    SALES = "Sales"
    PURCHASES = "Purchases"
    SEQUENCES = "Sequences"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "Direction",
    "PurchaseStatus",
    "MovementSource",
    "SheetName",
]
