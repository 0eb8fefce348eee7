"""Enumerations shared across the stockline modules.

Centralises domain constants so that the workbook data layer, the
reconciliation engine, and the CLI rely on a single source of truth for
invoice types, price columns, and validation outcomes.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class InvoiceType(str, Enum):
    """Enumerate the two directions an invoice can move stock."""

    BUY = "buy"
    SELL = "sell"


class PriceType(str, Enum):
    """Enumerate the price columns a sell line can draw from."""

    RETAIL = "retail"
    WHOLESALE = "wholesale"


class ViolationKind(str, Enum):
    """Enumerate the submission checks, in the order they are evaluated."""

    MISSING_COUNTERPARTY = "MissingCounterparty"
    EMPTY_INVOICE = "EmptyInvoice"
    DUPLICATE_PRODUCT = "DuplicateProduct"
    INVALID_QUANTITY = "InvalidQuantity"
    MISSING_COST = "MissingCost"
    MISSING_PRICE = "MissingPrice"
    INSUFFICIENT_STOCK = "InsufficientStock"


class PaymentStatus(str, Enum):
    """Enumerate how much of an invoice total has been paid."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    PRODUCT_PRICES = "ProductPrices"
    DAILY_STOCK = "DailyStock"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "InvoiceType",
    "PriceType",
    "ViolationKind",
    "PaymentStatus",
    "SheetName",
]
