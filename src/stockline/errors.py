"""Typed error hierarchy for the reconciliation engine.

Validation errors are always recoverable: they name the offending products
and quantities so a front end can render an actionable message, and they
leave the in-progress draft untouched. External-write failures are kept in a
separate branch because they must never be retried automatically.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from .constants import ViolationKind


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, invoice, or barcode is unknown."""


class InvoiceValidationError(BusinessRuleViolation):
    """Base class for the checks an invoice must pass before submission."""

    kind: ViolationKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.detail = message


class MissingCounterparty(InvoiceValidationError):
    kind = ViolationKind.MISSING_COUNTERPARTY

    def __init__(self, role: str = "counterparty") -> None:
        super().__init__(f"Please select a {role}")
        self.role = role


class EmptyInvoice(InvoiceValidationError):
    kind = ViolationKind.EMPTY_INVOICE

    def __init__(self) -> None:
        super().__init__("Invoice has no line with a product selected")


class DuplicateProduct(InvoiceValidationError):
    """Raised when a product id appears on more than one line.

    ``existing_index`` points at the line already holding the product when the
    error is raised by the editor, so callers can steer the operator there.
    """

    kind = ViolationKind.DUPLICATE_PRODUCT

    def __init__(self, product_ids: Sequence[str], existing_index: Optional[int] = None) -> None:
        self.product_ids: Tuple[str, ...] = tuple(product_ids)
        self.existing_index = existing_index
        super().__init__(f"Duplicate product lines: {', '.join(self.product_ids)}")


class InvalidQuantity(InvoiceValidationError):
    kind = ViolationKind.INVALID_QUANTITY

    def __init__(self, product_ids: Sequence[str]) -> None:
        self.product_ids: Tuple[str, ...] = tuple(product_ids)
        super().__init__(f"Quantity must be greater than zero for: {', '.join(self.product_ids)}")


class MissingCost(InvoiceValidationError):
    kind = ViolationKind.MISSING_COST

    def __init__(self, product_ids: Sequence[str]) -> None:
        self.product_ids: Tuple[str, ...] = tuple(product_ids)
        super().__init__(f"Please enter the purchase cost for: {', '.join(self.product_ids)}")


class MissingPrice(InvoiceValidationError):
    kind = ViolationKind.MISSING_PRICE

    def __init__(self, product_names: Sequence[str]) -> None:
        self.product_names: Tuple[str, ...] = tuple(product_names)
        super().__init__(f"Price not set for: {', '.join(self.product_names)}")


class InsufficientStock(InvoiceValidationError):
    kind = ViolationKind.INSUFFICIENT_STOCK

    def __init__(self, product_name: str, requested: int, available: int, *, product_id: Optional[str] = None) -> None:
        self.product_name = product_name
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}"
        )


class SubmissionRejected(RuntimeError):
    """Raised when the store refuses to persist an invoice.

    The reconciliation checks run against a client-held snapshot and can go
    stale; the store performs its own commit-time check and surfaces its
    refusal through this error. Callers must re-fetch state rather than retry.
    """


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvoiceValidationError",
    "MissingCounterparty",
    "EmptyInvoice",
    "DuplicateProduct",
    "InvalidQuantity",
    "MissingCost",
    "MissingPrice",
    "InsufficientStock",
    "SubmissionRejected",
]
