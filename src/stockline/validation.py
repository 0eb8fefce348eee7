"""Submission checks for an invoice draft.

The checks run in a fixed order and the first failure wins, so the same
draft always reports the same problem:

1. counterparty selected
2. at least one line with a product
3. no product on two lines
4. positive quantities
5. buy invoices: positive cost on every line
6. sell invoices: positive effective price on every line
7. sell invoices: enough effective stock on every line

Lines without a product are ignored by checks 3 to 7; they are dropped when
the invoice is persisted.
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Callable, List, Mapping, Optional

from . import log
from .constants import InvoiceType
from .errors import (
    DuplicateProduct,
    EmptyInvoice,
    InsufficientStock,
    InvalidQuantity,
    InvoiceValidationError,
    MissingCost,
    MissingCounterparty,
    MissingPrice,
)
from .pricing import ZERO
from .stock_ledger import StockLedgerView

if TYPE_CHECKING:
    from .draft import InvoiceDraft


def _check_counterparty(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    if not draft.counterparty_id:
        role = "customer" if draft.invoice_type is InvoiceType.SELL else "supplier"
        return MissingCounterparty(role)
    return None


def _check_not_empty(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    if not draft.selected_lines():
        return EmptyInvoice()
    return None


def _check_duplicates(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    counts = Counter(line.product_id for _, line in draft.selected_lines())
    duplicates = [product_id for product_id, count in counts.items() if count > 1]
    if duplicates:
        return DuplicateProduct(duplicates)
    return None


def _check_quantities(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    offending = [line.product_id for _, line in draft.selected_lines() if line.quantity <= 0]
    if offending:
        return InvalidQuantity(offending)
    return None


def _check_costs(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    if draft.invoice_type is not InvoiceType.BUY:
        return None
    offending = [line.product_id for _, line in draft.selected_lines() if line.unit_price <= ZERO]
    if offending:
        return MissingCost(offending)
    return None


def _check_prices(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    if draft.invoice_type is not InvoiceType.SELL:
        return None
    offending = [
        names.get(line.product_id, line.product_id)
        for _, line in draft.selected_lines()
        if line.effective_price <= ZERO
    ]
    if offending:
        return MissingPrice(offending)
    return None


def _check_stock(draft: "InvoiceDraft", ledger: StockLedgerView, names: Mapping[str, str]) -> Optional[InvoiceValidationError]:
    if draft.invoice_type is not InvoiceType.SELL:
        return None
    for index, line in draft.selected_lines():
        available = ledger.available(line.product_id, draft.lines, exclude_index=index)
        if available is not None and line.quantity > available:
            return InsufficientStock(
                names.get(line.product_id, line.product_id),
                line.quantity,
                available,
                product_id=line.product_id,
            )
    return None


Check = Callable[["InvoiceDraft", StockLedgerView, Mapping[str, str]], Optional[InvoiceValidationError]]

CHECKS: tuple[Check, ...] = (
    _check_counterparty,
    _check_not_empty,
    _check_duplicates,
    _check_quantities,
    _check_costs,
    _check_prices,
    _check_stock,
)


def find_violation(
    draft: "InvoiceDraft",
    ledger: StockLedgerView,
    *,
    product_names: Optional[Mapping[str, str]] = None,
    enforce_stock_ceiling: bool = True,
) -> Optional[InvoiceValidationError]:
    """Return the first failing check for ``draft``, or ``None`` when it may be submitted.

    Args:
        draft (InvoiceDraft): Invoice being validated.
        ledger (StockLedgerView): Stock ceiling over today's snapshot.
        product_names (Mapping[str, str] | None): Display names used in error
            details; product ids are used when a name is unknown.
        enforce_stock_ceiling (bool): ``False`` skips the stock check for
            editor variants that do not cap quantities.
    """

    names = product_names or {}
    checks: List[Check] = list(CHECKS)
    if not enforce_stock_ceiling:
        checks.remove(_check_stock)
    for check in checks:
        violation = check(draft, ledger, names)
        if violation is not None:
            return violation
    return None


def validate(
    draft: "InvoiceDraft",
    ledger: StockLedgerView,
    *,
    product_names: Optional[Mapping[str, str]] = None,
    enforce_stock_ceiling: bool = True,
) -> None:
    """Raise the first failing check for ``draft``.

    Raises:
        InvoiceValidationError: The subclass matching the first failed check.
    """

    violation = find_violation(
        draft,
        ledger,
        product_names=product_names,
        enforce_stock_ceiling=enforce_stock_ceiling,
    )
    if violation is not None:
        log.error("Invoice validation failed (%s): %s", violation.kind.value, violation.detail)
        raise violation
