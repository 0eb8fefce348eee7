"""In-progress invoices and the operations a front end performs on them.

An :class:`InvoiceDraft` is plain mutable state. All editing goes through an
:class:`InvoiceEditor`, which is handed explicit snapshots of the catalog,
the latest prices, and today's stock when it is created, and which keeps
every line's total consistent after each call. Editor variants differ only
through :class:`EditorPolicy`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import InvoiceType, PriceType
from .data_manager import PriceRecordRow, ProductRow
from .errors import (
    BusinessRuleViolation,
    DuplicateProduct,
    InvalidQuantity,
    InvoiceValidationError,
    MissingReferenceError,
)
from .pricing import ZERO, PriceNotSet, default_price_type, effective_price, line_total, list_price, resolve_price
from .stock_ledger import StockLedgerView
from . import validation


_WHITESPACE = re.compile(r"\s+")


def normalize_code(value: Optional[str]) -> Optional[str]:
    """Normalize a barcode or SKU for comparison.

    All whitespace is removed, not just trimmed, and letters are upper-cased,
    so ``"abc 123"`` and ``"ABC123"`` are the same code. Empty input yields
    ``None``.
    """

    if not value:
        return None
    normalized = _WHITESPACE.sub("", str(value)).upper()
    return normalized or None


@dataclass
class InvoiceLine:
    product_id: Optional[str] = None
    quantity: int = 1
    unit_price: Decimal = ZERO
    price_type: PriceType = PriceType.RETAIL
    total_price: Decimal = ZERO
    is_private_price: bool = False
    private_price_amount: Decimal = ZERO
    private_price_note: str = ""
    barcode: Optional[str] = None

    @property
    def effective_price(self) -> Decimal:
        return effective_price(self.unit_price, self.is_private_price, self.private_price_amount)


@dataclass
class InvoiceDraft:
    """An invoice being built or edited.

    ``counterparty_id`` is the customer on a sell invoice and the supplier on
    a buy invoice. ``invoice_id`` is only set when the draft was loaded from
    a persisted invoice.
    """

    invoice_type: InvoiceType
    counterparty_id: Optional[str] = None
    due_date: Optional[date] = None
    lines: List[InvoiceLine] = field(default_factory=list)
    has_payments: bool = False
    invoice_id: Optional[str] = None

    @property
    def customer_id(self) -> Optional[str]:
        return self.counterparty_id if self.invoice_type is InvoiceType.SELL else None

    @property
    def supplier_id(self) -> Optional[str]:
        return self.counterparty_id if self.invoice_type is InvoiceType.BUY else None

    @property
    def total(self) -> Decimal:
        return sum((line.total_price for line in self.lines), ZERO)

    def selected_lines(self) -> List[Tuple[int, InvoiceLine]]:
        """Return ``(index, line)`` pairs for lines with a product chosen."""

        return [(index, line) for index, line in enumerate(self.lines) if line.product_id is not None]


@dataclass(frozen=True)
class EditorPolicy:
    """Switches separating the editor variants.

    ``enforce_stock_ceiling`` caps sell quantities by effective stock, both
    while editing and at submission. ``merge_duplicate_scans`` turns a scan
    of a product already on the invoice into ``+1`` on its line instead of a
    duplicate-product error.
    """

    enforce_stock_ceiling: bool = True
    merge_duplicate_scans: bool = False


class CatalogIndex:
    """Product lookups by id, barcode, and SKU, built once per catalog snapshot."""

    def __init__(self, products: Iterable[ProductRow]) -> None:
        self._by_id: Dict[str, ProductRow] = {}
        self._by_barcode: Dict[str, ProductRow] = {}
        self._by_sku: Dict[str, ProductRow] = {}
        for product in products:
            self._by_id[product.product_id] = product
            barcode = normalize_code(product.barcode)
            if barcode is not None:
                self._by_barcode.setdefault(barcode, product)
            sku = normalize_code(product.sku)
            if sku is not None:
                self._by_sku.setdefault(sku, product)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, product_id: str) -> ProductRow:
        try:
            return self._by_id[product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise MissingReferenceError(f"Unknown product id: {product_id}") from exc

    def name_of(self, product_id: str) -> str:
        product = self._by_id.get(product_id)
        return product.product_name if product is not None else product_id

    def names(self) -> Dict[str, str]:
        return {product_id: product.product_name for product_id, product in self._by_id.items()}

    def lookup(self, code: str) -> ProductRow:
        """Resolve a scanned or typed code, barcode matches first.

        Raises:
            MissingReferenceError: When neither a barcode nor a SKU matches.
        """

        normalized = normalize_code(code)
        if normalized is not None:
            product = self._by_barcode.get(normalized) or self._by_sku.get(normalized)
            if product is not None:
                return product
        log.warning("No product matches code '%s'", code)
        raise MissingReferenceError(f"No product matches barcode or SKU: {code}")


class InvoiceEditor:
    """Single source of truth for line edits on a draft.

    Args:
        draft (InvoiceDraft): State being edited in place.
        catalog (CatalogIndex): Products that may be chosen.
        prices (Mapping[str, PriceRecordRow]): Latest price record per product.
        ledger (StockLedgerView): Stock ceiling over today's snapshot.
        policy (EditorPolicy): Variant switches.
    """

    def __init__(
        self,
        draft: InvoiceDraft,
        catalog: CatalogIndex,
        prices: Mapping[str, PriceRecordRow],
        ledger: StockLedgerView,
        policy: EditorPolicy = EditorPolicy(),
    ) -> None:
        self.draft = draft
        self.catalog = catalog
        self.prices = prices
        self.ledger = ledger
        self.policy = policy
        self.warnings: List[PriceNotSet] = []
        self._line_index: Dict[str, int] = {}
        self._reindex()

    @property
    def lines(self) -> List[InvoiceLine]:
        return self.draft.lines

    @property
    def total(self) -> Decimal:
        return self.draft.total

    # -- queries -----------------------------------------------------------

    def is_duplicate(self, product_id: str, *, ignore_index: Optional[int] = None) -> Optional[int]:
        """Return the index of the line already holding ``product_id``, if any."""

        index = self._line_index.get(product_id)
        if index is None or index == ignore_index:
            return None
        return index

    def available_for(self, index: int) -> Optional[int]:
        """How many units line ``index`` could hold; ``None`` when uncapped."""

        line = self.lines[index]
        if line.product_id is None:
            return None
        return self.ledger.available(line.product_id, self.lines, exclude_index=index)

    def find_violation(self) -> Optional[InvoiceValidationError]:
        return validation.find_violation(
            self.draft,
            self.ledger,
            product_names=self.catalog.names(),
            enforce_stock_ceiling=self.policy.enforce_stock_ceiling,
        )

    def validate(self) -> None:
        validation.validate(
            self.draft,
            self.ledger,
            product_names=self.catalog.names(),
            enforce_stock_ceiling=self.policy.enforce_stock_ceiling,
        )

    # -- header ------------------------------------------------------------

    def set_counterparty(self, counterparty_id: Optional[str]) -> None:
        self.draft.counterparty_id = counterparty_id or None

    def set_due_date(self, due_date: Optional[date]) -> None:
        self.draft.due_date = due_date

    # -- line set ----------------------------------------------------------

    def add_line(self, product_id: Optional[str] = None, quantity: int = 1, *, barcode: Optional[str] = None) -> Optional[int]:
        """Append a line, optionally with a product already chosen.

        Returns:
            int | None: Index of the new line, or ``None`` when the invoice
                has payments and its line set is frozen.

        Raises:
            DuplicateProduct: If ``product_id`` is already on another line.
            InsufficientStock: If ``quantity`` exceeds effective stock.
            InvalidQuantity: If ``quantity`` is not positive.
            MissingReferenceError: If ``product_id`` is unknown.
        """

        if self.draft.has_payments:
            log.warning("Refusing to add a line: invoice has payments")
            return None
        _require_positive_quantity(quantity, product_id)

        self.lines.append(InvoiceLine(quantity=quantity, price_type=default_price_type(self.draft.invoice_type)))
        index = len(self.lines) - 1
        if product_id is not None:
            try:
                self.set_product(index, product_id, barcode=barcode)
            except BusinessRuleViolation:
                self.lines.pop()
                raise
        log.info("Added line %d (product=%s, quantity=%s)", index, product_id, quantity)
        return index

    def remove_line(self, index: int) -> bool:
        """Delete line ``index``; refused once the invoice has payments."""

        if self.draft.has_payments:
            log.warning("Refusing to remove line %d: invoice has payments", index)
            return False
        removed = self.lines.pop(index)
        self._reindex()
        log.info("Removed line %d (product=%s)", index, removed.product_id)
        return True

    # -- line edits --------------------------------------------------------

    def set_product(self, index: int, product_id: str, *, barcode: Optional[str] = None) -> int:
        """Choose the product of line ``index`` and price it.

        Sell lines take the retail price of the latest price record. Buy
        lines switch to the wholesale type with a zero cost for the operator
        to fill in.

        Raises:
            DuplicateProduct: With ``existing_index`` set to the line that
                already holds the product.
            InsufficientStock: If the line's quantity does not fit.
            MissingReferenceError: If ``product_id`` is unknown.
        """

        product = self.catalog.get(product_id)
        existing = self.is_duplicate(product_id, ignore_index=index)
        if existing is not None:
            log.warning("Product '%s' is already on line %d", product_id, existing)
            raise DuplicateProduct([product_id], existing_index=existing)

        line = self.lines[index]
        if self.policy.enforce_stock_ceiling:
            self.ledger.require_available(
                product_id,
                self.lines,
                line.quantity,
                exclude_index=index,
                product_name=product.product_name,
            )

        price_type = default_price_type(self.draft.invoice_type)
        resolved = resolve_price(
            product_id,
            self.prices.get(product_id),
            invoice_type=self.draft.invoice_type,
            price_type=price_type,
            is_private=False,
            private_amount=ZERO,
            quantity=line.quantity,
        )
        line.product_id = product_id
        line.barcode = barcode
        line.price_type = price_type
        line.unit_price = resolved.unit_price
        if resolved.warning is not None:
            self.warnings.append(resolved.warning)
        self._recompute(line)
        self._reindex()
        return index

    def set_quantity(self, index: int, quantity: int) -> None:
        """Change a line's quantity.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive.
            InsufficientStock: If an increase exceeds effective stock.
        """

        line = self.lines[index]
        _require_positive_quantity(quantity, line.product_id)
        if self.policy.enforce_stock_ceiling:
            name = self.catalog.name_of(line.product_id) if line.product_id else None
            self.ledger.check_quantity(self.lines, index, quantity, product_name=name)
        line.quantity = quantity
        self._recompute(line)

    def set_price_type(self, index: int, price_type: PriceType) -> None:
        """Switch between retail and wholesale; sell lines are re-priced."""

        line = self.lines[index]
        line.price_type = price_type
        if line.product_id is not None and self.draft.invoice_type is InvoiceType.SELL:
            unit_price, warning = list_price(line.product_id, self.prices.get(line.product_id), price_type)
            line.unit_price = unit_price
            if warning is not None:
                self.warnings.append(warning)
        self._recompute(line)

    def set_unit_price(self, index: int, unit_price: Decimal) -> None:
        """Set the unit price by hand; this is how buy lines receive their cost."""

        _require_nonnegative_money(unit_price)
        line = self.lines[index]
        line.unit_price = unit_price
        self._recompute(line)

    def set_private_price(self, index: int, enabled: bool) -> None:
        """Toggle the private override; turning it off clears amount and note."""

        line = self.lines[index]
        line.is_private_price = enabled
        if not enabled:
            line.private_price_amount = ZERO
            line.private_price_note = ""
        self._recompute(line)

    def set_private_amount(self, index: int, amount: Decimal) -> None:
        _require_nonnegative_money(amount)
        line = self.lines[index]
        line.private_price_amount = amount
        self._recompute(line)

    def set_private_note(self, index: int, note: str) -> None:
        self.lines[index].private_price_note = note

    def scan(self, code: str) -> Optional[int]:
        """Handle a scanner or typed barcode/SKU.

        A product already on the invoice is either merged (+1 on its line)
        or reported as a duplicate, depending on the policy. Otherwise the
        product fills the first blank line, or a new line when there is none.

        Returns:
            int | None: Index of the line that received the product, or
                ``None`` when a new line was needed but the invoice has
                payments.

        Raises:
            MissingReferenceError: If no product matches ``code``.
            DuplicateProduct: If the product is on a line and merging is off.
            InsufficientStock: If the merge or new line exceeds stock.
        """

        product = self.catalog.lookup(code)
        existing = self.is_duplicate(product.product_id)
        if existing is not None:
            if not self.policy.merge_duplicate_scans:
                raise DuplicateProduct([product.product_id], existing_index=existing)
            self.set_quantity(existing, self.lines[existing].quantity + 1)
            log.info("Merged scan of '%s' into line %d", product.product_id, existing)
            return existing

        for index, line in enumerate(self.lines):
            if line.product_id is None:
                return self.set_product(index, product.product_id, barcode=code)
        return self.add_line(product.product_id, barcode=code)

    # -- internals ---------------------------------------------------------

    def _recompute(self, line: InvoiceLine) -> None:
        line.total_price = line_total(line.unit_price, line.quantity, line.is_private_price, line.private_price_amount)

    def _reindex(self) -> None:
        index: Dict[str, int] = {}
        for position, line in enumerate(self.lines):
            if line.product_id is not None:
                index.setdefault(line.product_id, position)
        self._line_index = index


def _require_positive_quantity(quantity: int, product_id: Optional[str]) -> None:
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidQuantity([product_id or ""])


def _require_nonnegative_money(amount: Decimal) -> None:
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")
