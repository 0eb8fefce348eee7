"""Business logic layer for stockline.

This module wires the reconciliation engine to the workbook store. It loads
the catalog, price and stock snapshots an editor needs, hands them over
explicitly, and turns finished drafts into persisted invoices. All workbook
I/O goes through :mod:`stockline.data_manager`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, profit
from .constants import EXPECTED_SCHEMA_VERSION, InvoiceType, PriceType
from .cost_history import CostHistoryResolver, CostLookup
from .draft import CatalogIndex, EditorPolicy, InvoiceDraft, InvoiceEditor, InvoiceLine
from .errors import BusinessRuleViolation, MissingReferenceError
from .pricing import ZERO
from .stock_ledger import StockLedgerView


INVOICE_ID_PREFIXES: Dict[InvoiceType, str] = {
    InvoiceType.SELL: "S",
    InvoiceType.BUY: "B",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_today(candidate: Optional[date]) -> date:
    return candidate if candidate is not None else _resolve_timestamp(None).date()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold query results keyed by domain area (products, prices,
    invoices) so repeated editor setups do not rescan the workbook.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for the bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so later reads see the workbook again."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        products = data_manager.list_products(context.workbook)
        bucket["all"] = products
        bucket["catalog"] = CatalogIndex(products)
        log.debug("Cached %d products", len(products))
    return bucket


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "invoices")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_invoices(context.workbook))
        log.debug("Cached %d invoices", len(bucket["all"]))
    return bucket


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

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
    log.info("Loaded runtime context for store '%s' (%s)", settings.store_name, settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to write into a workbook laid out for another schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
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
    """Save in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved edits and every cache.

    A caller whose submission was rejected uses this to re-fetch state
    before the operator decides what to do next.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return the cached catalog in sheet order."""

    return list(_ensure_products_cache(context)["all"])


def build_catalog_index(context: RuntimeContext) -> CatalogIndex:
    """Return the cached id/barcode/SKU index over the catalog."""

    return _ensure_products_cache(context)["catalog"]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is not in the catalog.
    """

    return build_catalog_index(context).get(product_id)


def latest_prices(context: RuntimeContext, *, as_of: Optional[date] = None) -> Dict[str, data_manager.PriceRecordRow]:
    """Return the latest price record per product effective on ``as_of``."""

    day = _resolve_today(as_of)
    bucket = _get_cache_bucket(context, "prices")
    key = day.isoformat()
    if key not in bucket:
        bucket[key] = data_manager.latest_prices_for_all_products(context.workbook, as_of=day)
    return dict(bucket[key])


def stock_snapshot(context: RuntimeContext, *, today: Optional[date] = None) -> Dict[str, int]:
    """Return available quantity per product as of ``today``."""

    return data_manager.today_stock_snapshot(context.workbook, today=_resolve_today(today))


def stock_history(context: RuntimeContext, *, end_date: Optional[date] = None) -> List[data_manager.DailyStockRow]:
    """Return stock snapshots up to ``end_date``, capped by ``[Reports] HistoryLimit``."""

    return data_manager.daily_stock_history(
        context.workbook,
        end_date=_resolve_today(end_date),
        limit=context.settings.history_limit,
    )


def list_invoices(context: RuntimeContext) -> List[data_manager.InvoiceRow]:
    """Return every persisted invoice header in workbook order."""

    return list(_ensure_invoices_cache(context)["all"])


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Resolve an invoice header by identifier.

    Raises:
        MissingReferenceError: If no invoice carries ``invoice_id``.
    """

    for invoice in _ensure_invoices_cache(context)["all"]:
        if invoice.invoice_id == invoice_id:
            return invoice
    log.warning("Invoice lookup failed for id '%s'", invoice_id)
    raise MissingReferenceError(f"Unknown invoice id: {invoice_id}")


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


def editor_policy(context: RuntimeContext) -> EditorPolicy:
    settings = context.settings
    return EditorPolicy(
        enforce_stock_ceiling=settings.enforce_stock_ceiling,
        merge_duplicate_scans=settings.merge_duplicate_scans,
    )


def open_draft(
    context: RuntimeContext,
    invoice_type: InvoiceType,
    *,
    today: Optional[date] = None,
) -> InvoiceEditor:
    """Start a new invoice over fresh catalog, price and stock snapshots.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        invoice_type (InvoiceType): Buy or sell.
        today (date | None): Day whose prices and stock apply; defaults to
            the current UTC date.

    Returns:
        InvoiceEditor: Editor over an empty draft.
    """

    day = _resolve_today(today)
    ledger = StockLedgerView(invoice_type, stock_snapshot(context, today=day))
    editor = InvoiceEditor(
        InvoiceDraft(invoice_type=invoice_type),
        build_catalog_index(context),
        latest_prices(context, as_of=day),
        ledger,
        editor_policy(context),
    )
    log.info("Opened %s draft for %s", invoice_type.value, day)
    return editor


def open_invoice(
    context: RuntimeContext,
    invoice_id: str,
    *,
    today: Optional[date] = None,
) -> InvoiceEditor:
    """Rebuild an editor from a persisted invoice.

    Today's snapshot already has the invoice's own sell quantities taken
    out, so those quantities are released back to the ledger. The line set
    is frozen when the invoice has payments.

    Raises:
        MissingReferenceError: If ``invoice_id`` is unknown.
    """

    day = _resolve_today(today)
    invoice = get_invoice(context, invoice_id)
    items = data_manager.invoice_items_for(context.workbook, invoice_id)
    invoice_type = InvoiceType(invoice.invoice_type)

    released: Dict[str, int] = {}
    if invoice_type is InvoiceType.SELL:
        for item in items:
            released[item.product_id] = released.get(item.product_id, 0) + item.quantity

    draft = InvoiceDraft(
        invoice_type=invoice_type,
        counterparty_id=invoice.customer_id if invoice_type is InvoiceType.SELL else invoice.supplier_id,
        due_date=invoice.due_date,
        lines=[_line_from_item(item) for item in items],
        has_payments=invoice.has_payments,
        invoice_id=invoice.invoice_id,
    )
    ledger = StockLedgerView(invoice_type, stock_snapshot(context, today=day), released=released)
    log.info("Opened invoice '%s' for editing (%d lines, payments=%s)", invoice_id, len(items), draft.has_payments)
    return InvoiceEditor(
        draft,
        build_catalog_index(context),
        latest_prices(context, as_of=day),
        ledger,
        editor_policy(context),
    )


def _line_from_item(item: data_manager.InvoiceItemRow) -> InvoiceLine:
    return InvoiceLine(
        product_id=item.product_id,
        quantity=item.quantity,
        unit_price=item.unit_price,
        price_type=PriceType(item.price_type) if item.price_type else PriceType.RETAIL,
        total_price=item.total_price,
        is_private_price=item.is_private_price,
        private_price_amount=item.private_price_amount or ZERO,
        private_price_note=item.private_price_note or "",
        barcode=item.barcode,
    )


def build_invoice_rows(
    draft: InvoiceDraft,
    *,
    invoice_id: str,
    invoice_date: date,
    amount_paid: Decimal = Decimal("0.00"),
) -> Tuple[data_manager.InvoiceRow, List[data_manager.InvoiceItemRow]]:
    """Convert a draft into store rows; lines without a product are dropped."""

    items = [
        data_manager.InvoiceItemRow(
            invoice_id=invoice_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            price_type=line.price_type.value,
            total_price=line.total_price,
            is_private_price=line.is_private_price,
            private_price_amount=line.private_price_amount if line.is_private_price else None,
            private_price_note=(line.private_price_note or None) if line.is_private_price else None,
            barcode=line.barcode,
        )
        for _, line in draft.selected_lines()
    ]
    invoice = data_manager.InvoiceRow(
        invoice_id=invoice_id,
        invoice_date=invoice_date,
        invoice_type=draft.invoice_type.value,
        customer_id=draft.customer_id,
        supplier_id=draft.supplier_id,
        due_date=draft.due_date,
        total_amount=sum((item.total_price for item in items), ZERO),
        amount_paid=amount_paid,
    )
    return invoice, items


def submit_invoice(
    context: RuntimeContext,
    editor: InvoiceEditor,
    *,
    when: Optional[datetime] = None,
) -> data_manager.InvoiceRow:
    """Validate a new draft and write it to the store.

    The editor's checks run against the snapshot it was opened with; the
    store repeats the stock check against the workbook at commit time.

    Returns:
        data_manager.InvoiceRow: The persisted header.

    Raises:
        InvoiceValidationError: If the draft fails a submission check.
        BusinessRuleViolation: If the draft belongs to a persisted invoice.
        SubmissionRejected: If the store refuses the write, including a
            ``when`` dated before the newest snapshot of a product on the
            draft. Nothing is retried; refresh the context and reopen the
            draft.
    """

    ensure_schema_version(context)
    draft = editor.draft
    if draft.invoice_id is not None:
        raise BusinessRuleViolation(f"Invoice '{draft.invoice_id}' is already persisted; use update_invoice")
    editor.validate()

    timestamp = _resolve_timestamp(when)
    invoice_id = generate_invoice_id(prefix=INVOICE_ID_PREFIXES[draft.invoice_type], when=timestamp)
    invoice, items = build_invoice_rows(draft, invoice_id=invoice_id, invoice_date=timestamp.date())
    data_manager.submit_invoice(context.workbook, invoice, items, today=timestamp.date(), now=timestamp)
    _invalidate_cache(context, "invoices")
    log.info(
        "Submitted %s invoice '%s' (%d items, total=%s)",
        invoice.invoice_type,
        invoice.invoice_id,
        len(items),
        invoice.total_amount,
    )
    return invoice


def update_invoice(
    context: RuntimeContext,
    editor: InvoiceEditor,
    *,
    when: Optional[datetime] = None,
) -> data_manager.InvoiceRow:
    """Write an edited invoice back and replay its products' stock from the invoice date.

    Raises:
        InvoiceValidationError: If the draft fails a submission check.
        BusinessRuleViolation: If the draft was never persisted.
        SubmissionRejected: If the replayed stock would go negative on any day.
    """

    ensure_schema_version(context)
    draft = editor.draft
    if draft.invoice_id is None:
        raise BusinessRuleViolation("Draft has no invoice id; use submit_invoice")
    editor.validate()

    timestamp = _resolve_timestamp(when)
    previous = get_invoice(context, draft.invoice_id)
    invoice, items = build_invoice_rows(
        draft,
        invoice_id=previous.invoice_id,
        invoice_date=previous.invoice_date,
        amount_paid=previous.amount_paid,
    )
    data_manager.replace_invoice(context.workbook, invoice, items, today=timestamp.date(), now=timestamp)
    _invalidate_cache(context, "invoices")
    log.info("Updated invoice '%s' (%d items, total=%s)", invoice.invoice_id, len(items), invoice.total_amount)
    return invoice


def record_payment(
    context: RuntimeContext,
    invoice_id: str,
    amount: Decimal,
) -> data_manager.InvoiceRow:
    """Add ``amount`` to what has been paid on an invoice.

    Once anything is paid, drafts reopened from the invoice can no longer
    add or remove lines.

    Raises:
        ValueError: If ``amount`` is not positive.
        MissingReferenceError: If ``invoice_id`` is unknown.
        BusinessRuleViolation: If ``amount`` exceeds the balance still due.
    """

    ensure_schema_version(context)
    require_positive_money(amount)
    invoice = get_invoice(context, invoice_id)
    if amount > invoice.balance_due:
        log.error("Payment of %s on invoice '%s' exceeds balance %s", amount, invoice_id, invoice.balance_due)
        raise BusinessRuleViolation(
            f"Payment amount ({amount}) exceeds remaining balance ({invoice.balance_due}) on invoice {invoice_id}"
        )
    updated = replace(invoice, amount_paid=invoice.amount_paid + amount)
    data_manager.update_invoice(
        context.workbook,
        invoice_id,
        field_values={"AmountPaid": updated.amount_paid},
    )
    _invalidate_cache(context, "invoices")
    log.info(
        "Recorded payment of %s on invoice '%s' (paid=%s, status=%s)",
        amount,
        invoice_id,
        updated.amount_paid,
        updated.payment_status.value,
    )
    return updated


# ---------------------------------------------------------------------------
# Catalog maintenance
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, product: data_manager.ProductRow) -> data_manager.ProductRow:
    """Append a product to the catalog.

    Raises:
        BusinessRuleViolation: If the id, barcode or SKU is already taken.
    """

    ensure_schema_version(context)
    catalog = build_catalog_index(context)
    if product.product_id in catalog:
        log.warning("Attempted to add duplicate product id '%s'", product.product_id)
        raise BusinessRuleViolation(f"Product id already exists: {product.product_id}")
    for code in (product.barcode, product.sku):
        if not code:
            continue
        try:
            clash = catalog.lookup(code)
        except MissingReferenceError:
            continue
        log.warning("Code '%s' already belongs to product '%s'", code, clash.product_id)
        raise BusinessRuleViolation(f"Code '{code}' already belongs to product {clash.product_id}")

    data_manager.append_product(context.workbook, product)
    _invalidate_cache(context, "products")
    log.info("Added product '%s' (%s)", product.product_id, product.product_name)
    return product


def set_price(
    context: RuntimeContext,
    product_id: str,
    *,
    wholesale_price: Optional[Decimal],
    retail_price: Optional[Decimal],
    effective_date: Optional[date] = None,
) -> data_manager.PriceRecordRow:
    """Record new list prices for a product; older records are kept.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If a price is negative.
    """

    ensure_schema_version(context)
    get_product(context, product_id)
    for price in (wholesale_price, retail_price):
        if price is not None:
            require_nonnegative_money(price)

    record = data_manager.PriceRecordRow(
        product_id=product_id,
        wholesale_price=wholesale_price,
        retail_price=retail_price,
        effective_date=_resolve_today(effective_date),
    )
    data_manager.append_price_record(context.workbook, record)
    _invalidate_cache(context, "prices")
    log.info(
        "Set prices for '%s' effective %s (wholesale=%s, retail=%s)",
        product_id,
        record.effective_date,
        wholesale_price,
        retail_price,
    )
    return record


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def cost_resolver(context: RuntimeContext, *, end_date: Optional[date] = None) -> CostHistoryResolver:
    """Build a cost resolver over the stock history up to ``end_date``.

    The fallback cost of a product is the average cost of its newest
    snapshot overall, i.e. its current average cost.
    """

    history = stock_history(context, end_date=end_date)
    current = data_manager.latest_snapshots(context.workbook, as_of=date.max)
    return CostHistoryResolver(history, {product_id: row.avg_cost for product_id, row in current.items()})


def cost_at(context: RuntimeContext, product_id: str, on_date: date) -> CostLookup:
    """Resolve the average cost ``product_id`` had on ``on_date``."""

    get_product(context, product_id)
    return cost_resolver(context, end_date=on_date).lookup(product_id, on_date)


def profit_report(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> profit.ProfitReport:
    """Item-level profit of sell invoices dated inside ``[start, end]``."""

    end_date = _resolve_today(end)
    sold = profit.sold_lines_from(
        list_invoices(context),
        data_manager.iter_invoice_items(context.workbook),
        start=start,
        end=end_date,
    )
    return profit.profit(sold, cost_resolver(context, end_date=end_date))


def naive_profit_summary(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> profit.NaiveProfitSummary:
    """Total sales minus total purchases inside ``[start, end]``, for reference."""

    return profit.naive_profit(list_invoices(context), start=start, end=_resolve_today(end))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_invoice_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable invoice identifier from a UTC timestamp.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")
