"""Data access layer for stockline.

This module provides low-level helpers that read from and write to the
workbook standing in for the retail back office store. Reconciliation logic
belongs elsewhere; the only rules enforced here are the ones a real store
enforces at commit time.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
4. Store queries and writes: the read operations the engine consumes
   (catalog, latest prices, today's stock, stock history) and the invoice
   submission that moves stock.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import InvoiceType, PaymentStatus, SheetName
from .errors import MissingReferenceError, SubmissionRejected


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
PRODUCT_PRICES_SHEET = SheetName.PRODUCT_PRICES.value
DAILY_STOCK_SHEET = SheetName.DAILY_STOCK.value
INVOICES_SHEET = SheetName.INVOICES.value
INVOICE_ITEMS_SHEET = SheetName.INVOICE_ITEMS.value

DEFAULT_HISTORY_LIMIT = 10000


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    enforce_stock_ceiling: bool = True
    merge_duplicate_scans: bool = False
    history_limit: int = DEFAULT_HISTORY_LIMIT


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    barcode: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    shelf_location: Optional[str] = None


@dataclass(frozen=True)
class PriceRecordRow:
    """In-memory view of a row from the ``ProductPrices`` sheet."""

    product_id: str
    wholesale_price: Optional[Decimal]
    retail_price: Optional[Decimal]
    effective_date: date


@dataclass(frozen=True)
class DailyStockRow:
    """In-memory view of a row from the ``DailyStock`` sheet."""

    product_id: str
    stock_date: date
    available_qty: int
    avg_cost: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    invoice_date: date
    invoice_type: str
    customer_id: Optional[str]
    supplier_id: Optional[str]
    due_date: Optional[date]
    total_amount: Decimal
    amount_paid: Decimal = Decimal("0.00")

    @property
    def has_payments(self) -> bool:
        return self.amount_paid > Decimal("0")

    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.amount_paid

    @property
    def payment_status(self) -> PaymentStatus:
        if not self.has_payments:
            return PaymentStatus.PENDING
        if self.amount_paid >= self.total_amount:
            return PaymentStatus.PAID
        return PaymentStatus.PARTIAL


@dataclass(frozen=True)
class InvoiceItemRow:
    """In-memory view of a row from the ``InvoiceItems`` sheet."""

    invoice_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    price_type: str
    total_price: Decimal
    is_private_price: bool = False
    private_price_amount: Optional[Decimal] = None
    private_price_note: Optional[str] = None
    barcode: Optional[str] = None


@dataclass(frozen=True)
class StockMovement:
    """Signed quantity change a submission applies to one product.

    ``unit_cost`` is only set for stock received on a buy invoice; it feeds
    the weighted average cost of the product.
    """

    product_id: str
    change: int
    unit_cost: Optional[Decimal] = None


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

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

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

    The ``[System]`` section is mandatory. The ``[Editor]`` and ``[Reports]``
    sections are optional; their options select the editor variant (stock
    ceiling, duplicate-scan merging) and the history window used for cost
    lookups. Relative ``DataFile`` entries are expanded against ``base_path``
    when provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional entry holds an unparseable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    enforce_stock_ceiling = parser.getboolean("Editor", "EnforceStockCeiling", fallback=True)
    merge_duplicate_scans = parser.getboolean("Editor", "MergeDuplicateScans", fallback=False)
    history_limit = parser.getint("Reports", "HistoryLimit", fallback=DEFAULT_HISTORY_LIMIT)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        enforce_stock_ceiling=enforce_stock_ceiling,
        merge_duplicate_scans=merge_duplicate_scans,
        history_limit=history_limit,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Sheet readers
# ---------------------------------------------------------------------------


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_price_records(workbook: Workbook) -> Iterable[PriceRecordRow]:
    """Iterate over the append-only price history on ``ProductPrices``."""

    for raw in _iter_sheet(workbook, PRODUCT_PRICES_SHEET):
        yield deserialize_price_record(raw)


def iter_daily_stock(workbook: Workbook) -> Iterable[DailyStockRow]:
    """Iterate over every stored daily stock snapshot, superseded rows included."""

    for raw in _iter_sheet(workbook, DAILY_STOCK_SHEET):
        yield deserialize_daily_stock(raw)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Iterate over invoice headers in workbook order."""

    for raw in _iter_sheet(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


def iter_invoice_items(workbook: Workbook) -> Iterable[InvoiceItemRow]:
    """Iterate over every persisted invoice item in workbook order."""

    for raw in _iter_sheet(workbook, INVOICE_ITEMS_SHEET):
        yield deserialize_invoice_item(raw)


# ---------------------------------------------------------------------------
# Store queries
# ---------------------------------------------------------------------------


def list_products(workbook: Workbook) -> List[ProductRow]:
    """Return the product catalog in sheet order."""

    return list(iter_products(workbook))


def latest_prices_for_all_products(workbook: Workbook, *, as_of: date) -> Dict[str, PriceRecordRow]:
    """Resolve the price record in effect for every product on ``as_of``.

    Price changes are append-only, so several records may exist per product.
    The winner is the record with the most recent ``effective_date`` that is
    not in the future relative to ``as_of``; when two records share that date
    the one appended last wins.

    Args:
        workbook (Workbook): Workbook containing the ``ProductPrices`` sheet.
        as_of (date): Day the prices should be valid for.

    Returns:
        dict[str, PriceRecordRow]: Mapping of ``ProductID`` to its latest
            record. Products without any eligible record are absent.
    """

    latest: Dict[str, PriceRecordRow] = {}
    for record in iter_price_records(workbook):
        if record.effective_date > as_of:
            continue
        current = latest.get(record.product_id)
        if current is None or record.effective_date >= current.effective_date:
            latest[record.product_id] = record
    log.debug("Resolved latest prices for %d products as of %s", len(latest), as_of)
    return latest


def collapse_snapshots(rows: Iterable[DailyStockRow]) -> List[DailyStockRow]:
    """Keep one snapshot per ``(product, date)``, the most recently updated.

    Later updates on the same day supersede earlier ones. Rows without an
    update timestamp lose against rows that carry one; between two such rows
    the one seen last wins.

    Args:
        rows (Iterable[DailyStockRow]): Raw snapshots, possibly with several
            rows for the same product and day.

    Returns:
        list[DailyStockRow]: Deduplicated snapshots in first-seen order.
    """

    winners: Dict[tuple[str, date], DailyStockRow] = {}
    for row in rows:
        key = (row.product_id, row.stock_date)
        current = winners.get(key)
        if current is None or _update_rank(row) >= _update_rank(current):
            winners[key] = row
    return list(winners.values())


def _update_rank(row: DailyStockRow) -> tuple[int, datetime]:
    if row.updated_at is None:
        return (0, datetime.min)
    return (1, row.updated_at.replace(tzinfo=None))


def latest_snapshots(workbook: Workbook, *, as_of: date) -> Dict[str, DailyStockRow]:
    """Return, per product, the snapshot with the latest date on or before ``as_of``."""

    latest: Dict[str, DailyStockRow] = {}
    for row in collapse_snapshots(iter_daily_stock(workbook)):
        if row.stock_date > as_of:
            continue
        current = latest.get(row.product_id)
        if current is None or row.stock_date > current.stock_date:
            latest[row.product_id] = row
    return latest


def today_stock_snapshot(workbook: Workbook, *, today: date) -> Dict[str, int]:
    """Return the quantity available per product as of ``today``.

    Snapshots are only written on days with stock movements, so a product's
    figure comes from its most recent snapshot on or before ``today``.
    Products that never had a snapshot are absent and should be read as zero.
    """

    return {product_id: row.available_qty for product_id, row in latest_snapshots(workbook, as_of=today).items()}


def daily_stock_history(workbook: Workbook, *, end_date: date, limit: int) -> List[DailyStockRow]:
    """Return superseding-aware snapshots dated on or before ``end_date``.

    Rows are ordered newest first and truncated to ``limit`` entries, which
    mirrors the paging a remote store would apply.

    Args:
        workbook (Workbook): Workbook containing the ``DailyStock`` sheet.
        end_date (date): Inclusive upper bound on snapshot dates.
        limit (int): Maximum number of rows to return.

    Returns:
        list[DailyStockRow]: Snapshots sorted by date descending.
    """

    rows = [row for row in collapse_snapshots(iter_daily_stock(workbook)) if row.stock_date <= end_date]
    rows.sort(key=lambda row: row.stock_date, reverse=True)
    return rows[: max(limit, 0)]


def get_invoice(workbook: Workbook, invoice_id: str) -> InvoiceRow:
    """Resolve an invoice header by identifier.

    Raises:
        MissingReferenceError: If no header carries ``invoice_id``.
    """

    for invoice in iter_invoices(workbook):
        if invoice.invoice_id == invoice_id:
            return invoice
    raise MissingReferenceError(f"Unknown invoice id: {invoice_id}")


def invoice_items_for(workbook: Workbook, invoice_id: str) -> List[InvoiceItemRow]:
    """Return the persisted items of one invoice in workbook order."""

    return [item for item in iter_invoice_items(workbook) if item.invoice_id == invoice_id]


# ---------------------------------------------------------------------------
# Sheet writers
# ---------------------------------------------------------------------------


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_price_record(workbook: Workbook, record: PriceRecordRow) -> None:
    """Append a price record; earlier records are never modified."""

    workbook[PRODUCT_PRICES_SHEET].append(serialize_price_record(record))


def append_daily_stock(workbook: Workbook, record: DailyStockRow) -> None:
    """Append a raw snapshot row without superseding existing ones."""

    workbook[DAILY_STOCK_SHEET].append(serialize_daily_stock(record))


def append_invoice(workbook: Workbook, record: InvoiceRow) -> None:
    """Append an invoice header to the ``Invoices`` worksheet."""

    workbook[INVOICES_SHEET].append(serialize_invoice(record))


def append_invoice_item(workbook: Workbook, record: InvoiceItemRow) -> None:
    """Append an invoice item to the ``InvoiceItems`` worksheet."""

    workbook[INVOICE_ITEMS_SHEET].append(serialize_invoice_item(record))


def upsert_daily_stock(workbook: Workbook, record: DailyStockRow) -> None:
    """Write the snapshot for ``(product, date)``, overwriting the day's row.

    When a row for the same product and day already exists its quantity,
    average cost, and update timestamp are replaced while the creation
    timestamp is preserved. Otherwise the record is appended.

    Args:
        workbook (Workbook): Workbook containing the ``DailyStock`` sheet.
        record (DailyStockRow): Snapshot to persist.
    """

    sheet = workbook[DAILY_STOCK_SHEET]
    header_map = _header_map(sheet)
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[header_map["ProductID"] - 1] is None:
            continue
        if str(row[header_map["ProductID"] - 1]) != record.product_id:
            continue
        if _parse_date(row[header_map["Date"] - 1]) != record.stock_date:
            continue
        sheet.cell(row=row_idx, column=header_map["AvailableQty"], value=record.available_qty)
        sheet.cell(row=row_idx, column=header_map["AvgCost"], value=record.avg_cost)
        sheet.cell(row=row_idx, column=header_map["UpdatedAt"], value=_format_timestamp(record.updated_at))
        return

    sheet.append(serialize_daily_stock(record))


def update_invoice(workbook: Workbook, invoice_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing invoice header.

    Args:
        workbook (Workbook): Workbook containing the invoices sheet.
        invoice_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the invoice or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, INVOICES_SHEET, "InvoiceID", invoice_id)
    if row_index is None:
        raise KeyError(f"Invoice not found: {invoice_id}")

    sheet = workbook[INVOICES_SHEET]
    header_map = _header_map(sheet)
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown invoice field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def delete_invoice_items(workbook: Workbook, invoice_id: str) -> int:
    """Remove every item row of ``invoice_id`` and return how many were removed."""

    sheet = workbook[INVOICE_ITEMS_SHEET]
    key_col = _header_map(sheet)["InvoiceID"]
    doomed = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col - 1] is not None and str(row[key_col - 1]) == invoice_id
    ]
    # bottom-up so earlier indices stay valid
    for row_idx in reversed(doomed):
        sheet.delete_rows(row_idx)
    return len(doomed)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column. Cells are
            compared as text so numeric identifiers typed into Excel match.

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
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _header_map(sheet) -> Dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


# ---------------------------------------------------------------------------
# Invoice submission
# ---------------------------------------------------------------------------


def movements_for(invoice_type: str, items: Sequence[InvoiceItemRow]) -> List[StockMovement]:
    """Translate invoice items into the stock movements they cause."""

    is_buy = invoice_type == InvoiceType.BUY.value
    movements = []
    for item in items:
        if is_buy:
            movements.append(StockMovement(item.product_id, item.quantity, item.unit_price))
        else:
            movements.append(StockMovement(item.product_id, -item.quantity))
    return movements


def replay_snapshots(
    workbook: Workbook,
    product_ids: Iterable[str],
    *,
    start: date,
    end: date,
    now: datetime,
    overrides: Optional[Mapping[str, Sequence[InvoiceItemRow]]] = None,
) -> List[DailyStockRow]:
    """Recompute the daily snapshots of ``product_ids`` from ``start`` through ``end``.

    Invoices are the movement log. Each product starts from its last snapshot
    dated before ``start`` and folds in every invoice dated inside the window,
    day by day, in sheet order within a day. A snapshot is produced for each
    day that has a movement or already had a row, so rows left stale by an
    edit are rewritten along with the average cost that later sales are
    costed at. Nothing is written here.

    Args:
        workbook (Workbook): Workbook acting as the store.
        product_ids (Iterable[str]): Products to recompute.
        start (date): First day to recompute, usually an invoice date.
        end (date): Last day to recompute.
        now (datetime): Timestamp stamped on the recomputed rows.
        overrides (Mapping[str, Sequence[InvoiceItemRow]] | None): Items to
            use instead of the persisted ones, keyed by invoice id.

    Returns:
        list[DailyStockRow]: Recomputed rows, per product in date order.

    Raises:
        SubmissionRejected: If any product would end a day below zero.
    """

    targets = list(dict.fromkeys(product_ids))
    wanted = set(targets)
    overrides = overrides or {}

    baseline: Dict[str, DailyStockRow] = {}
    existing_days: Dict[str, set[date]] = {product_id: set() for product_id in targets}
    for row in collapse_snapshots(iter_daily_stock(workbook)):
        if row.product_id not in wanted:
            continue
        if row.stock_date < start:
            current = baseline.get(row.product_id)
            if current is None or row.stock_date > current.stock_date:
                baseline[row.product_id] = row
        elif row.stock_date <= end:
            existing_days[row.product_id].add(row.stock_date)

    items_by_invoice: Dict[str, List[InvoiceItemRow]] = {}
    for item in iter_invoice_items(workbook):
        if item.invoice_id not in overrides:
            items_by_invoice.setdefault(item.invoice_id, []).append(item)
    for invoice_id, items in overrides.items():
        items_by_invoice[invoice_id] = list(items)

    window = sorted(
        (invoice for invoice in iter_invoices(workbook) if start <= invoice.invoice_date <= end),
        key=lambda invoice: invoice.invoice_date,
    )
    daily: Dict[str, Dict[date, List[StockMovement]]] = {product_id: {} for product_id in targets}
    for invoice in window:
        for movement in movements_for(invoice.invoice_type, items_by_invoice.get(invoice.invoice_id, [])):
            if movement.product_id in wanted:
                daily[movement.product_id].setdefault(invoice.invoice_date, []).append(movement)

    snapshots: List[DailyStockRow] = []
    shortfalls: List[str] = []
    for product_id in targets:
        previous = baseline.get(product_id)
        qty = previous.available_qty if previous is not None else 0
        cost = previous.avg_cost if previous is not None else Decimal("0")
        for day in sorted(existing_days[product_id] | set(daily[product_id])):
            for movement in daily[product_id].get(day, []):
                if movement.unit_cost is not None and movement.change > 0:
                    cost = weighted_average_cost(cost, qty, movement.unit_cost, movement.change)
                qty += movement.change
            if qty < 0:
                shortfalls.append(f"{product_id} on {day.isoformat()} (would be {qty})")
            snapshots.append(DailyStockRow(product_id, day, qty, cost, created_at=now, updated_at=now))

    if shortfalls:
        log.error("Stock replay rejected: %s", "; ".join(shortfalls))
        raise SubmissionRejected(f"Stock would become negative for: {', '.join(shortfalls)}")
    log.debug("Replayed %d snapshots for %d products from %s", len(snapshots), len(targets), start)
    return snapshots


def check_not_backdated(workbook: Workbook, movements: Sequence[StockMovement], *, today: date) -> None:
    """Refuse movements dated before a snapshot that already exists for the product.

    Later snapshots would not see the movement, so the write is refused
    rather than leaving them stale.

    Raises:
        SubmissionRejected: When a touched product has a snapshot after ``today``.
    """

    touched = {movement.product_id for movement in movements}
    later = sorted(
        {row.product_id for row in iter_daily_stock(workbook) if row.product_id in touched and row.stock_date > today}
    )
    if later:
        log.error("Refusing backdated movements on %s for: %s", today, ", ".join(later))
        raise SubmissionRejected(f"Stock snapshots after {today.isoformat()} exist for: {', '.join(later)}")


def check_movements(workbook: Workbook, movements: Sequence[StockMovement], *, today: date) -> None:
    """Refuse movements that would leave any product with negative stock.

    This is the store's authoritative check. It runs against the snapshots
    on disk, not against whatever the caller saw when it built the invoice.

    Raises:
        SubmissionRejected: When at least one product would go negative.
    """

    current = latest_snapshots(workbook, as_of=today)
    totals: Dict[str, int] = {}
    for movement in movements:
        totals[movement.product_id] = totals.get(movement.product_id, 0) + movement.change

    shortfalls = []
    for product_id, change in totals.items():
        before = current[product_id].available_qty if product_id in current else 0
        if before + change < 0:
            shortfalls.append(f"{product_id} (available {before}, change {change})")
    if shortfalls:
        log.error("Commit check rejected stock movements: %s", "; ".join(shortfalls))
        raise SubmissionRejected(f"Stock would become negative for: {', '.join(shortfalls)}")


def apply_movements(
    workbook: Workbook,
    movements: Sequence[StockMovement],
    *,
    today: date,
    now: datetime,
) -> List[DailyStockRow]:
    """Fold stock movements into today's snapshot rows.

    Each movement starts from the product's latest snapshot on or before
    ``today``. Received stock updates the weighted average cost; outgoing
    stock keeps the previous average.

    Returns:
        list[DailyStockRow]: The snapshot written for each touched product.
    """

    current = latest_snapshots(workbook, as_of=today)
    written: Dict[str, DailyStockRow] = {}
    for movement in movements:
        previous = written.get(movement.product_id) or current.get(movement.product_id)
        qty_before = previous.available_qty if previous is not None else 0
        cost_before = previous.avg_cost if previous is not None else Decimal("0")
        qty_after = qty_before + movement.change

        avg_cost = cost_before
        if movement.unit_cost is not None and movement.change > 0:
            avg_cost = weighted_average_cost(cost_before, qty_before, movement.unit_cost, movement.change)

        created_at = previous.created_at if previous is not None and previous.stock_date == today else now
        snapshot = DailyStockRow(
            product_id=movement.product_id,
            stock_date=today,
            available_qty=qty_after,
            avg_cost=avg_cost,
            created_at=created_at,
            updated_at=now,
        )
        upsert_daily_stock(workbook, snapshot)
        written[movement.product_id] = snapshot
        log.debug(
            "Stock movement for '%s': before=%s change=%s after=%s avg_cost=%s",
            movement.product_id,
            qty_before,
            movement.change,
            qty_after,
            avg_cost,
        )
    return list(written.values())


def weighted_average_cost(prev_cost: Decimal, prev_qty: int, unit_cost: Decimal, quantity: int) -> Decimal:
    """Blend a purchase into the running average cost of a product.

    Falls back to ``unit_cost`` when the combined quantity is not positive,
    which happens when a purchase lands on a product already oversold.
    """

    denominator = prev_qty + quantity
    if denominator <= 0:
        return unit_cost
    blended = (prev_cost * prev_qty + unit_cost * quantity) / denominator
    return blended.quantize(Decimal("0.01"))


def submit_invoice(
    workbook: Workbook,
    invoice: InvoiceRow,
    items: Sequence[InvoiceItemRow],
    *,
    today: date,
    now: datetime,
) -> str:
    """Persist a new invoice and move stock accordingly.

    Nothing is written when the commit check fails, so a rejected submission
    leaves the workbook exactly as it was.

    Args:
        workbook (Workbook): Workbook acting as the store.
        invoice (InvoiceRow): Header to append.
        items (Sequence[InvoiceItemRow]): Items belonging to ``invoice``.
        today (date): Day whose snapshot receives the movements.
        now (datetime): Timestamp recorded on touched snapshots.

    Returns:
        str: The persisted invoice identifier.

    Raises:
        SubmissionRejected: If the store refuses the stock movements, the
            identifier is already taken, or ``today`` is earlier than an
            existing snapshot of a touched product.
    """

    if locate_row(workbook, INVOICES_SHEET, "InvoiceID", invoice.invoice_id) is not None:
        raise SubmissionRejected(f"Invoice id already exists: {invoice.invoice_id}")

    movements = movements_for(invoice.invoice_type, items)
    check_not_backdated(workbook, movements, today=today)
    check_movements(workbook, movements, today=today)

    append_invoice(workbook, invoice)
    for item in items:
        append_invoice_item(workbook, item)
    apply_movements(workbook, movements, today=today, now=now)
    return invoice.invoice_id


def replace_invoice(
    workbook: Workbook,
    invoice: InvoiceRow,
    items: Sequence[InvoiceItemRow],
    *,
    today: date,
    now: datetime,
) -> str:
    """Rewrite an existing invoice's items and total, then replay its products' stock.

    Every product on the old or the new item set has its snapshots
    recomputed from the invoice date through ``today``, so quantity and
    unit cost corrections reach the average cost of every later day.

    Raises:
        MissingReferenceError: If ``invoice.invoice_id`` is not persisted.
        SubmissionRejected: If the replay would take stock below zero on
            any day. Nothing is written in that case.
    """

    previous = get_invoice(workbook, invoice.invoice_id)
    previous_items = invoice_items_for(workbook, invoice.invoice_id)
    snapshots = replay_snapshots(
        workbook,
        [item.product_id for item in (*previous_items, *items)],
        start=previous.invoice_date,
        end=max(today, previous.invoice_date),
        now=now,
        overrides={invoice.invoice_id: items},
    )

    delete_invoice_items(workbook, invoice.invoice_id)
    for item in items:
        append_invoice_item(workbook, item)
    update_invoice(
        workbook,
        invoice.invoice_id,
        field_values={
            "TotalAmount": invoice.total_amount,
            "DueDate": _format_date(invoice.due_date),
            "CustomerID": invoice.customer_id,
            "SupplierID": invoice.supplier_id,
        },
    )
    for snapshot in snapshots:
        upsert_daily_stock(workbook, snapshot)
    return invoice.invoice_id


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.barcode,
        record.sku,
        record.category,
        record.shelf_location,
    ]


def serialize_price_record(record: PriceRecordRow) -> list[object]:
    """Convert a price record into ``[ProductID, WholesalePrice, RetailPrice, EffectiveDate]``."""

    return [
        record.product_id,
        record.wholesale_price,
        record.retail_price,
        _format_date(record.effective_date),
    ]


def serialize_daily_stock(record: DailyStockRow) -> list[object]:
    """Convert a snapshot into the ``DailyStock`` column ordering."""

    return [
        record.product_id,
        _format_date(record.stock_date),
        record.available_qty,
        record.avg_cost,
        _format_timestamp(record.created_at),
        _format_timestamp(record.updated_at),
    ]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    """Convert an invoice header into the ``Invoices`` column ordering."""

    return [
        record.invoice_id,
        _format_date(record.invoice_date),
        record.invoice_type,
        record.customer_id,
        record.supplier_id,
        _format_date(record.due_date),
        record.total_amount,
        record.amount_paid,
    ]


def serialize_invoice_item(record: InvoiceItemRow) -> list[object]:
    """Convert an invoice item into the ``InvoiceItems`` column ordering."""

    return [
        record.invoice_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.price_type,
        record.total_price,
        record.is_private_price,
        record.private_price_amount,
        record.private_price_note,
        record.barcode,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier-like fields are coerced to ``str`` to avoid surprises caused by
    Excel automatically interpreting barcodes and ids as numbers.
    """

    product_id, product_name, barcode, sku, category, shelf_location = _pad(raw_row, 6)
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        barcode=_optional_text(barcode),
        sku=_optional_text(sku),
        category=_optional_text(category),
        shelf_location=_optional_text(shelf_location),
    )


def deserialize_price_record(raw_row: Sequence[object]) -> PriceRecordRow:
    """Convert a raw worksheet row into a price record; blank prices stay ``None``."""

    product_id, wholesale_raw, retail_raw, effective_raw = _pad(raw_row, 4)
    effective_date = _parse_date(effective_raw)
    if effective_date is None:
        raise ValueError(f"Price record for '{product_id}' has no effective date")
    return PriceRecordRow(
        product_id=str(product_id),
        wholesale_price=_optional_decimal(wholesale_raw),
        retail_price=_optional_decimal(retail_raw),
        effective_date=effective_date,
    )


def deserialize_daily_stock(raw_row: Sequence[object]) -> DailyStockRow:
    """Convert a raw worksheet row into a daily stock snapshot."""

    product_id, date_raw, qty_raw, cost_raw, created_raw, updated_raw = _pad(raw_row, 6)
    stock_date = _parse_date(date_raw)
    if stock_date is None:
        raise ValueError(f"Daily stock row for '{product_id}' has no date")
    return DailyStockRow(
        product_id=str(product_id),
        stock_date=stock_date,
        available_qty=_to_int(qty_raw),
        avg_cost=_to_decimal(cost_raw),
        created_at=_parse_timestamp(created_raw),
        updated_at=_parse_timestamp(updated_raw),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    """Convert a raw worksheet row into an invoice header."""

    (
        invoice_id,
        date_raw,
        invoice_type,
        customer_id,
        supplier_id,
        due_raw,
        total_raw,
        paid_raw,
    ) = _pad(raw_row, 8)
    invoice_date = _parse_date(date_raw)
    if invoice_date is None:
        raise ValueError(f"Invoice '{invoice_id}' has no date")
    return InvoiceRow(
        invoice_id=str(invoice_id),
        invoice_date=invoice_date,
        invoice_type=str(invoice_type) if invoice_type is not None else "",
        customer_id=_optional_text(customer_id),
        supplier_id=_optional_text(supplier_id),
        due_date=_parse_date(due_raw),
        total_amount=_to_decimal(total_raw),
        amount_paid=_to_decimal(paid_raw),
    )


def deserialize_invoice_item(raw_row: Sequence[object]) -> InvoiceItemRow:
    """Convert a raw worksheet row into an invoice item."""

    (
        invoice_id,
        product_id,
        qty_raw,
        unit_raw,
        price_type,
        total_raw,
        private_raw,
        private_amount_raw,
        private_note,
        barcode,
    ) = _pad(raw_row, 10)
    return InvoiceItemRow(
        invoice_id=str(invoice_id),
        product_id=str(product_id),
        quantity=_to_int(qty_raw),
        unit_price=_to_decimal(unit_raw),
        price_type=str(price_type) if price_type is not None else "",
        total_price=_to_decimal(total_raw),
        is_private_price=_to_bool(private_raw),
        private_price_amount=_optional_decimal(private_amount_raw),
        private_price_note=_optional_text(private_note),
        barcode=_optional_text(barcode),
    )


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row)[:width]
    return values + [None] * (width - len(values))


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _to_decimal(value: object) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0.00")


def _optional_decimal(value: object) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return Decimal(str(value))


def _to_int(value: object) -> int:
    return int(Decimal(str(value))) if value is not None else 0


def _to_bool(value: object) -> bool:
    """Read a flag cell; text uses the same words ``config.ini`` accepts."""

    if value is None:
        return False
    if isinstance(value, (bool, int, float, Decimal)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return False
    try:
        return configparser.ConfigParser.BOOLEAN_STATES[text]
    except KeyError as exc:
        raise ValueError(f"Not a boolean cell value: {value!r}") from exc


def _format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: object) -> Optional[date]:
    """Read a date cell written by this module or typed by hand in Excel."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if not text:
        return None
    return datetime.fromisoformat(text)


def snapshot_index(rows: Iterable[DailyStockRow]) -> Mapping[str, List[DailyStockRow]]:
    """Group snapshots by product id without reordering them."""

    grouped: Dict[str, List[DailyStockRow]] = {}
    for row in rows:
        grouped.setdefault(row.product_id, []).append(row)
    return grouped
