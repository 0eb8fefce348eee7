"""Item-level profit using historical cost at the sale date.

``profit`` charges every sold line with the average cost its product had on
the day of the sale. The naive figure, total sales minus total purchases
over a window, is reported alongside for reference only: it mixes the
timing of purchases and sales and counts unsold stock as a loss.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import InvoiceType
from .cost_history import CostHistoryResolver
from .data_manager import InvoiceItemRow, InvoiceRow
from .pricing import ZERO, effective_price


ITEM_PROFIT_LABEL = "Profit (sale price - cost at sale date)"
NAIVE_PROFIT_LABEL = "Naive profit (total sales - total purchases)"


@dataclass(frozen=True)
class SoldLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    invoice_date: date
    is_private_price: bool = False
    private_price_amount: Decimal = ZERO
    invoice_id: Optional[str] = None

    @property
    def effective_price(self) -> Decimal:
        return effective_price(self.unit_price, self.is_private_price, self.private_price_amount)


@dataclass(frozen=True)
class LineProfit:
    line: SoldLine
    effective_price: Decimal
    cost: Decimal
    cost_is_fallback: bool
    profit: Decimal

    @property
    def revenue(self) -> Decimal:
        return self.effective_price * self.line.quantity

    @property
    def total_cost(self) -> Decimal:
        return self.cost * self.line.quantity


@dataclass(frozen=True)
class ProfitReport:
    per_line: Tuple[LineProfit, ...]
    total: Decimal
    label: str = ITEM_PROFIT_LABEL

    @property
    def total_revenue(self) -> Decimal:
        return sum((entry.revenue for entry in self.per_line), ZERO)

    @property
    def total_cost(self) -> Decimal:
        return sum((entry.total_cost for entry in self.per_line), ZERO)

    @property
    def approximated_lines(self) -> Tuple[LineProfit, ...]:
        """Lines whose cost came from the current-cost fallback."""

        return tuple(entry for entry in self.per_line if entry.cost_is_fallback)

    def by_product(self) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for entry in self.per_line:
            product_id = entry.line.product_id
            totals[product_id] = totals.get(product_id, ZERO) + entry.profit
        return totals


@dataclass(frozen=True)
class NaiveProfitSummary:
    total_sales: Decimal
    total_purchases: Decimal
    label: str = NAIVE_PROFIT_LABEL

    @property
    def naive_profit(self) -> Decimal:
        return self.total_sales - self.total_purchases


def profit(sold_lines: Iterable[SoldLine], cost_resolver: CostHistoryResolver) -> ProfitReport:
    """Compute ``quantity * (effective price - cost at sale date)`` per line.

    Args:
        sold_lines (Iterable[SoldLine]): Lines of sell invoices.
        cost_resolver (CostHistoryResolver): Historical cost lookups.

    Returns:
        ProfitReport: Per-line results in input order and their sum.
    """

    entries: List[LineProfit] = []
    for line in sold_lines:
        lookup = cost_resolver.lookup(line.product_id, line.invoice_date)
        price = line.effective_price
        entries.append(
            LineProfit(
                line=line,
                effective_price=price,
                cost=lookup.cost,
                cost_is_fallback=lookup.is_fallback,
                profit=line.quantity * (price - lookup.cost),
            )
        )

    report = ProfitReport(per_line=tuple(entries), total=sum((entry.profit for entry in entries), ZERO))
    if report.approximated_lines:
        log.warning(
            "%d of %d sold lines priced with the current-cost fallback",
            len(report.approximated_lines),
            len(entries),
        )
    log.debug("Computed profit over %d lines: %s", len(entries), report.total)
    return report


def _in_window(day: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True


def sold_lines_from(
    invoices: Iterable[InvoiceRow],
    items: Iterable[InvoiceItemRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[SoldLine]:
    """Join sell invoice headers with their items inside ``[start, end]``."""

    sales: Mapping[str, InvoiceRow] = {
        invoice.invoice_id: invoice
        for invoice in invoices
        if invoice.invoice_type == InvoiceType.SELL.value and _in_window(invoice.invoice_date, start, end)
    }
    sold = []
    for item in items:
        invoice = sales.get(item.invoice_id)
        if invoice is None:
            continue
        sold.append(
            SoldLine(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                invoice_date=invoice.invoice_date,
                is_private_price=item.is_private_price,
                private_price_amount=item.private_price_amount or ZERO,
                invoice_id=item.invoice_id,
            )
        )
    return sold


def naive_profit(
    invoices: Sequence[InvoiceRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> NaiveProfitSummary:
    """Sum invoice totals by type inside ``[start, end]``."""

    total_sales = ZERO
    total_purchases = ZERO
    for invoice in invoices:
        if not _in_window(invoice.invoice_date, start, end):
            continue
        if invoice.invoice_type == InvoiceType.SELL.value:
            total_sales += invoice.total_amount
        elif invoice.invoice_type == InvoiceType.BUY.value:
            total_purchases += invoice.total_amount
    return NaiveProfitSummary(total_sales=total_sales, total_purchases=total_purchases)
