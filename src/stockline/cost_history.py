"""Historical average cost lookups.

Profit on a sale has to use the average cost the product had when it was
sold, not what it costs today. Daily stock snapshots carry that history, but
they are sparse: a product only gets a snapshot on days its stock moved. The
resolver therefore takes the latest snapshot dated on or before the target
day.

When a product has no snapshot that old, the resolver falls back to the
product's current average cost. That approximation can misstate profit for
products first purchased after the sale being evaluated; lookups report
whether they used it.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import log
from .data_manager import DailyStockRow, collapse_snapshots, snapshot_index


@dataclass(frozen=True)
class CostLookup:
    """Cost resolved for a product on a day.

    ``snapshot_date`` is ``None`` when the fallback cost was used.
    """

    product_id: str
    on_date: date
    cost: Decimal
    snapshot_date: Optional[date] = None

    @property
    def is_fallback(self) -> bool:
        return self.snapshot_date is None


class CostHistoryResolver:
    """Answers ``cost at (product, date)`` over a fixed set of snapshots.

    Snapshots are collapsed to one per product and day (latest update wins)
    and sorted newest first once per product at construction, so each lookup
    is a binary search rather than a rescan.

    Args:
        snapshots (Iterable[DailyStockRow]): Stock history to search.
        current_costs (Mapping[str, Decimal] | None): Fallback cost per
            product. Products missing from it fall back to the average cost
            of their newest snapshot, and to zero without any snapshot.
    """

    def __init__(
        self,
        snapshots: Iterable[DailyStockRow],
        current_costs: Optional[Mapping[str, Decimal]] = None,
    ) -> None:
        grouped = snapshot_index(collapse_snapshots(snapshots))
        self._history: Dict[str, List[DailyStockRow]] = {}
        # negated ordinals keep bisect working on a newest-first list
        self._keys: Dict[str, List[int]] = {}
        for product_id, rows in grouped.items():
            ordered = sorted(rows, key=lambda row: row.stock_date, reverse=True)
            self._history[product_id] = ordered
            self._keys[product_id] = [-row.stock_date.toordinal() for row in ordered]
        self._current_costs = dict(current_costs or {})
        log.debug("Indexed cost history for %d products", len(self._history))

    def fallback_cost(self, product_id: str) -> Decimal:
        if product_id in self._current_costs:
            return self._current_costs[product_id]
        history = self._history.get(product_id)
        if history:
            return history[0].avg_cost
        return Decimal("0")

    def lookup(self, product_id: str, on_date: date) -> CostLookup:
        """Resolve the cost in effect for ``product_id`` on ``on_date``."""

        history = self._history.get(product_id, [])
        position = bisect_left(self._keys.get(product_id, []), -on_date.toordinal())
        if position < len(history):
            row = history[position]
            return CostLookup(product_id, on_date, row.avg_cost, row.stock_date)

        cost = self.fallback_cost(product_id)
        log.debug("No snapshot for '%s' on or before %s; using current cost %s", product_id, on_date, cost)
        return CostLookup(product_id, on_date, cost)

    def cost_at(self, product_id: str, on_date: date) -> Decimal:
        return self.lookup(product_id, on_date).cost


def cost_at(
    product_id: str,
    on_date: date,
    snapshots: Iterable[DailyStockRow],
    fallback_current_cost: Decimal,
) -> Decimal:
    """One-off lookup; build a :class:`CostHistoryResolver` for repeated use."""

    resolver = CostHistoryResolver(
        (row for row in snapshots if row.product_id == product_id),
        {product_id: fallback_current_cost},
    )
    return resolver.cost_at(product_id, on_date)
