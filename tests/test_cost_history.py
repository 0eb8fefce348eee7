"""Unit tests for historical cost lookups."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from stockline.cost_history import CostHistoryResolver, cost_at
from stockline.data_manager import DailyStockRow


def _snapshot(day, cost, *, product_id="P", qty=10, updated=None):
    return DailyStockRow(product_id, day, qty, Decimal(cost), updated_at=updated)


def test_cost_at_uses_latest_snapshot_on_or_before_date():
    snapshots = [_snapshot(date(2024, 3, 1), "5"), _snapshot(date(2024, 3, 15), "7")]

    assert cost_at("P", date(2024, 3, 10), snapshots, Decimal("9")) == Decimal("5")


def test_cost_at_falls_back_without_older_snapshot():
    snapshots = [_snapshot(date(2024, 3, 1), "5")]

    assert cost_at("P", date(2024, 2, 1), snapshots, Decimal("9")) == Decimal("9")


def test_exact_date_snapshot_preferred():
    snapshots = [_snapshot(date(2024, 3, 1), "5"), _snapshot(date(2024, 3, 10), "8")]

    assert cost_at("P", date(2024, 3, 10), snapshots, Decimal("9")) == Decimal("8")


def test_same_day_snapshots_resolved_by_update_time():
    snapshots = [
        _snapshot(date(2024, 3, 1), "6", updated=datetime(2024, 3, 1, 12, tzinfo=UTC)),
        _snapshot(date(2024, 3, 1), "5", updated=datetime(2024, 3, 1, 10, tzinfo=UTC)),
    ]

    assert cost_at("P", date(2024, 3, 10), snapshots, Decimal("9")) == Decimal("6")


def test_other_products_ignored():
    snapshots = [_snapshot(date(2024, 3, 1), "5", product_id="Q")]

    assert cost_at("P", date(2024, 3, 10), snapshots, Decimal("9")) == Decimal("9")


def test_resolver_reports_fallback_usage():
    resolver = CostHistoryResolver(
        [_snapshot(date(2024, 3, 1), "5"), _snapshot(date(2024, 3, 15), "7")],
        {"P": Decimal("9")},
    )

    historical = resolver.lookup("P", date(2024, 3, 20))
    assert historical.cost == Decimal("7")
    assert historical.snapshot_date == date(2024, 3, 15)
    assert not historical.is_fallback

    early = resolver.lookup("P", date(2024, 1, 1))
    assert early.cost == Decimal("9")
    assert early.is_fallback


def test_resolver_fallback_without_current_cost_uses_newest_snapshot():
    resolver = CostHistoryResolver([_snapshot(date(2024, 3, 1), "5"), _snapshot(date(2024, 3, 15), "7")])

    assert resolver.cost_at("P", date(2024, 1, 1)) == Decimal("7")
    assert resolver.cost_at("unknown", date(2024, 1, 1)) == Decimal("0")
