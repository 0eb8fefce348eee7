"""Tests for the workbook-backed data layer using real temporary workbooks."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from stockline import data_manager
from stockline.errors import MissingReferenceError, SubmissionRejected


DAY_1 = date(2024, 3, 1)
DAY_2 = date(2024, 3, 10)
NOW_1 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
NOW_2 = datetime(2024, 3, 10, 15, 30, tzinfo=UTC)


def _invoice(invoice_id, day, invoice_type, total, **extra):
    return data_manager.InvoiceRow(
        invoice_id=invoice_id,
        invoice_date=day,
        invoice_type=invoice_type,
        customer_id="C1" if invoice_type == "sell" else None,
        supplier_id="S1" if invoice_type == "buy" else None,
        due_date=None,
        total_amount=Decimal(total),
        **extra,
    )


def _item(invoice_id, product_id, quantity, unit_price, price_type="retail"):
    unit = Decimal(unit_price)
    return data_manager.InvoiceItemRow(invoice_id, product_id, quantity, unit, price_type, unit * quantity)


def _buy(workbook, invoice_id, product_id, quantity, unit_cost, *, today=DAY_1, now=NOW_1):
    items = [_item(invoice_id, product_id, quantity, unit_cost, "wholesale")]
    invoice = _invoice(invoice_id, today, "buy", sum(item.total_price for item in items))
    return data_manager.submit_invoice(workbook, invoice, items, today=today, now=now)


def _sell(workbook, invoice_id, product_id, quantity, unit_price="20", *, today=DAY_2, now=NOW_2):
    items = [_item(invoice_id, product_id, quantity, unit_price)]
    invoice = _invoice(invoice_id, today, "sell", sum(item.total_price for item in items))
    return data_manager.submit_invoice(workbook, invoice, items, today=today, now=now)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    (tmp_path / "config.ini").write_text("[System]\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file().resolve() == (tmp_path / "config.ini").resolve()


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "missing.ini")


def test_parse_settings_resolves_relative_paths_and_flags(config_factory):
    bundle = config_factory(make_relative=True, enforce_stock_ceiling=False, merge_duplicate_scans=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.store_name == "Test Store"
    assert settings.enforce_stock_ceiling is False
    assert settings.merge_duplicate_scans is True
    assert settings.history_limit == data_manager.DEFAULT_HISTORY_LIMIT


def test_parse_settings_defaults_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = store.xlsx\nStoreName = Shop\nSchemaVersion = 1.0.0\n[Reports]\nHistoryLimit = 50\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.enforce_stock_ceiling is True
    assert settings.merge_duplicate_scans is False
    assert settings.history_limit == 50


def test_parse_settings_requires_system_section():
    parser = configparser.ConfigParser()
    parser.read_string("[Editor]\nEnforceStockCeiling = yes\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_and_refresh_round_trip_product(store_workbook_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    data_manager.append_product(workbook, data_manager.ProductRow("P1", "Pencil", barcode="0123"))
    data_manager.save_workbook(workbook, store_workbook_path)

    reloaded = data_manager.refresh_workbook(store_workbook_path)

    assert data_manager.list_products(reloaded) == [data_manager.ProductRow("P1", "Pencil", barcode="0123")]


def test_save_persists_dates_and_money(store_workbook_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    _buy(workbook, "B1", "P1", 10, "5.25")
    data_manager.save_workbook(workbook, store_workbook_path)

    reloaded = data_manager.refresh_workbook(store_workbook_path)
    (invoice,) = list(data_manager.iter_invoices(reloaded))
    (snapshot,) = list(data_manager.iter_daily_stock(reloaded))

    assert invoice.invoice_date == DAY_1
    assert invoice.total_amount == Decimal("52.5")
    assert snapshot.stock_date == DAY_1
    assert snapshot.avg_cost == Decimal("5.25")
    assert snapshot.updated_at == NOW_1


# ---------------------------------------------------------------------------
# Store queries
# ---------------------------------------------------------------------------


def test_latest_prices_ignore_future_and_prefer_last_appended(store_workbook):
    for record in (
        data_manager.PriceRecordRow("P1", Decimal("10"), Decimal("20"), date(2024, 1, 1)),
        data_manager.PriceRecordRow("P1", Decimal("11"), Decimal("22"), date(2024, 2, 1)),
        data_manager.PriceRecordRow("P1", Decimal("12"), Decimal("23"), date(2024, 2, 1)),
        data_manager.PriceRecordRow("P1", Decimal("13"), Decimal("30"), date(2024, 5, 1)),
        data_manager.PriceRecordRow("P2", None, Decimal("4"), date(2024, 1, 1)),
    ):
        data_manager.append_price_record(store_workbook, record)

    latest = data_manager.latest_prices_for_all_products(store_workbook, as_of=date(2024, 3, 1))

    assert latest["P1"].retail_price == Decimal("23")
    assert latest["P2"].wholesale_price is None


def test_collapse_snapshots_keeps_latest_update():
    early = data_manager.DailyStockRow("P1", DAY_1, 4, Decimal("5"), updated_at=NOW_1)
    late = data_manager.DailyStockRow("P1", DAY_1, 7, Decimal("6"), updated_at=NOW_1.replace(hour=18))

    assert data_manager.collapse_snapshots([late, early]) == [late]


def test_today_stock_snapshot_carries_forward_last_known_day(store_workbook):
    data_manager.append_daily_stock(store_workbook, data_manager.DailyStockRow("P1", DAY_1, 8, Decimal("5")))
    data_manager.append_daily_stock(store_workbook, data_manager.DailyStockRow("P1", DAY_2, 3, Decimal("5")))

    assert data_manager.today_stock_snapshot(store_workbook, today=date(2024, 3, 5)) == {"P1": 8}
    assert data_manager.today_stock_snapshot(store_workbook, today=date(2024, 3, 31)) == {"P1": 3}
    assert data_manager.today_stock_snapshot(store_workbook, today=date(2024, 2, 1)) == {}


def test_daily_stock_history_newest_first_and_limited(store_workbook):
    for day in (date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3), date(2024, 3, 9)):
        data_manager.append_daily_stock(store_workbook, data_manager.DailyStockRow("P1", day, 1, Decimal("1")))

    history = data_manager.daily_stock_history(store_workbook, end_date=date(2024, 3, 5), limit=2)

    assert [row.stock_date for row in history] == [date(2024, 3, 3), date(2024, 3, 2)]


def test_get_invoice_unknown_raises(store_workbook):
    with pytest.raises(MissingReferenceError):
        data_manager.get_invoice(store_workbook, "nope")


# ---------------------------------------------------------------------------
# Sheet writers
# ---------------------------------------------------------------------------


def test_upsert_daily_stock_overwrites_same_day(store_workbook):
    data_manager.upsert_daily_stock(store_workbook, data_manager.DailyStockRow("P1", DAY_1, 5, Decimal("2"), NOW_1, NOW_1))
    data_manager.upsert_daily_stock(store_workbook, data_manager.DailyStockRow("P1", DAY_1, 9, Decimal("3"), NOW_1, NOW_2))
    data_manager.upsert_daily_stock(store_workbook, data_manager.DailyStockRow("P1", DAY_2, 9, Decimal("3"), NOW_2, NOW_2))

    rows = list(data_manager.iter_daily_stock(store_workbook))

    assert [(row.stock_date, row.available_qty) for row in rows] == [(DAY_1, 9), (DAY_2, 9)]
    assert rows[0].updated_at == NOW_2


def test_update_invoice_missing_raises(store_workbook):
    with pytest.raises(KeyError):
        data_manager.update_invoice(store_workbook, "nope", field_values={"AmountPaid": Decimal("1")})


def test_locate_row_matches_numeric_cells_as_text(store_workbook):
    store_workbook["Products"].append([1001, "Numeric id"])

    assert data_manager.locate_row(store_workbook, "Products", "ProductID", "1001") == 2
    assert data_manager.locate_row(store_workbook, "Products", "ProductID", "1002") is None


def test_delete_invoice_items_removes_only_target(store_workbook):
    for item in (_item("S1", "P1", 1, "2"), _item("S2", "P1", 1, "2"), _item("S1", "P2", 1, "2")):
        data_manager.append_invoice_item(store_workbook, item)

    assert data_manager.delete_invoice_items(store_workbook, "S1") == 2
    assert [item.invoice_id for item in data_manager.iter_invoice_items(store_workbook)] == ["S2"]


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("prev_cost", "prev_qty", "unit_cost", "quantity", "expected"),
    [
        ("0", 0, "5", 10, "5.00"),
        ("5", 10, "7", 10, "6.00"),
        ("5", 10, "6", 5, "5.33"),
        ("5", -3, "7", 2, "7"),
    ],
)
def test_weighted_average_cost(prev_cost, prev_qty, unit_cost, quantity, expected):
    result = data_manager.weighted_average_cost(Decimal(prev_cost), prev_qty, Decimal(unit_cost), quantity)

    assert result == Decimal(expected)


def test_buy_receives_stock_at_weighted_average(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")
    _buy(store_workbook, "B2", "P1", 10, "7", now=NOW_1.replace(hour=11))

    rows = list(data_manager.iter_daily_stock(store_workbook))

    assert len(rows) == 1
    assert rows[0].available_qty == 20
    assert rows[0].avg_cost == Decimal("6.00")
    assert rows[0].created_at == NOW_1


def test_sell_keeps_average_cost_on_new_day(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")
    _sell(store_workbook, "S1", "P1", 4)

    snapshot = data_manager.latest_snapshots(store_workbook, as_of=DAY_2)["P1"]

    assert snapshot.stock_date == DAY_2
    assert snapshot.available_qty == 6
    assert snapshot.avg_cost == Decimal("5")
    assert [item.invoice_id for item in data_manager.iter_invoice_items(store_workbook)] == ["B1", "S1"]


def test_commit_check_rejects_negative_stock_without_writing(store_workbook):
    _buy(store_workbook, "B1", "P1", 3, "5")

    with pytest.raises(SubmissionRejected):
        _sell(store_workbook, "S1", "P1", 4)

    assert [invoice.invoice_id for invoice in data_manager.iter_invoices(store_workbook)] == ["B1"]
    assert data_manager.today_stock_snapshot(store_workbook, today=DAY_2) == {"P1": 3}


def test_duplicate_invoice_id_rejected(store_workbook):
    _buy(store_workbook, "B1", "P1", 3, "5")

    with pytest.raises(SubmissionRejected):
        _buy(store_workbook, "B1", "P1", 3, "5")


def test_replace_invoice_replays_later_days(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")
    _sell(store_workbook, "S1", "P1", 2, today=date(2024, 3, 5), now=datetime(2024, 3, 5, 12, tzinfo=UTC))
    _buy(store_workbook, "B2", "P1", 10, "11", today=DAY_2, now=NOW_2)

    edited = _invoice("S1", date(2024, 3, 5), "sell", "80")
    edit_time = datetime(2024, 3, 20, 10, tzinfo=UTC)
    data_manager.replace_invoice(
        store_workbook, edited, [_item("S1", "P1", 4, "20")], today=edit_time.date(), now=edit_time
    )

    assert data_manager.today_stock_snapshot(store_workbook, today=date(2024, 3, 6)) == {"P1": 6}
    assert data_manager.today_stock_snapshot(store_workbook, today=date(2024, 3, 12)) == {"P1": 16}
    assert data_manager.latest_snapshots(store_workbook, as_of=date(2024, 3, 12))["P1"].avg_cost == Decimal("8.75")
    assert data_manager.latest_snapshots(store_workbook, as_of=DAY_1)["P1"].available_qty == 10


def test_replace_buy_with_new_cost_rewrites_average(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")

    edited = _invoice("B1", DAY_1, "buy", "80")
    data_manager.replace_invoice(
        store_workbook, edited, [_item("B1", "P1", 10, "8", "wholesale")], today=DAY_2, now=NOW_2
    )

    rows = list(data_manager.iter_daily_stock(store_workbook))
    assert [(row.stock_date, row.available_qty, row.avg_cost) for row in rows] == [(DAY_1, 10, Decimal("8.00"))]
    assert rows[0].created_at == NOW_1


def test_replace_invoice_refuses_negative_history_without_writing(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")
    _sell(store_workbook, "S1", "P1", 8)

    edited = _invoice("B1", DAY_1, "buy", "25")
    with pytest.raises(SubmissionRejected):
        data_manager.replace_invoice(
            store_workbook, edited, [_item("B1", "P1", 5, "5", "wholesale")], today=DAY_2, now=NOW_2
        )

    assert [item.quantity for item in data_manager.invoice_items_for(store_workbook, "B1")] == [10]
    assert data_manager.today_stock_snapshot(store_workbook, today=DAY_2) == {"P1": 2}


def test_backdated_submission_rejected(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5", today=DAY_2, now=NOW_2)

    with pytest.raises(SubmissionRejected):
        _buy(store_workbook, "B2", "P1", 5, "4", today=DAY_1, now=NOW_1)

    assert [invoice.invoice_id for invoice in data_manager.iter_invoices(store_workbook)] == ["B1"]


def test_replace_invoice_applies_delta(store_workbook):
    _buy(store_workbook, "B1", "P1", 10, "5")
    _sell(store_workbook, "S1", "P1", 4)

    edited = _invoice("S1", DAY_2, "sell", "120")
    data_manager.replace_invoice(store_workbook, edited, [_item("S1", "P1", 6, "20")], today=DAY_2, now=NOW_2)

    assert data_manager.today_stock_snapshot(store_workbook, today=DAY_2) == {"P1": 4}
    assert data_manager.get_invoice(store_workbook, "S1").total_amount == Decimal("120")
    assert [item.quantity for item in data_manager.invoice_items_for(store_workbook, "S1")] == [6]


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("cell", "expected"),
    [(None, False), ("", False), ("FALSE", False), ("0", False), ("no", False), (0, False), ("TRUE", True), ("yes", True), (True, True), (1, True)],
)
def test_private_flag_cells_parsed_explicitly(cell, expected):
    item = data_manager.deserialize_invoice_item(["S1", "P1", 1, "2", "retail", "2", cell, None, None, None])

    assert item.is_private_price is expected


def test_unreadable_private_flag_raises():
    with pytest.raises(ValueError):
        data_manager.deserialize_invoice_item(["S1", "P1", 1, "2", "retail", "2", "maybe", None, None, None])
