"""Unit tests for submission checks and their ordering."""

from __future__ import annotations

from decimal import Decimal

import pytest

from stockline import validation
from stockline.constants import InvoiceType, ViolationKind
from stockline.draft import InvoiceDraft, InvoiceLine
from stockline.errors import (
    DuplicateProduct,
    EmptyInvoice,
    InsufficientStock,
    InvalidQuantity,
    MissingCost,
    MissingCounterparty,
    MissingPrice,
)
from stockline.stock_ledger import StockLedgerView


def _sell_line(product_id, quantity=1, unit_price="20.00", **overrides):
    return InvoiceLine(product_id=product_id, quantity=quantity, unit_price=Decimal(unit_price), **overrides)


@pytest.fixture
def sell_ledger():
    return StockLedgerView(InvoiceType.SELL, {"P1": 5, "P2": 10})


def test_missing_counterparty_reported_first(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, lines=[_sell_line("P1"), _sell_line("P1")])

    violation = validation.find_violation(draft, sell_ledger)

    assert isinstance(violation, MissingCounterparty)
    assert violation.role == "customer"
    assert violation.kind is ViolationKind.MISSING_COUNTERPARTY


def test_buy_invoice_asks_for_supplier():
    draft = InvoiceDraft(InvoiceType.BUY)

    violation = validation.find_violation(draft, StockLedgerView(InvoiceType.BUY, {}))

    assert isinstance(violation, MissingCounterparty)
    assert violation.role == "supplier"


def test_invoice_with_only_blank_lines_is_empty(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[InvoiceLine(), InvoiceLine()])

    assert isinstance(validation.find_violation(draft, sell_ledger), EmptyInvoice)


def test_duplicate_products_rejected(sell_ledger):
    draft = InvoiceDraft(
        InvoiceType.SELL,
        counterparty_id="C1",
        lines=[_sell_line("P1"), InvoiceLine(), _sell_line("P1", quantity=0)],
    )

    violation = validation.find_violation(draft, sell_ledger)

    assert isinstance(violation, DuplicateProduct)
    assert violation.product_ids == ("P1",)


def test_non_positive_quantity_rejected(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[_sell_line("P1", quantity=0)])

    violation = validation.find_violation(draft, sell_ledger)

    assert isinstance(violation, InvalidQuantity)
    assert violation.product_ids == ("P1",)


def test_buy_line_without_cost_rejected():
    draft = InvoiceDraft(
        InvoiceType.BUY,
        counterparty_id="S1",
        lines=[InvoiceLine(product_id="P1", quantity=10, unit_price=Decimal("0"))],
    )
    ledger = StockLedgerView(InvoiceType.BUY, {})

    violation = validation.find_violation(draft, ledger)
    assert isinstance(violation, MissingCost)
    assert violation.product_ids == ("P1",)

    draft.lines[0].unit_price = Decimal("4.20")
    assert validation.find_violation(draft, ledger) is None


def test_sell_line_without_price_reports_names(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[_sell_line("P1", unit_price="0")])

    violation = validation.find_violation(draft, sell_ledger, product_names={"P1": "Pencil"})

    assert isinstance(violation, MissingPrice)
    assert violation.product_names == ("Pencil",)


def test_private_amount_counts_as_price(sell_ledger):
    line = _sell_line("P1", unit_price="0", is_private_price=True, private_price_amount=Decimal("18"))
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[line])

    assert validation.find_violation(draft, sell_ledger) is None


def test_private_line_with_zero_amount_has_no_price(sell_ledger):
    line = _sell_line("P1", is_private_price=True)
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[line])

    assert isinstance(validation.find_violation(draft, sell_ledger), MissingPrice)


def test_price_checked_before_stock(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[_sell_line("P1", quantity=9, unit_price="0")])

    assert isinstance(validation.find_violation(draft, sell_ledger), MissingPrice)


def test_insufficient_stock_rejected(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[_sell_line("P1", quantity=6)])

    violation = validation.find_violation(draft, sell_ledger, product_names={"P1": "Pencil"})

    assert isinstance(violation, InsufficientStock)
    assert (violation.product_name, violation.requested, violation.available) == ("Pencil", 6, 5)


def test_stock_check_can_be_disabled(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1", lines=[_sell_line("P1", quantity=6)])

    assert validation.find_violation(draft, sell_ledger, enforce_stock_ceiling=False) is None


def test_valid_draft_passes_and_blank_lines_ignored(sell_ledger):
    draft = InvoiceDraft(
        InvoiceType.SELL,
        counterparty_id="C1",
        lines=[_sell_line("P1", quantity=5), InvoiceLine(), _sell_line("P2", quantity=2)],
    )

    assert validation.find_violation(draft, sell_ledger) is None
    validation.validate(draft, sell_ledger)


def test_validate_raises_first_violation(sell_ledger):
    draft = InvoiceDraft(InvoiceType.SELL, counterparty_id="C1")

    with pytest.raises(EmptyInvoice):
        validation.validate(draft, sell_ledger)
