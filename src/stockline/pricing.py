"""Unit price resolution for invoice lines.

A sell line takes its unit price from the latest price record of its product,
in the column chosen by the line's price type. A buy line never gets a
reference price: the operator enters what was actually paid. A private
override replaces the resolved price for the line total without discarding
the list price underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from . import log
from .constants import InvoiceType, PriceType
from .data_manager import PriceRecordRow


ZERO = Decimal("0")


@dataclass(frozen=True)
class PriceNotSet:
    """Warning signal: the chosen price column is empty for a product.

    The line is still created with a zero price; submission is blocked later
    by the missing-price check.
    """

    product_id: str
    price_type: PriceType


@dataclass(frozen=True)
class ResolvedPrice:
    unit_price: Decimal
    total_price: Decimal
    warning: Optional[PriceNotSet] = None


def default_price_type(invoice_type: InvoiceType) -> PriceType:
    """Return the price type a freshly chosen product starts with."""

    return PriceType.WHOLESALE if invoice_type is InvoiceType.BUY else PriceType.RETAIL


def list_price(
    product_id: str,
    record: Optional[PriceRecordRow],
    price_type: PriceType,
) -> tuple[Decimal, Optional[PriceNotSet]]:
    """Read one column of a price record, reporting a missing value.

    Returns:
        tuple[Decimal, PriceNotSet | None]: The price (zero when unset) and a
            warning when the column is empty or the product has no record.
    """

    if record is None:
        amount = None
    elif price_type is PriceType.RETAIL:
        amount = record.retail_price
    else:
        amount = record.wholesale_price

    if amount is None:
        log.warning("Price not set for product '%s' (%s)", product_id, price_type.value)
        return ZERO, PriceNotSet(product_id, price_type)
    return amount, None


def effective_price(unit_price: Decimal, is_private: bool, private_amount: Decimal) -> Decimal:
    """Return the amount actually charged per unit."""

    return private_amount if is_private else unit_price


def line_total(unit_price: Decimal, quantity: int, is_private: bool, private_amount: Decimal) -> Decimal:
    """Total of a line; a pure function of its inputs, so safe to call repeatedly."""

    return effective_price(unit_price, is_private, private_amount) * quantity


def resolve_price(
    product_id: str,
    record: Optional[PriceRecordRow],
    *,
    invoice_type: InvoiceType,
    price_type: PriceType,
    is_private: bool,
    private_amount: Decimal,
    quantity: int,
) -> ResolvedPrice:
    """Resolve the unit price and total for a line at creation or edit time.

    Args:
        product_id (str): Product on the line.
        record (PriceRecordRow | None): Latest price record of the product.
        invoice_type (InvoiceType): Buy lines are never auto-priced.
        price_type (PriceType): Column to read for sell lines.
        is_private (bool): Whether a private override applies.
        private_amount (Decimal): Override amount, may be zero while pending.
        quantity (int): Line quantity.

    Returns:
        ResolvedPrice: Unit price, total, and an optional ``PriceNotSet``
            warning. With a private override the unit price is the override
            amount regardless of ``price_type``.
    """

    if is_private:
        return ResolvedPrice(private_amount, private_amount * quantity)

    if invoice_type is InvoiceType.BUY:
        return ResolvedPrice(ZERO, ZERO)

    unit_price, warning = list_price(product_id, record, price_type)
    return ResolvedPrice(unit_price, unit_price * quantity, warning)
