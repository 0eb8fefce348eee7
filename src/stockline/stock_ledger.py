"""Effective stock availability inside an in-progress invoice.

Quantities placed on the lines of a draft are reserved as they are added,
even though nothing has been persisted yet: a second line (or a scan) for
the same product may only ask for what the other lines left over. Buy
invoices have no ceiling at all.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Optional, Sequence

from . import log
from .constants import InvoiceType
from .errors import InsufficientStock

if TYPE_CHECKING:
    from .draft import InvoiceLine


def effective_available(
    product_id: str,
    base_qty: int,
    lines: Sequence["InvoiceLine"],
    exclude_index: Optional[int] = None,
) -> int:
    """Return ``base_qty`` minus what the other lines hold for ``product_id``.

    Args:
        product_id (str): Product being checked.
        base_qty (int): On-hand quantity for the product.
        lines (Sequence[InvoiceLine]): Lines of the draft.
        exclude_index (int | None): Line whose own quantity must not be
            subtracted, typically the line being edited.

    Returns:
        int: Remaining quantity, never below zero.
    """

    reserved = sum(
        line.quantity
        for index, line in enumerate(lines)
        if index != exclude_index and line.product_id == product_id
    )
    return max(0, base_qty - reserved)


class StockLedgerView:
    """Stock ceiling calculator over a fixed stock snapshot.

    ``snapshot`` holds today's available quantity per product. ``released``
    holds quantities already committed by the persisted version of the
    invoice being edited; today's snapshot has them deducted, so they are
    handed back to the draft.
    """

    def __init__(
        self,
        invoice_type: InvoiceType,
        snapshot: Mapping[str, int],
        *,
        released: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.invoice_type = invoice_type
        self._snapshot = dict(snapshot)
        self._released = dict(released or {})

    @property
    def has_ceiling(self) -> bool:
        return self.invoice_type is InvoiceType.SELL

    def base_quantity(self, product_id: str) -> int:
        return self._snapshot.get(product_id, 0) + self._released.get(product_id, 0)

    def available(
        self,
        product_id: str,
        lines: Sequence["InvoiceLine"],
        exclude_index: Optional[int] = None,
    ) -> Optional[int]:
        """Return the effective available quantity, or ``None`` without a ceiling."""

        if not self.has_ceiling:
            return None
        return effective_available(product_id, self.base_quantity(product_id), lines, exclude_index)

    def require_available(
        self,
        product_id: str,
        lines: Sequence["InvoiceLine"],
        requested: int,
        *,
        exclude_index: Optional[int] = None,
        product_name: Optional[str] = None,
    ) -> None:
        """Raise unless ``requested`` units of ``product_id`` fit in the draft.

        Raises:
            InsufficientStock: When the ceiling applies and ``requested``
                exceeds the effective available quantity.
        """

        available = self.available(product_id, lines, exclude_index=exclude_index)
        if available is None or requested <= available:
            return
        log.warning(
            "Insufficient stock for '%s': requested %s, available %s",
            product_id,
            requested,
            available,
        )
        raise InsufficientStock(
            product_name or product_id,
            requested,
            available,
            product_id=product_id,
        )

    def check_quantity(
        self,
        lines: Sequence["InvoiceLine"],
        index: int,
        requested: int,
        *,
        product_name: Optional[str] = None,
    ) -> None:
        """Reject raising line ``index`` to ``requested`` beyond what is available.

        Lowering a quantity is always accepted, even when stock has since
        dropped below it. The line's own quantity is excluded from the
        reservation so it is not subtracted twice.
        """

        line = lines[index]
        if line.product_id is None or requested <= line.quantity:
            return
        self.require_available(
            line.product_id,
            lines,
            requested,
            exclude_index=index,
            product_name=product_name,
        )
