"""
Catalog and pricing collaborators.

- `CatalogProvider` resolves buyer items to catalog entries by SKU
- `TotalsCalculator` computes the total breakdown and fulfillment options as
  a pure function of the line items (no cart state involved)
"""

from __future__ import annotations

import abc
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from acp_merchant.models import (
    Address,
    CatalogEntry,
    FulfillmentOption,
    LineItem,
    TotalBreakdown,
)


CENT = Decimal("0.01")


class CatalogProvider(abc.ABC):
    @abc.abstractmethod
    async def lookup_or_create(
        self,
        sku: Optional[str],
        name: Optional[str],
        price: Decimal,
    ) -> CatalogEntry:
        """
        Return the catalog entry for `sku`. An unknown (or missing) SKU
        creates a new entry from the supplied name and price.
        """
        ...


class InMemoryCatalog(CatalogProvider):
    """Dictionary-backed catalog for development and tests."""

    def __init__(self, entries: Optional[list[CatalogEntry]] = None):
        self._by_sku: dict[str, CatalogEntry] = {e.sku: e for e in entries or []}

    async def lookup_or_create(
        self,
        sku: Optional[str],
        name: Optional[str],
        price: Decimal,
    ) -> CatalogEntry:
        if sku and sku in self._by_sku:
            return self._by_sku[sku]

        entry = CatalogEntry(
            product_id=f"prod_{uuid.uuid4().hex[:12]}",
            sku=sku or f"acp-{uuid.uuid4().hex[:8]}",
            name=name or "ACP Product",
            price=price,
            in_stock=True,
        )
        self._by_sku[entry.sku] = entry
        return entry

    def get(self, sku: str) -> Optional[CatalogEntry]:
        return self._by_sku.get(sku)


class TotalsCalculator(abc.ABC):
    @abc.abstractmethod
    def compute_totals(
        self,
        line_items: list[LineItem],
        address: Optional[Address] = None,
    ) -> TotalBreakdown:
        ...

    @abc.abstractmethod
    def fulfillment_options(self, currency: str) -> list[FulfillmentOption]:
        ...


class FlatRateTotals(TotalsCalculator):
    """Flat tax rate, no shipping charge, no discounts."""

    def __init__(
        self,
        tax_rate: Decimal = Decimal("0"),
        options: Optional[list[FulfillmentOption]] = None,
    ):
        self.tax_rate = Decimal(tax_rate)
        self._options = options if options is not None else default_fulfillment_options()

    def compute_totals(
        self,
        line_items: list[LineItem],
        address: Optional[Address] = None,
    ) -> TotalBreakdown:
        subtotal = sum((item.total for item in line_items), Decimal("0"))
        tax = (subtotal * self.tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return TotalBreakdown(
            subtotal=subtotal,
            tax=tax,
            shipping=Decimal("0"),
            discount=Decimal("0"),
            total=subtotal + tax,
        )

    def fulfillment_options(self, currency: str) -> list[FulfillmentOption]:
        return [option.model_copy() for option in self._options]


def default_fulfillment_options() -> list[FulfillmentOption]:
    return [
        FulfillmentOption(
            id="digital",
            name="Digital Delivery",
            description="Delivered by email after payment",
            amount=Decimal("0"),
        ),
        FulfillmentOption(
            id="ship_std",
            name="Standard Shipping",
            description="5-7 business days",
            amount=Decimal("7.99"),
            estimated_delivery="5-7 business days",
        ),
        FulfillmentOption(
            id="ship_exp",
            name="Express Shipping",
            description="2-3 business days",
            amount=Decimal("14.99"),
            estimated_delivery="2-3 business days",
        ),
    ]
