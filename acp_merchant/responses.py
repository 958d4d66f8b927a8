"""
Serialization of domain records into ACP responses.

This is the only place where major-unit `Decimal` amounts become integer
minor units. Stored state is never touched.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from acp_merchant.models import (
    CheckoutSession,
    CheckoutSessionResponse,
    CheckoutStatus,
    FulfillmentOption,
    FulfillmentOptionResponse,
    LineItem,
    LineItemResponse,
    SessionStatus,
    TotalBreakdown,
    TotalDetails,
)


STATUS_MAP = {
    SessionStatus.PENDING: CheckoutStatus.NOT_READY_FOR_PAYMENT,
    SessionStatus.COMPLETED: CheckoutStatus.COMPLETED,
    SessionStatus.CANCELLED: CheckoutStatus.CANCELLED,
    SessionStatus.FAILED: CheckoutStatus.CANCELLED,
}


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to minor units, rounding half away from zero."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_status(status: SessionStatus) -> CheckoutStatus:
    return STATUS_MAP.get(status, CheckoutStatus.NOT_READY_FOR_PAYMENT)


def build_line_items(items: list[LineItem]) -> list[LineItemResponse]:
    return [
        LineItemResponse(
            id=item.product_id,
            sku=item.sku,
            name=item.name,
            description=item.description,
            quantity=item.quantity,
            unit_amount=to_minor_units(item.unit_price),
            total_amount=to_minor_units(item.total),
        )
        for item in items
    ]


def build_total_details(totals: TotalBreakdown) -> TotalDetails:
    return TotalDetails(
        subtotal=to_minor_units(totals.subtotal),
        tax=to_minor_units(totals.tax),
        shipping=to_minor_units(totals.shipping),
        discount=to_minor_units(totals.discount),
        total=to_minor_units(totals.total),
    )


def build_fulfillment_options(options: list[FulfillmentOption]) -> list[FulfillmentOptionResponse]:
    return [
        FulfillmentOptionResponse(
            id=option.id,
            name=option.name,
            description=option.description,
            amount=to_minor_units(option.amount),
            estimated_delivery=option.estimated_delivery,
        )
        for option in options
    ]


def build_checkout_session_response(
    session: CheckoutSession,
    order_url_template: Optional[str] = None,
) -> CheckoutSessionResponse:
    order_url = None
    if session.order_id and order_url_template:
        order_url = order_url_template.format(order_id=session.order_id)

    return CheckoutSessionResponse(
        id=session.session_id,
        intent_id=session.intent_id,
        status=map_status(session.status),
        amount_total=to_minor_units(session.amount),
        currency=session.currency,
        buyer=session.buyer,
        line_items=build_line_items(session.line_items),
        total_details=build_total_details(session.total_details),
        fulfillment_options=build_fulfillment_options(session.fulfillment_options),
        metadata=session.metadata,
        order_id=session.order_id,
        order_url=order_url,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )
