"""
Order fulfillment collaborator.

Turns a completed checkout session into a merchant order and reports order
status changes to registered listeners (the webhook dispatcher, in
practice). Listeners are awaited in registration order; a failing listener is
logged and does not stop the others.
"""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from acp_merchant.errors import OrderCreationError
from acp_merchant.models import (
    Address,
    CheckoutSession,
    OrderItem,
    OrderSnapshot,
    OrderStatusChange,
    PaymentResult,
)


StatusListener = Callable[[OrderStatusChange], Awaitable[object]]

logger = logging.getLogger(__name__)


class OrderFulfillment(abc.ABC):
    def __init__(self):
        self._listeners: list[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def notify_status_change(self, change: OrderStatusChange) -> None:
        for listener in self._listeners:
            try:
                await listener(change)
            except Exception:
                logger.exception(
                    "Order status listener failed",
                    extra={"context": change.model_dump()},
                )

    @abc.abstractmethod
    async def create_order(self, session: CheckoutSession, payment: PaymentResult) -> str:
        """Persist an order for the session and return its id."""
        ...

    @abc.abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    @abc.abstractmethod
    async def update_status(self, order_id: str, new_status: str) -> OrderStatusChange:
        """Change an order's status and notify listeners."""
        ...

    async def confirm_payment(self, order_id: str) -> OrderStatusChange:
        """Mark a freshly created order as paid."""
        return await self.update_status(order_id, "processing")


def order_items_from_session(session: CheckoutSession) -> list[OrderItem]:
    return [
        OrderItem(
            id=f"{session.session_id}:{index}",
            product_id=item.product_id,
            name=item.name,
            sku=item.sku,
            quantity=item.quantity,
            subtotal=item.total,
            total=item.total,
        )
        for index, item in enumerate(session.line_items, start=1)
    ]


class InMemoryOrderFulfillment(OrderFulfillment):
    """Dictionary-backed orders for development and tests."""

    def __init__(self):
        super().__init__()
        self.orders: dict[str, OrderSnapshot] = {}

    async def create_order(self, session: CheckoutSession, payment: PaymentResult) -> str:
        if not session.line_items:
            raise OrderCreationError("Failed to create order: session has no line items")

        now = datetime.now(timezone.utc)
        order_id = f"order_{uuid.uuid4().hex[:12]}"
        address = session.fulfillment_address or Address()
        self.orders[order_id] = OrderSnapshot(
            order_id=order_id,
            checkout_session_id=session.session_id,
            status="pending",
            total=session.amount,
            currency=session.currency,
            customer=session.buyer or {},
            billing_address=address,
            shipping_address=address,
            items=order_items_from_session(session),
            payment_method=payment.payment_method,
            payment_method_title=payment.payment_method_title,
            transaction_id=payment.transaction_id,
            date_created=now,
            date_modified=now,
            metadata={"_acp_session_id": session.session_id, **session.metadata},
        )
        return order_id

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        return self.orders.get(order_id)

    async def update_status(self, order_id: str, new_status: str) -> OrderStatusChange:
        order = self.orders.get(order_id)
        if order is None:
            raise KeyError(order_id)

        change = OrderStatusChange(
            order_id=order_id, old_status=order.status, new_status=new_status
        )
        order.status = new_status
        order.date_modified = datetime.now(timezone.utc)
        await self.notify_status_change(change)
        return change
