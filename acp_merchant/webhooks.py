"""
Outbound order-status webhooks.

Every order status change becomes a `WebhookEvent` that is persisted as
`pending` before any network call, then delivered with an HMAC-SHA256
signature over the exact request body. Delivery failures are recorded on the
event and left for `retry_failed()`; they never propagate to whatever
triggered the status change.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from acp_merchant.auth import sign_payload, verify_signature
from acp_merchant.config import Settings
from acp_merchant.database import utcnow
from acp_merchant.models import (
    OrderSnapshot,
    OrderStatusChange,
    WebhookEvent,
    WebhookStatus,
)
from acp_merchant.orders import OrderFulfillment
from acp_merchant.responses import to_minor_units
from acp_merchant.store import WebhookStore


EVENT_ORDER_STATUS_CHANGED = "order.status_changed"
USER_AGENT = "ACP-Merchant-Webhook/1.0"
MAX_BACKOFF_SECONDS = 3600

logger = logging.getLogger(__name__)


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def new_webhook_id() -> str:
    return f"webhook_{uuid.uuid4().hex[:16]}"


def build_order_payload(
    webhook_id: str,
    order: OrderSnapshot,
    change: OrderStatusChange,
) -> dict[str, Any]:
    """Denormalized order context, amounts in minor units."""
    customer = order.customer
    return {
        "webhook_id": webhook_id,
        "event_type": EVENT_ORDER_STATUS_CHANGED,
        "order_id": order.order_id,
        "session_id": order.checkout_session_id,
        "old_status": change.old_status,
        "new_status": change.new_status,
        "amount": to_minor_units(order.total),
        "currency": order.currency,
        "customer": {
            "id": customer.id,
            "email": customer.email,
            "name": customer.name,
            "phone": customer.phone,
        },
        "billing_address": order.billing_address.model_dump(mode="json"),
        "shipping_address": order.shipping_address.model_dump(mode="json"),
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "name": item.name,
                "sku": item.sku,
                "quantity": item.quantity,
                "subtotal": to_minor_units(item.subtotal),
                "total": to_minor_units(item.total),
                "meta_data": [meta.model_dump(mode="json") for meta in item.meta_data],
            }
            for item in order.items
        ],
        "payment_method": order.payment_method,
        "payment_method_title": order.payment_method_title,
        "transaction_id": order.transaction_id,
        "date_created": order.date_created.isoformat(),
        "date_modified": order.date_modified.isoformat(),
        "metadata": order.metadata,
    }


@dataclass
class RetrySummary:
    selected: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "selected": self.selected,
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class WebhookDispatcher:
    def __init__(
        self,
        settings: Settings,
        store: WebhookStore,
        orders: OrderFulfillment,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.orders = orders
        self._http_client = http_client
        self._clock = clock

    # ── Event creation ───────────────────────────────────────────────────

    async def handle_order_status_change(self, change: OrderStatusChange) -> Optional[WebhookEvent]:
        if not self.settings.enable_webhooks:
            return None

        order = await self.orders.get_order(change.order_id)
        if order is None:
            logger.warning("Webhook skipped, unknown order %s", change.order_id)
            return None

        webhook_id = new_webhook_id()
        now = self._clock()
        event = WebhookEvent(
            webhook_id=webhook_id,
            event_type=EVENT_ORDER_STATUS_CHANGED,
            order_id=order.order_id,
            session_id=order.checkout_session_id,
            payload=build_order_payload(webhook_id, order, change),
            status=WebhookStatus.PENDING,
            attempts=0,
            max_attempts=self.settings.webhook_max_attempts,
            created_at=now,
            updated_at=now,
        )
        await self.store.create(event)
        logger.info(
            "Webhook event recorded",
            extra={"context": {
                "webhook_id": webhook_id,
                "order_id": order.order_id,
                "old_status": change.old_status,
                "new_status": change.new_status,
            }},
        )

        if self.settings.webhook_url:
            await self.deliver(event)
        return event

    # ── Delivery ─────────────────────────────────────────────────────────

    def _next_retry_at(self, attempts: int, max_attempts: int) -> Optional[datetime]:
        if attempts >= max_attempts:
            return None
        delay = min(self.settings.webhook_retry_backoff * (2 ** attempts), MAX_BACKOFF_SECONDS)
        return self._clock() + timedelta(seconds=delay)

    async def _post(self, body: bytes, headers: dict[str, str]) -> httpx.Response:
        timeout = self.settings.webhook_timeout
        if self._http_client is not None:
            return await self._http_client.post(
                self.settings.webhook_url, content=body, headers=headers, timeout=timeout
            )
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self.settings.webhook_url, content=body, headers=headers)

    async def deliver(self, event: WebhookEvent) -> bool:
        """
        POST the event; returns True on a 2xx response. Transport failures and
        an unusable webhook URL are recorded on the event, not raised.
        """
        body = canonical_json(event.payload)
        headers = {
            "Content-Type": "application/json",
            "X-ACP-Signature": sign_payload(body, self.settings.webhook_secret),
            "X-ACP-Event": event.event_type,
            "User-Agent": USER_AGENT,
        }
        retry_at = self._next_retry_at(event.attempts, event.max_attempts)

        try:
            response = await self._post(body, headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Webhook %s delivery failed: %s", event.webhook_id, exc)
            await self.store.mark_failed(event.webhook_id, str(exc) or type(exc).__name__,
                                         next_retry_at=retry_at)
            return False

        if response.is_success:
            await self.store.mark_sent(event.webhook_id, response.status_code, response.text)
            logger.info(
                "Webhook delivered",
                extra={"context": {"webhook_id": event.webhook_id, "status": response.status_code}},
            )
            return True

        logger.warning(
            "Webhook %s rejected with HTTP %s", event.webhook_id, response.status_code,
        )
        await self.store.mark_failed(
            event.webhook_id,
            f"HTTP {response.status_code}",
            response_code=response.status_code,
            response_body=response.text,
            next_retry_at=retry_at,
        )
        return False

    async def retry_failed(self, limit: Optional[int] = None) -> RetrySummary:
        summary = RetrySummary()
        if not self.settings.webhook_url:
            return summary

        now = self._clock()
        stale_before = now - timedelta(seconds=self.settings.webhook_pending_stale_seconds)
        candidates = await self.store.find_retryable(
            limit or self.settings.webhook_retry_batch_size, now, stale_before
        )
        summary.selected = len(candidates)

        for event in candidates:
            if not await self.store.claim(event):
                summary.skipped += 1
                continue
            summary.claimed += 1
            claimed = event.model_copy(update={"attempts": event.attempts + 1})
            try:
                delivered = await self.deliver(claimed)
            except Exception:
                # one broken event must not end the sweep
                logger.exception("Webhook %s retry failed", event.webhook_id)
                delivered = False
            if delivered:
                summary.sent += 1
            else:
                summary.failed += 1

        if summary.selected:
            logger.info("Webhook retry sweep finished", extra={"context": summary.as_dict()})
        return summary

    async def stats(self) -> dict:
        return await self.store.stats()

    # ── Receiver-side helpers ────────────────────────────────────────────

    def sign(self, body: bytes) -> str:
        return sign_payload(body, self.settings.webhook_secret)

    def verify(self, body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(body, signature, self.settings.webhook_secret)
