"""
Checkout session service.

Owns the session lifecycle:

    pending ──complete──▶ completed
       │   └─(payment / order failure)──▶ failed
       └──────cancel────▶ cancelled

Collaborators (catalog, totals, payments, orders) are injected at
construction. All writes go through `SessionStore.checkout()`, so two
requests against the same session are serialized on its row. Completion
first claims the session with `SessionStore.claim_completion()`, so only
one caller ever charges it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from acp_merchant.catalog import CatalogProvider, TotalsCalculator
from acp_merchant.config import Settings
from acp_merchant.database import utcnow
from acp_merchant.errors import (
    ConflictError,
    InvalidStateError,
    OrderCreationError,
    PaymentDeclinedError,
    PaymentFailedError,
    ValidationError,
)
from acp_merchant.models import (
    CancelSessionResponse,
    CheckoutSession,
    CheckoutSessionCreateRequest,
    CheckoutSessionResponse,
    CheckoutSessionUpdateRequest,
    CompleteSessionResponse,
    LineItem,
    SessionStatus,
)
from acp_merchant.orders import OrderFulfillment
from acp_merchant.payment import PaymentProcessor
from acp_merchant.responses import build_checkout_session_response
from acp_merchant.store import SessionStore


ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.CANCELLED: set(),
}

logger = logging.getLogger(__name__)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def new_session_id() -> str:
    return f"acp_session_{uuid.uuid4().hex}"


def new_intent_id() -> str:
    return f"intent_{uuid.uuid4().hex}"


class CheckoutService:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        catalog: CatalogProvider,
        totals: TotalsCalculator,
        payments: PaymentProcessor,
        orders: OrderFulfillment,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.totals = totals
        self.payments = payments
        self.orders = orders
        self._clock = clock

    # ── Helpers ──────────────────────────────────────────────────────────

    def _resolve_currency(self, currency: Optional[str]) -> str:
        currency = (currency or self.settings.default_currency).upper()
        if currency not in self.settings.supported_currencies:
            raise ValidationError(
                f"Unsupported currency '{currency}'",
                code="unsupported_currency",
                param="$.currency",
            )
        return currency

    def _response(self, session: CheckoutSession) -> CheckoutSessionResponse:
        return build_checkout_session_response(session, self.settings.order_url_template)

    # ── Operations ───────────────────────────────────────────────────────

    async def create_session(self, request: CheckoutSessionCreateRequest) -> CheckoutSessionResponse:
        if not request.items:
            raise ValidationError("At least one item is required", param="$.items")
        currency = self._resolve_currency(request.currency)

        line_items: list[LineItem] = []
        for index, item in enumerate(request.items):
            entry = await self.catalog.lookup_or_create(item.sku, item.name, item.price)
            if entry.price < 0:
                raise ValidationError(
                    f"Invalid price for '{entry.sku}'", param=f"$.items[{index}].price"
                )
            if not entry.in_stock:
                raise ValidationError(
                    f"Product '{entry.sku}' is out of stock",
                    code="out_of_stock",
                    param=f"$.items[{index}]",
                )
            line_items.append(
                LineItem(
                    product_id=entry.product_id,
                    sku=entry.sku,
                    name=entry.name,
                    description=entry.description,
                    quantity=item.quantity,
                    unit_price=entry.price,
                )
            )

        amount = sum((li.total for li in line_items), Decimal("0"))
        now = self._clock()
        session = CheckoutSession(
            session_id=new_session_id(),
            intent_id=new_intent_id(),
            status=SessionStatus.PENDING,
            amount=amount,
            currency=currency,
            buyer=request.buyer,
            line_items=line_items,
            total_details=self.totals.compute_totals(line_items, request.fulfillment_address),
            fulfillment_options=self.totals.fulfillment_options(currency),
            fulfillment_address=request.fulfillment_address,
            metadata=request.metadata or {},
            created_at=now,
            updated_at=now,
        )
        await self.store.create(session)

        logger.info(
            "Checkout session created",
            extra={"context": {
                "session_id": session.session_id,
                "amount": str(amount),
                "currency": currency,
                "items": len(line_items),
            }},
        )
        return self._response(session)

    def _ensure_completable(self, session: CheckoutSession) -> None:
        if session.status != SessionStatus.PENDING:
            raise InvalidStateError(
                f"Cannot complete session in '{session.status.value}' state",
                param="$.status",
            )

    async def get_session(self, session_id: str) -> CheckoutSessionResponse:
        return self._response(await self.store.get(session_id))

    async def update_session(
        self,
        session_id: str,
        request: CheckoutSessionUpdateRequest,
    ) -> CheckoutSessionResponse:
        """
        Overwrite amount, currency and status with whatever the caller sent.
        Status changes are not checked against ALLOWED_TRANSITIONS.
        """
        currency = self._resolve_currency(request.currency) if request.currency else None

        async with self.store.checkout(session_id) as session:
            if request.amount is not None:
                session.amount = request.amount
            if currency is not None:
                session.currency = currency
            if request.status is not None and request.status != session.status:
                if not can_transition(session.status, request.status):
                    logger.warning(
                        "Session %s status overwritten outside the state machine: %s -> %s",
                        session_id, session.status.value, request.status.value,
                    )
                session.status = request.status

        logger.info("Checkout session updated", extra={"context": {"session_id": session_id}})
        return self._response(session)

    async def complete_session(
        self,
        session_id: str,
        payment_method_details: Optional[dict[str, Any]] = None,
    ) -> CompleteSessionResponse:
        session = await self.store.get(session_id)
        self._ensure_completable(session)
        if not await self.store.claim_completion(session_id):
            # lost the race: either another call finished or one is still charging
            self._ensure_completable(await self.store.get(session_id))
            raise ConflictError("Session is already being completed, retry the request")

        failure: Optional[str] = None
        try:
            payment = await self.payments.charge(session, payment_method_details)
            order_id = await self.orders.create_order(session, payment)
        except (PaymentDeclinedError, OrderCreationError) as exc:
            failure = str(exc) or "Payment failed"
            logger.warning(
                "Checkout completion failed for %s: %s", session_id, failure,
            )
        except Exception:
            failure = "Payment processing failed"
            logger.exception("Unexpected error completing session %s", session_id)

        async with self.store.checkout(session_id, completing=True) as session:
            if failure is None:
                session.status = SessionStatus.COMPLETED
                session.order_id = order_id
                session.payment_id = payment.payment_id
                session.transaction_id = payment.transaction_id
            else:
                session.status = SessionStatus.FAILED

        if failure is not None:
            raise PaymentFailedError(failure)

        # the outcome is committed and the claim released
        try:
            await self.orders.confirm_payment(session.order_id)
        except Exception:
            logger.exception(
                "Failed to confirm payment for order %s", session.order_id,
                extra={"context": {"session_id": session_id}},
            )

        logger.info(
            "Checkout session completed",
            extra={"context": {
                "session_id": session_id,
                "order_id": session.order_id,
                "payment_id": session.payment_id,
            }},
        )
        return CompleteSessionResponse(
            intent_id=session.intent_id,
            session_id=session.session_id,
            status=session.status,
            payment_id=session.payment_id,
            order_id=session.order_id,
            transaction_id=session.transaction_id,
        )

    async def cancel_session(self, session_id: str) -> CancelSessionResponse:
        async with self.store.checkout(session_id) as session:
            if not can_transition(session.status, SessionStatus.CANCELLED):
                logger.warning(
                    "Cancelling session %s from terminal state '%s'",
                    session_id, session.status.value,
                )
            session.status = SessionStatus.CANCELLED
            session.cancelled_at = self._clock()

        logger.info("Checkout session cancelled", extra={"context": {"session_id": session_id}})
        return CancelSessionResponse(
            intent_id=session.intent_id,
            session_id=session.session_id,
            status=session.status,
            cancelled_at=session.cancelled_at,
        )
