"""
ACP Payment Processor Abstraction.

Payment gateway integration is out of scope; checkout only needs an injected
capability that either returns a `PaymentResult` or raises
`PaymentDeclinedError`.

- `MockPaymentProcessor`: approves everything except the decline token
- `create_payment_processor()`: factory used by the app
"""

from __future__ import annotations

import abc
import uuid
from typing import Any, Optional

from acp_merchant.errors import PaymentDeclinedError
from acp_merchant.models import CheckoutSession, PaymentResult


DECLINE_TOKEN = "decline_token"


class PaymentProcessor(abc.ABC):
    """Abstract base for payment capabilities."""

    @abc.abstractmethod
    async def charge(
        self,
        session: CheckoutSession,
        payment_method_details: Optional[dict[str, Any]] = None,
    ) -> PaymentResult:
        """Charge the session amount or raise PaymentDeclinedError."""
        ...


class MockPaymentProcessor(PaymentProcessor):
    """
    In-memory mock for development. Issues fake payment and transaction
    ids. A `token` of "decline_token" in the payment method details is
    declined, which lets agents exercise the failure path.
    """

    def __init__(self):
        self.charges: dict[str, dict[str, Any]] = {}

    async def charge(
        self,
        session: CheckoutSession,
        payment_method_details: Optional[dict[str, Any]] = None,
    ) -> PaymentResult:
        details = payment_method_details or {}
        if details.get("token") == DECLINE_TOKEN:
            raise PaymentDeclinedError("Payment was declined by issuer")

        result = PaymentResult(
            payment_id=f"pay_{uuid.uuid4().hex[:16]}",
            transaction_id=f"txn_{uuid.uuid4().hex[:16]}",
            payment_method=details.get("type", "acp"),
        )
        self.charges[result.payment_id] = {
            "session_id": session.session_id,
            "amount": str(session.amount),
            "currency": session.currency,
        }
        return result


def create_payment_processor() -> PaymentProcessor:
    return MockPaymentProcessor()
