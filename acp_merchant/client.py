"""
ACP Checkout Client — buyer/agent side of the checkout protocol.

Wraps the five checkout endpoints with the headers a merchant requires:
bearer token, a fresh Idempotency-Key and Request-Id per call, the current
Unix timestamp and, when a signing secret is configured, an HMAC signature
over the exact body bytes.

Usage:
    async with ACPCheckoutClient("http://localhost:8000", api_key="acp_...") as client:
        session = await client.create_session([{"sku": "mug", "price": "10.00", "quantity": 2}])
        await client.complete_session(session.id, {"token": "tok_visa"})
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from acp_merchant.auth import sign_payload
from acp_merchant.models import (
    ACPErrorResponse,
    CancelSessionResponse,
    CheckoutSessionResponse,
    CompleteSessionResponse,
)


DEFAULT_API_VERSION = "2026-01-30"


class ACPClientError(Exception):
    """Non-2xx response from the merchant, carrying the ACP error envelope."""

    def __init__(self, status_code: int, error: Optional[ACPErrorResponse], text: str = ""):
        self.status_code = status_code
        self.error = error
        message = error.error.message if error else text or f"HTTP {status_code}"
        super().__init__(f"{status_code}: {message}")

    @property
    def code(self) -> Optional[str]:
        return self.error.error.code if self.error else None


class ACPCheckoutClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        signing_secret: str = "",
        api_version: Optional[str] = DEFAULT_API_VERSION,
        prefix: str = "/acp/v1",
        timeout: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.signing_secret = signing_secret
        self.api_version = api_version
        self.prefix = prefix
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "ACPCheckoutClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_headers(self, body: bytes = b"", idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key or f"idem_{uuid.uuid4().hex}",
            "Request-Id": f"req_{uuid.uuid4().hex}",
            "Timestamp": str(int(time.time())),
        }
        if self.api_version:
            headers["API-Version"] = self.api_version
        if self.signing_secret:
            headers["Signature"] = sign_payload(body, self.signing_secret)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        body = b"" if payload is None else json.dumps(payload, default=str).encode("utf-8")
        resp = await self._client.request(
            method,
            f"{self.prefix}{path}",
            content=body,
            headers=self.build_headers(body, idempotency_key),
        )
        if resp.is_success:
            return resp.json()

        error = None
        try:
            error = ACPErrorResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            pass
        raise ACPClientError(resp.status_code, error, resp.text)

    async def create_session(
        self,
        items: list[dict[str, Any]],
        buyer: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        currency: Optional[str] = None,
        fulfillment_address: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        payload: dict[str, Any] = {"items": items}
        if buyer:
            payload["buyer"] = buyer
        if metadata:
            payload["metadata"] = metadata
        if currency:
            payload["currency"] = currency
        if fulfillment_address:
            payload["fulfillment_address"] = fulfillment_address
        data = await self._request("POST", "/checkout_sessions", payload, idempotency_key)
        return CheckoutSessionResponse.model_validate(data)

    async def get_session(self, session_id: str) -> CheckoutSessionResponse:
        data = await self._request("GET", f"/checkout_sessions/{session_id}")
        return CheckoutSessionResponse.model_validate(data)

    async def update_session(
        self,
        session_id: str,
        amount: Optional[str] = None,
        currency: Optional[str] = None,
        status: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        payload = {
            k: v for k, v in
            {"amount": amount, "currency": currency, "status": status}.items()
            if v is not None
        }
        data = await self._request(
            "POST", f"/checkout_sessions/{session_id}", payload, idempotency_key
        )
        return CheckoutSessionResponse.model_validate(data)

    async def complete_session(
        self,
        session_id: str,
        payment_method_details: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CompleteSessionResponse:
        payload = {"payment_method_details": payment_method_details or {}}
        data = await self._request(
            "POST", f"/checkout_sessions/{session_id}/complete", payload, idempotency_key
        )
        return CompleteSessionResponse.model_validate(data)

    async def cancel_session(
        self,
        session_id: str,
        idempotency_key: Optional[str] = None,
    ) -> CancelSessionResponse:
        data = await self._request(
            "POST", f"/checkout_sessions/{session_id}/cancel", None, idempotency_key
        )
        return CancelSessionResponse.model_validate(data)
