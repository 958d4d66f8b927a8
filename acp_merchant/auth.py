"""
Inbound request authentication.

`HeaderValidator` checks the required ACP headers and the timestamp window;
`RequestAuthenticator` layers the bearer token, optional body signature and
idempotency reservation on top of it. Validation always finishes before any
idempotency key is reserved.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import string
import time
from typing import Callable, Mapping, Optional

from pydantic import BaseModel

from acp_merchant.config import Settings
from acp_merchant.errors import AuthenticationError, ValidationError
from acp_merchant.idempotency import IdempotencyCache


REQUIRED_HEADERS = ("Idempotency-Key", "Request-Id", "Timestamp")
OPTIONAL_HEADERS = ("Signature", "API-Version", "Authorization")
MUTATING_METHODS = ("POST", "PUT")
BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
SIGNATURE_PREFIX = "sha256="

logger = logging.getLogger(__name__)


class ValidatedHeaders(BaseModel):
    idempotency_key: str
    request_id: str
    timestamp: int
    authorization: Optional[str] = None
    signature: Optional[str] = None
    api_version: Optional[str] = None


# ---------------------------------------------------------------------------
# Signatures & credentials
# ---------------------------------------------------------------------------

def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str) -> str:
    """Signature header value for an outbound payload: `sha256=<hex>`."""
    return SIGNATURE_PREFIX + compute_signature(payload, secret)


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256, with or without the prefix."""
    if not signature or not secret:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    # header values arrive latin-1 decoded; compare bytes so any text is safe
    return hmac.compare_digest(
        compute_signature(payload, secret).encode("ascii"),
        signature.strip().encode("latin-1", "replace"),
    )


def _random_token(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_api_key() -> str:
    return "acp_" + _random_token()


def generate_webhook_secret() -> str:
    return "whsec_" + _random_token()


# ---------------------------------------------------------------------------
# Header validation
# ---------------------------------------------------------------------------

class HeaderValidator:
    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self._settings = settings
        self._clock = clock

    def validate(self, headers: Mapping[str, str]) -> ValidatedHeaders:
        lowered = {k.lower(): v for k, v in headers.items()}
        values: dict[str, str] = {}

        for name in REQUIRED_HEADERS:
            value = (lowered.get(name.lower()) or "").strip()
            if not value:
                logger.error("Missing required header: %s", name)
                raise AuthenticationError(
                    f"Missing required header: {name}", param=f"$.headers.{name}"
                )
            values[name] = value

        for name in OPTIONAL_HEADERS:
            value = (lowered.get(name.lower()) or "").strip()
            if value:
                values[name] = value

        api_version = values.get("API-Version")
        if api_version and api_version not in self._settings.supported_api_versions:
            raise ValidationError(
                f"Unsupported API-Version '{api_version}'",
                code="unsupported_api_version",
                param="$.headers.API-Version",
            )

        return ValidatedHeaders(
            idempotency_key=values["Idempotency-Key"],
            request_id=values["Request-Id"],
            timestamp=self.validate_timestamp(values["Timestamp"]),
            authorization=values.get("Authorization"),
            signature=values.get("Signature"),
            api_version=api_version,
        )

    def validate_timestamp(self, raw: str) -> int:
        try:
            timestamp = int(raw)
        except (TypeError, ValueError):
            raise AuthenticationError(
                "Timestamp must be a valid Unix timestamp", param="$.headers.Timestamp"
            ) from None

        now = int(self._clock())
        tolerance = self._settings.timestamp_tolerance
        if timestamp < now - tolerance:
            raise AuthenticationError(
                "Timestamp is too old (replay attack prevention)", param="$.headers.Timestamp"
            )
        if timestamp > now + tolerance:
            raise AuthenticationError("Timestamp is in the future", param="$.headers.Timestamp")
        return timestamp


# ---------------------------------------------------------------------------
# Request authentication
# ---------------------------------------------------------------------------

class RequestAuthenticator:
    def __init__(
        self,
        settings: Settings,
        idempotency: IdempotencyCache,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._idempotency = idempotency
        self._headers = HeaderValidator(settings, clock=clock)

    async def authenticate(
        self,
        method: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> ValidatedHeaders:
        validated = self._headers.validate(headers)
        self._check_bearer(validated.authorization)
        if self._settings.enable_signature_validation:
            self._check_signature(body, validated.signature)
        if method.upper() in MUTATING_METHODS:
            await self._idempotency.check_and_reserve(validated.idempotency_key)
        return validated

    def _check_bearer(self, authorization: Optional[str]) -> None:
        if not authorization:
            raise AuthenticationError(
                "Authorization header required", param="$.headers.Authorization"
            )
        match = BEARER_PATTERN.match(authorization)
        if not match:
            raise AuthenticationError(
                "Invalid authorization format", param="$.headers.Authorization"
            )
        token = match.group(1).strip()
        api_key = self._settings.api_key
        if not api_key or not hmac.compare_digest(api_key.encode("utf-8"), token.encode("utf-8")):
            raise AuthenticationError("Invalid or expired token", param="$.headers.Authorization")

    def _check_signature(self, body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise AuthenticationError("Missing Signature header", param="$.headers.Signature")
        if not verify_signature(body, signature, self._settings.webhook_secret):
            raise AuthenticationError("Invalid Signature", param="$.headers.Signature")
