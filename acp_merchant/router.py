"""
ACP checkout router.

`create_checkout_router()` wires the checkout endpoints to a
`CheckoutService`. Each request is authenticated against the raw body before
it is parsed, so the signature covers exactly the bytes that were sent and a
rejected request never reserves its Idempotency-Key.

Usage:
    router = create_checkout_router(checkout, authenticator, idempotency)
    app.include_router(router)
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Type

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from acp_merchant.auth import MUTATING_METHODS, RequestAuthenticator
from acp_merchant.checkout import CheckoutService
from acp_merchant.errors import (
    ACPSellerError,
    DuplicateRequestError,
    ServerError,
    ValidationError,
)
from acp_merchant.idempotency import IdempotencyCache
from acp_merchant.models import (
    CancelSessionResponse,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionResponse,
    CheckoutSessionUpdateRequest,
    CompleteSessionResponse,
)


Handler = Callable[[bytes], Awaitable[BaseModel]]

logger = logging.getLogger(__name__)


def _apply_common_response_headers(
    response: Response,
    idempotency_key: Optional[str],
    request_id: Optional[str],
) -> None:
    if idempotency_key:
        response.headers["Idempotency-Key"] = idempotency_key
    if request_id:
        response.headers["Request-Id"] = request_id


def _error_response(
    error: ACPSellerError,
    idempotency_key: Optional[str],
    request_id: Optional[str],
) -> JSONResponse:
    response = JSONResponse(status_code=error.status_code, content=error.body.model_dump())
    _apply_common_response_headers(response, idempotency_key, request_id)
    return response


def validation_error_from(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return ValidationError(
        first.get("msg", "Invalid request body"),
        param=f"$.{loc}" if loc else None,
    )


def parse_body(model: Type[BaseModel], raw_body: bytes) -> BaseModel:
    try:
        return model.model_validate_json(raw_body or b"{}")
    except PydanticValidationError as exc:
        raise validation_error_from(exc) from None


def create_checkout_router(
    checkout: CheckoutService,
    authenticator: RequestAuthenticator,
    idempotency: IdempotencyCache,
    prefix: str = "/acp/v1",
) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["ACP Checkout"])

    async def run(request: Request, handler: Handler) -> Response:
        raw_body = await request.body()
        idempotency_key = request.headers.get("Idempotency-Key")
        request_id = request.headers.get("Request-Id")

        try:
            await authenticator.authenticate(request.method, request.headers, raw_body)
        except DuplicateRequestError as e:
            if e.cached_response:
                replay = JSONResponse(
                    status_code=e.cached_response.get("status_code", 200),
                    content=e.cached_response.get("body"),
                )
                _apply_common_response_headers(replay, idempotency_key, request_id)
                return replay
            return _error_response(e, idempotency_key, request_id)
        except ACPSellerError as e:
            return _error_response(e, idempotency_key, request_id)

        reserved = request.method.upper() in MUTATING_METHODS
        try:
            result = await handler(raw_body)
        except ACPSellerError as e:
            if reserved:
                await idempotency.release(idempotency_key)
            return _error_response(e, idempotency_key, request_id)
        except Exception:
            logger.exception(
                "Unhandled error in %s %s", request.method, request.url.path,
                extra={"context": {"request_id": request_id}},
            )
            if reserved:
                await idempotency.release(idempotency_key)
            return _error_response(ServerError("Internal server error"), idempotency_key, request_id)

        content = result.model_dump(mode="json")
        if reserved:
            await idempotency.store_result(idempotency_key, 200, content)
        response = JSONResponse(status_code=200, content=content)
        _apply_common_response_headers(response, idempotency_key, request_id)
        return response

    @router.post("/checkout_sessions", response_model=CheckoutSessionResponse)
    async def create_checkout_session(request: Request):
        async def handler(raw_body: bytes) -> CheckoutSessionResponse:
            body = parse_body(CheckoutSessionCreateRequest, raw_body)
            return await checkout.create_session(body)

        return await run(request, handler)

    @router.get("/checkout_sessions/{session_id}", response_model=CheckoutSessionResponse)
    async def get_checkout_session(request: Request, session_id: str):
        async def handler(raw_body: bytes) -> CheckoutSessionResponse:
            return await checkout.get_session(session_id)

        return await run(request, handler)

    async def update_checkout_session(request: Request, session_id: str):
        async def handler(raw_body: bytes) -> CheckoutSessionResponse:
            body = parse_body(CheckoutSessionUpdateRequest, raw_body)
            return await checkout.update_session(session_id, body)

        return await run(request, handler)

    # ACP agents update with POST; PUT is kept for REST clients
    router.add_api_route(
        "/checkout_sessions/{session_id}",
        update_checkout_session,
        methods=["PUT", "POST"],
        response_model=CheckoutSessionResponse,
    )

    @router.post(
        "/checkout_sessions/{session_id}/complete",
        response_model=CompleteSessionResponse,
    )
    async def complete_checkout_session(request: Request, session_id: str):
        async def handler(raw_body: bytes) -> CompleteSessionResponse:
            body = parse_body(CheckoutSessionCompleteRequest, raw_body)
            return await checkout.complete_session(session_id, body.payment_method_details)

        return await run(request, handler)

    @router.post(
        "/checkout_sessions/{session_id}/cancel",
        response_model=CancelSessionResponse,
    )
    async def cancel_checkout_session(request: Request, session_id: str):
        async def handler(raw_body: bytes) -> CancelSessionResponse:
            return await checkout.cancel_session(session_id)

        return await run(request, handler)

    return router
