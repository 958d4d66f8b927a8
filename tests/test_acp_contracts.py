from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from acp_merchant.errors import (
    AuthenticationError,
    ConflictError,
    DuplicateRequestError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from acp_merchant.models import (
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutStatus,
    FulfillmentOption,
    SessionStatus,
    TotalBreakdown,
)
from acp_merchant.responses import build_checkout_session_response, map_status, to_minor_units

from conftest import make_session


def test_create_request_requires_at_least_one_item():
    with pytest.raises(PydanticValidationError):
        CheckoutSessionCreateRequest(items=[])


def test_item_quantity_must_be_positive():
    with pytest.raises(PydanticValidationError):
        CheckoutSessionCreateRequest(items=[{"sku": "mug", "quantity": 0}])

    request = CheckoutSessionCreateRequest(items=[{"sku": "mug"}])
    assert request.items[0].quantity == 1
    assert request.items[0].price == Decimal("0")


def test_update_request_rejects_negative_amount():
    with pytest.raises(PydanticValidationError):
        CheckoutSessionUpdateRequest(amount="-1")


@pytest.mark.parametrize(
    "status, expected",
    [
        (SessionStatus.PENDING, CheckoutStatus.NOT_READY_FOR_PAYMENT),
        (SessionStatus.COMPLETED, CheckoutStatus.COMPLETED),
        (SessionStatus.CANCELLED, CheckoutStatus.CANCELLED),
        (SessionStatus.FAILED, CheckoutStatus.CANCELLED),
    ],
)
def test_status_mapping(status, expected):
    assert map_status(status) == expected


@pytest.mark.parametrize(
    "amount, minor",
    [
        ("0", 0),
        ("10.00", 1000),
        ("12.345", 1235),
        ("0.005", 1),
        ("19.994", 1999),
    ],
)
def test_minor_units_round_half_up(amount, minor):
    assert to_minor_units(Decimal(amount)) == minor


def test_session_response_contract():
    session = make_session(
        status=SessionStatus.FAILED,
        order_id="order_42",
        total_details=TotalBreakdown(subtotal=Decimal("20.00"), total=Decimal("20.00")),
        fulfillment_options=[FulfillmentOption(id="std", name="Standard", amount=Decimal("4.99"))],
    )

    dumped = build_checkout_session_response(
        session, "https://shop.example.com/orders/{order_id}"
    ).model_dump(mode="json")

    assert dumped["id"] == session.session_id
    assert dumped["status"] == "cancelled"
    assert dumped["amount_total"] == 2000
    assert dumped["line_items"][0]["unit_amount"] == 1000
    assert dumped["line_items"][0]["total_amount"] == 2000
    assert dumped["total_details"]["total"] == 2000
    assert dumped["fulfillment_options"][0]["amount"] == 499
    assert dumped["order_url"] == "https://shop.example.com/orders/order_42"
    # stored state keeps major units
    assert session.amount == Decimal("20.00")


def test_error_envelope_shapes():
    body = NotFoundError("Checkout session not found").body.model_dump()
    assert body == {
        "error": {
            "type": "not_found",
            "code": "session_not_found",
            "message": "Checkout session not found",
            "param": None,
        }
    }

    assert ValidationError("bad", param="$.items").status_code == 400
    assert AuthenticationError("nope").status_code == 401
    assert ConflictError("busy").status_code == 409
    assert ServerError("boom").body.error.type == "api_error"

    duplicate = DuplicateRequestError("Duplicate request", cached_response={"id": "x"})
    assert duplicate.status_code == 409
    assert duplicate.param == "$.headers.Idempotency-Key"
    assert duplicate.cached_response == {"id": "x"}


def test_error_code_can_be_overridden():
    error = ValidationError("Currency not supported", code="unsupported_currency", param="$.currency")
    assert error.body.error.code == "unsupported_currency"
    assert error.body.error.type == "invalid_request"


def test_timestamps_serialize_as_iso8601():
    created = datetime(2026, 1, 30, 12, 0, tzinfo=timezone.utc)
    session = make_session(created_at=created, updated_at=created)

    dumped = build_checkout_session_response(session).model_dump(mode="json")
    assert dumped["created_at"].startswith("2026-01-30T12:00:00")
    assert dumped["order_url"] is None
