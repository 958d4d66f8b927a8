import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from acp_merchant.checkout import ALLOWED_TRANSITIONS, can_transition
from acp_merchant.database import CheckoutSessionRow
from acp_merchant.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
    ValidationError,
)
from acp_merchant.models import (
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutStatus,
    SessionStatus,
    WebhookStatus,
)
from acp_merchant.payment import DECLINE_TOKEN

from conftest import make_session


def _create_request(**overrides):
    values = {"items": [{"sku": "mug", "quantity": 2}], "buyer": {"email": "buyer@example.com"}}
    values.update(overrides)
    return CheckoutSessionCreateRequest.model_validate(values)


async def test_create_session_amount_is_sum_of_line_items(container):
    response = await container.checkout.create_session(_create_request())

    assert response.status == CheckoutStatus.NOT_READY_FOR_PAYMENT
    assert response.currency == "USD"
    assert response.amount_total == 2000
    assert response.line_items[0].unit_amount == 1000
    assert response.line_items[0].total_amount == 2000
    assert response.total_details.subtotal == 2000
    assert [o.id for o in response.fulfillment_options] == ["digital", "ship_std", "ship_exp"]

    stored = await container.sessions.get(response.id)
    assert stored.status == SessionStatus.PENDING
    assert stored.amount == sum(li.unit_price * li.quantity for li in stored.line_items)
    assert stored.amount == Decimal("20.00")
    assert stored.buyer.email == "buyer@example.com"


async def test_existing_sku_supplies_the_price(container):
    response = await container.checkout.create_session(
        _create_request(items=[{"sku": "mug", "name": "Cheap Mug", "price": "1.00", "quantity": 1}])
    )
    assert response.amount_total == 1000
    assert response.line_items[0].name == "Coffee Mug"


async def test_unknown_sku_creates_catalog_entry(container):
    response = await container.checkout.create_session(
        _create_request(items=[{"sku": "sticker", "name": "Sticker", "price": "2.50", "quantity": 3}])
    )
    assert response.amount_total == 750
    assert container.catalog.get("sticker").price == Decimal("2.50")


async def test_out_of_stock_item_is_rejected(container):
    with pytest.raises(ValidationError) as exc_info:
        await container.checkout.create_session(_create_request(items=[{"sku": "poster"}]))
    assert exc_info.value.code == "out_of_stock"
    assert (await container.sessions.stats())["total"] == 0


async def test_unsupported_currency_is_rejected(container):
    with pytest.raises(ValidationError) as exc_info:
        await container.checkout.create_session(_create_request(currency="JPY"))
    assert exc_info.value.code == "unsupported_currency"


async def test_currency_is_normalized(container):
    response = await container.checkout.create_session(_create_request(currency="eur"))
    assert response.currency == "EUR"


async def test_get_unknown_session_is_not_found(container):
    with pytest.raises(NotFoundError) as exc_info:
        await container.checkout.get_session("acp_session_missing")
    assert exc_info.value.status_code == 404
    assert exc_info.value.code == "session_not_found"


async def test_complete_session_records_payment_and_order(container):
    created = await container.checkout.create_session(_create_request())

    result = await container.checkout.complete_session(created.id, {"token": "tok_visa"})

    assert result.status == SessionStatus.COMPLETED
    assert result.session_id == created.id
    assert result.intent_id == created.intent_id
    assert result.payment_id.startswith("pay_")
    assert result.transaction_id.startswith("txn_")

    stored = await container.sessions.get(created.id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.order_id == result.order_id

    order = await container.orders.get_order(result.order_id)
    assert order.status == "processing"
    assert order.checkout_session_id == created.id


async def test_complete_twice_raises_invalid_state_and_keeps_state(container):
    created = await container.checkout.create_session(_create_request())
    first = await container.checkout.complete_session(created.id)
    before = await container.sessions.get(created.id)

    with pytest.raises(InvalidStateError) as exc_info:
        await container.checkout.complete_session(created.id)
    assert exc_info.value.code == "invalid_state"

    after = await container.sessions.get(created.id)
    assert after.status == SessionStatus.COMPLETED
    assert after.order_id == first.order_id
    assert after.updated_at == before.updated_at


@pytest.mark.parametrize("status", [SessionStatus.CANCELLED, SessionStatus.FAILED])
async def test_complete_from_terminal_state_is_rejected(container, status):
    session = make_session(status=status)
    await container.sessions.create(session)

    with pytest.raises(InvalidStateError):
        await container.checkout.complete_session(session.session_id)
    assert (await container.sessions.get(session.session_id)).status == status


async def test_declined_payment_marks_session_failed(container):
    created = await container.checkout.create_session(_create_request())

    with pytest.raises(PaymentFailedError) as exc_info:
        await container.checkout.complete_session(created.id, {"token": DECLINE_TOKEN})
    assert exc_info.value.status_code == 400

    stored = await container.sessions.get(created.id)
    assert stored.status == SessionStatus.FAILED
    assert stored.order_id is None
    assert (await container.checkout.get_session(created.id)).status == CheckoutStatus.CANCELLED


async def test_order_creation_failure_marks_session_failed(container):
    session = make_session(line_items=[], amount=Decimal("0"))
    await container.sessions.create(session)

    with pytest.raises(PaymentFailedError):
        await container.checkout.complete_session(session.session_id)
    assert (await container.sessions.get(session.session_id)).status == SessionStatus.FAILED


async def test_unexpected_collaborator_error_marks_session_failed(container, monkeypatch):
    created = await container.checkout.create_session(_create_request())

    async def broken_charge(session, details=None):
        raise RuntimeError("gateway unreachable")

    monkeypatch.setattr(container.payments, "charge", broken_charge)

    with pytest.raises(PaymentFailedError) as exc_info:
        await container.checkout.complete_session(created.id)
    assert "gateway unreachable" not in exc_info.value.message
    assert (await container.sessions.get(created.id)).status == SessionStatus.FAILED


async def test_cancel_after_complete_is_accepted(container):
    created = await container.checkout.create_session(_create_request())
    await container.checkout.complete_session(created.id)

    cancelled = await container.checkout.cancel_session(created.id)

    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert (await container.sessions.get(created.id)).status == SessionStatus.CANCELLED


async def test_cancel_unknown_session_is_not_found(container):
    with pytest.raises(NotFoundError):
        await container.checkout.cancel_session("acp_session_missing")


async def test_update_overwrites_without_transition_check(container):
    created = await container.checkout.create_session(_create_request())
    await container.checkout.complete_session(created.id)

    updated = await container.checkout.update_session(
        created.id,
        CheckoutSessionUpdateRequest(amount=Decimal("12.345"), currency="try", status="pending"),
    )

    assert updated.status == CheckoutStatus.NOT_READY_FOR_PAYMENT
    assert updated.currency == "TRY"
    assert updated.amount_total == 1235
    assert updated.intent_id == created.intent_id


async def test_update_rejects_unsupported_currency(container):
    created = await container.checkout.create_session(_create_request())
    with pytest.raises(ValidationError):
        await container.checkout.update_session(
            created.id, CheckoutSessionUpdateRequest(currency="GBP")
        )


async def test_update_unknown_session_is_not_found(container):
    with pytest.raises(NotFoundError):
        await container.checkout.update_session(
            "acp_session_missing", CheckoutSessionUpdateRequest(amount=Decimal("1"))
        )


async def test_completion_emits_order_webhook(container, receiver):
    created = await container.checkout.create_session(_create_request())
    result = await container.checkout.complete_session(created.id)

    stats = await container.webhook_store.stats()
    assert stats["total"] == 1
    assert stats[WebhookStatus.SENT.value] == 1
    assert len(receiver.requests) == 1
    assert b'"new_status":"processing"' in receiver.requests[0].content
    assert result.order_id.encode() in receiver.requests[0].content


async def test_stale_write_raises_conflict(container, sessionmaker):
    created = await container.checkout.create_session(_create_request())

    with pytest.raises(ConflictError) as exc_info:
        async with container.sessions.checkout(created.id) as session:
            session.status = SessionStatus.CANCELLED
            async with sessionmaker() as other:
                await other.execute(
                    update(CheckoutSessionRow)
                    .where(CheckoutSessionRow.session_id == created.id)
                    .values(version=CheckoutSessionRow.version + 1)
                )
                await other.commit()
    assert exc_info.value.status_code == 409

    assert (await container.sessions.get(created.id)).status == SessionStatus.PENDING


async def test_concurrent_completes_charge_once(container, monkeypatch):
    created = await container.checkout.create_session(_create_request())
    charge = container.payments.charge

    async def slow_charge(session, details=None):
        await asyncio.sleep(0.05)
        return await charge(session, details)

    monkeypatch.setattr(container.payments, "charge", slow_charge)

    results = await asyncio.gather(
        container.checkout.complete_session(created.id),
        container.checkout.complete_session(created.id),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(completed) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], (ConflictError, InvalidStateError))
    assert len(container.payments.charges) == 1
    assert len(container.orders.orders) == 1
    stored = await container.sessions.get(created.id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.order_id == completed[0].order_id


async def test_claimed_session_rejects_other_writes(container):
    created = await container.checkout.create_session(_create_request())

    assert await container.sessions.claim_completion(created.id) is True
    assert await container.sessions.claim_completion(created.id) is False

    with pytest.raises(ConflictError):
        await container.checkout.cancel_session(created.id)
    with pytest.raises(ConflictError):
        await container.checkout.complete_session(created.id)
    assert not container.payments.charges
    assert (await container.sessions.get(created.id)).status == SessionStatus.PENDING


async def test_abandoned_claim_can_be_taken_over(container, sessionmaker):
    created = await container.checkout.create_session(_create_request())
    async with sessionmaker() as db:
        await db.execute(
            update(CheckoutSessionRow)
            .where(CheckoutSessionRow.session_id == created.id)
            .values(completing_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        await db.commit()

    result = await container.checkout.complete_session(created.id)

    assert result.status == SessionStatus.COMPLETED
    async with sessionmaker() as db:
        row = await db.get(CheckoutSessionRow, created.id)
        assert row.completing_at is None


async def test_session_stats(container):
    a = await container.checkout.create_session(_create_request())
    b = await container.checkout.create_session(_create_request())
    await container.checkout.create_session(_create_request())
    await container.checkout.complete_session(a.id)
    await container.checkout.cancel_session(b.id)

    stats = await container.sessions.stats()
    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["cancelled"] == 1
    assert stats["failed"] == 0
    assert stats["total_amount"] == Decimal("60.00")


def test_terminal_states_have_no_transitions():
    for status in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED):
        assert ALLOWED_TRANSITIONS[status] == set()
    assert can_transition(SessionStatus.PENDING, SessionStatus.COMPLETED)
    assert not can_transition(SessionStatus.CANCELLED, SessionStatus.PENDING)
