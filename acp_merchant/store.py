"""
Durable storage for checkout sessions and webhook events.

`SessionStore` is the single source of truth for session state. Every
mutation goes through `SessionStore.checkout()`, which locks the row
(`SELECT ... FOR UPDATE` where the backend supports it), hands out a working
copy and writes it back under an optimistic version check.

`WebhookStore` only issues single-row updates keyed by `webhook_id`; retry
workers claim events with a conditional increment of `attempts`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from acp_merchant.database import CheckoutSessionRow, WebhookEventRow, utcnow
from acp_merchant.errors import ConflictError, NotFoundError
from acp_merchant.models import CheckoutSession, SessionStatus, WebhookEvent, WebhookStatus


MAX_RESPONSE_BODY = 10_000

# a completion claim older than this is treated as abandoned
COMPLETION_CLAIM_TIMEOUT = timedelta(minutes=10)

logger = logging.getLogger(__name__)


# ── Row mapping ──────────────────────────────────────────────────────────

def _session_from_row(row: CheckoutSessionRow) -> CheckoutSession:
    return CheckoutSession(
        session_id=row.session_id,
        intent_id=row.intent_id,
        status=row.status,
        amount=row.amount,
        currency=row.currency,
        buyer=row.buyer,
        line_items=row.line_items or [],
        total_details=row.total_details or {},
        fulfillment_options=row.fulfillment_options or [],
        fulfillment_address=row.fulfillment_address,
        metadata=row.session_metadata or {},
        order_id=row.order_id,
        payment_id=row.payment_id,
        transaction_id=row.transaction_id,
        cancelled_at=row.cancelled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_session(row: CheckoutSessionRow, session: CheckoutSession) -> None:
    """Copy mutable fields onto the row. Identity columns are never written."""
    row.status = session.status.value
    row.amount = session.amount
    row.currency = session.currency
    row.buyer = session.buyer.model_dump(mode="json") if session.buyer else None
    row.line_items = [item.model_dump(mode="json") for item in session.line_items]
    row.total_details = session.total_details.model_dump(mode="json")
    row.fulfillment_options = [o.model_dump(mode="json") for o in session.fulfillment_options]
    row.fulfillment_address = (
        session.fulfillment_address.model_dump(mode="json")
        if session.fulfillment_address else None
    )
    row.session_metadata = dict(session.metadata)
    row.order_id = session.order_id
    row.payment_id = session.payment_id
    row.transaction_id = session.transaction_id
    row.cancelled_at = session.cancelled_at
    row.updated_at = session.updated_at


def _event_from_row(row: WebhookEventRow) -> WebhookEvent:
    return WebhookEvent(
        webhook_id=row.webhook_id,
        event_type=row.event_type,
        order_id=row.order_id,
        session_id=row.session_id,
        payload=row.payload,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_retry_at=row.next_retry_at,
        response_code=row.response_code,
        response_body=row.response_body,
        last_error=row.last_error,
        processed_at=row.processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ── Checkout sessions ────────────────────────────────────────────────────

class SessionStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessionmaker = sessionmaker
        self._clock = clock

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        row = CheckoutSessionRow(
            session_id=session.session_id,
            intent_id=session.intent_id,
            created_at=session.created_at,
        )
        _write_session(row, session)
        async with self._sessionmaker() as db:
            db.add(row)
            await db.commit()
        return session

    async def get(self, session_id: str) -> CheckoutSession:
        async with self._sessionmaker() as db:
            row = await db.get(CheckoutSessionRow, session_id)
            if row is None:
                raise NotFoundError("Session not found", param="$.session_id")
            return _session_from_row(row)

    async def get_by_intent(self, intent_id: str) -> CheckoutSession:
        async with self._sessionmaker() as db:
            row = (
                await db.execute(
                    select(CheckoutSessionRow).where(CheckoutSessionRow.intent_id == intent_id)
                )
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError("Session not found", param="$.intent_id")
            return _session_from_row(row)

    def _claim_is_live(self, row: CheckoutSessionRow, now: datetime) -> bool:
        return row.completing_at is not None and row.completing_at > now - COMPLETION_CLAIM_TIMEOUT

    @asynccontextmanager
    async def checkout(
        self,
        session_id: str,
        *,
        completing: bool = False,
    ) -> AsyncIterator[CheckoutSession]:
        """
        Lock a session and yield a working copy. The copy is written back
        when the block exits normally; an exception rolls everything back.

        A session claimed by `claim_completion()` can only be written by the
        claim holder, which passes `completing=True` and releases the claim.
        """
        async with self._sessionmaker() as db:
            try:
                async with db.begin():
                    row = (
                        await db.execute(
                            select(CheckoutSessionRow)
                            .where(CheckoutSessionRow.session_id == session_id)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFoundError("Session not found", param="$.session_id")
                    if not completing and self._claim_is_live(row, self._clock()):
                        raise ConflictError("Session is being completed, retry the request")

                    working = _session_from_row(row)
                    yield working

                    # updated_at never moves backwards
                    working.updated_at = max(self._clock(), working.updated_at)
                    _write_session(row, working)
                    if completing:
                        row.completing_at = None
            except StaleDataError as exc:
                logger.warning("Concurrent modification of session %s", session_id)
                raise ConflictError(
                    "Session was modified concurrently, retry the request"
                ) from exc

    async def claim_completion(self, session_id: str) -> bool:
        """
        Mark a pending session as being completed. The conditional UPDATE is
        committed before any payment is taken, so only one caller wins.
        """
        now = self._clock()
        async with self._sessionmaker() as db:
            result = await db.execute(
                update(CheckoutSessionRow)
                .where(
                    CheckoutSessionRow.session_id == session_id,
                    CheckoutSessionRow.status == SessionStatus.PENDING.value,
                    or_(
                        CheckoutSessionRow.completing_at.is_(None),
                        CheckoutSessionRow.completing_at <= now - COMPLETION_CLAIM_TIMEOUT,
                    ),
                )
                .values(completing_at=now, version=CheckoutSessionRow.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def list_by_status(self, status: SessionStatus, limit: int = 50) -> list[CheckoutSession]:
        async with self._sessionmaker() as db:
            rows = (
                await db.execute(
                    select(CheckoutSessionRow)
                    .where(CheckoutSessionRow.status == status.value)
                    .order_by(CheckoutSessionRow.created_at.desc())
                    .limit(limit)
                )
            ).scalars().all()
            return [_session_from_row(row) for row in rows]

    async def stats(self) -> dict:
        async with self._sessionmaker() as db:
            rows = (
                await db.execute(
                    select(
                        CheckoutSessionRow.status,
                        func.count(),
                        func.coalesce(func.sum(CheckoutSessionRow.amount), 0),
                    ).group_by(CheckoutSessionRow.status)
                )
            ).all()

        stats: dict = {status.value: 0 for status in SessionStatus}
        stats["total"] = 0
        total_amount = Decimal("0")
        for status, count, amount in rows:
            stats[status] = count
            stats["total"] += count
            total_amount += Decimal(str(amount))
        stats["total_amount"] = total_amount
        return stats

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._sessionmaker() as db:
            result = await db.execute(
                delete(CheckoutSessionRow)
                .where(CheckoutSessionRow.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0


# ── Webhook events ───────────────────────────────────────────────────────

class WebhookStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessionmaker = sessionmaker
        self._clock = clock

    async def create(self, event: WebhookEvent) -> WebhookEvent:
        async with self._sessionmaker() as db:
            db.add(
                WebhookEventRow(
                    webhook_id=event.webhook_id,
                    event_type=event.event_type,
                    order_id=event.order_id,
                    session_id=event.session_id,
                    payload=event.payload,
                    status=event.status.value,
                    attempts=event.attempts,
                    max_attempts=event.max_attempts,
                    next_retry_at=event.next_retry_at,
                    created_at=event.created_at,
                    updated_at=event.updated_at,
                )
            )
            await db.commit()
        return event

    async def get(self, webhook_id: str) -> Optional[WebhookEvent]:
        async with self._sessionmaker() as db:
            row = await db.get(WebhookEventRow, webhook_id)
            return _event_from_row(row) if row else None

    async def mark_sent(
        self,
        webhook_id: str,
        response_code: Optional[int],
        response_body: Optional[str],
    ) -> None:
        now = self._clock()
        await self._update(
            webhook_id,
            status=WebhookStatus.SENT.value,
            response_code=response_code,
            response_body=(response_body or "")[:MAX_RESPONSE_BODY],
            last_error=None,
            next_retry_at=None,
            processed_at=now,
            updated_at=now,
        )

    async def mark_failed(
        self,
        webhook_id: str,
        error: str,
        response_code: Optional[int] = None,
        response_body: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> None:
        now = self._clock()
        await self._update(
            webhook_id,
            status=WebhookStatus.FAILED.value,
            response_code=response_code,
            response_body=(response_body or "")[:MAX_RESPONSE_BODY] or None,
            last_error=error[:MAX_RESPONSE_BODY],
            next_retry_at=next_retry_at,
            processed_at=now,
            updated_at=now,
        )

    async def _update(self, webhook_id: str, **values) -> None:
        # a sent event is final
        async with self._sessionmaker() as db:
            await db.execute(
                update(WebhookEventRow)
                .where(
                    WebhookEventRow.webhook_id == webhook_id,
                    WebhookEventRow.status != WebhookStatus.SENT.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def find_retryable(
        self,
        limit: int,
        now: datetime,
        stale_before: datetime,
    ) -> list[WebhookEvent]:
        """Failed events that are due, plus pending events abandoned mid-delivery."""
        async with self._sessionmaker() as db:
            rows = (
                await db.execute(
                    select(WebhookEventRow)
                    .where(
                        WebhookEventRow.attempts < WebhookEventRow.max_attempts,
                        or_(
                            and_(
                                WebhookEventRow.status == WebhookStatus.FAILED.value,
                                or_(
                                    WebhookEventRow.next_retry_at.is_(None),
                                    WebhookEventRow.next_retry_at <= now,
                                ),
                            ),
                            and_(
                                WebhookEventRow.status == WebhookStatus.PENDING.value,
                                WebhookEventRow.updated_at <= stale_before,
                            ),
                        ),
                    )
                    .order_by(WebhookEventRow.created_at.asc())
                    .limit(limit)
                )
            ).scalars().all()
            return [_event_from_row(row) for row in rows]

    async def claim(self, event: WebhookEvent) -> bool:
        """
        Increment `attempts` only if nobody else has since the event was
        read. Returns True for the single winner.
        """
        async with self._sessionmaker() as db:
            result = await db.execute(
                update(WebhookEventRow)
                .where(
                    WebhookEventRow.webhook_id == event.webhook_id,
                    WebhookEventRow.attempts == event.attempts,
                    WebhookEventRow.status == event.status.value,
                    WebhookEventRow.attempts < WebhookEventRow.max_attempts,
                )
                .values(attempts=WebhookEventRow.attempts + 1, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def stats(self) -> dict:
        async with self._sessionmaker() as db:
            rows = (
                await db.execute(
                    select(WebhookEventRow.status, func.count()).group_by(WebhookEventRow.status)
                )
            ).all()
            exhausted = (
                await db.execute(
                    select(func.count()).where(
                        WebhookEventRow.status == WebhookStatus.FAILED.value,
                        WebhookEventRow.attempts >= WebhookEventRow.max_attempts,
                    )
                )
            ).scalar_one()

        stats: dict = {status.value: 0 for status in WebhookStatus}
        stats["total"] = 0
        for status, count in rows:
            stats[status] = count
            stats["total"] += count
        stats["exhausted"] = exhausted
        return stats

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._sessionmaker() as db:
            result = await db.execute(
                delete(WebhookEventRow)
                .where(WebhookEventRow.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0
