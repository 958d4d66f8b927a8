"""
Database-backed catalog and order collaborators for the demo merchant.

Tables share `acp_merchant.database.Base`, so one `init_db()` creates the
checkout tables and these together.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Column, Integer, Numeric, String, Text, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acp_merchant.catalog import CatalogProvider
from acp_merchant.database import Base, JSONType, UTCDateTime, utcnow
from acp_merchant.errors import OrderCreationError
from acp_merchant.models import (
    Address,
    CatalogEntry,
    CheckoutSession,
    OrderItem,
    OrderSnapshot,
    OrderStatusChange,
    PaymentResult,
)
from acp_merchant.orders import OrderFulfillment, order_items_from_session


logger = logging.getLogger(__name__)


# ── Product catalog ──────────────────────────────────────────────────────

class ProductRow(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True)
    sku = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    price = Column(Numeric(12, 2), nullable=False)
    in_stock = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)


# ── Orders ───────────────────────────────────────────────────────────────

class OrderRow(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    checkout_session_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), nullable=False, default="pending")
    total = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    customer = Column(JSONType, default=dict)
    billing_address = Column(JSONType, default=dict)
    shipping_address = Column(JSONType, default=dict)
    items = Column(JSONType, default=list)
    payment_method = Column(String(100), nullable=True)
    payment_method_title = Column(String(255), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    order_metadata = Column("metadata", JSONType, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)


class OrderStatusHistoryRow(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), nullable=False, index=True)
    old_status = Column(String(50), nullable=False)
    new_status = Column(String(50), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class SqlCatalog(CatalogProvider):
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    @staticmethod
    def _entry(row: ProductRow) -> CatalogEntry:
        return CatalogEntry(
            product_id=row.id,
            sku=row.sku,
            name=row.name,
            description=row.description or None,
            price=Decimal(str(row.price)),
            in_stock=bool(row.in_stock),
        )

    async def lookup_or_create(
        self,
        sku: Optional[str],
        name: Optional[str],
        price: Decimal,
    ) -> CatalogEntry:
        async with self._sessionmaker() as db:
            if sku:
                row = (
                    await db.execute(select(ProductRow).where(ProductRow.sku == sku))
                ).scalar_one_or_none()
                if row is not None:
                    return self._entry(row)

            row = ProductRow(
                id=f"prod_{uuid.uuid4().hex[:12]}",
                sku=sku or f"acp-{uuid.uuid4().hex[:8]}",
                name=name or "ACP Product",
                description="",
                price=price,
                in_stock=True,
            )
            db.add(row)
            await db.commit()
            logger.info("Created catalog product %s (sku=%s)", row.id, row.sku)
            return self._entry(row)

    async def add_product(
        self,
        sku: str,
        name: str,
        price: Decimal,
        in_stock: bool = True,
        description: str = "",
    ) -> CatalogEntry:
        async with self._sessionmaker() as db:
            row = ProductRow(
                id=f"prod_{uuid.uuid4().hex[:12]}",
                sku=sku,
                name=name,
                description=description,
                price=price,
                in_stock=in_stock,
            )
            db.add(row)
            await db.commit()
            return self._entry(row)


class SqlOrderFulfillment(OrderFulfillment):
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        super().__init__()
        self._sessionmaker = sessionmaker

    async def create_order(self, session: CheckoutSession, payment: PaymentResult) -> str:
        if not session.line_items:
            raise OrderCreationError("Failed to create order: session has no line items")

        address = (session.fulfillment_address or Address()).model_dump(mode="json")
        now = utcnow()
        row = OrderRow(
            id=f"order_{uuid.uuid4().hex[:12]}",
            checkout_session_id=session.session_id,
            status="pending",
            total=session.amount,
            currency=session.currency,
            customer=session.buyer.model_dump(mode="json") if session.buyer else {},
            billing_address=address,
            shipping_address=address,
            items=[i.model_dump(mode="json") for i in order_items_from_session(session)],
            payment_method=payment.payment_method,
            payment_method_title=payment.payment_method_title,
            transaction_id=payment.transaction_id,
            order_metadata={"_acp_session_id": session.session_id, **session.metadata},
            created_at=now,
            updated_at=now,
        )
        async with self._sessionmaker() as db:
            db.add(row)
            await db.commit()
        return row.id

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        async with self._sessionmaker() as db:
            row = await db.get(OrderRow, order_id)
            if row is None:
                return None
            return OrderSnapshot(
                order_id=row.id,
                checkout_session_id=row.checkout_session_id,
                status=row.status,
                total=Decimal(str(row.total)),
                currency=row.currency,
                customer=row.customer or {},
                billing_address=row.billing_address or {},
                shipping_address=row.shipping_address or {},
                items=[OrderItem.model_validate(i) for i in row.items or []],
                payment_method=row.payment_method,
                payment_method_title=row.payment_method_title,
                transaction_id=row.transaction_id,
                date_created=row.created_at,
                date_modified=row.updated_at,
                metadata=row.order_metadata or {},
            )

    async def update_status(self, order_id: str, new_status: str) -> OrderStatusChange:
        async with self._sessionmaker() as db:
            async with db.begin():
                row = (
                    await db.execute(
                        select(OrderRow).where(OrderRow.id == order_id).with_for_update()
                    )
                ).scalar_one_or_none()
                if row is None:
                    raise KeyError(order_id)

                change = OrderStatusChange(
                    order_id=order_id, old_status=row.status, new_status=new_status
                )
                row.status = new_status
                row.updated_at = utcnow()
                db.add(
                    OrderStatusHistoryRow(
                        order_id=order_id,
                        old_status=change.old_status,
                        new_status=new_status,
                    )
                )

        # listeners run after commit so they read the new status
        await self.notify_status_change(change)
        return change
