"""
Merchant Service — demo deployment of the ACP checkout API.

Backed by SQL tables for products and orders. The admin endpoints stand in
for the merchant's back office: changing an order's status there is what
produces the outbound order webhooks.

Usage:
    uvicorn services.merchant.main:app --port 8001
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from acp_merchant.app import Container, create_app
from acp_merchant.auth import BEARER_PATTERN
from acp_merchant.config import Settings
from acp_merchant.database import create_engine, create_sessionmaker
from acp_merchant.models import OrderStatusChange
from services.merchant.database import SqlCatalog, SqlOrderFulfillment


logger = logging.getLogger(__name__)


class OrderStatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=50)


def build_app(settings: Optional[Settings] = None, **components):
    settings = settings or Settings.from_env()
    if "sessionmaker" not in components:
        engine = components.pop("engine", None) or create_engine(settings.database_url)
        components["engine"] = engine
        components["sessionmaker"] = create_sessionmaker(engine)

    sessionmaker = components["sessionmaker"]
    components.setdefault("catalog", SqlCatalog(sessionmaker))
    components.setdefault("orders", SqlOrderFulfillment(sessionmaker))

    app = create_app(settings, **components)
    app.title = "ACP Merchant Service"

    def get_container(request: Request) -> Container:
        return request.app.state.container

    def require_admin(
        authorization: Optional[str] = Header(None),
        container: Container = Depends(get_container),
    ) -> None:
        api_key = container.settings.api_key
        match = BEARER_PATTERN.match(authorization or "")
        token = match.group(1).strip() if match else ""
        if not api_key or not hmac.compare_digest(api_key.encode(), token.encode()):
            raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    # ── Back-office endpoints ────────────────────────────────────────────

    @app.post(
        "/admin/orders/{order_id}/status",
        response_model=OrderStatusChange,
        dependencies=[Depends(require_admin)],
    )
    async def update_order_status(
        order_id: str,
        body: OrderStatusUpdate,
        container: Container = Depends(get_container),
    ):
        try:
            change = await container.orders.update_status(order_id, body.status)
        except KeyError:
            raise HTTPException(status_code=404, detail="Order not found") from None
        logger.info(
            "Order %s status changed %s -> %s", order_id, change.old_status, change.new_status,
        )
        return change

    @app.get("/admin/stats", dependencies=[Depends(require_admin)])
    async def stats(container: Container = Depends(get_container)):
        sessions = await container.sessions.stats()
        sessions["total_amount"] = str(sessions["total_amount"])
        return {
            "sessions": sessions,
            "webhooks": await container.webhook_store.stats(),
        }

    @app.post("/admin/maintenance/run", dependencies=[Depends(require_admin)])
    async def run_maintenance(container: Container = Depends(get_container)):
        return await container.maintenance.run_all()

    return app


app = build_app()
