"""
Simple example showing how to run an ACP-compliant merchant with acp-merchant.

This minimal example shows the core pattern:
1. Implement: plug in your catalog (the rest uses in-memory defaults)
2. Build: `create_app()` wires storage, auth, idempotency and webhooks
3. Deploy: run the FastAPI app with uvicorn

SQLite keeps the example self-contained; use PostgreSQL in production.
"""

from decimal import Decimal

import uvicorn

from acp_merchant import (
    CatalogEntry,
    InMemoryCatalog,
    Settings,
    create_app,
)
from acp_merchant.auth import generate_api_key, generate_webhook_secret


catalog = InMemoryCatalog(
    [
        CatalogEntry(product_id="prod_mug", sku="mug", name="Coffee Mug", price=Decimal("10.00")),
        CatalogEntry(product_id="prod_tee", sku="tee", name="T-Shirt", price=Decimal("24.50")),
        CatalogEntry(
            product_id="prod_poster",
            sku="poster",
            name="Limited Poster",
            price=Decimal("35.00"),
            in_stock=False,
        ),
    ]
)

settings = Settings(
    api_key=generate_api_key(),
    webhook_secret=generate_webhook_secret(),
    enable_signature_validation=False,
    database_url="sqlite+aiosqlite:///./simple_merchant.db",
    log_level="debug",
)

app = create_app(settings, catalog=catalog)


if __name__ == "__main__":
    print(f"API key: {settings.api_key}")
    uvicorn.run(app, host="0.0.0.0", port=8000)
