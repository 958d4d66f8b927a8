"""
ACP Merchant — Agentic Commerce Protocol checkout service.

Exposes the ACP checkout session API for a merchant backend, with pluggable
catalog, totals, payment and order collaborators, durable session storage
and signed order-status webhooks.

Example usage for merchants:
    from acp_merchant import Settings, create_app

    app = create_app(Settings.from_env(), catalog=MyCatalog(), orders=MyOrders())

Example usage for agents:
    from acp_merchant import ACPCheckoutClient

    async with ACPCheckoutClient("https://merchant.com", api_key="acp_...") as client:
        session = await client.create_session([{"sku": "mug", "quantity": 1}])
"""

__version__ = "1.0.0"

# Export configuration & errors
from acp_merchant.config import Settings
from acp_merchant.errors import (
    ACPSellerError,
    AuthenticationError,
    ConflictError,
    DuplicateRequestError,
    InvalidStateError,
    NotFoundError,
    OrderCreationError,
    PaymentDeclinedError,
    PaymentFailedError,
    ServerError,
    ValidationError,
)

# Export main models
from acp_merchant.models import (
    Address,
    Buyer,
    CancelSessionResponse,
    CatalogEntry,
    CheckoutSession,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionResponse,
    CheckoutSessionUpdateRequest,
    CheckoutStatus,
    CompleteSessionResponse,
    Item,
    LineItem,
    OrderSnapshot,
    OrderStatusChange,
    PaymentResult,
    SessionStatus,
    WebhookEvent,
    WebhookStatus,
)

# Export collaborators
from acp_merchant.catalog import CatalogProvider, FlatRateTotals, InMemoryCatalog, TotalsCalculator
from acp_merchant.orders import InMemoryOrderFulfillment, OrderFulfillment
from acp_merchant.payment import MockPaymentProcessor, PaymentProcessor

# Export services
from acp_merchant.app import Container, build_container, create_app
from acp_merchant.checkout import CheckoutService
from acp_merchant.client import ACPCheckoutClient, ACPClientError
from acp_merchant.maintenance import MaintenanceRunner
from acp_merchant.router import create_checkout_router
from acp_merchant.webhooks import WebhookDispatcher

__all__ = [
    "__version__",
    # Configuration & Errors
    "Settings",
    "ACPSellerError",
    "AuthenticationError",
    "ConflictError",
    "DuplicateRequestError",
    "InvalidStateError",
    "NotFoundError",
    "OrderCreationError",
    "PaymentDeclinedError",
    "PaymentFailedError",
    "ServerError",
    "ValidationError",
    # Models
    "Address",
    "Buyer",
    "CancelSessionResponse",
    "CatalogEntry",
    "CheckoutSession",
    "CheckoutSessionCompleteRequest",
    "CheckoutSessionCreateRequest",
    "CheckoutSessionResponse",
    "CheckoutSessionUpdateRequest",
    "CheckoutStatus",
    "CompleteSessionResponse",
    "Item",
    "LineItem",
    "OrderSnapshot",
    "OrderStatusChange",
    "PaymentResult",
    "SessionStatus",
    "WebhookEvent",
    "WebhookStatus",
    # Collaborators
    "CatalogProvider",
    "FlatRateTotals",
    "InMemoryCatalog",
    "TotalsCalculator",
    "InMemoryOrderFulfillment",
    "OrderFulfillment",
    "MockPaymentProcessor",
    "PaymentProcessor",
    # Services
    "Container",
    "build_container",
    "create_app",
    "CheckoutService",
    "ACPCheckoutClient",
    "ACPClientError",
    "MaintenanceRunner",
    "create_checkout_router",
    "WebhookDispatcher",
]
