"""
ACP Merchant Pydantic Models.

Three layers live here:
- domain records (`CheckoutSession`, `WebhookEvent`), where amounts are exact
  `Decimal` values in major currency units;
- API request/response models, where amounts are integers in minor units
  (e.g. cents), produced only at the serialization boundary;
- collaborator payloads (catalog entries, orders, status changes).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    """Internal checkout-session lifecycle states."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckoutStatus(str, Enum):
    """Status vocabulary exposed over the protocol."""
    NOT_READY_FOR_PAYMENT = "not_ready_for_payment"
    READY_FOR_PAYMENT = "ready_for_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Shared / Common
# ---------------------------------------------------------------------------

class Address(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_1: Optional[str] = None
    address_2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


class Buyer(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Item(BaseModel):
    """An item as requested by the buyer; resolved against the catalog."""
    sku: Optional[str] = None
    name: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0)
    quantity: int = Field(default=1, ge=1)


# ---------------------------------------------------------------------------
# Checkout: Line Items, Totals & Fulfillment (domain, major units)
# ---------------------------------------------------------------------------

class LineItem(BaseModel):
    product_id: str
    sku: str
    name: str
    description: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


class TotalBreakdown(BaseModel):
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class FulfillmentOption(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    amount: Decimal = Decimal("0")
    estimated_delivery: Optional[str] = None


# ---------------------------------------------------------------------------
# Checkout Session (domain record)
# ---------------------------------------------------------------------------

class CheckoutSession(BaseModel):
    """A checkout session as owned by the session store."""

    model_config = ConfigDict(validate_assignment=True)

    session_id: str
    intent_id: str
    status: SessionStatus = SessionStatus.PENDING
    amount: Decimal = Field(ge=0)
    currency: str
    buyer: Optional[Buyer] = None
    line_items: list[LineItem] = []
    total_details: TotalBreakdown = Field(default_factory=TotalBreakdown)
    fulfillment_options: list[FulfillmentOption] = []
    fulfillment_address: Optional[Address] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------

class CheckoutSessionCreateRequest(BaseModel):
    items: list[Item] = Field(min_length=1)
    buyer: Optional[Buyer] = None
    metadata: Optional[dict[str, Any]] = None
    currency: Optional[str] = None
    fulfillment_address: Optional[Address] = None


class CheckoutSessionUpdateRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    status: Optional[SessionStatus] = None


class CheckoutSessionCompleteRequest(BaseModel):
    payment_method_details: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Response Models (minor units)
# ---------------------------------------------------------------------------

class LineItemResponse(BaseModel):
    id: str
    sku: str
    name: str
    description: Optional[str] = None
    quantity: int
    unit_amount: int
    total_amount: int
    tax_amount: int = 0
    discount_amount: int = 0


class TotalDetails(BaseModel):
    subtotal: int = 0
    tax: int = 0
    shipping: int = 0
    discount: int = 0
    total: int = 0


class FulfillmentOptionResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    amount: int = 0
    estimated_delivery: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    id: str
    intent_id: str
    status: CheckoutStatus
    amount_total: int
    currency: str
    buyer: Optional[Buyer] = None
    line_items: list[LineItemResponse] = []
    total_details: TotalDetails = Field(default_factory=TotalDetails)
    fulfillment_options: list[FulfillmentOptionResponse] = []
    metadata: dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    order_url: Optional[str] = None
    confirmation_email_sent: bool = False
    created_at: datetime
    updated_at: datetime


class CompleteSessionResponse(BaseModel):
    intent_id: str
    session_id: str
    status: SessionStatus
    payment_id: str
    order_id: str
    transaction_id: str


class CancelSessionResponse(BaseModel):
    intent_id: str
    session_id: str
    status: SessionStatus
    cancelled_at: datetime


# ---------------------------------------------------------------------------
# Error
# ---------------------------------------------------------------------------

class ACPError(BaseModel):
    type: str
    code: str
    message: str
    param: Optional[str] = None


class ACPErrorResponse(BaseModel):
    error: ACPError


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------

class CatalogEntry(BaseModel):
    product_id: str
    sku: str
    name: str
    description: Optional[str] = None
    price: Decimal
    in_stock: bool = True


class PaymentResult(BaseModel):
    payment_id: str
    transaction_id: str
    payment_method: str = "acp"
    payment_method_title: str = "ACP Payment"


class OrderItemMeta(BaseModel):
    key: str
    value: Any = None
    display_key: Optional[str] = None
    display_value: Any = None


class OrderItem(BaseModel):
    id: str
    product_id: str
    name: str
    sku: str = ""
    quantity: int
    subtotal: Decimal
    total: Decimal
    meta_data: list[OrderItemMeta] = []


class OrderSnapshot(BaseModel):
    """Denormalized order context used to build webhook payloads."""
    order_id: str
    checkout_session_id: Optional[str] = None
    status: str
    total: Decimal
    currency: str
    customer: Buyer = Field(default_factory=Buyer)
    billing_address: Address = Field(default_factory=Address)
    shipping_address: Address = Field(default_factory=Address)
    items: list[OrderItem] = []
    payment_method: Optional[str] = None
    payment_method_title: Optional[str] = None
    transaction_id: Optional[str] = None
    date_created: datetime
    date_modified: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class OrderStatusChange(BaseModel):
    order_id: str
    old_status: str
    new_status: str


# ---------------------------------------------------------------------------
# Webhook Event (domain record)
# ---------------------------------------------------------------------------

class WebhookEvent(BaseModel):
    webhook_id: str
    event_type: str
    order_id: str
    session_id: Optional[str] = None
    payload: dict[str, Any]
    status: WebhookStatus = WebhookStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    next_retry_at: Optional[datetime] = None
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
