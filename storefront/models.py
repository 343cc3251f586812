"""
Pydantic models for orders and the checkout API.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class OrderItem(BaseModel):
    """A purchased line item. Price is the unit price in minor units."""
    name: Optional[str] = None
    quantity: int = Field(ge=1)
    price: int = Field(ge=0)
    image: Optional[str] = None


class ContactInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ShippingAddress(BaseModel):
    """Shipping address as collected at checkout."""
    city: Optional[str] = None
    country: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    postal_code: Optional[str] = None
    state: Optional[str] = None


class OrderStatusLog(BaseModel):
    """One entry in an order's append-only status history."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    changed_by: Optional[str] = None
    order_status: OrderStatus
    reason: str
    created_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """An order as stored in the `orders` collection."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    user_id: Optional[str] = None
    items: list[OrderItem] = Field(default_factory=list)
    total_price: int = 0
    tax: int = 0
    shipping_fee: int = 0
    currency: str = "vnd"
    customer_info: ContactInfo = Field(default_factory=ContactInfo)
    receiver_info: ContactInfo = Field(default_factory=ContactInfo)
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    payment_method: PaymentMethod
    payment_session_ref: Optional[str] = None
    is_paid: bool = False
    order_status: OrderStatus = OrderStatus.PENDING
    canceled_by: Optional[str] = None
    description: str = ""
    order_status_logs: list[OrderStatusLog] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Order":
        data = dict(document)
        data["id"] = str(data.pop("_id"))
        return cls(**data)

    def to_document(self) -> dict[str, Any]:
        """Serialize for MongoDB. The id is owned by the store."""
        document = self.model_dump(exclude={"id"})
        if document["payment_session_ref"] is None:
            # keeps the sparse unique index on session refs to card orders only
            del document["payment_session_ref"]
        return document


def compute_total(items: list[OrderItem], tax: int = 0, shipping_fee: int = 0) -> int:
    """Sum of line subtotals plus tax and shipping."""
    return sum(item.price * item.quantity for item in items) + tax + shipping_fee


# =============================================================================
# API request/response models
# =============================================================================

class CheckoutItem(BaseModel):
    """An item submitted by the client when starting a checkout."""
    name: str
    quantity: int = Field(ge=1)
    price: int = Field(ge=0)
    image: Optional[str] = None


class CardCheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(min_length=1)
    currency: str = "usd"


class CardCheckoutResponse(BaseModel):
    session_id: str
    session_url: Optional[str] = None


class BankTransferCheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(min_length=1)
    tax: int = Field(default=0, ge=0)
    shipping_fee: int = Field(default=0, ge=0)
    customer_info: ContactInfo = Field(default_factory=ContactInfo)
    receiver_info: ContactInfo = Field(default_factory=ContactInfo)
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    description: str = ""
    bank_code: Optional[str] = None
    locale: Optional[str] = None


class BankTransferCheckoutResponse(BaseModel):
    checkout: str
    order_id: str


class VNPayResponse(BaseModel):
    """Acknowledgment body for VNPay return and IPN calls."""
    code: str
    message: str
    data: Optional[Order] = None


class WebhookAck(BaseModel):
    received: bool = True
