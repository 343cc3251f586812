"""
Provider callback payloads.

Each provider gets its own closed model so a renamed or missing field fails
at parse time instead of deep inside the reconciler.
"""
import json
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

from .models import ShippingAddress


# =============================================================================
# Card provider (Stripe)
# =============================================================================

class CardEventType(str, Enum):
    SESSION_COMPLETED = "checkout.session.completed"
    ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "CardEventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class CustomerDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[ShippingAddress] = None


class CheckoutSession(BaseModel):
    """The fields of a Stripe Checkout Session that the reconciler reads."""
    id: str
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: str = "unpaid"
    payment_method_types: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    customer_details: Optional[CustomerDetails] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId")

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


class CardEvent(BaseModel):
    """A verified Stripe event envelope."""
    event_id: str
    type: CardEventType
    raw_type: str
    session: Optional[CheckoutSession] = None

    @classmethod
    def from_payload(cls, payload: bytes) -> "CardEvent":
        """Parse a raw webhook body. Only call after the signature check."""
        data = json.loads(payload)
        raw_type = data.get("type", "")
        event_type = CardEventType.parse(raw_type)

        session = None
        if event_type is not CardEventType.UNKNOWN:
            session = CheckoutSession.model_validate(data["data"]["object"])

        return cls(
            event_id=data.get("id", ""),
            type=event_type,
            raw_type=raw_type,
            session=session,
        )


class ExpandedLineItem(BaseModel):
    """A session line item after resolving its product."""
    name: Optional[str] = None
    image: Optional[str] = None
    quantity: int = 1
    unit_amount: int = 0
    amount_total: int = 0


# =============================================================================
# Bank-transfer provider (VNPay)
# =============================================================================

class BankTransferCallback(BaseModel):
    """Query parameters of a VNPay return or IPN call."""
    txn_ref: str = ""
    amount: int = 0
    response_code: str = ""
    transaction_status: Optional[str] = None
    transaction_no: Optional[str] = None
    params: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "BankTransferCallback":
        params = {key: str(value) for key, value in query.items()}
        try:
            amount = int(params.get("vnp_Amount", "0"))
        except ValueError:
            amount = -1
        return cls(
            txn_ref=params.get("vnp_TxnRef", ""),
            amount=amount,
            response_code=params.get("vnp_ResponseCode", ""),
            transaction_status=params.get("vnp_TransactionStatus"),
            transaction_no=params.get("vnp_TransactionNo"),
            params=params,
        )
