import hashlib
import hmac
import json
import time
from typing import Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

from storefront import vnpay
from storefront.callbacks import ExpandedLineItem
from storefront.config import Settings, get_settings
from storefront.errors import ProviderUnreachable
from storefront.models import BankTransferCheckoutRequest, CheckoutItem, ContactInfo
from storefront.reconciler import CheckoutReconciler
from storefront.store import OrderStore, UserDirectory
from storefront.stripe_client import StripeClient, get_stripe_client

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
VNPAY_HASH_SECRET = "VNPAYTESTSECRET"


class FakeStripeClient(StripeClient):
    """StripeClient with the network calls replaced. Signature checks stay real."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.line_items: list[ExpandedLineItem] = [
            ExpandedLineItem(name="Linen Shirt", image="https://img.example/shirt.png", quantity=2, unit_amount=1500, amount_total=3000),
        ]
        self.unreachable = False
        self.calls: list[dict] = []

    def expand_session(self, session_id):
        self.calls.append({"method": "expand_session", "session_id": session_id})
        if self.unreachable:
            raise ProviderUnreachable("Stripe timed out")
        return list(self.line_items)

    def create_checkout_session(self, user_id, items, currency="usd"):
        self.calls.append({"method": "create_checkout_session", "user_id": user_id, "items": items, "currency": currency})
        return "cs_test_created", "https://checkout.stripe.com/c/pay/cs_test_created"

    def test_connection(self):
        return True


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        vnpay_tmn_code="TESTTMN1",
        vnpay_hash_secret=VNPAY_HASH_SECRET,
        vnpay_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        mongodb_database="storefront_test",
    )


@pytest.fixture
def database():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def order_store(database):
    store = OrderStore.from_database(database)
    store.ensure_indexes()
    return store


@pytest.fixture
def user_directory(database):
    return UserDirectory.from_database(database)


@pytest.fixture
def buyer(database):
    result = database["users"].insert_one({"username": "thao", "email": "thao@example.com", "phone": "0901234567"})
    return str(result.inserted_id)


@pytest.fixture
def fake_stripe(settings):
    return FakeStripeClient(settings)


@pytest.fixture
def reconciler(settings, order_store, user_directory, fake_stripe):
    return CheckoutReconciler(settings, order_store, user_directory, fake_stripe)


@pytest.fixture
def client(settings, order_store, user_directory, fake_stripe):
    from storefront import main

    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_order_store] = lambda: order_store
    main.app.dependency_overrides[main.get_user_directory] = lambda: user_directory
    main.app.dependency_overrides[get_stripe_client] = lambda: fake_stripe

    yield TestClient(main.app)

    main.app.dependency_overrides.clear()


@pytest.fixture
def pending_order(reconciler, buyer):
    """A bank-transfer order of 250000 VND awaiting payment."""
    request = BankTransferCheckoutRequest(
        items=[CheckoutItem(name="Ao dai", quantity=1, price=220000)],
        tax=10000,
        shipping_fee=20000,
        customer_info=ContactInfo(name="thao", email="thao@example.com", phone="0901234567"),
    )
    return reconciler.create_bank_transfer_order(buyer, request)


def vnpay_params(order_id: str, amount: int, response_code: str = "00", secret: str = VNPAY_HASH_SECRET, **extra) -> dict:
    """Query parameters of a VNPay callback, signed like the provider does."""
    params = {
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_BankTranNo": "VNP14226112",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": f"Payment for order {order_id}",
        "vnp_PayDate": "20261017153045",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14226112",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": order_id,
        **extra,
    }
    params["vnp_SecureHash"] = vnpay.sign(params, secret)
    return params


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, session_id: str = "cs_test_a1", user_id: Optional[str] = None, payment_status: str = "paid") -> bytes:
    """A Stripe event envelope around a checkout session, as raw JSON bytes."""
    event = {
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": 3000,
                "currency": "usd",
                "payment_status": payment_status,
                "payment_method_types": ["card"],
                "metadata": {"userId": user_id} if user_id else {},
                "customer_details": {
                    "name": "Minh Tran",
                    "email": "minh@example.com",
                    "phone": "+84901111222",
                    "address": {
                        "city": "Ho Chi Minh City",
                        "country": "VN",
                        "line1": "12 Nguyen Hue",
                        "line2": None,
                        "postal_code": "700000",
                        "state": None,
                    },
                },
            }
        },
    }
    return json.dumps(event).encode("utf-8")
