"""
Storefront checkout service - FastAPI application.

Starts checkouts with Stripe and VNPay and reconciles their payment
callbacks against the orders collection:
- POST /webhook                         Stripe events (raw body, signed)
- GET  /api/v1/checkout/vnpay/return    buyer redirect back from VNPay
- GET  /api/v1/checkout/vnpay/ipn       VNPay server-to-server notification
"""
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from . import vnpay
from .callbacks import BankTransferCallback
from .config import Settings, get_settings
from .errors import InvalidSignature, OrderNotFound, ProviderUnreachable
from .models import (
    BankTransferCheckoutRequest,
    BankTransferCheckoutResponse,
    CardCheckoutRequest,
    CardCheckoutResponse,
    Order,
    VNPayResponse,
    WebhookAck,
)
from .reconciler import CheckoutReconciler
from .store import OrderStore, UserDirectory
from .stripe_client import StripeClient, get_stripe_client


def setup_logging():
    """Configure logging with file and console handlers."""
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper())

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # Console handler (always)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if configured)
    if settings.log_path:
        try:
            log_path = Path(settings.log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            root_logger.info(f"Logging to file: {log_path}")
        except OSError as e:
            root_logger.error(f"Failed to set up file logging: {e}")

    return logging.getLogger(__name__)


settings = get_settings()
logger = setup_logging()


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache()
def get_database() -> Database:
    """Get the MongoDB database, connecting once."""
    client = MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000)
    return client[settings.mongodb_database]


def get_order_store() -> OrderStore:
    return OrderStore.from_database(get_database())


def get_user_directory() -> UserDirectory:
    return UserDirectory.from_database(get_database())


def get_reconciler(
    settings: Settings = Depends(get_settings),
    orders: OrderStore = Depends(get_order_store),
    users: UserDirectory = Depends(get_user_directory),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> CheckoutReconciler:
    return CheckoutReconciler(settings, orders, users, stripe_client)


def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    """The acting user, as set by the routing layer in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


# =============================================================================
# App
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Storefront checkout service starting up")
    logger.info("MongoDB database: %s", settings.mongodb_database)

    try:
        get_order_store().ensure_indexes()
        logger.info("Order indexes ensured")
    except PyMongoError as e:
        logger.warning("Could not ensure order indexes: %s (will retry on next start)", e)

    yield

    logger.info("Storefront checkout service shutting down")


app = FastAPI(
    title="Storefront Checkout Service",
    description="Checkout and payment reconciliation for Stripe and VNPay",
    version=settings.version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProviderUnreachable)
async def provider_unreachable_handler(request: Request, exc: ProviderUnreachable):
    logger.error("Payment provider error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Order store error on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Order store unavailable"})


@app.exception_handler(OrderNotFound)
async def order_not_found_handler(request: Request, exc: OrderNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# =============================================================================
# Health Endpoints
# =============================================================================

@app.get("/health")
def health(orders: OrderStore = Depends(get_order_store)):
    """Health check endpoint. Tests the database connection and returns status."""
    try:
        database_ok = orders.ping()
    except PyMongoError as e:
        logger.warning("Health check: database unreachable: %s", e)
        database_ok = False

    return {
        "status": "ok" if database_ok else "degraded",
        "database_ok": database_ok,
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/status")
def status(stripe_client: StripeClient = Depends(get_stripe_client)):
    """Get provider configuration status."""
    return {
        "stripe_connected": stripe_client.test_connection(),
        "stripe_webhook_configured": bool(settings.stripe_webhook_secret),
        "vnpay_configured": bool(settings.vnpay_tmn_code and settings.vnpay_hash_secret),
    }


# =============================================================================
# Stripe
# =============================================================================

@app.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    stripe_client: StripeClient = Depends(get_stripe_client),
    reconciler: CheckoutReconciler = Depends(get_reconciler),
):
    """
    Webhook endpoint for Stripe checkout events.

    The signature covers the raw body, so it is read unparsed and verified
    before anything else.
    """
    body = await request.body()

    try:
        event = stripe_client.verify_event(body, stripe_signature)
    except InvalidSignature as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook: {e}")

    await run_in_threadpool(reconciler.handle_card_event, event)
    return WebhookAck(received=True)


@app.post("/api/v1/checkout/stripe", response_model=CardCheckoutResponse)
def create_stripe_checkout(
    body: CardCheckoutRequest,
    user_id: str = Depends(require_user),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Create a Stripe Checkout Session for the given items."""
    session_id, session_url = stripe_client.create_checkout_session(user_id, body.items, body.currency)
    logger.info("Created checkout session %s for user %s", session_id, user_id)
    return CardCheckoutResponse(session_id=session_id, session_url=session_url)


# =============================================================================
# VNPay
# =============================================================================

@app.post("/api/v1/checkout/vnpay", response_model=BankTransferCheckoutResponse)
def create_vnpay_checkout(
    body: BankTransferCheckoutRequest,
    request: Request,
    user_id: str = Depends(require_user),
    reconciler: CheckoutReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings),
):
    """Create a pending order and return the VNPay payment URL for it."""
    order = reconciler.create_bank_transfer_order(user_id, body)

    forwarded = request.headers.get("x-forwarded-for")
    client_ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "127.0.0.1")

    url = vnpay.build_payment_url(
        settings,
        order_id=order.id,
        amount=order.total_price,
        client_ip=client_ip,
        order_info=body.description or None,
        bank_code=body.bank_code,
        locale=body.locale,
    )
    return BankTransferCheckoutResponse(checkout=url, order_id=order.id)


@app.get("/api/v1/checkout/vnpay/return", response_model=VNPayResponse)
def vnpay_return(request: Request, reconciler: CheckoutReconciler = Depends(get_reconciler)):
    """Buyer redirect back from VNPay. Reports the payment result."""
    callback = BankTransferCallback.from_query(request.query_params)
    outcome = reconciler.handle_bank_transfer_return(callback)

    if not outcome.signature_valid:
        return JSONResponse(status_code=400, content={"code": outcome.code, "message": outcome.message})

    return VNPayResponse(code=outcome.code, message=outcome.message, data=outcome.order)


@app.get("/api/v1/checkout/vnpay/ipn", response_model=VNPayResponse, response_model_exclude_none=True)
def vnpay_ipn(request: Request, reconciler: CheckoutReconciler = Depends(get_reconciler)):
    """
    VNPay instant payment notification.

    Always answers HTTP 200; the outcome is in `code`. VNPay retries on
    transport errors only, so store failures still surface as 503.
    """
    callback = BankTransferCallback.from_query(request.query_params)
    outcome = reconciler.handle_bank_transfer_ipn(callback)
    return VNPayResponse(code=outcome.code, message=outcome.message)


# =============================================================================
# Orders
# =============================================================================

@app.get("/api/v1/orders", response_model=List[Order])
def list_orders(
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(require_user),
    orders: OrderStore = Depends(get_order_store),
):
    """List the acting user's orders, newest first."""
    return orders.find_by_user(user_id, limit=limit)


@app.get("/api/v1/orders/{order_id}", response_model=Order)
def get_order(
    order_id: str,
    user_id: str = Depends(require_user),
    orders: OrderStore = Depends(get_order_store),
):
    """Fetch one of the acting user's orders by ID."""
    order = orders.find_by_id(order_id)
    # other users' orders are reported as missing
    if order is None or order.user_id != user_id:
        raise OrderNotFound(order_id)
    return order
