"""
Storefront checkout service.

Starts checkouts with Stripe (card) and VNPay (bank transfer) and
reconciles their signed payment callbacks against the orders collection.
"""

from .callbacks import BankTransferCallback, CardEvent, CardEventType
from .errors import AmountMismatch, CheckoutError, InvalidSignature, OrderNotFound, ProviderUnreachable
from .models import Order, OrderStatus, PaymentMethod
from .reconciler import CheckoutReconciler

__all__ = [
    # Callbacks
    "BankTransferCallback",
    "CardEvent",
    "CardEventType",
    # Errors
    "AmountMismatch",
    "CheckoutError",
    "InvalidSignature",
    "OrderNotFound",
    "ProviderUnreachable",
    # Orders
    "Order",
    "OrderStatus",
    "PaymentMethod",
    # Reconciliation
    "CheckoutReconciler",
]
