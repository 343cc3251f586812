"""
Checkout reconciler - applies provider payment callbacks to local orders.

Order states:
    (no record) -> PENDING -> CONFIRMED | FAILED

Bank-transfer orders exist as PENDING before the buyer is redirected to
VNPay. Card orders are created by the Stripe webhook. CONFIRMED and FAILED
never go back to PENDING; every transition appends exactly one status log
entry, and it happens inside a single conditional update so a notification
delivered twice is applied once.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from . import vnpay
from .callbacks import BankTransferCallback, CardEvent, CardEventType, CheckoutSession
from .config import Settings
from .errors import AmountMismatch, OrderNotFound
from .models import (
    BankTransferCheckoutRequest,
    ContactInfo,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusLog,
    PaymentMethod,
    ShippingAddress,
    compute_total,
)
from .store import OrderStore, UserDirectory
from .stripe_client import StripeClient

logger = logging.getLogger(__name__)

CARD_ACTOR = "stripe"
BANK_TRANSFER_ACTOR = "vnpay"

REASON_PAID_BY_CARD = "paid via card"
REASON_AWAITING_CARD = "awaiting card payment"
REASON_CARD_FAILED = "card payment failed"
REASON_PAID_BY_TRANSFER = "paid via bank transfer"
REASON_AWAITING_TRANSFER = "order placed, awaiting bank transfer"


class CardAction(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class CardOutcome:
    """What the reconciler did with a card event."""
    action: CardAction
    order_id: Optional[str] = None


@dataclass
class BankTransferOutcome:
    """VNPay response code plus the order it refers to, if any."""
    code: str
    message: str
    order: Optional[Order] = None

    @property
    def signature_valid(self) -> bool:
        return self.code != vnpay.CODE_CHECKSUM_FAILED


def _outcome(code: str, order: Optional[Order] = None, message: Optional[str] = None) -> BankTransferOutcome:
    return BankTransferOutcome(code=code, message=message or vnpay.MESSAGES[code], order=order)


class CheckoutReconciler:
    """Maps verified provider callbacks onto order state."""

    def __init__(
        self,
        settings: Settings,
        orders: OrderStore,
        users: UserDirectory,
        stripe_client: StripeClient,
    ):
        self.settings = settings
        self.orders = orders
        self.users = users
        self.stripe = stripe_client

    # =========================================================================
    # Card provider
    # =========================================================================

    def handle_card_event(self, event: CardEvent) -> CardOutcome:
        """Apply a verified Stripe event. Unknown event types are acknowledged only."""
        logger.info("Stripe event %s: %s", event.event_id, event.raw_type)

        if event.type is CardEventType.UNKNOWN or event.session is None:
            logger.info("Unhandled event type %s", event.raw_type)
            return CardOutcome(action=CardAction.IGNORED)

        if event.type is CardEventType.SESSION_COMPLETED:
            order, created = self._record_card_order(event.session)
            if not created:
                logger.info("Session %s already recorded as order %s", event.session.id, order.id)
            return CardOutcome(action=CardAction.CREATED if created else CardAction.DUPLICATE, order_id=order.id)

        order, created = self._record_card_order(event.session)

        if event.type is CardEventType.ASYNC_PAYMENT_SUCCEEDED:
            if created and event.session.is_paid:
                # first sight of the session; the order was created confirmed
                logger.info("Order %s confirmed by async card payment", order.id)
                return CardOutcome(action=CardAction.SETTLED, order_id=order.id)

            settled = self.orders.transition_if_pending(
                order.id,
                OrderStatus.CONFIRMED,
                OrderStatusLog(changed_by=CARD_ACTOR, order_status=OrderStatus.CONFIRMED, reason=REASON_PAID_BY_CARD),
                is_paid=True,
            )
            if settled is None:
                logger.info("Order %s already settled, async success ignored", order.id)
                return CardOutcome(action=CardAction.ALREADY_SETTLED, order_id=order.id)
            logger.info("Order %s confirmed by async card payment", order.id)
            return CardOutcome(action=CardAction.SETTLED, order_id=order.id)

        failed = self.orders.transition_if_pending(
            order.id,
            OrderStatus.FAILED,
            OrderStatusLog(changed_by=CARD_ACTOR, order_status=OrderStatus.FAILED, reason=REASON_CARD_FAILED),
        )
        if failed is None:
            logger.info("Order %s already settled, async failure ignored", order.id)
            return CardOutcome(action=CardAction.ALREADY_SETTLED, order_id=order.id)
        logger.info("Order %s marked failed by async card payment", order.id)
        return CardOutcome(action=CardAction.FAILED, order_id=order.id)

    def _record_card_order(self, session: CheckoutSession) -> tuple[Order, bool]:
        """Create the order for a session unless one already exists."""
        existing = self.orders.find_by_session_ref(session.id)
        if existing is not None:
            return existing, False

        # Raises ProviderUnreachable; nothing is written in that case
        line_items = self.stripe.expand_session(session.id)

        items = [
            OrderItem(
                name=line_item.name,
                quantity=line_item.quantity,
                price=line_item.unit_amount,
                image=line_item.image,
            )
            for line_item in line_items
        ]

        profile = self.users.find_by_id(session.user_id) or {}
        details = session.customer_details

        if session.is_paid:
            status = OrderStatus.CONFIRMED
            reason = REASON_PAID_BY_CARD
        else:
            status = OrderStatus.PENDING
            reason = REASON_AWAITING_CARD

        order = Order(
            user_id=session.user_id,
            items=items,
            total_price=session.amount_total if session.amount_total is not None else compute_total(items),
            currency=session.currency or "usd",
            customer_info=ContactInfo(
                name=profile.get("username"),
                email=profile.get("email"),
                phone=profile.get("phone", ""),
            ),
            receiver_info=ContactInfo(
                name=details.name if details else None,
                email=details.email if details else None,
                phone=details.phone if details else None,
            ),
            shipping_address=details.address if details and details.address else ShippingAddress(),
            payment_method=PaymentMethod.CARD,
            payment_session_ref=session.id,
            is_paid=session.is_paid,
            order_status=status,
            order_status_logs=[OrderStatusLog(changed_by=CARD_ACTOR, order_status=status, reason=reason)],
        )

        stored, created = self.orders.upsert_by_session_ref(order)
        if created:
            logger.info("Created order %s for session %s (paid=%s)", stored.id, session.id, session.is_paid)
        return stored, created

    # =========================================================================
    # Bank-transfer provider
    # =========================================================================

    def create_bank_transfer_order(self, user_id: Optional[str], request: BankTransferCheckoutRequest) -> Order:
        """Create the PENDING order a VNPay payment will settle."""
        items = [OrderItem(**item.model_dump()) for item in request.items]
        order = Order(
            user_id=user_id,
            items=items,
            tax=request.tax,
            shipping_fee=request.shipping_fee,
            total_price=compute_total(items, request.tax, request.shipping_fee),
            currency="vnd",
            customer_info=request.customer_info,
            receiver_info=request.receiver_info,
            shipping_address=request.shipping_address,
            payment_method=PaymentMethod.BANK_TRANSFER,
            description=request.description,
            order_status_logs=[
                OrderStatusLog(changed_by=user_id, order_status=OrderStatus.PENDING, reason=REASON_AWAITING_TRANSFER)
            ],
        )
        order = self.orders.create(order)
        logger.info("Created pending bank-transfer order %s (total=%d)", order.id, order.total_price)
        return order

    def _load_payable_order(self, callback: BankTransferCallback) -> Order:
        """
        Find the order a callback refers to and check the declared amount.

        Raises:
            OrderNotFound: No order for vnp_TxnRef
            AmountMismatch: vnp_Amount is not the order total times 100
        """
        order = self.orders.find_by_id(callback.txn_ref)
        if order is None:
            raise OrderNotFound(callback.txn_ref)

        expected = order.total_price * 100
        if callback.amount != expected:
            raise AmountMismatch(order.id, expected, callback.amount)

        return order

    def _settle(self, order_id: str) -> Optional[Order]:
        return self.orders.transition_if_pending(
            order_id,
            OrderStatus.CONFIRMED,
            OrderStatusLog(
                changed_by=BANK_TRANSFER_ACTOR,
                order_status=OrderStatus.CONFIRMED,
                reason=REASON_PAID_BY_TRANSFER,
            ),
            is_paid=True,
        )

    def handle_bank_transfer_ipn(self, callback: BankTransferCallback) -> BankTransferOutcome:
        """
        Apply a VNPay IPN. The source of truth for bank-transfer settlement.

        Steps run in order and the first failure returns immediately:
        checksum (97), order lookup (01), amount (04), already settled (02),
        then settle on response code 00 or record the decline.
        """
        if not vnpay.verify_callback(callback.params, self.settings.vnpay_hash_secret):
            logger.warning("VNPay IPN checksum failed for txn %s", callback.txn_ref)
            return _outcome(vnpay.CODE_CHECKSUM_FAILED)

        try:
            order = self._load_payable_order(callback)
        except OrderNotFound:
            logger.warning("VNPay IPN for unknown order %s", callback.txn_ref)
            return _outcome(vnpay.CODE_ORDER_NOT_FOUND)
        except AmountMismatch as e:
            logger.warning("VNPay IPN amount mismatch: %s", e)
            return _outcome(vnpay.CODE_AMOUNT_INVALID)

        if order.is_paid or order.order_status != OrderStatus.PENDING:
            logger.info("VNPay IPN for order %s ignored, already %s", order.id, order.order_status)
            return _outcome(vnpay.CODE_ALREADY_UPDATED, order)

        if callback.response_code == vnpay.CODE_SUCCESS:
            settled = self._settle(order.id)
            if settled is None:
                # a concurrent delivery got there first
                return _outcome(vnpay.CODE_ALREADY_UPDATED, order)
            logger.info(
                "Order %s confirmed via VNPay (txn %s, status %s)",
                order.id,
                callback.transaction_no,
                callback.transaction_status,
            )
            return _outcome(vnpay.CODE_SUCCESS, settled)

        declined = self.orders.transition_if_pending(
            order.id,
            OrderStatus.FAILED,
            OrderStatusLog(
                changed_by=BANK_TRANSFER_ACTOR,
                order_status=OrderStatus.FAILED,
                reason=f"bank transfer declined (code {callback.response_code})",
            ),
        )
        if declined is None:
            return _outcome(vnpay.CODE_ALREADY_UPDATED, order)
        logger.info(
            "Order %s declined by VNPay with code %s (txn %s, status %s)",
            order.id,
            callback.response_code,
            callback.transaction_no,
            callback.transaction_status,
        )
        return _outcome(callback.response_code, declined, message="Fail")

    def handle_bank_transfer_return(self, callback: BankTransferCallback) -> BankTransferOutcome:
        """
        Handle the buyer being redirected back from VNPay.

        Runs the same checksum, lookup and amount checks as the IPN. A
        successful payment is settled with the same conditional update, but
        an order the IPN already settled is reported as success.
        """
        if not vnpay.verify_callback(callback.params, self.settings.vnpay_hash_secret):
            logger.warning("VNPay return checksum failed for txn %s", callback.txn_ref)
            return _outcome(vnpay.CODE_CHECKSUM_FAILED)

        try:
            order = self._load_payable_order(callback)
        except OrderNotFound:
            return _outcome(vnpay.CODE_ORDER_NOT_FOUND)
        except AmountMismatch as e:
            logger.warning("VNPay return amount mismatch: %s", e)
            return _outcome(vnpay.CODE_AMOUNT_INVALID)

        if callback.response_code != vnpay.CODE_SUCCESS:
            return _outcome(callback.response_code, order, message="Fail")

        settled = self._settle(order.id)
        return _outcome(vnpay.CODE_SUCCESS, settled or self.orders.find_by_id(order.id))
