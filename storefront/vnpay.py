"""
VNPay signing and payment URL construction.

VNPay signs callbacks with HMAC-SHA512 over the form-encoded query string
built from every vnp_* parameter except the hash fields, sorted by key.
The provider does not guarantee parameter order, so the sort is what makes
the recomputation reproducible.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional
from urllib.parse import quote_plus

from .config import Settings

logger = logging.getLogger(__name__)

HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# VNPay expects timestamps in Vietnam local time (UTC+7, no DST)
VN_TZ = timezone(timedelta(hours=7), "Asia/Ho_Chi_Minh")
DATE_FORMAT = "%Y%m%d%H%M%S"

# IPN response codes
CODE_SUCCESS = "00"
CODE_ORDER_NOT_FOUND = "01"
CODE_ALREADY_UPDATED = "02"
CODE_AMOUNT_INVALID = "04"
CODE_CHECKSUM_FAILED = "97"

MESSAGES = {
    CODE_SUCCESS: "Success",
    CODE_ORDER_NOT_FOUND: "Order not found",
    CODE_ALREADY_UPDATED: "This order has been updated to the payment status",
    CODE_AMOUNT_INVALID: "Amount invalid",
    CODE_CHECKSUM_FAILED: "Checksum failed",
}


def canonical_query(params: Mapping[str, str]) -> str:
    """Sorted, form-encoded `key=value&...` string with hash fields removed."""
    pairs = []
    for key in sorted(params):
        if key in HASH_FIELDS:
            continue
        pairs.append(f"{quote_plus(str(key))}={quote_plus(str(params[key]))}")
    return "&".join(pairs)


def sign(params: Mapping[str, str], secret: str) -> str:
    """Compute the VNPay secure hash for a parameter set."""
    return hmac.new(
        secret.encode("utf-8"),
        canonical_query(params).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_callback(params: Mapping[str, str], secret: str) -> bool:
    """Check a return/IPN query against its vnp_SecureHash."""
    supplied = params.get("vnp_SecureHash")
    if not supplied or not secret:
        return False
    expected = sign(params, secret)
    return hmac.compare_digest(expected, str(supplied).lower())


def format_date(moment: datetime) -> str:
    return moment.astimezone(VN_TZ).strftime(DATE_FORMAT)


def build_payment_url(
    settings: Settings,
    order_id: str,
    amount: int,
    client_ip: str,
    order_info: Optional[str] = None,
    bank_code: Optional[str] = None,
    locale: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Build the signed VNPay redirect URL for an order.

    Args:
        settings: Service settings with the merchant code and hash secret
        order_id: Local order id, round-tripped as vnp_TxnRef
        amount: Order total in VND; VNPay wants it multiplied by 100
        client_ip: Buyer IP address
        order_info: Free-text description shown on the payment page
        bank_code: Preselect a bank on the payment page
        locale: "vn" or "en"
        now: Creation time, defaults to the current time

    Returns:
        The full payment URL including vnp_SecureHash
    """
    created = now or datetime.now(timezone.utc)
    expires = created + timedelta(minutes=settings.vnpay_expire_minutes)

    params = {
        "vnp_Version": "2.1.0",
        "vnp_Command": "pay",
        "vnp_TmnCode": settings.vnpay_tmn_code,
        "vnp_Locale": locale or settings.vnpay_locale,
        "vnp_CurrCode": "VND",
        "vnp_TxnRef": order_id,
        "vnp_OrderInfo": order_info or f"Payment for order {order_id}",
        "vnp_OrderType": "other",
        "vnp_Amount": str(amount * 100),
        "vnp_ReturnUrl": settings.vnpay_return_url,
        "vnp_IpAddr": client_ip,
        "vnp_CreateDate": format_date(created),
        "vnp_ExpireDate": format_date(expires),
    }
    if bank_code:
        params["vnp_BankCode"] = bank_code

    secure_hash = sign(params, settings.vnpay_hash_secret)
    logger.debug("Built VNPay URL for order %s (amount=%d)", order_id, amount)
    return f"{settings.vnpay_url}?{canonical_query(params)}&vnp_SecureHash={secure_hash}"
