"""
Errors raised by the checkout flow.

Signature, lookup and amount failures on the bank-transfer path are turned
into VNPay response codes by the reconciler and never escape as exceptions.
The card path raises InvalidSignature and ProviderUnreachable for the HTTP
layer to map onto status codes.
"""


class CheckoutError(Exception):
    """Base class for checkout errors."""


class InvalidSignature(CheckoutError):
    """A callback signature was missing, malformed or did not match."""


class OrderNotFound(CheckoutError):
    """No order exists for the given reference."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class AmountMismatch(CheckoutError):
    """The amount declared by the provider differs from the stored total."""

    def __init__(self, order_id: str, expected: int, declared: int):
        super().__init__(f"Order {order_id}: expected amount {expected}, provider declared {declared}")
        self.order_id = order_id
        self.expected = expected
        self.declared = declared


class ProviderUnreachable(CheckoutError):
    """The payment provider could not be reached or returned an error."""
