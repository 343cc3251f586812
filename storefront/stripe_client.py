import logging
from functools import lru_cache
from typing import List, Optional

import stripe

from .callbacks import CardEvent, ExpandedLineItem
from .config import Settings, get_settings
from .errors import InvalidSignature, ProviderUnreachable
from .models import CheckoutItem

logger = logging.getLogger(__name__)


class StripeClient:
    """Client for interacting with Stripe API."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client = stripe.StripeClient(
            settings.stripe_secret_key,
            max_network_retries=settings.stripe_max_network_retries,
            http_client=stripe.RequestsClient(timeout=settings.stripe_timeout_seconds),
        )

    def verify_event(self, payload: bytes, signature: Optional[str]) -> CardEvent:
        """
        Verify a webhook body against its Stripe-Signature header and parse it.

        Args:
            payload: The raw request body, exactly as received
            signature: Value of the Stripe-Signature header

        Returns:
            The parsed CardEvent

        Raises:
            InvalidSignature: Header missing, malformed, stale or not matching
        """
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")
        if not self.settings.stripe_webhook_secret:
            raise InvalidSignature("Webhook secret is not configured")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError, IndexError) as e:
            raise InvalidSignature(str(e)) from e

        try:
            return CardEvent.from_payload(payload)
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidSignature(f"Invalid payload: {e}") from e

    def expand_session(self, session_id: str) -> List[ExpandedLineItem]:
        """
        Fetch a checkout session's line items with product name and image.

        Items whose product no longer resolves are returned without
        name/image so quantity and amount are still recorded.

        Raises:
            ProviderUnreachable: Stripe could not be reached or errored
        """
        try:
            line_items = self._client.v1.checkout.sessions.line_items.list(session_id)
        except stripe.StripeError as e:
            logger.error("Error listing line items for session %s: %s", session_id, e)
            raise ProviderUnreachable(f"Could not list line items for {session_id}: {e}") from e

        items = []
        for line_item in line_items.auto_paging_iter():
            price = line_item.price
            quantity = line_item.quantity or 1
            unit_amount = price.unit_amount if price and price.unit_amount is not None else line_item.amount_total // quantity

            item = ExpandedLineItem(
                quantity=quantity,
                unit_amount=unit_amount,
                amount_total=line_item.amount_total,
            )

            product_id = price.product if price else None
            if product_id:
                try:
                    product = self._client.v1.products.retrieve(product_id)
                    item.name = product.name
                    item.image = product.images[0] if product.images else None
                except stripe.InvalidRequestError as e:
                    logger.warning("Product %s for session %s not resolvable: %s", product_id, session_id, e)
                except stripe.StripeError as e:
                    logger.error("Error fetching product %s: %s", product_id, e)
                    raise ProviderUnreachable(f"Could not fetch product {product_id}: {e}") from e

            items.append(item)

        return items

    def create_checkout_session(
        self,
        user_id: str,
        items: List[CheckoutItem],
        currency: str = "usd",
    ) -> tuple[str, Optional[str]]:
        """
        Create a hosted Checkout Session for card payment.

        Returns:
            Tuple of (session_id, session_url)
        """
        params = {
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": item.name,
                            "images": [item.image] if item.image else [],
                        },
                        "unit_amount": item.price,
                    },
                    "quantity": item.quantity,
                }
                for item in items
            ],
            "metadata": {"userId": user_id},
            "phone_number_collection": {"enabled": True},
            "invoice_creation": {"enabled": True},
            "shipping_address_collection": {
                "allowed_countries": self.settings.stripe_allowed_countries,
            },
            "billing_address_collection": "required",
            "mode": "payment",
            "success_url": self.settings.stripe_success_url,
            "cancel_url": self.settings.stripe_cancel_url,
        }

        try:
            session = self._client.v1.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.error("Error creating checkout session for user %s: %s", user_id, e)
            raise ProviderUnreachable(f"Could not create checkout session: {e}") from e

        return session.id, session.url

    def test_connection(self) -> bool:
        """Test the Stripe API connection."""
        try:
            self._client.v1.balance.retrieve()
            return True
        except stripe.StripeError:
            return False


@lru_cache()
def get_stripe_client() -> StripeClient:
    """Get the shared Stripe client, built once from settings."""
    return StripeClient(get_settings())
