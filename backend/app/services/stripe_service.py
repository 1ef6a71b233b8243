import json
import logging
import stripe
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Raised when a webhook body cannot be authenticated or parsed"""


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # Dict access first: StripeObject is a dict subclass and plain webhook payloads are dicts
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    if hasattr(obj, key):
        value = getattr(obj, key, default)
        if value is not None:
            return value
    return default


def _object_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field (either the id string or the expanded object)."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return _get_stripe_value(value, 'id')


def _metadata(obj: Any) -> Dict[str, str]:
    """Copy of an object's metadata as a plain dict."""
    metadata = _get_stripe_value(obj, 'metadata', {})
    if not metadata:
        return {}
    try:
        return {k: v for k, v in dict(metadata).items()}
    except (TypeError, ValueError):
        return {}


# ============================================================================
# WEBHOOK VERIFICATION
# ============================================================================

def verify_webhook_signature(payload: bytes, sig_header: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """Verify a Stripe webhook delivery and return the event as a dict.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)

    Raises:
        WebhookVerificationError: missing secret/header, bad signature or bad payload
    """
    if not secret:
        raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET not configured")
    if not sig_header:
        raise WebhookVerificationError("No Stripe signature header present")

    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid signature: {e}") from e
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e

    return parse_event_body(payload)


def parse_event_body(payload: bytes) -> Dict[str, Any]:
    """Parse a webhook body without verifying it."""
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    if not isinstance(event, dict):
        raise WebhookVerificationError("Invalid payload: event must be a JSON object")
    return event


# ============================================================================
# PAYMENT PROVIDER CLIENT
# ============================================================================

class PaymentProvider:
    """Operations the webhook pipeline needs from the payment provider.

    Retrieval methods return None when the object is unavailable. Errors from
    the provider API propagate; callers decide whether they are best-effort.
    """

    configured = False

    def retrieve_payment_intent(self, payment_intent_id: str, stripe_account: Optional[str] = None):
        raise NotImplementedError

    def update_payment_intent_metadata(self, payment_intent_id: str, metadata: Dict[str, str],
                                       stripe_account: Optional[str] = None) -> bool:
        raise NotImplementedError

    def retrieve_customer(self, customer_id: str, stripe_account: Optional[str] = None):
        raise NotImplementedError

    def retrieve_subscription(self, subscription_id: str, stripe_account: Optional[str] = None):
        raise NotImplementedError

    def retrieve_account(self):
        raise NotImplementedError


class StripePaymentProvider(PaymentProvider):
    """PaymentProvider backed by the Stripe API, bound to one secret key"""

    configured = True

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("Stripe secret key is required")
        self.api_key = api_key

    def retrieve_payment_intent(self, payment_intent_id, stripe_account=None):
        return stripe.PaymentIntent.retrieve(
            payment_intent_id, api_key=self.api_key, stripe_account=stripe_account
        )

    def update_payment_intent_metadata(self, payment_intent_id, metadata, stripe_account=None):
        # Stripe merges metadata keys, so only the keys being written are sent
        stripe.PaymentIntent.modify(
            payment_intent_id, metadata=metadata, api_key=self.api_key, stripe_account=stripe_account
        )
        return True

    def retrieve_customer(self, customer_id, stripe_account=None):
        customer = stripe.Customer.retrieve(
            customer_id, api_key=self.api_key, stripe_account=stripe_account
        )
        if _get_stripe_value(customer, 'deleted', False):
            return None
        return customer

    def retrieve_subscription(self, subscription_id, stripe_account=None):
        return stripe.Subscription.retrieve(
            subscription_id, api_key=self.api_key, stripe_account=stripe_account
        )

    def retrieve_account(self):
        return stripe.Account.retrieve(api_key=self.api_key)


class NullPaymentProvider(PaymentProvider):
    """Stand-in used when no Stripe key is configured: nothing is found, nothing is written"""

    def retrieve_payment_intent(self, payment_intent_id, stripe_account=None):
        return None

    def update_payment_intent_metadata(self, payment_intent_id, metadata, stripe_account=None):
        logger.warning(f"Stripe not configured; metadata for {payment_intent_id} not updated")
        return False

    def retrieve_customer(self, customer_id, stripe_account=None):
        return None

    def retrieve_subscription(self, subscription_id, stripe_account=None):
        return None

    def retrieve_account(self):
        return None


def build_payment_provider(api_key: Optional[str] = None) -> PaymentProvider:
    """Create the provider client once at process start."""
    key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
    if not key:
        logger.warning("Stripe secret key not configured - using null payment provider")
        return NullPaymentProvider()
    return StripePaymentProvider(key)
