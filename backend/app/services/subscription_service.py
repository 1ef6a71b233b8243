"""Subscription projection from Stripe billing events

The local `subscriptions` row is a read model of the Stripe subscription.
Stripe stays the source of truth; every event overwrites the fields it carries
and the last writer wins.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from app.core.metrics import subscription_projection_counter
from app.db.stores import SubscriptionStore
from app.schemas.webhooks import StripeWebhookEvent
from app.services.customer_service import CustomerResolver
from app.services.results import ErrorKind, HandlerResult
from app.services.stripe_service import PaymentProvider, _get_stripe_value, _metadata, _object_id

logger = logging.getLogger(__name__)

SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


def _to_datetime(timestamp: Any) -> Optional[datetime]:
    """Stripe epoch seconds to an aware UTC datetime"""
    if not timestamp:
        return None
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Ignoring unparseable Stripe timestamp: {timestamp!r}")
        return None


def period_bounds(subscription: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current billing period of a subscription.

    Newer API versions only carry the period on the subscription items, so the
    first item fills whatever the top level lacks.
    """
    start = _get_stripe_value(subscription, 'current_period_start')
    end = _get_stripe_value(subscription, 'current_period_end')
    if not start or not end:
        items = _get_stripe_value(_get_stripe_value(subscription, 'items'), 'data') or []
        if items:
            first = items[0]
            start = start or _get_stripe_value(first, 'current_period_start')
            end = end or _get_stripe_value(first, 'current_period_end')
    return _to_datetime(start), _to_datetime(end)


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription_id = _object_id(_get_stripe_value(invoice, 'subscription'))
    if subscription_id:
        return subscription_id
    details = _get_stripe_value(_get_stripe_value(invoice, 'parent'), 'subscription_details')
    return _object_id(_get_stripe_value(details, 'subscription'))


class SubscriptionProjector:
    def __init__(self, provider: PaymentProvider, subscriptions: SubscriptionStore, customers: CustomerResolver):
        self.provider = provider
        self.subscriptions = subscriptions
        self.customers = customers

    def _resolve_user_id(self, customer_id: Optional[str], metadata: Dict[str, Any],
                         stripe_account: Optional[str]) -> Optional[str]:
        user_id = self.customers.resolve_user_id(customer_id, stripe_account=stripe_account)
        if user_id:
            return user_id
        user_id = metadata.get('userId')
        return str(user_id) if user_id else None

    def _write(self, event_type: str, user_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.subscriptions.upsert(user_id, fields)
        except Exception:
            subscription_projection_counter.labels(event_type=event_type, status="error").inc()
            raise
        subscription_projection_counter.labels(event_type=event_type, status="written").inc()

    def handle_subscription_event(self, event: StripeWebhookEvent) -> HandlerResult:
        """customer.subscription.created / updated / deleted"""
        subscription = event.data_object
        subscription_id = _get_stripe_value(subscription, 'id')
        customer_id = _object_id(_get_stripe_value(subscription, 'customer'))
        metadata = _metadata(subscription)

        user_id = self._resolve_user_id(customer_id, metadata, event.account)
        if not user_id:
            logger.warning(f"No user found for subscription {subscription_id} (customer {customer_id})")
            subscription_projection_counter.labels(event_type=event.type, status="unresolved").inc()
            return HandlerResult.dropped(
                ErrorKind.MISSING_DATA, f"could not resolve user for subscription {subscription_id}"
            )

        deleted = event.type == SUBSCRIPTION_DELETED
        fields: Dict[str, Any] = {
            "stripe_subscription_id": subscription_id,
            "cancel_at_period_end": bool(_get_stripe_value(subscription, 'cancel_at_period_end', False)),
        }
        if customer_id:
            fields["stripe_customer_id"] = customer_id

        status = _get_stripe_value(subscription, 'status') or ("canceled" if deleted else None)
        if status:
            fields["status"] = status

        start, end = period_bounds(subscription)
        if start:
            fields["current_period_start"] = start
        if end:
            fields["current_period_end"] = end

        if metadata.get('planId'):
            fields["plan_id"] = metadata['planId']
        if metadata.get('planName'):
            fields["plan_name"] = metadata['planName']

        if deleted:
            fields["canceled_at"] = (
                _to_datetime(_get_stripe_value(subscription, 'canceled_at')) or datetime.now(timezone.utc)
            )

        self._write(event.type, user_id, fields)
        logger.info(f"✅ Subscription {subscription_id} projected for user {user_id}: {fields.get('status')}")
        return HandlerResult.success(f"subscription {subscription_id} {fields.get('status')}")

    def handle_invoice_event(self, event: StripeWebhookEvent) -> HandlerResult:
        """invoice.payment_succeeded / invoice.payment_failed"""
        invoice = event.data_object
        invoice_id = _get_stripe_value(invoice, 'id', 'unknown')
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.debug(f"Invoice {invoice_id} is not for a subscription")
            return HandlerResult.ignored(f"invoice {invoice_id} has no subscription")

        customer_id = _object_id(_get_stripe_value(invoice, 'customer'))
        user_id = self.customers.resolve_user_id(customer_id, stripe_account=event.account)
        if not user_id:
            try:
                subscription = self.provider.retrieve_subscription(subscription_id, stripe_account=event.account)
            except Exception as e:
                logger.warning(f"Could not retrieve subscription {subscription_id}: {e}")
                subscription = None
            user_id = _metadata(subscription).get('userId') or None

        if not user_id:
            logger.warning(f"No user found for invoice {invoice_id} (subscription {subscription_id})")
            subscription_projection_counter.labels(event_type=event.type, status="unresolved").inc()
            return HandlerResult.dropped(
                ErrorKind.MISSING_DATA, f"could not resolve user for invoice {invoice_id}"
            )

        if self.subscriptions.get(str(user_id)) is None:
            # Projections are created by subscription events only
            logger.info(f"No subscription projection for user {user_id}; invoice {invoice_id} not applied")
            subscription_projection_counter.labels(event_type=event.type, status="no_projection").inc()
            return HandlerResult.ignored(f"no subscription projection for user {user_id}")

        now = datetime.now(timezone.utc)
        if event.type == INVOICE_PAYMENT_SUCCEEDED:
            fields = {"status": "active", "last_payment_at": now}
        else:
            logger.warning(f"Payment failed for invoice {invoice_id}")
            fields = {"status": "past_due", "last_payment_failed_at": now}

        self._write(event.type, str(user_id), fields)
        return HandlerResult.success(f"invoice {invoice_id} {fields['status']}")
