"""Webhook event dispatch

Routes verified (or, outside production, unverified) Stripe events to their
handlers, records every event id in the processed-event ledger and turns any
handler exception into a failed result.
"""
import logging
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.logging import webhook_logger
from app.core.metrics import webhook_processed_counter
from app.core.otel import event_span, get_tracer
from app.db.session import SessionLocal, session_scope
from app.db.stores import OrderStore, SubscriptionStore, TicketStore, UserStore
from app.models.stripe_event import StripeEvent
from app.schemas.webhooks import StripeWebhookEvent
from app.services.customer_service import CustomerResolver
from app.services.notification_service import NotificationDispatcher
from app.services.order_service import OrderReconciler
from app.services.results import ErrorKind, HandlerResult, ResultStatus
from app.services.stripe_service import PaymentProvider
from app.services.subscription_service import SubscriptionProjector
from app.services.ticket_service import TicketMaterializer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Received and acknowledged; nothing to do locally
ACKNOWLEDGED_EVENTS = frozenset({"charge.dispute.created", "account.updated"})


# ============================================================================
# PROCESSED-EVENT LEDGER
# ============================================================================

def log_stripe_event(event: StripeWebhookEvent, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event.id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            event_id=event.id,
            event_type=event.type,
            account=event.account,
            payload=event.model_dump(),
            processed=False
        )
        db.add(stripe_event)
        db.commit()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, outcome: str, error_message: Optional[str] = None):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.mark_processed(outcome, error_message)
        db.commit()


def record_stripe_event_failure(event_id: str, db: Session, error_message: Optional[str]):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.record_failure(error_message)
        db.commit()


# ============================================================================
# DISPATCHER
# ============================================================================

class EventDispatcher:
    def __init__(self, reconciler: OrderReconciler, projector: SubscriptionProjector, db: Optional[Session] = None):
        self.db = db
        self.routes: Dict[str, Callable[[StripeWebhookEvent], HandlerResult]] = {
            "payment_intent.succeeded": reconciler.handle_payment_succeeded,
            "payment_intent.payment_failed": reconciler.handle_payment_failed,
            "customer.subscription.created": projector.handle_subscription_event,
            "customer.subscription.updated": projector.handle_subscription_event,
            "customer.subscription.deleted": projector.handle_subscription_event,
            "invoice.payment_succeeded": projector.handle_invoice_event,
            "invoice.payment_failed": projector.handle_invoice_event,
        }

    def _ledger_seen(self, event: StripeWebhookEvent) -> bool:
        """Record the event; True when it was already processed."""
        if self.db is None or not event.id:
            return False
        try:
            return bool(log_stripe_event(event, self.db).processed)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log webhook event {event.id}: {e}")
            return False

    def _ledger_mark(self, event: StripeWebhookEvent, result: HandlerResult) -> None:
        if self.db is None or not event.id:
            return
        try:
            if result.status == ResultStatus.FAILED:
                record_stripe_event_failure(event.id, self.db, result.message)
            else:
                mark_stripe_event_processed(event.id, self.db, result.status.value)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to mark webhook event {event.id} processed: {e}")

    def _run_handler(self, event: StripeWebhookEvent) -> HandlerResult:
        if event.type in ACKNOWLEDGED_EVENTS:
            logger.info(f"Acknowledged {event.type} ({event.account or 'platform'})")
            return HandlerResult.success(f"{event.type} acknowledged")

        handler = self.routes.get(event.type)
        if handler is None:
            logger.debug(f"Unhandled event type: {event.type}")
            return HandlerResult.ignored(f"unhandled event type {event.type}")

        try:
            return handler(event)
        except Exception as e:
            if self.db is not None:
                self.db.rollback()
            logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
            return HandlerResult.failed(ErrorKind.UNEXPECTED, str(e))

    def dispatch(self, event: StripeWebhookEvent) -> HandlerResult:
        with event_span(tracer, event) as span:
            if self._ledger_seen(event):
                webhook_logger.info(f"Webhook event {event.id} already processed")
                result = HandlerResult.duplicate(f"event {event.id} already processed")
            else:
                result = self._run_handler(event)
                self._ledger_mark(event, result)

            span.set_attribute("webhook.status", result.status.value)

        webhook_processed_counter.labels(event_type=event.type, status=result.status.value).inc()
        for warning in result.warnings:
            logger.warning(f"Webhook {event.id} ({event.type}): {warning.kind.value}: {warning.message}")

        if result.status == ResultStatus.FAILED:
            webhook_logger.error(f"Webhook {event.id} ({event.type}) failed [{result.kind.value}]: {result.message}")
        elif result.status == ResultStatus.DROPPED:
            webhook_logger.warning(f"Webhook {event.id} ({event.type}) dropped [{result.kind.value}]: {result.message}")
        else:
            webhook_logger.info(f"Webhook {event.id} ({event.type}) {result.status.value}")
        return result


def build_event_dispatcher(db: Session, provider: PaymentProvider,
                           notifier: Optional[NotificationDispatcher] = None) -> EventDispatcher:
    """Wire the pipeline for one database session."""
    orders = OrderStore(db)
    tickets = TicketStore(db)
    users = UserStore(db)
    customers = CustomerResolver(provider, users)
    reconciler = OrderReconciler(
        provider=provider,
        orders=orders,
        tickets=tickets,
        users=users,
        materializer=TicketMaterializer(tickets, orders),
        notifier=notifier or NotificationDispatcher(),
        customers=customers,
    )
    projector = SubscriptionProjector(provider, SubscriptionStore(db), customers)
    return EventDispatcher(reconciler, projector, db=db)


def process_webhook_event(event: StripeWebhookEvent, provider: PaymentProvider,
                          notifier: Optional[NotificationDispatcher] = None,
                          session_factory: Optional[Callable[[], Session]] = None) -> HandlerResult:
    """Process one event in its own database session (worker entry point)."""
    with session_scope(session_factory or SessionLocal) as db:
        return build_event_dispatcher(db, provider, notifier).dispatch(event)
