"""Order reconciliation from Stripe payment intent events

A payment can reach us twice: through the storefront's order-creation call
and through the `payment_intent.succeeded` webhook, in either order, or only
through the webhook. The payment intent's `orderId` metadata is the
idempotency key tying both paths to a single order.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.metrics import orders_synthesized_counter
from app.db.stores import InvalidStatusTransition, OrderStore, TicketStore, UserStore
from app.models.order import (
    Order, PAYMENT_STATUS_TRANSITIONS, ORDER_STATUS_TRANSITIONS, can_transition
)
from app.schemas.webhooks import StripeWebhookEvent
from app.services.customer_service import CustomerResolver
from app.services.notification_service import NotificationDispatcher
from app.services.results import ErrorKind, HandlerResult, HandlerWarning
from app.services.stripe_service import PaymentProvider, _get_stripe_value, _metadata, _object_id
from app.services.ticket_service import TicketMaterializer, parse_ticket_specs
from app.utils.order_tokens import generate_id, issue_view_token

logger = logging.getLogger(__name__)

REQUIRED_METADATA_FIELDS = ("sellerId", "productionId", "performanceId")


class MissingOrderData(ValueError):
    """Payment intent lacks what is needed to build an order"""

    def __init__(self, fields: List[str]):
        self.fields = fields
        super().__init__(f"Cannot create order: missing required fields in PaymentIntent metadata: {', '.join(fields)}")


def _clean(value: Any) -> Optional[str]:
    """Metadata values arrive as strings; blank means absent."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_venue_address(metadata: Dict[str, Any]) -> Optional[str]:
    """Street address if given, otherwise whatever of city/state/zip is present."""
    address = _clean(metadata.get("venueAddress"))
    if address:
        return address
    parts = [_clean(metadata.get(key)) for key in ("venueCity", "venueState", "venueZipCode")]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


def _is_email(value: Optional[str]) -> bool:
    return bool(value) and "@" in value


class OrderReconciler:
    def __init__(self,
                 provider: PaymentProvider,
                 orders: OrderStore,
                 tickets: TicketStore,
                 users: UserStore,
                 materializer: TicketMaterializer,
                 notifier: NotificationDispatcher,
                 customers: CustomerResolver,
                 default_base_url: Optional[str] = None):
        self.provider = provider
        self.orders = orders
        self.tickets = tickets
        self.users = users
        self.materializer = materializer
        self.notifier = notifier
        self.customers = customers
        self.default_base_url = default_base_url or settings.APP_BASE_URL

    # ------------------------------------------------------------------
    # payment_intent.succeeded
    # ------------------------------------------------------------------

    def handle_payment_succeeded(self, event: StripeWebhookEvent) -> HandlerResult:
        pi = event.data_object
        pi_id = _get_stripe_value(pi, "id")
        account = event.account
        metadata = _metadata(pi)
        order_id = _clean(metadata.get("orderId"))
        warnings: List[HandlerWarning] = []

        logger.info(f"Payment succeeded ({account or 'platform'}): {pi_id}, orderId={order_id}")

        if not order_id:
            fresh_metadata = self._current_metadata(pi_id, account)
            if fresh_metadata:
                metadata = {**metadata, **fresh_metadata}
                order_id = _clean(fresh_metadata.get("orderId"))
                if order_id:
                    logger.info(f"PaymentIntent {pi_id} already linked to order {order_id}")

        if not order_id:
            existing = self.orders.find_by_payment_intent(pi_id)
            if existing is not None:
                order_id = existing.id
                logger.info(f"Found order {order_id} for PaymentIntent {pi_id} locally")

        if not order_id:
            logger.warning(f"PaymentIntent {pi_id} has no orderId - creating order from metadata")
            try:
                order, warnings = self.synthesize_order(pi, metadata, account)
            except MissingOrderData as e:
                logger.error(f"Failed to create order from PaymentIntent {pi_id}: {e}")
                return HandlerResult.dropped(ErrorKind.MISSING_DATA, str(e))
            order_id = order.id

        return self._confirm_and_notify(order_id, pi, metadata, account, warnings)

    def _current_metadata(self, pi_id: Optional[str], account: Optional[str]) -> Dict[str, str]:
        """Re-read the payment intent so a write-back by an earlier delivery is visible.

        Connected-account events may carry thin metadata, so the platform copy
        is consulted as well.
        """
        if not pi_id:
            return {}
        contexts = [account, None] if account else [None]
        for stripe_account in contexts:
            try:
                current = self.provider.retrieve_payment_intent(pi_id, stripe_account=stripe_account)
            except Exception as e:
                logger.warning(f"Could not re-fetch PaymentIntent {pi_id} ({stripe_account or 'platform'}): {e}")
                continue
            metadata = _metadata(current)
            if _clean(metadata.get("orderId")):
                return metadata
        return {}

    def synthesize_order(self, pi: Dict[str, Any], metadata: Dict[str, Any],
                         account: Optional[str] = None) -> Tuple[Order, List[HandlerWarning]]:
        """Create the order a payment intent describes when no client call created it.

        Raises:
            MissingOrderData: seller/production/performance or amount absent
        """
        pi_id = _get_stripe_value(pi, "id")
        missing = [name for name in REQUIRED_METADATA_FIELDS if not _clean(metadata.get(name))]
        amount = _get_stripe_value(pi, "amount")
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            amount = 0
        if amount <= 0:
            missing.append("amount")
        if missing:
            raise MissingOrderData(missing)

        now = datetime.now(timezone.utc)
        view_token, view_token_expires_at = issue_view_token(now)
        base_url = _clean(metadata.get("baseUrl")) or self.default_base_url
        method_types = _get_stripe_value(pi, "payment_method_types") or []

        order = Order(
            id=generate_id(),
            buyer_id=_clean(metadata.get("buyerId")) or _clean(metadata.get("userId")),
            seller_id=_clean(metadata["sellerId"]),
            production_id=_clean(metadata["productionId"]),
            performance_id=_clean(metadata["performanceId"]),
            total_amount=amount,
            status="pending",
            payment_status="paid",
            payment_method=method_types[0] if method_types else "card",
            customer_email=_clean(metadata.get("customerEmail")),
            tickets=[],
            view_token=view_token,
            view_token_expires_at=view_token_expires_at,
            base_url=base_url,
            production_name=_clean(metadata.get("productionName")),
            venue_name=_clean(metadata.get("venueName")),
            venue_address=build_venue_address(metadata),
            venue_city=_clean(metadata.get("venueCity")),
            venue_state=_clean(metadata.get("venueState")),
            venue_zip_code=_clean(metadata.get("venueZipCode")),
            performance_date=_clean(metadata.get("performanceDate")),
            performance_time=_clean(metadata.get("performanceTime")),
            stripe_payment_intent_id=pi_id,
            created_at=now,
            updated_at=now,
        )

        try:
            order = self.orders.upsert(order)
        except IntegrityError:
            # A concurrent delivery won the insert for this payment intent
            existing = self.orders.find_by_payment_intent(pi_id)
            if existing is None:
                raise
            logger.warning(f"Order for PaymentIntent {pi_id} was created concurrently; using {existing.id}")
            return existing, []

        orders_synthesized_counter.inc()
        logger.info(f"✅ Created order {order.id} from PaymentIntent {pi_id}")
        warnings: List[HandlerWarning] = []

        try:
            written = self.provider.update_payment_intent_metadata(
                pi_id, {"orderId": order.id}, stripe_account=account
            )
        except Exception as e:
            logger.error(f"Failed to update PaymentIntent {pi_id} metadata with orderId: {e}")
            warnings.append(HandlerWarning(ErrorKind.SIDE_EFFECT, f"orderId write-back failed: {e}"))
        else:
            if written:
                logger.info(f"Updated PaymentIntent {pi_id} metadata with orderId {order.id}")
            else:
                warnings.append(HandlerWarning(ErrorKind.SIDE_EFFECT, "orderId write-back skipped"))

        specs, problem = parse_ticket_specs(metadata.get("tickets"))
        if problem:
            logger.error(f"Skipping ticket creation for order {order.id}: {problem}")
            warnings.append(HandlerWarning(ErrorKind.MISSING_DATA, problem))
        if specs:
            try:
                materialized = self.materializer.materialize(order.id, base_url, view_token, specs)
            except Exception as e:
                logger.error(f"Ticket materialization failed for order {order.id}: {e}", exc_info=True)
                warnings.append(HandlerWarning(ErrorKind.PARTIAL_MATERIALIZATION, str(e)))
            else:
                if materialized.failed:
                    warnings.append(HandlerWarning(
                        ErrorKind.PARTIAL_MATERIALIZATION,
                        f"{materialized.failed} of {materialized.requested} tickets not created"
                    ))
        elif not problem:
            logger.warning(f"No tickets data in metadata - order {order.id} created without tickets")

        return order, warnings

    def _confirm_and_notify(self, order_id: str, pi: Dict[str, Any], metadata: Dict[str, Any],
                            account: Optional[str], warnings: List[HandlerWarning]) -> HandlerResult:
        order = self.orders.get(order_id)
        if order is None:
            logger.error(f"Order not found: {order_id}")
            return HandlerResult.failed(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id)

        try:
            self._transition(order, "paid", "confirmed")
        except InvalidStatusTransition as e:
            logger.error(f"Refusing to confirm order {order_id}: {e}")
            return HandlerResult.failed(ErrorKind.INVALID_TRANSITION, str(e), order_id).extend(warnings)
        logger.info(f"Order {order_id} marked as paid")

        updates = {}
        if not order.view_token:
            # Orders created before view tokens existed
            updates["view_token"], updates["view_token_expires_at"] = issue_view_token()
        base_url = _clean(metadata.get("baseUrl"))
        if base_url and base_url != order.base_url:
            updates["base_url"] = base_url
        if updates:
            order = self.orders.update(order_id, **updates)

        result = HandlerResult.success(f"Order {order_id} confirmed", order_id).extend(warnings)

        to_email = self.resolve_recipient_email(order, metadata, pi, account)
        if not to_email:
            logger.info(f"No recipient email for order {order_id}; skipping notifications")
            return result

        tickets = self.tickets.list_all(order_id)
        return result.extend(self.notifier.dispatch(to_email, order, tickets))

    def _transition(self, order: Order, payment_status: str, status: str) -> None:
        """Apply both status changes, or neither if either is illegal."""
        if not can_transition(PAYMENT_STATUS_TRANSITIONS, order.payment_status, payment_status):
            raise InvalidStatusTransition("payment_status", order.payment_status, payment_status)
        if not can_transition(ORDER_STATUS_TRANSITIONS, order.status, status):
            raise InvalidStatusTransition("status", order.status, status)
        self.orders.update_payment_status(order.id, payment_status)
        self.orders.update_order_status(order.id, status)

    def resolve_recipient_email(self, order: Order, metadata: Dict[str, Any],
                                pi: Dict[str, Any], account: Optional[str] = None) -> Optional[str]:
        """The order's own address, then payment metadata, then the buyer's account, then the Stripe customer."""
        for candidate in (_clean(order.customer_email), _clean(metadata.get("customerEmail"))):
            if _is_email(candidate):
                return candidate

        buyer_id = _clean(order.buyer_id)
        if buyer_id:
            if _is_email(buyer_id):
                return buyer_id
            try:
                user = self.users.get_by_id(buyer_id)
            except Exception as e:
                logger.error(f"Failed to fetch user email for {buyer_id}: {e}")
                user = None
            if user is not None and _is_email(user.email):
                return user.email

        customer_id = _object_id(_get_stripe_value(pi, "customer"))
        if customer_id:
            return self.customers.customer_email(customer_id, stripe_account=account)
        return None

    # ------------------------------------------------------------------
    # payment_intent.payment_failed
    # ------------------------------------------------------------------

    def handle_payment_failed(self, event: StripeWebhookEvent) -> HandlerResult:
        pi = event.data_object
        pi_id = _get_stripe_value(pi, "id")
        order_id = _clean(_metadata(pi).get("orderId"))

        if not order_id:
            logger.info(f"Payment failed for {pi_id} with no orderId - nothing to update")
            return HandlerResult.dropped(ErrorKind.MISSING_DATA, "failed payment has no orderId")

        order = self.orders.get(order_id)
        if order is None:
            logger.error(f"Order not found for failed payment {pi_id}: {order_id}")
            return HandlerResult.failed(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id)

        try:
            self._transition(order, "failed", "cancelled")
        except InvalidStatusTransition as e:
            logger.error(f"Refusing to fail order {order_id}: {e}")
            return HandlerResult.failed(ErrorKind.INVALID_TRANSITION, str(e), order_id)

        logger.info(f"Order {order_id} marked as failed/cancelled")
        return HandlerResult.success(f"Order {order_id} cancelled", order_id)
