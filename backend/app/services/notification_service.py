"""Best-effort order notifications"""
import logging
from typing import Any, Callable, List

from app.core.metrics import notifications_counter
from app.services import email_service
from app.services.results import ErrorKind, HandlerWarning

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Sends the receipt and the consolidated tickets email for a paid order.

    Each send is independent: a failure is logged and reported back as a
    warning, never raised, and never touches order state.
    """

    def __init__(self,
                 send_receipt: Callable[..., bool] = email_service.send_receipt_email,
                 send_tickets: Callable[..., bool] = email_service.send_tickets_email):
        self.send_receipt = send_receipt
        self.send_tickets = send_tickets

    def _attempt(self, kind: str, order_id: str, send: Callable[[], Any]) -> List[HandlerWarning]:
        try:
            sent = send()
        except Exception as e:
            logger.error(f"Failed to send {kind} email for order {order_id}: {e}", exc_info=True)
            notifications_counter.labels(kind=kind, status="error").inc()
            return [HandlerWarning(ErrorKind.SIDE_EFFECT, f"{kind} email failed: {e}")]

        if sent is False:
            logger.error(f"{kind.capitalize()} email for order {order_id} was not sent")
            notifications_counter.labels(kind=kind, status="not_sent").inc()
            return [HandlerWarning(ErrorKind.SIDE_EFFECT, f"{kind} email not sent")]

        notifications_counter.labels(kind=kind, status="sent").inc()
        return []

    def dispatch(self, to: str, order: Any, tickets: List[Any]) -> List[HandlerWarning]:
        order_id = getattr(order, "id", None)
        logger.info(f"Sending order emails to {to} for order {order_id}")
        warnings = self._attempt("receipt", order_id, lambda: self.send_receipt(to=to, order=order))
        if not tickets:
            logger.info(f"Order {order_id} has no tickets; skipping tickets email")
            return warnings
        warnings += self._attempt("tickets", order_id, lambda: self.send_tickets(to=to, order=order, tickets=tickets))
        return warnings
