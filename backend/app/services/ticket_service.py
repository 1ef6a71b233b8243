"""Ticket materialization for orders reconciled from payment events"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from app.core.metrics import tickets_materialized_counter
from app.db.stores import OrderStore, TicketStore
from app.models.ticket import Ticket
from app.schemas.webhooks import TicketSpec
from app.utils.order_tokens import build_order_view_url, generate_id

logger = logging.getLogger(__name__)


def parse_ticket_specs(raw: Any) -> Tuple[List[Any], Optional[str]]:
    """Decode the `tickets` metadata value.

    Stripe metadata values are flat strings, so the storefront sends the seat
    list JSON-encoded. Returns (specs, problem); an unusable value yields no
    specs and a description of the problem.
    """
    if raw is None or raw == "":
        return [], None
    value = raw
    if isinstance(raw, (str, bytes)):
        try:
            value = json.loads(raw)
        except ValueError as e:
            return [], f"tickets metadata is not valid JSON: {e}"
    if not isinstance(value, list):
        return [], "tickets metadata is not a list"
    return value, None


@dataclass
class MaterializationResult:
    requested: int
    tickets: List[Ticket] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


class TicketMaterializer:
    def __init__(self, tickets: TicketStore, orders: OrderStore):
        self.tickets = tickets
        self.orders = orders

    def materialize(self, order_id: str, base_url: str, view_token: str, specs: List[Any]) -> MaterializationResult:
        """Create one Ticket per spec and record the persisted ids on the order.

        A spec that fails validation or persistence is logged and skipped; the
        order's ticket list only ever names tickets that were written.
        """
        result = MaterializationResult(requested=len(specs))
        if not specs:
            return result

        qr_code = build_order_view_url(base_url, order_id, view_token)
        now = datetime.now(timezone.utc)
        logger.info(f"Creating {len(specs)} tickets for order {order_id}")

        for index, raw in enumerate(specs):
            try:
                spec = raw if isinstance(raw, TicketSpec) else TicketSpec.model_validate(raw)
                ticket = Ticket(
                    id=generate_id(),
                    seat_id=spec.seat_id,
                    section=spec.section,
                    row=spec.row,
                    seat_number=spec.seat_number,
                    price=spec.price,
                    status="valid",
                    qr_code=qr_code,
                    created_at=now,
                )
                saved = self.tickets.upsert(order_id, ticket)
            except ValidationError as e:
                message = f"ticket {index} rejected: {e.errors()[0].get('msg', e)}"
                logger.error(f"Invalid ticket spec for order {order_id}: {message}")
                result.errors.append(message)
                tickets_materialized_counter.labels(status="invalid").inc()
                continue
            except Exception as e:
                message = f"ticket {index} not saved: {e}"
                logger.error(f"Failed to create ticket for order {order_id}: {message}")
                result.errors.append(message)
                tickets_materialized_counter.labels(status="failed").inc()
                continue

            result.tickets.append(saved)
            tickets_materialized_counter.labels(status="created").inc()
            logger.debug(f"Created ticket {saved.id} for order {order_id}")

        ticket_ids = [t.id for t in result.tickets]
        self.orders.update(order_id, tickets=ticket_ids)
        logger.info(f"Order {order_id} now lists {len(ticket_ids)} of {len(specs)} requested tickets")
        return result
