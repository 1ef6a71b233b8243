"""Store adapters over the SQLAlchemy session

Thin accessors used by the webhook pipeline. Each write commits immediately so
a later failure in the same event never rolls back state that already landed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.order import (
    Order, PAYMENT_STATUS_TRANSITIONS, ORDER_STATUS_TRANSITIONS, can_transition
)
from app.models.ticket import Ticket
from app.models.subscription import Subscription
from app.models.user import User

logger = logging.getLogger(__name__)


class OrderNotFound(LookupError):
    """Raised when an order id does not resolve to a stored order"""


class InvalidStatusTransition(ValueError):
    """Raised when a status change is not allowed by the order state machine"""

    def __init__(self, field: str, current: str, target: str):
        self.field = field
        self.current = current
        self.target = target
        super().__init__(f"Illegal {field} transition: {current} -> {target}")


class OrderStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: str) -> Optional[Order]:
        if not order_id:
            return None
        return self.db.query(Order).filter(Order.id == order_id).first()

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        if not payment_intent_id:
            return None
        return self.db.query(Order).filter(
            Order.stripe_payment_intent_id == payment_intent_id
        ).first()

    def upsert(self, order: Order) -> Order:
        """Insert or replace an order.

        Raises:
            sqlalchemy.exc.IntegrityError: if another order already holds the
                same payment intent id (session is rolled back first)
        """
        try:
            order = self.db.merge(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        return order

    def update(self, order_id: str, **fields: Any) -> Order:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        for key, value in fields.items():
            setattr(order, key, value)
        self.db.commit()
        self.db.refresh(order)
        return order

    def update_payment_status(self, order_id: str, status: str) -> Order:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if not can_transition(PAYMENT_STATUS_TRANSITIONS, order.payment_status, status):
            raise InvalidStatusTransition("payment_status", order.payment_status, status)
        if order.payment_status != status:
            order.payment_status = status
            self.db.commit()
            self.db.refresh(order)
        return order

    def update_order_status(self, order_id: str, status: str) -> Order:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if not can_transition(ORDER_STATUS_TRANSITIONS, order.status, status):
            raise InvalidStatusTransition("status", order.status, status)
        if order.status != status:
            order.status = status
            self.db.commit()
            self.db.refresh(order)
        return order


class TicketStore:
    def __init__(self, db: Session):
        self.db = db

    def upsert(self, order_id: str, ticket: Ticket) -> Ticket:
        ticket.order_id = order_id
        try:
            ticket = self.db.merge(ticket)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(ticket)
        return ticket

    def list_all(self, order_id: str) -> List[Ticket]:
        return self.db.query(Ticket).filter(
            Ticket.order_id == order_id
        ).order_by(Ticket.created_at, Ticket.id).all()


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def upsert(self, user_id: str, fields: Dict[str, Any]) -> Subscription:
        """Overwrite the given fields on the user's projection, creating it if needed"""
        sub_record = self.get(user_id)
        if sub_record is None:
            sub_record = Subscription(user_id=user_id, status=fields.get("status") or "incomplete")
            self.db.add(sub_record)
            logger.info(f"Creating subscription projection for user {user_id}")
        for key, value in fields.items():
            setattr(sub_record, key, value)
        sub_record.updated_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(sub_record)
        return sub_record


class UserStore:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def find_by_stripe_customer_id(self, customer_id: str) -> List[User]:
        if not customer_id:
            return []
        return self.db.query(User).filter(User.stripe_customer_id == customer_id).all()
