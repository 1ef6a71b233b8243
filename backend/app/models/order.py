"""Order model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Order(Base):
    """A single purchase, one per Stripe payment intent"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, index=True)
    buyer_id = Column(String(128), nullable=True, index=True)
    seller_id = Column(String(128), nullable=False, index=True)
    production_id = Column(String(128), nullable=False, index=True)
    performance_id = Column(String(128), nullable=False, index=True)
    total_amount = Column(Integer, nullable=False)  # minor currency units
    status = Column(String(20), default="pending", nullable=False)  # 'pending', 'confirmed', 'cancelled', 'refunded'
    payment_status = Column(String(20), default="pending", nullable=False)  # 'pending', 'paid', 'failed', 'refunded'
    payment_method = Column(String(50), nullable=True)
    customer_email = Column(String(255), nullable=True)
    tickets = Column(JSON, default=list, nullable=False)  # ids of persisted Ticket rows

    # Public order view access
    view_token = Column(String(128), nullable=True)
    view_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    base_url = Column(String(512), nullable=True)

    # Denormalized display fields for emails
    production_name = Column(String(255), nullable=True)
    venue_name = Column(String(255), nullable=True)
    venue_address = Column(String(512), nullable=True)
    venue_city = Column(String(128), nullable=True)
    venue_state = Column(String(64), nullable=True)
    venue_zip_code = Column(String(32), nullable=True)
    performance_date = Column(String(32), nullable=True)  # YYYY-MM-DD as sent by the storefront
    performance_time = Column(String(16), nullable=True)  # HH:mm

    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    ticket_rows = relationship("Ticket", back_populates="order", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, payment_status={self.payment_status}, total_amount={self.total_amount})>"


# Allowed status moves; writing the current status again is always a no-op
PAYMENT_STATUS_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

ORDER_STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"cancelled", "refunded"},
    "cancelled": set(),
    "refunded": set(),
}


def can_transition(transitions: dict, current: str, target: str) -> bool:
    """Return True if moving from current to target is permitted"""
    if target not in transitions:
        return False
    if current == target:
        return True
    return target in transitions.get(current, set())
