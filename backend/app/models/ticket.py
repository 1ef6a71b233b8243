"""Ticket model"""
from sqlalchemy import CheckConstraint, Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Ticket(Base):
    """One seat within an order"""
    __tablename__ = "tickets"

    id = Column(String(64), primary_key=True, index=True)
    order_id = Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    seat_id = Column(String(128), nullable=True)
    section = Column(String(64), nullable=True)
    row = Column(String(32), nullable=True)
    seat_number = Column(String(32), nullable=True)
    price = Column(Integer, default=0, nullable=False)  # minor currency units
    status = Column(String(20), default="valid", nullable=False)
    qr_code = Column(String(1024), nullable=True)  # public order view URL
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        CheckConstraint('price >= 0', name='check_ticket_price_non_negative'),
    )

    order = relationship("Order", back_populates="ticket_rows")
