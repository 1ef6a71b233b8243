"""Processed-event ledger"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from app.models.base import Base


class StripeEvent(Base):
    """One row per Stripe event id.

    A row is written before the handler runs. Once the handler finishes it is
    marked processed and a redelivery of the same id is reported as a
    duplicate. A failed run leaves it unprocessed so the event can be replayed.
    """
    __tablename__ = "stripe_events"
    __table_args__ = (
        Index("ix_stripe_events_type_processed", "event_type", "processed"),
    )

    id = Column(Integer, primary_key=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    account = Column(String(255), nullable=True)  # None for platform events
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def mark_processed(self, outcome: str, error_message: Optional[str] = None) -> None:
        self.processed = True
        self.processed_at = datetime.now(timezone.utc)
        self.outcome = outcome
        self.error_message = error_message

    def record_failure(self, error_message: Optional[str]) -> None:
        """Keep the row unprocessed so a redelivery of the same id is handled again"""
        self.processed = False
        self.processed_at = None
        self.outcome = "failed"
        self.error_message = error_message

    def __repr__(self):
        return f"<StripeEvent {self.event_id} {self.event_type} outcome={self.outcome}>"
