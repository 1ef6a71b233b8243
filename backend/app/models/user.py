"""User model"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class User(Base):
    """User accounts (managed by the account service; read here for lookups)"""
    __tablename__ = "users"

    id = Column(String(128), primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    display_name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # Stripe customer ID
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
