"""User model"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing_webhooks.models.base import Base


class User(Base):
    """User accounts (owned by the account service, read by webhook reconciliation)"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # Stripe customer ID
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
    stripe_customers = relationship("StripeCustomer", back_populates="user", cascade="all, delete-orphan")
