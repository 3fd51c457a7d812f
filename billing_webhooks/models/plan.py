"""SubscriptionPlan model"""
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing_webhooks.models.base import Base


class SubscriptionPlan(Base):
    """Sellable plan, matched to Stripe by price ID"""
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)  # 'STARTER', 'PRO', 'ENTERPRISE'
    stripe_price_id = Column(String(255), unique=True, nullable=False, index=True)
    max_users = Column(Integer, nullable=True)
    max_projects = Column(Integer, nullable=True)
    max_storage = Column(BigInteger, nullable=True)  # bytes
    max_api_calls = Column(Integer, nullable=True)  # None falls back to the per-tier default
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    subscriptions = relationship("Subscription", back_populates="plan")
