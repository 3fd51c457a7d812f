"""UsageQuota model"""
import enum
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing_webhooks.models.base import Base


class UsageMetricType(str, enum.Enum):
    USERS = "USERS"
    PROJECTS = "PROJECTS"
    STORAGE = "STORAGE"
    API_CALLS = "API_CALLS"


class UsageQuota(Base):
    """Per-subscription limit for one usage metric"""
    __tablename__ = "usage_quotas"
    __table_args__ = (
        UniqueConstraint("subscription_id", "metric_type", name="uq_usage_quotas_subscription_metric"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_type = Column(String(20), nullable=False)  # UsageMetricType value
    limit_amount = Column(BigInteger, nullable=False)
    current_amount = Column(BigInteger, default=0, nullable=False)
    hard_limit = Column(Boolean, default=True, nullable=False)
    exceeded = Column(Boolean, default=False, nullable=False)
    alert_threshold = Column(Integer, nullable=True)  # percent of limit
    alert_sent = Column(Boolean, default=False, nullable=False)
    reset_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    subscription = relationship("Subscription", back_populates="usage_quotas")

    def __repr__(self):
        return f"<UsageQuota(subscription_id={self.subscription_id}, metric={self.metric_type}, limit={self.limit_amount})>"
