"""
SubscriptionPlan model - billing interval and price of a recurring plan.
"""
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Uuid

from subhook.core.database import Base, utcnow
from subhook.models.enums import PlanInterval


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    name = Column(String(100), unique=True, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    interval = Column(
        String(20),
        nullable=False,
        default=PlanInterval.MONTHLY.value,
        comment="MONTHLY|QUARTERLY|SEMIANNUAL|ANNUAL",
    )
    interval_count = Column(Integer, nullable=False, default=1)
    trial_days = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    external_plan_id = Column(String(255), nullable=True, comment="preapproval_plan id no gateway")

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name='{self.name}', interval='{self.interval}')>"
