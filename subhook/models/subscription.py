"""
Subscription model - user-plan relationship billed through the payment gateway.
"""
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)

from subhook.core.database import Base, utcnow
from subhook.models.enums import SubscriptionStatus


class Subscription(Base):
    """
    Local view of a recurring subscription.

    ``version`` is the compare-and-set token bumped on every state write;
    rows are never hard-deleted.
    """

    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(Uuid, nullable=False, index=True)
    plan_id = Column(
        Uuid,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Status
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
        index=True,
        comment="PENDING|ACTIVE|PAST_DUE|CANCELED",
    )
    is_paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime, nullable=True)

    # Billing period
    start_date = Column(DateTime, nullable=False, default=utcnow)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True, index=True)

    # Renewal
    renewal_failures = Column(Integer, nullable=False, default=0)
    renewal_attempt_date = Column(DateTime, nullable=True)

    # Cancellation
    canceled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    # Gateway IDs
    external_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    external_merchant_order_id = Column(String(255), nullable=True)

    # Discount (set only when a coupon was applied)
    coupon_id = Column(Uuid, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    original_price = Column(Numeric(12, 2), nullable=True)

    metadata_json = Column(JSON, nullable=True, comment="opaque map; 'system' selects legacy handling")
    version = Column(Integer, nullable=False, default=0, comment="compare-and-set token")

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"status='{self.status}', paused={self.is_paused})>"
        )
