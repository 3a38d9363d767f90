"""
Coupon models - discount definitions, plan restrictions and usage history.
"""
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)

from subhook.core.database import Base, utcnow
from subhook.models.enums import CouponStatus


class Coupon(Base):
    """
    Discount coupon.

    ``usage_count`` and ``total_discount_amount`` only change as a side
    effect of an approved payment that applied the coupon.
    """

    __tablename__ = "coupons"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    discount_type = Column(String(20), nullable=False, comment="PERCENTAGE|FIXED")
    discount_value = Column(Numeric(12, 2), nullable=False)
    max_discount_amount = Column(Numeric(12, 2), nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=CouponStatus.ACTIVE.value)
    applies_to_all_plans = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    total_discount_amount = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Coupon(code='{self.code}', type='{self.discount_type}', status='{self.status}')>"


class CouponPlanRestriction(Base):
    """Plans a coupon is limited to when ``applies_to_all_plans`` is false."""

    __tablename__ = "coupon_plan_restrictions"
    __table_args__ = (UniqueConstraint("coupon_id", "plan_id", name="uq_coupon_plan"),)

    id = Column(Uuid, primary_key=True, default=uuid4)
    coupon_id = Column(Uuid, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(
        Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False
    )


class CouponUsage(Base):
    """One row per approved payment that carried a coupon discount."""

    __tablename__ = "coupon_usage_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    coupon_id = Column(Uuid, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=True)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True, unique=True)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    original_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
