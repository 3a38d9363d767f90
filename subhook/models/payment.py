"""
Payment model - append-only record of every charge attempt.
"""
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, Uuid

from subhook.core.database import Base, utcnow
from subhook.models.enums import PaymentStatus


class Payment(Base):
    """
    One charge attempt for a subscription.

    An ``external_payment_id`` maps to at most one row; repeated gateway
    notifications update that row instead of inserting another.
    """

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    subscription_id = Column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    status = Column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="PENDING|APPROVED|REJECTED|IN_PROCESS|REFUNDED|CHARGED_BACK",
    )
    external_payment_id = Column(String(255), nullable=True, unique=True, index=True)
    external_status = Column(String(50), nullable=True)
    external_status_detail = Column(String(255), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    original_amount = Column(Numeric(12, 2), nullable=True)
    coupon_code = Column(String(50), nullable=True)
    description = Column(String(255), nullable=True)
    payment_date = Column(DateTime, nullable=True)
    gateway_response = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, subscription_id={self.subscription_id}, "
            f"status='{self.status}', amount={self.amount})>"
        )
