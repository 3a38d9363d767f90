"""
WebhookNotification model - registro de todas as notificacoes recebidas do gateway.
"""
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, Uuid

from subhook.core.database import Base, utcnow
from subhook.models.enums import ProcessStatus


class WebhookNotification(Base):
    """
    Idempotency ledger for inbound webhooks.

    Written and committed before processing begins; a redelivery of a row in
    ``processed`` state returns the stored ``result`` without reprocessing.
    """

    __tablename__ = "webhook_notifications"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    source = Column(String(50), nullable=False, default="gateway")
    event_type = Column(String(100), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    action = Column(String(100), nullable=True, comment="payment.created|payment.updated|...")
    resource_id = Column(String(255), nullable=True)
    raw_data = Column(JSON, nullable=True)
    process_status = Column(
        String(20),
        nullable=False,
        default=ProcessStatus.PENDING.value,
        index=True,
        comment="pending|processed|error",
    )
    processed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    live_mode = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<WebhookNotification(event_id='{self.event_id}', event_type='{self.event_type}', "
            f"status='{self.process_status}')>"
        )
