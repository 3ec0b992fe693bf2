import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, ForeignKey, Uuid

from bloodnode.db.postgres import Base
from bloodnode.services.clock import utcnow


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"  # donor has no e-mail address


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    alert_id = Column(Uuid, ForeignKey("emergency_alerts.id"), nullable=False, index=True)
    donor_id = Column(Uuid, nullable=False)
    channel = Column(String, nullable=False, default="email")
    delivery_status = Column(Enum(DeliveryStatus), nullable=False)
    error = Column(String, nullable=True)  # never contains the recipient address
    created_at = Column(DateTime, default=utcnow)
