import uuid

from sqlalchemy import Column, String, DateTime, Uuid

from bloodnode.db.postgres import Base
from bloodnode.services.clock import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    action = Column(String, nullable=False)  # "create", "respond", "select", "cancel", ...
    resource = Column(String, nullable=False)  # "emergency_alert", "emergency_response", "donor_location"
    resource_id = Column(String, nullable=True)
    details = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
