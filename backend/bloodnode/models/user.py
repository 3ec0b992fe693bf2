import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Uuid

from bloodnode.db.postgres import Base
from bloodnode.services.clock import utcnow


class User(Base):
    """Read side of the account system; rows are owned elsewhere."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=True)
    phone = Column(String, nullable=True)
    public_profile = Column(Boolean, default=True)  # discoverable by donor search
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
