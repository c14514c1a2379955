import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Text, Uuid, func

from fuelbot.database import Base


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RegistrationRequest(Base):
    __tablename__ = "registration_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name = Column(Text, nullable=False)
    contact_name = Column(Text, nullable=False)
    contact_phone = Column(Text)
    contact_email = Column(Text)
    requester_id = Column(Text, nullable=False)
    requester_username = Column(Text)
    status = Column(Text, nullable=False, default=RequestStatus.PENDING.value)
    processed_by = Column(Text)
    processed_at = Column(DateTime(timezone=True))
    admin_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
