import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid, func
from sqlalchemy.orm import relationship

from fuelbot.database import Base

PLACEHOLDER_PREFIX = "pending_"


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name = Column(Text, nullable=False)
    # pending_<uuid> until a group is linked with the registration token
    chat_id = Column(Text, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    registration_token = Column(Text, nullable=True, unique=True)
    link_token = Column(Text, nullable=True, unique=True)
    contact_name = Column(Text)
    contact_phone = Column(Text)
    contact_email = Column(Text)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    settings = relationship(
        "TenantSettings",
        back_populates="tenant",
        uselist=False,
        cascade="all, delete-orphan",
    )
    units = relationship("Unit", back_populates="tenant", cascade="all, delete-orphan")

    @property
    def is_linked(self) -> bool:
        return bool(self.chat_id) and not self.chat_id.startswith(PLACEHOLDER_PREFIX)
