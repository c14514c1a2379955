from sqlalchemy import JSON, Column, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from fuelbot.database import Base


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    currency = Column(Text, nullable=False, default="MXN")
    timezone = Column(Text, nullable=False, default="America/Mexico_City")
    unit_limit = Column(Integer, nullable=False, default=10)
    features = Column(JSON, nullable=False, default=dict)
    notifications = Column(JSON, nullable=False, default=dict)

    tenant = relationship("Tenant", back_populates="settings")
