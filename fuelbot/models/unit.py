import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import relationship

from fuelbot.database import Base


class Unit(Base):
    __tablename__ = "units"
    __table_args__ = (UniqueConstraint("tenant_id", "unit_number", name="uq_units_tenant_number"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    operator_name = Column(Text, nullable=False)
    unit_number = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    tenant = relationship("Tenant", back_populates="units")

    @property
    def label(self) -> str:
        return f"{self.operator_name} - {self.unit_number}"
