import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, Text, Uuid, func

from fuelbot.database import Base


class FuelType(str, Enum):
    GAS = "GAS"
    GASOLINA = "GASOLINA"
    DIESEL = "DIESEL"


class PaymentStatus(str, Enum):
    PAID = "PAGADA"
    UNPAID = "NO_PAGADA"


class FuelRecord(Base):
    __tablename__ = "fuel_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    unit_id = Column(Uuid(as_uuid=True), ForeignKey("units.id"), nullable=False)
    operator_name = Column(Text)
    unit_number = Column(Text)
    liters = Column(Numeric(12, 2), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    price_per_liter = Column(Numeric(12, 2))
    fuel_type = Column(Text, nullable=False)
    sale_number = Column(Text, nullable=False)
    payment_status = Column(Text, nullable=False, default=PaymentStatus.UNPAID.value)
    ticket_photo_ref = Column(Text)
    record_date = Column(DateTime(timezone=True), nullable=False)
    payment_date = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
