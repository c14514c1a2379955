from fuelbot.models.chat_session import ChatSessionRow
from fuelbot.models.fuel_record import FuelRecord, FuelType, PaymentStatus
from fuelbot.models.registration_request import RegistrationRequest, RequestStatus
from fuelbot.models.tenant import PLACEHOLDER_PREFIX, Tenant
from fuelbot.models.tenant_settings import TenantSettings
from fuelbot.models.unit import Unit

__all__ = [
    "Tenant",
    "TenantSettings",
    "RegistrationRequest",
    "RequestStatus",
    "Unit",
    "FuelRecord",
    "FuelType",
    "PaymentStatus",
    "ChatSessionRow",
    "PLACEHOLDER_PREFIX",
]
