"""Role and feature gating rules used by the access-control pipeline stages."""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Protocol

from fuelbot.config import BotConfig
from fuelbot.logging_config import get_logger
from fuelbot.models import Tenant
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services.errors import TransientError
from fuelbot.services.telegram_service import ADMIN_MEMBER_STATUSES

logger = get_logger("access_control")

ADMIN_COMMAND_PREFIXES = ("/debug_", "/admin_", "/solicitudes", "/aprobar", "/rechazar")

TENANT_ADMIN_COMMANDS = frozenset({"/configurar", "/eliminar", "/reset", "/bloquear", "/desbloquear"})

# command or callback tag -> feature flag that must be on
FEATURE_GATES = {
    "/carga": "fuel_tracking",
    "/pagar": "fuel_tracking",
    "/unidad": "fuel_tracking",
    "/saldo": "fuel_tracking",
    "/desactivar": "fuel_tracking",
    "/desactivar_unidad": "fuel_tracking",
    "register_fuel_start": "fuel_tracking",
    "search_note_for_payment": "fuel_tracking",
    "check_balance": "fuel_tracking",
    "search_fuel_records": "fuel_tracking",
    "deactivate_unit_menu": "fuel_tracking",
    "/reporte": "report_generation",
    "/exportar": "export_data",
    "/operadores": "multiple_operators",
    "/notificar": "notifications",
}

# callback tags that carry an id after the prefix
FEATURE_GATE_PREFIXES = {
    "fuel_entry_unit_": "fuel_tracking",
    "deactivate_fuel_": "fuel_tracking",
    "confirm_deactivate_": "fuel_tracking",
    "deactivate_unit_": "fuel_tracking",
    "confirm_unit_deactivate_": "fuel_tracking",
}

SENSITIVE_ACTIONS = (
    "admin_approve",
    "admin_reject",
    "mark_note_as_paid",
    "confirm_deactivate",
    "confirm_unit_deactivate",
)

_membership_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="membership")


def is_admin_command(command: Optional[str]) -> bool:
    return bool(command) and command.startswith(ADMIN_COMMAND_PREFIXES)


def is_sensitive_action(callback_data: Optional[str]) -> bool:
    if not callback_data:
        return False
    return any(callback_data == action or callback_data.startswith(f"{action}_") for action in SENSITIVE_ACTIONS)


def required_feature(action: Optional[str]) -> Optional[str]:
    if not action:
        return None
    if action in FEATURE_GATES:
        return FEATURE_GATES[action]
    for prefix, feature in FEATURE_GATE_PREFIXES.items():
        if action.startswith(prefix):
            return feature
    return None


def is_feature_enabled(settings: Optional[TenantSettingsView], feature: str) -> bool:
    if settings is None:
        return True
    return settings.has_feature(feature)


class TenantAdminDirectory(Protocol):
    def list_tenant_admins(self, tenant: Tenant) -> set[str]:
        """User ids allowed to run tenant-admin commands for this tenant."""


class GroupAdministratorsDirectory:
    """Tenant admins are the administrators of the tenant's linked group."""

    def __init__(self, transport, timeout: float = 5.0):
        self.transport = transport
        self.timeout = timeout

    def list_tenant_admins(self, tenant: Tenant) -> set[str]:
        if not tenant.is_linked:
            return set()
        members = self.transport.get_chat_administrators(tenant.chat_id, timeout=self.timeout)
        return {str(member.user.id) for member in members if member.user and member.status in ADMIN_MEMBER_STATUSES}


class StaticTenantAdminDirectory:
    """Fixed mapping of tenant id -> admin user ids."""

    def __init__(self, admins: Optional[dict] = None):
        self.admins = {str(k): {str(u) for u in v} for k, v in (admins or {}).items()}

    def list_tenant_admins(self, tenant: Tenant) -> set[str]:
        return set(self.admins.get(str(tenant.id), set()))


def is_tenant_admin(directory: TenantAdminDirectory, config: BotConfig, tenant: Tenant, user_id) -> bool:
    """Bot operators always count as tenant admins. Lookup failures propagate."""
    if config.is_admin(user_id):
        return True
    return str(user_id) in directory.list_tenant_admins(tenant)


def check_group_admin(transport, chat_id, user_id, timeout: float) -> bool:
    """Ask the transport whether user_id is creator/administrator of chat_id.

    Bounded by ``timeout`` seconds regardless of how the transport behaves;
    a timeout or transport failure raises TransientError.
    """
    future = _membership_executor.submit(transport.get_chat_member, chat_id, user_id, timeout)
    try:
        member = future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        raise TransientError("Membership lookup timed out") from e
    except TransientError:
        raise
    except Exception as e:
        raise TransientError(f"Membership lookup failed: {e}") from e
    return member.status in ADMIN_MEMBER_STATUSES
