import uuid
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuelbot.logging_config import get_logger
from fuelbot.models import PLACEHOLDER_PREFIX, Tenant, TenantSettings
from fuelbot.schemas.settings import (
    DEFAULT_FEATURES,
    DEFAULT_NOTIFICATIONS,
    TenantSettingsView,
    merge_settings,
)
from fuelbot.services.errors import NotFoundError, TransientError, ValidationError

logger = get_logger("tenant_service")


def make_placeholder_chat_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4()}"


def is_placeholder_chat_id(chat_id: Optional[str]) -> bool:
    return not chat_id or chat_id.startswith(PLACEHOLDER_PREFIX)


def resolve(db: Session, chat_id) -> Tenant:
    """Find the tenant linked to chat_id.

    Raises NotFoundError for an unknown chat and TransientError when the
    lookup itself fails. Activation and approval are left to the caller.
    """
    chat_key = str(chat_id)
    if is_placeholder_chat_id(chat_key):
        raise NotFoundError("Placeholder chat ids are never resolvable")
    try:
        tenant = db.query(Tenant).filter(Tenant.chat_id == chat_key).first()
    except SQLAlchemyError as e:
        raise TransientError(f"Tenant lookup failed: {e}") from e
    if tenant is None:
        raise NotFoundError(f"No tenant for chat {chat_key}")
    return tenant


def find_active_tenant(db: Session, chat_id) -> Optional[Tenant]:
    """Tenant linked to chat_id if it is active and approved, else None."""
    try:
        tenant = resolve(db, chat_id)
    except NotFoundError:
        return None
    if tenant.is_active and tenant.is_approved:
        return tenant
    return None


def _settings_to_raw(row: TenantSettings) -> dict:
    return {
        "currency": row.currency,
        "timezone": row.timezone,
        "unit_limit": row.unit_limit,
        "features": row.features,
        "notifications": row.notifications,
    }


def get_or_create_settings(db: Session, tenant: Tenant) -> TenantSettingsView:
    """Load the tenant's settings, creating the row with defaults on first access."""
    row = db.get(TenantSettings, tenant.id)
    if row is None:
        row = TenantSettings(
            tenant_id=tenant.id,
            features=dict(DEFAULT_FEATURES),
            notifications=dict(DEFAULT_NOTIFICATIONS),
        )
        db.add(row)
        db.commit()
        logger.info("Created default tenant settings", extra={"context": {"tenant_id": str(tenant.id)}})
    return merge_settings(_settings_to_raw(row))


def update_feature(db: Session, tenant: Tenant, feature: str, enabled: bool) -> TenantSettingsView:
    if feature not in DEFAULT_FEATURES:
        raise ValidationError(f"Unknown feature {feature}")
    try:
        get_or_create_settings(db, tenant)
        row = db.get(TenantSettings, tenant.id)
        features = merge_settings(_settings_to_raw(row)).features
        features[feature] = enabled
        # reassign so the JSON column is flagged dirty
        row.features = features
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not update settings: {e}") from e
    logger.info(
        "Tenant feature updated",
        extra={"context": {"tenant_id": str(tenant.id), "feature": feature, "enabled": enabled}},
    )
    return merge_settings(_settings_to_raw(row))


def tenant_zone(settings: TenantSettingsView) -> ZoneInfo:
    try:
        return ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown tenant timezone, using UTC", extra={"context": {"timezone": settings.timezone}})
        return ZoneInfo("UTC")


def tenant_now(settings: TenantSettingsView, clock: Optional[Callable[[], datetime]] = None) -> datetime:
    """Current time in the tenant's timezone."""
    now = clock() if clock else datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tenant_zone(settings))
