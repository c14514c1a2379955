from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_FEATURES: dict[str, bool] = {
    "fuel_tracking": True,
    "report_generation": True,
    "notifications": True,
    "multiple_operators": True,
    "export_data": True,
}

DEFAULT_NOTIFICATIONS: dict[str, bool] = {
    "low_fuel": True,
    "daily_summary": False,
    "weekly_report": True,
    "unusual_consumption": True,
}

DEFAULT_CURRENCY = "MXN"
DEFAULT_TIMEZONE = "America/Mexico_City"
DEFAULT_UNIT_LIMIT = 10


class TenantSettingsView(BaseModel):
    """Fully populated, validated tenant settings."""

    currency: str = DEFAULT_CURRENCY
    timezone: str = DEFAULT_TIMEZONE
    unit_limit: int = DEFAULT_UNIT_LIMIT
    features: dict[str, bool] = Field(default_factory=lambda: dict(DEFAULT_FEATURES))
    notifications: dict[str, bool] = Field(default_factory=lambda: dict(DEFAULT_NOTIFICATIONS))

    def has_feature(self, feature: str) -> bool:
        return bool(self.features.get(feature, False))


def _merge_flags(defaults: dict[str, bool], raw: Any) -> dict[str, bool]:
    merged = dict(defaults)
    if not isinstance(raw, dict):
        return merged
    for key, value in raw.items():
        if key in defaults and isinstance(value, bool):
            merged[key] = value
    return merged


def _non_empty_str(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def merge_settings(raw: Optional[dict]) -> TenantSettingsView:
    """Merge a stored settings mapping onto the defaults, field by field.

    Unknown keys, wrong types and non-boolean flag values are ignored so a
    corrupted row can never disable features by accident.
    """
    if not isinstance(raw, dict):
        return TenantSettingsView()

    unit_limit = raw.get("unit_limit")
    if isinstance(unit_limit, bool) or not isinstance(unit_limit, int) or unit_limit <= 0:
        unit_limit = DEFAULT_UNIT_LIMIT

    return TenantSettingsView(
        currency=_non_empty_str(raw.get("currency"), DEFAULT_CURRENCY),
        timezone=_non_empty_str(raw.get("timezone"), DEFAULT_TIMEZONE),
        unit_limit=unit_limit,
        features=_merge_flags(DEFAULT_FEATURES, raw.get("features")),
        notifications=_merge_flags(DEFAULT_NOTIFICATIONS, raw.get("notifications")),
    )
