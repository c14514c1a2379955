from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from fuelbot.models import Tenant, TenantSettings
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services import tenant_service
from fuelbot.services.errors import NotFoundError, TransientError, ValidationError

from conftest import GROUP_ID


class TestPlaceholders:
    def test_placeholder_shape(self):
        chat_id = tenant_service.make_placeholder_chat_id()
        assert chat_id.startswith("pending_")
        assert tenant_service.is_placeholder_chat_id(chat_id)

    def test_real_chat_is_not_placeholder(self):
        assert not tenant_service.is_placeholder_chat_id("-100123")


class TestResolve:
    def test_resolves_linked_group(self, db, linked_tenant):
        assert tenant_service.resolve(db, GROUP_ID).id == linked_tenant.id

    def test_unknown_chat(self, db):
        with pytest.raises(NotFoundError):
            tenant_service.resolve(db, -999)

    def test_placeholder_never_resolves(self, db):
        tenant = Tenant(company_name="Pendiente", chat_id="pending_abc", is_approved=True)
        db.add(tenant)
        db.commit()
        with pytest.raises(NotFoundError):
            tenant_service.resolve(db, "pending_abc")

    def test_storage_failure_is_transient(self):
        db = Mock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with pytest.raises(TransientError):
            tenant_service.resolve(db, GROUP_ID)

    def test_find_active_tenant_ignores_inactive(self, db, linked_tenant):
        linked_tenant.is_active = False
        db.commit()
        assert tenant_service.find_active_tenant(db, GROUP_ID) is None

    def test_find_active_tenant(self, db, linked_tenant):
        assert tenant_service.find_active_tenant(db, GROUP_ID).id == linked_tenant.id


class TestSettings:
    def test_created_lazily_with_defaults(self, db, linked_tenant):
        assert db.get(TenantSettings, linked_tenant.id) is None

        view = tenant_service.get_or_create_settings(db, linked_tenant)

        assert view == TenantSettingsView()
        assert db.get(TenantSettings, linked_tenant.id) is not None

    def test_stored_values_are_merged(self, db, linked_tenant):
        db.add(TenantSettings(tenant_id=linked_tenant.id, unit_limit=3, features={"export_data": False}, notifications={}))
        db.commit()

        view = tenant_service.get_or_create_settings(db, linked_tenant)

        assert view.unit_limit == 3
        assert view.has_feature("export_data") is False
        assert view.has_feature("fuel_tracking") is True

    def test_update_feature(self, db, linked_tenant):
        view = tenant_service.update_feature(db, linked_tenant, "fuel_tracking", False)
        assert view.has_feature("fuel_tracking") is False

        db.expire_all()
        assert tenant_service.get_or_create_settings(db, linked_tenant).has_feature("fuel_tracking") is False

    def test_update_unknown_feature(self, db, linked_tenant):
        with pytest.raises(ValidationError):
            tenant_service.update_feature(db, linked_tenant, "teleport", True)


class TestTenantTime:
    def test_tenant_now_uses_timezone(self):
        clock = lambda: datetime(2025, 3, 15, 18, 0, tzinfo=timezone.utc)  # noqa: E731
        now = tenant_service.tenant_now(TenantSettingsView(), clock)
        assert now.hour == 12
        assert now.date().isoformat() == "2025-03-15"

    def test_unknown_timezone_falls_back_to_utc(self):
        view = TenantSettingsView(timezone="Mars/Olympus")
        assert str(tenant_service.tenant_zone(view)) == "UTC"
