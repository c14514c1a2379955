from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import OperationalError

from fuelbot.models import FuelRecord, FuelType, PaymentStatus
from fuelbot.schemas.session import FuelDraft
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services import fuel_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError

MEXICO = ZoneInfo("America/Mexico_City")
NOW = datetime(2025, 3, 15, 12, 0, tzinfo=MEXICO)


def complete_draft(unit, sale_number="4521", payment_status=PaymentStatus.UNPAID.value):
    return FuelDraft(
        unit_id=str(unit.id),
        operator_name=unit.operator_name,
        unit_number=unit.unit_number,
        liters=Decimal("12.5"),
        amount=Decimal("350.00"),
        fuel_type=FuelType.GAS.value,
        photo_step_done=True,
        sale_number=sale_number,
        payment_status=payment_status,
    )


class TestParsePositiveDecimal:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("12.5", Decimal("12.5")),
            ("1,5", Decimal("1.5")),
            ("$350.00", Decimal("350.00")),
            ("$1,350.00", Decimal("1350.00")),
            ("350 MXN", Decimal("350")),
            (".5", Decimal(".5")),
        ],
    )
    def test_accepts(self, text, expected):
        assert fuel_service.parse_positive_decimal(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "abc", "0", "-5", "1.234", "1,2,3", "12.5.1", None])
    def test_rejects(self, text):
        with pytest.raises(ValidationError):
            fuel_service.parse_positive_decimal(text)

    @pytest.mark.parametrize("text", ["123456789012345.50", "10000000000", "$10,000,000,000.00"])
    def test_rejects_values_wider_than_the_column(self, text):
        with pytest.raises(ValidationError) as exc_info:
            fuel_service.parse_positive_decimal(text, "monto")
        assert "demasiado grande" in exc_info.value.message

    def test_largest_storable_value(self):
        assert fuel_service.parse_positive_decimal("9999999999.99") == Decimal("9999999999.99")


class TestComputeAmount:
    def test_rounds_half_up_to_cents(self):
        assert fuel_service.compute_amount(Decimal("12.5"), Decimal("23.45")) == Decimal("293.13")

    def test_exact(self):
        assert fuel_service.compute_amount(Decimal("10"), Decimal("28")) == Decimal("280.00")

    def test_product_wider_than_the_column(self):
        with pytest.raises(ValidationError):
            fuel_service.compute_amount(Decimal("9999999"), Decimal("99999"))


class TestSaleNumber:
    @pytest.mark.parametrize("text", ["4521", "A1-2", "ABCDEF", " 12 "])
    def test_accepts(self, text):
        assert fuel_service.validate_sale_number(text) == text.strip()

    @pytest.mark.parametrize("text", ["TOOLONG1", "", "12 34", "#12", None])
    def test_rejects(self, text):
        with pytest.raises(ValidationError):
            fuel_service.validate_sale_number(text)


class TestCallbackTags:
    def test_fuel_types(self):
        assert fuel_service.fuel_type_from_callback("fuel_type_gas") == FuelType.GAS
        assert fuel_service.fuel_type_from_callback("fuel_type_diesel") == FuelType.DIESEL
        with pytest.raises(ValidationError):
            fuel_service.fuel_type_from_callback("fuel_type_kerosene")

    def test_payment_status(self):
        assert fuel_service.payment_status_from_callback("payment_status_pagada") == PaymentStatus.PAID
        assert fuel_service.payment_status_from_callback("payment_status_no_pagada") == PaymentStatus.UNPAID
        with pytest.raises(ValidationError):
            fuel_service.payment_status_from_callback("payment_status_quizas")


class TestDates:
    def test_relative_day_is_local_noon(self):
        day = fuel_service.relative_day(NOW, 1)
        assert day == datetime(2025, 3, 14, 12, 0, tzinfo=MEXICO)

    def test_relative_day_range(self):
        assert fuel_service.relative_day(NOW, 7).day == 8
        with pytest.raises(ValidationError):
            fuel_service.relative_day(NOW, 8)
        with pytest.raises(ValidationError):
            fuel_service.relative_day(NOW, 0)

    def test_window_accepts_thirty_days(self):
        candidate = NOW - timedelta(days=30)
        assert fuel_service.check_date_window(candidate, NOW) == candidate

    def test_window_rejects_thirty_one_days(self):
        with pytest.raises(ValidationError):
            fuel_service.check_date_window(NOW - timedelta(days=31), NOW)

    def test_window_rejects_future(self):
        with pytest.raises(ValidationError):
            fuel_service.check_date_window(NOW + timedelta(seconds=1), NOW)

    def test_window_accepts_now(self):
        assert fuel_service.check_date_window(NOW, NOW) == NOW

    def test_manual_date(self):
        assert fuel_service.parse_manual_date("10/03/2025", NOW) == datetime(2025, 3, 10, 12, 0, tzinfo=MEXICO)

    def test_manual_date_today_clamped_to_now(self):
        morning = datetime(2025, 3, 15, 9, 30, tzinfo=MEXICO)
        assert fuel_service.parse_manual_date("15/03/2025", morning) == morning

    def test_manual_date_oldest_day(self):
        assert fuel_service.parse_manual_date("13/02/2025", NOW).date().isoformat() == "2025-02-13"

    @pytest.mark.parametrize("text", ["16/03/2025", "12/02/2025", "31/02/2025", "2025-03-10", "10-03-2025", ""])
    def test_manual_date_rejects(self, text):
        with pytest.raises(ValidationError):
            fuel_service.parse_manual_date(text, NOW)


class TestUnits:
    def test_register_and_list(self, db, linked_tenant):
        unit = fuel_service.register_unit(db, linked_tenant, TenantSettingsView(), "U-02", "María López")
        assert unit.label == "María López - U-02"
        assert [u.unit_number for u in fuel_service.list_units(db, linked_tenant.id)] == ["U-02"]

    def test_duplicate_unit(self, db, linked_tenant, unit):
        with pytest.raises(ConflictError):
            fuel_service.register_unit(db, linked_tenant, TenantSettingsView(), unit.unit_number, "Otro")

    def test_unit_limit(self, db, linked_tenant, unit):
        with pytest.raises(ValidationError):
            fuel_service.register_unit(db, linked_tenant, TenantSettingsView(unit_limit=1), "U-09", "Otro")

    def test_invalid_operator(self, db, linked_tenant):
        with pytest.raises(ValidationError):
            fuel_service.register_unit(db, linked_tenant, TenantSettingsView(), "U-03", "X")

    def test_get_unit_scoped_to_tenant(self, db, linked_tenant, unit):
        assert fuel_service.get_unit(db, linked_tenant.id, str(unit.id)).id == unit.id
        with pytest.raises(NotFoundError):
            fuel_service.get_unit(db, linked_tenant.id, "not-a-uuid")

    def test_deactivate_unit(self, db, linked_tenant, unit):
        fuel_service.deactivate_unit(db, linked_tenant.id, str(unit.id))

        assert fuel_service.list_units(db, linked_tenant.id) == []
        with pytest.raises(NotFoundError):
            fuel_service.get_unit(db, linked_tenant.id, str(unit.id))
        with pytest.raises(NotFoundError):
            fuel_service.deactivate_unit(db, linked_tenant.id, str(unit.id))

    def test_deactivated_unit_number_can_be_registered_again(self, db, linked_tenant, unit):
        fuel_service.deactivate_unit(db, linked_tenant.id, str(unit.id))

        again = fuel_service.register_unit(db, linked_tenant, TenantSettingsView(), unit.unit_number, "Rosa")

        assert again.id == unit.id
        assert again.is_active
        assert again.operator_name == "Rosa"

    def test_read_failure_is_transient(self, linked_tenant):
        db = Mock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))

        with pytest.raises(TransientError):
            fuel_service.list_units(db, linked_tenant.id)
        with pytest.raises(TransientError):
            fuel_service.get_unit(db, linked_tenant.id, "8c4f2b1e-59a4-4a39-9a7e-2d0c5b1f6a11")
        assert db.rollback.call_count == 2


class TestRecords:
    def test_save_record(self, db, linked_tenant, unit):
        record = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)

        stored = db.get(FuelRecord, record.id)
        assert stored.liters == Decimal("12.50")
        assert stored.amount == Decimal("350.00")
        assert stored.fuel_type == "GAS"
        assert stored.sale_number == "4521"
        assert stored.payment_status == "NO_PAGADA"
        assert stored.payment_date is None
        assert stored.ticket_photo_ref is None

    def test_paid_record_has_payment_date(self, db, linked_tenant, unit):
        record = fuel_service.save_record(
            db, linked_tenant.id, complete_draft(unit, payment_status=PaymentStatus.PAID.value), NOW
        )
        assert record.payment_date is not None

    def test_duplicate_sale_number(self, db, linked_tenant, unit):
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)
        with pytest.raises(ConflictError) as exc_info:
            fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)
        assert exc_info.value.code == "duplicate_sale_number"
        assert db.query(FuelRecord).count() == 1

    def test_incomplete_draft(self, db, linked_tenant, unit):
        draft = complete_draft(unit).model_copy(update={"amount": None})
        with pytest.raises(ValidationError):
            fuel_service.save_record(db, linked_tenant.id, draft, NOW)
        assert db.query(FuelRecord).count() == 0

    def test_update_record_date(self, db, linked_tenant, unit):
        record = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)
        corrected = fuel_service.relative_day(NOW, 2)

        fuel_service.update_record_date(db, linked_tenant.id, str(record.id), corrected)

        db.expire_all()
        assert db.get(FuelRecord, record.id).record_date.date().isoformat() == "2025-03-13"

    def test_mark_paid(self, db, linked_tenant, unit):
        record = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)
        found = fuel_service.find_by_sale_number(db, linked_tenant.id, "4521")

        fuel_service.mark_paid(db, linked_tenant.id, found.id, NOW)

        db.expire_all()
        stored = db.get(FuelRecord, record.id)
        assert stored.payment_status == PaymentStatus.PAID.value
        assert stored.payment_date is not None
        with pytest.raises(ConflictError):
            fuel_service.mark_paid(db, linked_tenant.id, found.id, NOW)

    def test_find_missing_note(self, db, linked_tenant):
        with pytest.raises(NotFoundError):
            fuel_service.find_by_sale_number(db, linked_tenant.id, "9999")

    def test_reads_raise_transient_on_driver_errors(self, linked_tenant):
        db = Mock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        record_id = "8c4f2b1e-59a4-4a39-9a7e-2d0c5b1f6a11"

        with pytest.raises(TransientError):
            fuel_service.find_by_sale_number(db, linked_tenant.id, "4521")
        with pytest.raises(TransientError):
            fuel_service.get_record(db, linked_tenant.id, record_id)
        with pytest.raises(TransientError):
            fuel_service.mark_paid(db, linked_tenant.id, record_id, NOW)
        with pytest.raises(TransientError):
            fuel_service.search_records(db, linked_tenant.id, "45")

    def test_search_records(self, db, linked_tenant, unit):
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="4521"), NOW)
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="7450"), NOW)
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="A-1"), NOW)

        found = fuel_service.search_records(db, linked_tenant.id, "45")

        assert sorted(r.sale_number for r in found) == ["4521", "7450"]

    def test_deactivate_record_frees_sale_number(self, db, linked_tenant, unit):
        record = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)

        fuel_service.deactivate_record(db, linked_tenant.id, str(record.id))

        db.expire_all()
        assert db.get(FuelRecord, record.id).is_active is False
        assert fuel_service.search_records(db, linked_tenant.id, "4521") == []
        with pytest.raises(NotFoundError):
            fuel_service.find_by_sale_number(db, linked_tenant.id, "4521")
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)

    def test_deactivate_record_twice(self, db, linked_tenant, unit):
        record = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit), NOW)
        fuel_service.deactivate_record(db, linked_tenant.id, str(record.id))

        with pytest.raises(ConflictError) as exc_info:
            fuel_service.deactivate_record(db, linked_tenant.id, str(record.id))
        assert exc_info.value.code == "already_inactive"


class TestUnpaidBalance:
    def test_sums_active_unpaid_notes(self, db, linked_tenant, unit):
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="1"), NOW)
        fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="2"), NOW)
        fuel_service.save_record(
            db, linked_tenant.id, complete_draft(unit, sale_number="3", payment_status=PaymentStatus.PAID.value), NOW
        )
        dropped = fuel_service.save_record(db, linked_tenant.id, complete_draft(unit, sale_number="4"), NOW)
        fuel_service.deactivate_record(db, linked_tenant.id, str(dropped.id))

        total, count = fuel_service.unpaid_balance(db, linked_tenant.id)

        assert total == Decimal("700.00")
        assert count == 2

    def test_empty(self, db, linked_tenant):
        assert fuel_service.unpaid_balance(db, linked_tenant.id) == (Decimal("0.00"), 0)

    def test_failure_is_transient(self, linked_tenant):
        db = Mock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with pytest.raises(TransientError):
            fuel_service.unpaid_balance(db, linked_tenant.id)
