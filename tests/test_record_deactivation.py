from unittest.mock import Mock, patch

import pytest

from fuelbot.models import FuelRecord, FuelType, PaymentStatus
from fuelbot.pipeline.stages import SENSITIVE_DENIED_MESSAGE
from fuelbot.schemas.session import FuelDraft
from fuelbot.services import fuel_service
from fuelbot.services.errors import TransientError
from fuelbot.services.session_store import key_for
from fuelbot.workflows import record_deactivation

from conftest import FIXED_NOW, GROUP_ID, USER_ID, callback_update, failing_queries, last_text, text_update


@pytest.fixture
def record(db, linked_tenant, unit):
    draft = FuelDraft(
        unit_id=str(unit.id),
        operator_name=unit.operator_name,
        unit_number=unit.unit_number,
        liters="40",
        amount="980.00",
        fuel_type=FuelType.DIESEL.value,
        photo_step_done=True,
        sale_number="A-77",
        payment_status=PaymentStatus.UNPAID.value,
    )
    return fuel_service.save_record(db, linked_tenant.id, draft, FIXED_NOW)


def session(services):
    return services.session_store.load(key_for(GROUP_ID, USER_ID))


def reach_confirm(dispatcher, db, record):
    dispatcher.dispatch(text_update("/desactivar"), db)
    dispatcher.dispatch(text_update("A-77"), db)
    dispatcher.dispatch(callback_update(f"deactivate_fuel_{record.id}"), db)


def is_active(db, record):
    db.expire_all()
    return db.get(FuelRecord, record.id).is_active


class TestRecordDeactivation:
    def test_search_pick_and_confirm(self, dispatcher, services, transport, db, record):
        transport.get_chat_member.return_value = Mock(status="administrator")

        dispatcher.dispatch(text_update("/desactivar"), db)
        assert session(services).state == record_deactivation.SEARCH

        dispatcher.dispatch(text_update("A-77"), db)
        assert "Se encontraron 1 registro(s)" in last_text(transport)
        assert session(services).state == record_deactivation.SEARCH

        dispatcher.dispatch(callback_update(f"deactivate_fuel_{record.id}"), db)
        warning = last_text(transport)
        assert "Desactivar registro" in warning
        assert "$980.00 MXN" in warning
        assert "No pagada" in warning
        current = session(services)
        assert current.state == record_deactivation.CONFIRM
        assert current.data.record_id == str(record.id)

        dispatcher.dispatch(callback_update(f"confirm_deactivate_{record.id}"), db)

        assert not is_active(db, record)
        assert session(services).is_idle
        assert "Registro <b>A-77</b> desactivado" in transport.edit_message.call_args.args[2]
        transport.get_chat_member.assert_called_once()

    def test_started_from_menu_button(self, dispatcher, services, db, record):
        dispatcher.dispatch(callback_update("search_fuel_records"), db)
        assert session(services).state == record_deactivation.SEARCH

    def test_member_cannot_confirm(self, dispatcher, services, transport, db, record):
        reach_confirm(dispatcher, db, record)

        dispatcher.dispatch(callback_update(f"confirm_deactivate_{record.id}"), db)

        assert is_active(db, record)
        assert transport.answer_callback_query.call_args.kwargs["text"] == SENSITIVE_DENIED_MESSAGE
        assert session(services).state == record_deactivation.CONFIRM

    def test_cancel_at_confirmation(self, dispatcher, services, transport, db, record):
        reach_confirm(dispatcher, db, record)

        dispatcher.dispatch(callback_update(f"cancel_deactivate_{record.id}"), db)

        assert is_active(db, record)
        assert session(services).is_idle
        assert "NO ha sido desactivado" in transport.edit_message.call_args.args[2]

    def test_cancel_search(self, dispatcher, services, transport, db, record):
        dispatcher.dispatch(text_update("/desactivar"), db)
        dispatcher.dispatch(callback_update("cancel_deactivate_search"), db)

        assert session(services).is_idle
        assert "Búsqueda cancelada" in transport.edit_message.call_args.args[2]

    def test_text_at_confirmation_asks_for_buttons(self, dispatcher, services, transport, db, record):
        reach_confirm(dispatcher, db, record)

        dispatcher.dispatch(text_update("sí"), db)

        assert session(services).state == record_deactivation.CONFIRM
        assert last_text(transport) == record_deactivation.USE_BUTTONS_MESSAGE
        assert is_active(db, record)

    def test_no_results(self, dispatcher, services, transport, db, record):
        dispatcher.dispatch(text_update("/desactivar"), db)
        dispatcher.dispatch(text_update("Z-1"), db)

        assert session(services).state == record_deactivation.SEARCH
        assert "No se encontraron registros" in last_text(transport)

    def test_already_deactivated_meanwhile(self, dispatcher, services, transport, db, record, linked_tenant):
        transport.get_chat_member.return_value = Mock(status="creator")
        reach_confirm(dispatcher, db, record)
        fuel_service.deactivate_record(db, linked_tenant.id, record.id)

        dispatcher.dispatch(callback_update(f"confirm_deactivate_{record.id}"), db)

        assert session(services).is_idle
        assert transport.edit_message.call_args.args[2].startswith("⚠️")

    def test_storage_blip_during_search_keeps_flow(self, dispatcher, services, transport, db, record):
        dispatcher.dispatch(text_update("/desactivar"), db)
        with failing_queries(db, FuelRecord):
            dispatcher.dispatch(text_update("A-77"), db)

        assert session(services).state == record_deactivation.SEARCH
        assert "No se pudo buscar el registro" in last_text(transport)

        dispatcher.dispatch(text_update("A-77"), db)
        assert "Se encontraron 1 registro(s)" in last_text(transport)

    def test_storage_blip_while_deactivating_keeps_confirm(self, dispatcher, services, transport, db, record):
        transport.get_chat_member.return_value = Mock(status="administrator")
        reach_confirm(dispatcher, db, record)

        with patch.object(record_deactivation.fuel_service, "deactivate_record", side_effect=TransientError("db down")):
            dispatcher.dispatch(callback_update(f"confirm_deactivate_{record.id}"), db)

        assert session(services).state == record_deactivation.CONFIRM
        assert "Intenta de nuevo" in last_text(transport)
        assert is_active(db, record)
