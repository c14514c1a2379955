import uuid
from unittest.mock import Mock

import pytest

from fuelbot.models import RegistrationRequest, Tenant
from fuelbot.services.notification_service import NotificationService, format_request_summary


@pytest.fixture
def request_row():
    return RegistrationRequest(
        id=uuid.uuid4(),
        company_name="Acme <Transportes>",
        contact_name="Ana",
        contact_phone=None,
        contact_email="ana@acme.mx",
        requester_id="555",
        requester_username="ana",
    )


@pytest.fixture
def transport():
    transport = Mock()
    transport.send_message.return_value = {"ok": True}
    return transport


class Scheduled:
    def __init__(self):
        self.calls = []

    def __call__(self, func, delay, name):
        self.calls.append((func, delay, name))


class TestFormatting:
    def test_summary_escapes_and_fills_blanks(self, request_row):
        text = format_request_summary(request_row)
        assert "Acme &lt;Transportes&gt;" in text
        assert "<b>Teléfono:</b> N/A" in text
        assert "@ana (555)" in text
        assert str(request_row.id) in text


class TestNotifyAdmins:
    def test_every_admin_gets_buttons(self, transport, request_row):
        service = NotificationService(transport, {"2", "1"})

        result = service.notify_admins(request_row)

        assert result.ok
        assert result.value == 2
        assert [c.args[0] for c in transport.send_message.call_args_list] == ["1", "2"]
        markup = transport.send_message.call_args.kwargs["reply_markup"]
        assert markup["inline_keyboard"][0][1]["callback_data"] == f"admin_reject_{request_row.id}"

    def test_no_admins(self, transport, request_row):
        result = NotificationService(transport, set()).notify_admins(request_row)

        assert not result.ok
        assert result.error_code == "no_admins"
        transport.send_message.assert_not_called()

    def test_partial_failure_still_counts(self, transport, request_row):
        transport.send_message.side_effect = [{"ok": False, "description": "blocked"}, {"ok": True}]

        result = NotificationService(transport, {"1", "2"}).notify_admins(request_row)

        assert result.ok
        assert result.value == 1

    def test_transport_exception_is_contained(self, transport, request_row):
        transport.send_message.side_effect = RuntimeError("boom")

        result = NotificationService(transport, {"1"}).notify_admins(request_row)

        assert not result.ok
        assert result.error_code == "all_failed"


class TestRequesterNotifications:
    def test_approval_defers_link_command(self, transport, request_row):
        schedule = Scheduled()
        service = NotificationService(transport, {"1"}, follow_up_delay=1.5)

        result = service.notify_approval(request_row, "ABC234", schedule=schedule)

        assert result.ok
        assert transport.send_message.call_count == 1
        assert "<code>ABC234</code>" in transport.send_message.call_args.args[1]
        func, delay, name = schedule.calls[0]
        assert (delay, name) == (1.5, "approval_link_command")

        func()
        assert transport.send_message.call_args.args == ("555", "<code>/vincular ABC234</code>")

    def test_approval_without_scheduler_sends_both(self, transport, request_row):
        NotificationService(transport, {"1"}).notify_approval(request_row, "ABC234")
        assert transport.send_message.call_count == 2

    def test_failed_approval_skips_follow_up(self, transport, request_row):
        transport.send_message.return_value = {"ok": False, "description": "chat not found"}
        schedule = Scheduled()

        result = NotificationService(transport, {"1"}).notify_approval(request_row, "ABC234", schedule=schedule)

        assert not result.ok
        assert schedule.calls == []

    def test_rejection_includes_reason(self, transport, request_row):
        result = NotificationService(transport, {"1"}).notify_rejection(request_row, "Datos incompletos")

        assert result.ok
        assert "Motivo: Datos incompletos" in transport.send_message.call_args.args[1]

    def test_announce_link(self, transport):
        tenant = Tenant(company_name="Acme", chat_id="-100123")
        schedule = Scheduled()

        NotificationService(transport, set()).announce_link(tenant, schedule=schedule)

        assert transport.send_message.call_args.args[0] == "-100123"
        assert schedule.calls[0][2] == "link_main_menu"
        schedule.calls[0][0]()
        assert transport.send_message.call_args.args[1] == "¿Qué deseas hacer?"
