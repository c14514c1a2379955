"""Best-effort notifications to admins and requesters.

Nothing here raises: each send is logged and reported as a Result so a
failed notification never rolls back the operation that triggered it.
"""

from html import escape
from typing import Callable, Iterable, Optional

from fuelbot.logging_config import get_logger
from fuelbot.models import RegistrationRequest, Tenant
from fuelbot.services.result import Result
from fuelbot.services.telegram_service import build_main_menu, build_registration_review_buttons

logger = get_logger("notification_service")

FOLLOW_UP_DELAY_SECONDS = 1.0

# schedule(callable, delay_seconds, name)
Scheduler = Callable[[Callable[[], object], float, str], None]


def format_request_summary(request: RegistrationRequest) -> str:
    username = f"@{escape(request.requester_username)}" if request.requester_username else "sin usuario"
    return (
        "📋 <b>Nueva solicitud de registro</b>\n\n"
        f"<b>ID:</b> <code>{request.id}</code>\n"
        f"<b>Empresa:</b> {escape(request.company_name or '')}\n"
        f"<b>Contacto:</b> {escape(request.contact_name or '')}\n"
        f"<b>Teléfono:</b> {escape(request.contact_phone or 'N/A')}\n"
        f"<b>Email:</b> {escape(request.contact_email or 'N/A')}\n"
        f"<b>Solicitante:</b> {username} ({escape(str(request.requester_id))})"
    )


class NotificationService:
    def __init__(self, transport, admin_ids: Iterable[str], follow_up_delay: float = FOLLOW_UP_DELAY_SECONDS):
        self.transport = transport
        self.admin_ids = sorted(admin_ids)
        self.follow_up_delay = follow_up_delay

    def _send(self, chat_id, text: str, reply_markup: Optional[dict] = None) -> Result[dict]:
        try:
            response = self.transport.send_message(chat_id, text, reply_markup=reply_markup)
        except Exception as e:
            logger.error("Notification send raised", extra={"context": {"chat_id": str(chat_id), "error": str(e)}})
            return Result.failure(str(e), "send_error")
        if not response or not response.get("ok"):
            return Result.failure(str((response or {}).get("error") or (response or {}).get("description")), "send_failed")
        return Result.success(response)

    def notify_admins(self, request: RegistrationRequest) -> Result[int]:
        """Send the request to every bot admin with approve/reject buttons."""
        if not self.admin_ids:
            logger.warning("No bot admins configured, request not announced", extra={"context": {"request_id": str(request.id)}})
            return Result.failure("No admins configured", "no_admins")

        text = format_request_summary(request)
        buttons = build_registration_review_buttons(request.id)
        delivered = 0
        for admin_id in self.admin_ids:
            result = self._send(admin_id, text, buttons)
            if result.ok:
                delivered += 1
            else:
                logger.warning(
                    "Admin notification failed",
                    extra={"context": {"admin_id": admin_id, "request_id": str(request.id), "error": result.error}},
                )
        if delivered == 0:
            return Result.failure("No admin could be notified", "all_failed")
        return Result.success(delivered)

    def notify_approval(self, request: RegistrationRequest, token: str, schedule: Optional[Scheduler] = None) -> Result[dict]:
        """Tell the requester their token; the bare /vincular line follows as a second message."""
        text = (
            "🎉 <b>¡Tu solicitud fue aprobada!</b>\n\n"
            f"Empresa: <b>{escape(request.company_name or '')}</b>\n"
            f"Tu código de activación es: <code>{token}</code>\n\n"
            "Para activar el bot:\n"
            "1. Agrega este bot a tu grupo de Telegram.\n"
            "2. Envía en el grupo el siguiente comando (te lo mandamos en un mensaje aparte para copiarlo fácil).\n\n"
            "⚠️ El código solo puede usarse una vez."
        )
        requester_id = request.requester_id
        request_key = str(request.id)
        result = self._send(requester_id, text)
        if not result.ok:
            logger.warning(
                "Approval notification failed",
                extra={"context": {"request_id": str(request.id), "error": result.error}},
            )
            return result

        def send_link_command():
            follow_up = self._send(requester_id, f"<code>/vincular {token}</code>")
            if not follow_up.ok:
                logger.warning(
                    "Link command follow-up failed",
                    extra={"context": {"request_id": request_key, "error": follow_up.error}},
                )
            return follow_up

        if schedule is not None:
            schedule(send_link_command, self.follow_up_delay, "approval_link_command")
        else:
            send_link_command()
        return result

    def notify_rejection(self, request: RegistrationRequest, reason: Optional[str]) -> Result[dict]:
        text = (
            "❌ <b>Tu solicitud de registro fue rechazada</b>\n\n"
            f"Empresa: <b>{escape(request.company_name or '')}</b>\n"
            f"Motivo: {escape(reason or request.admin_notes or 'No especificado')}\n\n"
            "Si crees que es un error puedes enviar una nueva solicitud con /registrar_empresa."
        )
        result = self._send(request.requester_id, text)
        if not result.ok:
            logger.warning(
                "Rejection notification failed",
                extra={"context": {"request_id": str(request.id), "error": result.error}},
            )
        return result

    def announce_link(self, tenant: Tenant, schedule: Optional[Scheduler] = None) -> Result[dict]:
        """Confirm linking in the group, then offer the main menu."""
        text = (
            "✅ <b>Grupo vinculado correctamente</b>\n\n"
            f"Este grupo ahora pertenece a <b>{escape(tenant.company_name or '')}</b>.\n"
            "Registra unidades con /unidad y cargas con /carga."
        )
        chat_id = tenant.chat_id
        result = self._send(chat_id, text)

        def send_menu():
            return self._send(chat_id, "¿Qué deseas hacer?", build_main_menu())

        if schedule is not None:
            schedule(send_menu, self.follow_up_delay, "link_main_menu")
        else:
            send_menu()
        return result
