import re
from html import escape
from typing import Optional

from fuelbot.logging_config import get_logger
from fuelbot.schemas.session import OnboardingDraft, WorkflowKind
from fuelbot.services import registration_service
from fuelbot.services.errors import TransientError, ValidationError
from fuelbot.services.telegram_service import build_keyboard
from fuelbot.workflows.base import (
    Answer,
    Edit,
    Reply,
    Transition,
    Workflow,
    cancel,
    classify_answer,
    finish,
    go,
    stay,
)

logger = get_logger("onboarding")

COMPANY_NAME = "register_company_name"
CONTACT_NAME = "register_company_contact"
PHONE = "register_company_phone"
EMAIL = "register_company_email"
CONFIRM = "register_company_confirm"

CONFIRM_CALLBACK = "confirm_registration"
CANCEL_CALLBACK = "cancel_registration"

NOT_AVAILABLE = "N/A"
PHONE_PATTERN = re.compile(r"^[0-9+()\-\s]{7,20}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CANCEL_KEYBOARD = build_keyboard([[("❌ Cancelar", CANCEL_CALLBACK)]])
CONFIRM_KEYBOARD = build_keyboard(
    [[("✅ Confirmar", CONFIRM_CALLBACK), ("❌ Cancelar", CANCEL_CALLBACK)]]
)


def _bounded_text(text: Optional[str], label: str, minimum: int = 2, maximum: int = 100) -> str:
    value = " ".join((text or "").split())
    if len(value) < minimum or len(value) > maximum:
        raise ValidationError(f"{label} debe tener entre {minimum} y {maximum} caracteres.")
    return value


def validate_company_name(text: Optional[str]) -> str:
    return _bounded_text(text, "El nombre de la empresa")


def validate_contact_name(text: Optional[str]) -> str:
    return _bounded_text(text, "El nombre del contacto")


def _is_not_available(text: str) -> bool:
    return text.strip().upper().replace("/", "") == "NA"


def validate_phone(text: Optional[str]) -> Optional[str]:
    value = (text or "").strip()
    if _is_not_available(value):
        return None
    digits = sum(ch.isdigit() for ch in value)
    if not PHONE_PATTERN.match(value) or digits < 7:
        raise ValidationError("Teléfono inválido. Escribe solo números (ejemplo: +52 55 1234 5678) o N/A.")
    return value


def validate_email(text: Optional[str]) -> Optional[str]:
    value = (text or "").strip()
    if _is_not_available(value):
        return None
    if len(value) > 254 or not EMAIL_PATTERN.match(value):
        raise ValidationError("Email inválido. Escribe un correo como nombre@empresa.com o N/A.")
    return value.lower()


def format_summary(draft: OnboardingDraft) -> str:
    return (
        "📋 <b>Confirma los datos de tu empresa</b>\n\n"
        f"<b>Empresa:</b> {escape(draft.company_name or '')}\n"
        f"<b>Contacto:</b> {escape(draft.contact_name or '')}\n"
        f"<b>Teléfono:</b> {escape(draft.contact_phone or NOT_AVAILABLE)}\n"
        f"<b>Email:</b> {escape(draft.contact_email or NOT_AVAILABLE)}\n\n"
        "¿Los datos son correctos? Responde <b>sí</b> o <b>no</b>, o usa los botones."
    )


class OnboardingWorkflow(Workflow):
    prefix = "register_company_"
    kind = WorkflowKind.ONBOARDING

    def start(self, ctx) -> Transition:
        return go(
            COMPANY_NAME,
            OnboardingDraft(),
            Reply(
                "🏢 <b>Registro de empresa</b>\n\n"
                "Paso 1 de 4: ¿Cuál es el nombre de tu empresa?\n\n"
                "Puedes cancelar en cualquier momento con /cancelar.",
                CANCEL_KEYBOARD,
            ),
        )

    def handle_text(self, ctx, text: str) -> Optional[Transition]:
        state = ctx.session.state
        draft: OnboardingDraft = ctx.session.data

        try:
            if state == COMPANY_NAME:
                return go(
                    CONTACT_NAME,
                    draft.model_copy(update={"company_name": validate_company_name(text)}),
                    Reply("Paso 2 de 4: ¿Nombre de la persona de contacto?", CANCEL_KEYBOARD),
                )
            if state == CONTACT_NAME:
                return go(
                    PHONE,
                    draft.model_copy(update={"contact_name": validate_contact_name(text)}),
                    Reply("Paso 3 de 4: ¿Teléfono de contacto? (escribe N/A si prefieres no darlo)", CANCEL_KEYBOARD),
                )
            if state == PHONE:
                return go(
                    EMAIL,
                    draft.model_copy(update={"contact_phone": validate_phone(text)}),
                    Reply("Paso 4 de 4: ¿Email de contacto? (escribe N/A si prefieres no darlo)", CANCEL_KEYBOARD),
                )
            if state == EMAIL:
                updated = draft.model_copy(update={"contact_email": validate_email(text)})
                return go(CONFIRM, updated, Reply(format_summary(updated), CONFIRM_KEYBOARD))
        except ValidationError as e:
            return stay(ctx, f"⚠️ {e.message}", CANCEL_KEYBOARD)

        if state == CONFIRM:
            answer = classify_answer(text)
            if answer == Answer.AFFIRMATIVE:
                return self.submit(ctx)
            if answer == Answer.NEGATIVE:
                return cancel(ctx, "❌ Registro cancelado. Puedes empezar de nuevo con /registrar_empresa.")
            return stay(ctx, "No entendí tu respuesta. Responde <b>sí</b> para enviar o <b>no</b> para cancelar.", CONFIRM_KEYBOARD)

        return None

    def handle_callback(self, ctx, data: str) -> Optional[Transition]:
        if data == CANCEL_CALLBACK:
            return cancel(ctx, "❌ Registro cancelado. Puedes empezar de nuevo con /registrar_empresa.")
        if data == CONFIRM_CALLBACK and ctx.session.state == CONFIRM:
            return self.submit(ctx)
        return None

    def submit(self, ctx) -> Transition:
        draft: OnboardingDraft = ctx.session.data
        user = ctx.user
        try:
            request = registration_service.create_request(
                ctx.db,
                draft,
                requester_id=ctx.user_id,
                requester_username=user.username if user else None,
            )
        except TransientError as e:
            logger.error("Registration request not stored", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(
                ctx,
                "⚠️ No se pudo enviar tu solicitud en este momento. Tus datos siguen guardados, intenta confirmar de nuevo.",
                CONFIRM_KEYBOARD,
            )

        result = ctx.services.notifications.notify_admins(request)
        if not result.ok:
            logger.warning(
                "Admins not notified about request",
                extra={"context": {"request_id": str(request.id), "error": result.error}},
            )

        confirmation = (
            "✅ <b>Solicitud enviada</b>\n\n"
            f"Número de solicitud: <code>{request.id}</code>\n"
            "Un administrador revisará tu solicitud. Te avisaremos por este chat cuando sea aprobada."
        )
        if ctx.update.callback_query:
            return finish(Edit(confirmation))
        return finish(Reply(confirmation))
