"""Routing after the pipeline: commands, global callbacks, then the active workflow."""

from html import escape
from typing import Callable, Optional

from fuelbot.logging_config import get_logger
from fuelbot.pipeline.context import DispatchContext
from fuelbot.pipeline.stages import FEATURE_DISABLED_MESSAGE
from fuelbot.schemas.session import WorkflowKind
from fuelbot.schemas.settings import DEFAULT_FEATURES
from fuelbot.services import access_control, fuel_service, registration_service, tenant_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError
from fuelbot.services.telegram_service import build_keyboard, build_main_menu, build_registration_review_buttons
from fuelbot.workflows import FuelEntryWorkflow, NotePaymentWorkflow, OnboardingWorkflow, RecordDeactivationWorkflow
from fuelbot.workflows.base import Transition, apply_transition, cancel
from fuelbot.workflows.fuel_entry import UNIT_CALLBACK_PREFIX, format_money

logger = get_logger("commands")

ADMIN_ONLY_MESSAGE = "⛔ Este comando es solo para administradores del bot."
PRIVATE_ONLY_MESSAGE = "Este comando solo funciona en chat privado con el bot."
GROUP_ONLY_MESSAGE = "Este comando solo funciona dentro de un grupo."
TENANT_REQUIRED_MESSAGE = "Este comando solo funciona en un grupo registrado."
RETRY_MESSAGE = "⚠️ No se pudo completar la operación. Intenta de nuevo en unos momentos."
EXPIRED_ACTION_MESSAGE = "Esta acción ya no está disponible."
BALANCE_FAILED_MESSAGE = "Ocurrió un error al consultar el saldo pendiente."
UNIT_GONE_MESSAGE = "Esa unidad ya no está disponible."

APPROVE_CALLBACK_PREFIX = "admin_approve_"
REJECT_CALLBACK_PREFIX = "admin_reject_"
BUTTON_REJECTION_REASON = "Rechazada por administrador"
UNIT_DEACTIVATE_PREFIX = "deactivate_unit_"
UNIT_CONFIRM_PREFIX = "confirm_unit_deactivate_"
UNIT_CANCEL_CALLBACK = "cancel_unit_deactivate"

# menu buttons that stand for a command
MENU_COMMANDS = {
    "register_fuel_start": "/carga",
    "search_note_for_payment": "/pagar",
    "check_balance": "/saldo",
    "search_fuel_records": "/desactivar",
    "deactivate_unit_menu": "/desactivar_unidad",
}

# workflows that stop when their feature flag is switched off mid-flow
WORKFLOW_FEATURES = {
    WorkflowKind.FUEL: "fuel_tracking",
    WorkflowKind.NOTE_PAYMENT: "fuel_tracking",
    WorkflowKind.RECORD_DEACTIVATION: "fuel_tracking",
}

FEATURE_LABELS = {
    "fuel_tracking": "Registro de cargas",
    "report_generation": "Reportes",
    "notifications": "Notificaciones",
    "multiple_operators": "Múltiples operadores",
    "export_data": "Exportar datos",
}
SWITCH_ON = {"on", "si", "sí", "activar", "1", "true"}
SWITCH_OFF = {"off", "no", "desactivar", "0", "false"}


class CommandRouter:
    def __init__(self, redispatch: Optional[Callable] = None):
        self.onboarding = OnboardingWorkflow()
        self.fuel = FuelEntryWorkflow()
        self.note_payment = NotePaymentWorkflow()
        self.record_deactivation = RecordDeactivationWorkflow()
        self.workflows = {
            WorkflowKind.ONBOARDING: self.onboarding,
            WorkflowKind.FUEL: self.fuel,
            WorkflowKind.NOTE_PAYMENT: self.note_payment,
            WorkflowKind.RECORD_DEACTIVATION: self.record_deactivation,
        }
        self.redispatch = redispatch
        self.commands = {
            "/start": self.cmd_help,
            "/ayuda": self.cmd_help,
            "/help": self.cmd_help,
            "/registrar": self.cmd_register,
            "/registrar_empresa": self.cmd_register,
            "/cancelar": self.cmd_cancel,
            "/solicitudes": self.cmd_pending_requests,
            "/aprobar": self.cmd_approve,
            "/rechazar": self.cmd_reject,
            "/vincular": self.cmd_link,
            "/activar": self.cmd_link,
            "/carga": self.cmd_fuel,
            "/pagar": self.cmd_pay_note,
            "/saldo": self.cmd_balance,
            "/desactivar": self.cmd_deactivate_record,
            "/unidad": self.cmd_add_unit,
            "/unidades": self.cmd_list_units,
            "/desactivar_unidad": self.cmd_deactivate_unit,
            "/configurar": self.cmd_configure,
        }

    def __call__(self, ctx: DispatchContext) -> None:
        ctx.handled = self.route(ctx)

    def route(self, ctx: DispatchContext) -> bool:
        command = ctx.command
        if command:
            handler = self.commands.get(command)
            if handler is None:
                return False
            handler(ctx)
            return True

        data = ctx.callback_data
        if data is not None:
            return self.route_callback(ctx, data)

        return self.route_message(ctx)

    # Workflow plumbing

    def apply(self, ctx: DispatchContext, transition: Optional[Transition]) -> bool:
        if transition is None:
            return False
        apply_transition(ctx, transition)
        return True

    def active_workflow(self, ctx: DispatchContext):
        workflow = self.workflows.get(ctx.session.workflow)
        if workflow is None:
            return None
        if workflow is not self.onboarding and ctx.tenant is None:
            # fuel and note flows only make sense inside a linked group
            logger.info("Workflow lost its tenant, resetting", extra={"context": ctx.log_context()})
            apply_transition(ctx, cancel(ctx, TENANT_REQUIRED_MESSAGE))
            return None
        feature = WORKFLOW_FEATURES.get(ctx.session.workflow)
        if feature and not access_control.is_feature_enabled(ctx.settings, feature):
            logger.info(
                "Workflow feature switched off, resetting",
                extra={"context": {**ctx.log_context(), "feature": feature}},
            )
            apply_transition(ctx, cancel(ctx, FEATURE_DISABLED_MESSAGE))
            return None
        return workflow

    def route_message(self, ctx: DispatchContext) -> bool:
        workflow = self.active_workflow(ctx)
        if workflow is None:
            return False
        file_id = ctx.photo_file_id
        if file_id:
            return self.apply(ctx, workflow.handle_photo(ctx, file_id))
        if ctx.text is not None:
            return self.apply(ctx, workflow.handle_text(ctx, ctx.text))
        return False

    def route_callback(self, ctx: DispatchContext, data: str) -> bool:
        if data.startswith(APPROVE_CALLBACK_PREFIX):
            self.approve(ctx, data.removeprefix(APPROVE_CALLBACK_PREFIX))
            return True
        if data.startswith(REJECT_CALLBACK_PREFIX):
            self.reject(ctx, data.removeprefix(REJECT_CALLBACK_PREFIX), BUTTON_REJECTION_REASON)
            return True
        if data == "start_registration":
            self.cmd_register(ctx)
            return True
        if data == "main_menu":
            self.show_menu(ctx)
            return True
        if data in MENU_COMMANDS:
            self.run_as_command(ctx, MENU_COMMANDS[data])
            return True
        if data.startswith(UNIT_CALLBACK_PREFIX):
            if ctx.tenant is None:
                ctx.toast(TENANT_REQUIRED_MESSAGE, show_alert=True)
                return True
            return self.apply(ctx, self.fuel.select_unit(ctx, data.removeprefix(UNIT_CALLBACK_PREFIX)))
        if data.startswith((UNIT_DEACTIVATE_PREFIX, UNIT_CONFIRM_PREFIX)) or data == UNIT_CANCEL_CALLBACK:
            self.route_unit_deactivation(ctx, data)
            return True

        state_before = ctx.session.state
        workflow = self.active_workflow(ctx)
        if workflow is not None and self.apply(ctx, workflow.handle_callback(ctx, data)):
            return True
        if ctx.session.state != state_before:
            # the flow was closed before it could take the button
            return True

        ctx.toast(EXPIRED_ACTION_MESSAGE)
        return False

    def run_as_command(self, ctx: DispatchContext, command: str) -> None:
        """Menu buttons go through the pipeline again as the equivalent command."""
        if self.redispatch is None or ctx.message is None:
            handler = self.commands[command]
            handler(ctx)
            return
        self.redispatch(ctx, command)

    # General commands

    def cmd_help(self, ctx: DispatchContext) -> None:
        if ctx.tenant is not None:
            ctx.reply(
                f"⛽ <b>{escape(ctx.tenant.company_name)}</b>\n\n"
                "/carga - Registrar una carga de combustible\n"
                "/pagar - Marcar una nota como pagada\n"
                "/saldo - Consultar el saldo pendiente\n"
                "/desactivar - Desactivar un registro de carga\n"
                "/unidad NÚMERO OPERADOR - Registrar una unidad\n"
                "/unidades - Ver unidades\n"
                "/desactivar_unidad - Desactivar una unidad\n"
                "/configurar - Configuración (administradores)\n"
                "/cancelar - Cancelar la operación en curso",
                build_main_menu(),
            )
            return

        lines = [
            "👋 <b>Bienvenido al bot de control de combustible</b>\n",
            "/registrar_empresa - Solicitar el registro de tu empresa (en chat privado)",
            "/vincular CÓDIGO - Vincular un grupo con tu empresa aprobada",
            "/cancelar - Cancelar la operación en curso",
        ]
        if ctx.is_private and ctx.is_bot_admin:
            lines += [
                "\n<b>Administración</b>",
                "/solicitudes - Solicitudes pendientes",
                "/aprobar ID - Aprobar solicitud",
                "/rechazar ID [motivo] - Rechazar solicitud",
            ]
        markup = build_keyboard([[("🏢 Registrar empresa", "start_registration")]]) if ctx.is_private else None
        ctx.reply("\n".join(lines), markup)

    def show_menu(self, ctx: DispatchContext) -> None:
        if ctx.tenant is None:
            self.cmd_help(ctx)
            return
        ctx.reply("¿Qué deseas hacer?", build_main_menu())

    def cmd_cancel(self, ctx: DispatchContext) -> None:
        if ctx.session.is_idle:
            ctx.reply("No hay ninguna operación en curso.")
            return
        apply_transition(ctx, cancel(ctx))

    # Onboarding and admin

    def cmd_register(self, ctx: DispatchContext) -> None:
        if not ctx.is_private:
            ctx.reply("Para registrar tu empresa escríbeme por chat privado y usa /registrar_empresa.")
            return
        self.apply(ctx, self.onboarding.start(ctx))

    def _require_private_admin(self, ctx: DispatchContext) -> bool:
        if not ctx.is_bot_admin:
            ctx.reply(ADMIN_ONLY_MESSAGE)
            return False
        if not ctx.is_private:
            ctx.reply(PRIVATE_ONLY_MESSAGE)
            return False
        return True

    def cmd_pending_requests(self, ctx: DispatchContext) -> None:
        if not self._require_private_admin(ctx):
            return
        pending = registration_service.list_pending(ctx.db)
        if not pending:
            ctx.reply("No hay solicitudes pendientes.")
            return
        ctx.reply(f"📋 <b>{len(pending)} solicitud(es) pendiente(s)</b>")
        for request in pending:
            ctx.reply(
                f"<b>{escape(request.company_name)}</b>\n"
                f"Contacto: {escape(request.contact_name or '')}\n"
                f"Teléfono: {escape(request.contact_phone or 'N/A')}\n"
                f"Email: {escape(request.contact_email or 'N/A')}\n"
                f"ID: <code>{request.id}</code>",
                build_registration_review_buttons(request.id),
            )

    def cmd_approve(self, ctx: DispatchContext) -> None:
        if not self._require_private_admin(ctx):
            return
        args = ctx.command_args
        if len(args) != 1:
            ctx.reply("Uso: /aprobar ID_SOLICITUD")
            return
        self.approve(ctx, args[0])

    def cmd_reject(self, ctx: DispatchContext) -> None:
        if not self._require_private_admin(ctx):
            return
        args = ctx.command_args
        if not args:
            ctx.reply("Uso: /rechazar ID_SOLICITUD [motivo]")
            return
        reason = " ".join(args[1:]) or registration_service.DEFAULT_REJECTION_REASON
        self.reject(ctx, args[0], reason)

    def approve(self, ctx: DispatchContext, request_id: str) -> None:
        if not ctx.is_bot_admin:
            ctx.toast(ADMIN_ONLY_MESSAGE, show_alert=True)
            return
        try:
            approval = registration_service.approve(ctx.db, request_id, ctx.user_id)
        except NotFoundError:
            self._answer(ctx, f"No existe la solicitud <code>{escape(request_id)}</code>.")
            return
        except ConflictError as e:
            self._answer(ctx, f"⚠️ La solicitud ya fue procesada. {escape(e.message)}")
            return
        except TransientError as e:
            logger.error("Approval failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            self._answer(ctx, RETRY_MESSAGE)
            return

        ctx.services.notifications.notify_approval(approval.request, approval.token, schedule=ctx.defer)
        self._answer(
            ctx,
            f"✅ Solicitud aprobada: <b>{escape(approval.request.company_name)}</b>\n"
            f"Código de activación: <code>{approval.token}</code>",
        )

    def reject(self, ctx: DispatchContext, request_id: str, reason: str) -> None:
        if not ctx.is_bot_admin:
            ctx.toast(ADMIN_ONLY_MESSAGE, show_alert=True)
            return
        try:
            request = registration_service.reject(ctx.db, request_id, ctx.user_id, reason)
        except NotFoundError:
            self._answer(ctx, f"No existe la solicitud <code>{escape(request_id)}</code>.")
            return
        except ConflictError as e:
            self._answer(ctx, f"⚠️ La solicitud ya fue procesada. {escape(e.message)}")
            return
        except TransientError as e:
            logger.error("Rejection failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            self._answer(ctx, RETRY_MESSAGE)
            return

        ctx.services.notifications.notify_rejection(request, reason)
        self._answer(ctx, f"❌ Solicitud rechazada: <b>{escape(request.company_name)}</b>\nMotivo: {escape(reason)}")

    def _answer(self, ctx: DispatchContext, text: str) -> None:
        """Buttons edit their message; commands reply."""
        if ctx.update.callback_query:
            ctx.edit(text)
        else:
            ctx.reply(text)

    def cmd_link(self, ctx: DispatchContext) -> None:
        if not ctx.is_group:
            ctx.reply("Usa este comando dentro del grupo que quieres vincular.")
            return
        args = ctx.command_args
        if len(args) != 1:
            ctx.reply("Uso: /vincular CÓDIGO")
            return
        try:
            tenant = registration_service.link_group(ctx.db, args[0], ctx.chat_id)
        except NotFoundError:
            ctx.reply("❌ Código inválido o expirado.")
            return
        except ConflictError as e:
            if e.code == "chat_linked":
                ctx.reply("❌ Este grupo ya está vinculado a otra empresa.")
            else:
                ctx.reply("❌ Este código ya fue utilizado.")
            return
        except TransientError as e:
            logger.error("Group linking failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(RETRY_MESSAGE)
            return

        ctx.tenant = tenant
        ctx.services.notifications.announce_link(tenant, schedule=ctx.defer)

    # Tenant scoped

    def _require_tenant(self, ctx: DispatchContext) -> bool:
        if ctx.tenant is None:
            ctx.reply(TENANT_REQUIRED_MESSAGE)
            return False
        return True

    def cmd_fuel(self, ctx: DispatchContext) -> None:
        if self._require_tenant(ctx):
            self.apply(ctx, self.fuel.start(ctx))

    def cmd_pay_note(self, ctx: DispatchContext) -> None:
        if self._require_tenant(ctx):
            self.apply(ctx, self.note_payment.start(ctx))

    def cmd_add_unit(self, ctx: DispatchContext) -> None:
        if not self._require_tenant(ctx):
            return
        args = ctx.command_args
        if len(args) < 2:
            ctx.reply("Uso: /unidad NÚMERO NOMBRE_DEL_OPERADOR")
            return
        try:
            unit = fuel_service.register_unit(
                ctx.db, ctx.tenant, ctx.settings or tenant_service.merge_settings(None), args[0], " ".join(args[1:])
            )
        except (ValidationError, ConflictError) as e:
            ctx.reply(f"⚠️ {escape(e.message)}")
            return
        except TransientError as e:
            logger.error("Unit not stored", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(RETRY_MESSAGE)
            return
        ctx.reply(f"🚚 Unidad registrada: <b>{escape(unit.label)}</b>")

    def cmd_list_units(self, ctx: DispatchContext) -> None:
        if not self._require_tenant(ctx):
            return
        try:
            units = fuel_service.list_units(ctx.db, ctx.tenant.id)
        except TransientError as e:
            logger.error("Units not loaded", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(RETRY_MESSAGE)
            return
        if not units:
            ctx.reply("No hay unidades registradas. Usa /unidad NÚMERO OPERADOR.")
            return
        ctx.reply("🚚 <b>Unidades</b>\n\n" + "\n".join(escape(unit.label) for unit in units))

    def cmd_balance(self, ctx: DispatchContext) -> None:
        if not self._require_tenant(ctx):
            return
        try:
            total, count = fuel_service.unpaid_balance(ctx.db, ctx.tenant.id)
        except TransientError as e:
            logger.error("Balance not computed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(BALANCE_FAILED_MESSAGE, build_main_menu())
            return
        currency = ctx.settings.currency if ctx.settings else "MXN"
        ctx.reply(
            f"💰 <b>Saldo pendiente total: {format_money(total, currency)}</b>\n"
            f"Notas sin pagar: {count}"
        )
        ctx.reply("¿Qué deseas hacer ahora?", build_main_menu())

    def cmd_deactivate_record(self, ctx: DispatchContext) -> None:
        if self._require_tenant(ctx):
            self.apply(ctx, self.record_deactivation.start(ctx))

    def cmd_deactivate_unit(self, ctx: DispatchContext) -> None:
        if not self._require_tenant(ctx):
            return
        try:
            units = fuel_service.list_units(ctx.db, ctx.tenant.id)
        except TransientError as e:
            logger.error("Units not loaded", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(RETRY_MESSAGE)
            return
        if not units:
            ctx.reply("No hay unidades registradas.")
            return
        rows = [[(f"🗑 {unit.label}", f"{UNIT_DEACTIVATE_PREFIX}{unit.id}")] for unit in units]
        rows.append([("🏠 Menú principal", "main_menu")])
        ctx.reply("Selecciona la unidad que deseas desactivar:", build_keyboard(rows))

    def route_unit_deactivation(self, ctx: DispatchContext, data: str) -> None:
        """Stateless two-step confirm: pick a unit, then confirm on the same message."""
        if ctx.tenant is None:
            ctx.toast(TENANT_REQUIRED_MESSAGE, show_alert=True)
            return
        if data == UNIT_CANCEL_CALLBACK:
            ctx.edit("✖️ Operación cancelada. La unidad NO ha sido desactivada.")
            return

        confirmed = data.startswith(UNIT_CONFIRM_PREFIX)
        unit_id = data.removeprefix(UNIT_CONFIRM_PREFIX if confirmed else UNIT_DEACTIVATE_PREFIX)
        try:
            if confirmed:
                unit = fuel_service.deactivate_unit(ctx.db, ctx.tenant.id, unit_id)
            else:
                unit = fuel_service.get_unit(ctx.db, ctx.tenant.id, unit_id)
        except NotFoundError:
            ctx.edit(UNIT_GONE_MESSAGE)
            return
        except TransientError as e:
            logger.error("Unit deactivation failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.toast(RETRY_MESSAGE, show_alert=True)
            return

        if confirmed:
            ctx.edit(
                f"✅ La unidad <b>{escape(unit.label)}</b> ha sido desactivada. "
                "Ya no aparecerá en los listados ni podrá usarse para registrar cargas.",
                build_main_menu(),
            )
            return
        ctx.edit(
            f"⚠️ ¿Desactivar la unidad <b>{escape(unit.label)}</b>?\n\n"
            "Ya no aparecerá en los listados ni podrá usarse para registrar cargas.",
            build_keyboard(
                [
                    [("✅ Sí, desactivar", f"{UNIT_CONFIRM_PREFIX}{unit.id}")],
                    [("❌ No, cancelar", UNIT_CANCEL_CALLBACK)],
                ]
            ),
        )

    def cmd_configure(self, ctx: DispatchContext) -> None:
        if not self._require_tenant(ctx):
            return
        args = ctx.command_args
        if len(args) == 2:
            feature, switch = args[0].lower(), args[1].lower()
            if feature not in DEFAULT_FEATURES or switch not in SWITCH_ON | SWITCH_OFF:
                ctx.reply("Uso: /configurar FUNCIÓN on|off\nFunciones: " + ", ".join(DEFAULT_FEATURES))
                return
            try:
                ctx.settings = tenant_service.update_feature(ctx.db, ctx.tenant, feature, switch in SWITCH_ON)
            except TransientError as e:
                logger.error("Settings not stored", extra={"context": {"error": str(e)}})
                ctx.reply(RETRY_MESSAGE)
                return
        elif args:
            ctx.reply("Uso: /configurar FUNCIÓN on|off\nFunciones: " + ", ".join(DEFAULT_FEATURES))
            return

        settings = ctx.settings or tenant_service.merge_settings(None)
        lines = [
            f"⚙️ <b>Configuración de {escape(ctx.tenant.company_name)}</b>\n",
            f"Moneda: {escape(settings.currency)}",
            f"Zona horaria: {escape(settings.timezone)}",
            f"Límite de unidades: {settings.unit_limit}\n",
        ]
        for feature, label in FEATURE_LABELS.items():
            mark = "✅" if settings.has_feature(feature) else "❌"
            lines.append(f"{mark} {label} (<code>{feature}</code>)")
        ctx.reply("\n".join(lines))
