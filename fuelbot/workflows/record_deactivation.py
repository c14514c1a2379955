"""Soft delete of a captured fuel record.

search by sale number -> pick a record -> confirm (sensitive) -> idle
"""

from html import escape
from typing import Optional

from fuelbot.logging_config import get_logger
from fuelbot.schemas.session import RecordDeactivationDraft, WorkflowKind
from fuelbot.services import fuel_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError
from fuelbot.services.telegram_service import build_keyboard
from fuelbot.workflows.base import Edit, Reply, Transition, Workflow, finish, go, stay
from fuelbot.workflows.fuel_entry import FUEL_TYPE_LABELS, PAYMENT_LABELS, format_date, format_money

logger = get_logger("record_deactivation")

SEARCH = "deactivate_record_search"
CONFIRM = "deactivate_record_confirm"

START_CALLBACK = "search_fuel_records"
PICK_PREFIX = "deactivate_fuel_"
CONFIRM_PREFIX = "confirm_deactivate_"
CANCEL_PREFIX = "cancel_deactivate_"
CANCEL_SEARCH_CALLBACK = "cancel_deactivate_search"

CANCEL_KEYBOARD = build_keyboard([[("❌ Cancelar", CANCEL_SEARCH_CALLBACK)]])
AFTER_KEYBOARD = build_keyboard(
    [[("🔄 Desactivar otro registro", START_CALLBACK)], [("🏠 Menú principal", "main_menu")]]
)
USE_BUTTONS_MESSAGE = "Por favor, usa los botones de ✅ Sí o ❌ No para confirmar o cancelar la desactivación."


def build_results_keyboard(records, currency: str) -> dict:
    rows = [
        [
            (
                f"{format_date(r.record_date)} | {r.sale_number} | {r.operator_name or ''} | {format_money(r.amount, currency)}",
                f"{PICK_PREFIX}{r.id}",
            )
        ]
        for r in records
    ]
    rows.append([("❌ Cancelar", CANCEL_SEARCH_CALLBACK)])
    return build_keyboard(rows)


def build_confirm_keyboard(record_id) -> dict:
    return build_keyboard(
        [[("✅ Sí, desactivar", f"{CONFIRM_PREFIX}{record_id}")], [("❌ No, cancelar", f"{CANCEL_PREFIX}{record_id}")]]
    )


def format_warning(record, currency: str) -> str:
    lines = [
        "⚠️ <b>Desactivar registro</b>\n",
        f"<b>Fecha:</b> {format_date(record.record_date)}",
        f"<b>Unidad:</b> {escape(record.unit_number or '')} ({escape(record.operator_name or '')})",
        f"<b>Número de nota:</b> {escape(record.sale_number)}",
        f"<b>Monto:</b> {format_money(record.amount, currency)}",
        f"<b>Litros:</b> {record.liters}",
        f"<b>Tipo:</b> {FUEL_TYPE_LABELS.get(record.fuel_type, record.fuel_type)}",
        f"<b>Estado:</b> {PAYMENT_LABELS.get(record.payment_status, record.payment_status)}",
        "\nEl registro dejará de aparecer en consultas, saldos y reportes.",
        "¿Estás seguro de querer desactivarlo?",
    ]
    return "\n".join(lines)


class RecordDeactivationWorkflow(Workflow):
    prefix = "deactivate_record_"
    kind = WorkflowKind.RECORD_DEACTIVATION

    def start(self, ctx) -> Transition:
        return go(
            SEARCH,
            RecordDeactivationDraft(),
            Reply("🗑 <b>Desactivar registro</b>\n\nEscribe el número de nota del registro:", CANCEL_KEYBOARD),
        )

    def handle_text(self, ctx, text: str) -> Optional[Transition]:
        if ctx.session.state == CONFIRM:
            return stay(ctx, USE_BUTTONS_MESSAGE)
        if ctx.session.state != SEARCH:
            return None

        try:
            sale_number = fuel_service.validate_sale_number(text)
            records = fuel_service.search_records(ctx.db, ctx.tenant.id, sale_number)
        except ValidationError as e:
            return stay(ctx, f"⚠️ {e.message}", CANCEL_KEYBOARD)
        except TransientError as e:
            logger.error("Record search failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "⚠️ No se pudo buscar el registro. Escribe el número de nuevo.", CANCEL_KEYBOARD)

        if not records:
            return stay(
                ctx,
                f"No se encontraron registros con el número de nota <b>{escape(sale_number)}</b>. Intenta con otro.",
                CANCEL_KEYBOARD,
            )
        return stay(
            ctx,
            f"Se encontraron {len(records)} registro(s). Selecciona el que deseas desactivar:",
            build_results_keyboard(records, self._currency(ctx)),
        )

    def handle_callback(self, ctx, data: str) -> Optional[Transition]:
        state = ctx.session.state
        if data == CANCEL_SEARCH_CALLBACK:
            return finish(Edit("❌ Búsqueda cancelada."))
        if data.startswith(CANCEL_PREFIX) and state == CONFIRM:
            return finish(Edit("✖️ Operación cancelada. El registro NO ha sido desactivado.", AFTER_KEYBOARD))
        if data.startswith(PICK_PREFIX) and state in (SEARCH, CONFIRM):
            return self.pick(ctx, data.removeprefix(PICK_PREFIX))
        if data.startswith(CONFIRM_PREFIX) and state == CONFIRM:
            return self.deactivate(ctx, data.removeprefix(CONFIRM_PREFIX))
        return None

    def pick(self, ctx, record_id: str) -> Transition:
        try:
            record = fuel_service.get_record(ctx.db, ctx.tenant.id, record_id, active_only=True)
        except NotFoundError:
            return stay(ctx, "El registro no existe o ya ha sido desactivado.", CANCEL_KEYBOARD)
        except TransientError as e:
            logger.error("Record not loaded", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "⚠️ No se pudo cargar el registro. Intenta de nuevo.", CANCEL_KEYBOARD)

        return go(
            CONFIRM,
            RecordDeactivationDraft(record_id=str(record.id)),
            Reply(format_warning(record, self._currency(ctx)), build_confirm_keyboard(record.id)),
        )

    def deactivate(self, ctx, record_id: str) -> Transition:
        draft: RecordDeactivationDraft = ctx.session.data
        if record_id != draft.record_id:
            # a button from an older confirmation
            return stay(ctx, USE_BUTTONS_MESSAGE, build_confirm_keyboard(draft.record_id))

        try:
            record = fuel_service.deactivate_record(ctx.db, ctx.tenant.id, record_id)
        except (ConflictError, NotFoundError) as e:
            return finish(Edit(f"⚠️ {escape(e.message)}", AFTER_KEYBOARD))
        except TransientError as e:
            logger.error("Record not deactivated", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "❌ No se pudo desactivar el registro. Intenta de nuevo.", build_confirm_keyboard(record_id))

        return finish(
            Edit(
                f"✅ Registro <b>{escape(record.sale_number)}</b> desactivado "
                f"({format_money(record.amount, self._currency(ctx))}).",
                AFTER_KEYBOARD,
            )
        )

    def _currency(self, ctx) -> str:
        return ctx.settings.currency if ctx.settings else "MXN"
