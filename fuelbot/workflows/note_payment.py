from html import escape
from typing import Optional

from fuelbot.logging_config import get_logger
from fuelbot.models import PaymentStatus
from fuelbot.schemas.session import NotePaymentDraft, WorkflowKind
from fuelbot.services import fuel_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError
from fuelbot.services.telegram_service import build_keyboard
from fuelbot.workflows.base import Edit, Reply, Transition, Workflow, finish, go, stay
from fuelbot.workflows.fuel_entry import FUEL_TYPE_LABELS, format_date, format_money

logger = get_logger("note_payment")

INPUT = "search_note_input"
CONFIRM = "search_note_confirm"

MARK_PAID_CALLBACK = "mark_note_as_paid"
CANCEL_CALLBACK = "cancel_note_search"

CANCEL_KEYBOARD = build_keyboard([[("❌ Cancelar", CANCEL_CALLBACK)]])
CONFIRM_KEYBOARD = build_keyboard(
    [[("💵 Marcar como pagada", MARK_PAID_CALLBACK)], [("❌ Cancelar", CANCEL_CALLBACK)]]
)


class NotePaymentWorkflow(Workflow):
    """Find an unpaid note by sale number and mark it as paid."""

    prefix = "search_note_"
    kind = WorkflowKind.NOTE_PAYMENT

    def start(self, ctx) -> Transition:
        return go(
            INPUT,
            NotePaymentDraft(),
            Reply("🔎 <b>Pagar nota</b>\n\nEscribe el número de venta de la nota:", CANCEL_KEYBOARD),
        )

    def handle_text(self, ctx, text: str) -> Optional[Transition]:
        if ctx.session.state == CONFIRM:
            return stay(ctx, "Usa los botones para marcar la nota como pagada o cancelar.", CONFIRM_KEYBOARD)
        if ctx.session.state != INPUT:
            return None

        try:
            sale_number = fuel_service.validate_sale_number(text)
            record = fuel_service.find_by_sale_number(ctx.db, ctx.tenant.id, sale_number)
        except ValidationError as e:
            return stay(ctx, f"⚠️ {e.message}", CANCEL_KEYBOARD)
        except NotFoundError:
            return stay(ctx, f"No se encontró la nota <b>{escape(text.strip())}</b>. Revisa el número e intenta de nuevo.", CANCEL_KEYBOARD)
        except TransientError as e:
            logger.error("Note search failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "⚠️ No se pudo buscar la nota. Escribe el número de nuevo.", CANCEL_KEYBOARD)

        if record.payment_status == PaymentStatus.PAID.value:
            paid_on = format_date(record.payment_date) if record.payment_date else "fecha desconocida"
            return finish(Reply(f"✅ La nota <b>{escape(record.sale_number)}</b> ya fue pagada ({paid_on})."))

        currency = ctx.settings.currency if ctx.settings else "MXN"
        summary = (
            f"🧾 <b>Nota {escape(record.sale_number)}</b>\n\n"
            f"<b>Unidad:</b> {escape(record.unit_number or '')} ({escape(record.operator_name or '')})\n"
            f"<b>Fecha:</b> {format_date(record.record_date)}\n"
            f"<b>Litros:</b> {record.liters}\n"
            f"<b>Monto:</b> {format_money(record.amount, currency)}\n"
            f"<b>Tipo:</b> {FUEL_TYPE_LABELS.get(record.fuel_type, record.fuel_type)}\n"
            "<b>Estado:</b> No pagada"
        )
        return go(
            CONFIRM,
            NotePaymentDraft(record_id=str(record.id), sale_number=record.sale_number),
            Reply(summary, CONFIRM_KEYBOARD),
        )

    def handle_callback(self, ctx, data: str) -> Optional[Transition]:
        if data == CANCEL_CALLBACK:
            return finish(Edit("❌ Búsqueda cancelada."))
        if data != MARK_PAID_CALLBACK or ctx.session.state != CONFIRM:
            return None

        draft: NotePaymentDraft = ctx.session.data
        try:
            record = fuel_service.mark_paid(ctx.db, ctx.tenant.id, draft.record_id, ctx.now())
        except (ConflictError, NotFoundError) as e:
            return finish(Edit(f"⚠️ {e.message}"))
        except TransientError as e:
            logger.error("Note payment not stored", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "❌ No se pudo marcar la nota como pagada. Intenta de nuevo.", CONFIRM_KEYBOARD)

        return finish(Edit(f"✅ Nota <b>{escape(record.sale_number)}</b> marcada como pagada."))
