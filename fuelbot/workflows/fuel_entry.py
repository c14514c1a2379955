"""Multi-step fuel expense capture.

select unit -> liters -> amount (or price per liter + confirm) -> fuel type ->
ticket photo (skippable) -> sale number -> payment status -> confirm/save ->
date check -> [relative day | custom date] -> idle
"""

from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional

from fuelbot.logging_config import get_logger
from fuelbot.models import FuelType, PaymentStatus
from fuelbot.schemas.session import FuelDraft, WorkflowKind
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services import fuel_service, tenant_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError
from fuelbot.services.telegram_service import build_keyboard
from fuelbot.workflows.base import (
    Answer,
    Edit,
    Reply,
    Toast,
    Transition,
    Workflow,
    cancel,
    classify_answer,
    finish,
    go,
    stay,
)

logger = get_logger("fuel_entry")

SELECT_UNIT = "fuel_select_unit"
LITERS = "fuel_entry_liters"
AMOUNT = "fuel_entry_amount"
PRICE_PER_LITER = "fuel_entry_price_per_liter"
AMOUNT_CONFIRM = "fuel_entry_amount_confirm"
FUEL_TYPE = "fuel_entry_type"
PHOTO = "fuel_entry_photo"
SALE_NUMBER = "fuel_entry_sale_number"
PAYMENT = "fuel_entry_payment"
CONFIRM = "fuel_entry_confirm"
DATE_CONFIRM = "fuel_date_confirm"
DATE_SELECT = "fuel_date_select"
DATE_CUSTOM_INPUT = "fuel_date_custom_input"

DATE_STATES = frozenset({DATE_CONFIRM, DATE_SELECT, DATE_CUSTOM_INPUT})

UNIT_CALLBACK_PREFIX = "fuel_entry_unit_"
AMOUNT_BY_PRICE_CALLBACK = "fuel_amount_by_price"
AMOUNT_CONFIRM_YES = "amount_confirm_yes"
AMOUNT_CONFIRM_NO = "amount_confirm_no"
FUEL_TYPE_PREFIX = "fuel_type_"
SKIP_PHOTO_CALLBACK = "skip_ticket_photo"
PAYMENT_PREFIX = "payment_status_"
SAVE_CALLBACK = "fuel_confirm_save"
CANCEL_CALLBACK = "fuel_confirm_cancel"
DATE_TODAY_CALLBACK = "fuel_date_today"
DATE_OTHER_CALLBACK = "fuel_date_other"
DATE_DAY_PREFIX = "fuel_date_day_"
DATE_CUSTOM_CALLBACK = "fuel_date_custom"
DATE_CANCEL_CALLBACK = "fuel_date_cancel"
FLOW_CANCEL_CALLBACK = "fuel_cancel"

FUEL_TYPE_LABELS = {
    FuelType.GAS.value: "Gas",
    FuelType.GASOLINA.value: "Gasolina",
    FuelType.DIESEL.value: "Diésel",
}
PAYMENT_LABELS = {
    PaymentStatus.PAID.value: "Pagada",
    PaymentStatus.UNPAID.value: "No pagada",
}
DAY_LABELS = {1: "Ayer", 2: "Antier"}
RETRY_MESSAGE = "⚠️ No se pudo consultar la información. Intenta de nuevo en unos momentos."

CANCEL_ROW = [("❌ Cancelar", FLOW_CANCEL_CALLBACK)]

AMOUNT_KEYBOARD = build_keyboard([[("🧮 Calcular con precio por litro", AMOUNT_BY_PRICE_CALLBACK)], CANCEL_ROW])
AMOUNT_CONFIRM_KEYBOARD = build_keyboard([[("✅ Sí", AMOUNT_CONFIRM_YES), ("✏️ No", AMOUNT_CONFIRM_NO)]])
FUEL_TYPE_KEYBOARD = build_keyboard(
    [
        [
            ("Gas", f"{FUEL_TYPE_PREFIX}gas"),
            ("Gasolina", f"{FUEL_TYPE_PREFIX}gasolina"),
            ("Diésel", f"{FUEL_TYPE_PREFIX}diesel"),
        ],
        CANCEL_ROW,
    ]
)
PHOTO_KEYBOARD = build_keyboard([[("⏭️ Omitir foto", SKIP_PHOTO_CALLBACK)], CANCEL_ROW])
PAYMENT_KEYBOARD = build_keyboard(
    [[("✅ Pagada", f"{PAYMENT_PREFIX}pagada"), ("⏳ No pagada", f"{PAYMENT_PREFIX}no_pagada")], CANCEL_ROW]
)
CONFIRM_KEYBOARD = build_keyboard([[("💾 Guardar", SAVE_CALLBACK), ("❌ Cancelar", CANCEL_CALLBACK)]])
DATE_CONFIRM_KEYBOARD = build_keyboard([[("📅 Sí, fue hoy", DATE_TODAY_CALLBACK), ("🗓️ Otra fecha", DATE_OTHER_CALLBACK)]])
COMPLETE_KEYBOARD = build_keyboard(
    [[("⛽ Registrar otra carga", "register_fuel_start")], [("🏠 Menú principal", "main_menu")]]
)
CANCEL_KEYBOARD = build_keyboard([CANCEL_ROW])
KEEP_TODAY_KEYBOARD = build_keyboard([[("↩️ Dejar fecha de hoy", DATE_CANCEL_CALLBACK)]])


def format_money(value: Optional[Decimal], currency: str = "MXN") -> str:
    if value is None:
        return "-"
    return f"${value:,.2f} {currency}"


def format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def build_unit_keyboard(units) -> dict:
    rows = [[(unit.label, f"{UNIT_CALLBACK_PREFIX}{unit.id}")] for unit in units]
    rows.append(CANCEL_ROW)
    return build_keyboard(rows)


def build_date_keyboard(now: datetime) -> dict:
    rows = []
    for days_ago in fuel_service.RELATIVE_DAY_SHORTCUTS:
        day = fuel_service.relative_day(now, days_ago)
        label = DAY_LABELS.get(days_ago, f"Hace {days_ago} días")
        rows.append([(f"{label} ({format_date(day)})", f"{DATE_DAY_PREFIX}{days_ago}")])
    rows.append([("✍️ Escribir fecha", DATE_CUSTOM_CALLBACK)])
    rows.append([("↩️ Dejar fecha de hoy", DATE_CANCEL_CALLBACK)])
    return build_keyboard(rows)


def format_summary(draft: FuelDraft, currency: str) -> str:
    photo = "Adjunta" if draft.ticket_photo_ref else "Sin foto"
    return (
        "📋 <b>Resumen de la carga</b>\n\n"
        f"<b>Unidad:</b> {escape(draft.unit_number or '')} ({escape(draft.operator_name or '')})\n"
        f"<b>Litros:</b> {draft.liters}\n"
        f"<b>Monto:</b> {format_money(draft.amount, currency)}\n"
        f"<b>Tipo:</b> {FUEL_TYPE_LABELS.get(draft.fuel_type, draft.fuel_type)}\n"
        f"<b>Foto del ticket:</b> {photo}\n"
        f"<b>Número de venta:</b> {escape(draft.sale_number or '')}\n"
        f"<b>Estado de pago:</b> {PAYMENT_LABELS.get(draft.payment_status, draft.payment_status)}\n\n"
        "¿Guardar este registro?"
    )


class FuelEntryWorkflow(Workflow):
    prefix = "fuel_"
    kind = WorkflowKind.FUEL

    # Entry points

    def start(self, ctx) -> Transition:
        try:
            units = fuel_service.list_units(ctx.db, ctx.tenant.id)
        except TransientError as e:
            logger.error("Units not loaded", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, RETRY_MESSAGE)
        if not units:
            return finish(
                Reply(
                    "🚚 No hay unidades registradas.\n\n"
                    "Registra una con <code>/unidad NÚMERO NOMBRE_DEL_OPERADOR</code>."
                )
            )
        return go(SELECT_UNIT, FuelDraft(), Reply("⛽ <b>Registrar carga</b>\n\nSelecciona la unidad:", build_unit_keyboard(units)))

    def select_unit(self, ctx, unit_id: str) -> Transition:
        try:
            unit = fuel_service.get_unit(ctx.db, ctx.tenant.id, unit_id)
        except NotFoundError:
            return Transition(state=ctx.session.state, effects=[Toast("Esa unidad ya no está disponible.", show_alert=True)])
        except TransientError as e:
            logger.error("Unit not loaded", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return Transition(state=ctx.session.state, effects=[Toast(RETRY_MESSAGE, show_alert=True)])

        draft = FuelDraft(unit_id=str(unit.id), operator_name=unit.operator_name, unit_number=unit.unit_number)
        return go(
            LITERS,
            draft,
            Edit(f"🚚 Unidad: <b>{escape(unit.label)}</b>"),
            Reply("¿Cuántos litros se cargaron? (ejemplo: 12.5)", CANCEL_KEYBOARD),
        )

    # Input handlers

    def handle_text(self, ctx, text: str) -> Optional[Transition]:
        state = ctx.session.state
        if state in DATE_STATES:
            return self._date_branch(ctx, lambda: self._date_text(ctx, state, text))

        draft: FuelDraft = ctx.session.data
        currency = self._settings(ctx).currency
        try:
            if state == LITERS:
                liters = fuel_service.parse_positive_decimal(text, "número de litros")
                return go(
                    AMOUNT,
                    draft.model_copy(update={"liters": liters}),
                    Reply(f"¿Cuál fue el monto total en {currency}? (ejemplo: 350.00)", AMOUNT_KEYBOARD),
                )
            if state == AMOUNT:
                amount = fuel_service.parse_positive_decimal(text, "monto")
                return self._ask_fuel_type(draft.model_copy(update={"amount": amount, "price_per_liter": None}))
            if state == PRICE_PER_LITER:
                price = fuel_service.parse_positive_decimal(text, "precio por litro")
                amount = fuel_service.compute_amount(draft.liters, price)
                return go(
                    AMOUNT_CONFIRM,
                    draft.model_copy(update={"price_per_liter": price, "amount": amount}),
                    Reply(
                        f"🧮 {draft.liters} L × {format_money(price, currency)} = <b>{format_money(amount, currency)}</b>\n\n"
                        "¿Es correcto el monto?",
                        AMOUNT_CONFIRM_KEYBOARD,
                    ),
                )
            if state == SALE_NUMBER:
                sale_number = fuel_service.validate_sale_number(text)
                return go(
                    PAYMENT,
                    draft.model_copy(update={"sale_number": sale_number}),
                    Reply("¿La nota está pagada?", PAYMENT_KEYBOARD),
                )
        except ValidationError as e:
            return stay(ctx, f"⚠️ {e.message}", CANCEL_KEYBOARD)

        if state == AMOUNT_CONFIRM:
            answer = classify_answer(text)
            if answer == Answer.AFFIRMATIVE:
                return self._ask_fuel_type(draft)
            if answer == Answer.NEGATIVE:
                return self._reask_amount(draft, currency)
            return stay(ctx, "Responde <b>sí</b> o <b>no</b>.", AMOUNT_CONFIRM_KEYBOARD)
        if state == CONFIRM:
            answer = classify_answer(text)
            if answer == Answer.AFFIRMATIVE:
                return self.save(ctx)
            if answer == Answer.NEGATIVE:
                return cancel(ctx, "❌ Registro de carga cancelado.")
            return stay(ctx, "Usa los botones para guardar o cancelar el registro.", CONFIRM_KEYBOARD)
        if state == FUEL_TYPE:
            return stay(ctx, "Selecciona el tipo de combustible con los botones.", FUEL_TYPE_KEYBOARD)
        if state == PHOTO:
            return stay(ctx, "📷 Envía una foto del ticket o presiona <b>Omitir foto</b>.", PHOTO_KEYBOARD)
        if state == PAYMENT:
            return stay(ctx, "Selecciona el estado de pago con los botones.", PAYMENT_KEYBOARD)
        if state == SELECT_UNIT:
            return stay(ctx, "Selecciona la unidad con los botones o escribe /cancelar.")
        return None

    def handle_photo(self, ctx, file_id: str) -> Optional[Transition]:
        if ctx.session.state != PHOTO:
            return None
        draft: FuelDraft = ctx.session.data
        photo_ref = None
        notice = "📷 Foto guardada."
        try:
            photo_ref = ctx.services.storage.save(file_id)
        except Exception as e:
            logger.warning(
                "Ticket photo not stored, continuing without it",
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
            notice = "⚠️ No se pudo guardar la foto; el registro continuará sin ella."
        return self._ask_sale_number(draft.model_copy(update={"ticket_photo_ref": photo_ref, "photo_step_done": True}), notice)

    def handle_callback(self, ctx, data: str) -> Optional[Transition]:
        state = ctx.session.state
        if state in DATE_STATES:
            return self._date_branch(ctx, lambda: self._date_callback(ctx, state, data))

        if data in (FLOW_CANCEL_CALLBACK, CANCEL_CALLBACK):
            return finish(Edit("❌ Registro de carga cancelado."))

        draft: FuelDraft = ctx.session.data
        currency = self._settings(ctx).currency

        if state == AMOUNT and data == AMOUNT_BY_PRICE_CALLBACK:
            return go(PRICE_PER_LITER, draft, Reply(f"¿Cuál fue el precio por litro en {currency}?", CANCEL_KEYBOARD))
        if state == AMOUNT_CONFIRM and data == AMOUNT_CONFIRM_YES:
            return self._ask_fuel_type(draft)
        if state == AMOUNT_CONFIRM and data == AMOUNT_CONFIRM_NO:
            return self._reask_amount(draft, currency)
        if state == FUEL_TYPE and data.startswith(FUEL_TYPE_PREFIX):
            try:
                fuel_type = fuel_service.fuel_type_from_callback(data)
            except ValidationError as e:
                return stay(ctx, f"⚠️ {e.message}", FUEL_TYPE_KEYBOARD)
            return go(
                PHOTO,
                draft.model_copy(update={"fuel_type": fuel_type.value}),
                Edit(f"Tipo de combustible: <b>{FUEL_TYPE_LABELS[fuel_type.value]}</b>"),
                Reply("📷 Envía una foto del ticket o presiona <b>Omitir foto</b>.", PHOTO_KEYBOARD),
            )
        if state == PHOTO and data == SKIP_PHOTO_CALLBACK:
            return self._ask_sale_number(draft.model_copy(update={"ticket_photo_ref": None, "photo_step_done": True}), "Foto omitida.")
        if state == PAYMENT and data.startswith(PAYMENT_PREFIX):
            try:
                status = fuel_service.payment_status_from_callback(data)
            except ValidationError as e:
                return stay(ctx, f"⚠️ {e.message}", PAYMENT_KEYBOARD)
            updated = draft.model_copy(update={"payment_status": status.value})
            return go(CONFIRM, updated, Reply(format_summary(updated, currency), CONFIRM_KEYBOARD))
        if state == CONFIRM and data == SAVE_CALLBACK:
            return self.save(ctx)
        return None

    # Steps

    def _ask_fuel_type(self, draft: FuelDraft) -> Transition:
        return go(FUEL_TYPE, draft, Reply("¿Qué tipo de combustible?", FUEL_TYPE_KEYBOARD))

    def _reask_amount(self, draft: FuelDraft, currency: str) -> Transition:
        return go(
            AMOUNT,
            draft.model_copy(update={"amount": None, "price_per_liter": None}),
            Reply(f"¿Cuál fue el monto total en {currency}?", AMOUNT_KEYBOARD),
        )

    def _ask_sale_number(self, draft: FuelDraft, notice: str) -> Transition:
        return go(
            SALE_NUMBER,
            draft,
            Reply(f"{notice}\n\n¿Cuál es el número de venta de la nota? (hasta 6 letras, números o guiones)", CANCEL_KEYBOARD),
        )

    def save(self, ctx) -> Transition:
        draft: FuelDraft = ctx.session.data
        now = tenant_service.tenant_now(self._settings(ctx), ctx.services.clock)
        try:
            record = fuel_service.save_record(ctx.db, ctx.tenant.id, draft, now)
        except ConflictError as e:
            return go(
                SALE_NUMBER,
                draft.model_copy(update={"sale_number": None}),
                Reply(f"⚠️ {e.message} Escribe otro número de venta.", CANCEL_KEYBOARD),
            )
        except (TransientError, ValidationError) as e:
            logger.error("Fuel record not saved", extra={"context": {**ctx.log_context(), "error": str(e)}})
            return stay(ctx, "❌ No se guardó el registro. Intenta guardar de nuevo.", CONFIRM_KEYBOARD)

        return go(
            DATE_CONFIRM,
            draft.model_copy(update={"record_id": str(record.id)}),
            Edit("✅ <b>Carga guardada</b>"),
            Reply(f"¿La carga fue hoy ({format_date(now)})?", DATE_CONFIRM_KEYBOARD),
        )

    # Date correction. Best effort: the record already exists.

    def _date_branch(self, ctx, handler) -> Optional[Transition]:
        try:
            return handler()
        except ValidationError as e:
            return stay(ctx, f"⚠️ {e.message}", KEEP_TODAY_KEYBOARD)
        except Exception as e:
            logger.error(
                "Date correction failed, completing registration",
                exc_info=True,
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
            return self.complete("⚠️ No se pudo corregir la fecha; la carga quedó registrada con la fecha de hoy.")

    def _date_text(self, ctx, state: str, text: str) -> Optional[Transition]:
        if state == DATE_CUSTOM_INPUT:
            now = tenant_service.tenant_now(self._settings(ctx), ctx.services.clock)
            return self._apply_date(ctx, fuel_service.parse_manual_date(text, now))
        answer = classify_answer(text)
        if state == DATE_CONFIRM and answer == Answer.AFFIRMATIVE:
            return self.complete("📅 Fecha confirmada.")
        if state == DATE_CONFIRM and answer == Answer.NEGATIVE:
            return self._show_date_options(ctx)
        if state == DATE_CONFIRM:
            return stay(ctx, "Usa los botones para confirmar la fecha.", DATE_CONFIRM_KEYBOARD)
        return stay(ctx, "Selecciona una fecha con los botones.")

    def _date_callback(self, ctx, state: str, data: str) -> Optional[Transition]:
        if data == DATE_TODAY_CALLBACK:
            return self.complete("📅 Fecha confirmada.")
        if data == DATE_OTHER_CALLBACK:
            return self._show_date_options(ctx)
        if data == DATE_CANCEL_CALLBACK:
            return self.complete("📅 Se conserva la fecha de hoy.")
        if data == DATE_CUSTOM_CALLBACK and state == DATE_SELECT:
            return go(
                DATE_CUSTOM_INPUT,
                ctx.session.data,
                Reply(
                    "✍️ Escribe la fecha en formato <b>DD/MM/AAAA</b> (máximo 30 días atrás).",
                    KEEP_TODAY_KEYBOARD,
                ),
            )
        if data.startswith(DATE_DAY_PREFIX) and state == DATE_SELECT:
            try:
                days_ago = int(data.removeprefix(DATE_DAY_PREFIX))
            except ValueError as e:
                raise ValidationError("Atajo de fecha inválido.") from e
            now = tenant_service.tenant_now(self._settings(ctx), ctx.services.clock)
            return self._apply_date(ctx, fuel_service.relative_day(now, days_ago))
        return None

    def _show_date_options(self, ctx) -> Transition:
        now = tenant_service.tenant_now(self._settings(ctx), ctx.services.clock)
        return go(DATE_SELECT, ctx.session.data, Reply("🗓️ ¿Qué día fue la carga?", build_date_keyboard(now)))

    def _apply_date(self, ctx, record_date: datetime) -> Transition:
        draft: FuelDraft = ctx.session.data
        fuel_service.update_record_date(ctx.db, ctx.tenant.id, draft.record_id, record_date)
        return self.complete(f"📅 Fecha actualizada a <b>{format_date(record_date)}</b>.")

    def complete(self, notice: str) -> Transition:
        return finish(Reply(f"{notice}\n\n✅ <b>Registro completado.</b>", COMPLETE_KEYBOARD))

    def _settings(self, ctx) -> TenantSettingsView:
        return ctx.settings or TenantSettingsView()
