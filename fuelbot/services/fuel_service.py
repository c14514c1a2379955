import re
import uuid
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fuelbot.logging_config import get_logger
from fuelbot.models import FuelRecord, FuelType, PaymentStatus, Tenant, Unit
from fuelbot.schemas.session import FuelDraft
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError, ValidationError

logger = get_logger("fuel_service")

SALE_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,6}$")
DECIMAL_PATTERN = re.compile(r"^(\d+(\.\d+)?|\.\d+)$")
CURRENCY_NOISE = re.compile(r"(?i)(mxn|usd|\$|\s)")
DATE_INPUT_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

MAX_DATE_CORRECTION_DAYS = 30
RELATIVE_DAY_SHORTCUTS = range(1, 8)
CENT = Decimal("0.01")
# liters, amount and price columns are NUMERIC(12, 2)
MAX_INTEGER_DIGITS = 10
MAX_STORED_VALUE = Decimal(10) ** MAX_INTEGER_DIGITS
SEARCH_RESULTS_LIMIT = 10


def parse_positive_decimal(text: Optional[str], field: str = "valor") -> Decimal:
    """Parse user input such as "12.5", "1,5" or "$1,350.00" into a positive Decimal."""
    if not text or not text.strip():
        raise ValidationError(f"Ingresa un {field} numérico.")

    cleaned = CURRENCY_NOISE.sub("", text)
    if "," in cleaned and "." in cleaned:
        # 1,350.00: commas are thousands separators
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") == 1:
        cleaned = cleaned.replace(",", ".")

    if not DECIMAL_PATTERN.match(cleaned):
        raise ValidationError(f"El {field} debe ser un número mayor a 0 (ejemplo: 12.5).")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as e:
        raise ValidationError(f"El {field} debe ser un número mayor a 0 (ejemplo: 12.5).") from e
    if value <= 0:
        raise ValidationError(f"El {field} debe ser mayor a 0.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(f"El {field} admite como máximo 2 decimales.")
    if value >= MAX_STORED_VALUE:
        raise ValidationError(f"El {field} es demasiado grande (máximo {MAX_INTEGER_DIGITS} dígitos enteros).")
    return value


def compute_amount(liters: Decimal, price_per_liter: Decimal) -> Decimal:
    amount = (liters * price_per_liter).quantize(CENT, rounding=ROUND_HALF_UP)
    if amount >= MAX_STORED_VALUE:
        raise ValidationError(f"El monto calculado es demasiado grande (máximo {MAX_INTEGER_DIGITS} dígitos enteros).")
    return amount


def validate_sale_number(text: Optional[str]) -> str:
    value = (text or "").strip()
    if not SALE_NUMBER_PATTERN.match(value):
        raise ValidationError("El número de venta debe tener de 1 a 6 caracteres: letras, números o guiones.")
    return value


def fuel_type_from_callback(tag: str) -> FuelType:
    suffix = tag.removeprefix("fuel_type_").upper()
    try:
        return FuelType(suffix)
    except ValueError as e:
        raise ValidationError(f"Tipo de combustible desconocido: {suffix}") from e


def payment_status_from_callback(tag: str) -> PaymentStatus:
    suffix = tag.removeprefix("payment_status_")
    mapping = {"pagada": PaymentStatus.PAID, "no_pagada": PaymentStatus.UNPAID}
    if suffix not in mapping:
        raise ValidationError(f"Estado de pago desconocido: {suffix}")
    return mapping[suffix]


# Dates


def local_noon(day: date, now: datetime) -> datetime:
    return datetime.combine(day, time(12, 0), tzinfo=now.tzinfo)


def relative_day(now: datetime, days_ago: int) -> datetime:
    """The day ``days_ago`` before ``now``, at local noon."""
    if days_ago not in RELATIVE_DAY_SHORTCUTS:
        raise ValidationError("Atajo de fecha inválido.")
    return local_noon(now.date() - timedelta(days=days_ago), now)


def check_date_window(candidate: datetime, now: datetime) -> datetime:
    """Accept instants no later than ``now`` and no earlier than the day 30 days ago."""
    if candidate > now:
        raise ValidationError("La fecha no puede ser futura.")
    earliest = (now - timedelta(days=MAX_DATE_CORRECTION_DAYS)).date()
    if candidate.astimezone(now.tzinfo).date() < earliest:
        raise ValidationError(f"La fecha no puede ser anterior a {MAX_DATE_CORRECTION_DAYS} días.")
    return candidate


def parse_manual_date(text: Optional[str], now: datetime) -> datetime:
    """Parse DD/MM/AAAA into an instant within the correction window."""
    match = DATE_INPUT_PATTERN.match((text or "").strip())
    if not match:
        raise ValidationError("Formato inválido. Usa DD/MM/AAAA (ejemplo: 05/03/2025).")
    day, month, year = (int(part) for part in match.groups())
    try:
        entered = date(year, month, day)
    except ValueError as e:
        raise ValidationError("Esa fecha no existe. Usa DD/MM/AAAA.") from e

    if entered > now.date():
        raise ValidationError("La fecha no puede ser futura.")
    # noon of today may still be ahead of now
    return check_date_window(min(local_noon(entered, now), now), now)


# Units


def list_units(db: Session, tenant_id) -> list[Unit]:
    try:
        return (
            db.query(Unit)
            .filter(Unit.tenant_id == tenant_id, Unit.is_active.is_(True))
            .order_by(Unit.unit_number)
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not list units: {e}") from e


def get_unit(db: Session, tenant_id, unit_id) -> Unit:
    try:
        unit_uuid = uuid.UUID(str(unit_id))
    except ValueError as e:
        raise NotFoundError("Unidad no encontrada") from e
    try:
        unit = (
            db.query(Unit)
            .filter(Unit.id == unit_uuid, Unit.tenant_id == tenant_id, Unit.is_active.is_(True))
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not load unit: {e}") from e
    if unit is None:
        raise NotFoundError("Unidad no encontrada")
    return unit


def register_unit(db: Session, tenant: Tenant, settings: TenantSettingsView, unit_number: str, operator_name: str) -> Unit:
    """Add a unit, or bring back a deactivated one with the same number."""
    unit_number = (unit_number or "").strip()
    operator_name = (operator_name or "").strip()
    if not unit_number or len(unit_number) > 20:
        raise ValidationError("El número de unidad debe tener entre 1 y 20 caracteres.")
    if len(operator_name) < 2 or len(operator_name) > 100:
        raise ValidationError("El nombre del operador debe tener entre 2 y 100 caracteres.")

    if len(list_units(db, tenant.id)) >= settings.unit_limit:
        raise ValidationError(f"Se alcanzó el límite de {settings.unit_limit} unidades.")

    try:
        existing = db.query(Unit).filter(Unit.tenant_id == tenant.id, Unit.unit_number == unit_number).first()
        if existing is not None and existing.is_active:
            raise ConflictError(f"La unidad {unit_number} ya está registrada.")

        if existing is not None:
            unit = existing
            unit.operator_name = operator_name
            unit.is_active = True
        else:
            unit = Unit(tenant_id=tenant.id, unit_number=unit_number, operator_name=operator_name)
            db.add(unit)
        db.commit()
        db.refresh(unit)
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"La unidad {unit_number} ya está registrada.") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not store unit: {e}") from e
    return unit


def deactivate_unit(db: Session, tenant_id, unit_id) -> Unit:
    """Soft delete: the unit disappears from listings and new captures."""
    unit = get_unit(db, tenant_id, unit_id)
    try:
        changed = (
            db.query(Unit)
            .filter(Unit.id == unit.id, Unit.tenant_id == tenant_id, Unit.is_active.is_(True))
            .update({Unit.is_active: False}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not deactivate unit: {e}") from e
    if changed == 0:
        raise NotFoundError("Unidad no encontrada")
    db.refresh(unit)
    logger.info("Unit deactivated", extra={"context": {"tenant_id": str(tenant_id), "unit_id": str(unit.id)}})
    return unit


# Records


def sale_number_taken(db: Session, tenant_id, sale_number: str) -> bool:
    row = (
        db.query(FuelRecord.id)
        .filter(
            FuelRecord.tenant_id == tenant_id,
            FuelRecord.sale_number == sale_number,
            FuelRecord.is_active.is_(True),
        )
        .first()
    )
    return row is not None


def save_record(db: Session, tenant_id, draft: FuelDraft, record_date: datetime) -> FuelRecord:
    """Persist one FuelRecord from a completed draft. All or nothing."""
    missing = [name for name in ("unit_id", "liters", "amount", "fuel_type", "sale_number", "payment_status") if getattr(draft, name) is None]
    if missing:
        raise ValidationError(f"Faltan datos: {', '.join(missing)}")

    try:
        if sale_number_taken(db, tenant_id, draft.sale_number):
            raise ConflictError(f"El número de venta {draft.sale_number} ya existe.", code="duplicate_sale_number")

        paid = draft.payment_status == PaymentStatus.PAID.value
        record = FuelRecord(
            tenant_id=tenant_id,
            unit_id=uuid.UUID(draft.unit_id),
            operator_name=draft.operator_name,
            unit_number=draft.unit_number,
            liters=draft.liters,
            amount=draft.amount,
            price_per_liter=draft.price_per_liter,
            fuel_type=draft.fuel_type,
            sale_number=draft.sale_number,
            payment_status=draft.payment_status,
            ticket_photo_ref=draft.ticket_photo_ref,
            record_date=record_date,
            payment_date=record_date if paid else None,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
    except ConflictError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not store fuel record: {e}") from e

    logger.info(
        "Fuel record saved",
        extra={"context": {"tenant_id": str(tenant_id), "record_id": str(record.id), "sale_number": record.sale_number}},
    )
    return record


def get_record(db: Session, tenant_id, record_id, active_only: bool = False) -> FuelRecord:
    try:
        record_uuid = uuid.UUID(str(record_id))
    except ValueError as e:
        raise NotFoundError("Registro no encontrado") from e
    query = db.query(FuelRecord).filter(FuelRecord.id == record_uuid, FuelRecord.tenant_id == tenant_id)
    if active_only:
        query = query.filter(FuelRecord.is_active.is_(True))
    try:
        record = query.first()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not load fuel record: {e}") from e
    if record is None:
        raise NotFoundError("Registro no encontrado")
    return record


def update_record_date(db: Session, tenant_id, record_id, record_date: datetime) -> FuelRecord:
    record = get_record(db, tenant_id, record_id)
    try:
        record.record_date = record_date
        if record.payment_status == PaymentStatus.PAID.value:
            record.payment_date = record_date
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not update record date: {e}") from e
    return record


def find_by_sale_number(db: Session, tenant_id, sale_number: str) -> FuelRecord:
    try:
        record = (
            db.query(FuelRecord)
            .filter(
                FuelRecord.tenant_id == tenant_id,
                FuelRecord.sale_number == sale_number,
                FuelRecord.is_active.is_(True),
            )
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not search notes: {e}") from e
    if record is None:
        raise NotFoundError(f"No se encontró la nota {sale_number}.")
    return record


def search_records(db: Session, tenant_id, sale_number: str) -> list[FuelRecord]:
    """Active records whose sale number contains the text, newest first."""
    pattern = sale_number.replace("%", "").replace("_", "")
    try:
        return (
            db.query(FuelRecord)
            .filter(
                FuelRecord.tenant_id == tenant_id,
                FuelRecord.is_active.is_(True),
                FuelRecord.sale_number.ilike(f"%{pattern}%"),
            )
            .order_by(FuelRecord.record_date.desc())
            .limit(SEARCH_RESULTS_LIMIT)
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not search fuel records: {e}") from e


def mark_paid(db: Session, tenant_id, record_id, paid_at: datetime) -> FuelRecord:
    record = get_record(db, tenant_id, record_id)
    if record.payment_status == PaymentStatus.PAID.value:
        raise ConflictError(f"La nota {record.sale_number} ya está pagada.")
    try:
        record.payment_status = PaymentStatus.PAID.value
        record.payment_date = paid_at
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not mark note as paid: {e}") from e
    logger.info("Note marked as paid", extra={"context": {"record_id": str(record.id)}})
    return record


def deactivate_record(db: Session, tenant_id, record_id) -> FuelRecord:
    """Soft delete. The sale number becomes free for a new capture."""
    record = get_record(db, tenant_id, record_id)
    try:
        changed = (
            db.query(FuelRecord)
            .filter(FuelRecord.id == record.id, FuelRecord.tenant_id == tenant_id, FuelRecord.is_active.is_(True))
            .update({FuelRecord.is_active: False}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not deactivate fuel record: {e}") from e
    if changed == 0:
        raise ConflictError(f"El registro {record.sale_number} ya estaba desactivado.", code="already_inactive")
    db.refresh(record)
    logger.info(
        "Fuel record deactivated",
        extra={"context": {"tenant_id": str(tenant_id), "record_id": str(record.id), "sale_number": record.sale_number}},
    )
    return record


# Balance


def unpaid_balance(db: Session, tenant_id) -> tuple[Decimal, int]:
    """Total amount and count of active unpaid notes."""
    try:
        total, count = (
            db.query(func.coalesce(func.sum(FuelRecord.amount), 0), func.count(FuelRecord.id))
            .filter(
                FuelRecord.tenant_id == tenant_id,
                FuelRecord.payment_status == PaymentStatus.UNPAID.value,
                FuelRecord.is_active.is_(True),
            )
            .one()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not compute balance: {e}") from e
    return Decimal(total).quantize(CENT), count
