"""Registration request lifecycle: create, approve/reject, token issue, group linking.

Approval, rejection and linking are guarded by conditional UPDATE statements
(``WHERE status = 'PENDING'`` / ``WHERE registration_token = :t AND chat_id
LIKE 'pending_%'``) so concurrent callers on the same row produce exactly one
winner; the loser sees zero affected rows and gets a ConflictError.
"""

import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fuelbot.logging_config import get_logger
from fuelbot.models import PLACEHOLDER_PREFIX, RegistrationRequest, RequestStatus, Tenant
from fuelbot.schemas.session import OnboardingDraft
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError
from fuelbot.services.tenant_service import make_placeholder_chat_id

logger = get_logger("registration_service")

# No I/O and no 0/1: nothing that reads ambiguously on a phone screen
TOKEN_LETTERS = "ABCDEFGHJKLMNPQRSTUVWXYZ"
TOKEN_DIGITS = "23456789"
TOKEN_PATTERN = re.compile(r"^[A-Z]{3}[0-9]{3}$")
MAX_TOKEN_ATTEMPTS = 10

DEFAULT_REJECTION_REASON = "No especificado"


@dataclass
class Approval:
    request: RegistrationRequest
    tenant: Tenant
    token: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token(rng=None) -> str:
    """3 letters then 3 digits, drawn uniformly from the unambiguous alphabets."""
    rng = rng or secrets.SystemRandom()
    letters = "".join(rng.choice(TOKEN_LETTERS) for _ in range(3))
    digits = "".join(rng.choice(TOKEN_DIGITS) for _ in range(3))
    return letters + digits


def normalize_token(token: Optional[str]) -> str:
    return (token or "").strip().upper()


def token_in_use(db: Session, token: str) -> bool:
    row = (
        db.query(Tenant.id)
        .filter(or_(Tenant.registration_token == token, Tenant.link_token == token))
        .first()
    )
    return row is not None


def issue_unique_token(db: Session, rng=None) -> str:
    """Generate a token that no tenant holds or has consumed."""
    for attempt in range(MAX_TOKEN_ATTEMPTS):
        token = generate_token(rng)
        if not token_in_use(db, token):
            return token
        logger.info("Token collision, regenerating", extra={"context": {"attempt": attempt + 1}})
    raise TransientError("Could not generate a unique token")


def _parse_request_id(request_id) -> uuid.UUID:
    if isinstance(request_id, uuid.UUID):
        return request_id
    try:
        return uuid.UUID(str(request_id).strip())
    except (ValueError, AttributeError) as e:
        raise NotFoundError(f"Request {request_id} not found", code="request_not_found") from e


def create_request(
    db: Session,
    draft: OnboardingDraft,
    requester_id,
    requester_username: Optional[str] = None,
) -> RegistrationRequest:
    request = RegistrationRequest(
        company_name=draft.company_name,
        contact_name=draft.contact_name,
        contact_phone=draft.contact_phone,
        contact_email=draft.contact_email,
        requester_id=str(requester_id),
        requester_username=requester_username,
        status=RequestStatus.PENDING.value,
    )
    try:
        db.add(request)
        db.commit()
        db.refresh(request)
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Could not store registration request: {e}") from e

    logger.info(
        "Registration request created",
        extra={"context": {"request_id": str(request.id), "requester_id": str(requester_id)}},
    )
    return request


def list_pending(db: Session) -> list[RegistrationRequest]:
    return (
        db.query(RegistrationRequest)
        .filter(RegistrationRequest.status == RequestStatus.PENDING.value)
        .order_by(RegistrationRequest.created_at.desc())
        .all()
    )


def get_request(db: Session, request_id) -> RegistrationRequest:
    request = db.get(RegistrationRequest, _parse_request_id(request_id))
    if request is None:
        raise NotFoundError(f"Request {request_id} not found", code="request_not_found")
    return request


def _claim_pending(db: Session, request_uuid: uuid.UUID, new_status: RequestStatus, admin_id, notes=None) -> None:
    """Move the request out of PENDING or raise NotFound/Conflict. Leaves the transaction open."""
    now = _utcnow()
    values = {
        "status": new_status.value,
        "processed_by": str(admin_id),
        "processed_at": now,
        "updated_at": now,
    }
    if notes is not None:
        values["admin_notes"] = notes

    updated = db.execute(
        update(RegistrationRequest)
        .where(
            RegistrationRequest.id == request_uuid,
            RegistrationRequest.status == RequestStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount

    if updated:
        return

    db.rollback()
    existing = db.get(RegistrationRequest, request_uuid, populate_existing=True)
    if existing is None:
        raise NotFoundError(f"Request {request_uuid} not found", code="request_not_found")
    raise ConflictError(f"Request already processed ({existing.status})", code="already_processed")


def approve(db: Session, request_id, admin_id, rng=None) -> Approval:
    """Approve a PENDING request and create its tenant in one transaction."""
    request_uuid = _parse_request_id(request_id)
    try:
        token = issue_unique_token(db, rng)
        _claim_pending(db, request_uuid, RequestStatus.APPROVED, admin_id)

        request = db.get(RegistrationRequest, request_uuid, populate_existing=True)
        tenant = Tenant(
            company_name=request.company_name,
            chat_id=make_placeholder_chat_id(),
            is_active=True,
            is_approved=True,
            registration_token=token,
            contact_name=request.contact_name,
            contact_phone=request.contact_phone,
            contact_email=request.contact_email,
            notes=f"Solicitud {request.id}",
        )
        db.add(tenant)
        db.commit()
    except (NotFoundError, ConflictError):
        raise
    except IntegrityError as e:
        db.rollback()
        raise TransientError(f"Approval collided with a concurrent write: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Approval failed: {e}") from e

    db.refresh(request)
    db.refresh(tenant)
    logger.info(
        "Registration request approved",
        extra={"context": {"request_id": str(request.id), "tenant_id": str(tenant.id), "admin_id": str(admin_id)}},
    )
    return Approval(request=request, tenant=tenant, token=token)


def reject(db: Session, request_id, admin_id, reason: Optional[str] = None) -> RegistrationRequest:
    request_uuid = _parse_request_id(request_id)
    notes = (reason or "").strip() or DEFAULT_REJECTION_REASON
    try:
        _claim_pending(db, request_uuid, RequestStatus.REJECTED, admin_id, notes=notes)
        db.commit()
    except (NotFoundError, ConflictError):
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Rejection failed: {e}") from e

    request = db.get(RegistrationRequest, request_uuid, populate_existing=True)
    logger.info(
        "Registration request rejected",
        extra={"context": {"request_id": str(request_uuid), "admin_id": str(admin_id)}},
    )
    return request


def link_group(db: Session, token: str, chat_id) -> Tenant:
    """Bind the tenant holding ``token`` to ``chat_id``. Succeeds at most once per token."""
    normalized = normalize_token(token)
    chat_key = str(chat_id)

    if not TOKEN_PATTERN.match(normalized):
        raise NotFoundError("Invalid or expired token", code="invalid_token")

    try:
        tenant = db.query(Tenant).filter(Tenant.registration_token == normalized).first()
        if tenant is None:
            consumed = db.query(Tenant.id).filter(Tenant.link_token == normalized).first()
            if consumed is not None:
                raise ConflictError("Token already used", code="token_used")
            raise NotFoundError("Invalid or expired token", code="invalid_token")

        if tenant.is_linked:
            raise ConflictError("Token already used", code="token_used")

        owner = db.query(Tenant.id).filter(Tenant.chat_id == chat_key).first()
        if owner is not None and owner.id != tenant.id:
            raise ConflictError("Group already linked to a different company", code="chat_linked")

        updated = db.execute(
            update(Tenant)
            .where(
                Tenant.id == tenant.id,
                Tenant.registration_token == normalized,
                Tenant.chat_id.startswith(PLACEHOLDER_PREFIX, autoescape=True),
            )
            .values(
                chat_id=chat_key,
                is_approved=True,
                registration_token=None,
                link_token=normalized,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not updated:
            db.rollback()
            raise ConflictError("Token already used", code="token_used")
        db.commit()
    except (NotFoundError, ConflictError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Group already linked to a different company", code="chat_linked") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientError(f"Group linking failed: {e}") from e

    tenant = db.get(Tenant, tenant.id, populate_existing=True)
    logger.info(
        "Group linked to tenant",
        extra={"context": {"tenant_id": str(tenant.id), "chat_id": chat_key}},
    )
    return tenant
