from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from fuelbot.logging_config import get_logger

logger = get_logger("session")

IDLE_STATE = "idle"
HISTORY_LIMIT = 20
PENDING_ACTIONS_LIMIT = 10


class WorkflowKind(str, Enum):
    IDLE = "idle"
    ONBOARDING = "onboarding"
    FUEL = "fuel"
    NOTE_PAYMENT = "note_payment"
    RECORD_DEACTIVATION = "record_deactivation"


# State tag prefix -> workflow that owns it
STATE_PREFIXES: dict[str, WorkflowKind] = {
    "register_company_": WorkflowKind.ONBOARDING,
    "fuel_": WorkflowKind.FUEL,
    "search_note_": WorkflowKind.NOTE_PAYMENT,
    "deactivate_record_": WorkflowKind.RECORD_DEACTIVATION,
}


def workflow_for_state(state: Optional[str]) -> WorkflowKind:
    if not state or state == IDLE_STATE:
        return WorkflowKind.IDLE
    for prefix, kind in STATE_PREFIXES.items():
        if state.startswith(prefix):
            return kind
    return WorkflowKind.IDLE


class IdleData(BaseModel):
    kind: Literal["idle"] = "idle"


class OnboardingDraft(BaseModel):
    kind: Literal["onboarding"] = "onboarding"
    company_name: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None


class FuelDraft(BaseModel):
    kind: Literal["fuel"] = "fuel"
    unit_id: Optional[str] = None
    operator_name: Optional[str] = None
    unit_number: Optional[str] = None
    liters: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    price_per_liter: Optional[Decimal] = None
    fuel_type: Optional[str] = None
    ticket_photo_ref: Optional[str] = None
    photo_step_done: bool = False
    sale_number: Optional[str] = None
    payment_status: Optional[str] = None
    record_id: Optional[str] = None


class NotePaymentDraft(BaseModel):
    kind: Literal["note_payment"] = "note_payment"
    record_id: Optional[str] = None
    sale_number: Optional[str] = None


class RecordDeactivationDraft(BaseModel):
    kind: Literal["record_deactivation"] = "record_deactivation"
    record_id: Optional[str] = None


SessionData = Annotated[
    Union[IdleData, OnboardingDraft, FuelDraft, NotePaymentDraft, RecordDeactivationDraft],
    Field(discriminator="kind"),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryEntry(BaseModel):
    from_state: str
    to_state: str
    at: datetime = Field(default_factory=_utcnow)


class ConversationSession(BaseModel):
    state: str = IDLE_STATE
    data: SessionData = Field(default_factory=IdleData)
    last_interaction: datetime = Field(default_factory=_utcnow)
    history: list[HistoryEntry] = Field(default_factory=list)
    pending_actions: list[str] = Field(default_factory=list)

    @property
    def workflow(self) -> WorkflowKind:
        return workflow_for_state(self.state)

    @property
    def is_idle(self) -> bool:
        return self.workflow == WorkflowKind.IDLE

    def transition(self, new_state: str, data=None) -> None:
        """Move to new_state, recording history and refreshing the interaction time."""
        if new_state != self.state:
            self.history.append(HistoryEntry(from_state=self.state, to_state=new_state))
            self.history = self.history[-HISTORY_LIMIT:]
        self.state = new_state
        if data is not None:
            self.data = data
        self.touch()

    def reset(self) -> None:
        """Return to the idle baseline with empty data."""
        self.transition(IDLE_STATE, IdleData())

    def touch(self) -> None:
        self.last_interaction = _utcnow()

    def add_pending_action(self, action: str) -> None:
        self.pending_actions.append(action)
        self.pending_actions = self.pending_actions[-PENDING_ACTIONS_LIMIT:]

    def dump(self) -> dict:
        return self.model_dump(mode="json")


def repair_session(raw) -> ConversationSession:
    """Build a well-formed session from whatever was stored.

    A valid payload is returned as is. Otherwise each field is salvaged on its
    own; if the state and its data cannot be reconciled the session falls back
    to the idle baseline. Never raises.
    """
    if isinstance(raw, ConversationSession):
        return raw
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Discarding non-mapping session payload", extra={"context": {"type": type(raw).__name__}})
        return ConversationSession()

    try:
        session = ConversationSession.model_validate(raw)
    except ValidationError as e:
        logger.warning("Repairing malformed session", extra={"context": {"errors": e.error_count()}})
        return _salvage(raw)

    consistent = session.workflow.value == session.data.kind
    if session.is_idle:
        # unknown state tags count as idle
        consistent = consistent and session.state == IDLE_STATE
    if not consistent:
        logger.warning(
            "Session data does not match its state, resetting",
            extra={"context": {"state": session.state, "kind": session.data.kind}},
        )
        return ConversationSession(history=session.history, pending_actions=session.pending_actions)
    return session


def _salvage(raw: dict) -> ConversationSession:
    session = ConversationSession()

    history = []
    if isinstance(raw.get("history"), list):
        for item in raw["history"][-HISTORY_LIMIT:]:
            try:
                history.append(HistoryEntry.model_validate(item))
            except ValidationError:
                continue
    session.history = history

    if isinstance(raw.get("pending_actions"), list):
        session.pending_actions = [a for a in raw["pending_actions"] if isinstance(a, str)][-PENDING_ACTIONS_LIMIT:]

    state = raw.get("state")
    kind = workflow_for_state(state if isinstance(state, str) else None)
    if kind == WorkflowKind.IDLE:
        return session

    data = raw.get("data")
    if not isinstance(data, dict) or data.get("kind") != kind.value:
        return session
    try:
        session.data = ConversationSession.model_validate({"data": data}).data
    except ValidationError:
        return session
    session.state = state
    return session
