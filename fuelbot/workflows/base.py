"""Shared pieces for conversation workflows.

A workflow owns every session state that starts with its ``prefix``. Its
handlers read the current state and data from the session and return a
``Transition`` (new state, new data, effects) or ``None`` when the input is not
accepted in that state. Handlers never write the session themselves;
``apply_transition`` does.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from fuelbot.logging_config import get_logger
from fuelbot.schemas.session import IDLE_STATE, IdleData, WorkflowKind

logger = get_logger("workflows")


@dataclass
class Reply:
    text: str
    reply_markup: Optional[dict] = None


@dataclass
class Toast:
    text: str
    show_alert: bool = False


@dataclass
class Edit:
    text: str
    reply_markup: Optional[dict] = None


Effect = Union[Reply, Toast, Edit]


@dataclass
class Transition:
    state: str
    data: Optional[BaseModel] = None
    effects: list = field(default_factory=list)


class Answer(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    UNRECOGNIZED = "unrecognized"


AFFIRMATIVE_EXACT = {
    "si",
    "sí",
    "s",
    "yes",
    "y",
    "ok",
    "okay",
    "confirmar",
    "confirmo",
    "correcto",
    "claro",
    "de acuerdo",
}

NEGATIVE_EXACT = {
    "no",
    "n",
    "cancelar",
    "cancel",
    "cancelo",
    "incorrecto",
}


def normalize_for_matching(text: Optional[str]) -> str:
    """Casefold, collapse whitespace and trim surrounding punctuation ("¡Sí!" -> "sí")."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def classify_answer(text: Optional[str]) -> Answer:
    normalized = normalize_for_matching(text)
    if normalized in AFFIRMATIVE_EXACT:
        return Answer.AFFIRMATIVE
    if normalized in NEGATIVE_EXACT:
        return Answer.NEGATIVE
    return Answer.UNRECOGNIZED


class Workflow:
    prefix: str = ""
    kind: WorkflowKind = WorkflowKind.IDLE

    def owns(self, state: Optional[str]) -> bool:
        return bool(state) and bool(self.prefix) and state.startswith(self.prefix)

    def handle_text(self, ctx, text: str) -> Optional[Transition]:
        return None

    def handle_callback(self, ctx, data: str) -> Optional[Transition]:
        return None

    def handle_photo(self, ctx, file_id: str) -> Optional[Transition]:
        return None


def stay(ctx, text: str, reply_markup: Optional[dict] = None) -> Transition:
    """Re-prompt without advancing or touching the collected data."""
    return Transition(state=ctx.session.state, data=None, effects=[Reply(text, reply_markup)])


def go(state: str, data: BaseModel, *effects) -> Transition:
    return Transition(state=state, data=data, effects=list(effects))


def finish(*effects) -> Transition:
    """Back to the idle baseline."""
    return Transition(state=IDLE_STATE, data=IdleData(), effects=list(effects))


def apply_transition(ctx, transition: Transition) -> None:
    previous = ctx.session.state
    ctx.session.transition(transition.state, transition.data)
    if previous != transition.state:
        logger.debug(
            "Session transition",
            extra={"context": {"chat_id": ctx.chat_id, "user_id": ctx.user_id, "from": previous, "to": transition.state}},
        )

    for effect in transition.effects:
        if isinstance(effect, Reply):
            ctx.reply(effect.text, effect.reply_markup)
        elif isinstance(effect, Edit):
            ctx.edit(effect.text, effect.reply_markup)
        elif isinstance(effect, Toast):
            ctx.toast(effect.text, show_alert=effect.show_alert)


def cancel(ctx, text: str = "❌ Operación cancelada.") -> Transition:
    return finish(Reply(text))
