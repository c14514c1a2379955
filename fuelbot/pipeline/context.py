from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from fuelbot.config import BotConfig
from fuelbot.logging_config import get_logger
from fuelbot.models import Tenant
from fuelbot.schemas.session import ConversationSession
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.schemas.telegram import TelegramMessage, TelegramUpdate, TelegramUser
from fuelbot.services.session_store import SessionKey, SessionStore

logger = get_logger("pipeline")

PRIVATE_CHAT = "private"
GROUP_CHATS = frozenset({"group", "supergroup"})


class TenantResolution(str, Enum):
    RESOLVED = "resolved"
    BYPASSED = "bypassed"
    ADMIN = "admin"


@dataclass
class DeferredTask:
    func: Callable[[], Any]
    delay: float
    name: str


@dataclass
class BotServices:
    """Collaborators shared by every dispatch."""

    transport: Any
    session_store: SessionStore
    notifications: Any
    storage: Any
    tenant_admins: Any
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)


@dataclass
class DispatchContext:
    """Everything one update needs on its way through the pipeline."""

    update: TelegramUpdate
    config: BotConfig
    services: BotServices
    db: Session
    parent: Optional["DispatchContext"] = None

    session: Optional[ConversationSession] = None
    session_key: Optional[SessionKey] = None
    tenant: Optional[Tenant] = None
    settings: Optional[TenantSettingsView] = None
    tenant_resolution: Optional[TenantResolution] = None
    admin_mode: bool = False

    diagnostic: dict = field(default_factory=dict)
    deferred: list[DeferredTask] = field(default_factory=list)
    callback_answered: bool = False
    handled: bool = False
    error: Optional[Exception] = None

    # Update accessors

    @property
    def message(self) -> Optional[TelegramMessage]:
        if self.update.callback_query:
            return self.update.callback_query.message
        return self.update.message

    @property
    def user(self) -> Optional[TelegramUser]:
        if self.update.callback_query:
            return self.update.callback_query.from_user
        if self.update.message:
            return self.update.message.from_user
        return None

    @property
    def chat_id(self) -> Optional[int]:
        message = self.message
        return message.chat.id if message else None

    @property
    def chat_type(self) -> Optional[str]:
        message = self.message
        return message.chat.type if message else None

    @property
    def is_private(self) -> bool:
        return self.chat_type == PRIVATE_CHAT

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHATS

    @property
    def user_id(self) -> Optional[int]:
        user = self.user
        return user.id if user else None

    @property
    def is_bot_admin(self) -> bool:
        return self.config.is_admin(self.user_id)

    @property
    def text(self) -> Optional[str]:
        if self.update.message:
            return self.update.message.text
        return None

    @property
    def callback_data(self) -> Optional[str]:
        if self.update.callback_query:
            return self.update.callback_query.data
        return None

    @property
    def photo_file_id(self) -> Optional[str]:
        message = self.update.message
        if not message or not message.photo:
            return None
        largest = max(message.photo, key=lambda p: (p.file_size or 0, p.width * p.height))
        return largest.file_id

    @property
    def command(self) -> Optional[str]:
        """Lowercased command without any @botname suffix, e.g. "/aprobar"."""
        text = (self.text or "").strip()
        if not text.startswith("/"):
            return None
        head = text.split(maxsplit=1)[0]
        return head.split("@", 1)[0].lower()

    @property
    def command_args(self) -> list[str]:
        text = (self.text or "").strip()
        if not text.startswith("/"):
            return []
        return text.split()[1:]

    @property
    def action(self) -> Optional[str]:
        return self.command or self.callback_data

    def root(self) -> "DispatchContext":
        ctx = self
        while ctx.parent is not None:
            ctx = ctx.parent
        return ctx

    def log_context(self) -> dict:
        return {
            "update_id": self.update.update_id,
            "update_type": self.update.kind,
            "chat_id": self.chat_id,
            "chat_type": self.chat_type,
            "user_id": self.user_id,
            "callback_data": self.callback_data,
            "command": self.command,
            "state": self.session.state if self.session else None,
            "tenant_id": str(self.tenant.id) if self.tenant else None,
        }

    # Responders

    def reply(self, text: str, reply_markup: Optional[dict] = None) -> dict:
        if self.chat_id is None:
            logger.warning("Reply without a chat", extra={"context": self.log_context()})
            return {"ok": False, "error": "no_chat"}
        return self.services.transport.send_message(self.chat_id, text, reply_markup=reply_markup)

    def toast(self, text: str, show_alert: bool = False) -> dict:
        """Callback acknowledgement with text; plain reply for messages."""
        query = self.update.callback_query
        if query is None:
            return self.reply(text)
        self.callback_answered = True
        return self.services.transport.answer_callback_query(query.id, text=text, show_alert=show_alert)

    def edit(self, text: str, reply_markup: Optional[dict] = None) -> dict:
        """Edit the message carrying the pressed button; reply if there is none."""
        query = self.update.callback_query
        if query is None or query.message is None:
            return self.reply(text, reply_markup)
        return self.services.transport.edit_message(
            query.message.chat.id, query.message.message_id, text, reply_markup=reply_markup
        )

    def answer_callback(self) -> None:
        query = self.update.callback_query
        if query is None or self.callback_answered or self.parent is not None:
            return
        self.callback_answered = True
        self.services.transport.answer_callback_query(query.id)

    def defer(self, func: Callable[[], Any], delay: float = 0.0, name: str = "deferred") -> None:
        """Schedule work to run after the update has been answered."""
        self.root().deferred.append(DeferredTask(func=func, delay=delay, name=name))

    def now(self) -> datetime:
        return self.services.clock()
