from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = self.first_name or ""
        if self.last_name:
            name = f"{name} {self.last_name}".strip()
        return name or (self.username or str(self.id))


class TelegramChat(BaseModel):
    id: int
    type: str  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None


class TelegramPhotoSize(BaseModel):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    file_size: Optional[int] = None


class TelegramMessage(BaseModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = None  # "from" is reserved in Python
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[list[TelegramPhotoSize]] = None
    reply_to_message: Optional[Any] = None

    model_config = ConfigDict(populate_by_name=True)

    def __init__(self, **data):
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramCallbackQuery(BaseModel):
    id: str
    from_user: TelegramUser
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None  # callback_data from button

    def __init__(self, **data):
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None

    @property
    def kind(self) -> str:
        if self.callback_query:
            return "callback_query"
        if self.message:
            return "message"
        if self.edited_message:
            return "edited_message"
        return "unknown"


class TelegramChatMember(BaseModel):
    status: str  # creator, administrator, member, restricted, left, kicked
    user: Optional[TelegramUser] = None


class TelegramWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
