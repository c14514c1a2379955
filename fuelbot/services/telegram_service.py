from typing import Optional

import httpx

from fuelbot.logging_config import get_logger
from fuelbot.schemas.telegram import TelegramChatMember
from fuelbot.services.errors import TransientError

logger = get_logger("telegram_service")

ADMIN_MEMBER_STATUSES = frozenset({"creator", "administrator"})


class TelegramService:
    """Thin client for the Telegram Bot API."""

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    def __init__(self, bot_token: str, timeout: float = 30.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout = timeout

    def _make_request(self, method: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        """Make request to Telegram API. Never raises; failures come back as ok=False."""
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=timeout or self.timeout) as client:
                response = client.post(url, json=data or {})
                return response.json()
        except httpx.TimeoutException as e:
            logger.warning("Telegram API timeout", extra={"context": {"method": method, "error": str(e)}})
            return {"ok": False, "error": "timeout", "timeout": True}
        except Exception as e:
            logger.error("Telegram API error", extra={"context": {"method": method, "error": str(e)}})
            return {"ok": False, "error": str(e)}

    def send_message(
        self,
        chat_id,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: str = "HTML",
    ) -> dict:
        """Send message to Telegram chat."""
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if reply_markup:
            data["reply_markup"] = reply_markup

        result = self._make_request("sendMessage", data)
        if not result.get("ok"):
            logger.warning(
                "sendMessage failed",
                extra={"context": {"chat_id": str(chat_id), "error": result.get("error") or result.get("description")}},
            )
        return result

    def edit_message(
        self,
        chat_id,
        message_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: str = "HTML",
    ) -> dict:
        """Edit existing message."""
        data = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if reply_markup:
            data["reply_markup"] = reply_markup

        return self._make_request("editMessageText", data)

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None, show_alert: bool = False) -> dict:
        data = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        if show_alert:
            data["show_alert"] = True
        return self._make_request("answerCallbackQuery", data)

    def get_chat_member(self, chat_id, user_id, timeout: Optional[float] = None) -> TelegramChatMember:
        """Live membership lookup. Raises TransientError if the answer cannot be obtained."""
        result = self._make_request("getChatMember", {"chat_id": chat_id, "user_id": user_id}, timeout=timeout)
        if not result.get("ok") or not isinstance(result.get("result"), dict):
            raise TransientError(f"getChatMember failed: {result.get('error') or result.get('description')}")
        return TelegramChatMember.model_validate(result["result"])

    def get_chat_administrators(self, chat_id, timeout: Optional[float] = None) -> list[TelegramChatMember]:
        result = self._make_request("getChatAdministrators", {"chat_id": chat_id}, timeout=timeout)
        if not result.get("ok") or not isinstance(result.get("result"), list):
            raise TransientError(f"getChatAdministrators failed: {result.get('error') or result.get('description')}")
        return [TelegramChatMember.model_validate(item) for item in result["result"]]

    def download_file(self, file_id: str) -> bytes:
        """Fetch file contents by file_id (getFile + file endpoint)."""
        result = self._make_request("getFile", {"file_id": file_id})
        file_path = (result.get("result") or {}).get("file_path") if result.get("ok") else None
        if not file_path:
            raise TransientError(f"getFile failed for {file_id}")
        url = self.FILE_URL.format(token=self.bot_token, path=file_path)
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise TransientError(f"File download failed: {e}") from e


def build_keyboard(rows: list[list[tuple[str, str]]]) -> dict:
    """Build an inline keyboard from rows of (text, callback_data) pairs."""
    return {"inline_keyboard": [[{"text": text, "callback_data": data} for text, data in row] for row in rows]}


def build_main_menu() -> dict:
    return build_keyboard(
        [
            [("⛽ Registrar carga", "register_fuel_start")],
            [("💵 Pagar nota", "search_note_for_payment")],
            [("💰 Consultar saldo", "check_balance")],
            [("🗑 Desactivar registro", "search_fuel_records")],
        ]
    )


def build_registration_review_buttons(request_id) -> dict:
    return build_keyboard(
        [
            [
                ("✅ Aprobar", f"admin_approve_{request_id}"),
                ("❌ Rechazar", f"admin_reject_{request_id}"),
            ]
        ]
    )
