from fuelbot.schemas.session import ConversationSession, FuelDraft, IdleData, NotePaymentDraft, OnboardingDraft
from fuelbot.schemas.settings import TenantSettingsView, merge_settings
from fuelbot.schemas.telegram import TelegramCallbackQuery, TelegramMessage, TelegramUpdate, TelegramWebhookResponse

__all__ = [
    "ConversationSession",
    "IdleData",
    "OnboardingDraft",
    "FuelDraft",
    "NotePaymentDraft",
    "TenantSettingsView",
    "merge_settings",
    "TelegramUpdate",
    "TelegramMessage",
    "TelegramCallbackQuery",
    "TelegramWebhookResponse",
]
