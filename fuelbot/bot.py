"""Wiring: builds the dispatcher and its collaborators from settings."""

from functools import lru_cache

from fuelbot.config import BotConfig, Settings, settings
from fuelbot.database import SessionLocal
from fuelbot.logging_config import get_logger
from fuelbot.pipeline.context import BotServices
from fuelbot.pipeline.dispatcher import Dispatcher
from fuelbot.services.access_control import GroupAdministratorsDirectory
from fuelbot.services.notification_service import NotificationService
from fuelbot.services.session_store import build_session_store
from fuelbot.services.storage_service import StorageService
from fuelbot.services.telegram_service import TelegramService

logger = get_logger("bot")


def build_dispatcher(source: Settings, session_factory=SessionLocal) -> Dispatcher:
    config = BotConfig.from_settings(source)
    if not config.bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not set; outgoing messages will fail")
    if not config.admin_ids:
        logger.warning("No bot admins configured (ADMIN_USER_IDS / BOT_ADMIN_IDS)")

    transport = TelegramService(config.bot_token, timeout=source.telegram_timeout_seconds)
    services = BotServices(
        transport=transport,
        session_store=build_session_store(config.session_backend, session_factory),
        notifications=NotificationService(transport, config.admin_ids),
        storage=StorageService(transport, config.media_root),
        tenant_admins=GroupAdministratorsDirectory(transport, timeout=config.membership_timeout_seconds),
    )
    logger.info(
        "Dispatcher configured",
        extra={
            "context": {
                "admins": len(config.admin_ids),
                "allowed_groups": len(config.allowed_group_ids),
                "session_backend": config.session_backend,
                "diagnostics": config.enable_diagnostics,
            }
        },
    )
    return Dispatcher(config, services)


@lru_cache
def get_dispatcher() -> Dispatcher:
    return build_dispatcher(settings)
