import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fuelbot.config import settings
from fuelbot.database import init_db
from fuelbot.logging_config import get_logger, setup_logging
from fuelbot.routers import telegram_webhook

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Fuel Bot",
    description="Multi-tenant Telegram bot for company onboarding and fuel expense capture",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(telegram_webhook.router)


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


@app.on_event("startup")
def create_tables() -> None:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    if not _is_env_enabled(os.environ.get("AUTO_CREATE_TABLES"), default=True):
        return
    init_db()
    logger.info("Database tables ensured")


@app.get("/health")
async def health():
    return {"status": "ok"}
