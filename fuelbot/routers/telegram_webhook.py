import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from fuelbot.bot import get_dispatcher
from fuelbot.config import settings
from fuelbot.database import get_db
from fuelbot.logging_config import get_logger
from fuelbot.pipeline.dispatcher import Dispatcher, run_deferred
from fuelbot.schemas.telegram import TelegramUpdate, TelegramWebhookResponse

logger = get_logger("telegram_webhook")

router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def verify_secret(request: Request) -> None:
    expected = settings.webhook_secret
    if expected and request.headers.get(SECRET_HEADER) != expected:
        logger.warning("Webhook call with wrong secret token")
        raise HTTPException(status_code=403, detail="Invalid secret token")


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """
    Handle a Telegram update: messages and button presses go through the
    dispatcher; deferred follow-ups run after the response is sent.
    """
    verify_secret(request)

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    try:
        update = TelegramUpdate(**body)
    except (PydanticValidationError, TypeError) as e:
        logger.warning("Unparseable Telegram update", extra={"context": {"error": str(e)}})
        return TelegramWebhookResponse(success=False, message="Invalid telegram update")

    if not update.message and not update.callback_query:
        return TelegramWebhookResponse(success=True, message="No actionable content")

    # the pipeline is synchronous; keep it off the event loop
    ctx = await run_in_threadpool(dispatcher.dispatch, update, db)

    if ctx.deferred:
        background_tasks.add_task(run_deferred, list(ctx.deferred))

    if ctx.error is not None:
        return TelegramWebhookResponse(success=False, message="Update failed")
    return TelegramWebhookResponse(success=True, message="handled" if ctx.handled else "ignored")


# Alias kept for webhook registrations that still point at the old path
@router.post("/telegram-callback", response_model=TelegramWebhookResponse)
async def handle_telegram_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await handle_telegram_webhook(request, background_tasks, db, dispatcher)
