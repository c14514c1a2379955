import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "test-token")

from datetime import datetime, timezone
from itertools import count
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fuelbot.config import BotConfig
from fuelbot.database import init_db
from fuelbot.models import Tenant, Unit
from fuelbot.pipeline.context import BotServices
from fuelbot.pipeline.dispatcher import Dispatcher
from fuelbot.schemas.telegram import TelegramUpdate
from fuelbot.services.access_control import StaticTenantAdminDirectory
from fuelbot.services.notification_service import NotificationService
from fuelbot.services.session_store import MemorySessionStore

ADMIN_ID = 999
GROUP_ID = -100123
USER_ID = 555
# 12:00 in America/Mexico_City (UTC-6)
FIXED_NOW = datetime(2025, 3, 15, 18, 0, tzinfo=timezone.utc)

_update_ids = count(1)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Real file database so concurrent connections contend for locks."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fuelbot.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def transport():
    transport = Mock()
    transport.send_message.return_value = {"ok": True, "result": {"message_id": 1}}
    transport.edit_message.return_value = {"ok": True}
    transport.answer_callback_query.return_value = {"ok": True}
    transport.get_chat_member.return_value = Mock(status="member")
    transport.get_chat_administrators.return_value = []
    return transport


@pytest.fixture
def config():
    return BotConfig(
        bot_token="test-token",
        admin_ids=frozenset({str(ADMIN_ID)}),
        allowed_group_ids=frozenset(),
        membership_timeout_seconds=0.5,
    )


@pytest.fixture
def storage():
    storage = Mock()
    storage.save.return_value = "media/tickets/abc.jpg"
    return storage


@pytest.fixture
def services(transport, storage, config):
    return BotServices(
        transport=transport,
        session_store=MemorySessionStore(),
        notifications=NotificationService(transport, config.admin_ids, follow_up_delay=0),
        storage=storage,
        tenant_admins=StaticTenantAdminDirectory(),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def dispatcher(config, services):
    return Dispatcher(config, services)


@pytest.fixture
def linked_tenant(db):
    tenant = Tenant(
        company_name="Acme Transportes",
        chat_id=str(GROUP_ID),
        is_active=True,
        is_approved=True,
        contact_name="Ana",
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture
def unit(db, linked_tenant):
    unit = Unit(tenant_id=linked_tenant.id, unit_number="U-01", operator_name="Pedro")
    db.add(unit)
    db.commit()
    db.refresh(unit)
    return unit


def _chat(chat_id, chat_type):
    chat = {"id": chat_id, "type": chat_type}
    if chat_type != "private":
        chat["title"] = "Grupo"
    return chat


def text_update(text, chat_id=GROUP_ID, user_id=USER_ID, chat_type=None, username="pepe"):
    chat_type = chat_type or ("private" if chat_id > 0 else "supergroup")
    return TelegramUpdate(
        update_id=next(_update_ids),
        message={
            "message_id": next(_update_ids),
            "date": 1741960800,
            "chat": _chat(chat_id, chat_type),
            "from": {"id": user_id, "is_bot": False, "first_name": "Pepe", "username": username},
            "text": text,
        },
    )


def photo_update(file_id="photo-1", chat_id=GROUP_ID, user_id=USER_ID):
    chat_type = "private" if chat_id > 0 else "supergroup"
    return TelegramUpdate(
        update_id=next(_update_ids),
        message={
            "message_id": next(_update_ids),
            "date": 1741960800,
            "chat": _chat(chat_id, chat_type),
            "from": {"id": user_id, "is_bot": False, "first_name": "Pepe"},
            "photo": [
                {"file_id": "thumb", "file_unique_id": "t", "width": 90, "height": 90, "file_size": 100},
                {"file_id": file_id, "file_unique_id": "f", "width": 800, "height": 600, "file_size": 50000},
            ],
        },
    )


def callback_update(data, chat_id=GROUP_ID, user_id=USER_ID, chat_type=None):
    chat_type = chat_type or ("private" if chat_id > 0 else "supergroup")
    return TelegramUpdate(
        update_id=next(_update_ids),
        callback_query={
            "id": f"cb-{next(_update_ids)}",
            "from": {"id": user_id, "is_bot": False, "first_name": "Pepe"},
            "data": data,
            "message": {
                "message_id": next(_update_ids),
                "date": 1741960800,
                "chat": _chat(chat_id, chat_type),
                "text": "botones",
            },
        },
    )


def sent_texts(transport) -> list[str]:
    """Every text the bot sent or edited, in order."""
    texts = []
    for call in transport.method_calls:
        name, args, kwargs = call
        if name == "send_message":
            texts.append(args[1] if len(args) > 1 else kwargs.get("text"))
        elif name == "edit_message":
            texts.append(args[2] if len(args) > 2 else kwargs.get("text"))
        elif name == "answer_callback_query" and kwargs.get("text"):
            texts.append(kwargs["text"])
    return texts


def last_text(transport) -> str:
    texts = sent_texts(transport)
    return texts[-1] if texts else ""


def failing_queries(db, model):
    """Queries on model raise a driver error; everything else hits the database."""
    real_query = db.query

    def query(*entities, **kwargs):
        if entities and entities[0] is model:
            raise OperationalError("SELECT", {}, Exception("db down"))
        return real_query(*entities, **kwargs)

    return patch.object(db, "query", side_effect=query)
