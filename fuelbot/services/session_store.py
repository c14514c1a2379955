"""Per chat+user conversation session storage.

Every read goes through ``repair_session`` so callers always get a well-formed
``ConversationSession``. ``lock(key)`` serializes processing of a single
session while leaving other chats fully parallel.
"""

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuelbot.logging_config import get_logger
from fuelbot.models import ChatSessionRow
from fuelbot.schemas.session import ConversationSession, repair_session
from fuelbot.services.errors import TransientError

logger = get_logger("session_store")

SessionKey = tuple[str, str]


def key_for(chat_id, user_id) -> SessionKey:
    return (str(chat_id), str(user_id) if user_id is not None else "")


class KeyedLocks:
    """Registry of reference-counted locks, one per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[SessionKey, list] = {}

    @contextmanager
    def hold(self, key: SessionKey) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class SessionStore:
    def __init__(self):
        self._locks = KeyedLocks()

    def lock(self, key: SessionKey):
        return self._locks.hold(key)

    def load(self, key: SessionKey) -> ConversationSession:
        return repair_session(self._read(key))

    def save(self, key: SessionKey, session: ConversationSession) -> None:
        self._write(key, session.dump())

    def reset(self, key: SessionKey) -> ConversationSession:
        session = ConversationSession()
        self.save(key, session)
        return session

    def _read(self, key: SessionKey):
        raise NotImplementedError

    def _write(self, key: SessionKey, payload: dict) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """Process-local store. Payloads are kept serialized so readers never share objects."""

    def __init__(self):
        super().__init__()
        self._data: dict[SessionKey, dict] = {}
        self._data_guard = threading.Lock()

    def _read(self, key: SessionKey):
        with self._data_guard:
            return self._data.get(key)

    def _write(self, key: SessionKey, payload: dict) -> None:
        with self._data_guard:
            self._data[key] = payload

    def put_raw(self, key: SessionKey, payload) -> None:
        """Store an arbitrary payload (used to seed legacy or corrupted data)."""
        with self._data_guard:
            self._data[key] = payload


class SqlSessionStore(SessionStore):
    """Store backed by the chat_sessions table; every save commits."""

    def __init__(self, session_factory: Callable[[], Session]):
        super().__init__()
        self.session_factory = session_factory

    def _read(self, key: SessionKey):
        db = self.session_factory()
        try:
            row = db.get(ChatSessionRow, {"chat_id": key[0], "user_id": key[1]})
            return row.payload if row else None
        except SQLAlchemyError as e:
            logger.error("Session read failed", extra={"context": {"key": list(key), "error": str(e)}})
            raise TransientError(f"Session read failed: {e}") from e
        finally:
            db.close()

    def _write(self, key: SessionKey, payload: dict) -> None:
        db = self.session_factory()
        try:
            row = db.get(ChatSessionRow, {"chat_id": key[0], "user_id": key[1]})
            if row is None:
                db.add(ChatSessionRow(chat_id=key[0], user_id=key[1], payload=payload))
            else:
                row.payload = payload
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientError(f"Session write failed: {e}") from e
        finally:
            db.close()


def build_session_store(backend: str, session_factory: Optional[Callable[[], Session]] = None) -> SessionStore:
    if backend == "sql":
        if session_factory is None:
            raise ValueError("sql session backend needs a session factory")
        return SqlSessionStore(session_factory)
    if backend != "memory":
        logger.warning("Unknown session backend, using memory", extra={"context": {"backend": backend}})
    return MemorySessionStore()
