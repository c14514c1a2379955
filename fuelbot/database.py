from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from fuelbot.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create every table known to the models (used on startup and in tests)."""
    import fuelbot.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
