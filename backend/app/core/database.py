from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {
        "pool_pre_ping": True,  # checks stale connections
    }
    if make_url(url).get_backend_name() == "postgresql":
        kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT_SECONDS
        kwargs["connect_args"] = {
            "connect_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
        }
    return kwargs


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
