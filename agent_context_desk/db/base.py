"""
Engine, session factory and declarative base.

The engine is built on first use from ``Settings.database_url``. Async driver
names in the URL are mapped to their synchronous counterparts because both
the ORM and Alembic run synchronously here.
"""

from typing import Any, Dict, Generator, Optional

import structlog
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = structlog.get_logger()

# Async driver -> sync driver
_SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "postgresql+psycopg_async": "postgresql+psycopg",
    "postgresql+aiopg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}

_engine: Optional[Engine] = None


class Base(DeclarativeBase):
    """Declarative base shared by every table of the desk."""


def to_sync_url(url: URL) -> URL:
    sync_driver = _SYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=sync_driver) if sync_driver else url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Database URL with a synchronous driver, password left intact."""
    url = to_sync_url(make_url(raw_url or get_settings().database_url))
    return url.render_as_string(hide_password=False)


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20, "pool_recycle": 1800}


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = get_database_url()
        _engine = create_engine(url, **_engine_options(url))
        logger.debug("database_engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_local() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that is closed after the request."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()


def register_models() -> None:
    """Import every model module so its tables land on ``Base.metadata``."""
    from . import audit_models, bundle_models, models, pin_models  # noqa: F401


async def init_database() -> None:
    """Create any missing table. Migrations remain the way to evolve a schema."""
    register_models()
    Base.metadata.create_all(bind=get_engine())
    logger.info("database_initialized")
