"""
Engine and session factories.

Nothing here connects at import time: the API factory (ledger_service.main)
and the Celery worker (worker_process_init) build the engine and own it.
"""
from typing import Any, Generator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ledger_service.core.config import settings


def build_engine(database_url: str | None = None, **overrides: Any) -> Engine:
    url = database_url or settings.database_url
    if not url.startswith("postgresql"):
        return create_engine(url, **overrides)
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_recycle": settings.db_pool_recycle,  # avoid stale connections
        "connect_args": {
            "connect_timeout": settings.db_connect_timeout,
            # account row locks must not be waited on forever
            "options": f"-c lock_timeout={settings.db_lock_timeout_ms}",
        },
    }
    options.update(overrides)
    return create_engine(url, **options)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db(request: Request) -> Generator[Session, None, None]:
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
