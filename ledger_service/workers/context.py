"""
Per-process worker state.

The session factory is created by the worker entry point (worker_process_init
in core.celery_app) and read by tasks; importing a task never connects to the
database.
"""
from sqlalchemy.orm import Session, sessionmaker

from ledger_service.db.session import build_engine, build_session_factory

_session_factory: sessionmaker | None = None


def init_session_factory(database_url: str | None = None) -> sessionmaker:
    global _session_factory
    _session_factory = build_session_factory(build_engine(database_url))
    return _session_factory


def open_session() -> Session:
    if _session_factory is None:
        # eager tasks / scripts that skipped worker_process_init
        init_session_factory()
    return _session_factory()
