#!/usr/bin/env python3
"""
Create the ledger tables (accounts, transactions) in DATABASE_URL.
Run from the project root: python -m scripts.init_db
"""
import logging

from ledger_service.core.logging import configure_logging
from ledger_service.db.base import Base
from ledger_service.db.session import build_engine

# registers the models on Base.metadata
from ledger_service.models import account, transaction  # noqa: F401

logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging()
    engine = build_engine()
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("schema_created", extra={"status": "ok"})
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
