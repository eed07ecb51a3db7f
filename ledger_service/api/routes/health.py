from fastapi import APIRouter, Depends, Request, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_service.db.session import get_db


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(request: Request, response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe - returns 503 if the ledger database or Redis is unavailable."""
    try:
        # Check database
        db.execute(text("SELECT 1"))

        # Check Redis
        request.app.state.idempotency_store.client.ping()

        return {"status": "ready"}
    except (SQLAlchemyError, redis.RedisError) as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
