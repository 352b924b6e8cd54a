"""
Dependencies for database sessions and the run manager.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from payment_check.database import SessionLocal
from payment_check.services.run_manager import RunManager
from payment_check.utils import get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_run_manager(request: Request) -> RunManager:
    """Return the run manager created during application startup."""
    manager = getattr(request.app.state, "run_manager", None)
    if manager is None:
        logger.error("Run manager requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment check service not available",
        )
    return manager
