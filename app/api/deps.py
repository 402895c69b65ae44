"""
Dependencies for database sessions and the import run registry.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.services.import_service import ImportManager, ImportRun
from app.services.import_errors import ImportSetupError
from app.utils import get_logger

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

def get_import_manager(request: Request) -> ImportManager:
    """Import manager created during application startup (tests install their own)."""
    manager = getattr(request.app.state, "import_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Import manager not available"
        )
    return manager

def lookup_run(manager: ImportManager, run_id: str) -> ImportRun:
    """
    Resolve a run id or fail with 404.

    Args:
        manager: Import manager holding the in-memory runs
        run_id: Import run identifier

    Raises:
        HTTPException: If the run is unknown to this process
    """
    try:
        return manager.get_run(run_id)
    except ImportSetupError:
        logger.warning("Import run not found", run_id=run_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Import run {run_id} not found"
        )
