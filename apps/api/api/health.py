"""Health check endpoint."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from apps.api.database import get_db

router = APIRouter()


@router.get("/healthz")
async def health_check(request: Request, db: Session = Depends(get_db)):
    """Health check endpoint."""
    service = getattr(request.app.state, "oauth_service", None)
    providers = service.registry.names if service is not None else []
    try:
        # Test database connection
        db.execute(text("SELECT 1"))

        return {"status": "ok", "database": "connected", "providers": providers}
    except Exception as e:
        return {"status": "error", "database": "disconnected", "error": str(e)}
