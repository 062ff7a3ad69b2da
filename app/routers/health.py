# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + store backend + WhatsApp gateway configuration.
"""

from fastapi import APIRouter
from sqlalchemy import text
from app.config import settings
from datetime import datetime

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check():
    """
    Returns:
    - Backend status
    - Database connectivity (sql backend only)
    - Whether WhatsApp delivery is configured
    """
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "backend": "ok",
        "store": settings.STORE_BACKEND,
        "database": "n/a",
        "whatsapp": "enabled" if settings.WHATSAPP_ENABLED else "disabled",
    }

    if settings.STORE_BACKEND == "sql":
        from app.database import SessionLocal
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            result["database"] = "ok"
        except Exception as e:
            result["database"] = f"error: {str(e)}"
            result["status"] = "degraded"
        finally:
            db.close()

    return result
