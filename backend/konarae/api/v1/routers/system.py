# backend/konarae/api/v1/routers/system.py
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter

from ....config import settings
from ....core.shared.database_service import database_service
from ....connectors.adapters.document_analysis_adapter import document_analysis_adapter

router = APIRouter()


@router.get("/health", tags=["System"])
async def health_check() -> Dict[str, Any]:
    """Health check endpoint."""
    database = await database_service.health_check()
    return {
        "status": "healthy" if database.get("status") == "healthy" else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.api_version,
        "database": database,
        "llm_configured": document_analysis_adapter.is_available,
    }
