# backend/konarae/api/v1/routers/attachments.py
"""
Attachment API Router.

Endpoints:
    POST /attachments/{id}/reanalyze   Queue a manual reanalysis (202)
    GET  /attachments/{id}/download-url  Signed URL, or the original link
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from ....core.database.models import Attachment
from ....core.ingestion.analysis_orchestrator import analysis_orchestrator
from ....core.shared.database_service import database_service
from ....core.shared.errors import InvalidStateTransition
from ....connectors.adapters.storage_adapter import storage_adapter
from ....core.tasks.analysis import reanalyze_attachment_task

logger = logging.getLogger("konarae.api.attachments")

router = APIRouter(prefix="/attachments", tags=["attachments"])


class ReanalyzeResponse(BaseModel):
    attachment_id: str
    status: str
    task_id: Optional[str] = None


class DownloadUrlResponse(BaseModel):
    attachment_id: str
    url: str
    stored: bool


@router.post(
    "/{attachment_id}/reanalyze",
    response_model=ReanalyzeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reanalyze_attachment(attachment_id: UUID, force: bool = Query(False)):
    """
    Move the attachment to ``analyzing`` and hand the work to a worker.

    Returns immediately; the worker records ``analyzed`` or ``failed``.
    """
    try:
        await analysis_orchestrator.request_reanalysis(attachment_id, force=force)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "status": e.current_status},
        )

    try:
        task = reanalyze_attachment_task.delay(str(attachment_id))
    except Exception as e:
        logger.error(f"Could not queue reanalysis of attachment {attachment_id}: {e}")
        # Nothing will pick the attachment up; release it from ``analyzing``
        await analysis_orchestrator.mark_failed(attachment_id, f"Reanalysis not queued: {e}")
        raise HTTPException(status_code=503, detail="Task queue unavailable, try again later")
    return ReanalyzeResponse(attachment_id=str(attachment_id), status="analyzing", task_id=task.id)


@router.get("/{attachment_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(attachment_id: UUID):
    async with database_service.get_session() as session:
        attachment = await session.get(Attachment, attachment_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail=f"Attachment {attachment_id} not found")

    url = await storage_adapter.get_download_url(attachment)
    return DownloadUrlResponse(attachment_id=str(attachment_id), url=url, stored=attachment.is_stored)
