# ============================================================================
# backend/konarae/core/ingestion/analysis_orchestrator.py
# ============================================================================
"""
Analysis Orchestrator - attachment analysis and announcement field extraction.

Attachment state machine:

    uploaded ──► analyzing ──► analyzed
                    │    ▲
                    ▼    │ (manual reanalysis)
                  failed ┘

    - ``analyzing`` rejects a concurrent reanalysis request
    - ``analyzed`` rejects reanalysis unless forced
    - transitions are otherwise one-directional

Per announcement, stored attachments are analyzed one at a time in parsing
priority order. A failing attachment is recorded (status ``failed`` plus
``parse_error``) and the remaining text is still used for field extraction.

Every database read and write goes through ``with_retry`` in its own short
session, so a transient pool/timeout error only repeats that single step.

Usage:
    from konarae.core.ingestion.analysis_orchestrator import analysis_orchestrator

    await analysis_orchestrator.process_announcement(project_id)
"""

import base64
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select

from konarae.config import settings
from konarae.connectors.adapters.browser_pool import BrowserPool, browser_pool
from konarae.connectors.adapters.document_analysis_adapter import (
    AnalysisResult,
    DocumentAnalysisAdapter,
    document_analysis_adapter,
)
from konarae.connectors.adapters.fetch_adapter import FetchAdapter
from konarae.connectors.adapters.storage_adapter import StorageAdapter, storage_adapter
from konarae.connectors.scrape.attachment_policy import mime_type_for
from konarae.connectors.scrape.validators import validate_category
from konarae.core.database.models import Announcement, Attachment
from konarae.core.shared.config_loader import config_loader
from konarae.core.shared.database_service import DatabaseService, database_service
from konarae.core.shared.errors import AnalysisError, FetchError, InvalidStateTransition, StorageError
from konarae.core.shared.retry import RetryPolicy, with_retry

logger = logging.getLogger("konarae.analysis_orchestrator")

ALLOWED_TRANSITIONS = {
    "uploaded": {"analyzing"},
    "analyzing": {"analyzed", "failed"},
    "failed": {"analyzing"},
    "analyzed": set(),
}

TEXT_FIELDS = (
    "summary",
    "description",
    "eligibility",
    "application_process",
    "evaluation_criteria",
    "contact_info",
    "funding_summary",
    "amount_description",
    "target",
)
DATE_FIELDS = ("start_date", "end_date", "deadline")


def transition(attachment: Attachment, new_status: str, force: bool = False) -> None:
    """
    Move an attachment to ``new_status`` or raise InvalidStateTransition.

    ``force`` only unlocks ``analyzed -> analyzing``.
    """
    current = attachment.analysis_status or "uploaded"
    allowed = set(ALLOWED_TRANSITIONS.get(current, set()))
    if force and current == "analyzed":
        allowed.add("analyzing")
    if new_status not in allowed:
        raise InvalidStateTransition(
            f"Cannot move attachment {attachment.id} from '{current}' to '{new_status}'",
            current_status=current,
        )
    attachment.analysis_status = new_status


def check_reanalysis(attachment: Attachment, force: bool = False) -> None:
    """Guard for a manual reanalysis request."""
    status = attachment.analysis_status
    if status == "analyzing":
        raise InvalidStateTransition("Analysis already in progress", current_status=status)
    if status == "analyzed" and not force:
        raise InvalidStateTransition(
            "Attachment already analyzed; pass force to reanalyze", current_status=status
        )


def _parse_date(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    for fmt in ("%Y-%m-%d", "%Y.%m.%d", "%Y/%m/%d"):
        try:
            return datetime.strptime(value.strip()[:10], fmt)
        except ValueError:
            continue
    return None


def _parse_amount(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else None
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    return int(digits) if digits else None


def apply_announcement_fields(project: Announcement, fields: Dict[str, Any]) -> None:
    """Copy extracted fields onto the announcement, never blanking known values."""
    for name in TEXT_FIELDS:
        value = fields.get(name)
        if isinstance(value, str) and value.strip():
            setattr(project, name, value.strip())

    for name in DATE_FIELDS:
        parsed = _parse_date(fields.get(name))
        if parsed is not None:
            setattr(project, name, parsed)
    if project.deadline is None and project.end_date is not None:
        project.deadline = project.end_date

    amount_min = _parse_amount(fields.get("amount_min"))
    amount_max = _parse_amount(fields.get("amount_max"))
    if amount_min is not None:
        project.amount_min = amount_min
    if amount_max is not None:
        project.amount_max = amount_max

    documents = fields.get("required_documents")
    if isinstance(documents, list):
        project.required_documents = [str(d) for d in documents if d]

    if isinstance(fields.get("is_permanent"), bool):
        project.is_permanent = fields["is_permanent"]

    if fields.get("category") and (not project.category or project.category == "기타"):
        project.category = validate_category(str(fields["category"]))


def build_announcement_text(
    project: Announcement,
    attachments: List[Attachment],
    max_chars: int,
) -> str:
    """Detail text followed by parsed attachment text in priority order."""
    parts = []
    if project.detail_text:
        parts.append(project.detail_text.strip())
    for attachment in sorted(attachments, key=lambda a: -(a.parsing_priority or 0)):
        if attachment.is_stored and attachment.is_parsed and attachment.parsed_content:
            parts.append(f"[첨부파일: {attachment.file_name}]\n{attachment.parsed_content.strip()}")
    return "\n\n".join(parts)[:max_chars]


class AnalysisOrchestrator:
    """Drives attachment analysis and announcement field extraction."""

    def __init__(
        self,
        analysis_adapter: Optional[DocumentAnalysisAdapter] = None,
        storage: Optional[StorageAdapter] = None,
        fetch_adapter: Optional[FetchAdapter] = None,
        database: Optional[DatabaseService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        pool: Optional[BrowserPool] = None,
    ):
        self.analysis_adapter = analysis_adapter or document_analysis_adapter
        self.storage = storage or storage_adapter
        self.browser_pool = pool or browser_pool
        self._fetch_adapter = fetch_adapter
        self.database = database or database_service
        self.retry_policy = retry_policy

    @property
    def fetch_adapter(self) -> FetchAdapter:
        """Re-fetches attachments that were never stored."""
        if self._fetch_adapter is None:
            self._fetch_adapter = FetchAdapter(
                browser_pool=self.browser_pool,
                extra_waf_domains=config_loader.get_waf_domains(),
            )
        return self._fetch_adapter

    async def close(self) -> None:
        if self._fetch_adapter is not None:
            await self._fetch_adapter.close()

    async def _write(self, description: str, mutate: Callable) -> Any:
        """Run ``mutate(session)`` in a fresh session under the retry policy."""
        async def _operation():
            async with self.database.get_session() as session:
                return await mutate(session)

        return await with_retry(_operation, policy=self.retry_policy, description=description)

    async def _read(self, description: str, query: Callable) -> Any:
        """Read-only counterpart of ``_write``; the session commits nothing."""
        return await self._write(description, query)

    # =========================================================================
    # State machine entry points
    # =========================================================================

    async def request_reanalysis(self, attachment_id: UUID, force: bool = False) -> Attachment:
        """
        Accept a manual reanalysis request and move the attachment to ``analyzing``.

        Raises:
            LookupError: Unknown attachment
            InvalidStateTransition: Already analyzing, or analyzed without force
        """
        async def _mutate(session):
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                raise LookupError(f"Attachment {attachment_id} not found")
            check_reanalysis(attachment, force=force)
            transition(attachment, "analyzing", force=force)
            attachment.parse_error = None
            return attachment

        attachment = await self._write("reanalysis request", _mutate)
        logger.info(f"Reanalysis requested for attachment {attachment_id} (force={force})")
        return attachment

    async def _mark_analyzing(self, attachment_id: UUID) -> Optional[Attachment]:
        async def _mutate(session):
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                return None
            if attachment.analysis_status != "analyzing":
                transition(attachment, "analyzing")
            return attachment

        return await self._write("mark analyzing", _mutate)

    async def _record_result(self, attachment_id: UUID, result: AnalysisResult) -> None:
        async def _mutate(session):
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                return
            if result.success:
                transition(attachment, "analyzed")
                attachment.is_parsed = True
                attachment.parsed_content = result.text
                attachment.parse_error = None
                attachment.analysis_summary = result.summary
                attachment.analysis_data = {
                    "extractedData": result.extracted_data,
                    "keyInsights": result.key_insights,
                }
                attachment.confidence_score = result.confidence_score
            else:
                transition(attachment, "failed")
                attachment.is_parsed = False
                attachment.parse_error = result.error or "Analysis failed"

        await self._write("record analysis result", _mutate)

    async def mark_failed(self, attachment_id: UUID, error: str) -> None:
        """Force an in-flight attachment to ``failed`` with an error message."""
        async def _mutate(session):
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                return
            if attachment.analysis_status != "failed":
                if attachment.analysis_status != "analyzing":
                    transition(attachment, "analyzing")
                transition(attachment, "failed")
            attachment.parse_error = error

        await self._write("mark failed", _mutate)

    # =========================================================================
    # Attachment analysis
    # =========================================================================

    async def _load_bytes(self, attachment: Attachment) -> bytes:
        if attachment.storage_path:
            return await self.storage.download_from_storage(attachment.storage_path)
        if not attachment.source_url:
            raise AnalysisError("Attachment is neither stored nor linked")
        return await self.fetch_adapter.download(
            attachment.source_url, max_bytes=settings.attachment_max_parse_bytes
        )

    async def analyze_attachment(self, attachment_id: UUID) -> AnalysisResult:
        """
        Analyze one attachment and record the outcome on it.

        Content problems (unreadable bytes, model failure) end in ``failed``
        with ``parse_error``; persistence errors that survive the retry policy
        propagate.
        """
        attachment = await self._mark_analyzing(attachment_id)
        if attachment is None:
            raise LookupError(f"Attachment {attachment_id} not found")

        try:
            data = await self._load_bytes(attachment)
        except (StorageError, FetchError, AnalysisError) as e:
            logger.warning(f"Could not read attachment {attachment_id}: {e}")
            result = AnalysisResult(success=False, error=str(e))
        else:
            mime_type = attachment.mime_type or mime_type_for(attachment.file_type)
            result = await self.analysis_adapter.analyze_document(
                "announcement_attachment",
                base64.b64encode(data).decode("ascii"),
                mime_type,
            )

        await self._record_result(attachment_id, result)
        if result.success:
            logger.info(f"Analyzed attachment {attachment_id} ({attachment.file_name})")
        else:
            logger.warning(f"Attachment {attachment_id} analysis failed: {result.error}")
        return result

    # =========================================================================
    # Announcement analysis
    # =========================================================================

    async def analyze_announcement(self, project_id: UUID) -> Optional[Dict[str, Any]]:
        """
        Extract structured fields from the announcement's available text.

        Returns:
            The extracted fields, or None when nothing could be extracted
        """
        async def _query(session):
            project = await session.get(Announcement, project_id)
            if project is None:
                raise LookupError(f"Announcement {project_id} not found")
            result = await session.execute(
                select(Attachment).where(Attachment.project_id == project_id)
            )
            return build_announcement_text(
                project, list(result.scalars().all()), settings.analysis_max_text_chars
            )

        text = await self._read("load announcement text", _query)

        if not text.strip():
            logger.info(f"No text available for announcement {project_id}")
            return None

        fields = await self.analysis_adapter.extract_announcement_fields(text)

        async def _mutate(session):
            project = await session.get(Announcement, project_id)
            if project is None:
                return
            if fields:
                apply_announcement_fields(project, fields)
                project.analysis_status = "analyzed"
                project.needs_embedding = True
            else:
                project.analysis_status = "failed"

        await self._write("store announcement fields", _mutate)
        return fields

    async def run_reanalysis(self, attachment_id: UUID) -> AnalysisResult:
        """
        Worker side of a reanalysis request: analyze the attachment, then
        refresh the announcement fields from the new text.

        An unexpected error leaves the attachment ``failed`` rather than
        stuck in ``analyzing``.
        """
        try:
            result = await self.analyze_attachment(attachment_id)
        except Exception as e:
            logger.error(f"Reanalysis of attachment {attachment_id} aborted: {e}", exc_info=True)
            await self.mark_failed(attachment_id, str(e))
            raise

        async def _query(session):
            attachment = await session.get(Attachment, attachment_id)
            return attachment.project_id if attachment else None

        project_id = await self._read("load attachment project", _query)
        if result.success and project_id is not None:
            await self.analyze_announcement(project_id)
        return result

    async def process_announcement(self, project_id: UUID) -> Dict[str, int]:
        """
        Analyze pending stored attachments, then extract announcement fields.

        Returns:
            {"analyzed": n, "failed": n}
        """
        async def _query(session):
            result = await session.execute(
                select(Attachment.id)
                .where(
                    Attachment.project_id == project_id,
                    Attachment.should_parse.is_(True),
                    Attachment.storage_path.isnot(None),
                    Attachment.analysis_status == "uploaded",
                )
                .order_by(Attachment.parsing_priority.desc(), Attachment.created_at.asc())
            )
            return list(result.scalars().all())

        attachment_ids = await self._read("list pending attachments", _query)

        stats = {"analyzed": 0, "failed": 0}
        for attachment_id in attachment_ids:
            try:
                analysis = await self.analyze_attachment(attachment_id)
            except Exception as e:
                logger.error(f"Attachment {attachment_id} aborted: {e}", exc_info=True)
                stats["failed"] += 1
                try:
                    await self.mark_failed(attachment_id, str(e))
                except Exception as mark_error:
                    logger.error(f"Could not mark attachment {attachment_id} failed: {mark_error}")
                continue
            stats["analyzed" if analysis.success else "failed"] += 1

        await self.analyze_announcement(project_id)
        return stats


# Global orchestrator instance
analysis_orchestrator = AnalysisOrchestrator()
