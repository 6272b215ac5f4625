"""
Document Analysis Adapter - OpenAI-compatible LLM client for document understanding.

Two black-box operations consumed by the analysis orchestrator:

    analyze_document(document_type, file_base64, mime_type) -> AnalysisResult
        Reads one attachment (PDF sent as a file part, HWPX unpacked to text
        locally) and returns extracted data, a summary and key insights.

    extract_announcement_fields(full_text) -> dict | None
        Extracts structured catalog fields from the concatenated detail and
        attachment text.

Neither operation raises on model or parsing failures: analyze_document
returns ``AnalysisResult(success=False, error=...)`` and field extraction
returns None.

Usage:
    from konarae.connectors.adapters.document_analysis_adapter import document_analysis_adapter

    result = await document_analysis_adapter.analyze_document("announcement", data_b64, "application/pdf")
"""

import asyncio
import base64
import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from lxml import etree
from openai import OpenAI

from konarae.config import settings

logger = logging.getLogger("konarae.document_analysis")

ANNOUNCEMENT_FIELDS = (
    "summary",
    "description",
    "eligibility",
    "application_process",
    "evaluation_criteria",
    "required_documents",
    "contact_info",
    "funding_summary",
    "amount_min",
    "amount_max",
    "amount_description",
    "deadline",
    "start_date",
    "end_date",
    "is_permanent",
    "category",
    "target",
)

DOCUMENT_PROMPT = """당신은 정부 지원사업 공고 첨부문서를 분석하는 전문가입니다.
문서 유형: {document_type}

문서를 읽고 아래 JSON 형식으로만 응답하세요:
```json
{{
  "extractedData": {{
    "title": "문서 제목",
    "content": "문서 본문 전체 텍스트 (표는 행 단위로 풀어서)",
    "eligibility": "신청 자격",
    "funding": "지원 내용 및 금액",
    "deadline": "접수 마감일 (YYYY-MM-DD)",
    "requiredDocuments": ["제출 서류"],
    "contact": "문의처"
  }},
  "summary": "3문장 이내 요약",
  "keyInsights": ["핵심 포인트"]
}}
```"""

FIELDS_PROMPT = """다음은 정부 지원사업 공고의 상세 페이지와 첨부문서 텍스트입니다.
아래 필드를 추출하여 JSON 객체로만 응답하세요. 알 수 없는 값은 null로 두세요.

- summary: 3문장 이내 요약
- description: 사업 목적 및 내용
- eligibility: 신청 자격
- application_process: 신청 방법 및 절차
- evaluation_criteria: 평가/선정 기준
- required_documents: 제출 서류 목록 (문자열 배열)
- contact_info: 문의처
- funding_summary: 지원 규모 요약
- amount_min, amount_max: 지원 금액 (원화 정수, "최대 1억원"이면 amount_max=100000000)
- amount_description: 지원 금액 원문
- start_date, end_date, deadline: YYYY-MM-DD
- is_permanent: 상시 모집 여부 (true/false)
- category: 인력, 수출, 창업, 기술, 자금, 판로, 경영, R&D, 글로벌, 사업화, 기타 중 하나
- target: 지원 대상 (예: 중소기업, 예비창업자)

텍스트:
{text}"""

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class AnalysisResult:
    """Outcome of one document analysis call."""

    success: bool
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    summary: Optional[str] = None
    key_insights: List[str] = field(default_factory=list)
    confidence_score: Optional[float] = None
    error: Optional[str] = None

    @property
    def text(self) -> str:
        """Best available plain text for downstream field extraction."""
        content = self.extracted_data.get("content") if self.extracted_data else None
        if isinstance(content, str) and content.strip():
            return content.strip()
        parts = [self.summary or ""] + [str(i) for i in self.key_insights]
        return "\n".join(p for p in parts if p).strip()


def parse_json_response(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a model reply that may wrap its JSON in a ```json block."""
    if not text:
        return None
    match = _JSON_BLOCK.search(text)
    candidate = match.group(1) if match else text
    try:
        parsed = json.loads(candidate.strip())
    except json.JSONDecodeError:
        fallback = _JSON_OBJECT.search(candidate)
        if not fallback:
            return None
        try:
            parsed = json.loads(fallback.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def confidence_for(extracted_data: Dict[str, Any]) -> float:
    """Heuristic confidence: 0.5 base, +0.3 if anything was found, +0.05 per filled field (max +0.2)."""
    def filled(value: Any) -> bool:
        if isinstance(value, (list, dict)):
            return len(value) > 0
        return value not in (None, "")

    filled_count = sum(1 for value in extracted_data.values() if filled(value))
    score = 0.5
    if filled_count:
        score += 0.3
    score += min(filled_count * 0.05, 0.2)
    return min(score, 1.0)


def hwpx_to_text(data: bytes) -> str:
    """Extract paragraph text from an HWPX package (zipped OWPML sections)."""
    lines: List[str] = []
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        sections = sorted(
            name for name in archive.namelist()
            if name.startswith("Contents/section") and name.endswith(".xml")
        )
        for name in sections:
            root = etree.fromstring(archive.read(name))
            for paragraph in root.iter("{*}p"):
                text = "".join(t.text or "" for t in paragraph.iter("{*}t")).strip()
                if text:
                    lines.append(text)
    return "\n".join(lines)


class DocumentAnalysisAdapter:
    """OpenAI-compatible client wrapper for attachment and announcement analysis."""

    def __init__(self, client: Optional[OpenAI] = None):
        self._client = client
        if self._client is None:
            self._initialize_client()

    def _initialize_client(self) -> None:
        if not settings.openai_api_key:
            logger.warning("No LLM API key configured; document analysis disabled")
            self._client = None
            return

        self._client = OpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            http_client=httpx.Client(timeout=settings.openai_timeout),
            max_retries=settings.openai_max_retries,
        )
        logger.info(f"Document analysis client initialized (model: {settings.openai_model})")

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _complete(self, messages: List[Dict[str, Any]], json_mode: bool = False) -> str:
        kwargs: Dict[str, Any] = {
            "model": settings.openai_model,
            "messages": messages,
            "temperature": 0.2,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self._client.chat.completions.create(**kwargs)
        return resp.choices[0].message.content or ""

    def _document_messages(
        self, document_type: str, file_base64: str, mime_type: str
    ) -> List[Dict[str, Any]]:
        prompt = DOCUMENT_PROMPT.format(document_type=document_type)

        if mime_type == "application/vnd.hancom.hwpx":
            text = hwpx_to_text(base64.b64decode(file_base64))
            return [{
                "role": "user",
                "content": f"{prompt}\n\n문서 내용:\n{text[: settings.analysis_max_text_chars]}",
            }]

        return [{
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {
                    "type": "file",
                    "file": {
                        "filename": f"document.{mime_type.rsplit('/', 1)[-1]}",
                        "file_data": f"data:{mime_type};base64,{file_base64}",
                    },
                },
            ],
        }]

    async def analyze_document(
        self,
        document_type: str,
        file_base64: str,
        mime_type: str,
    ) -> AnalysisResult:
        """
        Analyze one document.

        Args:
            document_type: Logical type used in the prompt (e.g. "announcement")
            file_base64: File content, base64-encoded
            mime_type: MIME type of the file

        Returns:
            AnalysisResult; ``success`` is False with ``error`` set on any failure
        """
        if not self.is_available:
            return AnalysisResult(success=False, error="LLM client not configured")

        try:
            messages = self._document_messages(document_type, file_base64, mime_type)
            text = await asyncio.to_thread(self._complete, messages)
        except Exception as e:
            logger.error(f"Document analysis call failed: {e}")
            return AnalysisResult(success=False, error=str(e))

        parsed = parse_json_response(text)
        if not parsed or not parsed.get("extractedData") or not parsed.get("summary"):
            logger.warning("Document analysis response could not be parsed")
            return AnalysisResult(success=False, error="Unparseable analysis response")

        extracted = parsed["extractedData"] if isinstance(parsed["extractedData"], dict) else {}
        insights = parsed.get("keyInsights") or []
        return AnalysisResult(
            success=True,
            extracted_data=extracted,
            summary=str(parsed["summary"]),
            key_insights=[str(i) for i in insights] if isinstance(insights, list) else [],
            confidence_score=confidence_for(extracted),
        )

    async def extract_announcement_fields(self, full_text: str) -> Optional[Dict[str, Any]]:
        """
        Extract structured catalog fields from announcement text.

        Returns:
            Dict restricted to the known field names, or None on failure
        """
        if not self.is_available or not full_text or not full_text.strip():
            return None

        text = full_text[: settings.analysis_max_text_chars]
        messages = [
            {"role": "system", "content": "You extract structured data and reply with JSON only."},
            {"role": "user", "content": FIELDS_PROMPT.format(text=text)},
        ]
        try:
            reply = await asyncio.to_thread(self._complete, messages, True)
        except Exception as e:
            logger.error(f"Announcement field extraction failed: {e}")
            return None

        parsed = parse_json_response(reply)
        if parsed is None:
            logger.warning("Announcement field extraction returned unparseable JSON")
            return None
        return {key: parsed.get(key) for key in ANNOUNCEMENT_FIELDS if key in parsed}


# Global adapter instance
document_analysis_adapter = DocumentAnalysisAdapter()
