"""
Attachment classification and selective-storage policy.

Most announcement attachments are boilerplate forms or images. Only parseable
documents (hwp, hwpx, pdf) that look substantive by file name and fit under
the size ceiling are downloaded and stored; everything else keeps its remote
URL only.
"""

import re
from typing import Optional
from urllib.parse import unquote, urlparse

from konarae.config import settings

PARSEABLE_TYPES = ("hwp", "hwpx", "pdf")

MIME_TYPES = {
    "pdf": "application/pdf",
    "hwp": "application/x-hwp",
    "hwpx": "application/vnd.hancom.hwpx",
}

_MIME_TO_TYPE = {
    "application/pdf": "pdf",
    "application/x-hwp": "hwp",
    "application/haansofthwp": "hwp",
    "application/vnd.hancom.hwp": "hwp",
    "application/vnd.hancom.hwpx": "hwpx",
    "application/hwp+zip": "hwpx",
}

# Non-documents
SKIP_KEYWORDS = (
    "로고",
    "이미지",
    "배너",
    "썸네일",
    "포스터",
    "사진",
    "photo",
    "image",
    "logo",
    "banner",
    "poster",
)

# Blank templates and filled-in samples
TEMPLATE_KEYWORDS = (
    "템플릿",
    "서식",
    "견본",
    "작성예시",
    "기재예시",
    "template",
    "sample",
)

_EXTENSION_PATTERN = re.compile(r"\.(hwpx|hwp|pdf)(?:$|[?#&\s)\]])", re.IGNORECASE)


def classify_attachment(
    file_name: str,
    url: Optional[str] = None,
    mime_type: Optional[str] = None,
) -> str:
    """
    Classify an attachment as hwp, hwpx, pdf or other.

    The file name extension wins, then the URL path, then the MIME type.
    """
    for candidate in (file_name, unquote(urlparse(url).path) if url else None):
        if not candidate:
            continue
        match = _EXTENSION_PATTERN.search(candidate.strip())
        if match:
            return match.group(1).lower()

    if mime_type:
        return _MIME_TO_TYPE.get(mime_type.split(";")[0].strip().lower(), "other")
    return "other"


def get_parsing_priority(file_name: str) -> int:
    """Higher first: announcement 100, forms 80, plans 70, evaluation 60, other 10."""
    lower = (file_name or "").lower()
    if "공고" in lower or "모집" in lower or "안내" in lower:
        return 100
    if "신청서" in lower or "지원서" in lower or "신청양식" in lower:
        return 80
    if "계획서" in lower:
        return 70
    if "평가" in lower or "선정" in lower or "기준" in lower:
        return 60
    return 10


def is_substantive(file_name: str) -> bool:
    """Whether a file name suggests eligibility/application content."""
    lower = (file_name or "").lower()
    if any(keyword in lower for keyword in SKIP_KEYWORDS):
        return False
    if any(keyword in lower for keyword in TEMPLATE_KEYWORDS):
        return False
    # Anything not flagged is kept: portals often name files by upload id
    return True


def should_parse(
    file_name: str,
    file_type: str,
    file_size: Optional[int] = None,
    max_bytes: Optional[int] = None,
) -> bool:
    """
    Selective-storage decision.

    True only for a parseable type that looks substantive and is below the
    size ceiling (an unknown size passes; the download enforces the ceiling).
    """
    if file_type not in PARSEABLE_TYPES:
        return False
    if not is_substantive(file_name):
        return False
    ceiling = max_bytes if max_bytes is not None else settings.attachment_max_parse_bytes
    if file_size is not None and file_size > ceiling:
        return False
    return True


def mime_type_for(file_type: str) -> str:
    return MIME_TYPES.get(file_type, "application/octet-stream")
