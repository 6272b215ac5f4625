# ============================================================================
# backend/konarae/connectors/scrape/detail_resolver.py
# ============================================================================
"""
Detail & Attachment Resolver.

Fetches an announcement's detail page and returns its main text plus the
attachment links found on it, each classified and marked with the
selective-storage decision. Only a failed fetch is fatal (DetailFetchError);
text or link extraction problems degrade to a partial result.

Usage:
    resolver = DetailResolver(fetch_adapter)
    detail = await resolver.resolve("https://example.or.kr/board/view?id=1")
    for attachment in detail.attachments:
        print(attachment.file_name, attachment.should_parse)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from konarae.connectors.adapters.fetch_adapter import FetchAdapter
from konarae.connectors.scrape.attachment_policy import (
    PARSEABLE_TYPES,
    classify_attachment,
    get_parsing_priority,
    mime_type_for,
    should_parse,
)
from konarae.connectors.scrape.listing_extractor import resolve_link
from konarae.core.shared.errors import DetailFetchError, FetchError

logger = logging.getLogger("konarae.detail_resolver")

ATTACHMENT_SELECTORS = (
    'a[href*=".hwp"]',
    'a[href*=".hwpx"]',
    'a[href*=".pdf"]',
    'a[href*="download"]',
    'a[href*="Download"]',
    'a[href*="fileDown"]',
    'a[href*="file"]',
    'a[href*="attach"]',
    ".file a",
    ".files a",
    ".attachment a",
    ".attach a",
    ".download a",
)

CONTENT_SELECTORS = (
    ".board-view",
    ".board_view",
    ".bbs-view",
    ".view-content",
    ".view_cont",
    ".view",
    "#content",
    ".content",
    "article",
    "main",
)

STRIP_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "iframe", "form")

_SIZE_PATTERN = re.compile(r"([\d.,]+)\s*(KB|MB|GB|bytes?|B)\b", re.IGNORECASE)
_SIZE_UNITS = {"b": 1, "byte": 1, "bytes": 1, "kb": 1024, "mb": 1024 ** 2, "gb": 1024 ** 3}
_NAME_NOISE = re.compile(r"\s*[\[(]\s*[\d.,]+\s*(KB|MB|GB|bytes?|B)\s*[\])]\s*", re.IGNORECASE)


@dataclass
class AttachmentLink:
    """An attachment discovered on a detail page."""

    file_name: str
    url: str
    file_type: str
    should_parse: bool
    parsing_priority: int
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


@dataclass
class DetailResult:
    """Best-effort content of a detail page."""

    url: str
    full_text: str = ""
    attachments: List[AttachmentLink] = field(default_factory=list)


def parse_size(text: str) -> Optional[int]:
    """Parse a human-readable size such as "(1.2MB)" into bytes."""
    match = _SIZE_PATTERN.search(text or "")
    if not match:
        return None
    try:
        value = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    return int(value * _SIZE_UNITS[match.group(2).lower()])


def _file_name_for(anchor, url: str) -> str:
    text = anchor.get_text(" ", strip=True) or anchor.get("title") or ""
    text = _NAME_NOISE.sub("", text).strip()
    for prefix in ("첨부파일", "다운로드", "download"):
        if text.lower().startswith(prefix.lower()) and len(text) > len(prefix):
            text = text[len(prefix):].lstrip(" :-")
    if text:
        return text
    path_name = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    return path_name or url


def extract_attachment_links(html: str, base_url: Optional[str] = None) -> List[AttachmentLink]:
    """
    Find attachment links on a detail page.

    Links are deduplicated by resolved URL (first occurrence wins). A link is
    kept when it points at a document type or matches a download pattern and
    carries a name.
    """
    soup = BeautifulSoup(html, "lxml")
    attachments: List[AttachmentLink] = []
    seen = set()

    for selector in ATTACHMENT_SELECTORS:
        for anchor in soup.select(selector):
            url = resolve_link(anchor.get("href"), base_url)
            if not url or url in seen:
                continue

            file_name = _file_name_for(anchor, url)
            file_type = classify_attachment(file_name, url)
            if file_type == "other" and not anchor.get_text(strip=True):
                continue

            context_text = anchor.get_text(" ", strip=True)
            if anchor.parent is not None:
                context_text = anchor.parent.get_text(" ", strip=True)
            file_size = parse_size(context_text)

            seen.add(url)
            attachments.append(
                AttachmentLink(
                    file_name=file_name,
                    url=url,
                    file_type=file_type,
                    should_parse=should_parse(file_name, file_type, file_size),
                    parsing_priority=get_parsing_priority(file_name),
                    file_size=file_size,
                    mime_type=mime_type_for(file_type) if file_type in PARSEABLE_TYPES else None,
                )
            )

    return attachments


def extract_main_text(html: str) -> str:
    """Main readable text of a detail page, whitespace-normalized per line."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    container = None
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and len(element.get_text(strip=True)) > 50:
            container = element
            break
    if container is None:
        container = soup.body or soup

    lines = []
    for line in container.get_text("\n").splitlines():
        line = re.sub(r"\s+", " ", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


class DetailResolver:
    """Resolve announcement detail pages through the fetch adapter."""

    def __init__(self, fetch_adapter: FetchAdapter):
        self.fetch_adapter = fetch_adapter

    async def resolve(
        self,
        link: str,
        wait_for_selector: Optional[str] = None,
    ) -> DetailResult:
        """
        Fetch and parse one detail page.

        Raises:
            DetailFetchError: When the page could not be fetched at all
        """
        try:
            page = await self.fetch_adapter.fetch(link, wait_for_selector=wait_for_selector)
        except FetchError as e:
            raise DetailFetchError(f"Detail fetch failed ({e.kind}): {e}", url=link) from e

        result = DetailResult(url=page.final_url)

        try:
            result.full_text = extract_main_text(page.html)
        except Exception as e:
            logger.warning(f"Text extraction failed for {link}: {e}")

        try:
            result.attachments = extract_attachment_links(page.html, page.final_url)
        except Exception as e:
            logger.warning(f"Attachment extraction failed for {link}: {e}")

        logger.debug(
            f"Resolved {link}: {len(result.full_text)} chars, "
            f"{len(result.attachments)} attachments"
        )
        return result
