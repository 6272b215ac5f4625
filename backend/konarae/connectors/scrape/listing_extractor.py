# ============================================================================
# backend/konarae/connectors/scrape/listing_extractor.py
# ============================================================================
"""
Listing Extractor - turn a listing page into announcement stubs.

Layouts differ wildly between portals, so extraction is a set of pluggable
strategies. Each strategy is a pure function ``(html, base_url) -> candidates``;
``extract_listings`` runs all of them and keeps the result of the strategy that
produced the most valid candidates (title of at least 5 characters and a
usable link). Earlier strategies win ties. The regex fallback is consulted
only when the structural strategies find nothing.

Strategies:
    1. table_strategy:  board tables (header and pinned notice rows skipped)
    2. list_strategy:   repeated list items / cards sharing one parent (pinned skipped)
    3. regex_fallback_strategy: anchors followed closely by a date (fallback)

Rows without a usable title/link pair are dropped silently; an unrecognized
layout yields an empty list, never an exception.

Usage:
    from konarae.connectors.scrape.listing_extractor import extract_listings

    for candidate in extract_listings(html, base_url=result.final_url):
        print(candidate.title, candidate.detail_link)
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger("konarae.listing_extractor")

MIN_TITLE_LENGTH = 5

NOTICE_SENTINELS = {"notice", "공지", "공지사항", "필독"}
_NOTICE_PREFIX = re.compile(
    r"^[\[(<]?\s*(?:" + "|".join(sorted(NOTICE_SENTINELS, key=len, reverse=True)) + r")(?:[\])>\s]|$)",
    re.IGNORECASE,
)
HEADER_KEYWORDS = ("번호", "제목", "구분")
ORGANIZATION_HINTS = ("부", "청", "원", "공단", "재단", "진흥", "센터", "테크노파크", "협회")

DATE_PATTERN = re.compile(r"(20\d{2})\s*[.\-/년]\s*(\d{1,2})\s*[.\-/월]\s*(\d{1,2})")

# Anchor followed by a date within a short window of markup.
ANCHOR_DATE_PATTERN = re.compile(
    r"<a\s[^>]*?href\s*=\s*[\"']([^\"']+)[\"'][^>]*>(.*?)</a>(.{0,400}?)"
    r"(20\d{2}\s*[.\-/]\s*\d{1,2}\s*[.\-/]\s*\d{1,2})",
    re.IGNORECASE | re.DOTALL,
)
TAG_PATTERN = re.compile(r"<[^>]+>")

NAVIGATION_CONTAINERS = ("nav", "header", "footer")
NAVIGATION_CLASS_HINTS = ("menu", "gnb", "lnb", "snb", "nav", "breadcrumb", "paging", "pagination", "footer")


@dataclass
class ListingCandidate:
    """An announcement stub found on a listing page."""

    title: str
    detail_link: Optional[str]
    organization: Optional[str] = None
    date: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.detail_link) and len(self.title) >= MIN_TITLE_LENGTH


# =============================================================================
# Helpers
# =============================================================================


def _clean_text(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def resolve_link(href: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """
    Resolve an href against the page URL.

    Returns None for empty, ``javascript:``, ``mailto:`` and fragment-only links.
    """
    if not href:
        return None
    href = href.strip()
    lowered = href.lower()
    if not href or href.startswith("#") or lowered.startswith(("javascript:", "mailto:", "tel:")):
        return None
    if base_url:
        return urljoin(base_url, href)
    return href


def find_dates(text: str) -> List[datetime]:
    """All dates in ``text`` in order of appearance (invalid dates skipped)."""
    dates = []
    for year, month, day in DATE_PATTERN.findall(text or ""):
        try:
            dates.append(datetime(int(year), int(month), int(day)))
        except ValueError:
            continue
    return dates


def parse_date_window(text: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Interpret a listing date cell.

    "2025.01.02 ~ 2025.01.31" gives (start, end); a single date is treated as
    the posting date (start only).
    """
    dates = find_dates(text or "")
    if not dates:
        return None, None
    if len(dates) == 1:
        return dates[0], None
    return dates[0], dates[-1]


def _dedupe(candidates: Sequence[ListingCandidate]) -> List[ListingCandidate]:
    seen = set()
    unique = []
    for candidate in candidates:
        key = candidate.detail_link or candidate.title
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def _is_navigation(element: Tag) -> bool:
    for parent in element.parents:
        if not isinstance(parent, Tag):
            continue
        if parent.name in NAVIGATION_CONTAINERS:
            return True
        classes = " ".join(parent.get("class") or []).lower()
        element_id = (parent.get("id") or "").lower()
        if any(hint in classes or hint in element_id for hint in NAVIGATION_CLASS_HINTS):
            return True
    return False


# =============================================================================
# Strategy 1: board tables
# =============================================================================


def _is_header_row(row: Tag, cells: List[Tag]) -> bool:
    if not row.find("td"):
        return True
    if row.find("a", href=True):
        return False
    text = row.get_text(" ", strip=True)
    return any(keyword in text for keyword in HEADER_KEYWORDS)


def _is_notice_row(row: Tag, cells: List[Tag]) -> bool:
    classes = " ".join(row.get("class") or []).lower()
    if "notice" in classes:
        return True
    first = cells[0]
    first_text = _clean_text(first.get_text(" ", strip=True)).lower()
    if first_text in NOTICE_SENTINELS:
        return True
    if not first_text:
        image = first.find("img")
        if image is not None:
            alt = (image.get("alt") or "").strip().lower()
            return alt in NOTICE_SENTINELS
    return False


def _row_candidate(cells: List[Tag], base_url: Optional[str]) -> Optional[ListingCandidate]:
    title = None
    link = None
    title_index = -1
    for index, cell in enumerate(cells):
        for anchor in cell.find_all("a"):
            text = _clean_text(anchor.get_text(" ", strip=True)) or _clean_text(anchor.get("title") or "")
            if len(text) >= MIN_TITLE_LENGTH:
                title = text
                link = resolve_link(anchor.get("href"), base_url)
                title_index = index
                break
        if title:
            break

    if not title or not link:
        return None

    organization = None
    date = None
    for index, cell in enumerate(cells):
        if index == title_index:
            continue
        text = _clean_text(cell.get_text(" ", strip=True))
        if not text:
            continue
        if date is None and DATE_PATTERN.search(text):
            date = text
            continue
        if (
            organization is None
            and 2 < len(text) < 30
            and not text.isdigit()
            and any(hint in text for hint in ORGANIZATION_HINTS)
        ):
            organization = text

    return ListingCandidate(title=title, detail_link=link, organization=organization, date=date)


def table_strategy(html: str, base_url: Optional[str] = None) -> List[ListingCandidate]:
    """Board tables: one announcement per data row."""
    soup = BeautifulSoup(html, "lxml")
    best: List[ListingCandidate] = []

    for table in soup.find_all("table"):
        # Nested layout tables are evaluated on their own
        rows = [row for row in table.find_all("tr") if row.find_parent("table") is table]
        candidates = []
        for row in rows:
            cells = row.find_all(["td", "th"], recursive=False)
            if not cells:
                continue
            if _is_header_row(row, cells) or _is_notice_row(row, cells):
                continue
            candidate = _row_candidate(cells, base_url)
            if candidate is not None:
                candidates.append(candidate)

        candidates = _dedupe(candidates)
        if len(candidates) > len(best):
            best = candidates

    return best


# =============================================================================
# Strategy 2: list items / cards
# =============================================================================

ITEM_SELECTORS = (
    "li",
    "article",
    "div[class*='item']",
    "div[class*='card']",
    "dl",
)
TITLE_SELECTORS = (".title", ".tit", ".subject", ".subj", "h3", "h4", "h5", "strong", "dt")


def _is_notice_item(item: Tag) -> bool:
    """Pinned card: ``notice`` class, or text led by a sentinel such as ``[공지]``."""
    classes = " ".join(item.get("class") or []).lower()
    if "notice" in classes:
        return True
    if _NOTICE_PREFIX.match(item.get_text(" ", strip=True)):
        return True
    badge = item.find("img")
    return badge is not None and (badge.get("alt") or "").strip().lower() in NOTICE_SENTINELS


def _item_candidate(item: Tag, base_url: Optional[str]) -> Optional[ListingCandidate]:
    if _is_notice_item(item):
        return None
    anchor = item.find("a", href=True)
    if anchor is None:
        return None
    link = resolve_link(anchor.get("href"), base_url)

    title = _clean_text(anchor.get_text(" ", strip=True))
    if len(title) < MIN_TITLE_LENGTH:
        for selector in TITLE_SELECTORS:
            element = item.select_one(selector)
            if element is not None:
                text = _clean_text(element.get_text(" ", strip=True))
                if len(text) >= MIN_TITLE_LENGTH:
                    title = text
                    break

    text = item.get_text(" ", strip=True)
    match = DATE_PATTERN.search(text)
    date = match.group(0) if match else None

    return ListingCandidate(title=title, detail_link=link, date=date)


def list_strategy(html: str, base_url: Optional[str] = None) -> List[ListingCandidate]:
    """Repeated list items or cards; the largest sibling group wins."""
    soup = BeautifulSoup(html, "lxml")
    groups: Dict[int, List[ListingCandidate]] = {}

    for selector in ITEM_SELECTORS:
        for item in soup.select(selector):
            if item.find_parent("table") is not None or _is_navigation(item):
                continue
            candidate = _item_candidate(item, base_url)
            if candidate is None or not candidate.is_valid:
                continue
            groups.setdefault(id(item.parent), []).append(candidate)

    best: List[ListingCandidate] = []
    for candidates in groups.values():
        candidates = _dedupe(candidates)
        if len(candidates) > len(best):
            best = candidates
    return best


# =============================================================================
# Strategy 3: regex fallback
# =============================================================================


def regex_fallback_strategy(html: str, base_url: Optional[str] = None) -> List[ListingCandidate]:
    """Anchors with a date-like string shortly after them."""
    candidates = []
    for href, inner, _between, date in ANCHOR_DATE_PATTERN.findall(html or ""):
        title = _clean_text(TAG_PATTERN.sub(" ", inner))
        candidates.append(
            ListingCandidate(title=title, detail_link=resolve_link(href, base_url), date=date)
        )
    return _dedupe(candidates)


ListingStrategy = Callable[[str, Optional[str]], List[ListingCandidate]]

DEFAULT_STRATEGIES: Tuple[Tuple[str, ListingStrategy], ...] = (
    ("table", table_strategy),
    ("list", list_strategy),
)

# Markup-blind, so it cannot tell pinned notices apart; only used when no
# structural strategy recognizes the page.
FALLBACK_STRATEGIES: Tuple[Tuple[str, ListingStrategy], ...] = (
    ("regex", regex_fallback_strategy),
)


def _best_of(
    html: str,
    base_url: Optional[str],
    strategies: Sequence[Tuple[str, ListingStrategy]],
) -> Tuple[Optional[str], List[ListingCandidate]]:
    best_name = None
    best: List[ListingCandidate] = []
    for name, strategy in strategies:
        try:
            candidates = [c for c in strategy(html, base_url) if c.is_valid]
        except Exception as e:
            logger.warning(f"Listing strategy '{name}' failed: {e}")
            continue
        logger.debug(f"Listing strategy '{name}' produced {len(candidates)} candidates")
        if len(candidates) > len(best):
            best_name, best = name, candidates
    return best_name, best


def extract_listings(
    html: str,
    base_url: Optional[str] = None,
    strategies: Sequence[Tuple[str, ListingStrategy]] = DEFAULT_STRATEGIES,
    fallbacks: Sequence[Tuple[str, ListingStrategy]] = FALLBACK_STRATEGIES,
) -> List[ListingCandidate]:
    """
    Extract announcement stubs from a listing page.

    Args:
        html: Page HTML
        base_url: Final URL of the page, used to resolve relative links
        strategies: Ordered (name, strategy) pairs scored against each other
        fallbacks: Strategies scored only when ``strategies`` find nothing

    Returns:
        Valid candidates from the best-scoring strategy (possibly empty)
    """
    if not html or not html.strip():
        return []

    best_name, best = _best_of(html, base_url, strategies)
    if not best:
        best_name, best = _best_of(html, base_url, fallbacks)

    if best_name:
        logger.info(f"Extracted {len(best)} listings using '{best_name}' strategy")
    else:
        logger.info("No listings recognized on page")
    return best
