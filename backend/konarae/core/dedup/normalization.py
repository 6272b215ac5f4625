"""
Fingerprint normalization for announcement deduplication.

``normalize(name, organization)`` produces the clustering key: a normalized
program name (year, round markers, bracketed notes, punctuation and whitespace
removed), a normalized organization (corporate suffixes dropped, known
abbreviations expanded) and the program year found in the name.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional, Tuple

# Year markers: 2025년, 2025년도, (2025), [2025], '25년, bare 2025
_YEAR_PATTERNS = (
    re.compile(r"(20\d{2})년도?"),
    re.compile(r"\((20\d{2})\)"),
    re.compile(r"\[(20\d{2})\]"),
    re.compile(r"(?<!\d)(20[1-3]\d)(?![\d만억원개명%])"),
)
_SHORT_YEAR_PATTERN = re.compile(r"[''‘’](\d{2})년")

_ROUND_PATTERNS = (
    re.compile(r"제?\s*\d+\s*차"),
    re.compile(r"\d+\s*회차?"),
    re.compile(r"\d+\s*기(?![가-힣])"),
)
_BRACKETED = re.compile(r"\([^)]*\)|\[[^\]]*\]|【[^】]*】|<[^>]*>")
_NON_WORD = re.compile(r"[^\w가-힣]+")
_TRAILING_NOISE = re.compile(r"(공고|모집|안내|공고문|재공고|연장공고)+$")

CORPORATE_AFFIXES = (
    "주식회사",
    "유한회사",
    "재단법인",
    "사단법인",
    "사회적협동조합",
    "㈜",
    "(주)",
    "(재)",
    "(사)",
    "(유)",
)

ORGANIZATION_SYNONYMS = {
    "중기부": "중소벤처기업부",
    "중소기업벤처부": "중소벤처기업부",
    "과기정통부": "과학기술정보통신부",
    "과기부": "과학기술정보통신부",
    "산업부": "산업통상자원부",
    "산자부": "산업통상자원부",
    "창진원": "창업진흥원",
    "중진공": "중소벤처기업진흥공단",
    "소진공": "소상공인시장진흥공단",
    "kiat": "한국산업기술진흥원",
    "nipa": "정보통신산업진흥원",
    "kotra": "대한무역투자진흥공사",
    "코트라": "대한무역투자진흥공사",
    "tipa": "중소기업기술정보진흥원",
    "keit": "한국산업기술기획평가원",
    "sba": "서울경제진흥원",
    "서울산업진흥원": "서울경제진흥원",
}

_TECHNOPARK_ABBREVIATION = re.compile(r"^([가-힣]+)tp$")


@dataclass(frozen=True)
class Fingerprint:
    normalized_name: str
    normalized_org: str
    project_year: Optional[int]

    @property
    def key(self) -> Tuple[str, str, Optional[int]]:
        return (self.normalized_name, self.normalized_org, self.project_year)


def extract_year(name: str) -> Optional[int]:
    """Most recent program year mentioned in ``name``."""
    years = []
    for pattern in _YEAR_PATTERNS:
        years.extend(int(match) for match in pattern.findall(name or ""))
    years.extend(2000 + int(match) for match in _SHORT_YEAR_PATTERN.findall(name or ""))
    return max(years) if years else None


def normalize_name(name: str) -> str:
    """Lowercased program name without year, round, bracketed notes or punctuation."""
    text = unicodedata.normalize("NFKC", name or "")
    text = _SHORT_YEAR_PATTERN.sub(" ", text)
    for pattern in _YEAR_PATTERNS:
        text = pattern.sub(" ", text)
    for pattern in _ROUND_PATTERNS:
        text = pattern.sub(" ", text)
    text = _BRACKETED.sub(" ", text)
    text = _NON_WORD.sub("", text.lower()).replace("_", "")
    return _TRAILING_NOISE.sub("", text)


def normalize_organization(organization: Optional[str]) -> str:
    """Organization name without corporate affixes, with known abbreviations expanded."""
    text = unicodedata.normalize("NFKC", organization or "")
    # NFKC turns ㈜ into (주)
    for affix in CORPORATE_AFFIXES:
        text = text.replace(unicodedata.normalize("NFKC", affix), " ")
    text = _NON_WORD.sub("", text.lower()).replace("_", "")
    if text == "미분류":
        return ""

    if text in ORGANIZATION_SYNONYMS:
        return ORGANIZATION_SYNONYMS[text]
    match = _TECHNOPARK_ABBREVIATION.match(text)
    if match:
        return f"{match.group(1)}테크노파크"
    return text


def normalize(name: str, organization: Optional[str] = None) -> Fingerprint:
    """Build the deduplication fingerprint of an announcement."""
    return Fingerprint(
        normalized_name=normalize_name(name),
        normalized_org=normalize_organization(organization),
        project_year=extract_year(name or ""),
    )
