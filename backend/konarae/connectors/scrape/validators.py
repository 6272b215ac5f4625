"""
Category and region validation for crawled announcements.

Portals put all kinds of values in their category/region columns (dates,
ministry names, region names in the category column). These helpers map raw
values onto the fixed catalog taxonomy.
"""

import logging
import re
from typing import Optional, Tuple

logger = logging.getLogger("konarae.validators")

VALID_CATEGORIES = (
    "인력", "수출", "창업", "기술", "자금", "판로", "경영", "R&D", "글로벌", "사업화", "기타",
)

VALID_REGIONS = (
    "전국", "서울", "경기", "인천", "강원", "충북", "충남", "대전", "세종",
    "전북", "전남", "광주", "경북", "경남", "대구", "울산", "부산", "제주",
    "강원도", "경상북도", "경상남도", "전라북도", "전라남도", "전북특별자치도",
    "충청북도", "충청남도",
)

DEFAULT_CATEGORY = "기타"
DEFAULT_REGION = "전국"

_DATE_PREFIX = re.compile(r"^\d{4}[-./]\d{2}[-./]\d{2}")

CATEGORY_MAPPING = {
    "시설ㆍ공간ㆍ보육": "기타",
    "행사ㆍ네트워크": "경영",
    "멘토링ㆍ컨설팅ㆍ교육": "경영",
    "내수": "판로",
    "판로ㆍ해외진출": "판로",
    "수출입": "수출",
    "R&D/기술": "R&D",
    "기술개발": "기술",
    # funding
    "투자": "자금",
    "투자지원": "자금",
    "금융": "자금",
    "금융지원": "자금",
    "융자": "자금",
    "보증": "자금",
    "보조금": "자금",
    "지원금": "자금",
    # export / global
    "수출지원": "수출",
    "해외진출": "글로벌",
    "해외": "글로벌",
    "글로벌지원": "글로벌",
    # R&D / technology
    "특허": "R&D",
    "연구": "R&D",
    "연구개발": "R&D",
    "기술이전": "기술",
    "인증": "기술",
    "인증지원": "기술",
    "기술지원": "기술",
    "기술사업화": "사업화",
    # startups
    "창업지원": "창업",
    "스케일업": "창업",
    "액셀러레이팅": "창업",
    "액셀러레이터": "창업",
    "예비창업": "창업",
    "초기창업": "창업",
    # management / training
    "컨설팅": "경영",
    "컨설팅지원": "경영",
    "교육": "인력",
    "교육지원": "인력",
    "네트워크": "경영",
    "멘토링": "경영",
    # sales channels
    "마케팅": "판로",
    "홍보": "판로",
    "홍보지원": "판로",
    "판로지원": "판로",
    # workforce
    "인력지원": "인력",
    "고용지원": "인력",
    "채용지원": "인력",
    "일자리": "인력",
    # commercialization
    "사업화지원": "사업화",
    "상용화": "사업화",
    # facilities
    "입주": "기타",
    "입주지원": "기타",
    "공간지원": "기타",
}

CATEGORY_PARTIAL_MATCHES: Tuple[Tuple[str, str], ...] = (
    ("투자", "자금"),
    ("융자", "자금"),
    ("보증", "자금"),
    ("자금", "자금"),
    ("금융", "자금"),
    ("수출", "수출"),
    ("해외", "글로벌"),
    ("글로벌", "글로벌"),
    ("R&D", "R&D"),
    ("연구", "R&D"),
    ("기술", "기술"),
    ("특허", "R&D"),
    ("창업", "창업"),
    ("스타트업", "창업"),
    ("인력", "인력"),
    ("교육", "인력"),
    ("고용", "인력"),
    ("일자리", "인력"),
    ("컨설팅", "경영"),
    ("멘토링", "경영"),
    ("경영", "경영"),
    ("판로", "판로"),
    ("마케팅", "판로"),
    ("사업화", "사업화"),
)

REGION_MAPPING = {
    "울산광역시": "울산",
    "인천광역시": "인천",
    "서울특별시": "서울",
    "부산광역시": "부산",
    "대구광역시": "대구",
    "대전광역시": "대전",
    "광주광역시": "광주",
    "경기도": "경기",
    "충청북도": "충북",
    "충청남도": "충남",
    "전라북도": "전북",
    "전라남도": "전남",
    "경상북도": "경북",
    "경상남도": "경남",
    "제주특별자치도": "제주",
    "전북도": "전북특별자치도",
    "세종특별자치시": "세종",
    "서울/경기": "전국",
    "수도권": "전국",
    "전국 및 해외": "전국",
    "해외": "전국",
    "온라인": "전국",
}

REGION_KEYWORDS = (
    "서울", "경기", "인천", "강원", "충북", "충남", "대전", "세종", "전북",
    "전남", "광주", "경북", "경남", "대구", "울산", "부산", "제주",
)

# Checked in order; the more specific patterns come first.
REGION_TEXT_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = tuple(
    (re.compile(pattern), region)
    for pattern, region in (
        (r"서울(?:특별시|시)?", "서울"),
        (r"부산(?:광역시|시)?", "부산"),
        (r"대구(?:광역시|시)?", "대구"),
        (r"인천(?:광역시|시)?", "인천"),
        (r"광주(?:광역시|시)?", "광주"),
        (r"대전(?:광역시|시)?", "대전"),
        (r"울산(?:광역시|시)?", "울산"),
        (r"세종(?:특별자치시|시)?", "세종"),
        (r"경기(?:도)?(?![가-힣])", "경기"),
        (r"강원(?:특별자치도|도)?", "강원"),
        (r"충청북도|충북", "충북"),
        (r"충청남도|충남", "충남"),
        (r"전라북도|전북(?:특별자치도)?", "전북"),
        (r"전라남도|전남", "전남"),
        (r"경상북도|경북", "경북"),
        (r"경상남도|경남", "경남"),
        (r"제주(?:특별자치도|도)?", "제주"),
    )
)

ORGANIZATION_REGION_PATTERN = re.compile(
    r"(서울|경기|인천|부산|대구|광주|대전|울산|강원|충북|충남|전북|전남|경북|경남|제주)"
    r"(?:테크노파크|창조경제혁신센터|산업진흥원|경제진흥원|도경제과학진흥원)"
)


def validate_category(value: Optional[str]) -> str:
    """Map a raw category onto the catalog taxonomy (default 기타)."""
    if not value or not value.strip():
        return DEFAULT_CATEGORY

    trimmed = value.strip()
    if trimmed in VALID_CATEGORIES:
        return trimmed

    if trimmed in VALID_REGIONS:
        logger.warning(f"Region '{trimmed}' found in category field, using '{DEFAULT_CATEGORY}'")
        return DEFAULT_CATEGORY

    if _DATE_PREFIX.match(trimmed):
        logger.warning(f"Date '{trimmed}' found in category field, using '{DEFAULT_CATEGORY}'")
        return DEFAULT_CATEGORY

    if trimmed in CATEGORY_MAPPING:
        return CATEGORY_MAPPING[trimmed]

    for keyword, category in CATEGORY_PARTIAL_MATCHES:
        if keyword in trimmed:
            return category

    logger.debug(f"Unknown category '{trimmed}', using '{DEFAULT_CATEGORY}'")
    return DEFAULT_CATEGORY


def validate_region(value: Optional[str]) -> str:
    """Map a raw region onto a province name or 전국."""
    if not value or not value.strip():
        return DEFAULT_REGION

    trimmed = value.strip()
    if trimmed in VALID_REGIONS:
        return trimmed

    if _DATE_PREFIX.match(trimmed) or trimmed in VALID_CATEGORIES:
        logger.warning(f"Non-region value '{trimmed}' found in region field, using '{DEFAULT_REGION}'")
        return DEFAULT_REGION

    if trimmed in REGION_MAPPING:
        return REGION_MAPPING[trimmed]

    # Ministry / agency names
    if any(marker in trimmed for marker in ("부", "청", "원")):
        return DEFAULT_REGION

    for keyword in REGION_KEYWORDS:
        if keyword in trimmed:
            return keyword

    return DEFAULT_REGION


def extract_region_from_text(text: Optional[str]) -> Optional[str]:
    """Region mentioned in a title or organization name, if any."""
    if not text:
        return None

    match = ORGANIZATION_REGION_PATTERN.search(text)
    if match:
        return match.group(1)

    for pattern, region in REGION_TEXT_PATTERNS:
        if pattern.search(text):
            return region
    return None


def resolve_region(
    region: Optional[str],
    name: Optional[str] = None,
    organization: Optional[str] = None,
) -> str:
    """
    Validated region, falling back to a region named in the title or
    organization when the raw value is nationwide or missing.
    """
    validated = validate_region(region)
    if validated != DEFAULT_REGION:
        return validated
    return extract_region_from_text(name) or extract_region_from_text(organization) or DEFAULT_REGION
