"""
Tests for listing page extraction.

Covers the table and list/card strategies, pinned notice and header rows,
link resolution, the regex fallback and the date window parser. All pages are
staged HTML fixtures; nothing touches the network.
"""

from datetime import datetime

import pytest

from konarae.connectors.scrape.listing_extractor import (
    ListingCandidate,
    extract_listings,
    find_dates,
    list_strategy,
    parse_date_window,
    regex_fallback_strategy,
    resolve_link,
    table_strategy,
)

from conftest import load_fixture

BASE_URL = "https://www.bizinfo.go.kr/board/list.do"


# =============================================================================
# TABLE STRATEGY
# =============================================================================


class TestTableStrategy:
    """Board tables with header and pinned notice rows."""

    def test_skips_header_and_notice_rows(self):
        candidates = table_strategy(load_fixture("listing_table.html"), BASE_URL)

        assert len(candidates) == 2
        titles = [c.title for c in candidates]
        assert "2025년 창업도약패키지 지원사업 모집 공고" in titles
        assert not any("필독" in t for t in titles)

    def test_resolves_relative_links(self):
        candidates = table_strategy(load_fixture("listing_table.html"), BASE_URL)

        assert candidates[0].detail_link == "https://www.bizinfo.go.kr/board/view.do?id=101"

    def test_picks_organization_and_date_cells(self):
        first, second = table_strategy(load_fixture("listing_table.html"), BASE_URL)

        assert first.organization == "중소벤처기업부"
        assert first.date == "2025.01.02 ~ 2025.01.31"
        assert second.organization == "서울경제진흥원"

    def test_notice_sentinel_in_first_cell(self):
        html = """
        <table>
          <tr><td>공지</td><td><a href="/v?id=1">시스템 점검 안내 공지입니다</a></td></tr>
          <tr><td>7</td><td><a href="/v?id=7">청년 창업사관학교 입교생 모집</a></td></tr>
        </table>
        """
        candidates = table_strategy(html, BASE_URL)

        assert [c.title for c in candidates] == ["청년 창업사관학교 입교생 모집"]

    def test_notice_icon_in_first_cell(self):
        html = """
        <table>
          <tr><td><img src="/ico_notice.gif" alt="공지"></td>
              <td><a href="/v?id=1">홈페이지 개편 안내드립니다</a></td></tr>
          <tr><td>3</td><td><a href="/v?id=3">수출 초보기업 바우처 지원</a></td></tr>
        </table>
        """
        candidates = table_strategy(html, BASE_URL)

        assert len(candidates) == 1
        assert candidates[0].detail_link.endswith("/v?id=3")


# =============================================================================
# LIST STRATEGY
# =============================================================================


class TestListStrategy:
    """Repeated cards sharing one parent."""

    def test_extracts_cards(self):
        candidates = list_strategy(load_fixture("listing_cards.html"), "https://www.gntp.or.kr/biz/apply")

        assert len(candidates) == 3
        assert candidates[0].title == "경남 스마트공장 구축 지원사업 공고"
        assert candidates[0].detail_link == "https://www.gntp.or.kr/biz/apply/view?seq=5001"
        assert candidates[0].date == "2025.03.02"

    def test_ignores_navigation_menus(self):
        candidates = list_strategy(load_fixture("listing_cards.html"), "https://www.gntp.or.kr/biz/apply")

        assert not any("자주 묻는" in c.title for c in candidates)

    def test_skips_pinned_cards(self):
        html = """
        <div class="board"><ul class="board-list">
          <li class="notice"><a href="/v?id=1">홈페이지 서비스 점검 안내</a> <span>2025.03.01</span></li>
          <li><span class="badge">[공지]</span><a href="/v?id=2">개인정보 처리방침 변경 안내</a> <span>2025.02.28</span></li>
          <li><img src="/img/pin.gif" alt="공지"><a href="/v?id=3">사칭 메일 주의 안내</a> <span>2025.02.20</span></li>
          <li><a href="/v?id=10">2025 청년창업 사관학교 입교생 모집</a> <span>2025.03.04</span></li>
          <li><a href="/v?id=11">중소기업 수출바우처 2차 모집 공고</a> <span>2025.03.06</span></li>
        </ul></div>
        """

        candidates = list_strategy(html, BASE_URL)

        assert [c.title for c in candidates] == [
            "2025 청년창업 사관학교 입교생 모집",
            "중소기업 수출바우처 2차 모집 공고",
        ]


# =============================================================================
# STRATEGY SELECTION
# =============================================================================


class TestExtractListings:
    """Best-strategy selection and degenerate inputs."""

    def test_table_page(self):
        candidates = extract_listings(load_fixture("listing_table.html"), BASE_URL)
        assert len(candidates) == 2

    def test_card_page(self):
        candidates = extract_listings(load_fixture("listing_cards.html"), "https://www.gntp.or.kr/biz/apply")
        assert len(candidates) == 3

    @pytest.mark.parametrize("html", ["", "   ", "<html><body><p>점검 중입니다</p></body></html>"])
    def test_unrecognized_page_yields_empty_list(self, html):
        assert extract_listings(html, BASE_URL) == []

    def test_short_titles_and_script_links_dropped(self):
        html = """
        <table>
          <tr><td>1</td><td><a href="/v?id=1">짧음</a></td><td>2025.01.01</td></tr>
          <tr><td>2</td><td><a href="javascript:void(0)">자바스크립트 링크 공고</a></td></tr>
        </table>
        """
        assert extract_listings(html, BASE_URL) == []

    def test_regex_fallback_when_structure_unknown(self):
        html = (
            '<div><span><a href="/notice/11">중소기업 기술보호 지원사업 안내</a></span>'
            "<em>2025.05.01</em></div>"
        )
        candidates = extract_listings(html, BASE_URL)

        assert len(candidates) == 1
        assert candidates[0].date == "2025.05.01"
        assert candidates[0].detail_link == "https://www.bizinfo.go.kr/notice/11"

    def test_regex_not_consulted_when_table_matches(self):
        html = load_fixture("listing_table.html")

        # The regex strategy on its own also picks up the pinned notice
        assert len(regex_fallback_strategy(html, BASE_URL)) == 3
        assert len(extract_listings(html, BASE_URL)) == 2

    def test_failing_strategy_is_skipped(self):
        def broken(html, base_url):
            raise RuntimeError("boom")

        candidates = extract_listings(
            load_fixture("listing_table.html"),
            BASE_URL,
            strategies=(("broken", broken), ("table", table_strategy)),
        )
        assert len(candidates) == 2

    def test_earlier_strategy_wins_ties(self):
        first = [ListingCandidate(title="첫번째 전략 결과", detail_link="https://a.kr/1")]
        second = [ListingCandidate(title="두번째 전략 결과", detail_link="https://a.kr/2")]

        candidates = extract_listings(
            "<html></html>",
            strategies=(("a", lambda h, b: first), ("b", lambda h, b: second)),
        )
        assert candidates == first


# =============================================================================
# HELPERS
# =============================================================================


class TestHelpers:
    """Link resolution and date parsing."""

    @pytest.mark.parametrize("href", [None, "", "#", "#top", "javascript:fnView(1)", "mailto:a@b.kr"])
    def test_unusable_links(self, href):
        assert resolve_link(href, BASE_URL) is None

    def test_absolute_link_kept(self):
        assert resolve_link("https://other.kr/x", BASE_URL) == "https://other.kr/x"

    def test_find_dates_formats(self):
        dates = find_dates("2025.01.02 ~ 2025-1-31, 2025년 2월 3일, 2025.13.40")
        assert dates == [datetime(2025, 1, 2), datetime(2025, 1, 31), datetime(2025, 2, 3)]

    def test_date_window_range(self):
        assert parse_date_window("2025.01.02 ~ 2025.01.31") == (
            datetime(2025, 1, 2),
            datetime(2025, 1, 31),
        )

    def test_date_window_single_date_is_start(self):
        assert parse_date_window("2025.03.02") == (datetime(2025, 3, 2), None)

    def test_date_window_empty(self):
        assert parse_date_window(None) == (None, None)
        assert parse_date_window("상시접수") == (None, None)
