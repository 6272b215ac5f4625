"""
Tests for attachment classification, the selective-storage policy and
detail page resolution.
"""

from unittest.mock import AsyncMock

import pytest

from konarae.connectors.adapters.fetch_adapter import FetchResult
from konarae.connectors.scrape.attachment_policy import (
    classify_attachment,
    get_parsing_priority,
    is_substantive,
    mime_type_for,
    should_parse,
)
from konarae.connectors.scrape.detail_resolver import (
    DetailResolver,
    extract_attachment_links,
    extract_main_text,
    parse_size,
)
from konarae.core.shared.errors import DetailFetchError, FetchError

from conftest import load_fixture

DETAIL_URL = "https://www.k-startup.go.kr/web/board/view.do?id=101"
MB = 1024 * 1024


# =============================================================================
# CLASSIFICATION
# =============================================================================


class TestClassifyAttachment:

    @pytest.mark.parametrize(
        "file_name,expected",
        [
            ("사업공고문.pdf", "pdf"),
            ("신청서.HWP", "hwp"),
            ("신청서 양식.hwpx", "hwpx"),
            ("붙임1. 안내문.hwp (35KB)", "hwp"),
            ("포스터.jpg", "other"),
            ("첨부파일.zip", "other"),
        ],
    )
    def test_by_file_name(self, file_name, expected):
        assert classify_attachment(file_name) == expected

    def test_url_used_when_name_has_no_extension(self):
        url = "https://www.gntp.or.kr/files/%EA%B3%B5%EA%B3%A0%EB%AC%B8.hwpx"
        assert classify_attachment("공고문 다운로드", url) == "hwpx"

    def test_mime_type_used_last(self):
        url = "https://www.bizinfo.go.kr/cmm/fileDown.do?id=1"
        assert classify_attachment("공고문", url, "application/pdf; charset=binary") == "pdf"
        assert classify_attachment("공고문", url, "application/haansofthwp") == "hwp"
        assert classify_attachment("공고문", url, "image/png") == "other"
        assert classify_attachment("공고문", url) == "other"

    def test_mime_type_for(self):
        assert mime_type_for("pdf") == "application/pdf"
        assert mime_type_for("hwpx") == "application/vnd.hancom.hwpx"
        assert mime_type_for("other") == "application/octet-stream"


class TestParsingPriority:

    @pytest.mark.parametrize(
        "file_name,expected",
        [
            ("2025년 모집공고.hwp", 100),
            ("사업 안내.pdf", 100),
            ("참가 신청서.hwp", 80),
            ("사업계획서.hwp", 70),
            ("평가 기준표.pdf", 60),
            ("붙임.pdf", 10),
        ],
    )
    def test_priorities(self, file_name, expected):
        assert get_parsing_priority(file_name) == expected


# =============================================================================
# SELECTIVE STORAGE
# =============================================================================


class TestSelectiveStorage:

    def test_announcement_document_is_stored(self):
        assert should_parse("사업공고문.pdf", "pdf", 1 * MB)

    def test_template_form_is_not_stored(self):
        assert not should_parse("템플릿_서식.hwp", "hwp", 35 * 1024)

    @pytest.mark.parametrize("file_name", ["기관 로고.pdf", "홍보 포스터.pdf", "sample_application.hwp"])
    def test_non_substantive_names(self, file_name):
        assert not is_substantive(file_name)

    def test_unlabelled_document_is_kept(self):
        assert is_substantive("20250301_0001.pdf")

    def test_exclusions_win_over_document_names(self):
        assert is_substantive("사업계획서.hwp")
        assert not is_substantive("사업계획서_서식.hwp")
        assert not is_substantive("모집공고 포스터.pdf")

    def test_non_parseable_type_is_not_stored(self):
        assert not should_parse("사업공고문.zip", "other", 1024)

    def test_size_ceiling(self):
        assert should_parse("사업공고문.pdf", "pdf", 5 * MB, max_bytes=5 * MB)
        assert not should_parse("사업공고문.pdf", "pdf", 5 * MB + 1, max_bytes=5 * MB)

    def test_unknown_size_passes(self):
        assert should_parse("사업공고문.pdf", "pdf", None)


# =============================================================================
# DETAIL PAGE PARSING
# =============================================================================


class TestDetailPageParsing:

    def test_parse_size(self):
        assert parse_size("(1.2MB)") == int(1.2 * MB)
        assert parse_size("35KB") == 35 * 1024
        assert parse_size("1,024 bytes") == 1024
        assert parse_size("크기 없음") is None

    def test_extracts_attachments_with_storage_decision(self):
        links = extract_attachment_links(load_fixture("detail_page.html"), DETAIL_URL)

        assert [link.file_name for link in links] == ["사업공고문.pdf", "템플릿_서식.hwp"]
        notice, template = links
        assert notice.file_type == "pdf"
        assert notice.should_parse is True
        assert notice.parsing_priority == 100
        assert notice.file_size == int(1.2 * MB)
        assert notice.url == (
            "https://www.k-startup.go.kr/cmm/fileDown.do?atchFileId=FILE_001&fileSn=0"
        )
        assert template.file_type == "hwp"
        assert template.should_parse is False

    def test_duplicate_links_collapsed(self):
        html = """
        <div class="file">
          <a href="/files/공고문.pdf">공고문.pdf</a>
          <a href="/files/공고문.pdf">공고문.pdf 다시 받기</a>
        </div>
        """
        links = extract_attachment_links(html, DETAIL_URL)
        assert len(links) == 1

    def test_main_text_skips_scripts_and_navigation(self):
        text = extract_main_text(load_fixture("detail_page.html"))

        assert "신청자격: 업력 3년 초과 7년 이내의 창업기업" in text
        assert "tracking" not in text
        assert "목록으로 이동" not in text


# =============================================================================
# RESOLVER
# =============================================================================


class TestDetailResolver:

    @pytest.mark.asyncio
    async def test_resolve_returns_text_and_attachments(self):
        adapter = AsyncMock()
        adapter.fetch.return_value = FetchResult(
            html=load_fixture("detail_page.html"), final_url=DETAIL_URL
        )

        detail = await DetailResolver(adapter).resolve(DETAIL_URL, wait_for_selector=".board-view")

        assert detail.url == DETAIL_URL
        assert "최대 3억원" in detail.full_text
        assert len(detail.attachments) == 2
        adapter.fetch.assert_awaited_once_with(DETAIL_URL, wait_for_selector=".board-view")

    @pytest.mark.asyncio
    async def test_fetch_failure_becomes_detail_error(self):
        adapter = AsyncMock()
        adapter.fetch.side_effect = FetchError("Timed out", kind="timeout", url=DETAIL_URL)

        with pytest.raises(DetailFetchError) as exc_info:
            await DetailResolver(adapter).resolve(DETAIL_URL)

        assert exc_info.value.url == DETAIL_URL
        assert isinstance(exc_info.value.__cause__, FetchError)

    @pytest.mark.asyncio
    async def test_page_without_attachments_is_partial_result(self):
        adapter = AsyncMock()
        adapter.fetch.return_value = FetchResult(
            html="<html><body><p>상시 모집 중인 지원사업입니다.</p></body></html>",
            final_url=DETAIL_URL,
        )

        detail = await DetailResolver(adapter).resolve(DETAIL_URL)

        assert detail.attachments == []
        assert detail.full_text == "상시 모집 중인 지원사업입니다."
