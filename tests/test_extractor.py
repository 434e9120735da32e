from novelpack.extractor import (
    DETAIL_PARSERS,
    is_login_wall,
    parse_po18_detail,
    parse_popo_detail,
    parse_unit_content,
    parse_unit_listing,
)
from novelpack.models import Platform, WorkStatus

from fakes import content_page, detail_page, listing_page


# ------------------------------------------------------------------
# Work detail
# ------------------------------------------------------------------

class TestDetail:

    def test_parses_core_fields(self):
        work = parse_po18_detail(detail_page(), "123")
        assert work.platform is Platform.PO18
        assert work.work_id == "123"
        assert work.title == "雨夜"
        assert work.full_title == "雨夜（完）"
        assert work.author == "林小雨"
        assert work.cover == "https://img.example/cover.jpg"
        assert work.tags == ["現代", "甜文"]
        assert work.description == "一段簡介"
        assert work.unit_count == 3
        assert work.status is WorkStatus.COMPLETED

    def test_parses_statistics_table(self):
        work = parse_po18_detail(detail_page(), "123")
        assert work.word_count == 12345
        assert work.free_units == 2
        assert work.paid_units == 1
        assert work.favorites_count == 88
        assert work.latest_unit_name == "第三章 終章"
        assert work.latest_unit_date == "2025-12-14 14:00"

    def test_ongoing_status_is_not_mistaken_for_completed(self):
        work = parse_po18_detail(detail_page(status="未完結"), "123")
        assert work.status is WorkStatus.ONGOING

    def test_missing_fields_stay_empty(self):
        work = parse_po18_detail("<html><body><p>nothing</p></body></html>", "9")
        assert work.title == ""
        assert work.author == ""
        assert work.unit_count == 0
        assert work.error is None

    def test_popo_selectors(self):
        page = """
        <html><body>
          <h3 class="title">月光【番外】</h3>
          <div class="b_author"><a>某人</a></div>
          <div class="b_statu">連載中 12章</div>
          <div class="tags"><a>古代</a></div>
        </body></html>
        """
        work = parse_popo_detail(page, "55")
        assert work.platform is Platform.POPO
        assert work.title == "月光"
        assert work.author == "某人"
        assert work.unit_count == 12
        assert work.status is WorkStatus.ONGOING
        assert work.tags == ["古代"]

    def test_parser_table_covers_every_platform(self):
        assert set(DETAIL_PARSERS) == set(Platform)


class TestLoginWall:

    def test_detects_login_title(self):
        assert is_login_wall("<html><head><title>會員登入</title></head><body></body></html>")

    def test_detects_login_prompt_in_body(self):
        assert is_login_wall("<html><body>請先登入後再閱讀</body></html>")

    def test_regular_page_is_not_a_login_wall(self):
        assert not is_login_wall(detail_page())


# ------------------------------------------------------------------
# Listing
# ------------------------------------------------------------------

class TestListing:

    def test_rows_become_units_with_entitlement_flags(self):
        page = listing_page("123", [
            {"id": "9001", "title": "第一章"},
            {"id": "9002", "title": "第二章", "purchased": False},
        ])
        units = parse_unit_listing(page, "123", 1)
        assert [u.unit_id for u in units] == ["9001", "9002"]
        assert [u.index for u in units] == [0, 1]
        assert units[0].is_purchased and not units[0].is_paid
        assert not units[1].is_purchased and units[1].is_paid
        assert units[0].is_entitled
        assert not units[1].is_entitled

    def test_row_without_link_is_locked_with_placeholder_id(self):
        page = listing_page("123", [{"id": None, "title": "鎖住的章"}])
        units = parse_unit_listing(page, "123", 2)
        assert units[0].unit_id == "unknown_2_0"
        assert units[0].is_locked
        assert not units[0].is_entitled

    def test_empty_page(self):
        assert parse_unit_listing("<html><body></body></html>", "123", 1) == []


# ------------------------------------------------------------------
# Unit content
# ------------------------------------------------------------------

class TestContent:

    def test_strips_heading_and_author_notes(self):
        page = content_page("第一章 雨", "<p>第一段</p><p>第二段&nbsp;</p>")
        content = parse_unit_content(page)
        assert content.title == "第一章 雨"
        assert "作者的話" not in content.markup
        assert "<h1>" not in content.markup
        assert "<p>第一段</p>" in content.markup
        assert content.text == "第一段\n第二段"

    def test_keeps_images_in_markup(self):
        page = content_page("插圖", '<p>看</p><img src="https://img.example/a.png">')
        content = parse_unit_content(page)
        assert 'src="https://img.example/a.png"' in content.markup

    def test_page_without_body(self):
        content = parse_unit_content("")
        assert content.markup == ""
        assert content.text == ""
