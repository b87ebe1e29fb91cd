"""Unit tests for page classification and the listing/detail extractors."""

from __future__ import annotations

import pytest

from knowledge_crawler.crawler.extractor import (
    DetailExtractor,
    ListingExtractor,
    NoArticlesFoundError,
    PageType,
    UnknownPageTypeError,
    ValidationError,
    classify_page,
    parse_number,
)

from .helpers import EMPTY_LISTING_HTML, LISTING_HTML, MATERIAL_HTML, POST_HTML

BASE_URL = "https://www.jiandanxinli.com/knowledge"


class TestClassifyPage:
    def test_post_url(self) -> None:
        assert classify_page(f"{BASE_URL}/posts/1") is PageType.POST

    def test_material_url(self) -> None:
        assert classify_page(f"{BASE_URL}/materials/9") is PageType.MATERIAL

    def test_unknown_url_raises(self) -> None:
        with pytest.raises(UnknownPageTypeError):
            classify_page(f"{BASE_URL}/courses/3")


class TestParseNumber:
    def test_strips_non_digits(self) -> None:
        assert parse_number("1,234 reads") == 1234

    def test_no_digits_is_zero(self) -> None:
        assert parse_number("no comments") == 0
        assert parse_number("") == 0


class TestListingExtractor:
    def test_extracts_article_links_and_next_page(self) -> None:
        page = ListingExtractor().extract(LISTING_HTML, BASE_URL)

        assert [(link.url, link.title) for link in page.links] == [
            ("https://www.jiandanxinli.com/knowledge/posts/101", "First article"),
            ("https://www.jiandanxinli.com/knowledge/materials/202", "Second article"),
        ]
        assert page.next_page_url == "https://www.jiandanxinli.com/knowledge?page=2"

    def test_no_pagination_means_no_next_page(self) -> None:
        html = '<a class="list-item list-item--large" href="/posts/1">A</a>'
        page = ListingExtractor().extract(html, BASE_URL)
        assert page.next_page_url is None

    def test_next_page_pointing_at_itself_is_ignored(self) -> None:
        html = (
            '<a class="list-item list-item--large" href="/posts/1">A</a>'
            '<div class="box paginate"><a href="/knowledge?page=1">1</a><a href="/knowledge?page=2">2</a></div>'
        )
        page = ListingExtractor().extract(html, "https://www.jiandanxinli.com/knowledge?page=2")
        assert page.next_page_url is None

    def test_anchor_without_href_is_skipped(self) -> None:
        html = (
            '<a class="list-item list-item--large">No link</a>'
            '<a class="list-item list-item--large" href="/posts/7">Linked</a>'
        )
        page = ListingExtractor().extract(html, BASE_URL)
        assert [link.title for link in page.links] == ["Linked"]

    def test_no_articles_raises(self) -> None:
        with pytest.raises(NoArticlesFoundError):
            ListingExtractor().extract(EMPTY_LISTING_HTML, BASE_URL)


class TestDetailExtractor:
    def test_post_fields(self) -> None:
        url = f"{BASE_URL}/posts/101"
        article = DetailExtractor().extract(POST_HTML, url, PageType.POST)

        assert article.url == url
        assert article.title == "Coping with stress"
        assert article.summary == "A short summary"
        assert article.tags == ["stress", "sleep"]
        assert article.category == "Mental health"
        assert article.read_count == 1234
        assert article.like_count == 56
        assert article.comment_count == 0
        assert article.word_count == 2000
        assert article.author == "Dr. Li"
        assert article.publish_time == "2024-12-20"
        assert article.content == "<p>First paragraph.</p><p>Second paragraph.</p>"
        assert article.content_text == "First paragraph.Second paragraph."
        assert article.crawl_time

    def test_material_uses_fallback_chains(self) -> None:
        url = f"{BASE_URL}/materials/202"
        article = DetailExtractor().extract(MATERIAL_HTML, url, PageType.MATERIAL)

        # title from <title>, content from the generic containers
        assert article.title == "Anxiety workbook"
        assert article.summary == "Worksheets for anxiety"
        assert article.tags == ["anxiety", "worksheet", "cbt"]
        assert article.category == "Workbooks"
        assert article.read_count == 88
        assert article.author == "Team"
        assert article.content == "<p>Workbook <b>body</b></p>"
        assert article.content_text == "Workbook body"

    def test_post_selector_falls_back_to_second_alternative(self) -> None:
        html = (
            '<div class="title"><h1>Alt title</h1></div>'
            '<div class="tags"><span>one</span><span>two</span></div>'
            '<div class="common-detail">Body</div>'
        )
        article = DetailExtractor().extract(html, f"{BASE_URL}/posts/5", PageType.POST)

        assert article.title == "Alt title"
        assert article.tags == ["one", "two"]
        assert article.content == "Body"

    def test_missing_content_raises_validation_error(self) -> None:
        html = '<div class="post-title"><h1>Title only</h1></div>'
        with pytest.raises(ValidationError):
            DetailExtractor().extract(html, f"{BASE_URL}/posts/5", PageType.POST)

    def test_missing_title_raises_validation_error(self) -> None:
        html = '<div class="common-detail-article"><p>Body</p></div>'
        with pytest.raises(ValidationError):
            DetailExtractor().extract(html, f"{BASE_URL}/posts/5", PageType.POST)
