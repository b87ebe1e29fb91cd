"""
Page classification and field extraction for listing and detail pages.
"""

import re
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urldefrag
from dataclasses import dataclass, field
from bs4 import BeautifulSoup


class ExtractionError(Exception):
    """Base class for extraction failures."""
    pass


class UnknownPageTypeError(ExtractionError):
    """Detail URL matches neither the post nor the material pattern."""
    pass


class ValidationError(ExtractionError):
    """A mandatory article field is empty after every fallback."""
    pass


class NoArticlesFoundError(ExtractionError):
    """A listing page contained no article cards."""
    pass


class PageType(Enum):
    """Detail page shapes."""
    POST = 'post'
    MATERIAL = 'material'


POST_MARKER = '/posts/'
MATERIAL_MARKER = '/materials/'


def classify_page(url: str) -> PageType:
    """Determine the detail page shape from its URL."""
    if POST_MARKER in url:
        return PageType.POST
    if MATERIAL_MARKER in url:
        return PageType.MATERIAL
    raise UnknownPageTypeError(f"Unknown article type: {url}")


@dataclass
class Article:
    """Structured record extracted from a detail page."""
    title: str
    url: str
    summary: str = ''
    tags: List[str] = field(default_factory=list)
    category: str = ''
    read_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    content: str = ''
    content_text: str = ''
    author: str = ''
    publish_time: str = ''
    word_count: int = 0
    crawl_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class ChildLink:
    """An article link found on a listing page."""
    url: str
    title: str


@dataclass
class ListingPage:
    """Links and pagination found on a listing page."""
    links: List[ChildLink]
    next_page_url: Optional[str] = None


def parse_number(text: str) -> int:
    """Keep only the digits of ``text``; no digits means 0."""
    digits = re.sub(r'[^0-9]', '', text or '')
    return int(digits) if digits else 0


def _clean_text(text: str) -> str:
    return (text or '').strip()


# ---------------------------------------------------------------------------
# Field strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Text:
    """Trimmed text of the first element matching ``selector``."""
    selector: str

    def extract(self, soup: BeautifulSoup) -> str:
        element = soup.select_one(self.selector)
        return _clean_text(element.get_text()) if element else ''


@dataclass(frozen=True)
class Attr:
    """Attribute value of the first element matching ``selector``."""
    selector: str
    attribute: str

    def extract(self, soup: BeautifulSoup) -> str:
        element = soup.select_one(self.selector)
        return _clean_text(element.get(self.attribute, '')) if element else ''


@dataclass(frozen=True)
class Html:
    """Inner HTML of the first element matching ``selector``."""
    selector: str

    def extract(self, soup: BeautifulSoup) -> str:
        element = soup.select_one(self.selector)
        return element.decode_contents().strip() if element else ''


@dataclass(frozen=True)
class TextList:
    """Trimmed, non-empty texts of every element matching ``selector``."""
    selector: str

    def extract(self, soup: BeautifulSoup) -> List[str]:
        texts = (_clean_text(el.get_text()) for el in soup.select(self.selector))
        return [text for text in texts if text]


@dataclass(frozen=True)
class AttrList:
    """Attribute of the first match, split on ``separator``."""
    selector: str
    attribute: str
    separator: str = ','

    def extract(self, soup: BeautifulSoup) -> List[str]:
        element = soup.select_one(self.selector)
        if not element:
            return []
        parts = (part.strip() for part in element.get(self.attribute, '').split(self.separator))
        return [part for part in parts if part]


def first_match(soup: BeautifulSoup, strategies):
    """Evaluate strategies in order; the first non-empty result wins."""
    for strategy in strategies:
        value = strategy.extract(soup)
        if value:
            return value
    return None


def _stats(prefix: str, name: str):
    return (Text(f'.{prefix}-stats .{name}'), Text(f'.{name}'))


POST_FIELDS = {
    'title': (Text('.post-title h1'), Text('.title h1')),
    'summary': (Text('.post-summary'), Text('.summary')),
    'tags': (TextList('.post-tags .tag'), TextList('.tags span')),
    'category': (Text('.post-category'), Text('.category')),
    'read_count': _stats('post', 'read-count'),
    'like_count': _stats('post', 'like-count'),
    'comment_count': _stats('post', 'comment-count'),
    'word_count': _stats('post', 'word-count'),
    'author': (Text('.post-author .name'), Text('.author .name')),
    'publish_time': (Text('.post-time'), Text('.time')),
}

MATERIAL_FIELDS = {
    'title': (Text('h1.title'), Text('.material-title')),
    'summary': (Text('.material-summary'), Attr('meta[name="description"]', 'content')),
    'tags': (TextList('.material-tags .tag'), AttrList('meta[name="keywords"]', 'content')),
    'category': (Text('.material-category'), Text('.category')),
    'read_count': _stats('material', 'read-count'),
    'like_count': _stats('material', 'like-count'),
    'comment_count': _stats('material', 'comment-count'),
    'word_count': _stats('material', 'word-count'),
    'author': (Text('.material-author .name'), Text('.author .name')),
    'publish_time': (Text('.material-time'), Text('.time')),
}

FIELD_STRATEGIES = {
    PageType.POST: POST_FIELDS,
    PageType.MATERIAL: MATERIAL_FIELDS,
}

CONTENT_SELECTORS = ('.common-detail-article', '.common-detail')

FALLBACK_CONTENT_SELECTORS = (
    '.common-detail-article',
    '.common-detail',
    '.content-detail',
    '.article-content',
    '.content',
)

NUMERIC_FIELDS = ('read_count', 'like_count', 'comment_count', 'word_count')

TITLE_SEPARATOR = '-'


class ListingExtractor:
    """Finds article cards and the next-page link on a listing page."""

    ARTICLE_SELECTOR = 'a.list-item.list-item--large'
    PAGINATION_SELECTOR = 'div.box.paginate'

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def extract(self, html: str, base_url: str) -> ListingPage:
        """
        Extract child article links and the next page.

        Raises:
            NoArticlesFoundError: when the page holds no article cards
        """
        soup = BeautifulSoup(html, 'lxml')
        anchors = soup.select(self.ARTICLE_SELECTOR)

        if not anchors:
            self.logger.debug(
                f"Listing structure for {base_url}: "
                f"list-item={len(soup.select('a.list-item'))}, "
                f"list-item--large={len(soup.select('.list-item--large'))}, "
                f"anchors={len(soup.find_all('a'))}"
            )
            raise NoArticlesFoundError(f"No articles found on {base_url}")

        links = []
        for anchor in anchors:
            href = anchor.get('href')
            if not href:
                self.logger.warning(f"Article card without href on {base_url}: {str(anchor)[:200]}")
                continue
            links.append(ChildLink(url=urljoin(base_url, href), title=_clean_text(anchor.get_text())))

        self.logger.info(f"Found {len(links)} articles on {base_url}")
        return ListingPage(links=links, next_page_url=self._next_page(soup, base_url))

    def _next_page(self, soup: BeautifulSoup, base_url: str) -> Optional[str]:
        """The last anchor in the pagination box, resolved against the page URL."""
        container = soup.select_one(self.PAGINATION_SELECTOR)
        if not container:
            return None

        anchors = container.find_all('a')
        if not anchors or not anchors[-1].get('href'):
            return None

        next_url = urljoin(base_url, anchors[-1]['href'])
        if urldefrag(next_url)[0] == urldefrag(base_url)[0]:
            # last page links back to itself
            return None
        return next_url


class DetailExtractor:
    """Builds an Article from a post or material page."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def extract(self, html: str, url: str, page_type: PageType) -> Article:
        """
        Extract an Article using the selector chains for ``page_type``.

        Raises:
            ValidationError: when title or content is empty after all fallbacks
        """
        soup = BeautifulSoup(html, 'lxml')
        strategies = FIELD_STRATEGIES[page_type]

        values = {name: first_match(soup, chain) for name, chain in strategies.items()}
        for name in NUMERIC_FIELDS:
            values[name] = parse_number(values[name] or '')

        title = values.pop('title') or self._title_from_metadata(soup)
        content, content_text = self._extract_content(soup)

        article = Article(
            title=title,
            url=url,
            summary=values['summary'] or '',
            tags=values['tags'] or [],
            category=values['category'] or '',
            read_count=values['read_count'],
            like_count=values['like_count'],
            comment_count=values['comment_count'],
            content=content,
            content_text=content_text,
            author=values['author'] or '',
            publish_time=values['publish_time'] or '',
            word_count=values['word_count'],
        )

        self.logger.debug(
            f"Parsed {page_type.value} {url}: title={len(article.title)} chars, "
            f"content={len(article.content)} chars"
        )

        if not article.title or not article.content:
            self.logger.error(
                f"Missing required fields for {url}: "
                f"has_title={bool(article.title)}, has_content={bool(article.content)}"
            )
            raise ValidationError(f"Missing required fields: {url}")

        return article

    def _title_from_metadata(self, soup: BeautifulSoup) -> str:
        title_tag = soup.find('title')
        if not title_tag:
            return ''
        return title_tag.get_text().split(TITLE_SEPARATOR)[0].strip()

    def _extract_content(self, soup: BeautifulSoup) -> Tuple[str, str]:
        """Return (html, text) of the article body."""
        for selector in CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            content = element.decode_contents().strip()
            if content:
                return content, _clean_text(element.get_text())

        content = first_match(soup, [Html(selector) for selector in FALLBACK_CONTENT_SELECTORS]) or ''
        return content, re.sub(r'<[^>]+>', '', content).strip()
