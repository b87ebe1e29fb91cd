"""Test doubles and HTML pages shared by the test modules."""

from __future__ import annotations

from typing import Any


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fake aiohttp session
# ---------------------------------------------------------------------------


class FakeContent:
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def iter_chunked(self, size: int):
        for start in range(0, len(self._body), size):
            yield self._body[start:start + size]


class FakeResponse:
    def __init__(self, url: str, status: int, body: str) -> None:
        self.url = url
        self.status = status
        self.headers = {"content-type": "text/html; charset=utf-8"}
        self.charset = "utf-8"
        self.content = FakeContent(body.encode("utf-8"))

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FakeSession:
    """Replays (status, body) pairs or raises queued exceptions, in order.

    The last entry repeats once the script is exhausted.
    """

    def __init__(self, script: list) -> None:
        self.script = list(script)
        self.calls: list[dict] = []

    def get(self, url: str, headers: dict | None = None, timeout: Any = None) -> FakeResponse:
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        status, body = item
        return FakeResponse(url, status, body)

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# HTML fixtures
# ---------------------------------------------------------------------------


LISTING_HTML = """
<html><body>
  <div class="list">
    <a class="list-item list-item--large" href="/knowledge/posts/101"> First article </a>
    <a class="list-item list-item--large" href="https://www.jiandanxinli.com/knowledge/materials/202">Second article</a>
    <a class="list-item" href="/knowledge/posts/999">Small card</a>
  </div>
  <div class="box paginate">
    <a href="/knowledge?page=1">1</a>
    <a href="/knowledge?page=2">2</a>
    <a href="/knowledge?page=2">Next</a>
  </div>
</body></html>
"""

EMPTY_LISTING_HTML = """
<html><body><div class="list"><p>Nothing here</p></div></body></html>
"""

POST_HTML = """
<html>
<head><title>Coping with stress - Knowledge - Jiandan</title></head>
<body>
  <div class="post-title"><h1> Coping with stress </h1></div>
  <div class="post-summary">A short summary</div>
  <div class="post-tags"><span class="tag">stress</span><span class="tag"> sleep </span></div>
  <div class="post-category">Mental health</div>
  <div class="post-stats">
    <span class="read-count">1,234 reads</span>
    <span class="like-count">56</span>
    <span class="comment-count">no comments</span>
    <span class="word-count">about 2,000 words</span>
  </div>
  <div class="post-author"><span class="name">Dr. Li</span></div>
  <div class="post-time">2024-12-20</div>
  <div class="common-detail-article"><p>First paragraph.</p><p>Second paragraph.</p></div>
</body>
</html>
"""

MATERIAL_HTML = """
<html>
<head>
  <title>Anxiety workbook - Materials</title>
  <meta name="description" content="Worksheets for anxiety">
  <meta name="keywords" content="anxiety, worksheet,,cbt">
</head>
<body>
  <div class="material-category">Workbooks</div>
  <div class="stats"><span class="read-count">88</span></div>
  <div class="author"><span class="name">Team</span></div>
  <div class="article-content"><p>Workbook <b>body</b></p></div>
</body>
</html>
"""
