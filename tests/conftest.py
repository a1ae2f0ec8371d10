"""
Pytest fixtures and configuration for tierfetch tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no external dependencies
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Several components wired together, browser and
  network replaced by fakes
- @pytest.mark.e2e: Real browser / real network (excluded by default)

=============================================================================
Mock Strategy
=============================================================================

- Browser: FakePage / FakeBrowserPool implement the Page / BrowserPool protocols
- HTTP: FakeTransport for the orchestrator, httpx.MockTransport for transports
- TLS client: session_factory / BinaryInventory stubs, never the native library
- Waits: asyncio.sleep patched with AsyncMock (see the no_sleep fixture)
"""

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

# Set test environment before importing anything else
os.environ["TIERFETCH_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")

from tierfetch.crawler.browser_pool import NavigationResponse, PageConfig  # noqa: E402
from tierfetch.crawler.fetch_result import HTTPResponse  # noqa: E402
from tierfetch.crawler.fingerprint import reset_fingerprint_pool  # noqa: E402
from tierfetch.crawler.http_fetcher import HTTPTransport  # noqa: E402
from tierfetch.crawler.orchestrator import reset_orchestrator  # noqa: E402
from tierfetch.utils.config import reset_settings  # noqa: E402
from tierfetch.utils.domain_rules import reset_domain_rule_manager  # noqa: E402

# =============================================================================
# Pytest Hooks for Test Classification
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line("markers", "unit: Unit tests with no external dependencies")
    config.addinivalue_line(
        "markers", "integration: Components wired together with fake browser/network"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests requiring a real browser (excluded by default)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without a classification marker are unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration", "e2e") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Singleton Reset Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset module-level singletons between tests."""
    yield
    reset_orchestrator()
    reset_fingerprint_pool()
    reset_domain_rule_manager()
    reset_settings()


@pytest.fixture
def no_sleep():
    """Patch asyncio.sleep so behavioral waits finish instantly."""
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


# =============================================================================
# Browser Fakes
# =============================================================================


class FakePage:
    """In-memory Page implementation.

    content() returns `html`, or successive entries of `content_sequence`
    (the last entry repeats). Errors can be injected per operation.
    """

    def __init__(
        self,
        html: str = "<html><body></body></html>",
        *,
        status: int | None = 200,
        headers: dict[str, str] | None = None,
        redirect_to: str | None = None,
        generation: int | None = 1,
    ):
        self.html = html
        self.status = status
        self.headers = headers or {}
        self.redirect_to = redirect_to
        self.generation = generation
        self.url = "about:blank"
        self.frame_urls: list[str] = []

        self.calls: list[str] = []
        self.navigations: list[tuple[str, Any, float]] = []
        self.evaluated: list[tuple[str, tuple[Any, ...]]] = []
        self.init_scripts: list[str] = []
        self.extra_headers: dict[str, str] = {}
        self.viewport: tuple[int, int] | None = None
        self.timeouts: tuple[float, float] | None = None
        self.mouse_positions: list[tuple[float, float]] = []
        self.close_calls = 0

        self.content_sequence: list[str] = []
        self.navigate_error: BaseException | None = None
        self.content_error: BaseException | None = None
        self.viewport_error: BaseException | None = None
        self.evaluate_handler: Callable[[str, tuple[Any, ...]], Any] | None = None

    async def navigate(self, url, wait_policy, timeout) -> NavigationResponse:
        self.calls.append("navigate")
        self.navigations.append((url, wait_policy, timeout))
        if self.navigate_error is not None:
            raise self.navigate_error
        chain = (url, self.redirect_to) if self.redirect_to else (url,)
        self.url = chain[-1]
        self.frame_urls = [self.url]
        return NavigationResponse(
            status=self.status, url=self.url, headers=dict(self.headers), redirect_chain=chain
        )

    async def evaluate(self, script: str, *args: Any) -> Any:
        self.calls.append("evaluate")
        self.evaluated.append((script, args))
        if self.evaluate_handler is not None:
            return self.evaluate_handler(script, args)
        return None

    async def content(self) -> str:
        self.calls.append("content")
        if self.content_error is not None:
            raise self.content_error
        if self.content_sequence:
            if len(self.content_sequence) > 1:
                return self.content_sequence.pop(0)
            return self.content_sequence[0]
        return self.html

    async def close(self) -> None:
        self.calls.append("close")
        self.close_calls += 1

    def current_url(self) -> str:
        return self.url

    def main_frame_urls(self) -> list[str]:
        return list(self.frame_urls)

    def follow(self, url: str, html: str | None = None) -> None:
        """Simulate a navigation the page makes on its own (script or meta refresh)."""
        self.url = url
        self.frame_urls.append(url)
        if html is not None:
            self.html = html

    async def set_viewport(self, width: int, height: int) -> None:
        self.calls.append("set_viewport")
        if self.viewport_error is not None:
            raise self.viewport_error
        self.viewport = (width, height)

    async def set_extra_headers(self, headers: dict[str, str]) -> None:
        self.calls.append("set_extra_headers")
        self.extra_headers = dict(headers)

    async def add_init_script(self, script: str) -> None:
        self.calls.append("add_init_script")
        self.init_scripts.append(script)

    def set_timeouts(self, navigation: float, default: float) -> None:
        self.calls.append("set_timeouts")
        self.timeouts = (navigation, default)

    async def mouse_move(self, x: float, y: float) -> None:
        self.mouse_positions.append((x, y))

    async def wait_for_network_idle(self, timeout: float) -> None:
        self.calls.append("wait_for_network_idle")


class FakeBrowserPool:
    """BrowserPool handing out FakePages; tracks generations like the real pool."""

    def __init__(self, page_factory: Callable[[PageConfig], FakePage] | None = None):
        self._factory = page_factory or (lambda config: FakePage())
        self.generation = 1
        self.pages: list[FakePage] = []
        self.configs: list[PageConfig] = []
        self.restarts: list[int | None] = []
        self.closed = False

    async def create_page(self, config: PageConfig) -> FakePage:
        page = self._factory(config)
        page.generation = self.generation
        self.pages.append(page)
        self.configs.append(config)
        return page

    async def restart_browser(self, generation: int | None = None) -> None:
        self.restarts.append(generation)
        if generation is None or generation == self.generation:
            self.generation += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_page():
    """Factory for FakePage instances."""
    return FakePage


@pytest.fixture
def make_pool():
    """Factory for FakeBrowserPool instances."""
    return FakeBrowserPool


@pytest.fixture
def fake_pool() -> FakeBrowserPool:
    return FakeBrowserPool()


# =============================================================================
# HTTP Fakes
# =============================================================================


class FakeTransport(HTTPTransport):
    """Scripted HTTPTransport: returns (or raises) queued items; the last repeats."""

    def __init__(self, name: str, items: list[HTTPResponse | BaseException]):
        self.name = name
        self._items = list(items)
        self.calls: list[tuple[str, int]] = []
        self.close_calls = 0

    async def get(self, url: str, *, timeout: float, attempt: int = 1) -> HTTPResponse:
        self.calls.append((url, attempt))
        item = self._items.pop(0) if len(self._items) > 1 else self._items[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances."""
    return FakeTransport


@pytest.fixture
def make_response():
    """Factory for HTTPResponse objects."""

    def _make(
        text: str,
        status: int = 200,
        url: str = "https://news.example.com/news",
        headers: dict[str, str] | None = None,
    ) -> HTTPResponse:
        return HTTPResponse(
            status=status,
            headers=headers or {"content-type": "text/html"},
            text=text,
            url=url,
            redirect_chain=(url,),
        )

    return _make


# =============================================================================
# HTML Builders
# =============================================================================


FILLER_SENTENCE = "Quarterly market coverage continues with analysis of regional trends. "


def build_listing_html(links: int = 25, path: str = "/news/", padding: int = 0) -> str:
    """Listing page with `links` article-like anchors and optional filler text."""
    items = "\n".join(
        f'<li><a href="{path}story-{i}">Story number {i} on markets</a></li>'
        for i in range(links)
    )
    filler = ""
    if padding:
        count = padding // len(FILLER_SENTENCE) + 1
        filler = f"<p>{FILLER_SENTENCE * count}</p>"
    return (
        "<html><head><title>Latest stories</title></head><body><main>"
        f"<ul>{items}</ul>{filler}</main></body></html>"
    )


def build_article_html(paragraphs: int = 40, links: int = 2) -> str:
    """Article page: long body text, few links."""
    body = "\n".join(f"<p>{FILLER_SENTENCE} Paragraph {i}.</p>" for i in range(paragraphs))
    anchors = "".join(f'<a href="/news/related-{i}">Related {i}</a>' for i in range(links))
    return (
        "<html><head><title>Markets rally</title></head><body>"
        f"<article><h1>Markets rally</h1>{body}</article><aside>{anchors}</aside>"
        "</body></html>"
    )


@pytest.fixture
def make_listing_html():
    return build_listing_html


@pytest.fixture
def make_article_html():
    return build_article_html
