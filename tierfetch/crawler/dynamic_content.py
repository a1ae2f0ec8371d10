"""
Dynamic (client-rendered) content detection and resolution.

needs_dynamic_loading() is a pure check on raw HTML, used to decide whether
HTTP-fetched content can be trusted. DynamicContentResolver works on a live
page and tries, best effort, to make lazily loaded content materialize:

1. Wait for network idle (bounded)
2. Discover in-page fetch endpoints, union with well-known fallbacks
3. Rank endpoints (context keyword > primary path > topic/category > rest)
4. Fetch endpoints in rank order and append their HTML to the document,
   only on pages with fetch hooks or few anchors
5. Click a bounded number of "load more" and fetch-trigger elements
6. Staged scroll to the bottom and back to the top
7. Wait for loading indicators to disappear

No step is required to succeed; callers re-validate afterwards.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from tierfetch.crawler.browser_pool import Page
from tierfetch.crawler.errors import FaultKind, classify_fault, to_session_fault
from tierfetch.utils.config import DynamicConfig, get_settings
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)


# Framework fetch attributes and scripts; trusted regardless of page size
STRONG_INDICATORS = (
    "hx-get=",
    "hx-post=",
    "hx-trigger=",
    "data-hx-get=",
    "data-hx-post=",
    "htmx.min.js",
    "htmx.js",
    "unpkg.com/htmx",
)

LAZY_LOAD_INDICATORS = (
    "load-more",
    "lazy-load",
    "infinite-scroll",
    "ajax-load",
    "data-react-root",
    "ng-app=",
    "v-app",
    "@click=",
)

LOADING_STATE_INDICATORS = (
    "content-skeleton",
    "article-skeleton",
    "loading-spinner",
    "posts-loading",
    "articles-loading",
    "content-placeholder",
)

SPA_INDICATORS = ("react-root", "ng-app", "vue-app", "__next", "nuxt")

CONTENT_CONTAINERS = ("articles-container", "posts-container", "content-container")
LOADING_MARKERS = ("loading", "spinner", "skeleton")

FEW_LINKS_THRESHOLD = 5
# SPA markers count when a small page also has fewer links than this
SPA_LINK_THRESHOLD = 10

_ANCHOR_RE = re.compile(r"<a\b[^>]*\bhref[^>]*>", re.IGNORECASE)

# Path segments too generic to identify the page's topic
_GENERIC_SEGMENTS = frozenset(
    {
        "media",
        "items",
        "news",
        "topics",
        "topic",
        "category",
        "categories",
        "sources",
        "latest",
        "all",
        "index",
        "page",
        "en",
        "www",
    }
)
_SCOPE_MUTATING = ("search", "filter")


@dataclass(frozen=True)
class DynamicSignals:
    """Dynamic-loading evidence found in raw HTML."""

    link_count: int
    strong: bool
    few_links: bool
    empty_containers: bool
    spa: bool
    lazy_load: bool
    loading_state: bool
    substantial: bool

    @property
    def needs_dynamic(self) -> bool:
        if self.strong or self.few_links or self.empty_containers:
            return True
        if self.substantial:
            return False
        spa_thin = self.spa and (self.loading_state or self.link_count < SPA_LINK_THRESHOLD)
        return spa_thin or (self.lazy_load and self.loading_state)


def analyze_dynamic_signals(html: str, substantial_bytes: int | None = None) -> DynamicSignals:
    """Collect dynamic-loading signals from raw HTML."""
    if substantial_bytes is None:
        substantial_bytes = get_settings().fetch.substantial_bytes
    lower = html.lower()
    link_count = len(_ANCHOR_RE.findall(html))

    return DynamicSignals(
        link_count=link_count,
        strong=any(i in lower for i in STRONG_INDICATORS),
        few_links=link_count < FEW_LINKS_THRESHOLD,
        empty_containers=any(c in lower for c in CONTENT_CONTAINERS)
        and any(m in lower for m in LOADING_MARKERS),
        spa=any(i in lower for i in SPA_INDICATORS),
        lazy_load=any(i in lower for i in LAZY_LOAD_INDICATORS),
        loading_state=any(i in lower for i in LOADING_STATE_INDICATORS),
        substantial=len(html) > substantial_bytes,
    )


def needs_dynamic_loading(html: str, url: str) -> bool:
    """Whether raw HTML is likely missing client-rendered content.

    Strong framework hooks, very few anchors and empty content containers
    with loading markers always count. On pages that are already
    substantial, weaker SPA and lazy-load hints are ignored so good HTTP
    content is not thrown away.
    """
    signals = analyze_dynamic_signals(html)
    if signals.needs_dynamic:
        logger.debug(
            "Dynamic content detected",
            url=url[:80],
            strong=signals.strong,
            link_count=signals.link_count,
            empty_containers=signals.empty_containers,
            spa=signals.spa,
            lazy_load=signals.lazy_load,
            loading_state=signals.loading_state,
        )
    return signals.needs_dynamic


def context_keyword(url: str) -> str | None:
    """Most specific meaningful path segment of a URL (e.g. 'cybersecurity')."""
    segments = [s for s in urlparse(url).path.lower().split("/") if s]
    for segment in reversed(segments):
        if segment in _GENERIC_SEGMENTS or segment.isdigit() or len(segment) < 3:
            continue
        return segment
    return None


def rank_endpoints(candidates: list[str], url: str, primary_path: str) -> list[str]:
    """Order endpoint candidates for fetching.

    Endpoints mentioning the URL's context keyword come first, then those
    under the primary content path, then topic/category endpoints, then the
    rest. Order within a rank is preserved. Search and filter endpoints are
    dropped since they change the result scope.
    """
    keyword = context_keyword(url)
    seen: set[str] = set()
    unique: list[str] = []
    for endpoint in candidates:
        endpoint = endpoint.strip()
        if not endpoint or endpoint in seen:
            continue
        if any(word in endpoint.lower() for word in _SCOPE_MUTATING):
            continue
        seen.add(endpoint)
        unique.append(endpoint)

    def rank(endpoint: str) -> int:
        path = urlparse(endpoint).path.lower() or endpoint.lower()
        if keyword and keyword in path:
            return 0
        if path.startswith(primary_path):
            return 1
        if "/topic" in path or "/categor" in path:
            return 2
        return 3

    return sorted(unique, key=rank)


DISCOVER_ENDPOINTS_JS = """
() => {
    const found = [];
    for (const el of document.querySelectorAll('[hx-get], [data-hx-get]')) {
        const value = el.getAttribute('hx-get') || el.getAttribute('data-hx-get');
        if (value && !value.startsWith('#') && !value.startsWith('javascript:')) {
            found.push(value);
        }
    }
    return found;
}
"""

FETCH_ENDPOINT_JS = """
async ({ endpoint, currentUrl, minChars }) => {
    const target = new URL(endpoint, currentUrl);
    if (target.origin !== window.location.origin) {
        return { ok: false, status: 0, length: 0, injected: false };
    }
    const csrf =
        document.querySelector('meta[name="csrf-token"]')?.getAttribute('content') ||
        document.querySelector('input[name="csrfmiddlewaretoken"]')?.getAttribute('value') ||
        document.querySelector('input[name="_token"]')?.getAttribute('value');
    const headers = {
        'HX-Request': 'true',
        'HX-Current-URL': currentUrl,
        'X-Requested-With': 'XMLHttpRequest',
        'Accept': 'text/html, */*'
    };
    if (csrf) { headers['X-CSRFToken'] = csrf; }
    try {
        const response = await fetch(target.href, { headers, credentials: 'same-origin' });
        if (!response.ok) {
            return { ok: false, status: response.status, length: 0, injected: false };
        }
        const html = await response.text();
        if (html.length <= minChars) {
            return { ok: true, status: response.status, length: html.length, injected: false };
        }
        const container = document.createElement('div');
        container.className = 'tierfetch-injected-content';
        container.setAttribute('data-source', endpoint);
        container.innerHTML = html;
        document.body.appendChild(container);
        return { ok: true, status: response.status, length: html.length, injected: true };
    } catch (e) {
        return { ok: false, status: 0, length: 0, injected: false, error: String(e) };
    }
}
"""

TRIGGER_ELEMENTS_JS = """
(maxTriggers) => {
    const selectors = [
        '[hx-get]:not([hx-trigger="load"])',
        '[data-hx-get]',
        'button:not([disabled])',
        'a.more',
        '.load-more',
        '.btn-load-more',
        '.load-next',
        '[data-load]',
        '.infinite-scroll-trigger',
        '[role="button"]'
    ];
    const scopeWords = ['search', 'filter'];
    const clicked = new Set();
    for (const selector of selectors) {
        for (const el of document.querySelectorAll(selector)) {
            if (clicked.size >= maxTriggers) { return clicked.size; }
            if (clicked.has(el)) { continue; }
            const fetchPath = (el.getAttribute('hx-get') || el.getAttribute('data-hx-get') || '');
            const text = (el.textContent || '').toLowerCase();
            const cls = (typeof el.className === 'string' ? el.className : '').toLowerCase();
            const descriptor = [fetchPath, cls, el.getAttribute('name') || '',
                                el.getAttribute('type') || ''].join(' ').toLowerCase();
            if (scopeWords.some(w => descriptor.includes(w))) { continue; }
            if (el.closest('form')) { continue; }
            const loadsMore = fetchPath !== '' ||
                text.includes('more') || text.includes('load') || text.includes('next') ||
                cls.includes('load') || cls.includes('more') || el.hasAttribute('data-load');
            if (!loadsMore) { continue; }
            const rect = el.getBoundingClientRect();
            if (rect.width <= 0 || rect.height <= 0) { continue; }
            try { el.click(); clicked.add(el); } catch (e) {}
        }
    }
    return clicked.size;
}
"""

SCROLL_TO_FRACTION_JS = "(f) => window.scrollTo(0, document.body.scrollHeight * f)"
SCROLL_TOP_JS = "() => window.scrollTo(0, 0)"

LOADING_INDICATOR_COUNT_JS = """
() => document.querySelectorAll(
    '.loading, .spinner, .skeleton, [data-loading="true"], [aria-busy="true"]'
).length
"""


@dataclass
class ResolveReport:
    """What resolve() did, for logging."""

    endpoints_tried: list[str] = field(default_factory=list)
    endpoints_injected: list[str] = field(default_factory=list)
    injected_chars: int = 0
    endpoints_skipped: bool = False
    stopped_early: bool = False
    triggers_clicked: int = 0
    scroll_steps: int = 0
    loading_settled: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoints_tried": len(self.endpoints_tried),
            "endpoints_injected": self.endpoints_injected,
            "injected_chars": self.injected_chars,
            "endpoints_skipped": self.endpoints_skipped,
            "stopped_early": self.stopped_early,
            "triggers_clicked": self.triggers_clicked,
            "scroll_steps": self.scroll_steps,
            "loading_settled": self.loading_settled,
            "errors": len(self.errors),
        }


class DynamicContentResolver:
    """Makes client-rendered content materialize on a live page."""

    def __init__(self, config: DynamicConfig | None = None):
        self._config = config or get_settings().dynamic

    async def resolve(self, page: Page, url: str) -> ResolveReport:
        """Run the resolution steps against a live page.

        Endpoints are resolved against the page's current URL, which differs
        from `url` after redirects. They are only fetched when the page shows
        fetch hooks or has fewer anchors than endpoint_link_threshold.

        Step failures are recorded and skipped, except browser disconnects,
        which propagate so the caller can retry the whole attempt.
        """
        report = ResolveReport()
        current = page.current_url()
        base = current if current.startswith(("http://", "https://")) else url

        await self._step(report, "network_idle", self._wait_network_idle(page))

        hints = await self._step(report, "discover", page.evaluate(DISCOVER_ENDPOINTS_JS))
        hints = [h for h in (hints or []) if isinstance(h, str)]

        if await self._wants_endpoints(page, hints, report):
            candidates = hints + list(self._config.fallback_endpoints)
            ranked = rank_endpoints(candidates, base, self._config.primary_endpoint)
            ranked = ranked[: self._config.max_endpoints]
            await self._fetch_endpoints(page, base, ranked, report)
        else:
            report.endpoints_skipped = True

        clicked = await self._step(
            report, "triggers", page.evaluate(TRIGGER_ELEMENTS_JS, self._config.max_triggers)
        )
        report.triggers_clicked = clicked if isinstance(clicked, int) else 0
        if report.triggers_clicked:
            await asyncio.sleep(self._config.trigger_wait)

        await self._step(report, "scroll", self._staged_scroll(page, report))

        settled = await self._step(report, "loading", self._wait_loading_settled(page))
        report.loading_settled = bool(settled)

        logger.info("Dynamic content resolved", url=base[:80], **report.to_dict())
        return report

    async def _wants_endpoints(self, page: Page, hints: list[str], report: ResolveReport) -> bool:
        """Whether the live page looks like it loads its listing through fetches."""
        if hints:
            return True
        html = await self._step(report, "inspect", page.content())
        if not isinstance(html, str):
            return False
        signals = analyze_dynamic_signals(html)
        if signals.strong or signals.link_count < self._config.endpoint_link_threshold:
            return True
        logger.debug("Endpoint fetching skipped", link_count=signals.link_count)
        return False

    async def _step(self, report: ResolveReport, name: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except Exception as e:
            if classify_fault(e) == FaultKind.DISCONNECTED:
                fault = to_session_fault(e)
                if fault is not None and fault is not e:
                    raise fault from e
                raise
            report.errors.append(f"{name}: {e}")
            logger.debug("Dynamic content step failed", step=name, error=str(e))
            return None

    async def _wait_network_idle(self, page: Page) -> None:
        ceiling = self._config.network_idle_ceiling
        try:
            await asyncio.wait_for(page.wait_for_network_idle(ceiling), timeout=ceiling)
        except asyncio.TimeoutError:
            logger.debug("Network idle wait hit ceiling", ceiling=ceiling)

    async def _fetch_endpoints(
        self,
        page: Page,
        url: str,
        endpoints: list[str],
        report: ResolveReport,
    ) -> None:
        for endpoint in endpoints:
            report.endpoints_tried.append(endpoint)
            result = await self._step(
                report,
                f"fetch {endpoint}",
                page.evaluate(
                    FETCH_ENDPOINT_JS,
                    {
                        "endpoint": endpoint,
                        "currentUrl": url,
                        "minChars": self._config.min_payload_chars,
                    },
                ),
            )
            if not isinstance(result, dict):
                continue
            if result.get("injected"):
                length = int(result.get("length", 0))
                report.endpoints_injected.append(endpoint)
                report.injected_chars += length
                logger.debug("Endpoint content injected", endpoint=endpoint, length=length)
                if (
                    urlparse(endpoint).path == self._config.primary_endpoint
                    and length > self._config.early_stop_chars
                ):
                    report.stopped_early = True
                    break

    async def _staged_scroll(self, page: Page, report: ResolveReport) -> None:
        for fraction in self._config.scroll_steps:
            await page.evaluate(SCROLL_TO_FRACTION_JS, fraction)
            report.scroll_steps += 1
            await asyncio.sleep(self._config.scroll_wait)
        await page.evaluate(SCROLL_TOP_JS)

    async def _wait_loading_settled(self, page: Page) -> bool:
        interval = self._config.loading_poll_interval
        for _ in range(max(1, int(self._config.loading_wait / interval))):
            count = await page.evaluate(LOADING_INDICATOR_COUNT_JS)
            if not count:
                return True
            await asyncio.sleep(interval)
        logger.debug("Loading indicators still present", wait=self._config.loading_wait)
        return False
