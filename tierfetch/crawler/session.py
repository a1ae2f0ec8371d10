"""
Browser session configuration and fault recovery.

A BrowserSession is one borrowed Page plus the stealth identity applied to
it. It is owned by a single fetch attempt and always closed, on every exit
path, exactly once.

Navigation faults are handled here because only the session knows enough to
recover from them:
- frame detached: salvage the content in place (read content, serialize the
  live DOM, or re-navigate on a fresh page)
- browser disconnected: restart the browser pool and re-raise so the tier can
  start over
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from tierfetch.crawler.browser_pool import (
    BrowserPool,
    NavigationResponse,
    Page,
    PageConfig,
    WaitPolicy,
)
from tierfetch.crawler.errors import (
    BrowserDisconnectedError,
    FaultKind,
    SessionClosedError,
    classify_fault,
    to_session_fault,
)
from tierfetch.crawler.fetch_result import FetchIntent
from tierfetch.crawler.fingerprint import (
    BrowserProfile,
    FingerprintPool,
    get_fingerprint_pool,
)
from tierfetch.crawler.stealth import (
    DEFAULT_LANGUAGES,
    apply_stealth,
    navigator_overrides_script,
)
from tierfetch.utils.config import SessionConfig, get_settings
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)

SERIALIZE_DOM_JS = """
() => {
    const root = document.documentElement;
    if (!root) { return ''; }
    const doctype = document.doctype ? '<!DOCTYPE ' + document.doctype.name + '>' : '';
    return doctype + root.outerHTML;
}
"""

# Confidence attached to content salvaged by each recovery step
RECOVERY_CONFIDENCE = {
    "content": 0.7,
    "serialized_dom": 0.6,
    "renavigate": 0.5,
}


@dataclass
class SessionOptions:
    """Caller overrides for session configuration."""

    extra_headers: dict[str, str] = field(default_factory=dict)
    user_agent: str | None = None
    viewport: tuple[int, int] | None = None
    stealth: bool = True
    timeout_ms: int | None = None
    profile_name: str | None = None


@dataclass(frozen=True)
class _SessionPlan:
    """Everything needed to configure a fresh page identically."""

    page_config: PageConfig
    headers: dict[str, str]
    timeout: float
    stealth: bool
    languages: tuple[str, ...]


class BrowserSession:
    """A configured Page for the duration of one fetch attempt.

    Use as an async context manager, or call close() explicitly. Any Page
    access after close() raises SessionClosedError.
    """

    def __init__(
        self,
        page: Page,
        intent: FetchIntent,
        plan: _SessionPlan,
        profile: BrowserProfile | None = None,
    ):
        self._page = page
        self._plan = plan
        self._closed = False
        self.intent = intent
        self.profile = profile
        self.generation: int | None = getattr(page, "generation", None)

        # Per-navigation state
        self.redirect_chain: list[str] = []
        self._frames_seen = 0
        self.last_response: NavigationResponse | None = None
        self.bypass_attempted = False
        self.recovered_html: str | None = None
        self.recovery_confidence: float | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def page(self) -> Page:
        if self._closed:
            raise SessionClosedError("Session already closed")
        return self._page

    @property
    def plan(self) -> _SessionPlan:
        return self._plan

    @property
    def user_agent(self) -> str | None:
        return self._plan.page_config.user_agent

    @property
    def viewport(self) -> tuple[int, int]:
        cfg = self._plan.page_config
        return cfg.viewport_width, cfg.viewport_height

    async def navigate(
        self,
        url: str,
        wait_policy: WaitPolicy | str = WaitPolicy.DOMCONTENTLOADED,
        timeout: float | None = None,
        *,
        keep_chain: bool = False,
    ) -> NavigationResponse:
        """Navigate the page and start a new navigation record.

        Args:
            keep_chain: Continue the current redirect chain instead of starting
                a new one, when following a client-side redirect.

        Raises:
            FrameDetachedError / BrowserDisconnectedError: classified browser faults.
            SessionClosedError: the session was closed.
        """
        page = self.page
        previous: list[str] = []
        if keep_chain:
            self.record_navigation()
            previous = list(self.redirect_chain)
        self.bypass_attempted = False
        self.recovered_html = None
        self.recovery_confidence = None

        try:
            response = await page.navigate(url, wait_policy, timeout or self._plan.timeout)
        except Exception as e:
            fault = to_session_fault(e, url=url)
            if fault is not None and fault is not e:
                raise fault from e
            raise

        self.last_response = response
        self._frames_seen = 0
        self.redirect_chain = previous
        self._extend_chain([*(response.redirect_chain or (url,)), response.url])
        return response

    def record_navigation(self) -> None:
        """Add main-frame navigations the page made on its own to redirect_chain.

        Meta refresh and script redirects that the browser followed after
        navigate() returned are only visible this way.
        """
        page = self.page
        urls = page.main_frame_urls()
        fresh, self._frames_seen = urls[self._frames_seen :], len(urls)
        self._extend_chain([*fresh, page.current_url()])

    def _extend_chain(self, urls: list[str]) -> None:
        for url in urls:
            if not url.startswith(("http://", "https://")):
                continue
            if not self.redirect_chain or self.redirect_chain[-1] != url:
                self.redirect_chain.append(url)

    async def content(self) -> str:
        return await self.page.content()

    async def evaluate(self, script: str, *args: Any) -> Any:
        return await self.page.evaluate(script, *args)

    def current_url(self) -> str:
        return self.page.current_url()

    async def apply_profile(self, profile: BrowserProfile) -> None:
        """Switch the claimed identity for the rest of the session.

        Headers and navigator overrides take effect on the next request and
        the current document; the viewport changes immediately.
        """
        page = self.page
        headers = {**self._plan.headers, **profile.headers, "User-Agent": profile.user_agent}
        script = navigator_overrides_script(profile.navigator_overrides())

        await page.set_extra_headers(headers)
        await page.add_init_script(script)
        await page.evaluate(script)
        await page.set_viewport(profile.viewport_width, profile.viewport_height)

        self.profile = profile
        self._plan = _SessionPlan(
            page_config=PageConfig(
                viewport_width=profile.viewport_width,
                viewport_height=profile.viewport_height,
                user_agent=profile.user_agent,
                locale=self._plan.page_config.locale,
            ),
            headers=headers,
            timeout=self._plan.timeout,
            stealth=self._plan.stealth,
            languages=profile.languages,
        )
        logger.info("Browser profile rotated", profile=profile.name)

    async def replace_page(self, page: Page) -> None:
        """Swap in a fresh page, closing the current one."""
        old = self.page
        self._page = page
        self.generation = getattr(page, "generation", None)
        try:
            await old.close()
        except Exception as e:
            logger.debug("Closing replaced page failed", error=str(e))

    async def close(self) -> None:
        """Release the page. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._page.close()
        except Exception as e:
            logger.warning("Page close failed", error=str(e))

    async def __aenter__(self) -> BrowserSession:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class SessionConfigurator:
    """Creates configured sessions and recovers them from navigation faults."""

    def __init__(
        self,
        pool: BrowserPool,
        fingerprints: FingerprintPool | None = None,
        config: SessionConfig | None = None,
    ):
        self._pool = pool
        self._fingerprints = fingerprints or get_fingerprint_pool()
        self._config = config or get_settings().session

    @property
    def pool(self) -> BrowserPool:
        return self._pool

    @property
    def fingerprints(self) -> FingerprintPool:
        return self._fingerprints

    def _plan(
        self, intent: FetchIntent, options: SessionOptions
    ) -> tuple[_SessionPlan, BrowserProfile | None]:
        profile = (
            self._fingerprints.get_profile(options.profile_name) if options.profile_name else None
        )
        user_agent = options.user_agent or (
            profile.user_agent if profile else self._fingerprints.random_user_agent()
        )
        if options.viewport:
            width, height = options.viewport
        elif profile:
            width, height = profile.viewport_width, profile.viewport_height
        else:
            width, height = self._config.viewport_width, self._config.viewport_height

        if options.timeout_ms:
            timeout = options.timeout_ms / 1000
        elif intent == FetchIntent.ARTICLE:
            timeout = self._config.article_timeout
        else:
            timeout = self._config.source_timeout

        headers = self._fingerprints.session_headers(
            {**(profile.headers if profile else {}), **options.extra_headers}
        )
        plan = _SessionPlan(
            page_config=PageConfig(
                viewport_width=width, viewport_height=height, user_agent=user_agent
            ),
            headers=headers,
            timeout=timeout,
            stealth=options.stealth and self._config.stealth_enabled,
            languages=profile.languages if profile else DEFAULT_LANGUAGES,
        )
        return plan, profile

    async def _prepare(self, page: Page, plan: _SessionPlan, timeout: float | None = None) -> None:
        """Apply viewport, headers, timeouts and stealth, in that order."""
        cfg = plan.page_config
        await page.set_viewport(cfg.viewport_width, cfg.viewport_height)
        await page.set_extra_headers(plan.headers)
        page.set_timeouts(timeout or plan.timeout, timeout or plan.timeout)
        if plan.stealth:
            await apply_stealth(page, plan.languages)

    async def _new_page(self, plan: _SessionPlan, timeout: float | None = None) -> Page:
        page = await self._pool.create_page(plan.page_config)
        try:
            await self._prepare(page, plan, timeout)
        except BaseException:
            await page.close()
            raise
        return page

    async def configure(
        self,
        intent: FetchIntent,
        options: SessionOptions | None = None,
    ) -> BrowserSession:
        """Borrow a page and configure it before any navigation.

        The caller owns the returned session and must close it.
        """
        options = options or SessionOptions()
        plan, profile = self._plan(intent, options)
        page = await self._new_page(plan)
        logger.debug(
            "Session configured",
            intent=intent.value,
            viewport=f"{plan.page_config.viewport_width}x{plan.page_config.viewport_height}",
            timeout=plan.timeout,
            stealth=plan.stealth,
        )
        return BrowserSession(page, intent, plan, profile)

    @asynccontextmanager
    async def open(
        self,
        intent: FetchIntent,
        options: SessionOptions | None = None,
    ) -> AsyncIterator[BrowserSession]:
        """configure() as an async context manager that always closes the session."""
        session = await self.configure(intent, options)
        try:
            yield session
        finally:
            await session.close()

    async def recover_from_fault(
        self,
        session: BrowserSession,
        fault: BaseException,
        url: str,
    ) -> BrowserSession | None:
        """Try to salvage a navigation that failed with a session fault.

        Returns:
            The session with recovered_html and recovery_confidence set, or
            None when nothing usable was recovered.

        Raises:
            BrowserDisconnectedError: the browser went away; the pool has been
                asked to restart and the whole attempt should be retried.
        """
        kind = classify_fault(fault)
        if kind == FaultKind.DISCONNECTED:
            await self._restart_pool(session)
            if isinstance(fault, BrowserDisconnectedError):
                raise fault
            raise BrowserDisconnectedError(str(fault), url=url) from fault

        if kind != FaultKind.FRAME_DETACHED:
            logger.debug("Fault not recoverable in place", kind=kind.value, url=url[:80])
            return None

        logger.info("Recovering from frame detach", url=url[:80])
        minimum = self._config.min_recovered_bytes

        try:
            html = await session.content()
            if len(html) >= minimum:
                return self._recovered(session, html, "content")
        except Exception as e:
            logger.debug("Content read after detach failed", error=str(e))

        try:
            html = await session.evaluate(SERIALIZE_DOM_JS)
            if isinstance(html, str) and len(html) >= minimum:
                return self._recovered(session, html, "serialized_dom")
        except Exception as e:
            logger.debug("DOM serialization after detach failed", error=str(e))

        try:
            page = await self._new_page(session.plan, timeout=self._config.recovery_timeout)
            await session.replace_page(page)
            await session.navigate(url, WaitPolicy.DOMCONTENTLOADED, self._config.recovery_timeout)
            await asyncio.sleep(self._config.recovery_settle)
            html = await session.content()
            if len(html) >= minimum:
                return self._recovered(session, html, "renavigate")
        except BrowserDisconnectedError as e:
            await self._restart_pool(session)
            raise e
        except Exception as e:
            if classify_fault(e) == FaultKind.DISCONNECTED:
                await self._restart_pool(session)
                raise BrowserDisconnectedError(str(e), url=url) from e
            logger.debug("Re-navigation after detach failed", error=str(e))

        logger.warning("Frame detach recovery failed", url=url[:80])
        return None

    def _recovered(self, session: BrowserSession, html: str, step: str) -> BrowserSession:
        session.recovered_html = html
        session.recovery_confidence = RECOVERY_CONFIDENCE[step]
        logger.info(
            "Frame detach recovered",
            step=step,
            length=len(html),
            confidence=session.recovery_confidence,
        )
        return session

    async def _restart_pool(self, session: BrowserSession) -> None:
        logger.warning("Browser disconnected, restarting pool", generation=session.generation)
        await self._pool.restart_browser(session.generation)
