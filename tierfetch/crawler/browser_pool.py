"""
Browser process pool and page abstraction.

The rest of the package only sees the narrow Page / BrowserPool protocols
below; all DOM-specific logic travels as script payloads to evaluate().
PlaywrightBrowserPool is the production implementation: one Chromium
process shared by all fetches, one isolated context per page.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from tierfetch.crawler.stealth import get_stealth_args
from tierfetch.utils.config import get_settings
from tierfetch.utils.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Frame, Playwright
    from playwright.async_api import Page as PlaywrightNativePage

logger = get_logger(__name__)


class WaitPolicy(str, Enum):
    """Navigation completion condition."""

    COMMIT = "commit"
    DOMCONTENTLOADED = "domcontentloaded"
    LOAD = "load"
    NETWORKIDLE = "networkidle"


@dataclass(frozen=True)
class PageConfig:
    """Properties fixed at page creation."""

    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: str | None = None
    locale: str = "en-US"


@dataclass(frozen=True)
class NavigationResponse:
    """Main-frame response of a navigation."""

    status: int | None
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    redirect_chain: tuple[str, ...] = ()


@runtime_checkable
class Page(Protocol):
    """A live browser page. Timeouts are in seconds."""

    async def navigate(
        self, url: str, wait_policy: WaitPolicy | str, timeout: float
    ) -> NavigationResponse: ...

    async def evaluate(self, script: str, *args: Any) -> Any: ...

    async def content(self) -> str: ...

    async def close(self) -> None: ...

    def current_url(self) -> str: ...

    def main_frame_urls(self) -> list[str]: ...

    async def set_viewport(self, width: int, height: int) -> None: ...

    async def set_extra_headers(self, headers: dict[str, str]) -> None: ...

    async def add_init_script(self, script: str) -> None: ...

    def set_timeouts(self, navigation: float, default: float) -> None: ...

    async def mouse_move(self, x: float, y: float) -> None: ...

    async def wait_for_network_idle(self, timeout: float) -> None: ...


@runtime_checkable
class BrowserPool(Protocol):
    """Supplies pages and can be told to restart its browser process."""

    async def create_page(self, config: PageConfig) -> Page: ...

    async def restart_browser(self, generation: int | None = None) -> None: ...

    async def close(self) -> None: ...


class PlaywrightPage:
    """Page adapter over a Playwright page living in its own context."""

    def __init__(
        self,
        page: PlaywrightNativePage,
        context: BrowserContext,
        generation: int,
    ):
        self._page = page
        self._context = context
        # Browser process generation this page belongs to
        self.generation = generation
        # Main-frame URLs committed since the last navigate(), including
        # client-side redirects the page followed on its own
        self._frame_urls: list[str] = []
        page.on("framenavigated", self._on_frame_navigated)

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame == self._page.main_frame:
            self._frame_urls.append(frame.url)

    async def navigate(
        self, url: str, wait_policy: WaitPolicy | str, timeout: float
    ) -> NavigationResponse:
        wait_until = wait_policy.value if isinstance(wait_policy, WaitPolicy) else wait_policy
        self._frame_urls = []
        response = await self._page.goto(url, wait_until=wait_until, timeout=timeout * 1000)
        if response is None:
            return NavigationResponse(status=None, url=self._page.url)

        chain: list[str] = []
        request = response.request
        while request is not None:
            chain.insert(0, request.url)
            request = request.redirected_from
        if not chain or chain[-1] != self._page.url:
            chain.append(self._page.url)

        return NavigationResponse(
            status=response.status,
            url=self._page.url,
            headers=await response.all_headers(),
            redirect_chain=tuple(chain),
        )

    async def evaluate(self, script: str, *args: Any) -> Any:
        if not args:
            return await self._page.evaluate(script)
        if len(args) == 1:
            return await self._page.evaluate(script, args[0])
        return await self._page.evaluate(script, list(args))

    async def content(self) -> str:
        return await self._page.content()

    async def close(self) -> None:
        await self._context.close()

    def current_url(self) -> str:
        return self._page.url

    def main_frame_urls(self) -> list[str]:
        return list(self._frame_urls)

    async def set_viewport(self, width: int, height: int) -> None:
        await self._page.set_viewport_size({"width": width, "height": height})

    async def set_extra_headers(self, headers: dict[str, str]) -> None:
        await self._page.set_extra_http_headers(headers)

    async def add_init_script(self, script: str) -> None:
        await self._page.add_init_script(script)

    def set_timeouts(self, navigation: float, default: float) -> None:
        self._page.set_default_navigation_timeout(navigation * 1000)
        self._page.set_default_timeout(default * 1000)

    async def mouse_move(self, x: float, y: float) -> None:
        await self._page.mouse.move(x, y)

    async def wait_for_network_idle(self, timeout: float) -> None:
        await self._page.wait_for_load_state("networkidle", timeout=timeout * 1000)


class PlaywrightBrowserPool:
    """
    Shared Chromium process handing out isolated pages.

    Each page gets a fresh BrowserContext, so concurrent fetches never share
    cookies, storage or a live page. Launch and restart are serialized; a
    restart request from a page of an older generation is ignored once the
    browser has already been replaced.
    """

    def __init__(self, headless: bool | None = None, launch_args: list[str] | None = None):
        if headless is None:
            headless = get_settings().session.headless
        self._headless = headless
        self._launch_args = launch_args if launch_args is not None else get_stealth_args()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    async def _ensure_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        if self._playwright is None:
            try:
                from playwright.async_api import async_playwright
            except ImportError as e:
                raise RuntimeError("Playwright not installed") from e
            self._playwright = await async_playwright().start()
            logger.info("Playwright initialized")

        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=self._launch_args,
        )
        self._generation += 1
        logger.info(
            "Browser launched",
            headless=self._headless,
            generation=self._generation,
        )
        return self._browser

    async def create_page(self, config: PageConfig) -> PlaywrightPage:
        async with self._lock:
            browser = await self._ensure_browser()
            generation = self._generation

        context_options: dict[str, Any] = {
            "viewport": {"width": config.viewport_width, "height": config.viewport_height},
            "locale": config.locale,
        }
        if config.user_agent:
            context_options["user_agent"] = config.user_agent

        context = await browser.new_context(**context_options)
        try:
            page = await context.new_page()
        except BaseException:
            await context.close()
            raise
        return PlaywrightPage(page, context, generation)

    async def restart_browser(self, generation: int | None = None) -> None:
        """Replace the browser process.

        Args:
            generation: Generation of the page that saw the disconnect. When the
                browser has already moved past it, or is still connected,
                nothing is restarted.
        """
        async with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(
                    "Browser restart skipped, already replaced",
                    stale_generation=generation,
                    generation=self._generation,
                )
                return

            old = self._browser
            if old is not None and old.is_connected():
                # Only the page or its context went away
                logger.info(
                    "Browser restart skipped, still connected",
                    generation=self._generation,
                )
                return

            self._browser = None
            if old is not None:
                try:
                    await old.close()
                except Exception as e:
                    logger.debug("Closing dead browser failed", error=str(e))

            await self._ensure_browser()
            logger.warning("Browser restarted", generation=self._generation)

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug("Browser close failed", error=str(e))
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser pool closed")
