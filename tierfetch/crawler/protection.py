"""
Protection detection and bypass on a live browser page.

Detection is the pure table scan in challenge_detector, fed with the rendered
DOM and the navigation response. Bypass follows one shape for every vendor:

1. Rotate the claimed browser identity (UA, headers, navigator, viewport)
2. Behavioral delay
3. Human interaction (mouse moves, small scroll, dwell)
4. Vendor-specific wait (poll until the challenge clears, or reload)
5. Re-check: success when the challenge is gone or the page clearly improved

A bypass runs at most once per navigation.
"""

import asyncio
import random
import time

from tierfetch.crawler.browser_pool import NavigationResponse, Page, WaitPolicy
from tierfetch.crawler.challenge_detector import (
    NO_PROTECTION,
    ProtectionKind,
    ProtectionSignal,
    detect_protection,
)
from tierfetch.crawler.content_validator import validate
from tierfetch.crawler.errors import SessionFault, to_session_fault
from tierfetch.crawler.fingerprint import FingerprintPool, get_fingerprint_pool
from tierfetch.crawler.human_behavior import HumanBehaviorConfig, HumanBehaviorSimulator
from tierfetch.crawler.session import BrowserSession
from tierfetch.utils.config import ProtectionConfig, get_settings
from tierfetch.utils.domain_rules import DomainRuleManager
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)

# Seconds allowed for the Incapsula reload
RELOAD_TIMEOUT = 30.0


class ProtectionBypassEngine:
    """Detects challenges on a page and tries to get past them."""

    def __init__(
        self,
        fingerprints: FingerprintPool | None = None,
        behavior: HumanBehaviorSimulator | None = None,
        config: ProtectionConfig | None = None,
        rules: DomainRuleManager | None = None,
        rng: random.Random | None = None,
    ):
        self._fingerprints = fingerprints or get_fingerprint_pool()
        self._config = config or get_settings().protection
        self._rng = rng or random.Random()
        self._behavior = behavior or HumanBehaviorSimulator(
            HumanBehaviorConfig(mouse_moves=self._config.mouse_moves), self._rng
        )
        self._rules = rules

    async def detect(
        self,
        page: Page,
        response: NavigationResponse | None = None,
    ) -> ProtectionSignal:
        """Scan the rendered page (and its navigation response, if known)."""
        html = await page.content()
        if response is None:
            return detect_protection(html)
        return detect_protection(html, response.headers, response.status)

    async def bypass(
        self,
        page: Page,
        signal: ProtectionSignal,
        session: BrowserSession | None = None,
    ) -> bool:
        """Run the bypass routine for a detected challenge.

        Args:
            page: Page showing the challenge.
            signal: Signal from detect().
            session: Owning session; used to rotate the profile and to enforce
                one attempt per navigation.

        Returns:
            True when the challenge is believed cleared.

        Raises:
            SessionFault: the browser failed underneath the bypass.
        """
        if not signal.present:
            return True

        if session is not None:
            if session.bypass_attempted:
                logger.warning(
                    "Bypass already attempted for this navigation",
                    kind=signal.kind.value,
                )
                return False
            session.bypass_attempted = True

        logger.info(
            "Protection bypass started",
            kind=signal.kind.value,
            confidence=signal.confidence,
            evidence=signal.evidence,
        )
        started = time.monotonic()

        try:
            before = await page.content()
            url = page.current_url()
            viewport = session.viewport if session is not None else (1920, 1080)

            if session is not None:
                profile = self._fingerprints.rotate(session.profile)
                await session.apply_profile(profile)
                viewport = session.viewport

            await asyncio.sleep(
                self._rng.uniform(self._config.behavior_delay_min, self._config.behavior_delay_max)
            )
            await self._behavior.perform(page, viewport)

            after_signal = await self._wait_for_vendor(page, signal, url, session)
            after = await page.content()
        except SessionFault:
            raise
        except Exception as e:
            fault = to_session_fault(e)
            if fault is not None:
                raise fault from e
            logger.warning("Protection bypass failed", kind=signal.kind.value, error=str(e))
            return False

        success = not after_signal.present or self._improved(before, after, url)
        logger.info(
            "Protection bypass finished",
            kind=signal.kind.value,
            success=success,
            still_protected=after_signal.present,
            before_length=len(before),
            after_length=len(after),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return success

    async def _wait_for_vendor(
        self,
        page: Page,
        signal: ProtectionSignal,
        url: str,
        session: BrowserSession | None = None,
    ) -> ProtectionSignal:
        cfg = self._config
        if signal.kind == ProtectionKind.DATADOME:
            return await self._poll_until_clear(
                page, cfg.datadome_max_wait, cfg.datadome_poll_interval
            )
        if signal.kind == ProtectionKind.CLOUDFLARE:
            return await self._poll_until_clear(
                page, cfg.cloudflare_max_wait, cfg.cloudflare_poll_interval
            )
        if signal.kind == ProtectionKind.INCAPSULA:
            await asyncio.sleep(cfg.incapsula_wait)
            if session is not None:
                # Still the same navigation as far as the one-attempt rule goes
                response = await session.navigate(
                    url, WaitPolicy.DOMCONTENTLOADED, RELOAD_TIMEOUT
                )
                session.bypass_attempted = True
            else:
                response = await page.navigate(url, WaitPolicy.DOMCONTENTLOADED, RELOAD_TIMEOUT)
            await asyncio.sleep(cfg.incapsula_reload_wait)
            return detect_protection(await page.content(), response.headers, response.status)
        return await self._check(page)

    async def _poll_until_clear(
        self,
        page: Page,
        max_wait: float,
        interval: float,
    ) -> ProtectionSignal:
        signal = await self._check(page)
        for _ in range(max(1, int(max_wait / interval))):
            if not signal.present:
                break
            await asyncio.sleep(interval)
            signal = await self._check(page)
        return signal

    async def _check(self, page: Page) -> ProtectionSignal:
        html = await page.content()
        signal = detect_protection(html)
        return signal if signal.present else NO_PROTECTION

    def _improved(self, before: str, after: str, url: str) -> bool:
        """Content grew by the improvement ratio without losing links."""
        if len(after) < len(before) * self._config.improvement_ratio:
            return False
        links_before = validate(before, url, rules=self._rules).link_count
        links_after = validate(after, url, rules=self._rules).link_count
        return links_after >= links_before
