"""
Tiered fetch orchestrator.

Escalates through strictly more expensive strategies until one yields
sufficient, valid content:

1. Direct HTTP: accepted when long enough and not in need of client-side
   rendering (or already substantial)
2. Enhanced HTTP: browser-like headers and, when available, a spoofed TLS
   fingerprint; source pages additionally need enough usable links
3. Browser: stealth session, protection bypass, dynamic content resolution,
   validation; retried once after a browser disconnect

fetch() never raises for site or network conditions: failures become
FetchResult(success=False) carrying the best partial HTML seen.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field, replace

from tierfetch.crawler.browser_pool import BrowserPool, PlaywrightBrowserPool, WaitPolicy
from tierfetch.crawler.challenge_detector import detect_protection, is_rate_limited
from tierfetch.crawler.content_validator import ValidationVerdict, is_acceptable, validate
from tierfetch.crawler.dynamic_content import DynamicContentResolver, needs_dynamic_loading
from tierfetch.crawler.errors import (
    BrowserDisconnectedError,
    TransportError,
    to_session_fault,
)
from tierfetch.crawler.fetch_result import (
    FetchIntent,
    FetchRequest,
    FetchResult,
    FetchTier,
    HTTPResponse,
)
from tierfetch.crawler.fingerprint import FingerprintPool, get_fingerprint_pool
from tierfetch.crawler.http_fetcher import (
    DirectHTTPTransport,
    EnhancedHTTPTransport,
    HTTPTransport,
    SpoofedHTTPTransport,
)
from tierfetch.crawler.protection import ProtectionBypassEngine
from tierfetch.crawler.redirects import find_client_redirect
from tierfetch.crawler.session import BrowserSession, SessionConfigurator
from tierfetch.crawler.tls_client import TLSClientManager
from tierfetch.utils.config import Settings, get_settings
from tierfetch.utils.domain_rules import DomainRuleManager, get_domain_rule_manager
from tierfetch.utils.logging import LogContext, ensure_logging_configured, get_logger

logger = get_logger(__name__)


@dataclass
class _TierOutcome:
    """What one tier produced."""

    tier: FetchTier
    html: str
    accepted: bool
    status: int | None = None
    final_url: str | None = None
    redirect_chain: tuple[str, ...] = ()
    reason: str = ""


@dataclass
class _FetchState:
    """Bookkeeping for one fetch() call."""

    request: FetchRequest
    started: float
    deadline: float
    tiers_attempted: list[FetchTier] = field(default_factory=list)
    partial: _TierOutcome | None = None
    last_error: str | None = None

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def keep_partial(self, outcome: _TierOutcome) -> None:
        if outcome.html:
            self.partial = outcome

    def fail(self, tier: FetchTier, message: str) -> None:
        self.last_error = f"{tier.value}: {message}"
        logger.info("Tier failed", tier=tier.value, reason=message)


class TieredFetchOrchestrator:
    """Chooses the cheapest retrieval strategy that yields valid content.

    Collaborators are injected; the defaults build the production stack.
    Safe to share between concurrent fetch() calls.
    """

    def __init__(
        self,
        *,
        direct: HTTPTransport | None = None,
        enhanced: HTTPTransport | None = None,
        browser_pool: BrowserPool | None = None,
        configurator: SessionConfigurator | None = None,
        protection: ProtectionBypassEngine | None = None,
        resolver: DynamicContentResolver | None = None,
        tls_manager: TLSClientManager | None = None,
        fingerprints: FingerprintPool | None = None,
        rules: DomainRuleManager | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._fingerprints = fingerprints or get_fingerprint_pool()
        self._rules = rules or get_domain_rule_manager()

        self._direct = direct or DirectHTTPTransport(self._fingerprints)
        if enhanced is None:
            fallback = EnhancedHTTPTransport(self._fingerprints)
            if self._settings.tls.enabled:
                tls_manager = tls_manager or TLSClientManager(config=self._settings.tls)
                enhanced = SpoofedHTTPTransport(tls_manager, fallback, self._fingerprints)
            else:
                enhanced = fallback
        self._enhanced = enhanced
        self._tls_manager = tls_manager

        if configurator is None:
            pool = browser_pool or PlaywrightBrowserPool(headless=self._settings.session.headless)
            configurator = SessionConfigurator(pool, self._fingerprints, self._settings.session)
        self._configurator = configurator
        self._protection = protection or ProtectionBypassEngine(
            self._fingerprints, config=self._settings.protection, rules=self._rules
        )
        self._resolver = resolver or DynamicContentResolver(self._settings.dynamic)

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Retrieve content for a request. Never raises except on cancellation."""
        fetch_cfg = self._settings.fetch
        budget = (
            request.timeout_budget_ms / 1000
            if request.timeout_budget_ms is not None
            else fetch_cfg.total_budget
        )
        started = time.monotonic()
        state = _FetchState(request=request, started=started, deadline=started + budget)

        tiers = (
            (FetchTier.DIRECT_HTTP, fetch_cfg.tier1_timeout, self._direct_tier),
            (FetchTier.ENHANCED_HTTP, fetch_cfg.tier2_timeout, self._enhanced_tier),
            (FetchTier.BROWSER, fetch_cfg.tier3_timeout, self._browser_tier),
        )

        with LogContext(url=request.url, intent=request.intent.value):
            logger.info("Fetch started", budget_s=budget)
            for tier, tier_timeout, handler in tiers:
                remaining = state.remaining()
                if remaining <= 0:
                    state.last_error = "Overall timeout budget exhausted"
                    break

                state.tiers_attempted.append(tier)
                timeout = min(tier_timeout, remaining)
                outcome = await self._run_tier(tier, handler, state, timeout)
                if outcome is None:
                    continue
                state.keep_partial(outcome)
                if outcome.accepted:
                    return self._result(state, outcome, success=True)
                state.fail(tier, outcome.reason)

            return self._failure(state)

    async def _run_tier(self, tier, handler, state: _FetchState, timeout: float):
        try:
            return await asyncio.wait_for(handler(state, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            state.fail(tier, f"Timed out after {timeout:.1f}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected tier error", tier=tier.value)
            state.fail(tier, f"{type(e).__name__}: {e}")
        return None

    async def _http_get(
        self,
        transport: HTTPTransport,
        tier: FetchTier,
        state: _FetchState,
        timeout: float,
    ) -> HTTPResponse | None:
        """GET with a bounded retry. Returns None after recording the failure."""
        url = state.request.url
        tier_deadline = time.monotonic() + timeout
        attempts = 1 + self._settings.fetch.transport_retries

        for attempt in range(1, attempts + 1):
            try:
                response = await transport.get(
                    url, timeout=max(0.1, tier_deadline - time.monotonic()), attempt=attempt
                )
            except TransportError as e:
                if e.body:
                    state.keep_partial(
                        _TierOutcome(tier=tier, html=e.body, accepted=False, status=e.status)
                    )
                retryable = (e.status is None or e.status >= 500) and not is_rate_limited(
                    e.body, e.status
                )
                if not retryable or attempt == attempts:
                    state.fail(tier, e.message)
                    return None
                logger.debug("Transport error, retrying", tier=tier.value, error=e.message)
            else:
                return await self._follow_client_redirects(
                    transport, tier, response, tier_deadline
                )
        return None

    async def _follow_client_redirects(
        self,
        transport: HTTPTransport,
        tier: FetchTier,
        response: HTTPResponse,
        deadline: float,
    ) -> HTTPResponse:
        """Follow meta refresh / script redirects the HTTP client can't run.

        Returns the last response reached, with the whole chain. A failing hop
        leaves the previous response in place for the tier to judge.
        """
        fetch_cfg = self._settings.fetch
        chain = list(response.redirect_chain) or [response.url]
        for _ in range(fetch_cfg.max_client_redirects):
            redirect = find_client_redirect(
                response.text, response.url, fetch_cfg.meta_refresh_max_delay
            )
            if redirect is None:
                break
            if redirect.url in chain:
                logger.debug("Client redirect loop", tier=tier.value, redirect=redirect.url)
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            logger.info(
                "Following client redirect",
                tier=tier.value,
                method=redirect.method,
                redirect=redirect.url,
            )
            try:
                hop = await transport.get(redirect.url, timeout=remaining)
            except TransportError as e:
                logger.info(
                    "Client redirect failed",
                    tier=tier.value,
                    redirect=redirect.url,
                    error=e.message,
                )
                break
            for hop_url in hop.redirect_chain or (hop.url,):
                if hop_url != chain[-1]:
                    chain.append(hop_url)
            response = replace(hop, redirect_chain=tuple(chain))
        return response

    def _http_outcome(self, tier: FetchTier, response: HTTPResponse) -> _TierOutcome:
        return _TierOutcome(
            tier=tier,
            html=response.text,
            accepted=False,
            status=response.status,
            final_url=response.url,
            redirect_chain=response.redirect_chain,
        )

    def _http_rejection(self, response: HTTPResponse) -> str | None:
        """Reason an HTTP response can't be used at all, or None."""
        min_bytes = self._settings.fetch.min_content_bytes
        if len(response.text) < min_bytes:
            return f"Content too short: {len(response.text)} < {min_bytes} bytes"
        signal = detect_protection(response.text, response.headers, response.status)
        if signal.present:
            return f"Protection detected: {signal.kind.value} ({signal.evidence})"
        return None

    async def _direct_tier(self, state: _FetchState, timeout: float) -> _TierOutcome | None:
        tier = FetchTier.DIRECT_HTTP
        response = await self._http_get(self._direct, tier, state, timeout)
        if response is None:
            return None

        outcome = self._http_outcome(tier, response)
        outcome.reason = self._http_rejection(response) or ""
        if outcome.reason:
            return outcome

        substantial = len(response.text) > self._settings.fetch.substantial_bytes
        if substantial or not needs_dynamic_loading(response.text, response.url):
            outcome.accepted = True
        else:
            outcome.reason = "Dynamic content without substantial static content"
        return outcome

    async def _enhanced_tier(self, state: _FetchState, timeout: float) -> _TierOutcome | None:
        tier = FetchTier.ENHANCED_HTTP
        response = await self._http_get(self._enhanced, tier, state, timeout)
        if response is None:
            return None

        outcome = self._http_outcome(tier, response)
        outcome.reason = self._http_rejection(response) or ""
        if outcome.reason:
            return outcome

        if state.request.intent == FetchIntent.SOURCE:
            verdict = validate(response.text, response.url, rules=self._rules)
            min_links = self._settings.fetch.min_source_links
            if verdict.is_error_page:
                outcome.reason = f"Error page: {verdict.error_kind}"
                return outcome
            if verdict.link_count < min_links:
                outcome.reason = f"Too few links: {verdict.link_count} < {min_links}"
                return outcome

        outcome.accepted = True
        return outcome

    async def _browser_tier(self, state: _FetchState, timeout: float) -> _TierOutcome | None:
        attempts = 1 + self._settings.fetch.browser_retries
        for attempt in range(1, attempts + 1):
            try:
                return await self._browser_attempt(state)
            except BrowserDisconnectedError as e:
                if attempt == attempts:
                    state.fail(FetchTier.BROWSER, f"Browser disconnected: {e.message}")
                    return None
                logger.warning(
                    "Browser disconnected, retrying tier",
                    attempt=attempt,
                    backoff=self._settings.fetch.browser_retry_backoff,
                )
                await asyncio.sleep(self._settings.fetch.browser_retry_backoff)
        return None

    async def _browser_attempt(self, state: _FetchState) -> _TierOutcome | None:
        url = state.request.url
        intent = state.request.intent

        async with self._configurator.open(intent) as session:
            try:
                response = await session.navigate(url, WaitPolicy.DOMCONTENTLOADED)
                signal = await self._protection.detect(session.page, response)
                if signal.present:
                    bypassed = await self._protection.bypass(session.page, signal, session)
                    if not bypassed:
                        logger.warning("Protection bypass unsuccessful", kind=signal.kind.value)
                await self._follow_browser_redirects(session)
                await self._resolve_dynamic(session, url, intent)
                html = await session.content()
                session.record_navigation()
            except Exception as e:
                fault = to_session_fault(e, url=url)
                if fault is None:
                    state.fail(FetchTier.BROWSER, f"Browser fetch failed: {type(e).__name__}: {e}")
                    return None
                recovered = await self._configurator.recover_from_fault(session, fault, url)
                if recovered is None or recovered.recovered_html is None:
                    state.fail(FetchTier.BROWSER, f"Unrecovered session fault: {fault.message}")
                    return None
                html = recovered.recovered_html

            return self._browser_outcome(state, html, session)

    async def _follow_browser_redirects(self, session: BrowserSession) -> None:
        """Follow client-side redirects the page announced but has not performed."""
        fetch_cfg = self._settings.fetch
        for _ in range(fetch_cfg.max_client_redirects):
            session.record_navigation()
            chain = session.redirect_chain
            current = chain[-1] if chain else session.current_url()
            redirect = find_client_redirect(
                await session.content(), current, fetch_cfg.meta_refresh_max_delay
            )
            if redirect is None or redirect.url in chain:
                return
            logger.info(
                "Following client redirect",
                tier=FetchTier.BROWSER.value,
                method=redirect.method,
                redirect=redirect.url,
            )
            await session.navigate(redirect.url, WaitPolicy.DOMCONTENTLOADED, keep_chain=True)

    async def _resolve_dynamic(
        self,
        session: BrowserSession,
        url: str,
        intent: FetchIntent,
    ) -> None:
        if intent == FetchIntent.ARTICLE:
            html = await session.content()
            if not needs_dynamic_loading(html, url):
                return
        await self._resolver.resolve(session.page, url)

    def _browser_outcome(
        self,
        state: _FetchState,
        html: str,
        session: BrowserSession,
    ) -> _TierOutcome:
        final_url = session.redirect_chain[-1] if session.redirect_chain else state.request.url
        status = session.last_response.status if session.last_response else None
        verdict = validate(html, final_url, intent=state.request.intent, rules=self._rules)
        accepted = is_acceptable(
            verdict, state.request.intent, self._settings.fetch.min_source_links
        )
        outcome = _TierOutcome(
            tier=FetchTier.BROWSER,
            html=html,
            accepted=accepted,
            status=status,
            final_url=final_url,
            redirect_chain=tuple(session.redirect_chain),
            reason="" if accepted else _verdict_reason(verdict),
        )
        logger.info(
            "Browser content validated",
            length=len(html),
            links=verdict.link_count,
            valid=verdict.is_valid,
            error_page=verdict.is_error_page,
            recovered=session.recovery_confidence is not None,
        )
        return outcome

    def _result(self, state: _FetchState, outcome: _TierOutcome, success: bool) -> FetchResult:
        elapsed_ms = int((time.monotonic() - state.started) * 1000)
        result = FetchResult(
            html=outcome.html,
            success=success,
            tier_used=outcome.tier,
            status_code=outcome.status,
            response_time_ms=elapsed_ms,
            final_url=outcome.final_url or state.request.url,
            redirect_chain=outcome.redirect_chain or (state.request.url,),
            error=None if success else state.last_error,
            tiers_attempted=tuple(state.tiers_attempted),
        )
        log = logger.info if success else logger.warning
        log(
            "Fetch finished",
            success=success,
            tier=outcome.tier.value,
            length=len(outcome.html),
            elapsed_ms=elapsed_ms,
            error=result.error,
        )
        return result

    def _failure(self, state: _FetchState) -> FetchResult:
        if not state.last_error:
            state.last_error = "All tiers failed"
        else:
            state.last_error = f"All tiers failed; last: {state.last_error}"
        last_tier = state.tiers_attempted[-1] if state.tiers_attempted else FetchTier.DIRECT_HTTP
        partial = state.partial or _TierOutcome(tier=last_tier, html="", accepted=False)
        return self._result(state, partial, success=False)

    async def close(self) -> None:
        """Release transports, TLS clients and the browser pool."""
        await self._direct.close()
        await self._enhanced.close()
        if self._tls_manager is not None:
            await self._tls_manager.cleanup_all()
        await self._configurator.pool.close()


def _verdict_reason(verdict: ValidationVerdict) -> str:
    if verdict.issues:
        return "; ".join(verdict.issues)
    return "Content not acceptable"


_orchestrator: TieredFetchOrchestrator | None = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> TieredFetchOrchestrator:
    """Get the shared orchestrator built from settings."""
    global _orchestrator

    if _orchestrator is None:
        with _orchestrator_lock:
            if _orchestrator is None:
                ensure_logging_configured()
                _orchestrator = TieredFetchOrchestrator()
    return _orchestrator


async def close_orchestrator() -> None:
    """Close and drop the shared orchestrator."""
    global _orchestrator

    with _orchestrator_lock:
        orchestrator, _orchestrator = _orchestrator, None
    if orchestrator is not None:
        await orchestrator.close()


def reset_orchestrator() -> None:
    """Drop the shared orchestrator without closing it (for testing)."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = None


async def fetch(
    url: str,
    *,
    is_article: bool = False,
    timeout_budget_ms: int | None = None,
) -> FetchResult:
    """Fetch a URL with the shared orchestrator."""
    request = FetchRequest(url=url, is_article_hint=is_article, timeout_budget_ms=timeout_budget_ms)
    return await get_orchestrator().fetch(request)
