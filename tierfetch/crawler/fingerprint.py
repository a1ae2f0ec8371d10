"""
Browser identity profiles for fingerprint rotation.

A BrowserProfile bundles everything a site can use to recognise a client:
user agent, request header set, TLS (JA3) signature, viewport and navigator
properties. Profiles are consistent with each other by construction: a
Firefox UA never ships Chrome client hints.

Profiles and the session user-agent pool are loaded from
config/fingerprints.yaml when present; built-in defaults otherwise.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tierfetch.utils.config import get_config_dir, get_settings
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)

_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Upgrade-Insecure-Requests": "1",
}

_CHROME_JA3 = (
    "771,4865-4867-4866-49195-49199-52393-52392-49196-49200-49162-49161-49171-49172-51-57-47-53-10,"
    "0-23-65281-10-11-35-16-5-51-43-13-45-28-21,29-23-24-25-256-257,0"
)
_FIREFOX_JA3 = (
    "771,4865-4867-4866-49195-49199-52393-52392-49196-49200-49162-49161-49171-49172-156-157-47-53,"
    "0-23-65281-10-11-35-16-5-13-18-51-45-43-27-21,29-23-24,0"
)


@dataclass(frozen=True)
class BrowserProfile:
    """A consistent browser identity."""

    name: str
    user_agent: str
    ja3: str
    headers: dict[str, str] = field(default_factory=dict)
    viewport_width: int = 1920
    viewport_height: int = 1080
    device_type: str = "desktop"
    platform: str = "Win32"
    languages: tuple[str, ...] = ("en-US", "en")
    # curl_cffi impersonation target matching this identity
    impersonate: str = "chrome"

    @property
    def viewport(self) -> dict[str, int]:
        return {"width": self.viewport_width, "height": self.viewport_height}

    @property
    def is_chromium(self) -> bool:
        return "Chrome/" in self.user_agent and "Edg/" not in self.user_agent

    def navigator_overrides(self) -> dict[str, Any]:
        """Navigator properties to install in the page for this identity."""
        return {
            "userAgent": self.user_agent,
            "platform": self.platform,
            "languages": list(self.languages),
            "maxTouchPoints": 5 if self.device_type == "mobile" else 0,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BrowserProfile:
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "languages" in values:
            values["languages"] = tuple(values["languages"])
        return cls(**values)


DEFAULT_PROFILES: tuple[BrowserProfile, ...] = (
    BrowserProfile(
        name="chrome_windows",
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
        ),
        ja3=_CHROME_JA3,
        headers={
            **_BASE_HEADERS,
            "Cache-Control": "max-age=0",
            "Sec-Ch-Ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": '"Windows"',
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Sec-Fetch-User": "?1",
        },
        impersonate="chrome124",
    ),
    BrowserProfile(
        name="firefox_windows",
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0"
        ),
        ja3=_FIREFOX_JA3,
        headers={
            **_BASE_HEADERS,
            "Accept-Language": "en-US,en;q=0.5",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Sec-Fetch-User": "?1",
        },
        viewport_width=1366,
        viewport_height=768,
        impersonate="firefox",
    ),
    BrowserProfile(
        name="safari_iphone",
        user_agent=(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
        ),
        ja3=_CHROME_JA3,
        headers=dict(_BASE_HEADERS),
        viewport_width=375,
        viewport_height=812,
        device_type="mobile",
        platform="iPhone",
        impersonate="safari_ios",
    ),
)

# Session user agents: current desktop Chrome/Firefox strings
DEFAULT_USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.4; rv:125.0) Gecko/20100101 Firefox/125.0",
)

# Stealth defaults merged under caller overrides for browser sessions
DEFAULT_SESSION_HEADERS: dict[str, str] = {
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
    "DNT": "1",
}


class FingerprintPool:
    """Pool of browser profiles and user agents.

    Thread-safe for rotation bookkeeping only; profiles themselves are
    immutable.
    """

    def __init__(
        self,
        profiles: list[BrowserProfile] | tuple[BrowserProfile, ...] | None = None,
        user_agents: list[str] | tuple[str, ...] | None = None,
        session_headers: dict[str, str] | None = None,
    ):
        self._profiles = tuple(profiles or DEFAULT_PROFILES)
        self._user_agents = tuple(user_agents or DEFAULT_USER_AGENTS)
        self._session_headers = dict(session_headers or DEFAULT_SESSION_HEADERS)
        self._lock = threading.Lock()
        self._rng = random.Random()

    @classmethod
    def from_yaml(cls, path: str | Path) -> FingerprintPool:
        """Load pool from YAML; fall back to defaults when missing or invalid.

        Layout:
            profiles: [{name, user_agent, ja3, headers, viewport_width, ...}]
            user_agents: [...]
            session_headers: {...}
        """
        path = Path(path)
        if not path.exists():
            logger.debug("Fingerprint config not found, using defaults", path=str(path))
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            profiles = [BrowserProfile.from_dict(p) for p in data.get("profiles", [])]
            return cls(
                profiles=profiles or None,
                user_agents=data.get("user_agents") or None,
                session_headers=data.get("session_headers") or None,
            )
        except (yaml.YAMLError, TypeError, ValueError) as e:
            logger.error("Failed to load fingerprint config", path=str(path), error=str(e))
            return cls()

    @property
    def profiles(self) -> tuple[BrowserProfile, ...]:
        return self._profiles

    @property
    def user_agents(self) -> tuple[str, ...]:
        return self._user_agents

    def seed(self, value: int) -> None:
        """Seed rotation (deterministic tests)."""
        with self._lock:
            self._rng.seed(value)

    def random_user_agent(self) -> str:
        with self._lock:
            return self._rng.choice(self._user_agents)

    def random_profile(self, desktop_only: bool = False) -> BrowserProfile:
        candidates = [
            p for p in self._profiles if not desktop_only or p.device_type == "desktop"
        ] or list(self._profiles)
        with self._lock:
            return self._rng.choice(candidates)

    def get_profile(self, name: str) -> BrowserProfile | None:
        return next((p for p in self._profiles if p.name == name), None)

    def rotate(self, current: BrowserProfile | None) -> BrowserProfile:
        """Pick a profile different from current (when more than one exists)."""
        candidates = [p for p in self._profiles if current is None or p.name != current.name]
        if not candidates:
            candidates = list(self._profiles)
        with self._lock:
            return self._rng.choice(candidates)

    def session_headers(self, overrides: dict[str, str] | None = None) -> dict[str, str]:
        """Stealth default headers with caller overrides applied on top."""
        headers = dict(self._session_headers)
        if overrides:
            headers.update(overrides)
        return headers

    def enhanced_headers(
        self,
        profile: BrowserProfile | None = None,
        referer: str | None = None,
    ) -> dict[str, str]:
        """Full browser-like request header set for the enhanced HTTP tier."""
        profile = profile or self._profiles[0]
        headers = {"User-Agent": profile.user_agent, **profile.headers}
        if referer:
            headers["Referer"] = referer
            if "Sec-Fetch-Site" in headers:
                headers["Sec-Fetch-Site"] = "same-origin"
        return headers


_pool: FingerprintPool | None = None
_pool_lock = threading.Lock()


def get_fingerprint_pool() -> FingerprintPool:
    """Get the shared FingerprintPool loaded from config."""
    global _pool

    if _pool is None:
        with _pool_lock:
            if _pool is None:
                path = get_config_dir() / get_settings().session.fingerprints_file
                _pool = FingerprintPool.from_yaml(path)
    return _pool


def reset_fingerprint_pool() -> None:
    """Reset the shared pool (for testing)."""
    global _pool
    with _pool_lock:
        _pool = None
