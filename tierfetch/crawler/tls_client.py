"""
TLS-fingerprint spoofing client manager.

Pools curl_cffi AsyncSessions keyed by (user agent, JA3, proxy, timeout), so
that a native client is reused across requests with the same identity but
never accumulates state indefinitely: after max_reuse acquisitions it is
retired and recreated.

Before first use, the manager checks that curl_cffi can actually run here:
a known platform/architecture build, a native library that is present and
executable, and an importable module exposing AsyncSession. The result is
cached for validation_ttl seconds. When the check fails, get_client()
returns None; callers treat that as "tier unavailable".
"""

import asyncio
import hashlib
import importlib
import importlib.util
import os
import platform
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tierfetch.crawler.errors import TLSClientUnavailableError, TransportError
from tierfetch.crawler.fetch_result import HTTPResponse
from tierfetch.utils.config import TLSConfig, get_settings
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)

# Platform/architecture builds the native library ships for
KNOWN_VARIANTS = frozenset(
    {
        "linux-x86_64",
        "linux-aarch64",
        "macos-x86_64",
        "macos-arm64",
        "windows-amd64",
    }
)

_SYSTEM_ALIASES = {
    "linux": "linux",
    "darwin": "macos",
    "macos": "macos",
    "windows": "windows",
    "win32": "windows",
}

_MACHINE_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

_NATIVE_SUFFIXES = (".so", ".pyd", ".dylib")


@dataclass(frozen=True)
class CompatibilityReport:
    """Outcome of the native client compatibility check."""

    compatible: bool
    variant: str | None = None
    binary_path: str | None = None
    reason: str = ""


class BinaryInventory:
    """Locates and checks the curl_cffi native build for this platform."""

    def __init__(
        self,
        system: str | None = None,
        machine: str | None = None,
        module_name: str = "curl_cffi",
    ):
        self._system = (system or platform.system()).lower()
        self._machine = (machine or platform.machine()).lower()
        self._module_name = module_name

    @property
    def variant(self) -> str | None:
        """Normalized build variant name, or None for unknown platforms."""
        system = _SYSTEM_ALIASES.get(self._system)
        machine = _MACHINE_ALIASES.get(self._machine)
        if system is None or machine is None:
            return None
        if system == "linux" and machine == "arm64":
            machine = "aarch64"
        elif system == "windows" and machine == "x86_64":
            machine = "amd64"
        variant = f"{system}-{machine}"
        return variant if variant in KNOWN_VARIANTS else None

    def locate_binary(self) -> Path | None:
        """Path of the native extension inside the installed package."""
        spec = importlib.util.find_spec(self._module_name)
        if spec is None or spec.origin is None:
            return None
        package_dir = Path(spec.origin).parent
        for candidate in sorted(package_dir.glob("_wrapper*")):
            if candidate.suffix in _NATIVE_SUFFIXES:
                return candidate
        return None

    @staticmethod
    def ensure_executable(path: Path) -> bool:
        """Make sure the binary has its execute bit, repairing it if needed."""
        if os.name == "nt" or os.access(path, os.X_OK):
            return True
        try:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            logger.warning("Repaired execute permission on TLS client binary", path=str(path))
        except OSError as e:
            logger.error("Cannot repair TLS client binary permission", path=str(path), error=str(e))
            return False
        return os.access(path, os.X_OK)

    def load_module(self) -> Any:
        """Import the request module and check its call surface."""
        module = importlib.import_module(f"{self._module_name}.requests")
        session_cls = getattr(module, "AsyncSession", None)
        if session_cls is None or not callable(getattr(session_cls, "get", None)):
            raise TLSClientUnavailableError("AsyncSession.get missing from curl_cffi")
        return module

    def validate(self) -> CompatibilityReport:
        variant = self.variant
        if variant is None:
            return CompatibilityReport(
                compatible=False,
                reason=f"unsupported platform {self._system}-{self._machine}",
            )

        binary = self.locate_binary()
        if binary is None:
            return CompatibilityReport(
                compatible=False, variant=variant, reason="native library not found"
            )
        if not self.ensure_executable(binary):
            return CompatibilityReport(
                compatible=False,
                variant=variant,
                binary_path=str(binary),
                reason="native library not executable",
            )

        try:
            self.load_module()
        except Exception as e:
            # A broken native build can fail with anything at import time
            logger.warning("TLS client module failed to load", variant=variant, error=str(e))
            return CompatibilityReport(
                compatible=False,
                variant=variant,
                binary_path=str(binary),
                reason=f"native module failed to load: {e}",
            )
        return CompatibilityReport(compatible=True, variant=variant, binary_path=str(binary))


@dataclass(frozen=True)
class TLSClientConfig:
    """Identity a spoofing client presents."""

    user_agent: str
    ja3: str | None = None
    proxy: str | None = None
    timeout: float = 30.0
    impersonate: str = "chrome"

    @property
    def config_key(self) -> str:
        raw = "|".join([self.user_agent, self.ja3 or "", self.proxy or "", f"{self.timeout:g}"])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _default_session_factory(config: TLSClientConfig) -> Any:
    from curl_cffi.requests import AsyncSession

    kwargs: dict[str, Any] = {
        "impersonate": config.impersonate,
        "timeout": config.timeout,
        "headers": {"User-Agent": config.user_agent},
    }
    if config.ja3:
        kwargs["ja3"] = config.ja3
    if config.proxy:
        kwargs["proxy"] = config.proxy
    return AsyncSession(**kwargs)


class SpoofClientHandle:
    """One pooled spoofing client. Owned by TLSClientManager."""

    def __init__(self, config: TLSClientConfig, session: Any, max_reuse: int):
        self.config = config
        self.config_key = config.config_key
        self.max_reuse = max_reuse
        self.usage_count = 0
        self._session = session
        self._in_flight = 0
        self._retired = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def retired(self) -> bool:
        return self._retired

    @property
    def reusable(self) -> bool:
        return not self._retired and self.usage_count < self.max_reuse

    async def get(self, url: str, headers: dict[str, str] | None = None) -> HTTPResponse:
        """GET through the spoofing client.

        Raises:
            TransportError: connection failure, timeout or closed client.
        """
        if self._closed:
            raise TransportError("TLS client already closed", url=url)

        self._in_flight += 1
        started = time.monotonic()
        try:
            response = await self._session.get(url, headers=headers, allow_redirects=True)
        except Exception as e:
            raise TransportError(f"TLS client request failed: {e}", url=url) from e
        finally:
            self._in_flight -= 1
            if self._retired and self._in_flight == 0:
                await self.close()

        final_url = str(response.url)
        chain = (url,) if final_url == url else (url, final_url)
        return HTTPResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            text=response.text,
            url=final_url,
            redirect_chain=chain,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def retire(self) -> None:
        """Stop handing this client out; close it once no request is in flight."""
        self._retired = True
        if self._in_flight == 0:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._session.close()
        except Exception as e:
            logger.debug("TLS client close failed", error=str(e))


class TLSClientManager:
    """Pool of spoofing clients, at most one live client per config key."""

    def __init__(
        self,
        inventory: BinaryInventory | None = None,
        config: TLSConfig | None = None,
        session_factory: Callable[[TLSClientConfig], Any] | None = None,
    ):
        self._inventory = inventory or BinaryInventory()
        self._config = config or get_settings().tls
        self._session_factory = session_factory or _default_session_factory
        self._clients: dict[str, SpoofClientHandle] = {}
        self._lock = asyncio.Lock()
        self._report: CompatibilityReport | None = None
        self._validated_at: float | None = None

    @property
    def max_reuse(self) -> int:
        return self._config.max_reuse

    def _validation_fresh(self) -> bool:
        return (
            self._validated_at is not None
            and time.monotonic() - self._validated_at < self._config.validation_ttl
        )

    def _ensure_compatible(self) -> None:
        """Raise TLSClientUnavailableError unless the native client can run.

        Callers hold self._lock.
        """
        if not self._config.enabled:
            raise TLSClientUnavailableError("TLS client disabled by configuration")

        if not self._validation_fresh():
            self._report = self._inventory.validate()
            self._validated_at = time.monotonic()
            if self._report.compatible:
                logger.info(
                    "TLS client compatibility validated",
                    variant=self._report.variant,
                    binary=self._report.binary_path,
                )
            else:
                logger.warning("TLS client unavailable", reason=self._report.reason)

        if self._report is None or not self._report.compatible:
            reason = self._report.reason if self._report else "not validated"
            raise TLSClientUnavailableError(reason)

    async def is_compatible(self) -> bool:
        async with self._lock:
            try:
                self._ensure_compatible()
            except TLSClientUnavailableError:
                return False
            return True

    async def get_client(self, config: TLSClientConfig) -> SpoofClientHandle | None:
        """Acquire a pooled client for config.

        Returns:
            A handle whose usage count includes this acquisition, or None when
            the native client is unavailable or could not be created.
        """
        key = config.config_key
        async with self._lock:
            try:
                self._ensure_compatible()
            except TLSClientUnavailableError:
                return None

            handle = self._clients.get(key)
            if handle is not None and handle.reusable:
                handle.usage_count += 1
                logger.debug(
                    "Reusing TLS client",
                    usage=handle.usage_count,
                    max_reuse=handle.max_reuse,
                )
                return handle

            if handle is not None:
                del self._clients[key]
                await handle.retire()
                logger.debug("TLS client retired after reuse cap", usage=handle.usage_count)

            try:
                session = self._session_factory(config)
            except Exception as e:
                logger.error("Failed to create TLS client", error=str(e))
                return None

            handle = SpoofClientHandle(config, session, self._config.max_reuse)
            handle.usage_count = 1
            self._clients[key] = handle
            logger.debug("TLS client created", impersonate=config.impersonate)
            return handle

    async def invalidate(self, config: TLSClientConfig) -> bool:
        """Retire the pooled client for config. Returns False when none existed."""
        async with self._lock:
            handle = self._clients.pop(config.config_key, None)
        if handle is None:
            return False
        await handle.retire()
        return True

    async def cleanup_all(self) -> None:
        """Close every pooled client. Safe to call repeatedly."""
        async with self._lock:
            handles = list(self._clients.values())
            self._clients.clear()

        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.debug("TLS client cleanup failed", error=str(e))
        if handles:
            logger.info("TLS clients cleaned up", count=len(handles))

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_clients": len(self._clients),
            "validated": self._validated_at is not None,
            "compatible": bool(self._report and self._report.compatible),
            "variant": self._report.variant if self._report else None,
            "reason": self._report.reason if self._report else "",
            "usage": {key[:12]: h.usage_count for key, h in self._clients.items()},
        }
