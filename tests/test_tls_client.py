"""
Tests for the TLS-fingerprint client manager.

The native client is never loaded: BinaryInventory is stubbed and clients
come from a session_factory returning mocks.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-TLS-N-01 | Platform/arch pairs | Equivalence – normal | Normalized variant or None | - |
| TC-TLS-A-01 | Unsupported architecture | Equivalence – abnormal | None every time, no client created | - |
| TC-TLS-N-02 | Same config repeatedly | Equivalence – reuse | Same handle up to max_reuse | - |
| TC-TLS-B-01 | max_reuse + 1 acquisitions | Boundary – reuse cap | Old retired and closed, new created | - |
| TC-TLS-N-03 | Repeated validation | Equivalence – caching | Inventory checked once within TTL | - |
| TC-TLS-A-02 | Disabled / factory error | Equivalence – abnormal | None | - |
| TC-TLS-N-04 | invalidate | Equivalence – normal | True then False | - |
| TC-TLS-N-05 | cleanup_all twice | Equivalence – idempotent | No clients, no error | - |
| TC-TLS-N-06 | Handle GET | Equivalence – normal | HTTPResponse with chain | - |
| TC-TLS-A-03 | Handle GET fails / closed | Equivalence – abnormal | TransportError | - |
| TC-TLS-N-07 | Retire while in flight | Equivalence – concurrency | Closed after request completes | - |
| TC-TLS-N-08 | Non-executable binary | Equivalence – repair | Execute bit added | POSIX only |
| TC-TLS-A-04 | Native module raises on import | Equivalence – abnormal | Incompatible report, no client | any exception |
| TC-TLS-C-01 | 5 concurrent get_client, one config | Equivalence – concurrency | One client, usage 5 | gather |
"""

import asyncio
import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest

from tierfetch.crawler.errors import TransportError
from tierfetch.crawler.tls_client import (
    BinaryInventory,
    CompatibilityReport,
    SpoofClientHandle,
    TLSClientConfig,
    TLSClientManager,
)
from tierfetch.utils.config import TLSConfig

pytestmark = pytest.mark.unit

CONFIG = TLSClientConfig(user_agent="Mozilla/5.0 Test", ja3="771,4865,0-23,29,0")


def _session() -> MagicMock:
    session = MagicMock()
    session.get = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def inventory() -> MagicMock:
    stub = MagicMock(spec=BinaryInventory)
    stub.validate.return_value = CompatibilityReport(
        compatible=True, variant="linux-x86_64", binary_path="/opt/_wrapper.so"
    )
    return stub


@pytest.fixture
def factory() -> MagicMock:
    return MagicMock(side_effect=lambda config: _session())


def _manager(inventory, factory, **config) -> TLSClientManager:
    return TLSClientManager(
        inventory=inventory, config=TLSConfig(**config), session_factory=factory
    )


class TestBinaryInventory:
    """Platform detection and binary checks."""

    @pytest.mark.parametrize(
        "system, machine, expected",
        [
            ("Linux", "x86_64", "linux-x86_64"),
            ("Linux", "aarch64", "linux-aarch64"),
            ("Darwin", "arm64", "macos-arm64"),
            ("Darwin", "x86_64", "macos-x86_64"),
            ("Windows", "AMD64", "windows-amd64"),
            ("Windows", "ARM64", None),
            ("Linux", "s390x", None),
            ("FreeBSD", "amd64", None),
        ],
    )
    def test_variant(self, system, machine, expected):
        """TC-TLS-N-01: Known builds map to a variant."""
        assert BinaryInventory(system=system, machine=machine).variant == expected

    def test_missing_module(self):
        # Given
        inventory = BinaryInventory("Linux", "x86_64", module_name="tierfetch_absent_native")

        # When
        report = inventory.validate()

        # Then
        assert inventory.locate_binary() is None
        assert report.compatible is False
        assert report.reason == "native library not found"

    def test_locate_binary(self, tmp_path, monkeypatch):
        # Given
        package = tmp_path / "fake_native"
        package.mkdir()
        (package / "__init__.py").write_text("", encoding="utf-8")
        (package / "_wrapper.abi3.so").write_bytes(b"\x7fELF")
        monkeypatch.syspath_prepend(str(tmp_path))

        # When
        binary = BinaryInventory("Linux", "x86_64", module_name="fake_native").locate_binary()

        # Then
        assert binary == package / "_wrapper.abi3.so"

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_ensure_executable_repairs(self, tmp_path):
        """TC-TLS-N-08: Missing execute bit is added."""
        # Given
        binary = tmp_path / "_wrapper.so"
        binary.write_bytes(b"\x7fELF")
        binary.chmod(0o644)

        # When
        ok = BinaryInventory.ensure_executable(binary)

        # Then
        assert ok is True
        assert binary.stat().st_mode & stat.S_IXUSR

    def test_module_load_error_reported(self, tmp_path, monkeypatch):
        """TC-TLS-A-04: Any import-time failure marks the client incompatible."""
        # Given
        inventory = BinaryInventory("Linux", "x86_64")
        binary = tmp_path / "_wrapper.abi3.so"
        monkeypatch.setattr(inventory, "locate_binary", lambda: binary)
        monkeypatch.setattr(inventory, "ensure_executable", lambda path: True)
        monkeypatch.setattr(
            inventory,
            "load_module",
            MagicMock(side_effect=RuntimeError("cffi: undefined symbol curl_easy_impersonate")),
        )

        # When
        report = inventory.validate()

        # Then
        assert report.compatible is False
        assert report.variant == "linux-x86_64"
        assert report.binary_path == str(binary)
        assert "undefined symbol" in report.reason

    async def test_module_load_error_disables_manager(self, tmp_path, monkeypatch, factory):
        # Given
        inventory = BinaryInventory("Linux", "x86_64")
        monkeypatch.setattr(inventory, "locate_binary", lambda: tmp_path / "_wrapper.so")
        monkeypatch.setattr(inventory, "ensure_executable", lambda path: True)
        monkeypatch.setattr(inventory, "load_module", MagicMock(side_effect=AttributeError("x")))
        manager = TLSClientManager(inventory=inventory, config=TLSConfig(), session_factory=factory)

        # When
        handle = await manager.get_client(CONFIG)

        # Then
        assert handle is None
        factory.assert_not_called()
        assert await manager.is_compatible() is False


class TestTLSClientManager:
    """Pooling, reuse and compatibility."""

    async def test_unsupported_architecture(self, factory):
        """TC-TLS-A-01: Incompatible platform is reported, never attempted."""
        # Given
        manager = TLSClientManager(
            inventory=BinaryInventory(system="Linux", machine="s390x"),
            config=TLSConfig(),
            session_factory=factory,
        )

        # When
        first = await manager.get_client(CONFIG)
        second = await manager.get_client(CONFIG)

        # Then
        assert first is None
        assert second is None
        factory.assert_not_called()
        assert await manager.is_compatible() is False
        assert manager.get_stats()["reason"] == "unsupported platform linux-s390x"

    async def test_reuse_until_cap(self, inventory, factory):
        """TC-TLS-N-02 / TC-TLS-B-01: Reuse, then retire at the cap."""
        # Given
        manager = _manager(inventory, factory, max_reuse=3)

        # When
        handles = [await manager.get_client(CONFIG) for _ in range(3)]
        fresh = await manager.get_client(CONFIG)

        # Then
        first = handles[0]
        assert all(h is first for h in handles)
        assert fresh is not first
        assert first.usage_count == 3
        assert fresh.usage_count == 1
        assert first.retired and first.closed
        assert factory.call_count == 2
        assert manager.get_stats()["active_clients"] == 1

    async def test_distinct_configs(self, inventory, factory):
        # Given
        manager = _manager(inventory, factory)
        other = TLSClientConfig(user_agent="Mozilla/5.0 Test", ja3=CONFIG.ja3, proxy="http://p:1")

        # When
        a = await manager.get_client(CONFIG)
        b = await manager.get_client(other)

        # Then
        assert a is not b
        assert manager.get_stats()["active_clients"] == 2

    async def test_concurrent_acquire_creates_one_client(self, inventory, factory):
        """TC-TLS-C-01: Concurrent acquisitions of one config share one client."""
        # Given
        manager = _manager(inventory, factory, max_reuse=10)

        # When
        handles = await asyncio.gather(*(manager.get_client(CONFIG) for _ in range(5)))

        # Then
        assert all(h is handles[0] for h in handles)
        assert handles[0].usage_count == 5
        factory.assert_called_once_with(CONFIG)
        inventory.validate.assert_called_once()
        assert manager.get_stats()["active_clients"] == 1

    async def test_validation_cached(self, inventory, factory):
        """TC-TLS-N-03: One inventory check within the TTL."""
        # Given
        manager = _manager(inventory, factory)

        # When
        for _ in range(5):
            await manager.get_client(CONFIG)
        compatible = await manager.is_compatible()

        # Then
        assert compatible is True
        assert inventory.validate.call_count == 1

    async def test_disabled(self, inventory, factory):
        """TC-TLS-A-02: Disabled by configuration."""
        # Given
        manager = _manager(inventory, factory, enabled=False)

        # When / Then
        assert await manager.get_client(CONFIG) is None
        inventory.validate.assert_not_called()

    async def test_factory_error(self, inventory):
        """TC-TLS-A-02: Client construction failure."""
        # Given
        manager = _manager(inventory, MagicMock(side_effect=OSError("bad ja3")))

        # When / Then
        assert await manager.get_client(CONFIG) is None
        assert manager.get_stats()["active_clients"] == 0

    async def test_invalidate(self, inventory, factory):
        """TC-TLS-N-04: Invalidating retires the pooled client."""
        # Given
        manager = _manager(inventory, factory)
        handle = await manager.get_client(CONFIG)

        # When
        first = await manager.invalidate(CONFIG)
        second = await manager.invalidate(CONFIG)

        # Then
        assert first is True
        assert second is False
        assert handle.closed

    async def test_cleanup_all_twice(self, inventory, factory):
        """TC-TLS-N-05: Repeatable cleanup."""
        # Given
        manager = _manager(inventory, factory)
        handle = await manager.get_client(CONFIG)

        # When
        await manager.cleanup_all()
        await manager.cleanup_all()

        # Then
        assert handle.closed
        assert manager.get_stats()["active_clients"] == 0


class TestSpoofClientHandle:
    """Requests through a pooled client."""

    async def test_get(self):
        """TC-TLS-N-06: Native response mapped to HTTPResponse."""
        # Given
        session = _session()
        native = MagicMock()
        native.url = "https://news.example.com/home"
        native.status_code = 200
        native.headers = {"Content-Type": "text/html"}
        native.text = "<html>ok</html>"
        session.get.return_value = native
        handle = SpoofClientHandle(CONFIG, session, max_reuse=10)

        # When
        response = await handle.get("https://news.example.com/", headers={"DNT": "1"})

        # Then
        session.get.assert_awaited_once_with(
            "https://news.example.com/", headers={"DNT": "1"}, allow_redirects=True
        )
        assert response.status == 200
        assert response.headers == {"content-type": "text/html"}
        assert response.redirect_chain == (
            "https://news.example.com/",
            "https://news.example.com/home",
        )

    async def test_get_failure(self):
        """TC-TLS-A-03: Native errors become TransportError."""
        # Given
        session = _session()
        session.get.side_effect = ConnectionError("reset by peer")
        handle = SpoofClientHandle(CONFIG, session, max_reuse=10)

        # When / Then
        with pytest.raises(TransportError, match="reset by peer"):
            await handle.get("https://news.example.com/")

    async def test_closed_handle(self):
        """TC-TLS-A-03: No requests after close."""
        # Given
        handle = SpoofClientHandle(CONFIG, _session(), max_reuse=10)
        await handle.close()

        # When / Then
        with pytest.raises(TransportError):
            await handle.get("https://news.example.com/")

    async def test_retire_while_in_flight(self):
        """TC-TLS-N-07: Close deferred until the request finishes."""
        # Given
        release = asyncio.Event()
        session = _session()
        native = MagicMock(url="https://news.example.com/", status_code=200, text="ok")
        native.headers = {}

        async def slow_get(url, headers=None, allow_redirects=True):
            await release.wait()
            return native

        session.get = slow_get
        handle = SpoofClientHandle(CONFIG, session, max_reuse=10)
        task = asyncio.create_task(handle.get("https://news.example.com/"))
        await asyncio.sleep(0)

        # When
        await handle.retire()
        closed_during = handle.closed
        release.set()
        response = await task

        # Then
        assert closed_during is False
        assert response.status == 200
        assert handle.closed is True
        session.close.assert_awaited_once()


def test_config_key():
    # Given
    same = TLSClientConfig(user_agent=CONFIG.user_agent, ja3=CONFIG.ja3)
    proxied = TLSClientConfig(user_agent=CONFIG.user_agent, ja3=CONFIG.ja3, proxy="http://p:1")

    # Then
    assert same.config_key == CONFIG.config_key
    assert proxied.config_key != CONFIG.config_key
    assert len(CONFIG.config_key) == 64
