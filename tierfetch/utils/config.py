"""
Configuration management for tierfetch.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "tierfetch"
    log_level: str = "INFO"
    logs_dir: str = "logs"
    log_to_file: bool = False
    json_logs: bool = True


class FetchConfig(BaseModel):
    """Tier escalation configuration.

    Timeouts are in seconds. Each tier's timeout is additionally capped by
    whatever remains of the request's overall budget.
    """

    model_config = ConfigDict(extra="forbid")

    tier1_timeout: float = 12.0
    tier2_timeout: float = 30.0
    tier3_timeout: float = 90.0
    total_budget: float = 180.0

    min_content_bytes: int = 1000
    substantial_bytes: int = 50_000
    min_source_links: int = 10

    # Retry policy
    transport_retries: int = 1
    browser_retries: int = 1
    browser_retry_backoff: float = 2.0

    # Client-side (meta refresh / script) redirects followed per fetch
    max_client_redirects: int = 5
    # Meta refresh with a longer delay is a timed reload, not a redirect
    meta_refresh_max_delay: float = 10.0


class SessionConfig(BaseModel):
    """Browser session configuration."""

    model_config = ConfigDict(extra="forbid")

    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    article_timeout: float = 60.0
    source_timeout: float = 45.0
    stealth_enabled: bool = True
    fingerprints_file: str = "fingerprints.yaml"

    # Frame-detach recovery
    recovery_timeout: float = 10.0
    recovery_settle: float = 1.0
    min_recovered_bytes: int = 500


class ProtectionConfig(BaseModel):
    """Protection bypass configuration."""

    model_config = ConfigDict(extra="forbid")

    behavior_delay_min: float = 1.0
    behavior_delay_max: float = 3.0
    mouse_moves: int = 3
    datadome_max_wait: float = 20.0
    datadome_poll_interval: float = 1.0
    cloudflare_max_wait: float = 15.0
    cloudflare_poll_interval: float = 2.0
    incapsula_wait: float = 5.0
    incapsula_reload_wait: float = 3.0
    # Content must grow by this factor for a bypass to count as an improvement
    improvement_ratio: float = 1.2


class DynamicConfig(BaseModel):
    """Dynamic content resolution configuration."""

    model_config = ConfigDict(extra="forbid")

    network_idle_ceiling: float = 5.0
    primary_endpoint: str = "/media/items/"
    fallback_endpoints: list[str] = Field(
        default_factory=lambda: [
            "/media/items/",
            "/media/items/top/",
            "/media/items/followed/",
            "/topics/media/",
            "/media/items/saved/",
            "/media/sources/",
            "/media/sources/following/",
        ]
    )
    max_endpoints: int = 8
    # Endpoints are only fetched on pages with fetch hooks or fewer anchors than this
    endpoint_link_threshold: int = 10
    min_payload_chars: int = 100
    early_stop_chars: int = 10_000
    max_triggers: int = 10
    trigger_wait: float = 2.0
    scroll_steps: list[float] = Field(default_factory=lambda: [0.25, 0.5, 0.75, 1.0])
    scroll_wait: float = 1.0
    loading_wait: float = 10.0
    loading_poll_interval: float = 0.5


class TLSConfig(BaseModel):
    """TLS-fingerprint client configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_reuse: int = 10
    validation_ttl: float = 300.0
    impersonate: str = "chrome"


class ValidationConfig(BaseModel):
    """Content validation thresholds and rule file location."""

    model_config = ConfigDict(extra="forbid")

    max_error_link_ratio: float = 0.1
    min_article_link_ratio: float = 0.2
    minimal_content_chars: int = 500
    domain_rules_file: str = "domain_rules.yaml"


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    protection: ProtectionConfig = Field(default_factory=ProtectionConfig)
    dynamic: DynamicConfig = Field(default_factory=DynamicConfig)
    tls: TLSConfig = Field(default_factory=TLSConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_local_overrides(config_dir: Path) -> dict[str, Any]:
    """Load local.yaml overrides.

    Top-level keys correspond to config file names (without .yaml extension):

        settings:
          fetch:
            tier1_timeout: 8
        domain_rules:
          domains:
            example.com:
              min_link_count: 5

    Args:
        config_dir: Configuration directory path.

    Returns:
        Local overrides dictionary (empty when local.yaml is absent).
    """
    local_path = config_dir / "local.yaml"
    if not local_path.exists():
        return {}
    with open(local_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_yaml_with_local_override(
    filename: str,
    section_key: str | None = None,
    config_dir: Path | None = None,
) -> dict[str, Any]:
    """Load a YAML config file with local.yaml override support.

    Args:
        filename: YAML filename (e.g., "settings.yaml").
        section_key: Key in local.yaml for overrides.
                     Defaults to filename without extension.
        config_dir: Configuration directory. Defaults to get_config_dir().

    Returns:
        Merged configuration dictionary.
    """
    if config_dir is None:
        config_dir = get_config_dir()

    config: dict[str, Any] = {}

    base_path = config_dir / filename
    if base_path.exists():
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_overrides = _load_local_overrides(config_dir)
    if section_key is None:
        section_key = Path(filename).stem

    if section_key in local_overrides:
        config = _deep_merge(config, local_overrides[section_key])

    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with TIERFETCH_ and use
    double underscores for nested keys.

    Example:
        TIERFETCH_FETCH__TIER1_TIMEOUT=8

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "TIERFETCH_"

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == "TIERFETCH_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")
        if len(key_path) < 2:
            continue

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # This file lives at tierfetch/utils/config.py
    return Path(__file__).parent.parent.parent


def get_config_dir() -> Path:
    """Get the configuration directory (TIERFETCH_CONFIG_DIR or <root>/config)."""
    env_dir = os.environ.get("TIERFETCH_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    return get_project_root() / "config"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. config/settings.yaml (+ settings section of config/local.yaml)
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config = load_yaml_with_local_override("settings.yaml", "settings")
    config = _apply_env_overrides(config)
    return Settings(**config)


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() reloads (for testing)."""
    get_settings.cache_clear()
