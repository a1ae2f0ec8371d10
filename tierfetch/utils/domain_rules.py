"""
Domain Rules - per-hostname overrides of content validation thresholds.

Rules are loaded from config/domain_rules.yaml:

    defaults:
      min_content_length: 2000
      min_link_count: 10
    domains:
      nytimes.com:
        min_content_length: 10000
        min_link_count: 25

Matching is deterministic and independent of file order: a rule key applies
when it occurs in the hostname; suffix matches beat plain substring matches,
then the longest key wins.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tierfetch.utils.config import _deep_merge, get_config_dir, get_settings
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)


class RuleDefaultsSchema(BaseModel):
    """Schema for default thresholds (domain_rules.yaml: defaults)."""

    model_config = ConfigDict(extra="forbid")

    min_content_length: int = Field(default=2000, ge=0)
    min_link_count: int = Field(default=10, ge=0)


class DomainRuleSchema(BaseModel):
    """Schema for a single domain override entry."""

    model_config = ConfigDict(extra="forbid")

    min_content_length: int | None = Field(default=None, ge=0)
    min_link_count: int | None = Field(default=None, ge=0)
    required_markers: list[str] = Field(default_factory=list)
    forbidden_patterns: list[str] = Field(default_factory=list)

    @field_validator("forbidden_patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Reject patterns that do not compile."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid forbidden pattern {pattern!r}: {e}") from e
        return v


class DomainRulesConfigSchema(BaseModel):
    """Root schema for domain_rules.yaml."""

    defaults: RuleDefaultsSchema = Field(default_factory=RuleDefaultsSchema)
    domains: dict[str, DomainRuleSchema] = Field(default_factory=dict)

    @field_validator("domains", mode="before")
    @classmethod
    def normalize_keys(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k).lower().strip(): (entry or {}) for k, entry in v.items()}
        return v


@dataclass(frozen=True)
class DomainRule:
    """Resolved validation thresholds for one hostname."""

    min_content_length: int = 2000
    min_link_count: int = 10
    required_markers: tuple[str, ...] = ()
    forbidden_patterns: tuple[re.Pattern[str], ...] = field(default=())
    # Matched rule key; None when the defaults apply
    key: str | None = None


def normalize_host(url_or_host: str) -> str:
    """Lowercased hostname without a leading www."""
    value = url_or_host.strip().lower()
    if "://" in value:
        value = urlparse(value).hostname or ""
    else:
        value = value.split("/", 1)[0].split(":", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    return value


def _match_rank(host: str, key: str) -> tuple[int, int] | None:
    """Rank of key against host; lower sorts first, None means no match."""
    if key not in host:
        return None
    is_suffix = host == key or host.endswith("." + key)
    return (0 if is_suffix else 1, -len(key))


class DomainRuleManager:
    """
    Loads the DomainRule table and resolves rules for URLs.

    Thread-safe; resolved rules are cached per hostname until reload().

    Usage:
        manager = get_domain_rule_manager()
        rule = manager.rule_for("https://www.nytimes.com/section/world")
    """

    def __init__(
        self,
        config_path: Path | str | None = None,
        data: dict[str, Any] | None = None,
    ):
        """
        Args:
            config_path: Path to domain_rules.yaml. Defaults to the configured file.
            data: Inline table in the YAML layout; takes precedence over config_path.
        """
        if config_path is None:
            config_path = get_config_dir() / get_settings().validation.domain_rules_file
        self._config_path = Path(config_path)
        self._inline = data
        self._config = DomainRulesConfigSchema()
        self._cache: dict[str, DomainRule] = {}
        self._lock = threading.RLock()
        self._load_config()

    def _read_source(self) -> dict[str, Any]:
        if self._inline is not None:
            return self._inline

        data: dict[str, Any] = {}
        if self._config_path.exists():
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        else:
            logger.warning("Domain rules not found, using defaults", path=str(self._config_path))

        local_path = self._config_path.parent / "local.yaml"
        if local_path.exists():
            with open(local_path, encoding="utf-8") as f:
                local = yaml.safe_load(f) or {}
            if isinstance(local.get("domain_rules"), dict):
                data = _deep_merge(data, local["domain_rules"])
        return data

    def _load_config(self) -> None:
        """Load and validate the rule table; keep the previous table on error."""
        try:
            config = DomainRulesConfigSchema(**self._read_source())
        except yaml.YAMLError as e:
            logger.error("Failed to parse domain rules YAML", error=str(e))
            return
        except ValidationError as e:
            logger.error(
                "Invalid domain rules",
                error=str(e),
                path=str(self._config_path),
            )
            return

        with self._lock:
            self._config = config
            self._cache.clear()

        logger.info(
            "Domain rules loaded",
            path=str(self._config_path) if self._inline is None else "<inline>",
            domain_count=len(config.domains),
        )

    def reload(self) -> None:
        """Force reload of the rule table."""
        self._load_config()

    @property
    def config(self) -> DomainRulesConfigSchema:
        return self._config

    def match_key(self, host: str) -> str | None:
        """Return the most specific rule key matching host, if any."""
        host = normalize_host(host)
        if not host:
            return None
        ranked = [
            (rank, key)
            for key in self._config.domains
            if (rank := _match_rank(host, key)) is not None
        ]
        if not ranked:
            return None
        ranked.sort()
        return ranked[0][1]

    def rule_for(self, url: str) -> DomainRule:
        """Resolve the DomainRule for a URL or hostname."""
        host = normalize_host(url)
        with self._lock:
            cached = self._cache.get(host)
            if cached is not None:
                return cached

            defaults = self._config.defaults
            key = self.match_key(host)
            if key is None:
                rule = DomainRule(
                    min_content_length=defaults.min_content_length,
                    min_link_count=defaults.min_link_count,
                )
            else:
                entry = self._config.domains[key]
                rule = DomainRule(
                    min_content_length=_pick(entry.min_content_length, defaults.min_content_length),
                    min_link_count=_pick(entry.min_link_count, defaults.min_link_count),
                    required_markers=tuple(entry.required_markers),
                    forbidden_patterns=tuple(
                        re.compile(p, re.IGNORECASE) for p in entry.forbidden_patterns
                    ),
                    key=key,
                )
            self._cache[host] = rule
            return rule


def _pick(value: int | None, default: int) -> int:
    return default if value is None else value


# =============================================================================
# Module-level singleton access
# =============================================================================

_manager_instance: DomainRuleManager | None = None
_manager_lock = threading.Lock()


def get_domain_rule_manager(**kwargs: Any) -> DomainRuleManager:
    """Get the singleton DomainRuleManager instance."""
    global _manager_instance

    if _manager_instance is None:
        with _manager_lock:
            if _manager_instance is None:
                _manager_instance = DomainRuleManager(**kwargs)

    return _manager_instance


def reset_domain_rule_manager() -> None:
    """Reset the singleton instance (for testing)."""
    global _manager_instance

    with _manager_lock:
        _manager_instance = None
