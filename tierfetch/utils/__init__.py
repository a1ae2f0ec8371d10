"""
tierfetch utilities module.
"""

from tierfetch.utils.config import get_config_dir, get_settings, reset_settings
from tierfetch.utils.domain_rules import (
    DomainRule,
    DomainRuleManager,
    get_domain_rule_manager,
    reset_domain_rule_manager,
)
from tierfetch.utils.logging import (
    LogContext,
    bind_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    "get_config_dir",
    "get_settings",
    "reset_settings",
    "DomainRule",
    "DomainRuleManager",
    "get_domain_rule_manager",
    "reset_domain_rule_manager",
    "LogContext",
    "bind_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
