"""Configuration models and parser for conduit.yaml."""

from conduit.config.models import (
    AgentConfig,
    ConduitConfig,
    OverflowPolicy,
    PermissionMode,
    RouterConfig,
    TimeoutConfig,
)
from conduit.config.parser import DEFAULT_CONFIG_NAME, load_config
from conduit.errors import ConfigError

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "AgentConfig",
    "ConduitConfig",
    "ConfigError",
    "OverflowPolicy",
    "PermissionMode",
    "RouterConfig",
    "TimeoutConfig",
    "load_config",
]
