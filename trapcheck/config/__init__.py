"""Configuration loading for trapcheck."""

from trapcheck.config.env import expand_env_vars
from trapcheck.config.loader import load_config, validate_config
from trapcheck.config.schema import (
    APISettings,
    FileConfig,
    LoggingSettings,
    TrapCheckConfig,
    parse_duration,
)

__all__ = [
    "APISettings",
    "FileConfig",
    "LoggingSettings",
    "TrapCheckConfig",
    "expand_env_vars",
    "load_config",
    "parse_duration",
    "validate_config",
]
