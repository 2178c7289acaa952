"""Application configuration helpers."""

from __future__ import annotations

from .env import positive_float_env, positive_int_env, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .logging import configure_logging, resolve_log_level
from .runner import RunnerConfig, get_runner_config, parse_kind_concurrency
from .storage import DatabaseConfig, StorageConfig, get_database_config, get_storage_config
from .trust import TrustConfig, get_trust_config

__all__ = [
    "ConfigurationError",
    "DatabaseConfig",
    "MissingConfigurationError",
    "RunnerConfig",
    "StorageConfig",
    "TrustConfig",
    "configure_logging",
    "get_database_config",
    "get_runner_config",
    "get_storage_config",
    "get_trust_config",
    "parse_kind_concurrency",
    "positive_float_env",
    "positive_int_env",
    "require_env_vars",
    "resolve_log_level",
]
