"""Application configuration helpers."""

from __future__ import annotations

from .env import require_env_var, require_env_vars, resolve_env_references
from .errors import ConfigurationError, MissingConfigurationError
from .http_resilience import CacheConfig, RateLimit, ResilienceConfig, TransportRetryPolicy
from .logging import configure_logging
from .pipeline import PipelineConfig, StageConfig, load_pipeline_config, parse_pipeline_config
from .storage import StorageConfig, get_storage_config

__all__ = [
    "CacheConfig",
    "ConfigurationError",
    "MissingConfigurationError",
    "PipelineConfig",
    "RateLimit",
    "ResilienceConfig",
    "StageConfig",
    "StorageConfig",
    "TransportRetryPolicy",
    "configure_logging",
    "get_storage_config",
    "load_pipeline_config",
    "parse_pipeline_config",
    "require_env_var",
    "require_env_vars",
    "resolve_env_references",
]
