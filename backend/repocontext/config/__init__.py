"""Configuration management for repocontext."""

from .manager import (
    DEFAULT_CONFIG,
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_EXCLUDE_PATTERNS,
    load_config,
    cfg_fingerprint,
    chunking_fingerprint,
    expand_pattern,
    retention_policy,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_INCLUDE_PATTERNS",
    "DEFAULT_EXCLUDE_PATTERNS",
    "load_config",
    "cfg_fingerprint",
    "chunking_fingerprint",
    "expand_pattern",
    "retention_policy",
]
