"""Configuration management for codeseek."""

from .manager import (
    CHUNKING_KEYS,
    DEFAULT_CONFIG,
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_EXCLUDE_PATTERNS,
    load_config,
    cfg_fingerprint,
    expand_pattern,
    expand_patterns,
    index_dir,
)

__all__ = [
    "CHUNKING_KEYS",
    "DEFAULT_CONFIG",
    "DEFAULT_INCLUDE_PATTERNS",
    "DEFAULT_EXCLUDE_PATTERNS",
    "load_config",
    "cfg_fingerprint",
    "expand_pattern",
    "expand_patterns",
    "index_dir",
]
