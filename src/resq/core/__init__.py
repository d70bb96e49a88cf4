"""Core utilities shared across ResQ modules."""

from resq.core.config import ResqConfig, get_config, load_config

__all__ = [
    "ResqConfig",
    "get_config",
    "load_config",
]
