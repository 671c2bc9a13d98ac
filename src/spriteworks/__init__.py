"""Spriteworks - sprite generation and content-addressed asset caching."""

__version__ = "0.1.0"

from spriteworks.core.config import SpriteworksConfig, config

__all__ = [
    "SpriteworksConfig",
    "config",
]
