"""Core sprite generation pipeline.

Leaf-first overview of the modules in this package:

- **config**: ``SpriteworksConfig`` loaded from ``SPRITEWORKS_*`` environment
  variables, plus the global ``config`` instance.
- **errors**: Error taxonomy; every error carries its HTTP status.
- **motions**: Immutable registry of animation cycles.
- **prompt_builder**: Style presets and synthesis prompt composition.
- **cache_store**: Content-addressed, write-once asset storage.
- **frames**: Grid extraction, resizing, mirroring, atlas composition.
- **synthesis**: Remote and local image providers with retry.
- **records** / **queue**: sqlite-backed generation records and per-user
  job accounting.
- **orchestrator**: Ties the above together for one request.

Importing this package does not import torch; the local diffusers backend
loads it lazily.
"""

from spriteworks.core.config import SpriteworksConfig, config

__all__ = [
    "SpriteworksConfig",
    "config",
]
