"""Pydantic request models for the Spriteworks API.

FastAPI uses these models for request validation and OpenAPI
documentation.  Field names follow the JSON the clients send (camelCase
aliases where the wire name differs from the Python attribute).

Models
------
SpriteGenerateRequest
    Payload for ``POST /api/sprites/generate``.
ImageGenerateRequest
    Payload for ``POST /api/generate``.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from spriteworks.core.prompt_builder import DEFAULT_STYLE, MODE_CHARACTER


class SpriteGenerateRequest(BaseModel):
    """Request body for ``POST /api/sprites/generate``.

    The prompt length ceiling is enforced by the orchestrator from
    ``config.max_prompt_length`` so that it stays configurable.

    Attributes:
        prompt: Character description.
        style: Style preset key; unknown or empty keys fall back to the
            default.
        motions: Motion names in atlas row order.
        seed: Generation seed.  Part of the cache key.
    """

    prompt: str = Field(
        ...,
        min_length=1,
        description="Character description (max 200 characters by default).",
    )
    style: str = Field(
        ...,
        description="Style preset key (e.g. 'octopath-traveler', 'nes'); empty selects the default.",
    )
    motions: list[str] = Field(
        ...,
        min_length=1,
        description="Motion names in atlas row order (e.g. ['idle', 'walk']).",
    )
    seed: int = Field(
        ...,
        ge=0,
        description="Generation seed.",
    )


class ImageGenerateRequest(BaseModel):
    """Request body for ``POST /api/generate``.

    Attributes:
        prompt: Character description.
        resolution: Output edge length in pixels.
        style_preset: Style preset key, sent as ``stylePreset``.
        mode: ``"character"`` or ``"sprite-sheet"``.
        seed: Optional seed.  ``None`` means the server picks one.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(
        ...,
        min_length=1,
        description="Character description (max 200 characters by default).",
    )
    resolution: Literal[256, 512, 1024] = Field(
        default=1024,
        description="Output edge length in pixels.",
    )
    style_preset: str = Field(
        default=DEFAULT_STYLE,
        alias="stylePreset",
        description="Style preset key.",
    )
    mode: Literal["character", "sprite-sheet"] = Field(
        default=MODE_CHARACTER,
        description="'character' for a single sprite, 'sprite-sheet' for a 4×4 sheet.",
    )
    seed: int | None = Field(
        default=None,
        ge=0,
        description="Random seed.  None = server picks a random seed.",
    )
