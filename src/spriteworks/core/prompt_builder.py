"""Synthesis prompt composition for Spriteworks.

Two kinds of prompt are built here:

``build_prompt``
    The single-image path.  Composes the user's base prompt, a style
    preset snippet, fixed sprite descriptors and a closing sentence that
    depends on the mode (a lone ``character`` or a multi-pose
    ``sprite-sheet``).

``build_motion_prompt``
    The sprite pipeline.  One prompt per motion (and per synthesized
    direction) asking the provider for a grid of transparent tiles.

Template Structure (``build_prompt``)::

    [Base Prompt], [Style Snippet], centered character, transparent
    background, pixel-art[, 4×4 grid layout]. [Closing Sentence]

An unknown style key falls back to the default preset.  This is
deliberate: style keys come from client dropdowns and an outdated client
should still get a usable image.

Usage
-----
::

    prompt = build_prompt("a knight with a blue cape", "sprite-sheet", "snes")
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from spriteworks.core.errors import InvalidMotion
from spriteworks.core.motions import get_motion_config

MODE_CHARACTER = "character"
MODE_SPRITE_SHEET = "sprite-sheet"
MODES: tuple[str, ...] = (MODE_CHARACTER, MODE_SPRITE_SHEET)


@dataclass(frozen=True)
class StylePreset:
    key: str
    name: str
    snippet: str
    is_default: bool = False


STYLE_PRESETS: Mapping[str, StylePreset] = MappingProxyType(
    {
        "octopath-traveler": StylePreset(
            key="octopath-traveler",
            name="Octopath Traveler",
            snippet=(
                "HD-2D Octopath-Traveler style, 32-color pixel-art, warm directional lighting, "
                "soft depth-of-field glow, subtle rim-light"
            ),
            is_default=True,
        ),
        "nes": StylePreset(
            key="nes",
            name="NES",
            snippet="retro 8-bit NES palette: 3 colors + alpha, checkerboard dithering",
        ),
        "snes": StylePreset(
            key="snes",
            name="SNES",
            snippet="1994 SNES JRPG look: 16 colors per tile, pastel shading",
        ),
        "pico": StylePreset(
            key="pico",
            name="PICO-8",
            snippet="fantasy console lo-fi: fixed 16-colour PICO-8 palette, 128×128",
        ),
    }
)

DEFAULT_STYLE = "octopath-traveler"

# ---------------------------------------------------------------------------
# Fixed fragments.
# ---------------------------------------------------------------------------

_SPRITE_DESCRIPTORS = ("centered character", "transparent background", "pixel-art")
_SHEET_LAYOUT = "4×4 grid layout"

_CHARACTER_CLOSING = (
    "Make it game-ready with clear pixel definition and proper sprite centering."
)
_SHEET_CLOSING = (
    "Include walking, idle, and action poses arranged in a 4×4 grid. Each pose should be "
    "distinct and well-defined with consistent character size across all frames."
)
_MOTION_DESCRIPTORS = ("centered character", "pixel-art", "no painterly texture", "crisp pixels")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def resolve_style(style_key: str | None) -> StylePreset:
    """Return the preset for ``style_key``, or the default preset."""
    return STYLE_PRESETS.get(style_key or "", STYLE_PRESETS[DEFAULT_STYLE])


def _clean(text: str) -> str:
    # Control characters become spaces, then whitespace runs collapse.
    return _WHITESPACE.sub(" ", _CONTROL_CHARS.sub(" ", text)).strip()


def build_prompt(base_prompt: str, mode: str, style_key: str | None = DEFAULT_STYLE) -> str:
    """Compile the single-image synthesis prompt.

    Args:
        base_prompt: The user's description.  Length validation is the
            caller's responsibility.
        mode: ``"sprite-sheet"`` for a multi-pose grid.  Any other value is
            treated as ``"character"``.
        style_key: Key into :data:`STYLE_PRESETS`.  Unknown keys use the
            default preset.

    Returns:
        A single-line prompt without control characters.
    """
    style = resolve_style(style_key)
    is_sheet = mode == MODE_SPRITE_SHEET

    parts = [_clean(base_prompt), style.snippet, *_SPRITE_DESCRIPTORS]
    if is_sheet:
        parts.append(_SHEET_LAYOUT)

    body = ", ".join(part for part in parts if part)
    closing = _SHEET_CLOSING if is_sheet else _CHARACTER_CLOSING
    return f"{body}. {closing}"


def build_motion_prompt(
    base_prompt: str,
    style_key: str | None,
    motion: str,
    direction: str | None = None,
    *,
    grid_size: int = 4,
    tile_size: int = 256,
) -> str:
    """Compile the synthesis prompt for one motion of the sprite pipeline.

    Args:
        base_prompt: The user's character description.
        style_key: Key into :data:`STYLE_PRESETS`.
        motion: Registered motion name.
        direction: Facing direction for four-direction motions.  A mirrored
            direction yields the prompt of its source direction.
        grid_size: Tiles per row and column requested from the provider.
        tile_size: Pixel size of each requested tile.

    Raises:
        InvalidMotion: If ``motion`` (or ``direction``) is unknown.
    """
    spec = get_motion_config(motion)
    if spec is None:
        raise InvalidMotion(motion)
    fragment = spec.prompt_for(direction)
    if fragment is None:
        raise InvalidMotion(f"{motion}/{direction}")

    style = resolve_style(style_key)
    grid = f"{grid_size}×{grid_size} grid of {tile_size}-pixel transparent tiles"
    parts = [_clean(base_prompt), style.snippet, fragment, grid, *_MOTION_DESCRIPTORS]
    return ", ".join(part for part in parts if part)
