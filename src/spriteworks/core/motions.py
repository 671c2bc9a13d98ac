"""Motion registry for sprite generation.

A *motion* is a named animation cycle (idle, walk, attack, ...) with a fixed
frame count and playback rate.  The registry is a read-only mapping built
once at import time; nothing mutates it afterwards, so request handlers
can read it concurrently without locking.

Two record variants exist:

- :class:`SingleDirectionMotion` carries one flat prompt fragment.
- :class:`FourDirectionMotion` carries per-direction fragments for
  ``south``, ``north`` and ``east``.  ``west`` either has its own
  fragment or is declared mirrored from ``east``, in which case its pixels
  come from a horizontal flip instead of a separate synthesis call.

Both variants validate themselves in ``__post_init__`` so a malformed
catalog entry fails at import time rather than during a request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Union

logger = logging.getLogger(__name__)

DIRECTIONS: tuple[str, ...] = ("south", "north", "east", "west")
REQUIRED_DIRECTIONS: tuple[str, ...] = ("south", "north", "east")


@dataclass(frozen=True)
class SingleDirectionMotion:
    """A motion rendered from a single viewpoint."""

    name: str
    frame_count: int
    fps: float
    grid_row: int
    prompt_fragment: str

    direction_count = 1

    def __post_init__(self) -> None:
        _validate_common(self.name, self.frame_count, self.fps, self.grid_row)
        if not self.prompt_fragment.strip():
            raise ValueError(f"Motion '{self.name}' has an empty prompt fragment")

    @property
    def directions(self) -> tuple[None]:
        return (None,)

    @property
    def synthesized_directions(self) -> tuple[None]:
        return (None,)

    def prompt_for(self, direction: str | None = None) -> str:
        return self.prompt_fragment


@dataclass(frozen=True)
class FourDirectionMotion:
    """A motion rendered facing south, north, east and west.

    Attributes:
        direction_prompts: Prompt fragment per synthesized direction.
        mirror_from: Directions whose pixels are a horizontal flip of
            another direction, e.g. ``{"west": "east"}``.
        prompt_fragment: Generic fragment used when no direction is given.
    """

    name: str
    frame_count: int
    fps: float
    grid_row: int
    direction_prompts: Mapping[str, str]
    prompt_fragment: str = ""
    mirror_from: Mapping[str, str] = field(default_factory=dict)

    direction_count = 4

    def __post_init__(self) -> None:
        _validate_common(self.name, self.frame_count, self.fps, self.grid_row)

        missing = [d for d in REQUIRED_DIRECTIONS if not self.direction_prompts.get(d)]
        if missing:
            raise ValueError(f"Motion '{self.name}' is missing direction prompts: {missing}")

        for target, source in self.mirror_from.items():
            if target not in DIRECTIONS or source not in DIRECTIONS:
                raise ValueError(f"Motion '{self.name}' mirrors unknown direction {target}->{source}")
            if source in self.mirror_from:
                raise ValueError(f"Motion '{self.name}' mirrors from a mirrored direction")
            if not self.direction_prompts.get(source):
                raise ValueError(f"Motion '{self.name}' mirrors from '{source}' which has no prompt")

        if "west" not in self.direction_prompts and self.mirror_from.get("west") != "east":
            raise ValueError(f"Motion '{self.name}' must define west or mirror it from east")

        # Freeze the mappings so the registry is read-only all the way down.
        object.__setattr__(self, "direction_prompts", MappingProxyType(dict(self.direction_prompts)))
        object.__setattr__(self, "mirror_from", MappingProxyType(dict(self.mirror_from)))

    @property
    def directions(self) -> tuple[str, ...]:
        return DIRECTIONS

    @property
    def synthesized_directions(self) -> tuple[str, ...]:
        """Directions that need their own synthesis call."""
        return tuple(d for d in DIRECTIONS if d not in self.mirror_from)

    def prompt_for(self, direction: str | None = None) -> str | None:
        """Return the prompt fragment for ``direction``.

        Mirrored directions resolve to their source direction's text.
        Without a direction the generic fragment (or the south fragment)
        is returned.
        """
        if direction is None:
            return self.prompt_fragment or self.direction_prompts["south"]
        source = self.mirror_from.get(direction, direction)
        return self.direction_prompts.get(source)


MotionSpec = Union[SingleDirectionMotion, FourDirectionMotion]


def _validate_common(name: str, frame_count: int, fps: float, grid_row: int) -> None:
    if not name:
        raise ValueError("Motion name must not be empty")
    if frame_count < 1:
        raise ValueError(f"Motion '{name}' frame_count must be >= 1, got {frame_count}")
    if fps <= 0:
        raise ValueError(f"Motion '{name}' fps must be > 0, got {fps}")
    if grid_row < 0:
        raise ValueError(f"Motion '{name}' grid_row must be >= 0, got {grid_row}")


def _build_registry(specs: list[MotionSpec]) -> Mapping[str, MotionSpec]:
    registry: dict[str, MotionSpec] = {}
    for spec in specs:
        if spec.name in registry:
            raise ValueError(f"Duplicate motion '{spec.name}'")
        registry[spec.name] = spec
    return MappingProxyType(registry)


MOTIONS: Mapping[str, MotionSpec] = _build_registry(
    [
        SingleDirectionMotion(
            name="idle",
            frame_count=1,
            fps=4,
            grid_row=0,
            prompt_fragment="single idle pose",
        ),
        FourDirectionMotion(
            name="walk",
            frame_count=4,
            fps=8,
            grid_row=1,
            prompt_fragment="4-frame walk cycle",
            direction_prompts={
                "south": "4-frame south-walk cycle (down, down-left, down-right, down)",
                "north": "4-frame north-walk cycle",
                "east": "4-frame east-walk cycle",
            },
            mirror_from={"west": "east"},
        ),
        SingleDirectionMotion(
            name="run",
            frame_count=6,
            fps=12,
            grid_row=2,
            prompt_fragment="6-frame side-run cycle facing right",
        ),
        SingleDirectionMotion(
            name="attack",
            frame_count=6,
            fps=10,
            grid_row=3,
            prompt_fragment="6-frame sword-slash combo facing forward",
        ),
        SingleDirectionMotion(
            name="jump",
            frame_count=4,
            fps=8,
            grid_row=4,
            prompt_fragment="4-frame jump arc",
        ),
        SingleDirectionMotion(
            name="hurt",
            frame_count=3,
            fps=6,
            grid_row=5,
            prompt_fragment="3-frame recoil / hurt animation",
        ),
    ]
)

DEFAULT_MOTIONS: tuple[str, ...] = ("idle", "walk")


def get_motion_config(name: str) -> MotionSpec | None:
    """Look up a motion by name, returning ``None`` when it is unknown."""
    return MOTIONS.get(name)


def get_motion_prompt(name: str, direction: str | None = None) -> str | None:
    """Return the synthesis prompt fragment for a motion.

    Args:
        name: Motion name, e.g. ``"walk"``.
        direction: Optional facing direction.  Ignored for single-direction
            motions.  For four-direction motions a mirrored direction
            resolves to its source direction's text.

    Returns:
        The fragment, or ``None`` if the motion (or direction) is unknown.
    """
    spec = get_motion_config(name)
    if spec is None:
        return None
    return spec.prompt_for(direction)


def list_motions() -> list[MotionSpec]:
    """Return every registered motion ordered by grid row."""
    return sorted(MOTIONS.values(), key=lambda spec: spec.grid_row)
