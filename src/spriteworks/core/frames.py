"""Frame extraction and atlas composition.

The synthesis provider returns one square image holding a grid of poses.
This module slices that image into tiles, derives the canonical resolution
variants of each tile, composes the per-motion atlas and describes it in a
JSON-serialisable metadata dictionary.

Grid Contract
-------------
Tiles are extracted row-major from the top-left corner: tile ``i`` comes
from row ``i // grid_size`` and column ``i % grid_size``.  The motion
pipeline keeps the first ``frame_count`` tiles of each grid, so changing
this order would silently re-map every motion's frames.

Transparency
------------
Every image produced here is RGBA.  Letterboxing pads with fully
transparent pixels and the atlas canvas starts fully transparent, so
frames compose cleanly over any game background.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Sequence

from PIL import Image, UnidentifiedImageError

from spriteworks.core.errors import FrameExtractionError, SynthesisFailed

logger = logging.getLogger(__name__)

CANONICAL_SIZES: tuple[int, ...] = (1024, 512, 256)

_TRANSPARENT = (0, 0, 0, 0)


def load_image(data: bytes) -> Image.Image:
    """Decode provider bytes into an RGBA image.

    Raises:
        SynthesisFailed: If the payload is not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            return image.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        raise SynthesisFailed(f"Provider returned an undecodable image: {exc}") from exc


def to_png_bytes(image: Image.Image) -> bytes:
    """Encode an image as PNG, keeping its alpha channel."""
    buffer = io.BytesIO()
    image.convert("RGBA").save(buffer, format="PNG")
    return buffer.getvalue()


def extract_frames(source: Image.Image, grid_size: int, tile_size: int) -> list[Image.Image]:
    """Slice ``source`` into ``grid_size × grid_size`` square tiles.

    Args:
        source: The synthesized sheet.  Must be at least
            ``grid_size * tile_size`` pixels in each dimension; extra pixels
            on the right or bottom are ignored.
        grid_size: Tiles per row and per column.
        tile_size: Edge length of one tile in pixels.

    Returns:
        ``grid_size ** 2`` RGBA tiles in row-major order.

    Raises:
        FrameExtractionError: If the grid does not fit inside the source.
    """
    if grid_size < 1 or tile_size < 1:
        raise FrameExtractionError(f"Invalid grid {grid_size}x{grid_size} of {tile_size}px tiles")

    needed = grid_size * tile_size
    width, height = source.size
    if width < needed or height < needed:
        raise FrameExtractionError(
            f"Source {width}x{height} is too small for a {grid_size}x{grid_size} grid "
            f"of {tile_size}px tiles"
        )

    rgba = source.convert("RGBA")
    tiles: list[Image.Image] = []
    for index in range(grid_size * grid_size):
        row, col = divmod(index, grid_size)
        left = col * tile_size
        top = row * tile_size
        tiles.append(rgba.crop((left, top, left + tile_size, top + tile_size)))
    return tiles


def resize(image: Image.Image, target_size: int) -> Image.Image:
    """Return a ``target_size × target_size`` RGBA copy of ``image``.

    Square sources are scaled directly.  Non-square sources are scaled to
    fit inside the target and centred on a fully transparent canvas.
    """
    if target_size < 1:
        raise FrameExtractionError(f"Invalid target size {target_size}")

    rgba = image.convert("RGBA")
    width, height = rgba.size
    if width == height:
        if width == target_size:
            return rgba.copy()
        return rgba.resize((target_size, target_size), Image.Resampling.LANCZOS)

    scale = target_size / max(width, height)
    fitted = rgba.resize(
        (max(1, round(width * scale)), max(1, round(height * scale))),
        Image.Resampling.LANCZOS,
    )
    canvas = Image.new("RGBA", (target_size, target_size), _TRANSPARENT)
    offset = ((target_size - fitted.width) // 2, (target_size - fitted.height) // 2)
    canvas.paste(fitted, offset)
    return canvas


def mirror(image: Image.Image) -> Image.Image:
    """Flip an image horizontally (west frames derived from east)."""
    return image.convert("RGBA").transpose(Image.Transpose.FLIP_LEFT_RIGHT)


def compose_atlas(frames: Sequence[Image.Image], frame_size: int) -> Image.Image:
    """Stack one frame per motion vertically.

    Frame ``i`` occupies the band ``[i * frame_size, (i + 1) * frame_size)``.
    Frames of a different size are resized first.

    Raises:
        FrameExtractionError: If ``frames`` is empty.
    """
    if not frames:
        raise FrameExtractionError("Cannot compose an atlas from zero frames")

    atlas = Image.new("RGBA", (frame_size, frame_size * len(frames)), _TRANSPARENT)
    for index, frame in enumerate(frames):
        band = resize(frame, frame_size)
        atlas.alpha_composite(band, dest=(0, index * frame_size))
    return atlas


@dataclass
class MotionAssets:
    """URLs of every stored frame of one motion.

    Attributes:
        motion: Motion name.
        frame_count: Frames per direction.
        fps: Playback rate.
        frame_urls: ``{size: [url, ...]}`` for the primary direction.
        direction_urls: ``{direction: {size: [url, ...]}}`` for
            four-direction motions, empty otherwise.
        mirrored: ``{direction: source}`` for derived directions.
    """

    motion: str
    frame_count: int
    fps: float
    frame_urls: dict[int, list[str]]
    direction_urls: dict[str, dict[int, list[str]]] = field(default_factory=dict)
    mirrored: dict[str, str] = field(default_factory=dict)

    def representative_url(self, size: int) -> str:
        return self.frame_urls[size][0]


def build_atlas_metadata(
    atlas_url: str,
    frame_size: int,
    motions: Sequence[MotionAssets],
) -> dict:
    """Describe the atlas layout and per-motion frame URLs.

    The ``row`` of each motion is its index in ``motions`` (request order),
    which is the band :func:`compose_atlas` placed it in.  The registry's
    own ``grid_row`` plays no part here.
    """
    frames: dict[str, dict] = {}
    for row, assets in enumerate(motions):
        entry: dict = {
            "row": row,
            "frameCount": assets.frame_count,
            "fps": assets.fps,
            "urls": {str(size): assets.representative_url(size) for size in CANONICAL_SIZES},
            "frameUrls": {str(size): list(assets.frame_urls[size]) for size in CANONICAL_SIZES},
        }
        if assets.direction_urls:
            entry["directions"] = {
                direction: {str(size): list(urls) for size, urls in by_size.items()}
                for direction, by_size in assets.direction_urls.items()
            }
            entry["mirrored"] = dict(assets.mirrored)
        frames[assets.motion] = entry

    return {
        "atlas": atlas_url,
        "frameSize": frame_size,
        "frames": frames,
    }
