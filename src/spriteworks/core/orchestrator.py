"""Generation orchestrator.

The orchestrator coordinates one generation request end to end::

    Received -> QuotaChecked -> CacheProbed -> {CacheHit | Synthesizing ->
    Extracting -> Storing} -> RecordPersisted -> Responded

Ordering guarantees
-------------------
- The quota (and, when a queue is wired, the per-user queue ceiling) is
  enforced before any provider call.
- Inside one motion every frame/resolution upload completes before the
  motion's ``manifest.json`` is written.  Across motions every upload
  completes before the atlas is composed, and ``meta.json`` is written
  last.  Probing ``meta.json`` (or a motion manifest) therefore tells
  whether the whole asset set behind it exists.
- The :class:`~spriteworks.core.records.GenerationRecord` is inserted only
  after every upload succeeded.  A failure at any earlier step raises and
  leaves no record behind.

The orchestrator never retries, and the first failing step cancels its
siblings still in flight.  Transient synthesis failures are retried
by the provider wrapper configured by the queue layer.

Asset layout per motion key::

    <key>/<motion>_<frame>_<size>.png               single-direction
    <key>/<motion>_<direction>_<frame>_<size>.png   four-direction
    <key>/manifest.json

Asset layout per atlas key::

    <key>/atlas.png
    <key>/meta.json
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import random
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Sequence, TypeVar

from PIL import Image

from spriteworks.core.cache_store import CacheStore, derive_cache_key
from spriteworks.core.config import SpriteworksConfig
from spriteworks.core.errors import (
    CacheUnavailable,
    FrameExtractionError,
    InvalidMotion,
    QuotaExceeded,
    SpriteworksError,
    StorageFailed,
    ValidationError,
)
from spriteworks.core.frames import (
    CANONICAL_SIZES,
    MotionAssets,
    build_atlas_metadata,
    compose_atlas,
    extract_frames,
    load_image,
    mirror,
    resize,
    to_png_bytes,
)
from spriteworks.core.motions import MotionSpec, get_motion_config
from spriteworks.core.prompt_builder import (
    MODE_SPRITE_SHEET,
    MODES,
    build_motion_prompt,
    build_prompt,
)
from spriteworks.core.queue import JobQueue
from spriteworks.core.records import KIND_IMAGE, KIND_SPRITES, GenerationRecord, GenerationStore
from spriteworks.core.synthesis import SynthesisProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SEED = 2**31 - 1


class GenerationState(str, enum.Enum):
    RECEIVED = "received"
    QUOTA_CHECKED = "quota_checked"
    CACHE_PROBED = "cache_probed"
    CACHE_HIT = "cache_hit"
    SYNTHESIZING = "synthesizing"
    EXTRACTING = "extracting"
    STORING = "storing"
    RECORD_PERSISTED = "record_persisted"
    RESPONDED = "responded"


@dataclass(frozen=True)
class SpriteResult:
    atlas_url: str
    meta_url: str
    cached: bool = False


@dataclass(frozen=True)
class ImageResult:
    image_url: str
    seed: int
    cached: bool = False
    tile_urls: tuple[str, ...] = ()


def error_status(exc: BaseException) -> int:
    """Map an error to the HTTP status code the API responds with.

    Pipeline errors carry their own status; anything else is a 500.
    """
    if isinstance(exc, SpriteworksError):
        return exc.status_code
    return 500


def _frame_asset(motion: str, direction: str | None, index: int, size: int) -> str:
    if direction is None:
        return f"{motion}_{index}_{size}"
    return f"{motion}_{direction}_{index}_{size}"


async def _gather_or_cancel(*aws: Awaitable[T]) -> list[T]:
    """Run ``aws`` concurrently; the first failure cancels the rest and re-raises."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class GenerationOrchestrator:
    """Coordinates quota, caching, synthesis, extraction, storage and records.

    Attributes:
        config (SpriteworksConfig): Limits and pipeline geometry.
        store (CacheStore): Content-addressed asset store.
        records (GenerationStore): Append-only generation records.
        provider (SynthesisProvider): Image synthesis backend.
        queue (JobQueue | None): Optional per-user admission control.
    """

    def __init__(
        self,
        config: SpriteworksConfig,
        store: CacheStore,
        records: GenerationStore,
        provider: SynthesisProvider,
        queue: JobQueue | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.records = records
        self.provider = provider
        self.queue = queue

    # -- Validation and admission -------------------------------------------

    def _validate_prompt(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")
        if len(prompt) > self.config.max_prompt_length:
            raise ValidationError(
                f"Prompt too long (max {self.config.max_prompt_length} characters)"
            )
        return prompt

    def _resolve_motions(self, motions: Sequence[str]) -> list[MotionSpec]:
        if not motions:
            raise ValidationError("At least one motion is required")
        if len(set(motions)) != len(motions):
            raise ValidationError("Motions must not repeat")

        capacity = self.config.grid_size**2
        specs: list[MotionSpec] = []
        for name in motions:
            spec = get_motion_config(name)
            if spec is None:
                raise InvalidMotion(name)
            if spec.frame_count > capacity:
                raise FrameExtractionError(
                    f"Motion '{name}' needs {spec.frame_count} frames but the grid holds {capacity}"
                )
            specs.append(spec)
        return specs

    def check_quota(self, user_id: str) -> int:
        """Raise :class:`QuotaExceeded` when the user's window is full.

        Returns:
            The number of records in the current window.
        """
        used = self.records.count_in_window(user_id, hours=self.config.quota_window_hours)
        if used >= self.config.daily_quota:
            logger.warning("User %s exceeded the daily quota (%d/%d).", user_id, used, self.config.daily_quota)
            raise QuotaExceeded(f"Daily quota of {self.config.daily_quota} generations exceeded")
        return used

    async def _admit(self, user_id: str, job, payload: dict):
        if self.queue is None:
            return await job()
        return await self.queue.run(user_id, job, payload=json.dumps(payload, sort_keys=True))

    def _advance(self, request_id: str, state: GenerationState) -> None:
        logger.debug("[%s] -> %s", request_id, state.value)

    # -- Sprite pipeline ----------------------------------------------------

    async def generate_sprites(
        self,
        user_id: str,
        prompt: str,
        style: str,
        motions: Sequence[str],
        seed: int,
    ) -> SpriteResult:
        """Generate (or reuse) the atlas and metadata for a motion set.

        Args:
            user_id: Requesting user; owns the resulting record.
            prompt: Character description.
            style: Style preset key.
            motions: Motion names in atlas row order.
            seed: Generation seed.

        Returns:
            :class:`SpriteResult` with the atlas and metadata URLs.

        Raises:
            ValidationError: Bad prompt or motion list.
            QuotaExceeded: The user's window is full.
            TooManyConcurrentRequests: The user's queue is full.
            CacheUnavailable, SynthesisFailed, StorageFailed: Pipeline
                failures.  No record is written.
        """
        motions = list(motions)
        style = style or self.config.default_style
        self._validate_prompt(prompt)
        specs = self._resolve_motions(motions)
        request_id = derive_cache_key(prompt, style, motions, seed)[:12]
        self._advance(request_id, GenerationState.RECEIVED)

        await asyncio.to_thread(self.check_quota, user_id)
        self._advance(request_id, GenerationState.QUOTA_CHECKED)

        async def job() -> SpriteResult:
            return await self._run_sprite_pipeline(request_id, user_id, prompt, style, specs, seed)

        payload = {"kind": KIND_SPRITES, "prompt": prompt, "style": style, "motions": motions, "seed": seed}
        return await self._admit(user_id, job, payload)

    async def _run_sprite_pipeline(
        self,
        request_id: str,
        user_id: str,
        prompt: str,
        style: str,
        specs: list[MotionSpec],
        seed: int,
    ) -> SpriteResult:
        names = [spec.name for spec in specs]
        atlas_key = derive_cache_key(prompt, style, names, seed)
        atlas_url = self.store.url_for(atlas_key, "atlas")
        meta_url = self.store.url_for(atlas_key, "meta", "json")

        try:
            cached = await asyncio.to_thread(self.store.exists, atlas_key, "meta", "json")
            self._advance(request_id, GenerationState.CACHE_PROBED)

            if cached:
                self._advance(request_id, GenerationState.CACHE_HIT)
                logger.info("Atlas cache hit for %s (%s).", atlas_key, ",".join(names))
            else:
                logger.info("Atlas cache miss for %s (%s).", atlas_key, ",".join(names))
                assets = await _gather_or_cancel(
                    *(self._motion_assets(request_id, prompt, style, spec, seed) for spec in specs)
                )
                self._advance(request_id, GenerationState.STORING)
                atlas_url = await self._store_atlas(atlas_key, prompt, style, specs, seed)
                metadata = build_atlas_metadata(atlas_url, self.config.atlas_frame_size, assets)
                meta_bytes = json.dumps(metadata, indent=2, sort_keys=True).encode("utf-8")
                meta_url = await asyncio.to_thread(self.store.put, atlas_key, meta_bytes, "meta", "json")
        except SpriteworksError:
            logger.error(
                "Sprite generation failed (prompt=%r, style=%r, motions=%s, seed=%d).",
                prompt,
                style,
                names,
                seed,
                exc_info=True,
            )
            raise

        await asyncio.to_thread(
            self._persist,
            GenerationRecord(
                user_id=user_id,
                kind=KIND_SPRITES,
                prompt=prompt,
                seed=seed,
                style=style,
                motions=tuple(names),
                atlas_url=atlas_url,
                meta_url=meta_url,
            )
        )
        self._advance(request_id, GenerationState.RECORD_PERSISTED)
        self._advance(request_id, GenerationState.RESPONDED)
        return SpriteResult(atlas_url=atlas_url, meta_url=meta_url, cached=cached)

    def _expected_assets(self, key: str, spec: MotionSpec) -> MotionAssets:
        """URLs of every frame of ``spec`` stored under ``key``."""
        by_direction: dict[str | None, dict[int, list[str]]] = {}
        for direction in spec.directions:
            by_direction[direction] = {
                size: [
                    self.store.url_for(key, _frame_asset(spec.name, direction, index, size))
                    for index in range(spec.frame_count)
                ]
                for size in CANONICAL_SIZES
            }

        primary = spec.directions[0]
        direction_urls = {d: urls for d, urls in by_direction.items() if d is not None}
        return MotionAssets(
            motion=spec.name,
            frame_count=spec.frame_count,
            fps=spec.fps,
            frame_urls=by_direction[primary],
            direction_urls=direction_urls if spec.direction_count > 1 else {},
            mirrored=dict(getattr(spec, "mirror_from", {})),
        )

    async def _motion_assets(
        self,
        request_id: str,
        prompt: str,
        style: str,
        spec: MotionSpec,
        seed: int,
    ) -> MotionAssets:
        key = derive_cache_key(prompt, style, spec.name, seed)
        expected = self._expected_assets(key, spec)

        if await asyncio.to_thread(self.store.exists, key, "manifest", "json"):
            logger.info("Motion cache hit for '%s' (%s).", spec.name, key)
            return expected

        self._advance(request_id, GenerationState.SYNTHESIZING)
        synthesized = await _gather_or_cancel(
            *(self._synthesize_tiles(prompt, style, spec, direction, seed) for direction in spec.synthesized_directions)
        )
        tiles: dict[str | None, list[Image.Image]] = dict(zip(spec.synthesized_directions, synthesized))
        for target, source in getattr(spec, "mirror_from", {}).items():
            tiles[target] = [mirror(tile) for tile in tiles[source]]

        self._advance(request_id, GenerationState.STORING)
        uploads = [
            asyncio.to_thread(self._store_variant, key, _frame_asset(spec.name, direction, index, size), tile, size)
            for direction in spec.directions
            for index, tile in enumerate(tiles[direction])
            for size in CANONICAL_SIZES
        ]
        await _gather_or_cancel(*uploads)

        manifest = {
            "motion": spec.name,
            "frameCount": spec.frame_count,
            "fps": spec.fps,
            "frameUrls": {str(size): urls for size, urls in expected.frame_urls.items()},
        }
        manifest_bytes = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
        await asyncio.to_thread(self.store.put, key, manifest_bytes, "manifest", "json")
        return expected

    async def _synthesize_tiles(
        self,
        prompt: str,
        style: str,
        spec: MotionSpec,
        direction: str | None,
        seed: int,
    ) -> list[Image.Image]:
        grid, tile = self.config.grid_size, self.config.tile_size
        motion_prompt = build_motion_prompt(
            prompt, style, spec.name, direction, grid_size=grid, tile_size=tile
        )
        logger.info("Synthesizing '%s'%s (seed=%d).", spec.name, f" facing {direction}" if direction else "", seed)
        data = await self.provider.synthesize(motion_prompt, seed, grid * tile)

        def extract() -> list[Image.Image]:
            return extract_frames(load_image(data), grid, tile)[: spec.frame_count]

        return await asyncio.to_thread(extract)

    def _store_variant(self, key: str, asset: str, tile: Image.Image, size: int) -> str:
        return self.store.put(key, to_png_bytes(resize(tile, size)), asset)

    async def _store_atlas(
        self,
        atlas_key: str,
        prompt: str,
        style: str,
        specs: list[MotionSpec],
        seed: int,
    ) -> str:
        """Compose the atlas from each motion's stored full-size first frame."""
        frame_size = self.config.atlas_frame_size
        size = max(CANONICAL_SIZES)

        def build() -> bytes:
            frames = []
            for spec in specs:
                key = derive_cache_key(prompt, style, spec.name, seed)
                data = self.store.get(key, _frame_asset(spec.name, spec.directions[0], 0, size))
                if data is None:
                    raise CacheUnavailable(f"Representative frame of '{spec.name}' is missing")
                frames.append(load_image(data))
            return to_png_bytes(compose_atlas(frames, frame_size))

        atlas_bytes = await asyncio.to_thread(build)
        return await asyncio.to_thread(self.store.put, atlas_key, atlas_bytes, "atlas")

    # -- Single-image path --------------------------------------------------

    async def generate_image(
        self,
        user_id: str,
        prompt: str,
        style: str,
        mode: str,
        resolution: int,
        seed: int | None = None,
    ) -> ImageResult:
        """Generate (or reuse) one image through :func:`build_prompt`.

        In ``sprite-sheet`` mode the sheet's tiles are stored as well, at
        ``<key>/tile_<i>.png``.

        Raises:
            ValidationError: Bad prompt, mode or resolution.
            QuotaExceeded, TooManyConcurrentRequests: Admission failures.
            CacheUnavailable, SynthesisFailed, StorageFailed: Pipeline
                failures.  No record is written.
        """
        style = style or self.config.default_style
        self._validate_prompt(prompt)
        if mode not in MODES:
            raise ValidationError(f"mode must be one of {', '.join(MODES)}")
        if resolution not in CANONICAL_SIZES:
            raise ValidationError(f"resolution must be one of {', '.join(map(str, CANONICAL_SIZES))}")

        seed = seed if seed is not None else random.randint(0, MAX_SEED)
        request_id = derive_cache_key(prompt, style, [mode, str(resolution)], seed)[:12]
        self._advance(request_id, GenerationState.RECEIVED)

        await asyncio.to_thread(self.check_quota, user_id)
        self._advance(request_id, GenerationState.QUOTA_CHECKED)

        async def job() -> ImageResult:
            return await self._run_image_pipeline(request_id, user_id, prompt, style, mode, resolution, seed)

        payload = {"kind": KIND_IMAGE, "prompt": prompt, "style": style, "mode": mode, "seed": seed}
        return await self._admit(user_id, job, payload)

    async def _run_image_pipeline(
        self,
        request_id: str,
        user_id: str,
        prompt: str,
        style: str,
        mode: str,
        resolution: int,
        seed: int,
    ) -> ImageResult:
        key = derive_cache_key(prompt, style, [mode, str(resolution)], seed)
        is_sheet = mode == MODE_SPRITE_SHEET
        tile_count = self.config.grid_size**2 if is_sheet else 0
        image_url = self.store.url_for(key)
        tile_urls = tuple(self.store.url_for(key, f"tile_{i}") for i in range(tile_count))

        try:
            cached = await asyncio.to_thread(self.store.exists, key)
            self._advance(request_id, GenerationState.CACHE_PROBED)
            if cached:
                self._advance(request_id, GenerationState.CACHE_HIT)
                logger.info("Image cache hit for %s.", key)
            else:
                self._advance(request_id, GenerationState.SYNTHESIZING)
                size = self.config.grid_size * self.config.tile_size
                data = await self.provider.synthesize(build_prompt(prompt, mode, style), seed, size)

                self._advance(request_id, GenerationState.EXTRACTING)
                source = await asyncio.to_thread(load_image, data)
                if is_sheet:
                    tiles = await asyncio.to_thread(
                        extract_frames, source, self.config.grid_size, self.config.tile_size
                    )
                    self._advance(request_id, GenerationState.STORING)
                    tile_urls = tuple(
                        await _gather_or_cancel(
                            *(
                                asyncio.to_thread(self.store.put, key, to_png_bytes(tile), f"tile_{i}")
                                for i, tile in enumerate(tiles)
                            )
                        )
                    )

                # The main image is the completion marker, so it is written last.
                self._advance(request_id, GenerationState.STORING)
                image_bytes = await asyncio.to_thread(lambda: to_png_bytes(resize(source, resolution)))
                image_url = await asyncio.to_thread(self.store.put, key, image_bytes)
        except SpriteworksError:
            logger.error(
                "Image generation failed (prompt=%r, style=%r, mode=%s, seed=%d).",
                prompt,
                style,
                mode,
                seed,
                exc_info=True,
            )
            raise

        await asyncio.to_thread(
            self._persist,
            GenerationRecord(
                user_id=user_id,
                kind=KIND_IMAGE,
                prompt=prompt,
                seed=seed,
                style=style,
                motions=(mode,),
                image_url=image_url,
            )
        )
        self._advance(request_id, GenerationState.RESPONDED)
        return ImageResult(image_url=image_url, seed=seed, cached=cached, tile_urls=tile_urls)

    def _persist(self, record: GenerationRecord) -> None:
        try:
            self.records.insert(record)
        except sqlite3.Error as exc:
            logger.error("Failed to persist generation record for user %s.", record.user_id, exc_info=True)
            raise StorageFailed(f"Failed to persist generation record: {exc}") from exc
