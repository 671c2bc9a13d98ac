"""Tests for spriteworks.core.orchestrator: the generation pipeline.

The orchestrator is async; tests drive it with ``asyncio.run`` against a
temporary file store, a temporary sqlite database and the deterministic
``FakeProvider`` from ``conftest.py``.

Tests cover:

- Cache miss then hit for the sprite pipeline (no second synthesis).
- Motion-level reuse across different atlas requests.
- Atlas layout and metadata shape.
- Mirrored directions.
- Quota and queue admission before any synthesis.
- All-or-nothing persistence when an upload fails.
- The single-image path in both modes.
- Error to status mapping.
"""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from spriteworks.core.cache_store import FileCacheStore, derive_cache_key
from spriteworks.core.errors import (
    CacheConflict,
    CacheUnavailable,
    InvalidMotion,
    QuotaExceeded,
    StorageFailed,
    SynthesisFailed,
    TooManyConcurrentRequests,
    Unauthorized,
    ValidationError,
)
from spriteworks.core.frames import load_image, mirror
from spriteworks.core.orchestrator import GenerationOrchestrator, error_status
from spriteworks.core.records import GenerationRecord
from spriteworks.core.synthesis import SynthesisProvider

PROMPT = "a knight with a blue cape"
STYLE = "snes"
SEED = 42


def _sprites(orchestrator: GenerationOrchestrator, motions, user_id="user-1", seed=SEED, prompt=PROMPT):
    return asyncio.run(orchestrator.generate_sprites(user_id, prompt, STYLE, motions, seed))


def _read_json(asset_path, url: str) -> dict:
    return json.loads(asset_path(url).read_text(encoding="utf-8"))


class _BrokenProvider(SynthesisProvider):
    def __init__(self) -> None:
        self.calls = 0

    async def synthesize(self, prompt, seed, size=1024):
        self.calls += 1
        raise SynthesisFailed("provider returned no payload")


class _SlowSiblingProvider(SynthesisProvider):
    """Fails the idle sheet at once and answers every other sheet slowly."""

    def __init__(self, inner: SynthesisProvider, delay: float = 0.2) -> None:
        self.inner = inner
        self.delay = delay
        self.completed = 0

    async def synthesize(self, prompt, seed, size=1024):
        if "single idle pose" in prompt:
            raise SynthesisFailed("provider returned no payload")
        await asyncio.sleep(self.delay)
        data = await self.inner.synthesize(prompt, seed, size)
        self.completed += 1
        return data


# ---------------------------------------------------------------------------
# Sprite pipeline.
# ---------------------------------------------------------------------------


class TestSpriteCaching:
    """Cache miss, hit and motion-level reuse."""

    def test_miss_then_hit(self, orchestrator, fake_provider, generation_store):
        first = _sprites(orchestrator, ["idle", "walk"])
        calls_after_first = len(fake_provider.calls)
        second = _sprites(orchestrator, ["idle", "walk"])

        assert first.cached is False
        assert second.cached is True
        assert second.atlas_url == first.atlas_url
        assert second.meta_url == first.meta_url
        # idle: one call; walk: south, north and east (west is mirrored).
        assert calls_after_first == 4
        assert len(fake_provider.calls) == 4
        assert generation_store.count_in_window("user-1") == 2

    def test_urls_derive_from_atlas_key(self, orchestrator):
        result = _sprites(orchestrator, ["idle"])
        key = derive_cache_key(PROMPT, STYLE, ["idle"], SEED)

        assert result.atlas_url == f"/sprites/{key}/atlas.png"
        assert result.meta_url == f"/sprites/{key}/meta.json"

    def test_different_seed_is_a_different_atlas(self, orchestrator, fake_provider):
        first = _sprites(orchestrator, ["idle"], seed=1)
        second = _sprites(orchestrator, ["idle"], seed=2)

        assert first.atlas_url != second.atlas_url
        assert len(fake_provider.calls) == 2

    def test_reordered_motions_reuse_motion_assets(self, orchestrator, fake_provider, asset_path):
        forward = _sprites(orchestrator, ["idle", "walk"])
        calls = len(fake_provider.calls)
        backward = _sprites(orchestrator, ["walk", "idle"])

        assert backward.atlas_url != forward.atlas_url
        assert backward.cached is False
        assert len(fake_provider.calls) == calls

        meta = _read_json(asset_path, backward.meta_url)
        assert meta["frames"]["walk"]["row"] == 0
        assert meta["frames"]["idle"]["row"] == 1

    def test_identical_inputs_produce_identical_bytes(self, temp_dir, test_config, generation_store, fake_provider):
        atlases = []
        for name in ("a", "b"):
            store = FileCacheStore(temp_dir / name)
            orch = GenerationOrchestrator(test_config, store, generation_store, fake_provider)
            result = _sprites(orch, ["idle", "walk"])
            atlases.append((store.root / result.atlas_url.removeprefix("/sprites/")).read_bytes())

        assert atlases[0] == atlases[1]


class TestAtlasLayout:
    """Atlas geometry and metadata."""

    def test_three_motion_atlas(self, orchestrator, asset_path):
        result = _sprites(orchestrator, ["idle", "walk", "attack"])

        with Image.open(asset_path(result.atlas_url)) as atlas:
            assert atlas.size == (1024, 3 * 1024)
            assert atlas.mode == "RGBA"

        meta = _read_json(asset_path, result.meta_url)
        assert meta["atlas"] == result.atlas_url
        assert meta["frameSize"] == 1024
        assert [meta["frames"][m]["row"] for m in ("idle", "walk", "attack")] == [0, 1, 2]
        assert meta["frames"]["attack"]["frameCount"] == 6
        assert meta["frames"]["attack"]["fps"] == 10
        assert len(meta["frames"]["attack"]["frameUrls"]["1024"]) == 6
        assert len(meta["frames"]["idle"]["frameUrls"]["256"]) == 1

    def test_every_listed_frame_exists(self, orchestrator, asset_path):
        result = _sprites(orchestrator, ["idle", "walk"])
        meta = _read_json(asset_path, result.meta_url)

        urls = [url for entry in meta["frames"].values() for urls in entry["frameUrls"].values() for url in urls]
        urls += [
            url
            for by_size in meta["frames"]["walk"]["directions"].values()
            for urls in by_size.values()
            for url in urls
        ]
        assert urls
        assert all(asset_path(url).is_file() for url in urls)

    @pytest.mark.parametrize("size", [1024, 512, 256])
    def test_variant_sizes(self, orchestrator, asset_path, size):
        result = _sprites(orchestrator, ["idle"])
        meta = _read_json(asset_path, result.meta_url)

        with Image.open(asset_path(meta["frames"]["idle"]["urls"][str(size)])) as frame:
            assert frame.size == (size, size)

    def test_atlas_band_matches_first_frame(self, orchestrator, asset_path):
        result = _sprites(orchestrator, ["idle", "walk"])
        meta = _read_json(asset_path, result.meta_url)

        atlas = load_image(asset_path(result.atlas_url).read_bytes())
        walk_first = load_image(asset_path(meta["frames"]["walk"]["urls"]["1024"]).read_bytes())
        # A point inside the filled left half of the first tile.
        assert atlas.getpixel((200, 1024 + 512)) == walk_first.getpixel((200, 512))
        assert walk_first.getpixel((200, 512))[3] == 255


class TestMirroring:
    def test_west_frames_are_flipped_east_frames(self, orchestrator, asset_path):
        result = _sprites(orchestrator, ["walk"])
        walk = _read_json(asset_path, result.meta_url)["frames"]["walk"]

        assert walk["mirrored"] == {"west": "east"}
        for east_url, west_url in zip(walk["directions"]["east"]["256"], walk["directions"]["west"]["256"]):
            east = load_image(asset_path(east_url).read_bytes())
            west = load_image(asset_path(west_url).read_bytes())
            assert mirror(east).tobytes() == west.tobytes()
            assert east.tobytes() != west.tobytes()

    def test_primary_direction_is_south(self, orchestrator, asset_path):
        result = _sprites(orchestrator, ["walk"])
        walk = _read_json(asset_path, result.meta_url)["frames"]["walk"]
        assert walk["frameUrls"] == walk["directions"]["south"]


# ---------------------------------------------------------------------------
# Admission control.
# ---------------------------------------------------------------------------


class TestQuota:
    """The daily quota is enforced before any synthesis."""

    @staticmethod
    def _fill(generation_store, count, user_id="user-1", created_at=None):
        extra = {"created_at": created_at} if created_at else {}
        for _ in range(count):
            generation_store.insert(GenerationRecord(user_id=user_id, prompt="p", seed=1, style="nes", **extra))

    def test_twentieth_generation_succeeds(self, orchestrator, generation_store):
        self._fill(generation_store, 19)
        _sprites(orchestrator, ["idle"])
        assert generation_store.count_in_window("user-1") == 20

    def test_twenty_first_generation_is_rejected(self, orchestrator, generation_store, fake_provider):
        self._fill(generation_store, 20)

        with pytest.raises(QuotaExceeded):
            _sprites(orchestrator, ["idle"])

        assert fake_provider.calls == []
        assert generation_store.count_in_window("user-1") == 20

    def test_quota_counts_cache_hits(self, orchestrator, generation_store, fake_provider):
        self._fill(generation_store, 19)
        _sprites(orchestrator, ["idle"])

        with pytest.raises(QuotaExceeded):
            _sprites(orchestrator, ["idle"])

    def test_old_records_fall_out_of_window(self, orchestrator, generation_store):
        self._fill(generation_store, 20, created_at=datetime.now(timezone.utc) - timedelta(hours=25))
        assert _sprites(orchestrator, ["idle"]).cached is False

    def test_quota_is_per_user(self, orchestrator, generation_store):
        self._fill(generation_store, 20, user_id="user-2")
        _sprites(orchestrator, ["idle"], user_id="user-1")

    def test_image_path_shares_quota(self, orchestrator, generation_store, fake_provider):
        self._fill(generation_store, 20)
        with pytest.raises(QuotaExceeded):
            asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 256, seed=1))
        assert fake_provider.calls == []


class TestDatabaseAccess:
    """Record and queue calls leave the event loop thread."""

    def test_sqlite_calls_run_in_worker_threads(self, orchestrator, generation_store, job_queue, monkeypatch):
        threads: list[threading.Thread] = []

        def spy(method):
            def wrapper(*args, **kwargs):
                threads.append(threading.current_thread())
                return method(*args, **kwargs)

            return wrapper

        for target, name in (
            (generation_store, "count_in_window"),
            (generation_store, "insert"),
            (job_queue, "enqueue"),
            (job_queue, "mark_done"),
        ):
            monkeypatch.setattr(target, name, spy(getattr(target, name)))

        _sprites(orchestrator, ["idle"])

        assert len(threads) == 4
        assert threading.main_thread() not in threads


class TestQueue:
    """Per-user queue ceiling and job bookkeeping."""

    def test_full_queue_rejects(self, orchestrator, job_queue, fake_provider):
        for _ in range(job_queue.limit):
            job_queue.enqueue("user-1")

        with pytest.raises(TooManyConcurrentRequests):
            _sprites(orchestrator, ["idle"])

        assert fake_provider.calls == []

    def test_entry_settled_after_success(self, orchestrator, job_queue):
        _sprites(orchestrator, ["idle"])
        assert job_queue.count_open("user-1") == 0

    def test_failed_job_recorded(self, test_config, cache_store, generation_store, job_queue):
        orch = GenerationOrchestrator(test_config, cache_store, generation_store, _BrokenProvider(), job_queue)

        with pytest.raises(SynthesisFailed):
            _sprites(orch, ["idle"])

        assert job_queue.count_open("user-1") == 0


# ---------------------------------------------------------------------------
# Validation and failure handling.
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        "prompt,motions,error",
        [
            ("", ["idle"], ValidationError),
            ("   ", ["idle"], ValidationError),
            ("x" * 201, ["idle"], ValidationError),
            (PROMPT, [], ValidationError),
            (PROMPT, ["idle", "idle"], ValidationError),
            (PROMPT, ["idle", "dance"], InvalidMotion),
        ],
    )
    def test_rejected_before_synthesis(self, orchestrator, fake_provider, prompt, motions, error):
        with pytest.raises(error):
            _sprites(orchestrator, motions, prompt=prompt)
        assert fake_provider.calls == []

    def test_prompt_at_limit_is_accepted(self, orchestrator):
        _sprites(orchestrator, ["idle"], prompt="x" * 200)


class TestAllOrNothing:
    """Failures leave no generation record behind."""

    def test_upload_failure(self, test_config, make_failing_store, generation_store, fake_provider):
        store = make_failing_store(fail_after=2)
        orch = GenerationOrchestrator(test_config, store, generation_store, fake_provider)

        with pytest.raises(StorageFailed):
            _sprites(orch, ["idle", "walk"])

        key = derive_cache_key(PROMPT, STYLE, ["idle", "walk"], SEED)
        assert generation_store.count_in_window("user-1") == 0
        assert not store.exists(key, "meta", "json")
        assert not store.exists(key, "atlas")

    def test_synthesis_failure(self, test_config, cache_store, generation_store):
        provider = _BrokenProvider()
        orch = GenerationOrchestrator(test_config, cache_store, generation_store, provider)

        with pytest.raises(SynthesisFailed):
            _sprites(orch, ["idle"])

        assert provider.calls == 1
        assert generation_store.count_in_window("user-1") == 0

    def test_failure_cancels_sibling_motions(
        self, test_config, cache_store, generation_store, job_queue, fake_provider
    ):
        provider = _SlowSiblingProvider(fake_provider)
        orch = GenerationOrchestrator(test_config, cache_store, generation_store, provider, job_queue)

        async def scenario() -> None:
            with pytest.raises(SynthesisFailed):
                await orch.generate_sprites("user-1", PROMPT, STYLE, ["idle", "walk"], SEED)
            # Same loop: anything left running would finish during this sleep.
            await asyncio.sleep(provider.delay * 3)

        asyncio.run(scenario())

        assert provider.completed == 0
        assert list(test_config.cache_dir.rglob("*.png")) == []
        assert job_queue.count_open("user-1") == 0
        assert generation_store.count_in_window("user-1") == 0

    def test_failures_are_logged_with_context(self, test_config, cache_store, generation_store, caplog):
        orch = GenerationOrchestrator(test_config, cache_store, generation_store, _BrokenProvider())

        with caplog.at_level("ERROR", logger="spriteworks.core.orchestrator"):
            with pytest.raises(SynthesisFailed):
                _sprites(orch, ["idle"])

        assert "seed=42" in caplog.text
        assert PROMPT in caplog.text

    def test_retry_after_failure_completes(self, test_config, make_failing_store, generation_store, fake_provider):
        failing = make_failing_store(fail_after=2)
        with pytest.raises(StorageFailed):
            _sprites(GenerationOrchestrator(test_config, failing, generation_store, fake_provider), ["idle"])

        store = FileCacheStore(test_config.cache_dir)
        result = _sprites(GenerationOrchestrator(test_config, store, generation_store, fake_provider), ["idle"])

        assert result.cached is False
        assert generation_store.count_in_window("user-1") == 1


# ---------------------------------------------------------------------------
# Single-image path.
# ---------------------------------------------------------------------------


class TestGenerateImage:
    def test_character_image(self, orchestrator, fake_provider, asset_path):
        result = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 512, seed=7))

        assert result.seed == 7
        assert result.cached is False
        assert result.tile_urls == ()
        assert result.image_url.endswith(".png")
        with Image.open(asset_path(result.image_url)) as image:
            assert image.size == (512, 512)
        assert "proper sprite centering" in fake_provider.calls[0][0]

    def test_second_call_is_cached(self, orchestrator, fake_provider):
        first = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 256, seed=7))
        second = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 256, seed=7))

        assert second.cached is True
        assert second.image_url == first.image_url
        assert len(fake_provider.calls) == 1

    def test_resolution_is_part_of_key(self, orchestrator):
        small = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 256, seed=7))
        large = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 1024, seed=7))
        assert small.image_url != large.image_url

    def test_random_seed_when_missing(self, orchestrator):
        result = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "character", 256))
        assert 0 <= result.seed <= 2**31 - 1

    def test_sprite_sheet_tiles(self, orchestrator, asset_path, generation_store):
        result = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "sprite-sheet", 1024, seed=3))

        assert len(result.tile_urls) == 16
        assert result.tile_urls[5].endswith("/tile_5.png")
        for url in result.tile_urls:
            with Image.open(asset_path(url)) as tile:
                assert tile.size == (256, 256)

        cached = asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, "sprite-sheet", 1024, seed=3))
        assert cached.cached is True
        assert cached.tile_urls == result.tile_urls
        assert [r.kind for r in generation_store.list_for_user("user-1")] == ["image", "image"]

    @pytest.mark.parametrize("mode,resolution", [("poster", 256), ("character", 300)])
    def test_invalid_arguments(self, orchestrator, mode, resolution):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.generate_image("user-1", PROMPT, STYLE, mode, resolution, seed=1))


class TestErrorStatus:
    @pytest.mark.parametrize(
        "exc,status",
        [
            (ValidationError("bad"), 400),
            (InvalidMotion("dance"), 400),
            (Unauthorized(), 401),
            (QuotaExceeded(), 402),
            (TooManyConcurrentRequests(), 429),
            (CacheUnavailable(), 500),
            (SynthesisFailed(), 500),
            (StorageFailed(), 500),
            (CacheConflict(), 500),
            (RuntimeError("boom"), 500),
        ],
    )
    def test_mapping(self, exc, status):
        assert error_status(exc) == status
