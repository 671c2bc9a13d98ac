"""Content-addressed asset storage for the sprite pipeline.

Assets are addressed by a cache key derived from every input that affects
generation (prompt, style, motions, seed).  Because the key covers all of
those inputs, the same key always maps to the same bytes and the store can
be strictly write-once:

- ``put`` with identical bytes on an existing path is a no-op returning the
  same URL (concurrent duplicate requests are harmless).
- ``put`` with different bytes on an existing path raises
  :class:`~spriteworks.core.errors.CacheConflict` and leaves the stored
  content untouched.

Layout on disk mirrors the public URL layout::

    <cache_dir>/<key>.png
    <cache_dir>/<key>/<asset>.png
    <cache_dir>/<key>/meta.json

Backend failures surface as ``CacheUnavailable`` (probe/read) or
``StorageFailed`` (write).  Neither is retried here; the orchestrator
aborts the request instead of regenerating without a cache.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence

from spriteworks.core.errors import CacheConflict, CacheUnavailable, StorageFailed

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_ASSET_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

CONTENT_TYPES = {
    "png": "image/png",
    "json": "application/json",
}


def derive_cache_key(prompt: str, style: str, motions: str | Sequence, seed: int | None) -> str:
    """Derive the deterministic cache key for a generation.

    The inputs are encoded as a JSON array before hashing, so a separator
    character inside the prompt can never make two different tuples encode
    to the same string.

    Args:
        prompt: Base user prompt.
        style: Style preset key.
        motions: A single motion name or an ordered list of names.  List
            order matters: ``["idle", "walk"]`` and ``["walk", "idle"]``
            produce different atlases and therefore different keys.
        seed: Generation seed.

    Returns:
        64-character lowercase SHA-256 hex digest.
    """
    motion_part = motions if isinstance(motions, str) else list(motions)
    payload = json.dumps(
        [prompt, style, motion_part, seed],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CacheStore(ABC):
    """Interface of a content-addressed, write-once blob store."""

    def __init__(self, public_base_url: str) -> None:
        self.public_base_url = public_base_url.rstrip("/")

    @staticmethod
    def validate_key(key: str, asset: str | None = None, ext: str = "png") -> None:
        """Reject keys and asset names that could escape the key's namespace.

        Raises:
            ValueError: If the key is not a SHA-256 hex digest, the asset name
                contains path separators, or the extension is unsupported.
        """
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid cache key: {key!r}")
        if asset is not None and not _ASSET_PATTERN.match(asset):
            raise ValueError(f"Invalid asset name: {asset!r}")
        if ext not in CONTENT_TYPES:
            raise ValueError(f"Unsupported asset extension: {ext!r}")

    @staticmethod
    def relative_path(key: str, asset: str | None = None, ext: str = "png") -> str:
        """Return the storage path of an asset relative to the store root."""
        if asset is None:
            return f"{key}.{ext}"
        return f"{key}/{asset}.{ext}"

    def url_for(self, key: str, asset: str | None = None, ext: str = "png") -> str:
        """Return the public URL of an asset.  Does not check existence."""
        self.validate_key(key, asset, ext)
        return f"{self.public_base_url}/{self.relative_path(key, asset, ext)}"

    @abstractmethod
    def exists(self, key: str, asset: str | None = None, ext: str = "png") -> bool:
        """Cheap existence probe that never fetches the payload."""

    @abstractmethod
    def get(self, key: str, asset: str | None = None, ext: str = "png") -> bytes | None:
        """Return the stored bytes, or ``None`` on a miss."""

    @abstractmethod
    def put(self, key: str, data: bytes, asset: str | None = None, ext: str = "png") -> str:
        """Store ``data`` under the key and return its public URL."""


class FileCacheStore(CacheStore):
    """Filesystem-backed :class:`CacheStore`.

    The root directory is served as static files by the API, so the public
    URL of an asset is simply ``public_base_url`` plus its relative path.

    Attributes:
        root (Path): Directory holding every cached asset.
    """

    def __init__(self, root: Path, public_base_url: str = "/sprites") -> None:
        super().__init__(public_base_url)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str, asset: str | None, ext: str) -> Path:
        self.validate_key(key, asset, ext)
        return self.root / self.relative_path(key, asset, ext)

    def exists(self, key: str, asset: str | None = None, ext: str = "png") -> bool:
        path = self._path(key, asset, ext)
        try:
            return path.is_file()
        except OSError as exc:
            raise CacheUnavailable(f"Cache probe failed for {path.name}: {exc}") from exc

    def get(self, key: str, asset: str | None = None, ext: str = "png") -> bytes | None:
        path = self._path(key, asset, ext)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheUnavailable(f"Cache read failed for {path.name}: {exc}") from exc

    def put(self, key: str, data: bytes, asset: str | None = None, ext: str = "png") -> str:
        path = self._path(key, asset, ext)
        url = self.url_for(key, asset, ext)

        existing = self.get(key, asset, ext)
        if existing is not None:
            if existing == data:
                logger.debug("Asset %s already stored with identical content.", url)
                return url
            raise CacheConflict(f"Refusing to overwrite {url} with different content")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file and rename so readers never see a
            # partially written asset.
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageFailed(f"Upload failed for {url}: {exc}") from exc

        logger.debug("Stored %d bytes at %s.", len(data), url)
        return url
