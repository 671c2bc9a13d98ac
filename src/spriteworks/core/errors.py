"""Error taxonomy for the generation pipeline.

Every error raised by the pipeline derives from :class:`SpriteworksError`
and carries the HTTP status code the API layer responds with.  The
orchestrator is the only component that translates an error kind into a
status (see :func:`spriteworks.core.orchestrator.error_status`).
"""

from __future__ import annotations


class SpriteworksError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(SpriteworksError):
    """Malformed, missing, or too-long input."""

    status_code = 400


class InvalidMotion(ValidationError):
    """A requested motion name is not in the registry."""

    def __init__(self, motion: str) -> None:
        super().__init__(f"Invalid motion: {motion}")
        self.motion = motion


class Unauthorized(SpriteworksError):
    status_code = 401


class QuotaExceeded(SpriteworksError):
    status_code = 402


class TooManyConcurrentRequests(SpriteworksError):
    status_code = 429


class CacheUnavailable(SpriteworksError):
    """The storage backend could not be probed or read."""

    status_code = 500


class SynthesisFailed(SpriteworksError):
    """The image provider failed or returned no usable payload."""

    status_code = 500


class StorageFailed(SpriteworksError):
    """An asset upload failed."""

    status_code = 500


class CacheConflict(StorageFailed):
    """A write targeted an existing key with different content."""


class FrameExtractionError(SpriteworksError, ValueError):
    """An image could not be sliced or composited as requested."""

    status_code = 500
