"""Image synthesis providers.

The provider is an opaque text-to-image backend: given a prompt, a seed
and an edge length it returns the PNG bytes of one square image.  Two
backends are available:

- :class:`OpenAIImageProvider` calls an OpenAI-compatible
  ``/images/generations`` endpoint over ``httpx`` and decodes the
  ``b64_json`` payload.
- :class:`DiffusersProvider` runs a local diffusers pipeline through
  :class:`~spriteworks.core.model_manager.ModelManager` in a worker thread.

:class:`RetryingProvider` wraps either backend with the queue layer's
:class:`~spriteworks.core.queue.RetryPolicy`.  Only transient failures
(transport errors, 429 and 5xx responses) are retried; a response that
arrives without an image payload fails immediately.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import threading
from abc import ABC, abstractmethod

import httpx

from spriteworks.core.config import SpriteworksConfig
from spriteworks.core.errors import SynthesisFailed
from spriteworks.core.frames import to_png_bytes
from spriteworks.core.model_manager import ModelManager
from spriteworks.core.queue import RetryPolicy

logger = logging.getLogger(__name__)


class TransientSynthesisError(SynthesisFailed):
    """A synthesis failure that may succeed when retried."""


class SynthesisProvider(ABC):
    """Interface every synthesis backend implements."""

    @abstractmethod
    async def synthesize(self, prompt: str, seed: int, size: int = 1024) -> bytes:
        """Return PNG bytes of one ``size × size`` image.

        Raises:
            SynthesisFailed: If the backend fails or returns no payload.
        """

    async def aclose(self) -> None:
        """Release backend resources."""


class OpenAIImageProvider(SynthesisProvider):
    """Remote provider for OpenAI-compatible image generation APIs.

    Args:
        api_base: Base URL, e.g. ``https://api.openai.com/v1``.
        api_key: Bearer token.
        model: Model name sent with each request.
        timeout: Request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_base: str,
        api_key: str,
        model: str = "gpt-image-1",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def synthesize(self, prompt: str, seed: int, size: int = 1024) -> bytes:
        body = {
            "model": self.model,
            "prompt": prompt,
            "size": f"{size}x{size}",
            "n": 1,
            "seed": seed,
            "output_format": "png",
            "background": "transparent",
        }
        logger.info("Requesting %dx%d image from %s (seed=%d).", size, size, self.api_base, seed)

        try:
            response = await self._client.post("/images/generations", json=body)
        except httpx.HTTPError as exc:
            raise TransientSynthesisError(f"Provider request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSynthesisError(f"Provider returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise SynthesisFailed(
                f"Provider rejected the request with HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )

        try:
            encoded = response.json()["data"][0]["b64_json"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise SynthesisFailed("Provider response is missing data[0].b64_json") from exc
        if not encoded:
            raise SynthesisFailed("Provider response has an empty image payload")

        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SynthesisFailed("Provider returned an invalid base64 payload") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class DiffusersProvider(SynthesisProvider):
    """Local provider backed by a diffusers pipeline.

    The model is loaded lazily on the first call.  Generation runs in a
    worker thread so the event loop stays responsive.  One pipeline serves
    every call, so loading and generation are serialised by a lock.

    The pipeline produces opaque RGB images: the transparent background
    the remote backend requests is not available here, and tiles decoded
    from this backend carry a fully opaque alpha channel.
    """

    def __init__(self, manager: ModelManager, model_id: str) -> None:
        self.manager = manager
        self.model_id = model_id
        self._lock = threading.Lock()

    def _generate(self, prompt: str, seed: int, size: int) -> bytes:
        with self._lock:
            if self.manager.current_model_id != self.model_id:
                self.manager.load_model(self.model_id)
            image = self.manager.generate(prompt=prompt, size=size, seed=seed)
        return to_png_bytes(image)

    async def synthesize(self, prompt: str, seed: int, size: int = 1024) -> bytes:
        try:
            return await asyncio.to_thread(self._generate, prompt, seed, size)
        except SynthesisFailed:
            raise
        except Exception as exc:
            raise SynthesisFailed(f"Local pipeline failed: {exc}") from exc

    async def aclose(self) -> None:
        self.manager.unload()


class RetryingProvider(SynthesisProvider):
    """Apply a :class:`RetryPolicy` to another provider's transient failures."""

    def __init__(self, inner: SynthesisProvider, policy: RetryPolicy) -> None:
        self.inner = inner
        self.policy = policy

    async def synthesize(self, prompt: str, seed: int, size: int = 1024) -> bytes:
        return await self.policy.run(
            lambda: self.inner.synthesize(prompt, seed, size),
            retry_on=(TransientSynthesisError,),
        )

    async def aclose(self) -> None:
        await self.inner.aclose()


def create_provider(config: SpriteworksConfig) -> SynthesisProvider:
    """Build the configured backend wrapped in the retry policy."""
    if config.synthesis_backend == "diffusers":
        inner: SynthesisProvider = DiffusersProvider(ModelManager(config), config.diffusers_model_id)
    else:
        inner = OpenAIImageProvider(
            api_base=config.provider_api_base,
            api_key=config.provider_api_key,
            model=config.provider_model,
            timeout=config.provider_timeout,
        )
    policy = RetryPolicy(
        max_attempts=config.synthesis_max_attempts,
        base_delay=config.synthesis_backoff_base,
    )
    return RetryingProvider(inner, policy)
