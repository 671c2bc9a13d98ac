"""Local diffusers pipeline lifecycle for the ``diffusers`` synthesis backend.

:class:`ModelManager` owns at most one text-to-image pipeline in memory.
It is only used when ``SPRITEWORKS_SYNTHESIS_BACKEND=diffusers``; the
default remote backend never imports torch.

Key Responsibilities
--------------------
- **Lazy loading**: ``torch`` and ``diffusers`` are imported inside the
  methods, so the package imports cleanly without the ``local`` extra.
- **Model switching**: loading a different model unloads the current one
  and frees CUDA memory first.
- **Turbo enforcement**: models whose identifier contains ``"turbo"`` run
  with ``guidance_scale=0.0``.
- **Deterministic generation**: a fresh seeded ``torch.Generator`` per call,
  matching the cache key's promise that one seed means one image.

Usage
-----
::

    mgr = ModelManager(config)
    mgr.load_model("stabilityai/sdxl-turbo")
    image = mgr.generate(prompt="a knight", size=1024, seed=42)
    mgr.unload()
"""

from __future__ import annotations

import gc
import logging

from PIL import Image

from spriteworks.core.config import SpriteworksConfig

logger = logging.getLogger(__name__)


def _resolve_dtype(torch, name: str):
    return {
        "bfloat16": torch.bfloat16,
        "float16": torch.float16,
        "float32": torch.float32,
    }.get(name, torch.float32)


class ModelManager:
    """Manages the lifecycle of a single diffusers pipeline.

    Attributes:
        _config (SpriteworksConfig):
            Device, dtype, model cache directory, and memory flags.
        _pipeline:
            The loaded diffusers pipeline, or ``None``.
        _current_model_id (str | None):
            Identifier of the loaded model, or ``None``.
    """

    def __init__(self, config: SpriteworksConfig) -> None:
        self._config = config
        self._pipeline = None
        self._current_model_id: str | None = None

    def load_model(self, model_id: str) -> None:
        """Load a text-to-image pipeline by HuggingFace identifier.

        A no-op when ``model_id`` is already loaded.

        Raises:
            RuntimeError: Propagated from diffusers when loading fails.  The
                manager is left with nothing loaded.
        """
        if self._current_model_id == model_id and self._pipeline is not None:
            logger.info("Model '%s' is already loaded.", model_id)
            return

        if self._pipeline is not None:
            logger.info("Switching from '%s' to '%s'.", self._current_model_id, model_id)
            self.unload()

        import torch
        from diffusers import AutoPipelineForText2Image

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            model_id,
            self._config.torch_dtype,
            self._config.device,
            self._config.models_dir,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                model_id,
                torch_dtype=_resolve_dtype(torch, self._config.torch_dtype),
                cache_dir=str(self._config.models_dir),
            )

            if self._config.enable_model_cpu_offload:
                pipeline.enable_sequential_cpu_offload()
            else:
                pipeline = pipeline.to(self._config.device)

            if self._config.enable_attention_slicing:
                pipeline.enable_attention_slicing()

            self._pipeline = pipeline
            self._current_model_id = model_id
            logger.info("Model '%s' loaded.", model_id)
        except Exception:
            self._pipeline = None
            self._current_model_id = None
            logger.exception("Failed to load model '%s'.", model_id)
            raise

    def generate(
        self,
        prompt: str,
        size: int,
        seed: int,
        steps: int | None = None,
        guidance_scale: float | None = None,
    ) -> Image.Image:
        """Generate one square image with the loaded pipeline.

        Args:
            prompt: Synthesis prompt.
            size: Edge length in pixels.
            seed: Seed for the ``torch.Generator``.
            steps: Inference steps, defaulting to ``config.num_inference_steps``.
            guidance_scale: Defaults to ``config.guidance_scale``; forced to
                0.0 for turbo models.

        Raises:
            RuntimeError: If no model is loaded.
        """
        if self._pipeline is None:
            raise RuntimeError("No model is loaded.  Call load_model(model_id) before generate().")

        import torch

        steps = steps if steps is not None else self._config.num_inference_steps
        guidance = guidance_scale if guidance_scale is not None else self._config.guidance_scale
        if self._current_model_id and "turbo" in self._current_model_id.lower() and guidance:
            logger.warning("Turbo model '%s': forcing guidance_scale to 0.0.", self._current_model_id)
            guidance = 0.0

        generator = torch.Generator(device=self._config.device).manual_seed(seed)
        logger.info("Generating %dx%d image, %d steps, seed=%d.", size, size, steps, seed)

        output = self._pipeline(
            prompt=prompt,
            width=size,
            height=size,
            num_inference_steps=steps,
            guidance_scale=guidance,
            generator=generator,
        )
        return output.images[0]

    def unload(self) -> None:
        """Drop the pipeline and release CUDA memory.  Safe when nothing is loaded."""
        if self._pipeline is None:
            return

        model_id = self._current_model_id
        self._pipeline = None
        self._current_model_id = None
        gc.collect()

        try:
            import torch
        except ImportError:
            return
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
            logger.info("CUDA cache cleared after unloading '%s'.", model_id)

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        return self._current_model_id
