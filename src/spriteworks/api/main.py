"""Spriteworks FastAPI application.

This module defines the application factory, the REST routes, the
exception handlers that render pipeline errors, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
- **Generation** is delegated to
  :class:`~spriteworks.core.orchestrator.GenerationOrchestrator`, built in
  the lifespan handler and stored on ``app.state``.
- **Cached assets** are served by FastAPI's ``StaticFiles`` from
  ``config.cache_dir`` at ``config.public_base_url`` whenever that URL is a
  local path.  A CDN base URL disables the mount.
- **Errors** raised by the pipeline carry their HTTP status; the handlers
  below render them as ``{"error": message}``.  Request validation errors
  are reported as 400 rather than FastAPI's default 422.

Endpoints
---------
========  ==========================  ======================================
Method    Path                        Purpose
========  ==========================  ======================================
POST      ``/api/sprites/generate``   Generate (or reuse) a sprite atlas
POST      ``/api/generate``           Generate (or reuse) a single image
GET       ``/api/motions``            Motion catalog
GET       ``/api/styles``             Style presets
GET       ``/api/generations``        Caller's generation history
GET       ``/api/quota``              Caller's quota and queue usage
GET       ``/api/health``             Liveness probe
========  ==========================  ======================================

Usage
-----
CLI (installed entry point)::

    spriteworks

Direct invocation::

    python -m spriteworks.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from spriteworks import __version__
from spriteworks.api.deps import current_user
from spriteworks.api.models import ImageGenerateRequest, SpriteGenerateRequest
from spriteworks.core.cache_store import FileCacheStore
from spriteworks.core.config import SpriteworksConfig, config
from spriteworks.core.errors import SpriteworksError
from spriteworks.core.motions import DEFAULT_MOTIONS, list_motions
from spriteworks.core.orchestrator import GenerationOrchestrator, error_status
from spriteworks.core.prompt_builder import MODE_SPRITE_SHEET, STYLE_PRESETS
from spriteworks.core.queue import JobQueue
from spriteworks.core.records import GenerationStore
from spriteworks.core.synthesis import SynthesisProvider, create_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the pipeline on startup and release the provider on shutdown.

    The synthesis provider is created from the configuration unless one was
    injected through :func:`create_app` (tests use a fake provider).
    """
    cfg: SpriteworksConfig = app.state.config

    store = FileCacheStore(cfg.cache_dir, cfg.public_base_url)
    records = GenerationStore(cfg.database_path)
    queue = JobQueue(cfg.database_path, limit=cfg.queue_limit, stale_after=cfg.queue_stale_seconds)
    queue.expire_stale()
    provider: SynthesisProvider = app.state.provider or create_provider(cfg)

    app.state.records = records
    app.state.queue = queue
    app.state.provider = provider
    app.state.orchestrator = GenerationOrchestrator(cfg, store, records, provider, queue)
    logger.info(
        "Spriteworks ready (backend=%s, cache=%s, quota=%d/%dh).",
        cfg.synthesis_backend,
        cfg.cache_dir,
        cfg.daily_quota,
        cfg.quota_window_hours,
    )

    yield

    await provider.aclose()
    logger.info("Synthesis provider closed on shutdown.")


def create_app(
    cfg: SpriteworksConfig | None = None,
    provider: SynthesisProvider | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        cfg: Configuration.  Defaults to the global ``config``.
        provider: Optional synthesis provider overriding the configured
            backend.

    Returns:
        The configured application.  Pipeline objects are attached to
        ``app.state`` when the lifespan starts.
    """
    cfg = cfg or config
    app = FastAPI(
        title="Spriteworks",
        description="Sprite generation API with content-addressed asset caching.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.provider = provider
    app.state.tokens = cfg.token_map()

    if cfg.public_base_url.startswith("/"):
        app.mount(
            cfg.public_base_url.rstrip("/") or "/",
            StaticFiles(directory=str(cfg.cache_dir)),
            name="sprites",
        )
    else:
        logger.info("Assets are served from %s; static mount disabled.", cfg.public_base_url)

    _register_exception_handlers(app)
    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Exception handlers.
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SpriteworksError)
    async def spriteworks_error_handler(request: Request, exc: SpriteworksError) -> JSONResponse:
        status = error_status(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return JSONResponse(status_code=400, content={"error": "; ".join(messages) or "Invalid request"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/sprites/generate")
    async def generate_sprites(
        req: SpriteGenerateRequest,
        request: Request,
        user_id: str = Depends(current_user),
    ) -> dict:
        """Generate (or reuse) the sprite atlas for a motion set.

        Returns:
            Dictionary with ``atlasUrl``, ``metaUrl`` and ``cached``.
        """
        orchestrator: GenerationOrchestrator = request.app.state.orchestrator
        result = await orchestrator.generate_sprites(
            user_id=user_id,
            prompt=req.prompt,
            style=req.style,
            motions=req.motions,
            seed=req.seed,
        )
        return {"atlasUrl": result.atlas_url, "metaUrl": result.meta_url, "cached": result.cached}

    @app.post("/api/generate")
    async def generate_image(
        req: ImageGenerateRequest,
        request: Request,
        user_id: str = Depends(current_user),
    ) -> dict:
        """Generate (or reuse) one character image or sprite sheet.

        Returns:
            Dictionary with ``imageUrl``, ``seed`` and ``cached``, plus
            ``tileUrls`` in sprite-sheet mode.
        """
        orchestrator: GenerationOrchestrator = request.app.state.orchestrator
        result = await orchestrator.generate_image(
            user_id=user_id,
            prompt=req.prompt,
            style=req.style_preset,
            mode=req.mode,
            resolution=req.resolution,
            seed=req.seed,
        )
        body: dict = {"imageUrl": result.image_url, "seed": result.seed, "cached": result.cached}
        if req.mode == MODE_SPRITE_SHEET:
            body["tileUrls"] = list(result.tile_urls)
        return body

    @app.get("/api/motions")
    async def get_motions() -> dict:
        """Return the motion catalog in grid-row order."""
        motions = []
        for spec in list_motions():
            entry = {
                "name": spec.name,
                "frameCount": spec.frame_count,
                "fps": spec.fps,
                "gridRow": spec.grid_row,
                "directionCount": spec.direction_count,
            }
            if spec.direction_count > 1:
                entry["directions"] = list(spec.directions)
                entry["mirrored"] = dict(spec.mirror_from)
            motions.append(entry)
        return {"motions": motions, "default": list(DEFAULT_MOTIONS)}

    @app.get("/api/styles")
    async def get_styles() -> dict:
        """Return the style presets."""
        return {
            "styles": [
                {"key": preset.key, "name": preset.name, "isDefault": preset.is_default}
                for preset in STYLE_PRESETS.values()
            ]
        }

    @app.get("/api/generations")
    async def get_generations(
        request: Request,
        limit: int = Query(default=50, ge=1, le=200),
        user_id: str = Depends(current_user),
    ) -> dict:
        """Return the caller's generation history, newest first."""
        records: GenerationStore = request.app.state.records
        history = await asyncio.to_thread(records.list_for_user, user_id, limit)
        return {"generations": [record.to_dict() for record in history]}

    @app.get("/api/quota")
    async def get_quota(request: Request, user_id: str = Depends(current_user)) -> dict:
        """Return the caller's quota usage and open queue entries."""
        cfg: SpriteworksConfig = request.app.state.config
        records: GenerationStore = request.app.state.records
        queue: JobQueue = request.app.state.queue
        used = await asyncio.to_thread(records.count_in_window, user_id, cfg.quota_window_hours)
        active = await asyncio.to_thread(queue.count_open, user_id)
        return {
            "used": used,
            "limit": cfg.daily_quota,
            "remaining": max(cfg.daily_quota - used, 0),
            "activeJobs": active,
            "queueLimit": cfg.queue_limit,
        }

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from
    :data:`~spriteworks.core.config.config` (``SPRITEWORKS_SERVER_HOST``,
    ``SPRITEWORKS_SERVER_PORT``, ``SPRITEWORKS_LOG_LEVEL``).

    Registered as the ``spriteworks`` console script in ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    uvicorn.run(
        "spriteworks.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
