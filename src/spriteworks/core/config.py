"""Configuration management for Spriteworks.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the SPRITEWORKS_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (SPRITEWORKS_* prefix)
2. .env file in the project root
3. Default values defined in SpriteworksConfig

Example .env file:
    SPRITEWORKS_SYNTHESIS_BACKEND=openai
    SPRITEWORKS_PROVIDER_API_KEY=sk-...
    SPRITEWORKS_DAILY_QUOTA=20
    SPRITEWORKS_API_TOKENS=dev-token:user-1,other-token:user-2

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI application factory accepts an explicit instance so tests can
point every path at a temporary directory.

Limits
------
Each check has exactly one configurable ceiling:

- daily_quota: generation records per user in the trailing window (both
  the sprite pipeline and the single-image path count against it)
- quota_window_hours: length of the trailing window
- queue_limit: pending + active queue entries per user
- queue_stale_seconds: age after which an unfinished queue entry is
  considered abandoned and stops counting against queue_limit

Directory Management
--------------------
The configuration creates ``data_dir`` and ``cache_dir`` on initialization.
``models_dir`` is only created when the local diffusers backend is selected.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpriteworksConfig(BaseSettings):
    """Main configuration for Spriteworks.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the sqlite database
        cache_dir : Path
            Root of the content-addressed asset store
        public_base_url : str
            URL prefix under which cached assets are served

    Limits:
        daily_quota : int
            Generation records allowed per user per window
        quota_window_hours : int
            Length of the trailing quota window
        queue_limit : int
            Pending + active queue entries allowed per user
        queue_stale_seconds : float
            Age after which an unfinished queue entry stops counting
        max_prompt_length : int
            Upper bound on the base prompt length

    Pipeline geometry:
        grid_size : int
            Poses per row/column in a synthesized sheet
        tile_size : int
            Pixel size of one tile in a synthesized sheet
        atlas_frame_size : int
            Band height of one motion inside the atlas

    Synthesis:
        synthesis_backend : Literal["openai", "diffusers"]
            Remote images API or local diffusers pipeline
        provider_api_base, provider_api_key, provider_model : str
            Remote images API endpoint settings
        provider_timeout : float
            Seconds before a remote synthesis call times out
        synthesis_max_attempts : int
            Attempt ceiling for one synthesis call
        synthesis_backoff_base : float
            Base delay in seconds for exponential backoff

    Local diffusers backend:
        diffusers_model_id, device, torch_dtype, num_inference_steps,
        guidance_scale, models_dir, enable_attention_slicing,
        enable_model_cpu_offload

    Server:
        api_tokens : str
            Comma-separated ``token:user_id`` pairs accepted as bearer tokens
        server_host, server_port, log_level

    Examples
    --------
    Create a custom configuration:

        >>> custom = SpriteworksConfig(
        ...     data_dir="/tmp/sw",
        ...     cache_dir="/tmp/sw/sprites",
        ...     daily_quota=5,
        ... )
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPRITEWORKS_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the sqlite database",
    )
    cache_dir: Path = Field(
        default=Path("data/sprites"),
        description="Root directory of the content-addressed asset store",
    )
    public_base_url: str = Field(
        default="/sprites",
        description="URL prefix under which cached assets are served",
    )

    # Limits
    daily_quota: int = Field(default=20, ge=1, description="Generations per user per window")
    quota_window_hours: int = Field(default=24, ge=1, le=24 * 31)
    queue_limit: int = Field(default=3, ge=1, description="Pending + active jobs per user")
    queue_stale_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Seconds after which an unfinished queue entry no longer counts",
    )
    max_prompt_length: int = Field(default=200, ge=1)

    # Pipeline geometry
    grid_size: int = Field(default=4, ge=1, le=16)
    tile_size: int = Field(default=256, ge=16, le=2048)
    atlas_frame_size: int = Field(default=1024, ge=16, le=4096)

    # Synthesis
    synthesis_backend: Literal["openai", "diffusers"] = Field(
        default="openai",
        description="Remote OpenAI-compatible images API or local diffusers pipeline",
    )
    provider_api_base: str = Field(default="https://api.openai.com/v1")
    provider_api_key: str = Field(default="", description="Bearer key for the images API")
    provider_model: str = Field(default="gpt-image-1")
    provider_timeout: float = Field(default=120.0, gt=0)
    synthesis_max_attempts: int = Field(default=3, ge=1, le=10)
    synthesis_backoff_base: float = Field(default=1.0, ge=0)
    default_style: str = Field(default="octopath-traveler")

    # Local diffusers backend
    diffusers_model_id: str = Field(default="stabilityai/sdxl-turbo")
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(default="bfloat16")
    device: str = Field(default="cuda")
    num_inference_steps: int = Field(default=4, ge=1, le=100)
    guidance_scale: float = Field(default=0.0, ge=0)
    models_dir: Path = Field(default=Path("models"))
    enable_attention_slicing: bool = Field(default=False)
    enable_model_cpu_offload: bool = Field(default=False)

    # Server
    api_tokens: str = Field(
        default="",
        description="Comma-separated token:user_id pairs accepted as bearer tokens",
    )
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8000, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        if self.synthesis_backend == "diffusers":
            self.models_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Path of the sqlite database holding records and queue entries."""
        return self.data_dir / "spriteworks.db"

    def token_map(self) -> dict[str, str]:
        """Parse ``api_tokens`` into a ``{token: user_id}`` mapping.

        Malformed pairs (missing colon or empty side) are ignored.
        """
        tokens: dict[str, str] = {}
        for pair in self.api_tokens.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token and user_id:
                tokens[token] = user_id
        return tokens


# Global configuration instance, loaded from SPRITEWORKS_* variables and .env.
config = SpriteworksConfig()
