"""Configuration management for the PromptCanvas image canvas.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PROMPTCANVAS_
prefix, allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PROMPTCANVAS_* prefix)
2. .env file in the project root
3. Default values defined in CanvasConfig

Example .env file:
    PROMPTCANVAS_IMAGE_BACKEND=fal
    PROMPTCANVAS_FAL_KEY=...
    PROMPTCANVAS_OPENAI_API_KEY=...
    PROMPTCANVAS_DEBOUNCE_DELAY_MS=750

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.

    from promptcanvas.core.config import config

    print(config.image_size)
    print(config.saved_dir)

Canvas Geometry
---------------
The geometry fields mirror the constants the canvas was designed around:
square 150px images, a 25px duplication offset, a 20px grid gap and an 80px
header reserved above the arranged grid.  Changing them changes every
placement computed by :mod:`promptcanvas.canvas.layout`.

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- models_dir: cached diffusers weights (local backend only)
- data_dir: the SQLite image database
- static_dir/generated: images rendered by the local diffusion backend
- static_dir/saved: images persisted by the save operation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CanvasConfig(BaseSettings):
    """Main configuration for PromptCanvas.

    Attributes
    ----------
    Canvas Geometry:
        image_size : int
            Edge length of every square canvas image, in pixels
        duplication_offset : int
            Extra horizontal gap between a duplicate and its source
        grid_gap : int
            Gap between cells when arranging, and between a parent and its variations
        header_height : int
            Space reserved above the arranged grid
        variation_count : int
            Number of variation slots spawned per request
        debounce_delay_ms : int
            Quiet period after typing before a regeneration is attempted
        container_width, container_height : float
            Initial canvas bounds until a client reports its own

    Generation:
        image_backend : Literal["fal", "diffusers"]
            Backend registered in ``backend_registry`` used to render images
        fal_model, fal_key
            Hosted model endpoint and credentials for the fal backend
        hf_model_id, torch_dtype, device, num_inference_steps, guidance_scale
            Settings for the local diffusers backend

    Prompt Variation:
        openai_api_key, openai_model
            Credentials and model used to diversify a parent prompt

    Paths:
        models_dir, data_dir, static_dir

    Server:
        server_host, server_port, log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROMPTCANVAS_",
        case_sensitive=False,
    )

    # Canvas geometry
    image_size: int = Field(default=150, ge=16, le=2048)
    duplication_offset: int = Field(default=25, ge=0)
    grid_gap: int = Field(default=20, ge=0)
    header_height: int = Field(default=80, ge=0)
    variation_count: int = Field(default=4, ge=1, le=16)
    debounce_delay_ms: int = Field(
        default=750,
        ge=0,
        description="Milliseconds to wait after typing stops before regenerating",
    )
    container_width: float = Field(default=1280.0, gt=0)
    container_height: float = Field(default=800.0, gt=0)

    # Generation backend
    image_backend: Literal["fal", "diffusers"] = Field(
        default="fal",
        description="Image backend used for generation (fal or diffusers)",
    )
    fal_model: str = Field(default="fal-ai/flux/schnell")
    fal_key: str | None = Field(default=None, description="fal.ai API key")

    # Local diffusers backend
    hf_model_id: str = Field(
        default="stabilityai/sdxl-turbo",
        description="HuggingFace model ID for the local diffusers backend",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(default="bfloat16")
    device: str = Field(default="cuda", description="Device to run inference on (cuda/cpu)")
    num_inference_steps: int = Field(default=4, ge=1, le=50)
    guidance_scale: float = Field(default=0.0)
    enable_attention_slicing: bool = Field(default=False)
    enable_model_cpu_offload: bool = Field(default=False)
    compile_model: bool = Field(default=False)

    # Prompt variation
    openai_api_key: str | None = Field(default=None)
    openai_model: str = Field(default="gpt-4o-2024-08-06")

    # Storage
    models_dir: Path = Field(default=Path("models"))
    data_dir: Path = Field(default=Path("data"))
    static_dir: Path = Field(default=Path("static"))
    download_timeout: float = Field(default=30.0, gt=0)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories."""
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.generated_dir.mkdir(parents=True, exist_ok=True)
        self.saved_dir.mkdir(parents=True, exist_ok=True)
        if self.image_backend == "diffusers":
            self.models_dir.mkdir(parents=True, exist_ok=True)

    @property
    def generated_dir(self) -> Path:
        """Directory holding images rendered by the local backend."""
        return self.static_dir / "generated"

    @property
    def saved_dir(self) -> Path:
        """Directory holding images persisted by the save operation."""
        return self.static_dir / "saved"

    @property
    def database_path(self) -> Path:
        """SQLite file backing image records and lineage."""
        return self.data_dir / "promptcanvas.db"

    @property
    def debounce_delay(self) -> float:
        """Debounce delay in seconds."""
        return self.debounce_delay_ms / 1000.0

    def static_url(self, path: Path) -> str:
        """Return the ``/static/...`` URL under which *path* is served."""
        relative = Path(path).resolve().relative_to(self.static_dir.resolve())
        return "/static/" + relative.as_posix()


# Global configuration instance
config = CanvasConfig()
