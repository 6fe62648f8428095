"""Local diffusion pipeline lifecycle for the ``diffusers`` image backend.

:class:`ModelManager` owns at most one HuggingFace diffusers pipeline and
renders square canvas images with it.  It is only used when
``config.image_backend == "diffusers"``; the hosted ``fal`` backend never
touches it, and ``torch``/``diffusers`` are imported lazily so the rest of the
application runs without them installed.

Key Responsibilities
--------------------
- **Lazy model loading**: the pipeline is loaded on the first render, or by
  an explicit :meth:`ModelManager.load_model`.
- **Render size**: canvas images are small (150px by default) but diffusion
  models need larger dimensions that are multiples of 64, so renders are
  scaled up with :func:`render_dimension` and the browser scales them back.
- **Turbo enforcement**: models whose id contains ``"turbo"`` get
  ``guidance_scale`` forced to 0.0.
- **CUDA memory management**: unloading deletes the pipeline, collects
  garbage and empties the CUDA cache.

Usage
-----
::

    from promptcanvas.core.config import config
    from promptcanvas.core.model_manager import ModelManager

    mgr = ModelManager(config)
    image = mgr.generate("a lighthouse at dusk", size=150, seed=7)
    mgr.unload()
"""

from __future__ import annotations

import gc
import logging
import threading

from PIL import Image

from promptcanvas.core.config import CanvasConfig

logger = logging.getLogger(__name__)

MIN_RENDER_SIZE = 512

_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string -> ``torch.dtype`` mapping, importing torch lazily."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


def render_dimension(size: int) -> int:
    """Smallest multiple of 64 that is >= *size* and >= ``MIN_RENDER_SIZE``."""
    size = max(size, MIN_RENDER_SIZE)
    return -(-size // 64) * 64


class ModelManager:
    """Manages the lifecycle of a single diffusers pipeline.

    Calls are serialised with a lock: the manager is driven from worker
    threads (``asyncio.to_thread``) and a pipeline must not run two
    inferences at once.
    """

    def __init__(self, config: CanvasConfig) -> None:
        self._config = config
        self._pipeline = None
        self._current_model_id: str | None = None
        self._lock = threading.RLock()

    def load_model(self, hf_id: str | None = None) -> None:
        """Load a diffusers pipeline by HuggingFace identifier.

        No-op if the model is already loaded.  A different loaded model is
        unloaded first.

        Args:
            hf_id: Model identifier; defaults to ``config.hf_model_id``.

        Raises:
            Exception: Whatever diffusers raises when loading fails. The
                manager is left with nothing loaded.
        """
        hf_id = hf_id or self._config.hf_model_id

        if self._current_model_id == hf_id and self._pipeline is not None:
            logger.info("Model '%s' is already loaded, skipping.", hf_id)
            return

        if self._pipeline is not None:
            logger.info("Switching from '%s' to '%s'.", self._current_model_id, hf_id)
            self.unload()

        import torch
        from diffusers import AutoPipelineForText2Image

        torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.bfloat16)

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s).",
            hf_id,
            self._config.torch_dtype,
            self._config.device,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                hf_id,
                torch_dtype=torch_dtype,
                cache_dir=str(self._config.models_dir),
            )

            if self._config.enable_model_cpu_offload:
                pipeline.enable_sequential_cpu_offload()
                logger.info("Sequential CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self._config.device)

            if self._config.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")

            if self._config.compile_model:
                pipeline.unet = torch.compile(pipeline.unet, mode="reduce-overhead", fullgraph=True)
                logger.info("Model compiled with torch.compile.")

            self._pipeline = pipeline
            self._current_model_id = hf_id
            logger.info("Model '%s' loaded successfully.", hf_id)

        except Exception:
            self._pipeline = None
            self._current_model_id = None
            logger.exception("Failed to load model '%s'.", hf_id)
            raise

    def generate(self, prompt: str, size: int, seed: int) -> Image.Image:
        """Render one square image for *prompt*, loading the model if needed.

        Args:
            prompt: Text prompt.
            size: Requested canvas edge length; see :func:`render_dimension`.
            seed: Seed for a fresh ``torch.Generator``.

        Returns:
            The rendered PIL image.
        """
        with self._lock:
            if self._pipeline is None:
                self.load_model()

            import torch

            guidance_scale = self._config.guidance_scale
            if self._current_model_id and "turbo" in self._current_model_id.lower():
                if guidance_scale != 0.0:
                    logger.warning(
                        "Turbo model '%s': forcing guidance_scale from %.1f to 0.0.",
                        self._current_model_id,
                        guidance_scale,
                    )
                    guidance_scale = 0.0

            dimension = render_dimension(size)
            generator = torch.Generator(device=self._config.device).manual_seed(seed)

            logger.info(
                "Rendering %dx%d, %d steps, seed=%d.",
                dimension,
                dimension,
                self._config.num_inference_steps,
                seed,
            )
            output = self._pipeline(
                prompt=prompt,
                width=dimension,
                height=dimension,
                num_inference_steps=self._config.num_inference_steps,
                guidance_scale=guidance_scale,
                generator=generator,
            )
            return output.images[0]

    def unload(self) -> None:
        """Unload the current pipeline and free GPU memory. Safe when nothing is loaded."""
        with self._lock:
            if self._pipeline is None:
                return

            model_id = self._current_model_id
            logger.info("Unloading model '%s'.", model_id)

            del self._pipeline
            self._pipeline = None
            self._current_model_id = None
            gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
                logger.info("CUDA cache cleared after unloading '%s'.", model_id)
        except ImportError:
            pass

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        return self._current_model_id
