"""Image generation capability for the canvas.

This module provides the generation side of the canvas: turning a prompt into
an image URL, and a parent prompt into a set of variation images.

Backend Pattern
---------------
Rendering is delegated to an :class:`ImageBackend`.  Backends register
themselves with the module-level :data:`backend_registry` and are picked by
name from ``config.image_backend``:

- ``fal``: hosted FLUX schnell on fal.ai, returns a remote URL
- ``diffusers``: local pipeline via :class:`ModelManager`, writes a PNG under
  ``config.generated_dir`` and returns its ``/static/generated/...`` URL

    >>> backend = backend_registry.instantiate("fal", config)
    >>> client = GenerationClient(backend, image_store, PromptVariantClient(config))
    >>> result = await client.generate_image("a red kite", 150)

Failure Reporting
-----------------
:class:`GenerationClient` never raises for upstream failures.  Every attempt
yields a :class:`GeneratedImage`; on failure ``id`` is empty and ``error`` is
populated.  When prompt augmentation fails during a variations request, one
uniform error result is returned per variation slot so callers clean up every
slot the same way.
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

import fal_client

from promptcanvas.canvas.models import GeneratedImage, RelationshipType
from promptcanvas.core.config import CanvasConfig
from promptcanvas.core.model_manager import ModelManager
from promptcanvas.services.ids import new_id
from promptcanvas.services.prompt_variants import PromptVariantClient
from promptcanvas.storage.image_store import ImageStore

logger = logging.getLogger(__name__)


class ImageBackend(ABC):
    """Abstract base class for image rendering backends.

    Subclasses implement :meth:`render`, which turns a prompt into a URL the
    browser can load.  Returning ``None`` means the backend answered but
    produced no image.

    Attributes:
        name: Registry key, matched against ``config.image_backend``.
        description: Human-readable summary.
    """

    name: str = "base"
    description: str = "Base class for image backends"

    def __init__(self, config: CanvasConfig) -> None:
        self.config = config

    @abstractmethod
    async def render(self, image_id: str, prompt: str, size: int) -> str | None:
        """Render a square image and return its URL.

        Args:
            image_id: Identifier already assigned to the image.
            prompt: Text prompt.
            size: Edge length in pixels.
        """

    async def close(self) -> None:
        """Release backend resources."""


class BackendRegistry:
    """Registry of available :class:`ImageBackend` classes."""

    def __init__(self) -> None:
        self._backends: dict[str, type[ImageBackend]] = {}

    def register(self, backend_class: type[ImageBackend]) -> type[ImageBackend]:
        """Register *backend_class* under its ``name``; usable as a decorator."""
        self._backends[backend_class.name] = backend_class
        logger.debug("Registered image backend: %s", backend_class.name)
        return backend_class

    def instantiate(self, backend_name: str, config: CanvasConfig) -> ImageBackend:
        """Create an instance of a registered backend.

        Raises
        ------
        KeyError
            If backend_name is not registered
        """
        if backend_name not in self._backends:
            available = ", ".join(self.list_available())
            raise KeyError(
                f"Image backend '{backend_name}' not found. Available backends: {available}"
            )
        instance = self._backends[backend_name](config)
        logger.info("Instantiated image backend: %s", backend_name)
        return instance

    def list_available(self) -> list[str]:
        return list(self._backends.keys())


backend_registry = BackendRegistry()


@backend_registry.register
class FalImageBackend(ImageBackend):
    """Hosted text-to-image on fal.ai."""

    name = "fal"
    description = "FLUX schnell hosted on fal.ai"

    def __init__(self, config: CanvasConfig, client: Any | None = None) -> None:
        super().__init__(config)
        self._client = client or fal_client.AsyncClient(key=config.fal_key)
        logger.info("fal client configured for model %s.", config.fal_model)

    async def render(self, image_id: str, prompt: str, size: int) -> str | None:
        result = await self._client.subscribe(
            self.config.fal_model,
            arguments={
                "prompt": prompt,
                "image_size": {"width": size, "height": size},
            },
        )
        images = (result or {}).get("images") or []
        return images[0].get("url") if images else None


@backend_registry.register
class DiffusersImageBackend(ImageBackend):
    """Local rendering through a diffusers pipeline."""

    name = "diffusers"
    description = "Local diffusers pipeline"

    def __init__(self, config: CanvasConfig, model_manager: ModelManager | None = None) -> None:
        super().__init__(config)
        self._manager = model_manager or ModelManager(config)

    async def render(self, image_id: str, prompt: str, size: int) -> str | None:
        return await asyncio.to_thread(self._render_to_file, image_id, prompt, size)

    def _render_to_file(self, image_id: str, prompt: str, size: int) -> str:
        seed = random.randint(0, 2**32 - 1)
        image = self._manager.generate(prompt, size=size, seed=seed)
        path = self.config.generated_dir / f"{image_id}.png"
        image.save(path, format="PNG")
        logger.info("Rendered image %s to %s (seed=%d).", image_id, path, seed)
        return self.config.static_url(path)

    async def close(self) -> None:
        await asyncio.to_thread(self._manager.unload)


class GenerationClient:
    """Generation capability consumed by the canvas orchestrator.

    Args:
        backend: Renderer for single images.
        image_store: Where image records and lineage are written.
        prompt_variants: Prompt augmentation client.
        id_factory: Source of unique image ids.
        variation_count: Number of variation slots per request.
    """

    def __init__(
        self,
        backend: ImageBackend,
        image_store: ImageStore,
        prompt_variants: PromptVariantClient,
        id_factory: Callable[[], Awaitable[str]] = new_id,
        variation_count: int = 4,
    ) -> None:
        self.backend = backend
        self._store = image_store
        self._prompt_variants = prompt_variants
        self._new_id = id_factory
        self.variation_count = variation_count

    async def generate_image(self, prompt: str, size: int) -> GeneratedImage:
        """Generate one image for *prompt* and record it.

        Returns:
            :class:`GeneratedImage` with ``id``, ``image_url`` and
            ``prompt_used``; or an empty ``id`` and ``error`` on failure.
        """
        try:
            image_id = await self._new_id()
            image_url = await self.backend.render(image_id, prompt, size)
        except Exception as exc:
            logger.exception("Image generation failed for prompt %r", prompt)
            return GeneratedImage(
                error=str(exc) or "Unknown error during image generation.",
                prompt_used=prompt,
            )

        if not image_url:
            logger.error("Backend %s returned no image for %s.", self.backend.name, image_id)
            return GeneratedImage(error="No image returned by the generator.", prompt_used=prompt)

        db_error = await asyncio.to_thread(self._store.store_image_data, image_id, prompt)
        if db_error:
            logger.warning("Image %s generated but not recorded: %s", image_id, db_error)

        return GeneratedImage(id=image_id, image_url=image_url, prompt_used=prompt)

    async def generate_variations(
        self, original_prompt: str, parent_id: str, size: int
    ) -> list[GeneratedImage]:
        """Generate one image per augmented variant of *original_prompt*.

        Variants are rendered in parallel.  Each result carries its ``slot``
        so it can be matched to the placeholder it belongs to regardless of
        completion order.  Successful variants are linked to *parent_id*
        with an ``IS_PARENT`` relationship.

        Returns:
            One result per slot.
        """
        augmented = await self._prompt_variants.get_prompt_variants(original_prompt)

        if augmented.error or not augmented.variants:
            message = augmented.error or "Failed to get prompt variants."
            logger.error("Failed to generate variations: %s", message)
            return [
                GeneratedImage(
                    error=f"Prompt variation generation failed: {message}",
                    prompt_used=original_prompt,
                    slot=slot,
                )
                for slot in range(self.variation_count)
            ]

        variants = augmented.variants[: self.variation_count]
        results = await asyncio.gather(
            *(self._generate_slot(slot, prompt, size) for slot, prompt in enumerate(variants))
        )

        logger.info(
            "Completed %d variation attempts: %s",
            len(results),
            [(r.id, r.error) for r in results],
        )

        successful = [r for r in results if r.succeeded]
        if successful:
            logger.info("Logging %d parent-child relationships...", len(successful))
            await asyncio.gather(
                *(
                    asyncio.to_thread(
                        self._store.store_relationship,
                        parent_id,
                        variant.id,
                        RelationshipType.IS_PARENT,
                    )
                    for variant in successful
                )
            )
        else:
            logger.info("No successful variants to log relationships for.")

        return list(results)

    async def _generate_slot(self, slot: int, prompt: str, size: int) -> GeneratedImage:
        try:
            result = await self.generate_image(prompt, size)
        except Exception as exc:
            logger.exception("Unexpected failure generating variation slot %d", slot)
            result = GeneratedImage(
                error=f"Unexpected exception: {exc}",
                prompt_used=prompt,
            )
        return replace(result, slot=slot)

    async def aclose(self) -> None:
        await self.backend.close()
