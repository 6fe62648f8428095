"""Saving canvas images and listing the saved catalog.

:class:`PersistenceClient` is the storage capability the canvas orchestrator
talks to.  Saving an image copies its bytes into ``config.saved_dir`` as
``<id>.<ext>`` and marks the record as saved in :class:`ImageStore`; the
catalog is read back from the saved records and served from ``/static/saved``.

Image bytes come from one of two places:

- URLs under ``/static/`` point at files this application already serves
  (images rendered by the local diffusion backend) and are read from disk.
- Anything else is downloaded with :mod:`httpx`.

The client never raises for upstream problems.  ``save_image`` returns a
:class:`SaveResult` with ``error`` populated and ``list_saved_images`` returns
an empty list, logging the cause in both cases.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

import httpx

from promptcanvas.canvas.models import SavedImage
from promptcanvas.core.config import CanvasConfig
from promptcanvas.storage.image_store import ImageStore

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpeg"


@dataclass(frozen=True)
class SaveResult:
    """Outcome of a save: ``error`` is None on success."""

    error: str | None = None
    storage_path: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DownloadError(Exception):
    """Raised when image bytes cannot be fetched from their source URL."""


def extension_for(content_type: str | None) -> str:
    """Map an image content type to a file extension.

    ``image/png`` gives ``png`` and ``image/svg+xml`` gives ``svg``; anything
    that is not an ``image/*`` type falls back to ``jpeg``.
    """
    if not content_type:
        return DEFAULT_EXTENSION
    parts = content_type.split(";")[0].strip().lower().split("/")
    if len(parts) == 2 and parts[0] == "image" and parts[1]:
        return parts[1].split("+")[0]
    return DEFAULT_EXTENSION


class PersistenceClient:
    """Storage capability: save images, list saved images."""

    def __init__(
        self,
        image_store: ImageStore,
        config: CanvasConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = image_store
        self._config = config
        self._http = http_client or httpx.AsyncClient(
            timeout=config.download_timeout, follow_redirects=True
        )

    async def save_image(self, image_id: str, src: str, prompt: str | None = None) -> SaveResult:
        """Persist the image at *src* under *image_id* and mark it saved.

        Saving the same id twice overwrites the file and keeps one record.

        Args:
            image_id: Identifier of the canvas image (also the file stem).
            src: URL the image is currently served from.
            prompt: Prompt to record if the image has no record yet.

        Returns:
            :class:`SaveResult`; ``error`` is set if anything failed.
        """
        if not image_id or not src:
            return SaveResult(error="Nothing to save: image id or source missing.")

        try:
            data, content_type = await self._fetch(src)
        except DownloadError as exc:
            logger.error("Failed to download image %s from %s: %s", image_id, src, exc)
            return SaveResult(error="Failed to download image from URL")

        try:
            filename = f"{image_id}.{extension_for(content_type)}"
            target = self._config.saved_dir / filename
            await asyncio.to_thread(target.write_bytes, data)
            logger.info("Stored image %s at %s", image_id, target)

            db_error = await asyncio.to_thread(self._store.mark_saved, image_id, filename, prompt)
        except OSError as exc:
            logger.error("Error saving image %s: %s", image_id, exc)
            return SaveResult(error=str(exc) or "Failed to save image")

        if db_error:
            return SaveResult(error="Failed to save image")
        return SaveResult(storage_path=filename)

    async def list_saved_images(self) -> list[SavedImage]:
        """Return every saved image with a URL it can be fetched from.

        Records without an id or storage path, or whose file has gone
        missing, are skipped.
        """
        try:
            rows = await asyncio.to_thread(self._store.list_saved)
        except Exception:
            logger.exception("Error fetching saved images from database.")
            return []

        if not rows:
            logger.info("No saved images found")
            return []

        results: list[SavedImage] = []
        for row in rows:
            image_id = row.get("image_id")
            storage_path = row.get("storage_path")
            if not image_id:
                logger.warning("Skipping saved row with missing image_id: %s", row)
                continue
            if not storage_path:
                logger.warning(
                    "Image %s is marked saved but has no storage_path. Skipping.", image_id
                )
                continue
            path = self._config.saved_dir / storage_path
            if not path.exists():
                logger.warning("Saved file for image %s is missing (%s). Skipping.", image_id, path)
                continue

            prompt = row.get("prompt")
            results.append(
                SavedImage(
                    id=image_id,
                    prompt=prompt if prompt is not None else "Untitled",
                    url=self._config.static_url(path),
                )
            )

        logger.info("Listed %d saved images.", len(results))
        return results

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _fetch(self, src: str) -> tuple[bytes, str | None]:
        if src.startswith("/static/"):
            return await asyncio.to_thread(self._read_static, src)

        try:
            response = await self._http.get(src)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DownloadError(str(exc)) from exc
        return response.content, response.headers.get("content-type")

    def _read_static(self, src: str) -> tuple[bytes, str | None]:
        static_root = self._config.static_dir.resolve()
        path = (static_root / src.removeprefix("/static/")).resolve()
        if not path.is_relative_to(static_root) or not path.is_file():
            raise DownloadError(f"No static file for {src}")
        content_type, _ = mimetypes.guess_type(path.name)
        try:
            return path.read_bytes(), content_type
        except OSError as exc:
            raise DownloadError(str(exc)) from exc
