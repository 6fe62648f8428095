"""PromptCanvas — FastAPI Application.

This module is the single entry point for the web application.  It defines
the FastAPI ``app`` instance, the canvas REST routes, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
One canvas per server process:

- **Canvas state** lives in a :class:`~promptcanvas.canvas.orchestrator.CanvasOrchestrator`
  created in the lifespan handler and stored on ``app.state.orchestrator``.
- **Image generation** is delegated to the backend named by
  ``config.image_backend`` (see :mod:`promptcanvas.services.generation`).
- **Saved images and lineage** are recorded in a SQLite database
  (:class:`~promptcanvas.storage.image_store.ImageStore`).
- **Static assets** (generated and saved images) are served by FastAPI's
  ``StaticFiles`` at ``/static/...``.

Every canvas route returns the full :class:`CanvasSnapshot`, including
``error``: canvas operations report failures in the snapshot, never as HTTP
errors.

Endpoints
---------
======  ====================================  ===============================
Method  Path                                  Purpose
======  ====================================  ===============================
GET     ``/api/config``                       Canvas geometry, backend name
GET     ``/api/canvas``                       Current snapshot
POST    ``/api/canvas/mount``                 Initial placeholder
POST    ``/api/canvas/resize``                Container bounds
PUT     ``/api/canvas/prompt``                Live prompt edit
POST    ``/api/canvas/select/{id}``           Select an image
POST    ``/api/canvas/deselect``              Clear selection
POST    ``/api/canvas/arrange``               Arrange in a grid
PUT     ``/api/canvas/images/{id}/position``  Drag end
DELETE  ``/api/canvas/images/{id}``           Delete an image
POST    ``/api/canvas/images/{id}/duplicate`` Duplicate an image
POST    ``/api/canvas/images/{id}/variations`` Spawn four variations
POST    ``/api/canvas/images/{id}/save``      Save an image
GET     ``/api/saved``                        Refresh the saved catalog
POST    ``/api/saved/toggle``                 Open/close the saved dropdown
POST    ``/api/saved/{id}/place``             Place a saved image
======  ====================================  ===============================

Usage
-----
CLI (installed entry point)::

    promptcanvas

Direct invocation::

    python -m promptcanvas.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from promptcanvas import __version__
from promptcanvas.api.models import (
    CanvasSnapshot,
    CatalogToggle,
    ConfigResponse,
    PositionUpdate,
    PromptUpdate,
    ResizeRequest,
    SaveRequest,
    VariationRequest,
)
from promptcanvas.canvas.models import Position
from promptcanvas.canvas.orchestrator import CanvasOrchestrator
from promptcanvas.core.config import CanvasConfig, config
from promptcanvas.services.generation import GenerationClient, backend_registry
from promptcanvas.services.prompt_variants import PromptVariantClient
from promptcanvas.storage.image_store import ImageStore
from promptcanvas.storage.persistence import PersistenceClient

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[CanvasConfig], CanvasOrchestrator]


def build_orchestrator(cfg: CanvasConfig) -> CanvasOrchestrator:
    """Wire the production capabilities into a :class:`CanvasOrchestrator`.

    Raises:
        KeyError: If ``cfg.image_backend`` names no registered backend.
    """
    image_store = ImageStore(cfg.database_path)
    backend = backend_registry.instantiate(cfg.image_backend, cfg)
    generation = GenerationClient(
        backend,
        image_store,
        PromptVariantClient(cfg),
        variation_count=cfg.variation_count,
    )
    persistence = PersistenceClient(image_store, cfg)
    return CanvasOrchestrator(generation, persistence, config=cfg)


def create_app(
    cfg: CanvasConfig = config,
    orchestrator_factory: OrchestratorFactory = build_orchestrator,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Configuration to run with.
        orchestrator_factory: Builds the canvas orchestrator at startup.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the canvas and load the saved catalog on startup; drain and close on shutdown."""
        # --- Startup -------------------------------------------------------
        app.state.orchestrator = orchestrator_factory(cfg)
        await app.state.orchestrator.load_saved_catalog()
        logger.info("Canvas ready (backend=%s).", cfg.image_backend)

        yield

        # --- Shutdown ------------------------------------------------------
        await app.state.orchestrator.aclose()
        logger.info("Canvas closed on shutdown.")

    app = FastAPI(
        title="PromptCanvas",
        description="Prompt-driven image canvas with regeneration, variations and saving.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so the frontend can be served from a
    # different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.mount("/static", StaticFiles(directory=str(cfg.static_dir)), name="static")

    _register_routes(app, cfg)
    return app


def get_orchestrator(request: Request) -> CanvasOrchestrator:
    return request.app.state.orchestrator


def _snapshot(orchestrator: CanvasOrchestrator) -> CanvasSnapshot:
    return CanvasSnapshot.from_state(orchestrator.state)


def _register_routes(app: FastAPI, cfg: CanvasConfig) -> None:
    # -----------------------------------------------------------------------
    # Configuration and snapshot.
    # -----------------------------------------------------------------------

    @app.get("/api/config", response_model=ConfigResponse)
    async def get_config() -> ConfigResponse:
        """Return canvas geometry and the active backend for the frontend."""
        return ConfigResponse(
            version=__version__,
            image_backend=cfg.image_backend,
            image_size=cfg.image_size,
            duplication_offset=cfg.duplication_offset,
            grid_gap=cfg.grid_gap,
            header_height=cfg.header_height,
            variation_count=cfg.variation_count,
            debounce_delay_ms=cfg.debounce_delay_ms,
        )

    @app.get("/api/canvas", response_model=CanvasSnapshot)
    async def get_canvas(
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        return _snapshot(orchestrator)

    @app.post("/api/canvas/mount", response_model=CanvasSnapshot)
    async def mount_canvas(
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Put the initial placeholder on an empty canvas."""
        orchestrator.mount()
        return _snapshot(orchestrator)

    @app.post("/api/canvas/resize", response_model=CanvasSnapshot)
    async def resize_canvas(
        req: ResizeRequest,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.resize(req.width, req.height)
        return _snapshot(orchestrator)

    # -----------------------------------------------------------------------
    # Prompt and selection.
    # -----------------------------------------------------------------------

    @app.put("/api/canvas/prompt", response_model=CanvasSnapshot)
    async def update_prompt(
        req: PromptUpdate,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Update the live prompt.

        With ``settle=true`` the debounce is flushed and the response waits
        for the regeneration it triggers, if any.
        """
        orchestrator.update_prompt(req.prompt)
        if req.settle:
            await orchestrator.settle_prompt()
        return _snapshot(orchestrator)

    @app.post("/api/canvas/select/{entity_id}", response_model=CanvasSnapshot)
    async def select_image(
        entity_id: str,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Select an image; ignored while a regeneration is in flight."""
        orchestrator.select_entity(entity_id)
        return _snapshot(orchestrator)

    @app.post("/api/canvas/deselect", response_model=CanvasSnapshot)
    async def deselect_image(
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.deselect()
        return _snapshot(orchestrator)

    @app.post("/api/canvas/arrange", response_model=CanvasSnapshot)
    async def arrange_images(
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.arrange_grid()
        return _snapshot(orchestrator)

    # -----------------------------------------------------------------------
    # Per-image operations.
    # -----------------------------------------------------------------------

    @app.put("/api/canvas/images/{entity_id}/position", response_model=CanvasSnapshot)
    async def move_image(
        entity_id: str,
        req: PositionUpdate,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.update_position(entity_id, Position(x=req.x, y=req.y))
        return _snapshot(orchestrator)

    @app.delete("/api/canvas/images/{entity_id}", response_model=CanvasSnapshot)
    async def delete_image(
        entity_id: str,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.delete(entity_id)
        return _snapshot(orchestrator)

    @app.post("/api/canvas/images/{entity_id}/duplicate", response_model=CanvasSnapshot)
    async def duplicate_image(
        entity_id: str,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        await orchestrator.duplicate(entity_id)
        return _snapshot(orchestrator)

    @app.post("/api/canvas/images/{entity_id}/variations", response_model=CanvasSnapshot)
    async def generate_variations(
        entity_id: str,
        req: VariationRequest | None = None,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Spawn variation slots around an image and wait for them to fill."""
        prompt = req.prompt if req else None
        await orchestrator.generate_variations(entity_id, prompt)
        return _snapshot(orchestrator)

    @app.post("/api/canvas/images/{entity_id}/save", response_model=CanvasSnapshot)
    async def save_image(
        entity_id: str,
        req: SaveRequest | None = None,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Save an image, then return the snapshot with the refreshed catalog."""
        src = req.src if req else None
        await orchestrator.save(entity_id, src)
        return _snapshot(orchestrator)

    # -----------------------------------------------------------------------
    # Saved-image catalog.
    # -----------------------------------------------------------------------

    @app.get("/api/saved", response_model=CanvasSnapshot)
    async def list_saved(
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        await orchestrator.load_saved_catalog()
        return _snapshot(orchestrator)

    @app.post("/api/saved/toggle", response_model=CanvasSnapshot)
    async def toggle_saved(
        req: CatalogToggle | None = None,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        orchestrator.toggle_catalog(req.is_open if req else None)
        return _snapshot(orchestrator)

    @app.post("/api/saved/{image_id}/place", response_model=CanvasSnapshot)
    async def place_saved(
        image_id: str,
        orchestrator: CanvasOrchestrator = Depends(get_orchestrator),
    ) -> CanvasSnapshot:
        """Place a catalog entry on the canvas.

        Raises:
            HTTPException: 404 if the id is not in the loaded catalog.
        """
        saved = next((s for s in orchestrator.state.catalog if s.id == image_id), None)
        if saved is None:
            raise HTTPException(status_code=404, detail="Saved image not found")
        orchestrator.place_saved_image(saved)
        return _snapshot(orchestrator)


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Configure logging and launch the uvicorn ASGI server.

    Reads host and port from :data:`~promptcanvas.core.config.config`
    (``PROMPTCANVAS_SERVER_HOST`` / ``PROMPTCANVAS_SERVER_PORT``).  Defaults
    to ``0.0.0.0:7860``.

    This function is registered as the ``promptcanvas`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "promptcanvas.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
