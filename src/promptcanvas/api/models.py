"""Pydantic request and response models for the canvas API.

These models define the JSON schema for every API endpoint.  FastAPI uses
them for request validation, serialisation, and OpenAPI documentation.

Models
------
PromptUpdate
    Payload for ``PUT /api/canvas/prompt``.
PositionUpdate
    Payload for ``PUT /api/canvas/images/{id}/position`` (drag end).
ResizeRequest
    Payload for ``POST /api/canvas/resize``.
VariationRequest, SaveRequest, CatalogToggle
    Optional payloads for variations, save and the saved-image dropdown.
CanvasSnapshot
    Full canvas state returned by every canvas route.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from promptcanvas.canvas.models import ImageEntity, SavedImage
from promptcanvas.canvas.store import CanvasState


class PromptUpdate(BaseModel):
    """Request body for ``PUT /api/canvas/prompt``.

    Attributes:
        prompt: New text of the prompt input.
        settle: Settle the debounce immediately and wait for any regeneration
            it starts before responding.  Without it the regeneration fires
            once the debounce delay has passed.
    """

    prompt: str = Field(..., description="Live prompt text.")
    settle: bool = Field(default=False, description="Skip the debounce wait.")


class PositionUpdate(BaseModel):
    x: float
    y: float


class ResizeRequest(BaseModel):
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class VariationRequest(BaseModel):
    """Request body for ``POST /api/canvas/images/{id}/variations``.

    ``prompt`` defaults to the parent image's own prompt.
    """

    prompt: str | None = None


class SaveRequest(BaseModel):
    """Request body for ``POST /api/canvas/images/{id}/save``.

    ``src`` defaults to the image's current URL.
    """

    src: str | None = None


class CatalogToggle(BaseModel):
    is_open: bool | None = None


class PositionModel(BaseModel):
    x: float
    y: float


class EntityModel(BaseModel):
    """One canvas image as seen by the client."""

    id: str
    src: str
    prompt: str
    position: PositionModel
    parent_id: str | None = None
    is_loading: bool = False
    is_placeholder: bool = False
    is_saving: bool = False

    @classmethod
    def from_entity(cls, entity: ImageEntity, saving: bool = False) -> EntityModel:
        return cls(
            id=entity.id,
            src=entity.src,
            prompt=entity.prompt,
            position=PositionModel(x=entity.position.x, y=entity.position.y),
            parent_id=entity.parent_id,
            is_loading=entity.is_loading,
            is_placeholder=entity.is_placeholder,
            is_saving=saving,
        )


class SavedImageModel(BaseModel):
    id: str
    prompt: str
    url: str

    @classmethod
    def from_saved(cls, saved: SavedImage) -> SavedImageModel:
        return cls(id=saved.id, prompt=saved.prompt, url=saved.url)


class CanvasSnapshot(BaseModel):
    """Full canvas state.

    Attributes:
        entities: Images in display order.
        selected_id: Selected image, if any.
        prompt: Live prompt input text.
        error: Most recent user-visible error.
        is_regenerating: A regeneration is in flight; selection is locked.
        container_width, container_height: Canvas bounds.
        catalog: Saved-image catalog.
        catalog_loading: A catalog refresh is in flight.
        catalog_open: The saved-image dropdown is open.
    """

    entities: list[EntityModel]
    selected_id: str | None
    prompt: str
    error: str | None
    is_regenerating: bool
    container_width: float
    container_height: float
    catalog: list[SavedImageModel]
    catalog_loading: bool
    catalog_open: bool

    @classmethod
    def from_state(cls, state: CanvasState) -> CanvasSnapshot:
        return cls(
            entities=[EntityModel.from_entity(e, e.id in state.saving) for e in state.entities],
            selected_id=state.selected_id,
            prompt=state.prompt,
            error=state.error,
            is_regenerating=state.is_regenerating,
            container_width=state.container_width,
            container_height=state.container_height,
            catalog=[SavedImageModel.from_saved(s) for s in state.catalog],
            catalog_loading=state.catalog_loading,
            catalog_open=state.catalog_open,
        )


class ConfigResponse(BaseModel):
    """Canvas geometry and backend information for the frontend."""

    version: str
    image_backend: str
    image_size: int
    duplication_offset: int
    grid_gap: int
    header_height: int
    variation_count: int
    debounce_delay_ms: int
