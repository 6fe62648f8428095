"""Single-writer state container for the canvas.

The canvas state is an immutable :class:`CanvasState` snapshot.  It only ever
changes through :meth:`CanvasStore.dispatch`, which applies an action to the
*latest* snapshot and swaps the result in.  Async flows (regeneration,
variations, saves) dispatch actions when their results arrive instead of
writing back a copy captured before they suspended, so a drag finishing while
variations reconcile cannot lose either update.

Actions are small frozen dataclasses, one per state transition.  Each has a
reducer registered with :func:`_reducer`; reducers are pure functions
``(state, action) -> state``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace

from promptcanvas.canvas.layout import arrange_grid
from promptcanvas.canvas.models import (
    GeneratedImage,
    ImageEntity,
    Position,
    RegenerationState,
    SavedImage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanvasState:
    """Immutable snapshot of everything the canvas renders.

    Attributes:
        entities: Images on the canvas, in insertion (display) order.
        selected_id: Id of the selected entity, or ``None``.
        prompt: Live text of the prompt input.
        error: Most recent user-visible error, or ``None``.
        regeneration: The global regeneration latch.
        container_width, container_height: Current canvas bounds.
        mounted: The initial placeholder has been set up.
        saving: Ids of entities with a save in flight.
        catalog: Saved-image catalog, replaced wholesale on every refresh.
        catalog_loading: A catalog refresh is in flight.
        catalog_open: The saved-image dropdown is open.
    """

    entities: tuple[ImageEntity, ...] = ()
    selected_id: str | None = None
    prompt: str = ""
    error: str | None = None
    regeneration: RegenerationState = RegenerationState.IDLE
    container_width: float = 1280.0
    container_height: float = 800.0
    mounted: bool = False
    saving: frozenset[str] = field(default_factory=frozenset)
    catalog: tuple[SavedImage, ...] = ()
    catalog_loading: bool = False
    catalog_open: bool = False

    def find(self, entity_id: str | None) -> ImageEntity | None:
        """Return the entity with *entity_id*, or ``None``."""
        if entity_id is None:
            return None
        return next((e for e in self.entities if e.id == entity_id), None)

    @property
    def selected(self) -> ImageEntity | None:
        """The selected entity, if any."""
        return self.find(self.selected_id)

    @property
    def is_regenerating(self) -> bool:
        return self.regeneration is RegenerationState.PENDING


# ---------------------------------------------------------------------------
# Actions.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Mount:
    """Insert *placeholder* and select it if the canvas is empty."""

    placeholder: ImageEntity


@dataclass(frozen=True)
class Resize:
    width: float
    height: float


@dataclass(frozen=True)
class SetPrompt:
    text: str


@dataclass(frozen=True)
class Select:
    """Select an entity and load its prompt into the input."""

    entity_id: str


@dataclass(frozen=True)
class Deselect:
    """Clear selection and the prompt input."""


@dataclass(frozen=True)
class SetError:
    message: str | None


@dataclass(frozen=True)
class RegenerationStarted:
    entity_id: str


@dataclass(frozen=True)
class RegenerationSucceeded:
    entity_id: str
    result: GeneratedImage
    prompt: str


@dataclass(frozen=True)
class RegenerationFailed:
    entity_id: str
    message: str


@dataclass(frozen=True)
class RegenerationFinished:
    """Release the regeneration latch."""


@dataclass(frozen=True)
class InsertEntities:
    entities: tuple[ImageEntity, ...]


@dataclass(frozen=True)
class ReconcileVariations:
    """Merge variation results into their placeholders.

    ``outcomes`` pairs each placeholder id with its correlated result, or with
    ``None`` when no result arrived for that slot.
    """

    outcomes: tuple[tuple[str, GeneratedImage | None], ...]
    parent_prompt: str


@dataclass(frozen=True)
class RemoveEntities:
    entity_ids: frozenset[str]


@dataclass(frozen=True)
class UpdatePosition:
    entity_id: str
    position: Position


@dataclass(frozen=True)
class Arrange:
    item_size: float
    gap: float
    header_height: float


@dataclass(frozen=True)
class PlaceSaved:
    """Put a catalog entry on the canvas, replacing any entity with its id."""

    entity: ImageEntity


@dataclass(frozen=True)
class SaveStarted:
    entity_id: str


@dataclass(frozen=True)
class SaveFinished:
    entity_id: str


@dataclass(frozen=True)
class CatalogLoading:
    loading: bool


@dataclass(frozen=True)
class CatalogLoaded:
    images: tuple[SavedImage, ...]


@dataclass(frozen=True)
class ToggleCatalog:
    is_open: bool | None = None


# ---------------------------------------------------------------------------
# Reducers.
# ---------------------------------------------------------------------------

Reducer = Callable[[CanvasState, object], CanvasState]
_REDUCERS: dict[type, Reducer] = {}


def _reducer(action_type: type) -> Callable[[Reducer], Reducer]:
    def register(func: Reducer) -> Reducer:
        _REDUCERS[action_type] = func
        return func

    return register


def _map_entity(
    entities: Sequence[ImageEntity], entity_id: str, **changes
) -> tuple[ImageEntity, ...]:
    return tuple(replace(e, **changes) if e.id == entity_id else e for e in entities)


def _drop_selection_if_missing(state: CanvasState) -> CanvasState:
    if state.selected_id is not None and state.find(state.selected_id) is None:
        return replace(state, selected_id=None)
    return state


@_reducer(Mount)
def _mount(state: CanvasState, action: Mount) -> CanvasState:
    if state.entities:
        return replace(state, mounted=True)
    return replace(
        state,
        entities=(action.placeholder,),
        selected_id=action.placeholder.id,
        prompt="",
        mounted=True,
    )


@_reducer(Resize)
def _resize(state: CanvasState, action: Resize) -> CanvasState:
    return replace(state, container_width=action.width, container_height=action.height)


@_reducer(SetPrompt)
def _set_prompt(state: CanvasState, action: SetPrompt) -> CanvasState:
    return replace(state, prompt=action.text)


@_reducer(Select)
def _select(state: CanvasState, action: Select) -> CanvasState:
    entity = state.find(action.entity_id)
    if entity is None:
        return state
    return replace(state, selected_id=entity.id, prompt=entity.prompt)


@_reducer(Deselect)
def _deselect(state: CanvasState, action: Deselect) -> CanvasState:
    return replace(state, selected_id=None, prompt="")


@_reducer(SetError)
def _set_error(state: CanvasState, action: SetError) -> CanvasState:
    return replace(state, error=action.message)


@_reducer(RegenerationStarted)
def _regeneration_started(state: CanvasState, action: RegenerationStarted) -> CanvasState:
    return replace(
        state,
        entities=_map_entity(state.entities, action.entity_id, is_loading=True),
        regeneration=RegenerationState.PENDING,
        error=None,
    )


@_reducer(RegenerationSucceeded)
def _regeneration_succeeded(state: CanvasState, action: RegenerationSucceeded) -> CanvasState:
    target = state.find(action.entity_id)
    if target is None:
        # Deleted while the request was in flight.
        return state

    result = action.result
    regenerated = replace(
        target,
        id=result.id,
        src=result.image_url or "",
        prompt=result.prompt_used or action.prompt,
        is_loading=False,
        is_placeholder=False,
    )
    entities = tuple(regenerated if e is target else e for e in state.entities)

    # The selection follows the slot even though its id changed.
    return replace(state, entities=entities, selected_id=regenerated.id)


@_reducer(RegenerationFailed)
def _regeneration_failed(state: CanvasState, action: RegenerationFailed) -> CanvasState:
    return replace(
        state,
        entities=_map_entity(state.entities, action.entity_id, is_loading=False),
        error=action.message,
    )


@_reducer(RegenerationFinished)
def _regeneration_finished(state: CanvasState, action: RegenerationFinished) -> CanvasState:
    return replace(state, regeneration=RegenerationState.IDLE)


@_reducer(InsertEntities)
def _insert_entities(state: CanvasState, action: InsertEntities) -> CanvasState:
    existing = {e.id for e in state.entities}
    added = []
    for entity in action.entities:
        if entity.id in existing:
            logger.warning("Refusing to insert duplicate entity id '%s'.", entity.id)
            continue
        existing.add(entity.id)
        added.append(entity)
    return replace(state, entities=state.entities + tuple(added))


@_reducer(ReconcileVariations)
def _reconcile_variations(state: CanvasState, action: ReconcileVariations) -> CanvasState:
    entities = list(state.entities)
    selected_id = state.selected_id

    for placeholder_id, result in action.outcomes:
        index = next((i for i, e in enumerate(entities) if e.id == placeholder_id), None)
        if index is None:
            continue

        if result is None or not result.succeeded:
            del entities[index]
            continue

        if any(e.id == result.id for e in entities):
            logger.warning("Variation id '%s' already on canvas; dropping slot.", result.id)
            del entities[index]
            continue

        entities[index] = replace(
            entities[index],
            id=result.id,
            src=result.image_url or "",
            prompt=result.prompt_used or f"Variant of: {action.parent_prompt}",
            is_loading=False,
            is_placeholder=False,
        )
        if selected_id == placeholder_id:
            selected_id = result.id

    return _drop_selection_if_missing(
        replace(state, entities=tuple(entities), selected_id=selected_id)
    )


@_reducer(RemoveEntities)
def _remove_entities(state: CanvasState, action: RemoveEntities) -> CanvasState:
    entities = tuple(e for e in state.entities if e.id not in action.entity_ids)
    return _drop_selection_if_missing(replace(state, entities=entities))


@_reducer(UpdatePosition)
def _update_position(state: CanvasState, action: UpdatePosition) -> CanvasState:
    return replace(
        state, entities=_map_entity(state.entities, action.entity_id, position=action.position)
    )


@_reducer(Arrange)
def _arrange(state: CanvasState, action: Arrange) -> CanvasState:
    layout = arrange_grid(
        state.entities,
        state.container_width,
        action.item_size,
        action.gap,
        action.header_height,
    )
    return replace(
        state,
        entities=layout.entities,
        selected_id=None,
        container_height=max(state.container_height, layout.required_height),
    )


@_reducer(PlaceSaved)
def _place_saved(state: CanvasState, action: PlaceSaved) -> CanvasState:
    entity = action.entity
    others = tuple(e for e in state.entities if e.id != entity.id)
    return replace(
        state,
        entities=others + (entity,),
        selected_id=entity.id,
        prompt=entity.prompt,
        catalog_open=False,
    )


@_reducer(SaveStarted)
def _save_started(state: CanvasState, action: SaveStarted) -> CanvasState:
    return replace(state, saving=state.saving | {action.entity_id})


@_reducer(SaveFinished)
def _save_finished(state: CanvasState, action: SaveFinished) -> CanvasState:
    return replace(state, saving=state.saving - {action.entity_id})


@_reducer(CatalogLoading)
def _catalog_loading(state: CanvasState, action: CatalogLoading) -> CanvasState:
    return replace(state, catalog_loading=action.loading)


@_reducer(CatalogLoaded)
def _catalog_loaded(state: CanvasState, action: CatalogLoaded) -> CanvasState:
    return replace(state, catalog=action.images)


@_reducer(ToggleCatalog)
def _toggle_catalog(state: CanvasState, action: ToggleCatalog) -> CanvasState:
    is_open = not state.catalog_open if action.is_open is None else action.is_open
    return replace(state, catalog_open=is_open)


def reduce(state: CanvasState, action: object) -> CanvasState:
    """Apply *action* to *state* and return the new snapshot.

    Raises:
        TypeError: If no reducer is registered for the action's type.
    """
    try:
        reducer = _REDUCERS[type(action)]
    except KeyError:
        raise TypeError(f"Unknown canvas action: {type(action).__name__}") from None
    return reducer(state, action)


class CanvasStore:
    """Owner of the current :class:`CanvasState`.

    The store is the only writer of canvas state.  Everything runs on a single
    event loop, so a dispatch is atomic relative to every other flow: no
    coroutine can observe or replace the state halfway through a reducer.
    """

    def __init__(self, initial: CanvasState | None = None) -> None:
        self._state = initial or CanvasState()
        self._listeners: list[Callable[[CanvasState], None]] = []

    @property
    def state(self) -> CanvasState:
        return self._state

    def dispatch(self, action: object) -> CanvasState:
        """Reduce *action* against the latest state and notify listeners."""
        self._state = reduce(self._state, action)
        logger.debug("Dispatched %s", type(action).__name__)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def subscribe(self, listener: Callable[[CanvasState], None]) -> Callable[[], None]:
        """Register *listener* for every new state; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
