"""Canvas state orchestrator.

:class:`CanvasOrchestrator` turns user intent into canvas state.  It owns the
:class:`CanvasStore` (the only writer of canvas state), the prompt debouncer,
and the background tasks started for regenerations, and it talks to three
capabilities: generation, persistence and id minting.

Operations
----------
========================  ==================================================
``mount``                 Insert and select the initial placeholder
``select_entity``         Select an image and load its prompt into the input
``deselect``              Clear selection and the prompt
``update_prompt``         Live edit; regeneration waits for the debounce
``regenerate``            Replace an image's content with a new generation
``generate_variations``   Spawn placeholder slots and fill them in parallel
``duplicate``             Copy an image next to itself
``delete``                Remove an image
``update_position``       Store a drag result
``arrange_grid``          Reflow every image onto a grid
``save``                  Persist an image, then refresh the catalog
``load_saved_catalog``    Replace the saved-image catalog
``place_saved_image``     Put a catalog entry at the canvas centre
========================  ==================================================

Concurrency
-----------
Everything runs on one asyncio event loop.  Every capability call is a
suspension point; state is only changed by synchronous dispatches before and
after those calls, and every dispatch reduces against the latest state.

Regenerations are serialised by a single latch on the store
(:class:`RegenerationState`): the latch is taken synchronously when a
regeneration is started, so a second debounce settle arriving before the first
request resolves is ignored, and it is released on every exit path.

No operation raises.  Not-found targets, upstream failures and unexpected
exceptions are all turned into ``state.error`` and loading flags are cleared.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from promptcanvas.canvas import layout
from promptcanvas.canvas.models import (
    INITIAL_PLACEHOLDER_ID,
    GeneratedImage,
    ImageEntity,
    Position,
    SavedImage,
)
from promptcanvas.canvas.store import (
    Arrange,
    CanvasState,
    CanvasStore,
    CatalogLoaded,
    CatalogLoading,
    Deselect,
    InsertEntities,
    Mount,
    PlaceSaved,
    ReconcileVariations,
    RegenerationFailed,
    RegenerationFinished,
    RegenerationStarted,
    RegenerationSucceeded,
    RemoveEntities,
    Resize,
    SaveFinished,
    SaveStarted,
    Select,
    SetError,
    SetPrompt,
    ToggleCatalog,
    UpdatePosition,
)
from promptcanvas.core.config import CanvasConfig
from promptcanvas.core.config import config as default_config
from promptcanvas.core.debounce import Debouncer
from promptcanvas.services.ids import new_id

logger = logging.getLogger(__name__)

REGENERATION_ERROR = "An error occurred when generating images."
VARIATIONS_ERROR = "Generation of variants failed"
VARIATIONS_UNEXPECTED_ERROR = "An error occurred when generating variations."
PARENT_NOT_FOUND = "Could not find the parent image."
DUPLICATE_NOT_FOUND = "Could not find the image to duplicate."
DUPLICATE_ID_ERROR = "Failed to get image to duplicate."
ARRANGE_ERROR = "Failed to arrange images"
SAVE_NOT_FOUND = "Could not find the image to save."
SAVE_NO_CONTENT = "Nothing to save yet."
SAVE_ERROR = "Failed to save image"
CATALOG_ERROR = "Failed to fetch saved images"


class GenerationCapability(Protocol):
    async def generate_image(self, prompt: str, size: int) -> GeneratedImage: ...

    async def generate_variations(
        self, original_prompt: str, parent_id: str, size: int
    ) -> list[GeneratedImage]: ...

    async def aclose(self) -> None: ...


class SaveOutcome(Protocol):
    error: str | None


class PersistenceCapability(Protocol):
    async def save_image(
        self, image_id: str, src: str, prompt: str | None = None
    ) -> SaveOutcome: ...

    async def list_saved_images(self) -> list[SavedImage]: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True)
class VariationBatch:
    """Correlation table for one variations request.

    Placeholder ids are minted when the placeholders are inserted and keyed by
    slot, so each result finds its placeholder through ``result.slot``
    instead of relying on list order.
    """

    parent_id: str
    parent_prompt: str
    slots: dict[int, str]

    @property
    def placeholder_ids(self) -> frozenset[str]:
        return frozenset(self.slots.values())

    def correlate(
        self, results: Sequence[GeneratedImage]
    ) -> tuple[tuple[str, GeneratedImage | None], ...]:
        """Pair every placeholder with its result (``None`` if none arrived)."""
        matched: dict[int, GeneratedImage] = {}
        for index, result in enumerate(results):
            slot = result.slot if result.slot is not None else index
            if slot in self.slots and slot not in matched:
                matched[slot] = result
        return tuple((self.slots[slot], matched.get(slot)) for slot in sorted(self.slots))


class CanvasOrchestrator:
    """Owner of canvas state and sequencer of every canvas operation.

    Args:
        generation: Generation capability.
        persistence: Storage capability.
        id_factory: Async callable returning a fresh unique id.
        config: Canvas configuration (geometry, debounce delay).
    """

    def __init__(
        self,
        generation: GenerationCapability,
        persistence: PersistenceCapability,
        id_factory: Callable[[], Awaitable[str]] = new_id,
        config: CanvasConfig | None = None,
    ) -> None:
        self._config = config or default_config
        self._generation = generation
        self._persistence = persistence
        self._new_id = id_factory

        self.store = CanvasStore(
            CanvasState(
                container_width=self._config.container_width,
                container_height=self._config.container_height,
            )
        )
        self._debouncer: Debouncer[str] = Debouncer(
            "", self._config.debounce_delay, on_settle=self._on_prompt_settled
        )
        self._tasks: set[asyncio.Task] = set()
        self._batches = itertools.count()

    # -- State access -------------------------------------------------------

    @property
    def state(self) -> CanvasState:
        return self.store.state

    @property
    def debounced_prompt(self) -> str:
        return self._debouncer.value

    @property
    def item_size(self) -> int:
        return self._config.image_size

    # -- Lifecycle ----------------------------------------------------------

    def mount(self) -> None:
        """Put the initial placeholder on an empty canvas and select it.

        A canvas that already holds images is only marked as mounted.
        """
        was_empty = not self.state.entities
        placeholder = ImageEntity(
            id=INITIAL_PLACEHOLDER_ID,
            position=self._center(),
            is_placeholder=True,
        )
        self.store.dispatch(Mount(placeholder))
        if was_empty:
            self._debouncer.reset("")
            logger.info("Canvas mounted with initial placeholder.")

    def resize(self, width: float, height: float) -> None:
        """Update the container bounds used for placement."""
        self.store.dispatch(Resize(width=width, height=height))

    async def drain(self) -> None:
        """Wait for every background task started by the orchestrator."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel the pending debounce, wait for in-flight work and close the capabilities."""
        self._debouncer.cancel()
        await self.drain()
        await self._generation.aclose()
        await self._persistence.aclose()

    # -- Selection & prompt binding ----------------------------------------

    def select_entity(self, entity_id: str) -> bool:
        """Select *entity_id* and load its prompt into the input.

        Ignored while any regeneration is in flight, and for unknown ids.

        Returns:
            Whether the selection changed.
        """
        if self.state.is_regenerating:
            logger.debug("Selection of %s ignored: regeneration in flight.", entity_id)
            return False

        entity = self.state.find(entity_id)
        if entity is None:
            return False

        self.store.dispatch(Select(entity_id))
        self._debouncer.reset(entity.prompt)
        return True

    def deselect(self) -> None:
        """Clear selection and the prompt input."""
        self.store.dispatch(Deselect())
        self._debouncer.reset("")

    def update_prompt(self, text: str) -> None:
        """Set the live prompt; the debounce decides when to regenerate."""
        self.store.dispatch(SetPrompt(text))
        self._debouncer.update(text)

    async def settle_prompt(self) -> None:
        """Settle a pending prompt edit now and wait for the regeneration it starts."""
        self._debouncer.flush()
        await self.drain()

    def should_regenerate(self, prompt: str) -> bool:
        """Whether a settled *prompt* should regenerate the selected image."""
        state = self.state
        if state.selected_id is None or not prompt.strip() or state.is_regenerating:
            return False
        selected = state.selected
        return selected is not None and selected.prompt != prompt

    def _on_prompt_settled(self, prompt: str) -> None:
        if self.should_regenerate(prompt):
            self.regenerate(self.state.selected_id, prompt)

    # -- Regeneration -------------------------------------------------------

    def regenerate(self, entity_id: str, prompt: str) -> asyncio.Task | None:
        """Start regenerating *entity_id* with *prompt*.

        The latch is taken before this returns.

        Returns:
            The task completing the regeneration, or ``None`` if another
            regeneration is already in flight.
        """
        if self.state.is_regenerating:
            logger.debug("Regeneration of %s skipped: another is in flight.", entity_id)
            return None

        self.store.dispatch(RegenerationStarted(entity_id))
        return self._spawn(self._complete_regeneration(entity_id, prompt))

    async def _complete_regeneration(self, entity_id: str, prompt: str) -> None:
        succeeded = was_selected = False
        try:
            result = await self._generation.generate_image(prompt, self.item_size)
            if result.id and result.image_url:
                was_selected = self.state.selected_id == entity_id
                self.store.dispatch(RegenerationSucceeded(entity_id, result, prompt))
                regenerated = self.state.find(result.id)
                if regenerated is not None and not was_selected:
                    # Selection moved (e.g. to a duplicate); rebind the input.
                    self.store.dispatch(Select(regenerated.id))
                    self._debouncer.reset(regenerated.prompt)
                logger.info("Regenerated %s as %s.", entity_id, result.id)
                succeeded = True
            else:
                logger.error("Regeneration of %s failed: %s", entity_id, result.error)
                self.store.dispatch(RegenerationFailed(entity_id, REGENERATION_ERROR))
        except Exception as exc:
            logger.exception("Regeneration of %s raised.", entity_id)
            self.store.dispatch(RegenerationFailed(entity_id, str(exc) or REGENERATION_ERROR))
        finally:
            self.store.dispatch(RegenerationFinished())

        # A prompt that settled while this request was in flight is picked up now.
        if succeeded and was_selected and self.debounced_prompt != prompt:
            self._on_prompt_settled(self.debounced_prompt)

    # -- Variations ---------------------------------------------------------

    async def generate_variations(
        self, parent_id: str, parent_prompt: str | None = None
    ) -> list[GeneratedImage]:
        """Fill four placeholder slots around *parent_id* with variations.

        Placeholders are inserted before the generation request is made.
        Failed slots disappear; only a total failure sets an error.

        Args:
            parent_id: Image the variations derive from.
            parent_prompt: Prompt to diversify; defaults to the parent's prompt.

        Returns:
            The raw results, or an empty list if nothing was requested.
        """
        self.store.dispatch(SetError(None))

        parent = self.state.find(parent_id)
        if parent is None:
            self.store.dispatch(SetError(PARENT_NOT_FOUND))
            return []

        if parent_prompt is None:
            parent_prompt = parent.prompt

        batch = self._insert_variation_placeholders(parent, parent_prompt)

        try:
            results = await self._generation.generate_variations(
                parent_prompt, parent_id, self.item_size
            )
            self.store.dispatch(ReconcileVariations(batch.correlate(results), parent_prompt))

            succeeded = sum(1 for result in results if result.succeeded)
            if succeeded == 0 and any(result.error for result in results):
                self.store.dispatch(SetError(VARIATIONS_ERROR))
                self.store.dispatch(RemoveEntities(batch.placeholder_ids))
            logger.info(
                "Variations of %s: %d of %d succeeded.", parent_id, succeeded, len(batch.slots)
            )
            return list(results)

        except Exception:
            logger.exception("Variations of %s raised.", parent_id)
            self.store.dispatch(RemoveEntities(batch.placeholder_ids))
            self.store.dispatch(SetError(VARIATIONS_UNEXPECTED_ERROR))
            return []

        finally:
            self._ensure_placeholder()

    def _insert_variation_placeholders(
        self, parent: ImageEntity, parent_prompt: str
    ) -> VariationBatch:
        state = self.state
        positions = layout.variation_positions(
            parent.position,
            state.container_width,
            state.container_height,
            self.item_size,
            self._config.grid_gap,
        )[: self._config.variation_count]

        batch_number = next(self._batches)
        slots = {
            slot: f"{parent.id}-placeholder-{batch_number}-{slot}"
            for slot in range(len(positions))
        }
        placeholders = tuple(
            ImageEntity(
                id=slots[slot],
                prompt=f"Loading variation for: {parent_prompt}",
                position=position,
                parent_id=parent.id,
                is_loading=True,
                is_placeholder=True,
            )
            for slot, position in enumerate(positions)
        )
        self.store.dispatch(InsertEntities(placeholders))
        return VariationBatch(parent_id=parent.id, parent_prompt=parent_prompt, slots=slots)

    # -- Duplication, deletion, movement -----------------------------------

    async def duplicate(self, source_id: str) -> ImageEntity | None:
        """Copy *source_id* to its right and select the copy.

        Returns:
            The new entity, or ``None`` on failure.
        """
        self.store.dispatch(SetError(None))

        source = self.state.find(source_id)
        if source is None:
            self.store.dispatch(SetError(DUPLICATE_NOT_FOUND))
            return None

        state = self.state
        position = layout.duplicate_position(
            source.position,
            state.container_width,
            state.container_height,
            self.item_size,
            self._config.duplication_offset,
        )

        try:
            new_entity_id = await self._new_id()
        except Exception:
            logger.exception("Id generation failed while duplicating %s.", source_id)
            new_entity_id = ""
        if not new_entity_id or self.state.find(new_entity_id) is not None:
            self.store.dispatch(SetError(DUPLICATE_ID_ERROR))
            return None

        duplicate = ImageEntity(
            id=new_entity_id,
            src=source.src,
            prompt=source.prompt,
            position=position,
            parent_id=source_id,
        )
        self.store.dispatch(InsertEntities((duplicate,)))
        self.store.dispatch(Select(duplicate.id))
        self._debouncer.reset(duplicate.prompt)
        return duplicate

    def delete(self, entity_id: str) -> None:
        """Remove *entity_id*; clears selection only if it was selected."""
        self.store.dispatch(RemoveEntities(frozenset({entity_id})))
        self._ensure_placeholder()

    def update_position(self, entity_id: str, position: Position) -> None:
        """Store a drag result as-is."""
        self.store.dispatch(UpdatePosition(entity_id, position))

    def arrange_grid(self) -> bool:
        """Reflow every image onto a centred grid and deselect.

        Returns:
            ``False`` if there was nothing to arrange.
        """
        if not self.state.entities:
            self.store.dispatch(SetError(ARRANGE_ERROR))
            return False

        self.store.dispatch(SetError(None))
        self.store.dispatch(
            Arrange(
                item_size=self.item_size,
                gap=self._config.grid_gap,
                header_height=self._config.header_height,
            )
        )
        return True

    # -- Saving & the saved catalog ----------------------------------------

    async def save(self, entity_id: str, src: str | None = None) -> bool:
        """Persist *entity_id* and refresh the catalog, whatever the outcome.

        Args:
            entity_id: Image to save.
            src: URL to save from; defaults to the entity's ``src``.

        Returns:
            Whether the image was saved.
        """
        entity = self.state.find(entity_id)
        if src is None:
            src = entity.src if entity else ""
        prompt = entity.prompt if entity else None
        if not src:
            self.store.dispatch(SetError(SAVE_NO_CONTENT if entity else SAVE_NOT_FOUND))
            return False

        self.store.dispatch(SaveStarted(entity_id))
        saved = False
        try:
            result = await self._persistence.save_image(entity_id, src, prompt=prompt)
            if result.error:
                logger.error("Saving %s failed: %s", entity_id, result.error)
                self.store.dispatch(SetError(SAVE_ERROR))
            else:
                saved = True
        except Exception:
            logger.exception("Saving %s raised.", entity_id)
            self.store.dispatch(SetError(SAVE_ERROR))
        finally:
            self.store.dispatch(SaveFinished(entity_id))

        await self.load_saved_catalog()
        return saved

    async def load_saved_catalog(self) -> tuple[SavedImage, ...]:
        """Replace the catalog with the full saved list."""
        self.store.dispatch(CatalogLoading(True))
        try:
            images = await self._persistence.list_saved_images()
            self.store.dispatch(CatalogLoaded(tuple(images)))
        except Exception:
            logger.exception("Fetching saved images raised.")
            self.store.dispatch(SetError(CATALOG_ERROR))
        finally:
            self.store.dispatch(CatalogLoading(False))
        return self.state.catalog

    def toggle_catalog(self, is_open: bool | None = None) -> None:
        self.store.dispatch(ToggleCatalog(is_open))

    def place_saved_image(self, saved: SavedImage) -> ImageEntity:
        """Place a catalog entry at the canvas centre under its saved id and select it."""
        entity = ImageEntity(
            id=saved.id,
            src=saved.url,
            prompt=saved.prompt,
            position=self._center(),
        )
        self.store.dispatch(PlaceSaved(entity))
        self._debouncer.reset(entity.prompt)
        return entity

    # -- Helpers ------------------------------------------------------------

    def _center(self) -> Position:
        state = self.state
        return layout.center_position(
            state.container_width, state.container_height, self.item_size
        )

    def _ensure_placeholder(self) -> None:
        # A mounted canvas is never left empty.
        if self.state.mounted and not self.state.entities:
            self.mount()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
