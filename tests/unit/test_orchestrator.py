"""Tests for promptcanvas.canvas.orchestrator — canvas operations end to end.

The generation and storage capabilities are ``AsyncMock`` fakes from
``conftest.py``; ids come from a counter (``id-1``, ``id-2``, ...).  Async
flows are driven with ``asyncio.run`` inside synchronous tests.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from promptcanvas.canvas import orchestrator as orch
from promptcanvas.canvas.models import (
    INITIAL_PLACEHOLDER_ID,
    GeneratedImage,
    ImageEntity,
    Position,
    RegenerationState,
    SavedImage,
)
from promptcanvas.canvas.orchestrator import CanvasOrchestrator
from promptcanvas.canvas.store import InsertEntities
from promptcanvas.storage.persistence import SaveResult

SETTLE = 0.05


def _seed(orchestrator: CanvasOrchestrator, *entities: ImageEntity) -> None:
    orchestrator.store.dispatch(InsertEntities(tuple(entities)))


def _echo_generation(prompt: str, size: int) -> GeneratedImage:
    return GeneratedImage(
        id=f"gen-{prompt}", image_url=f"https://img.test/{prompt}.png", prompt_used=prompt
    )


KITE = ImageEntity(
    id="kite", src="https://img.test/kite.png", prompt="a red kite", position=Position(100, 100)
)
BOAT = ImageEntity(
    id="boat", src="https://img.test/boat.png", prompt="a paper boat", position=Position(600, 100)
)
PARENT = ImageEntity(
    id="parent", src="https://img.test/p.png", prompt="a fox", position=Position(400, 300)
)


# ---------------------------------------------------------------------------
# Mounting and selection.
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestMount:
    def test_initial_mount_creates_selected_placeholder(self, orchestrator):
        orchestrator.mount()
        state = orchestrator.state

        assert len(state.entities) == 1
        placeholder = state.entities[0]
        assert placeholder.id == INITIAL_PLACEHOLDER_ID
        assert placeholder.is_placeholder is True
        assert placeholder.position == Position(565, 325)
        assert state.selected_id == INITIAL_PLACEHOLDER_ID
        assert state.prompt == ""

    def test_mount_on_populated_canvas_adds_nothing(self, orchestrator):
        _seed(orchestrator, KITE)
        orchestrator.mount()
        assert [e.id for e in orchestrator.state.entities] == ["kite"]

    def test_placeholder_centred_in_resized_container(self, orchestrator):
        orchestrator.resize(400, 300)
        orchestrator.mount()
        assert orchestrator.state.entities[0].position == Position(125, 75)


@pytest.mark.unit
class TestSelection:
    def test_select_round_trip(self, orchestrator):
        _seed(orchestrator, KITE, BOAT)

        assert orchestrator.select_entity("boat") is True
        assert orchestrator.state.selected_id == "boat"
        assert orchestrator.state.prompt == BOAT.prompt
        assert orchestrator.debounced_prompt == BOAT.prompt

        orchestrator.select_entity("kite")
        assert orchestrator.state.prompt == KITE.prompt

    def test_select_unknown_is_ignored(self, orchestrator):
        _seed(orchestrator, KITE)
        orchestrator.select_entity("kite")
        assert orchestrator.select_entity("nope") is False
        assert orchestrator.state.selected_id == "kite"

    def test_select_does_not_regenerate(self, orchestrator, fake_generation):
        _seed(orchestrator, KITE, BOAT)

        async def scenario():
            orchestrator.select_entity("kite")
            await asyncio.sleep(SETTLE)
            orchestrator.select_entity("boat")
            await asyncio.sleep(SETTLE)

        asyncio.run(scenario())
        fake_generation.generate_image.assert_not_awaited()

    def test_deselect_clears_prompt(self, orchestrator):
        _seed(orchestrator, KITE)
        orchestrator.select_entity("kite")
        orchestrator.deselect()
        assert orchestrator.state.selected_id is None
        assert orchestrator.state.prompt == ""
        assert orchestrator.debounced_prompt == ""

    def test_select_blocked_while_regenerating(self, orchestrator, fake_generation):
        _seed(orchestrator, KITE, BOAT)
        release = asyncio.Event()

        async def slow_generate(prompt, size):
            await release.wait()
            return _echo_generation(prompt, size)

        fake_generation.generate_image.side_effect = slow_generate

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.regenerate("kite", "a blue kite")
            await asyncio.sleep(0)
            blocked = orchestrator.select_entity("boat")
            release.set()
            await orchestrator.drain()
            return blocked

        assert asyncio.run(scenario()) is False
        assert orchestrator.state.selected_id == "gen-a blue kite"


# ---------------------------------------------------------------------------
# Regeneration.
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestRegeneration:
    def test_settled_prompt_regenerates_selected(self, orchestrator, fake_generation):
        fake_generation.generate_image.side_effect = _echo_generation
        _seed(orchestrator, KITE, BOAT)

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.update_prompt("a green kite")
            assert orchestrator.state.prompt == "a green kite"
            await asyncio.sleep(SETTLE)
            await orchestrator.drain()

        asyncio.run(scenario())

        fake_generation.generate_image.assert_awaited_once_with("a green kite", 150)
        state = orchestrator.state
        assert [e.id for e in state.entities] == ["gen-a green kite", "boat"]
        regenerated = state.find("gen-a green kite")
        assert regenerated.src == "https://img.test/a green kite.png"
        assert regenerated.position == KITE.position
        assert regenerated.is_loading is False
        assert state.selected_id == "gen-a green kite"
        assert state.regeneration is RegenerationState.IDLE

    def test_settle_prompt_skips_debounce_wait(self, orchestrator, fake_generation):
        fake_generation.generate_image.side_effect = _echo_generation
        _seed(orchestrator, KITE)

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.update_prompt("a kite at night")
            await orchestrator.settle_prompt()

        asyncio.run(scenario())
        assert orchestrator.state.selected_id == "gen-a kite at night"

    def test_prompt_settled_in_flight_regenerates_after_first(self, orchestrator, fake_generation):
        _seed(orchestrator, KITE)
        release = asyncio.Event()
        observed = []

        async def slow_generate(prompt, size):
            await release.wait()
            return _echo_generation(prompt, size)

        fake_generation.generate_image.side_effect = slow_generate

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.update_prompt("first")
            await asyncio.sleep(SETTLE)
            observed.append(orchestrator.state.regeneration)

            orchestrator.update_prompt("second")
            await asyncio.sleep(SETTLE)
            observed.append(fake_generation.generate_image.await_count)

            release.set()
            await orchestrator.drain()

        asyncio.run(scenario())

        assert observed == [RegenerationState.PENDING, 1]
        prompts = [call.args[0] for call in fake_generation.generate_image.await_args_list]
        assert prompts == ["first", "second"]
        state = orchestrator.state
        assert state.selected_id == "gen-second"
        assert state.selected.prompt == state.prompt == "second"
        assert state.regeneration is RegenerationState.IDLE

    def test_failed_regeneration_does_not_retry_pending_prompt(
        self, orchestrator, fake_generation
    ):
        _seed(orchestrator, KITE)
        release = asyncio.Event()

        async def failing_generate(prompt, size):
            await release.wait()
            return GeneratedImage(error="quota")

        fake_generation.generate_image.side_effect = failing_generate

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.update_prompt("first")
            await asyncio.sleep(SETTLE)
            orchestrator.update_prompt("second")
            await asyncio.sleep(SETTLE)
            release.set()
            await orchestrator.drain()

        asyncio.run(scenario())

        fake_generation.generate_image.assert_awaited_once_with("first", 150)
        assert orchestrator.state.error == orch.REGENERATION_ERROR

    def test_regenerate_returns_none_when_latched(self, orchestrator, fake_generation):
        _seed(orchestrator, KITE)

        async def scenario():
            first = orchestrator.regenerate("kite", "one")
            second = orchestrator.regenerate("kite", "two")
            await orchestrator.drain()
            return first, second

        first, second = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert fake_generation.generate_image.await_count == 1

    def test_failure_result_sets_error_and_releases_latch(self, orchestrator, fake_generation):
        fake_generation.generate_image.return_value = GeneratedImage(error="upstream down")
        _seed(orchestrator, KITE)

        async def scenario():
            await orchestrator.regenerate("kite", "a kite")

        asyncio.run(scenario())

        state = orchestrator.state
        assert state.error == orch.REGENERATION_ERROR
        assert state.find("kite").is_loading is False
        assert state.regeneration is RegenerationState.IDLE

    def test_exception_sets_error_and_releases_latch(self, orchestrator, fake_generation):
        fake_generation.generate_image.side_effect = RuntimeError("socket closed")
        _seed(orchestrator, KITE)

        async def scenario():
            await orchestrator.regenerate("kite", "a kite")

        asyncio.run(scenario())

        assert orchestrator.state.error == "socket closed"
        assert orchestrator.state.find("kite").is_loading is False
        assert orchestrator.state.regeneration is RegenerationState.IDLE

    def test_entity_deleted_mid_flight(self, orchestrator, fake_generation):
        fake_generation.generate_image.side_effect = _echo_generation
        _seed(orchestrator, KITE, BOAT)

        async def scenario():
            task = orchestrator.regenerate("kite", "gone")
            orchestrator.delete("kite")
            await task

        asyncio.run(scenario())
        assert [e.id for e in orchestrator.state.entities] == ["boat"]

    @pytest.mark.parametrize(
        "selected,prompt,expected",
        [
            (None, "anything", False),
            ("kite", "   ", False),
            ("kite", "a red kite", False),
            ("kite", "a yellow kite", True),
        ],
    )
    def test_should_regenerate(self, orchestrator, selected, prompt, expected):
        _seed(orchestrator, KITE)
        if selected:
            orchestrator.select_entity(selected)
        assert orchestrator.should_regenerate(prompt) is expected


# ---------------------------------------------------------------------------
# Variations.
# ---------------------------------------------------------------------------


def _variation(slot: int, ok: bool) -> GeneratedImage:
    if ok:
        return GeneratedImage(
            id=f"var-{slot}",
            image_url=f"https://img.test/var-{slot}.png",
            prompt_used=f"fox variant {slot}",
            slot=slot,
        )
    return GeneratedImage(error=f"slot {slot} failed", prompt_used="a fox", slot=slot)


@pytest.mark.unit
class TestVariations:
    def test_placeholders_inserted_before_request(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        seen = {}

        async def capture(original_prompt, parent_id, size):
            seen["state"] = orchestrator.state
            return [_variation(i, True) for i in range(4)]

        fake_generation.generate_variations.side_effect = capture
        asyncio.run(orchestrator.generate_variations("parent"))

        placeholders = [e for e in seen["state"].entities if e.is_placeholder]
        assert len(placeholders) == 4
        assert all(p.is_loading and p.parent_id == "parent" for p in placeholders)
        assert all(p.prompt == "Loading variation for: a fox" for p in placeholders)
        assert [p.position for p in placeholders] == [
            Position(400, 130),
            Position(400, 470),
            Position(230, 300),
            Position(570, 300),
        ]
        fake_generation.generate_variations.assert_awaited_once_with("a fox", "parent", 150)

    def test_two_successes_two_errors(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        fake_generation.generate_variations.return_value = [
            _variation(0, True),
            _variation(1, False),
            _variation(2, True),
            _variation(3, False),
        ]

        asyncio.run(orchestrator.generate_variations("parent"))

        state = orchestrator.state
        assert [e.id for e in state.entities] == ["parent", "var-0", "var-2"]
        assert state.find("var-0").position == Position(400, 130)
        assert state.find("var-2").position == Position(230, 300)
        assert state.find("var-0").prompt == "fox variant 0"
        assert state.find("var-0").parent_id == "parent"
        assert not any(e.is_placeholder or e.is_loading for e in state.entities)
        assert state.error is None

    def test_total_failure_sets_one_error(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        fake_generation.generate_variations.return_value = [
            _variation(i, False) for i in range(4)
        ]

        asyncio.run(orchestrator.generate_variations("parent"))

        state = orchestrator.state
        assert [e.id for e in state.entities] == ["parent"]
        assert state.error == orch.VARIATIONS_ERROR

    def test_results_correlate_by_slot_not_order(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        fake_generation.generate_variations.return_value = [
            _variation(3, True),
            _variation(0, True),
        ]

        asyncio.run(orchestrator.generate_variations("parent"))

        state = orchestrator.state
        assert state.find("var-3").position == Position(570, 300)
        assert state.find("var-0").position == Position(400, 130)
        assert len(state.entities) == 3

    def test_exception_removes_placeholders(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        fake_generation.generate_variations.side_effect = RuntimeError("boom")

        results = asyncio.run(orchestrator.generate_variations("parent"))

        assert results == []
        assert [e.id for e in orchestrator.state.entities] == ["parent"]
        assert orchestrator.state.error == orch.VARIATIONS_UNEXPECTED_ERROR

    def test_missing_parent(self, orchestrator, fake_generation):
        asyncio.run(orchestrator.generate_variations("ghost"))
        assert orchestrator.state.error == orch.PARENT_NOT_FOUND
        fake_generation.generate_variations.assert_not_awaited()

    def test_explicit_prompt_overrides_parent_prompt(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        asyncio.run(orchestrator.generate_variations("parent", "a wolf"))
        fake_generation.generate_variations.assert_awaited_once_with("a wolf", "parent", 150)

    def test_repeated_batches_use_distinct_placeholder_ids(self, orchestrator, fake_generation):
        _seed(orchestrator, PARENT)
        seen = []

        async def capture(original_prompt, parent_id, size):
            seen.append({e.id for e in orchestrator.state.entities if e.is_placeholder})
            return []

        fake_generation.generate_variations.side_effect = capture

        async def scenario():
            await orchestrator.generate_variations("parent")
            await orchestrator.generate_variations("parent")

        asyncio.run(scenario())
        assert seen[0].isdisjoint(seen[1])
        assert [e.id for e in orchestrator.state.entities] == ["parent"]


# ---------------------------------------------------------------------------
# Duplication, deletion, movement, arrangement.
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestDuplicate:
    def test_duplicate_offsets_and_copies(self, orchestrator):
        _seed(orchestrator, KITE)

        duplicate = asyncio.run(orchestrator.duplicate("kite"))

        assert duplicate.id == "id-1"
        assert duplicate.position == Position(275, 100)
        assert duplicate.prompt == KITE.prompt
        assert duplicate.src == KITE.src
        assert duplicate.parent_id == "kite"
        assert orchestrator.state.selected_id == "id-1"
        assert orchestrator.state.prompt == KITE.prompt

    def test_duplicate_selected_during_regeneration(self, orchestrator, fake_generation):
        _seed(orchestrator, KITE, BOAT)
        release = asyncio.Event()

        async def slow_generate(prompt, size):
            await release.wait()
            return _echo_generation(prompt, size)

        fake_generation.generate_image.side_effect = slow_generate

        async def scenario():
            orchestrator.select_entity("kite")
            orchestrator.regenerate("kite", "a kite at dusk")
            duplicate = await orchestrator.duplicate("boat")
            during = (
                orchestrator.state.selected_id,
                orchestrator.state.prompt,
                orchestrator.debounced_prompt,
            )
            release.set()
            await orchestrator.drain()
            return duplicate, during

        duplicate, during = asyncio.run(scenario())

        assert during == (duplicate.id, BOAT.prompt, BOAT.prompt)

        # The finished regeneration takes the selection back with its own prompt.
        state = orchestrator.state
        assert state.selected_id == "gen-a kite at dusk"
        assert state.prompt == orchestrator.debounced_prompt == "a kite at dusk"
        fake_generation.generate_image.assert_awaited_once_with("a kite at dusk", 150)

    def test_duplicate_clamped_to_container(self, orchestrator):
        edge = ImageEntity(id="edge", prompt="edge", position=Position(1100, 700))
        _seed(orchestrator, edge)

        duplicate = asyncio.run(orchestrator.duplicate("edge"))
        assert duplicate.position == Position(1130, 650)

    def test_missing_source(self, orchestrator):
        assert asyncio.run(orchestrator.duplicate("ghost")) is None
        assert orchestrator.state.error == orch.DUPLICATE_NOT_FOUND

    def test_empty_id(self, fake_generation, fake_persistence, test_config):
        orchestrator = CanvasOrchestrator(
            fake_generation,
            fake_persistence,
            id_factory=AsyncMock(return_value=""),
            config=test_config,
        )
        _seed(orchestrator, KITE)

        assert asyncio.run(orchestrator.duplicate("kite")) is None
        assert orchestrator.state.error == orch.DUPLICATE_ID_ERROR
        assert len(orchestrator.state.entities) == 1

    def test_id_factory_error(self, fake_generation, fake_persistence, test_config):
        orchestrator = CanvasOrchestrator(
            fake_generation,
            fake_persistence,
            id_factory=AsyncMock(side_effect=OSError("no entropy")),
            config=test_config,
        )
        _seed(orchestrator, KITE)

        assert asyncio.run(orchestrator.duplicate("kite")) is None
        assert orchestrator.state.error == orch.DUPLICATE_ID_ERROR


@pytest.mark.unit
class TestDelete:
    def test_delete_selected_clears_selection(self, orchestrator):
        _seed(orchestrator, KITE, BOAT)
        orchestrator.select_entity("kite")
        orchestrator.delete("kite")
        assert [e.id for e in orchestrator.state.entities] == ["boat"]
        assert orchestrator.state.selected_id is None

    def test_delete_other_keeps_selection(self, orchestrator):
        _seed(orchestrator, KITE, BOAT)
        orchestrator.select_entity("kite")
        orchestrator.delete("boat")
        assert orchestrator.state.selected_id == "kite"

    def test_deleting_last_image_restores_placeholder(self, orchestrator):
        orchestrator.mount()
        _seed(orchestrator, KITE)
        orchestrator.delete(INITIAL_PLACEHOLDER_ID)
        orchestrator.delete("kite")

        state = orchestrator.state
        assert [e.id for e in state.entities] == [INITIAL_PLACEHOLDER_ID]
        assert state.selected_id == INITIAL_PLACEHOLDER_ID


@pytest.mark.unit
class TestPositionAndArrange:
    def test_update_position_verbatim(self, orchestrator):
        _seed(orchestrator, KITE)
        orchestrator.update_position("kite", Position(-10, 4000))
        assert orchestrator.state.find("kite").position == Position(-10, 4000)

    def test_arrange_empty_fails(self, orchestrator):
        assert orchestrator.arrange_grid() is False
        assert orchestrator.state.error == orch.ARRANGE_ERROR

    def test_arrange_deselects_and_lays_out(self, orchestrator):
        _seed(orchestrator, KITE, BOAT)
        orchestrator.select_entity("kite")

        assert orchestrator.arrange_grid() is True
        state = orchestrator.state
        assert state.selected_id is None
        assert state.find("kite").position == Position(55, 100)
        assert state.find("boat").position == Position(225, 100)


# ---------------------------------------------------------------------------
# Saving and the saved catalog.
# ---------------------------------------------------------------------------


SAVED = SavedImage(id="kite", prompt="a red kite", url="/static/saved/kite.png")


@pytest.mark.unit
class TestSave:
    def test_save_refreshes_catalog(self, orchestrator, fake_persistence):
        _seed(orchestrator, KITE)
        fake_persistence.list_saved_images.return_value = [SAVED]

        assert asyncio.run(orchestrator.save("kite")) is True

        fake_persistence.save_image.assert_awaited_once_with("kite", KITE.src, prompt=KITE.prompt)
        state = orchestrator.state
        assert state.catalog == (SAVED,)
        assert state.saving == frozenset()
        assert state.catalog_loading is False
        assert state.error is None

    def test_save_with_explicit_src(self, orchestrator, fake_persistence):
        _seed(orchestrator, KITE)
        asyncio.run(orchestrator.save("kite", "https://cdn.test/other.png"))
        fake_persistence.save_image.assert_awaited_once_with(
            "kite", "https://cdn.test/other.png", prompt=KITE.prompt
        )

    def test_save_error_still_refreshes(self, orchestrator, fake_persistence):
        _seed(orchestrator, KITE)
        fake_persistence.save_image.return_value = SaveResult(error="disk full")

        assert asyncio.run(orchestrator.save("kite")) is False

        assert orchestrator.state.error == orch.SAVE_ERROR
        fake_persistence.list_saved_images.assert_awaited_once()
        assert orchestrator.state.saving == frozenset()

    def test_save_exception(self, orchestrator, fake_persistence):
        _seed(orchestrator, KITE)
        fake_persistence.save_image.side_effect = RuntimeError("boom")

        assert asyncio.run(orchestrator.save("kite")) is False
        assert orchestrator.state.error == orch.SAVE_ERROR
        fake_persistence.list_saved_images.assert_awaited_once()

    def test_save_placeholder_without_content(self, orchestrator, fake_persistence):
        orchestrator.mount()

        assert asyncio.run(orchestrator.save(INITIAL_PLACEHOLDER_ID)) is False
        assert orchestrator.state.error == orch.SAVE_NO_CONTENT
        fake_persistence.save_image.assert_not_awaited()

    def test_save_unknown_entity(self, orchestrator, fake_persistence):
        assert asyncio.run(orchestrator.save("ghost")) is False
        assert orchestrator.state.error == orch.SAVE_NOT_FOUND
        fake_persistence.save_image.assert_not_awaited()

    def test_catalog_failure(self, orchestrator, fake_persistence):
        fake_persistence.list_saved_images.side_effect = RuntimeError("db locked")
        asyncio.run(orchestrator.load_saved_catalog())
        assert orchestrator.state.error == orch.CATALOG_ERROR
        assert orchestrator.state.catalog_loading is False


@pytest.mark.unit
class TestPlaceSaved:
    def test_place_centres_and_selects(self, orchestrator):
        orchestrator.toggle_catalog()
        assert orchestrator.state.catalog_open is True

        entity = orchestrator.place_saved_image(SAVED)

        state = orchestrator.state
        assert entity.id == "kite"
        assert entity.src == SAVED.url
        assert entity.position == Position(565, 325)
        assert state.selected_id == "kite"
        assert state.prompt == SAVED.prompt
        assert orchestrator.debounced_prompt == SAVED.prompt
        assert state.catalog_open is False

    def test_place_replaces_entity_with_same_id(self, orchestrator):
        _seed(orchestrator, KITE, BOAT)
        orchestrator.place_saved_image(SAVED)
        ids = [e.id for e in orchestrator.state.entities]
        assert ids == ["boat", "kite"]


@pytest.mark.unit
class TestLifecycle:
    def test_aclose_closes_capabilities(self, orchestrator, fake_generation, fake_persistence):
        asyncio.run(orchestrator.aclose())
        fake_generation.aclose.assert_awaited_once()
        fake_persistence.aclose.assert_awaited_once()
