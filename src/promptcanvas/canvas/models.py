"""Data models for the canvas: image entities and capability results."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum

INITIAL_PLACEHOLDER_ID = "initial-placeholder"


class RegenerationState(str, Enum):
    """Process-wide regeneration latch.

    Only one regeneration may be in flight across the whole canvas.
    """

    IDLE = "idle"
    PENDING = "pending"


class RelationshipType(IntEnum):
    """Kind of a directed lineage record between two stored images."""

    UNKNOWN = 0
    IS_PARENT = 1  # source is parent of target


@dataclass(frozen=True)
class Position:
    """Canvas-local pixel coordinates of an image's top-left corner."""

    x: float = 0.0
    y: float = 0.0


@dataclass(frozen=True)
class ImageEntity:
    """One image slot on the canvas.

    Entities are immutable; every change produces a new instance through
    :func:`dataclasses.replace` inside the canvas store reducers.

    Attributes:
        id: Unique identifier. Replaced when a regeneration completes.
        src: Resolved image URL, empty until generation completes.
        prompt: Text that produced (or will produce) ``src``.
        position: Top-left corner in canvas coordinates.
        parent_id: Entity this one was duplicated or varied from.
        is_loading: An async operation that will mutate this entity is in flight.
        is_placeholder: The entity has no real content yet.
    """

    id: str
    src: str = ""
    prompt: str = ""
    position: Position = field(default_factory=Position)
    parent_id: str | None = None
    is_loading: bool = False
    is_placeholder: bool = False


@dataclass(frozen=True)
class GeneratedImage:
    """Result of one generation attempt.

    Failures are reported through ``error`` with an empty ``id`` rather than
    raised.  ``slot`` is set on variation results and names the variation
    slot (0-based) the result belongs to.
    """

    id: str = ""
    image_url: str | None = None
    prompt_used: str | None = None
    error: str | None = None
    slot: int | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the attempt produced a usable, identified image."""
        return bool(self.id and self.image_url and not self.error)


@dataclass(frozen=True)
class SavedImage:
    """Entry of the saved-image catalog."""

    id: str
    prompt: str
    url: str
