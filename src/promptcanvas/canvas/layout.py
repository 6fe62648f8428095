"""Placement geometry for canvas images.

Every function here is pure: it takes positions and container dimensions and
returns new positions, never touching canvas state.  The orchestrator and the
store reducers call into this module whenever an entity is placed
programmatically (initial mount, duplication, variations, saved images and
grid arrangement).

Clamping
--------
Programmatic placements are clamped into ``[0, width - size] x
[0, height - size]``.  When the container is smaller than an image the upper
bound collapses to 0, so the image is pinned to the top-left edge.

Grid Arrangement
----------------
:func:`arrange_grid` is a total reflow::

    columns        = max(1, (width - gap) // (size + gap))
    rows           = ceil(count / columns)
    grid_width     = columns * size + (columns - 1) * gap
    offset_x       = max(gap, (width - grid_width) / 2)
    offset_y       = header_height + gap
    x(i)           = clamp(offset_x + (i % columns) * (size + gap))
    y(i)           = offset_y + (i // columns) * (size + gap)
    required       = offset_y + rows * size + (rows - 1) * gap + gap

``y`` is not clamped against the container height: the container is expected
to grow to ``required``.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, replace

from promptcanvas.canvas.models import ImageEntity, Position


@dataclass(frozen=True)
class GridLayout:
    """Result of a grid arrangement.

    Attributes:
        entities: The input entities, in order, with recomputed positions.
        columns: Number of grid columns that fit the container width.
        rows: Number of rows used.
        required_height: Minimum container height that shows every row.
    """

    entities: tuple[ImageEntity, ...]
    columns: int
    rows: int
    required_height: float


def clamp_position(
    position: Position, width: float, height: float, item_size: float
) -> Position:
    """Clamp *position* so an ``item_size`` square stays inside the container."""
    max_x = max(0.0, width - item_size)
    max_y = max(0.0, height - item_size)
    return Position(
        x=max(0.0, min(position.x, max_x)),
        y=max(0.0, min(position.y, max_y)),
    )


def center_position(width: float, height: float, item_size: float) -> Position:
    """Position that centres an ``item_size`` square in the container."""
    return Position(
        x=max(0.0, (width - item_size) / 2),
        y=max(0.0, (height - item_size) / 2),
    )


def duplicate_position(
    source: Position, width: float, height: float, item_size: float, offset: float
) -> Position:
    """Position for a duplicate: to the right of *source*, clamped."""
    target = Position(x=source.x + item_size + offset, y=source.y)
    return clamp_position(target, width, height, item_size)


def variation_positions(
    parent: Position, width: float, height: float, item_size: float, gap: float
) -> list[Position]:
    """Positions of the four variation slots around *parent*.

    Order is above, below, left, right.  Each position is clamped
    independently, so slots may overlap near the container edges.
    """
    step = item_size + gap
    targets = [
        Position(x=parent.x, y=parent.y - step),
        Position(x=parent.x, y=parent.y + step),
        Position(x=parent.x - step, y=parent.y),
        Position(x=parent.x + step, y=parent.y),
    ]
    return [clamp_position(target, width, height, item_size) for target in targets]


def grid_columns(width: float, item_size: float, gap: float) -> int:
    """Number of columns that fit in *width*."""
    return max(1, math.floor((width - gap) / (item_size + gap)))


def arrange_grid(
    entities: Sequence[ImageEntity],
    width: float,
    item_size: float,
    gap: float,
    header_height: float,
) -> GridLayout:
    """Lay *entities* out on a centred grid below the header.

    Args:
        entities: Entities in display order.
        width: Container width in pixels.
        item_size: Edge length of every image.
        gap: Spacing between cells and around the grid.
        header_height: Space reserved above the grid.

    Returns:
        :class:`GridLayout` with every entity's position overwritten.
    """
    columns = grid_columns(width, item_size, gap)
    rows = math.ceil(len(entities) / columns)

    step = item_size + gap
    grid_width = columns * item_size + max(0, columns - 1) * gap
    grid_height = rows * item_size + max(0, rows - 1) * gap

    offset_x = max(gap, (width - grid_width) / 2)
    offset_y = header_height + gap
    max_x = width - item_size

    arranged = []
    for index, entity in enumerate(entities):
        row, col = divmod(index, columns)
        x = max(0.0, min(offset_x + col * step, max_x))
        y = offset_y + row * step
        arranged.append(replace(entity, position=Position(x=x, y=y)))

    return GridLayout(
        entities=tuple(arranged),
        columns=columns,
        rows=rows,
        required_height=offset_y + grid_height + gap,
    )
