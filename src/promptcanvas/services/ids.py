"""Identifier capability."""

import uuid


async def new_id() -> str:
    """Return a fresh unique identifier (UUID4 string)."""
    return str(uuid.uuid4())
