"""Trailing debounce with an immediate reset, built on the asyncio event loop.

:class:`Debouncer` exposes two independent primitives:

- :meth:`Debouncer.update` re-arms a cancellable timer; when the input has
  been quiet for ``delay`` seconds the debounced value settles and the
  ``on_settle`` callback fires with it.
- :meth:`Debouncer.reset` sets the debounced value immediately and cancels
  any pending timer *without* firing the callback, so a value loaded
  programmatically (selecting an image, clearing the input) never looks like
  something the user typed.

Timers are private to each instance and are cleared on reset, cancel, or a
superseding update.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class Debouncer(Generic[T]):
    """Debounce a changing value.

    Args:
        initial: Initial debounced value.
        delay: Quiet period in seconds.
        on_settle: Called with the value each time the timer settles.

    ``update`` must be called from a running event loop.
    """

    def __init__(
        self,
        initial: T,
        delay: float,
        on_settle: Callable[[T], None] | None = None,
    ) -> None:
        self._value = initial
        self._delay = delay
        self._on_settle = on_settle
        self._handle: asyncio.TimerHandle | None = None
        self._pending: object = _MISSING

    @property
    def value(self) -> T:
        """The current debounced value."""
        return self._value

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """Whether a timer is armed."""
        return self._handle is not None

    def update(self, value: T) -> None:
        """Schedule *value* to settle after the quiet period."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._pending = value
        self._handle = loop.call_later(self._delay, self._settle)

    def reset(self, value: T) -> None:
        """Set the debounced value now and drop any pending update."""
        self.cancel()
        self._value = value

    def flush(self) -> bool:
        """Settle a pending update immediately.

        Returns:
            ``True`` if an update was pending and has now settled.
        """
        if self._handle is None:
            return False
        self._handle.cancel()
        self._settle()
        return True

    def cancel(self) -> None:
        """Drop any pending update, keeping the current debounced value."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._pending = _MISSING

    def _settle(self) -> None:
        value = self._pending
        self._handle = None
        self._pending = _MISSING
        if value is _MISSING:
            return

        self._value = value  # type: ignore[assignment]
        if self._on_settle is not None:
            try:
                self._on_settle(self._value)
            except Exception:
                # Raised from a loop callback there is no caller to report to.
                logger.exception("Debounce callback failed.")
