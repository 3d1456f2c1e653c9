"""A counter wrapper that reports how much a value moved since the last update."""

from __future__ import annotations

import logging

_log = logging.getLogger(__name__)


class DeltaWrapper:
    """Holds the last seen value and returns the change when a new one is set."""

    __slots__ = ("_value",)

    def __init__(self) -> None:
        self._value = 0

    def update_value(self, new_value: int) -> float:
        """Store ``new_value`` and return the absolute difference from the previous value.

        A decrease is logged as an error but does not fail.
        """
        diff = float(new_value - self._value)
        if diff < 0:
            _log.error("delta wrapper diff less than 0!")
        self._value = new_value
        return abs(diff)

    def get(self) -> int:
        """Return the current value."""
        return self._value