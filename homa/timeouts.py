"""Deadlines attached to objects and an ordered manager of them."""

from __future__ import annotations

import math
from typing import Any, Generic, TypeVar

__all__ = ["Timeout", "TimeoutManager"]

T = TypeVar("T")


class Timeout(Generic[T]):
    """A deadline belonging to ``owner``, held by at most one manager."""

    def __init__(self, owner: T) -> None:
        self.owner = owner
        self.expiration_cycle_time = 0
        self.manager: TimeoutManager[T] | None = None

    def has_elapsed(self, now: int) -> bool:
        """Return True if the deadline is at or before ``now``."""
        return self.expiration_cycle_time <= now

    def __repr__(self) -> str:
        return f"Timeout(expiration_cycle_time={self.expiration_cycle_time})"


class TimeoutManager(Generic[T]):
    """Keeps timeouts of one fixed duration in order of expiration.

    Since every timeout has the same duration, setting a timeout moves it to
    the back of the queue and the queue stays sorted.
    """

    def __init__(self, timeout_cycles: int) -> None:
        self.timeout_cycles = timeout_cycles
        self._queue: dict[Timeout[T], None] = {}
        self.next_timeout: float = math.inf

    def set_timeout(self, timeout: Timeout[T], now: int) -> None:
        """Schedule ``timeout`` to expire ``timeout_cycles`` after ``now``."""
        if timeout.manager is not None and timeout.manager is not self:
            raise ValueError("timeout is held by another manager")
        self._queue.pop(timeout, None)
        timeout.expiration_cycle_time = now + self.timeout_cycles
        timeout.manager = self
        self._queue[timeout] = None
        self._refresh()

    def cancel_timeout(self, timeout: Timeout[T]) -> None:
        """Remove ``timeout`` from this manager, if it is held here."""
        if timeout.manager is self:
            del self._queue[timeout]
            timeout.manager = None
            self._refresh()

    def any_elapsed(self, now: int) -> bool:
        """Quick check whether the earliest timeout may have expired."""
        return self.next_timeout <= now

    def front(self) -> T:
        """Return the owner of the earliest timeout."""
        try:
            return next(iter(self._queue)).owner
        except StopIteration:
            raise IndexError("no timeouts are pending") from None

    def empty(self) -> bool:
        """Return True if no timeouts are pending."""
        return not self._queue

    def __contains__(self, timeout: Any) -> bool:
        return timeout in self._queue

    def __len__(self) -> int:
        return len(self._queue)

    def _refresh(self) -> None:
        first = next(iter(self._queue), None)
        self.next_timeout = math.inf if first is None else first.expiration_cycle_time