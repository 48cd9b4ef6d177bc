"""Short, never-zero integer identifiers and friendly names for threads."""

from __future__ import annotations

import threading

from homa.strutil import sprintf

__all__ = ["NONE", "ThreadRegistry", "get_id", "set_name", "get_name"]

#: A thread identifier that is never assigned to any thread.
NONE = 0


class ThreadRegistry:
    """Hands out unique thread identifiers and remembers thread names."""

    def __init__(self) -> None:
        self._local = threading.local()
        self._lock = threading.Lock()
        self._next_id = 1
        self._names: dict[int, str] = {}

    def get_id(self) -> int:
        """Return the calling thread's identifier, assigning one if needed."""
        ident = getattr(self._local, "id", NONE)
        if ident == NONE:
            with self._lock:
                ident = self._next_id
                self._next_id += 1
            self._local.id = ident
        return ident

    def set_name(self, name: str) -> None:
        """Set the calling thread's name; an empty name restores the default."""
        ident = self.get_id()
        with self._lock:
            if name:
                self._names[ident] = name
            else:
                self._names.pop(ident, None)

    def get_name(self) -> str:
        """Return the calling thread's name, or ``"thread <id>"`` if unset."""
        ident = self.get_id()
        with self._lock:
            name = self._names.get(ident)
        if name is None:
            return sprintf("thread %lu", ident)
        return name


_registry = ThreadRegistry()


def get_id() -> int:
    """Return the calling thread's identifier from the shared registry."""
    return _registry.get_id()


def set_name(name: str) -> None:
    """Set the calling thread's name in the shared registry."""
    _registry.set_name(name)


def get_name() -> str:
    """Return the calling thread's name from the shared registry."""
    return _registry.get_name()