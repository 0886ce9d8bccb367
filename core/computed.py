"""Memoized derived values over the state store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class _ComputedEntry:
    compute_fn: Callable[[], Any]
    deps: Sequence[str] = ()
    value: Any = _UNSET
    error: Optional[str] = None
    last_computed: Optional[float] = None
    unsubscribers: List[Callable[[], None]] = field(default_factory=list)


class ComputedCache:
    """Lazy memo table keyed by name.

    There is no automatic dependency tracking. Whoever changes an input calls
    :meth:`invalidate_computed` for every name that reads it, or declares the
    input paths as ``deps`` at registration so the store subscription does it.
    """

    def __init__(self, store=None):
        self.store = store
        self._entries: Dict[str, _ComputedEntry] = {}
        self._computing: set = set()

    def register_computed(self, name: str, compute_fn: Callable[[], Any], deps: Sequence[str] = ()):
        if name in self._entries:
            logger.warning("Computed value %r already registered; replacing", name)
            self.remove_computed(name)

        entry = _ComputedEntry(compute_fn=compute_fn, deps=tuple(deps))
        if deps and self.store is None:
            logger.warning("Computed value %r declares deps but no store is attached", name)
        elif deps:
            entry.unsubscribers = [
                self.store.subscribe(dep, lambda _value, _name=name: self.invalidate_computed(_name))
                for dep in deps
            ]
        self._entries[name] = entry
        return lambda: self.remove_computed(name)

    def get_computed_value(self, name: str):
        entry = self._entries.get(name)
        if entry is None:
            logger.warning("Unknown computed value %r", name)
            return None
        if entry.value is not _UNSET:
            return entry.value

        if name in self._computing:
            logger.error("Circular dependency detected for computed value %r", name)
            return None

        self._computing.add(name)
        started = time.perf_counter()
        try:
            value = entry.compute_fn()
        except Exception as exc:
            entry.error = str(exc)
            logger.warning("Computing %r failed: %s", name, exc)
            return None
        finally:
            self._computing.discard(name)

        entry.value = value
        entry.error = None
        entry.last_computed = time.time()
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms > 10:
            logger.debug("Slow computation for %r: %.2fms", name, elapsed_ms)
        return value

    def invalidate_computed(self, name: str) -> None:
        entry = self._entries.get(name)
        if entry is not None:
            entry.value = _UNSET

    def invalidate_all(self) -> None:
        for entry in self._entries.values():
            entry.value = _UNSET

    def is_valid(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry is not None and entry.value is not _UNSET

    def remove_computed(self, name: str) -> bool:
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        for unsubscribe in entry.unsubscribers:
            unsubscribe()
        return True

    def get_error(self, name: str) -> Optional[str]:
        entry = self._entries.get(name)
        return entry.error if entry else None

    def names(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        for name in list(self._entries):
            self.remove_computed(name)
        self._computing.clear()
