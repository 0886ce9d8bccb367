"""Path-addressed reactive state store.

The store holds one tree of nested dicts addressed by dotted paths such as
``"charts.isRendering"``. Writers call :meth:`StateStore.set` or
:meth:`StateStore.update_state`; readers call :meth:`StateStore.get` and may
:meth:`StateStore.subscribe` to an exact path to be told about new values.

Subscription policy: callbacks fire only for writes addressed to the exact
path they were registered on. A subscriber on ``"charts"`` is not called when
``"charts.isRendering"`` is written on its own, but is called when
``"charts"`` itself is set or merged.

Persistence is not a subscriber: a persisted path is saved whenever a write
lands on it, inside it, or on one of its parents.

Everything runs synchronously on the caller's turn. There is no locking; the
store must only be written from the event loop thread.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from constants import MAX_HISTORY_SIZE, PERSISTED_STATE_KEY, PERSISTED_STATE_PATHS

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


@dataclass(frozen=True)
class StateChange:
    path: str
    new_value: Any
    old_value: Any
    source: str
    timestamp: float


def split_path(path) -> Optional[List[str]]:
    """Return the segments of a dotted path, or None when the path is malformed."""
    if not isinstance(path, str) or not path:
        return None
    segments = path.split('.')
    if any(not segment for segment in segments):
        return None
    return segments


def get_nested_value(tree, segments: Sequence[str], default=None):
    cursor = tree
    for key in segments:
        if not isinstance(cursor, dict) or key not in cursor:
            return default
        cursor = cursor[key]
    return cursor


def set_nested_value(tree: Dict[str, Any], segments: Sequence[str], value, merge=False) -> Dict[str, Any]:
    """Return a copy of ``tree`` with ``value`` written at ``segments``.

    Only the dicts along the path are copied; untouched branches are shared
    with the previous tree. Non-dict intermediates are replaced by ``{}``.
    """
    next_tree = dict(tree)
    cursor = next_tree
    for key in segments[:-1]:
        child = cursor.get(key)
        child = dict(child) if isinstance(child, dict) else {}
        cursor[key] = child
        cursor = child

    final_key = segments[-1]
    previous = cursor.get(final_key)
    if merge:
        base = previous if isinstance(previous, dict) else {}
        cursor[final_key] = {**base, **value}
    else:
        cursor[final_key] = value
    return next_tree


def paths_overlap(first: str, second: str) -> bool:
    """True when one dotted path equals the other or lies inside it."""
    return (
        first == second
        or first.startswith(second + '.')
        or second.startswith(first + '.')
    )


class StateStore:
    """Single-process state tree with exact-path subscriptions."""

    def __init__(self, initial_state: Optional[Dict[str, Any]] = None, history_size: int = MAX_HISTORY_SIZE):
        self._initial_state = copy.deepcopy(initial_state or {})
        self._state: Dict[str, Any] = copy.deepcopy(self._initial_state)
        self._listeners: Dict[str, List[Listener]] = {}
        self._history: Deque[StateChange] = deque(maxlen=max(1, int(history_size)))
        self._persistence: List[Tuple[Any, Tuple[str, ...], str]] = []

    # ── Reads ────────────────────────────────────────────────────────────
    def get(self, path: Optional[str] = None, default=None):
        """Return the value at ``path`` (a deep copy of the whole tree when ``path`` is empty)."""
        if path is None or path == '':
            return self.snapshot()
        segments = split_path(path)
        if segments is None:
            logger.warning("Ignoring read of malformed state path %r", path)
            return default
        return get_nested_value(self._state, segments, default)

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    # ── Writes ───────────────────────────────────────────────────────────
    def set(self, path: str, value, *, silent: bool = False, source: str = "unknown") -> None:
        self._write(path, value, merge=False, silent=silent, source=source)

    def update_state(self, path: str, partial, *, silent: bool = False, source: str = "unknown") -> None:
        """Shallow-merge ``partial`` into the mapping at ``path``."""
        if not isinstance(partial, dict):
            logger.warning(
                "update_state(%r) expects a mapping, got %s; ignoring",
                path,
                type(partial).__name__,
            )
            return
        self._write(path, partial, merge=True, silent=silent, source=source)

    def _write(self, path, value, merge, silent, source) -> None:
        segments = split_path(path)
        if segments is None:
            logger.warning("Ignoring write to malformed state path %r (source=%s)", path, source)
            return

        old_value = get_nested_value(self._state, segments)
        self._state = set_nested_value(self._state, segments, value, merge=merge)
        new_value = get_nested_value(self._state, segments)

        self._history.append(StateChange(
            path=path,
            new_value=new_value,
            old_value=old_value,
            source=source,
            timestamp=time.time(),
        ))
        logger.debug("%s updated by %s", path, source)

        if not silent:
            self._notify(path, new_value)
        self._persist_related(path)

    def _notify(self, path: str, value) -> None:
        # Copy so callbacks may unsubscribe (or subscribe) while we iterate.
        for listener in list(self._listeners.get(path, ())):
            try:
                listener(value)
            except Exception:
                logger.exception("State listener for %s raised", path)

    # ── Subscriptions ────────────────────────────────────────────────────
    def subscribe(self, path: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for writes to ``path``; returns the unsubscribe function."""
        listeners = self._listeners.setdefault(path, [])
        listeners.append(callback)

        def unsubscribe() -> None:
            current = self._listeners.get(path)
            if not current:
                return
            try:
                current.remove(callback)
            except ValueError:
                return
            if not current:
                del self._listeners[path]

        return unsubscribe

    def get_subscriptions(self) -> Dict[str, Any]:
        details = {
            path: {'listener_count': len(listeners), 'has_listeners': bool(listeners)}
            for path, listeners in self._listeners.items()
        }
        return {
            'paths': list(self._listeners),
            'details': details,
            'total_listeners': sum(len(listeners) for listeners in self._listeners.values()),
        }

    def clear_subscriptions(self) -> None:
        self._listeners.clear()

    # ── History ──────────────────────────────────────────────────────────
    def get_history(self) -> List[StateChange]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    # ── Reset ────────────────────────────────────────────────────────────
    def reset(self, path: Optional[str] = None) -> None:
        """Restore one path, or the whole tree, to the initial state."""
        if path:
            segments = split_path(path)
            if segments is None:
                logger.warning("Ignoring reset of malformed state path %r", path)
                return
            initial = get_nested_value(self._initial_state, segments)
            self.set(path, copy.deepcopy(initial), source="StateStore.reset")
            return

        previous = self._state
        self._state = copy.deepcopy(self._initial_state)
        self._history.clear()
        for listened_path in list(self._listeners):
            segments = split_path(listened_path)
            if segments is None:
                continue
            old_value = get_nested_value(previous, segments)
            new_value = get_nested_value(self._state, segments)
            if old_value != new_value:
                self._notify(listened_path, new_value)
        for storage, paths, key in list(self._persistence):
            self.persist(storage, paths, key)

    # ── Persistence side-channel ─────────────────────────────────────────
    def load_persisted(self, storage, paths: Iterable[str] = PERSISTED_STATE_PATHS,
                       key: str = PERSISTED_STATE_KEY) -> int:
        """Silently restore ``paths`` from the JSON blob at ``key``; returns the count restored."""
        try:
            raw = storage.get_item(key)
        except Exception as exc:
            logger.warning("Failed to read persisted state %s: %s", key, exc)
            return 0
        if not raw:
            return 0
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding corrupt persisted state %s: %s", key, exc)
            return 0
        if not isinstance(parsed, dict):
            logger.warning("Discarding persisted state %s: expected an object", key)
            return 0

        restored = 0
        for path in paths:
            segments = split_path(path)
            if segments is None:
                continue
            value = get_nested_value(parsed, segments)
            if value is not None:
                self.set(path, value, silent=True, source="storage")
                restored += 1
        return restored

    def persist(self, storage, paths: Iterable[str] = PERSISTED_STATE_PATHS,
                key: str = PERSISTED_STATE_KEY) -> bool:
        snapshot: Dict[str, Any] = {}
        for path in paths:
            segments = split_path(path)
            if segments is None:
                continue
            value = get_nested_value(self._state, segments)
            if value is not None:
                snapshot = set_nested_value(snapshot, segments, value)
        try:
            storage.set_item(key, json.dumps(snapshot))
        except Exception as exc:
            logger.warning("Failed to persist state %s: %s", key, exc)
            return False
        return True

    def enable_persistence(self, storage, paths: Iterable[str] = PERSISTED_STATE_PATHS,
                           key: str = PERSISTED_STATE_KEY) -> Callable[[], None]:
        """Load ``paths`` once, then mirror them to ``storage`` on every change."""
        binding = (storage, tuple(paths), key)
        self.load_persisted(storage, binding[1], key)
        self._persistence.append(binding)

        def disable() -> None:
            self._persistence = [entry for entry in self._persistence if entry is not binding]

        return disable

    def _persist_related(self, path: str) -> None:
        for storage, paths, key in list(self._persistence):
            if any(paths_overlap(path, persisted) for persisted in paths):
                self.persist(storage, paths, key)
