"""Lifecycle tracking for long-running tasks (decoding, rendering, exports).

Each operation lives in the state store at ``operations.<id>`` as a plain,
JSON-serializable dict::

    {
        'id': 'fitFile:decode',
        'status': 'running',          # pending | running | completed | failed
        'progress': 42.0,             # always within [0, 100]
        'message': 'Decoding FIT file',
        'metadata': {...},
        'start_time': '2026-02-01T10:00:00.000Z',
        'start_perf': 1234.5,
        # terminal states only:
        'end_time': '...', 'end_perf': 1240.1, 'duration_ms': 5600.0,
        'error': {'message': '...', 'name': 'ValueError'},   # failed only
    }

The tracker is instrumentation. It never raises into the caller: every public
method returns a :class:`~core.result.Result` and logs failures itself.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from constants import OPERATIONS_NAMESPACE
from core.result import ErrorKind, Result

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OperationStatus.COMPLETED.value, OperationStatus.FAILED.value})


def clamp_progress(value) -> float:
    """Coerce ``value`` into [0, 100]; anything non-numeric or non-finite becomes 0."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(numeric):
        return 0.0
    return max(0.0, min(100.0, numeric))


def describe_error(error) -> Dict[str, str]:
    """Serializable summary of an exception (or any error-ish value)."""
    if isinstance(error, BaseException):
        return {'message': str(error) or type(error).__name__, 'name': type(error).__name__}
    if isinstance(error, Mapping) and 'message' in error:
        return {'message': str(error['message']), 'name': str(error.get('name', 'Error'))}
    return {'message': str(error), 'name': 'Error'}


class OperationTracker:
    """Writes operation state machines into a StateStore."""

    def __init__(self, store, clock: Callable[[], float] = time.perf_counter):
        self.store = store
        self._clock = clock

    # ── Public API (never raises) ────────────────────────────────────────
    def start_operation(self, operation_id: str, message: str = "", metadata: Optional[Mapping] = None) -> Result:
        return self._guard("start_operation", operation_id, self._start, message, metadata)

    def update_operation(
        self,
        operation_id: str,
        progress=None,
        status: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Mapping] = None,
    ) -> Result:
        return self._guard(
            "update_operation", operation_id, self._update, progress, status, message, metadata
        )

    def complete_operation(self, operation_id: str, metadata: Optional[Mapping] = None, result: Any = None) -> Result:
        return self._guard("complete_operation", operation_id, self._complete, metadata, result)

    def fail_operation(self, operation_id: str, error) -> Result:
        return self._guard("fail_operation", operation_id, self._fail, error)

    def remove_operation(self, operation_id: str) -> Result:
        return self._guard("remove_operation", operation_id, self._remove)

    # ── Queries ──────────────────────────────────────────────────────────
    def get_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(operation_id)
        if path is None:
            return None
        entry = self.store.get(path)
        return dict(entry) if isinstance(entry, dict) else None

    def get_operations(self) -> Dict[str, Dict[str, Any]]:
        operations = self.store.get(OPERATIONS_NAMESPACE)
        if not isinstance(operations, dict):
            return {}
        return {op_id: dict(entry) for op_id, entry in operations.items() if isinstance(entry, dict)}

    def get_active_operations(self) -> Dict[str, Dict[str, Any]]:
        return {
            op_id: entry
            for op_id, entry in self.get_operations().items()
            if entry.get('status') not in TERMINAL_STATUSES
        }

    def is_terminal(self, operation_id: str) -> bool:
        entry = self.get_operation(operation_id)
        return bool(entry) and entry.get('status') in TERMINAL_STATUSES

    def prune_finished(self, max_age_seconds: float = 30.0) -> int:
        """Drop terminal operations that finished more than ``max_age_seconds`` ago."""
        now = self._clock()
        removed = 0
        for op_id, entry in self.get_operations().items():
            if entry.get('status') not in TERMINAL_STATUSES:
                continue
            end_perf = entry.get('end_perf')
            if isinstance(end_perf, (int, float)) and now - end_perf >= max_age_seconds:
                if self.remove_operation(op_id).ok:
                    removed += 1
        return removed

    # ── Internals (return Result, may raise on store faults) ─────────────
    def _guard(self, name: str, operation_id, fn, *args) -> Result:
        context = "{0}({1!r})".format(name, operation_id)
        try:
            path = self._path(operation_id)
            if path is None:
                result = Result.failure(
                    ErrorKind.CALLER_MISUSE,
                    "operation id must be a non-empty string without dots",
                )
            else:
                result = fn(operation_id, path, *args)
        except Exception as exc:
            result = Result.failure(ErrorKind.INTERNAL, str(exc))
        return result.log(logger, context)

    @staticmethod
    def _path(operation_id) -> Optional[str]:
        if not isinstance(operation_id, str) or not operation_id or '.' in operation_id:
            return None
        return "{0}.{1}".format(OPERATIONS_NAMESPACE, operation_id)

    def _current(self, path: str) -> Optional[Dict[str, Any]]:
        entry = self.store.get(path)
        return entry if isinstance(entry, dict) else None

    def _start(self, operation_id, path, message, metadata) -> Result:
        existing = self._current(path)
        if existing and existing.get('status') not in TERMINAL_STATUSES:
            return Result.success(existing, note="already running; start ignored")

        entry = {
            'id': operation_id,
            'status': OperationStatus.RUNNING.value,
            'progress': 0.0,
            'message': message or "",
            'metadata': dict(metadata or {}),
            'start_time': _utc_now_iso(),
            'start_perf': self._clock(),
        }
        self.store.set(path, entry, source="OperationTracker.start_operation")
        return Result.success(entry)

    def _update(self, operation_id, path, progress, status, message, metadata) -> Result:
        existing = self._current(path)
        if existing is None:
            return Result.failure(ErrorKind.CALLER_MISUSE, "unknown operation")
        if existing.get('status') in TERMINAL_STATUSES:
            return Result.success(existing, note="operation already {0}; update ignored".format(existing['status']))

        changes: Dict[str, Any] = {}
        if status is not None:
            try:
                status_value = OperationStatus(status).value
            except ValueError:
                return Result.failure(ErrorKind.CALLER_MISUSE, "invalid status {0!r}".format(status))
            if status_value in TERMINAL_STATUSES:
                return Result.failure(
                    ErrorKind.CALLER_MISUSE,
                    "use complete_operation/fail_operation to finish an operation",
                )
            changes['status'] = status_value
        if progress is not None:
            changes['progress'] = clamp_progress(progress)
        if message is not None:
            changes['message'] = str(message)
        if metadata:
            changes['metadata'] = {**(existing.get('metadata') or {}), **metadata}

        if changes:
            self.store.update_state(path, changes, source="OperationTracker.update_operation")
        return Result.success(self._current(path))

    def _finish_fields(self, existing) -> Dict[str, Any]:
        end_perf = self._clock()
        start_perf = existing.get('start_perf')
        duration_ms = None
        if isinstance(start_perf, (int, float)):
            duration_ms = max(0.0, (end_perf - start_perf) * 1000.0)
        return {'end_time': _utc_now_iso(), 'end_perf': end_perf, 'duration_ms': duration_ms}

    def _complete(self, operation_id, path, metadata, result) -> Result:
        existing = self._current(path)
        if existing is None:
            return Result.failure(ErrorKind.CALLER_MISUSE, "unknown operation")
        status = existing.get('status')
        if status == OperationStatus.COMPLETED.value:
            return Result.success(existing, note="already completed")
        if status == OperationStatus.FAILED.value:
            return Result.success(existing, note="failed operation is not reopened")

        changes = {
            'status': OperationStatus.COMPLETED.value,
            'progress': 100.0,
            **self._finish_fields(existing),
        }
        if metadata:
            changes['metadata'] = {**(existing.get('metadata') or {}), **metadata}
        if result is not None:
            changes['result'] = result
        self.store.update_state(path, changes, source="OperationTracker.complete_operation")
        return Result.success(self._current(path))

    def _fail(self, operation_id, path, error) -> Result:
        existing = self._current(path)
        if existing is None:
            return Result.failure(ErrorKind.CALLER_MISUSE, "unknown operation")
        if existing.get('status') in TERMINAL_STATUSES:
            return Result.success(existing, note="operation already {0}; failure ignored".format(existing['status']))

        changes = {
            'status': OperationStatus.FAILED.value,
            'error': describe_error(error),
            **self._finish_fields(existing),
        }
        self.store.update_state(path, changes, source="OperationTracker.fail_operation")
        return Result.success(self._current(path))

    def _remove(self, operation_id, path) -> Result:
        operations = self.store.get(OPERATIONS_NAMESPACE)
        if not isinstance(operations, dict) or operation_id not in operations:
            return Result.success(None, note="nothing to remove")
        remaining = {op_id: entry for op_id, entry in operations.items() if op_id != operation_id}
        self.store.set(OPERATIONS_NAMESPACE, remaining, source="OperationTracker.remove_operation")
        return Result.success(None)


def _utc_now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
