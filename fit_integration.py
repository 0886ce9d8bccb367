"""Wire the FIT decoder into the state store.

``create_state_adapters`` builds the three small adapter objects the decoder
talks to. ``FitIntegration`` hands them to a decoder exactly once, however
many callers ask for it concurrently, and publishes decode results into the
store.

Decoding runs in a worker thread. Adapter calls that write to the store are
handed back to the event loop through a ``LoopDispatcher``; reads and timer
starts happen on the calling thread.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from constants import FIT_DECODE_OPERATION_ID
from core.metrics import MetricsRecorder
from core.operations import OperationTracker, clamp_progress, describe_error
from core.result import ErrorKind, Result

logger = logging.getLogger(__name__)


class LoopDispatcher:
    """Runs store-writing calls on the loop that owns the store."""

    def __init__(self):
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self._loop_thread = threading.get_ident()

    def on_loop_thread(self) -> bool:
        return self.loop is None or threading.get_ident() == self._loop_thread

    def call(self, func: Callable[..., Any], *args, **kwargs) -> None:
        if self.on_loop_thread():
            func(*args, **kwargs)
            return
        if self.loop.is_closed():
            logger.warning("Dropping %s: event loop is closed", getattr(func, '__name__', func))
            return
        self.loop.call_soon_threadsafe(functools.partial(self._run, func, *args, **kwargs))

    @staticmethod
    def _run(func, *args, **kwargs) -> None:
        try:
            func(*args, **kwargs)
        except Exception:
            logger.exception("Dispatched state update %s failed", getattr(func, '__name__', func))


class FileStateAdapter:
    """Maps decoder progress callbacks onto one tracked operation."""

    def __init__(self, store, tracker: OperationTracker, operation_id: str = FIT_DECODE_OPERATION_ID,
                 dispatcher: Optional[LoopDispatcher] = None):
        self.store = store
        self.tracker = tracker
        self.operation_id = operation_id
        self.dispatcher = dispatcher or LoopDispatcher()

    def ensure_operation_started(self) -> None:
        # start_operation is a no-op while the operation is still running
        self.tracker.start_operation(
            self.operation_id,
            message="Decoding FIT file",
            metadata={'source': 'fitParser'},
        )

    def update_loading_progress(self, progress) -> None:
        self.dispatcher.call(self._update_loading_progress, progress)

    def _update_loading_progress(self, progress) -> None:
        self.ensure_operation_started()
        self.tracker.update_operation(self.operation_id, progress=clamp_progress(progress), status='running')

    def handle_file_loading_error(self, error) -> None:
        self.dispatcher.call(self._handle_file_loading_error, error)

    def _handle_file_loading_error(self, error) -> None:
        self.ensure_operation_started()
        self.tracker.fail_operation(self.operation_id, error)

    def handle_file_loaded(self, payload) -> None:
        self.dispatcher.call(self._handle_file_loaded, payload)

    def _handle_file_loaded(self, payload) -> None:
        self.ensure_operation_started()
        metadata = payload.get('metadata') if isinstance(payload, dict) else None
        self.tracker.update_operation(self.operation_id, progress=100, status='running')
        self.tracker.complete_operation(self.operation_id, metadata=metadata)
        try:
            self.store.set(
                'fitFile.lastResult',
                {'metadata': metadata, 'timestamp': time.time()},
                source='fitParser',
            )
        except Exception as exc:
            logger.warning("Failed to publish FIT decode metadata: %s", exc)

    @staticmethod
    def get_record_count(messages) -> int:
        if not isinstance(messages, dict):
            return 0
        records = messages.get('record_mesgs')
        if records is None:
            records = messages.get('records')
        try:
            return len(records) if records is not None else 0
        except TypeError:
            return 0


class SettingsAdapter:
    """Category-level settings access for the decoder."""

    def __init__(self, store, settings=None, dispatcher: Optional[LoopDispatcher] = None):
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher or LoopDispatcher()

    def get_category(self, category: str):
        if not category:
            return None
        value = self.store.get(f'settings.{category}')
        if value is not None:
            return value
        if self.settings is not None:
            return self.settings.get_setting(category)
        return None

    def update_category(self, category: str, value, source: str = 'fitParser') -> None:
        if not category:
            return
        self.dispatcher.call(self._update_category, category, value, source)

    def _update_category(self, category: str, value, source: str) -> None:
        # SettingsManager mirrors into the store itself on success
        if self.settings is not None and self.settings.set_setting(category, value):
            return
        self.store.set(f'settings.{category}', value, source=source)


class PerformanceAdapter:
    """Decoder-facing timer API backed by a MetricsRecorder."""

    def __init__(self, metrics: MetricsRecorder, dispatcher: Optional[LoopDispatcher] = None):
        self.metrics = metrics
        self.dispatcher = dispatcher or LoopDispatcher()

    @property
    def is_enabled(self) -> bool:
        return self.metrics.enabled

    def start_timer(self, operation_id: str) -> None:
        self.metrics.start_timer(operation_id)

    def end_timer(self, operation_id: str) -> Optional[float]:
        if self.dispatcher.on_loop_thread():
            return self.metrics.end_timer(operation_id, {'source': 'fitParser'})
        ended_at = self.metrics.now()
        self.dispatcher.call(self.metrics.end_timer, operation_id, {'source': 'fitParser'}, ended_at=ended_at)
        return self.metrics.get_operation_time(operation_id)

    def get_operation_time(self, operation_id: str) -> Optional[float]:
        return self.metrics.get_operation_time(operation_id)


@dataclass
class StateAdapters:
    file_state: FileStateAdapter
    settings: SettingsAdapter
    performance: PerformanceAdapter


def create_state_adapters(store, tracker: Optional[OperationTracker] = None,
                          metrics: Optional[MetricsRecorder] = None, settings=None,
                          dispatcher: Optional[LoopDispatcher] = None) -> StateAdapters:
    dispatcher = dispatcher or LoopDispatcher()
    return StateAdapters(
        file_state=FileStateAdapter(store, tracker or OperationTracker(store), dispatcher=dispatcher),
        settings=SettingsAdapter(store, settings, dispatcher),
        performance=PerformanceAdapter(metrics or MetricsRecorder(store), dispatcher),
    )


class FitIntegration:
    """Owns the decoder/state wiring and the decode-and-publish entry point."""

    def __init__(self, store, decoder, tracker: Optional[OperationTracker] = None,
                 metrics: Optional[MetricsRecorder] = None, settings=None,
                 adapters: Optional[StateAdapters] = None):
        self.store = store
        self.decoder = decoder
        self.tracker = tracker or OperationTracker(store)
        self.metrics = metrics or MetricsRecorder(store)
        self.settings = settings
        self._adapters_override = adapters
        self.dispatcher = LoopDispatcher()
        self._init_task: Optional[asyncio.Task] = None
        self.wired = False

    async def ensure_state_integration(self) -> Result:
        """Wire the decoder once; concurrent callers share one in-flight task."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> Result:
        hook = getattr(self.decoder, 'initialize_state_management', None)
        if not callable(hook):
            return Result.failure(
                ErrorKind.INTEGRATION,
                "decoder has no initialize_state_management hook",
            ).log(logger, "Skipping FIT decoder state integration")

        self.dispatcher.bind(asyncio.get_running_loop())
        try:
            adapters = self._adapters_override or create_state_adapters(
                self.store, self.tracker, self.metrics, self.settings, self.dispatcher
            )
            hook(adapters)
        except Exception as exc:
            return Result.failure(ErrorKind.INTEGRATION, str(exc)).log(
                logger, "Skipping FIT decoder state integration"
            )

        self._seed_decoder_settings()
        self.wired = True
        logger.info("FIT decoder state management initialized")
        return Result.success(adapters)

    def _seed_decoder_settings(self) -> None:
        if self.store.get('settings.decoder') is not None or not hasattr(self.decoder, 'get_current_options'):
            return
        try:
            options = self.decoder.get_current_options()
        except Exception as exc:
            Result.failure(ErrorKind.INTEGRATION, str(exc)).log(
                logger, "Could not seed decoder settings"
            )
            return
        self.store.set('settings.decoder', options, source='FitIntegration')

    def reset(self) -> None:
        """Forget the memoized wiring so the next ensure call runs again."""
        self._init_task = None
        self.wired = False

    async def decode_fit_file_with_state(self, source, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Decode ``source`` in a worker thread and publish the outcome under ``global_data`` / ``current_file``."""
        await self.ensure_state_integration()
        try:
            result = await asyncio.to_thread(self.decoder.decode_file, source, options)
        except Exception as exc:
            logger.exception("Unexpected error decoding %s", source)
            self._publish_error(describe_error(exc)['message'])
            return {'error': str(exc), 'details': type(exc).__name__}

        if isinstance(result, dict) and 'error' not in result:
            self.store.set('global_data', {**result, 'file_path': str(source)}, source='FitIntegration')
            self.store.set('current_file.status', 'loaded', source='FitIntegration')
            self.store.set('current_file.last_modified', _utc_now_iso(), source='FitIntegration')
        else:
            message = result.get('error') if isinstance(result, dict) else None
            self._publish_error(message or "Failed to decode file")
        return result

    def _publish_error(self, message: str) -> None:
        self.store.set('current_file.status', 'error', source='FitIntegration')
        self.store.set(
            'current_file.error',
            {'message': message, 'timestamp': _utc_now_iso()},
            source='FitIntegration',
        )

    # ── Decoder options ──────────────────────────────────────────────────
    def get_decoder_options(self) -> Dict[str, Any]:
        return self.decoder.get_current_options()

    def update_decoder_options(self, new_options) -> Dict[str, Any]:
        result = self.decoder.update_options(new_options)
        if result.get('success'):
            self.store.set('settings.decoder', result['options'], source='FitIntegration')
        return result

    def reset_decoder_options(self) -> Dict[str, Any]:
        result = self.decoder.reset_options()
        if result.get('success'):
            self.store.set('settings.decoder', result['options'], source='FitIntegration')
        return result


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
