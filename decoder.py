"""FIT decoding with optional state reporting.

The decoder works on its own. When :meth:`FitDecoder.initialize_state_management`
has been given adapters it also reports progress, errors, timings and decoder
options through them. A failing adapter never fails the decode.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import fitparse

from constants import DEFAULT_DECODER_OPTIONS

logger = logging.getLogger(__name__)

# Unknown message number -> (label, {field number: field name})
UNKNOWN_MESSAGE_LABELS = {
    104: ('device_status', {
        253: 'timestamp',
        0: 'battery_voltage',
        2: 'battery_level',
        3: 'temperature',
        4: 'field_4',
    }),
}


class FitDecodeError(Exception):
    """Decoding failed in a way the caller can show to the user."""

    def __init__(self, message: str, details=None, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.metadata = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'category': 'fit_parsing',
            **(metadata or {}),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': type(self).__name__,
            'message': self.message,
            'details': self.details,
            'metadata': self.metadata,
        }


def default_decoder_options() -> Dict[str, Any]:
    return dict(DEFAULT_DECODER_OPTIONS)


def validate_decoder_options(options) -> Tuple[bool, List[str], Dict[str, Any]]:
    """Check ``options`` against the defaults' types.

    Returns (is_valid, errors, validated). ``validated`` always holds a full
    option set: defaults plus every well-typed value that was supplied.
    """
    errors: List[str] = []
    validated = default_decoder_options()
    if isinstance(options, dict):
        for key, default in DEFAULT_DECODER_OPTIONS.items():
            if key not in options:
                continue
            value = options[key]
            if type(value) is not type(default):
                errors.append(f"{key} must be of type {type(default).__name__}, got {type(value).__name__}")
            else:
                validated[key] = value
    return not errors, errors, validated


def _open_fit_file(source, options: Dict[str, Any]):
    data_processor = fitparse.StandardUnitsDataProcessor() if options.get('standard_units') else None
    return fitparse.FitFile(source, check_crc=options.get('check_crc', True), data_processor=data_processor)


def _label_unknown(name: str, values: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """Give well-known unknown messages a readable name and field names."""
    if not name.startswith('unknown_'):
        return name, values
    try:
        number = int(name[len('unknown_'):])
    except ValueError:
        return name, values
    mapping = UNKNOWN_MESSAGE_LABELS.get(number)
    if mapping is None:
        return name, values
    label, fields = mapping
    return label, {field_name: values.get(f'unknown_{field_number}') for field_number, field_name in fields.items()}


class FitDecoder:
    """Decode FIT files into ``<message>_mesgs`` lists of plain dicts."""

    def __init__(self, fit_file_factory: Callable[[Any, Dict[str, Any]], Any] = _open_fit_file):
        self._open = fit_file_factory
        self.file_state = None
        self.settings = None
        self.performance = None
        self._fallback_options = default_decoder_options()

    def initialize_state_management(self, adapters) -> None:
        """Attach the adapters produced by ``fit_integration.create_state_adapters``."""
        self.file_state = getattr(adapters, 'file_state', None)
        self.settings = getattr(adapters, 'settings', None)
        self.performance = getattr(adapters, 'performance', None)
        logger.info("FIT decoder state management initialized")

    # ── Adapter calls (never raise) ──────────────────────────────────────
    def _progress(self, value: float) -> None:
        if self.file_state is None:
            return
        try:
            self.file_state.update_loading_progress(value)
        except Exception as exc:
            logger.warning("Failed to update loading progress: %s", exc)

    def _report_error(self, error: Exception) -> None:
        if self.file_state is None:
            return
        try:
            self.file_state.handle_file_loading_error(error)
        except Exception as exc:
            logger.warning("Failed to update error state: %s", exc)

    def _timer(self, action: str, operation_id: str):
        if self.performance is None:
            return None
        try:
            return getattr(self.performance, action)(operation_id)
        except Exception as exc:
            logger.debug("Performance adapter %s(%s) failed: %s", action, operation_id, exc)
            return None

    # ── Decoder options ──────────────────────────────────────────────────
    def get_current_options(self) -> Dict[str, Any]:
        stored = None
        if self.settings is not None:
            try:
                stored = self.settings.get_category('decoder')
            except Exception as exc:
                logger.warning("Failed to read decoder options from settings: %s", exc)
        if stored is None:
            stored = self._fallback_options
        _, _, validated = validate_decoder_options({**default_decoder_options(), **stored})
        return validated

    def update_options(self, new_options) -> Dict[str, Any]:
        is_valid, errors, validated = validate_decoder_options(new_options)
        if not is_valid:
            logger.error("Invalid decoder options: %s", "; ".join(errors))
            return {'success': False, 'errors': errors}

        if self.settings is not None:
            try:
                self.settings.update_category('decoder', validated)
                return {'success': True, 'options': validated}
            except Exception as exc:
                logger.warning("Failed to store decoder options in settings, keeping them locally: %s", exc)
        self._fallback_options = validated
        return {'success': True, 'options': validated, 'fallback': True}

    def reset_options(self) -> Dict[str, Any]:
        return self.update_options(default_decoder_options())

    # ── Decoding ─────────────────────────────────────────────────────────
    def decode_file(self, source, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Decode ``source`` (path, bytes, or file object).

        Returns the message lists on success, ``{'error': ..., 'details': ...}``
        otherwise. Progress is reported at 10/30/50/70/90/100.
        """
        operation_id = f"fitFile_decode_{time.time_ns()}"
        self._timer('start_timer', operation_id)
        self._progress(10)

        if not isinstance(source, (str, bytes, bytearray, os.PathLike)) and not hasattr(source, 'read'):
            error = FitDecodeError(f"Input is not a FIT file path, bytes or file object. Received type: {type(source).__name__}.")
            logger.error(error.message)
            self._report_error(error)
            self._timer('end_timer', operation_id)
            return {'error': error.message, 'details': error.details}

        try:
            read_options = {**self.get_current_options(), **(options or {})}
            self._progress(30)

            try:
                fit_file = self._open(source, read_options)
            except fitparse.FitParseError as exc:
                raise FitDecodeError(f"FIT file integrity check failed. Details: {exc}", str(exc)) from exc
            self._progress(50)

            messages: Dict[str, List[Dict[str, Any]]] = {}
            self._progress(70)
            try:
                for message in fit_file.get_messages():
                    name = message.name
                    values = message.get_values()
                    if name.startswith('unknown_'):
                        if not read_options.get('include_unknown', True):
                            continue
                        if read_options.get('label_unknown', True):
                            name, values = _label_unknown(name, values)
                    messages.setdefault(f'{name}_mesgs', []).append(values)
            except fitparse.FitParseError as exc:
                raise FitDecodeError("Decoding errors occurred", str(exc)) from exc

            if not messages:
                raise FitDecodeError("No valid messages decoded, FIT file might be corrupted.")
            self._progress(90)

            if self.file_state is not None:
                try:
                    self.file_state.update_loading_progress(100)
                    self.file_state.handle_file_loaded({
                        'messages': messages,
                        'metadata': {
                            'record_count': self.file_state.get_record_count(messages),
                            'decoding_options': read_options,
                            'processing_time': self._timer('get_operation_time', operation_id),
                        },
                    })
                except Exception as exc:
                    logger.warning("Failed to update success state: %s", exc)

            logger.info("FIT file decoded: %d message types", len(messages))
            self._timer('end_timer', operation_id)
            return messages

        except FitDecodeError as exc:
            logger.error("%s", exc.message)
            self._report_error(exc)
            self._timer('end_timer', operation_id)
            return {'error': exc.message, 'details': exc.details}
        except Exception as exc:
            logger.exception("Failed to decode FIT file")
            self._report_error(exc)
            self._timer('end_timer', operation_id)
            return {'error': str(exc) or "Failed to decode file", 'details': type(exc).__name__}
