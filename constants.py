"""Shared keys, defaults, and thresholds for the FitView state engine."""

from __future__ import annotations

import os
from typing import Any, Dict

# ── Storage ────────────────────────────────────────────────────────────────
DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".fitview", "settings.db")

# JSON blob holding the persisted slice of the state tree.
PERSISTED_STATE_KEY = "fitview_state"
PERSISTED_STATE_PATHS = ("ui", "charts.controlsVisible", "map.baseLayer")

# ── State store ────────────────────────────────────────────────────────────
MAX_HISTORY_SIZE = 50

# ── Operations / metrics ───────────────────────────────────────────────────
OPERATIONS_NAMESPACE = "operations"
METRICS_NAMESPACE = "metrics"
MAX_METRIC_SAMPLES = 100
SLOW_OPERATION_MS = 100.0
FIT_DECODE_OPERATION_ID = "fitFile:decode"

# ── Column preferences ─────────────────────────────────────────────────────
COLUMN_PREFS_SUFFIX = "ColSel_"
COLUMN_PREFS_GLOBAL_SUFFIX = "global_default"
COLUMN_PREFS_NO_DOCUMENT = "default"
SUMMARY_CATEGORY = "summary"
LABEL_COLUMN = "__row_label__"

# ── Settings ───────────────────────────────────────────────────────────────
SETTINGS_MIGRATION_VERSION = "1.0.0"
SETTINGS_MIGRATION_KEY = "settings_migration_version"
LEGACY_THEME_KEY = "theme"
CHART_FIELD_VISIBILITY_KEY = "fieldVisibility"
LEGACY_CHART_FIELD_PREFIX = "chartjs_field_"
THEME_CHOICES = ("light", "dark", "auto")

DEFAULT_DECODER_OPTIONS: Dict[str, Any] = {
    "check_crc": True,
    "standard_units": False,
    "include_unknown": True,
    "label_unknown": True,
}

# category -> storage key (or key prefix for object categories), type, default
SETTINGS_SCHEMA: Dict[str, Dict[str, Any]] = {
    "theme": {
        "key": "ffv-theme",
        "type": "string",
        "default": "dark",
    },
    "mapTheme": {
        "key": "ffv-map-theme-inverted",
        "type": "boolean",
        "default": True,
    },
    "chart": {
        "key": "chartjs_",
        "type": "object",
        "default": {},
    },
    "ui": {
        "key": "ui_",
        "type": "object",
        "default": {
            "showAdvancedControls": False,
            "compactMode": False,
            "animationsEnabled": True,
        },
    },
    "export": {
        "key": "export_",
        "type": "object",
        "default": {
            "format": "png",
            "quality": 0.9,
            "theme": "auto",
            "includeWatermark": False,
        },
    },
    "units": {
        "key": "units_",
        "type": "object",
        "default": {
            "distance": "metric",
            "temperature": "celsius",
            "time": "24h",
        },
    },
    "decoder": {
        "key": "decoder_",
        "type": "object",
        "default": DEFAULT_DECODER_OPTIONS,
    },
}
