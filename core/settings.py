"""Per-category application settings (theme, units, chart options, ...).

Scalar categories occupy one storage key. Object categories are spread over
``<prefix><field>`` keys, one per field, so a single field can be changed
without rewriting the category. Every successful write is mirrored into the
state store at ``settings.<category>`` for reactive consumers.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Dict, Optional

from constants import (
    CHART_FIELD_VISIBILITY_KEY,
    LEGACY_CHART_FIELD_PREFIX,
    LEGACY_THEME_KEY,
    SETTINGS_MIGRATION_KEY,
    SETTINGS_MIGRATION_VERSION,
    SETTINGS_SCHEMA,
    THEME_CHOICES,
)

logger = logging.getLogger(__name__)

FIELD_VISIBILITY_VALUES = ('visible', 'hidden')


def _validate(category: str, value, key: Optional[str]) -> bool:
    schema = SETTINGS_SCHEMA[category]
    if schema['type'] == 'object':
        return key is not None or isinstance(value, dict)
    if schema['type'] == 'boolean':
        return isinstance(value, bool)
    if category == 'theme':
        return value in THEME_CHOICES
    return isinstance(value, str)


def _decode(raw: str):
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        # Plain strings ("hidden", "metric") are stored unquoted
        return raw


def _encode(value) -> str:
    if not isinstance(value, str):
        return json.dumps(value)
    try:
        json.loads(value)
    except ValueError:
        return value
    # "10", "true", "null" and the like would read back as other types
    return json.dumps(value)


def normalize_chart_settings(settings) -> Dict[str, Any]:
    safe = dict(settings) if isinstance(settings, dict) else {}
    visibility = safe.get(CHART_FIELD_VISIBILITY_KEY)
    safe[CHART_FIELD_VISIBILITY_KEY] = dict(visibility) if isinstance(visibility, dict) else {}
    return safe


class SettingsManager:
    """Validated settings persisted through the key-value side-channel."""

    def __init__(self, storage, store=None, migration_version: str = SETTINGS_MIGRATION_VERSION):
        self.storage = storage
        self.store = store
        self.migration_version = migration_version
        self.initialized = False

    def initialize(self) -> None:
        if self.initialized:
            return
        self.migrate_settings()
        if self.store is not None:
            snapshot = {category: self.get_setting(category) for category in SETTINGS_SCHEMA}
            snapshot['chart'] = normalize_chart_settings(snapshot.get('chart'))
            snapshot['migrationVersion'] = self.migration_version
            snapshot['lastModified'] = time.time()
            self.store.set('settings', snapshot, source='SettingsManager.initialize')
        self.initialized = True
        logger.info("Settings initialized (version %s)", self.migration_version)

    # ── Reads ────────────────────────────────────────────────────────────
    def get_setting(self, category: str, key: Optional[str] = None):
        schema = SETTINGS_SCHEMA.get(category)
        if schema is None:
            logger.warning("Unknown setting category: %s", category)
            return None

        default = copy.deepcopy(schema['default'])
        try:
            if schema['type'] == 'object':
                prefix = schema['key']
                if key is not None:
                    raw = self.storage.get_item(prefix + key)
                    if raw is None:
                        return default.get(key)
                    return _decode(raw)

                stored = {}
                for storage_key in self.storage.keys(prefix):
                    raw = self.storage.get_item(storage_key)
                    if raw is not None:
                        stored[storage_key[len(prefix):]] = _decode(raw)
                return {**default, **stored}

            raw = self.storage.get_item(schema['key'])
            if raw is None:
                return default
            if schema['type'] == 'boolean':
                return raw == 'true'
            if category == 'theme' and raw not in THEME_CHOICES:
                logger.warning("Ignoring invalid stored theme %r", raw)
                return default
            return raw
        except Exception as exc:
            logger.warning("Error reading setting %s: %s", category, exc)
            return default if key is None or not isinstance(default, dict) else default.get(key)

    # ── Writes ───────────────────────────────────────────────────────────
    def set_setting(self, category: str, value, key: Optional[str] = None) -> bool:
        schema = SETTINGS_SCHEMA.get(category)
        if schema is None:
            logger.warning("Unknown setting category: %s", category)
            return False
        if not _validate(category, value, key):
            logger.warning("Invalid value for setting %s: %r", category, value)
            return False

        try:
            if schema['type'] == 'object':
                prefix = schema['key']
                if key is not None:
                    self.storage.set_item(prefix + key, _encode(value))
                else:
                    for stale_key in self.storage.keys(prefix):
                        if stale_key[len(prefix):] not in value:
                            self.storage.remove_item(stale_key)
                    for field_name, field_value in value.items():
                        self.storage.set_item(prefix + field_name, _encode(field_value))
            elif schema['type'] == 'boolean':
                self.storage.set_item(schema['key'], 'true' if value else 'false')
            else:
                self.storage.set_item(schema['key'], value)
        except Exception as exc:
            logger.warning("Error saving setting %s: %s", category, exc)
            return False

        self._mirror(category, 'SettingsManager.set_setting')
        return True

    def reset_settings(self, category: Optional[str] = None) -> bool:
        if category is None:
            return all([self.reset_settings(name) for name in SETTINGS_SCHEMA])

        schema = SETTINGS_SCHEMA.get(category)
        if schema is None:
            logger.warning("Unknown setting category: %s", category)
            return False
        try:
            if schema['type'] == 'object':
                for storage_key in self.storage.keys(schema['key']):
                    self.storage.remove_item(storage_key)
            else:
                self.storage.remove_item(schema['key'])
        except Exception as exc:
            logger.warning("Error resetting setting %s: %s", category, exc)
            return False

        self._mirror(category, 'SettingsManager.reset_settings')
        return True

    def _mirror(self, category: str, source: str) -> None:
        if self.store is None:
            return
        value = self.get_setting(category)
        if category == 'chart':
            value = normalize_chart_settings(value)
        self.store.set('settings.{0}'.format(category), value, source=source)
        self.store.set('settings.lastModified', time.time(), source=source)

    # ── Import / export ──────────────────────────────────────────────────
    def export_settings(self) -> Dict[str, Any]:
        return {
            'settings': {category: self.get_setting(category) for category in SETTINGS_SCHEMA},
            'timestamp': time.time(),
            'version': self.migration_version,
        }

    def import_settings(self, payload) -> bool:
        if not isinstance(payload, dict) or not isinstance(payload.get('settings'), dict):
            logger.warning("Ignoring settings import without a settings object")
            return False

        all_ok = True
        for category, value in payload['settings'].items():
            if category not in SETTINGS_SCHEMA:
                # Forward compatible: newer exports may carry categories we don't know
                logger.debug("Skipping unknown imported category %s", category)
                continue
            if not self.set_setting(category, value):
                all_ok = False
        return all_ok

    # ── Migration ────────────────────────────────────────────────────────
    def migrate_settings(self) -> None:
        try:
            current = self.storage.get_item(SETTINGS_MIGRATION_KEY)
            if current == self.migration_version:
                return
            if not current:
                self._migrate_from_legacy()
            self.storage.set_item(SETTINGS_MIGRATION_KEY, self.migration_version)
            logger.info("Settings migrated to version %s", self.migration_version)
        except Exception as exc:
            logger.warning("Settings migration failed: %s", exc)

    def _migrate_from_legacy(self) -> None:
        theme_key = SETTINGS_SCHEMA['theme']['key']
        old_theme = self.storage.get_item(LEGACY_THEME_KEY)
        if old_theme and not self.storage.get_item(theme_key):
            self.storage.set_item(theme_key, old_theme)
            self.storage.remove_item(LEGACY_THEME_KEY)

    # ── Chart helpers ────────────────────────────────────────────────────
    def get_chart_settings(self) -> Dict[str, Any]:
        return normalize_chart_settings(self.get_setting('chart'))

    def get_chart_setting(self, key: str):
        return self.get_setting('chart', key)

    def set_chart_setting(self, key: str, value) -> bool:
        return self.set_setting('chart', value, key)

    def get_chart_field_visibility(self, field_key: str, default: str = 'visible') -> str:
        visibility = self.get_chart_settings()[CHART_FIELD_VISIBILITY_KEY]
        current = visibility.get(field_key)
        if current in FIELD_VISIBILITY_VALUES:
            return current

        legacy_key = LEGACY_CHART_FIELD_PREFIX + field_key
        try:
            legacy = self.storage.get_item(legacy_key)
        except Exception as exc:
            logger.warning("Unable to read legacy chart visibility for %s: %s", field_key, exc)
            return default
        if legacy in FIELD_VISIBILITY_VALUES:
            if self.set_chart_setting(CHART_FIELD_VISIBILITY_KEY, {**visibility, field_key: legacy}):
                self.storage.remove_item(legacy_key)
            return legacy
        return default

    def set_chart_field_visibility(self, field_key: str, value: str) -> bool:
        if value not in FIELD_VISIBILITY_VALUES:
            logger.warning("Invalid chart field visibility %r for %s", value, field_key)
            return False
        visibility = self.get_chart_settings()[CHART_FIELD_VISIBILITY_KEY]
        return self.set_chart_setting(CHART_FIELD_VISIBILITY_KEY, {**visibility, field_key: value})
