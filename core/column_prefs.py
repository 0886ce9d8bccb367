"""Layered column-visibility preferences.

Three tiers per category, highest first:

1. per-document override  ``<category>ColSel_<url-encoded document id>``
2. global default         ``<category>ColSel_global_default``
3. built-in baseline      every known key, named keys first

Saved lists are always re-read against the *current* key universe, so keys
that no longer exist are dropped silently. Saving a selection that matches the
effective default removes the override instead of storing it, so "has this
document been customized" stays a simple existence check.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

from constants import (
    COLUMN_PREFS_GLOBAL_SUFFIX,
    COLUMN_PREFS_NO_DOCUMENT,
    COLUMN_PREFS_SUFFIX,
)

logger = logging.getLogger(__name__)

_NUMBERED_KEY = re.compile(r'^\d+$')


def is_numbered_key(key: str) -> bool:
    """Purely positional keys ("0", "1", ...) as opposed to named fields."""
    return bool(_NUMBERED_KEY.match(str(key)))


def order_named_first(keys: Iterable[str]) -> List[str]:
    """Stable partition: named keys, then numbered-only keys."""
    named: List[str] = []
    numbered: List[str] = []
    for key in keys:
        (numbered if is_numbered_key(key) else named).append(key)
    return named + numbered


def normalize_keys(keys: Optional[Iterable[str]], all_known_keys: Iterable[str]) -> List[str]:
    """Filter ``keys`` to the known universe, dedupe, and apply named-first ordering."""
    if not keys:
        return []
    known = set(all_known_keys)
    seen = set()
    kept: List[str] = []
    for key in keys:
        if key in known and key not in seen:
            seen.add(key)
            kept.append(key)
    return order_named_first(kept)


def diff(baseline: Optional[Iterable[str]], current: Optional[Iterable[str]]) -> Dict[str, int]:
    """Membership-only difference counts for status display."""
    base_set = set(baseline or ())
    current_set = set(current or ())
    return {
        'added': len(current_set - base_set),
        'removed': len(base_set - current_set),
    }


def document_key_for_path(file_path) -> str:
    """Stable document identity for a file: its resolved absolute path."""
    if not file_path:
        return ''
    try:
        return str(Path(str(file_path)).expanduser().resolve())
    except (OSError, RuntimeError):
        return str(file_path)


@dataclass(frozen=True)
class PreferenceStatus:
    """What the column modal shows beneath the title."""
    mode: str            # 'global' | 'default' | 'saved' | 'custom'
    text: str
    hint: str = ''
    has_global_default: bool = False
    has_override: bool = False


class SettingsResolver:
    """Resolve and persist column preferences through a key-value side-channel."""

    def __init__(self, storage):
        self.storage = storage

    # ── Keys ─────────────────────────────────────────────────────────────
    @staticmethod
    def storage_key(category: str, document_key: Optional[str]) -> str:
        if document_key:
            return "{0}{1}{2}".format(category, COLUMN_PREFS_SUFFIX, quote(str(document_key), safe=''))
        return "{0}{1}{2}".format(category, COLUMN_PREFS_SUFFIX, COLUMN_PREFS_NO_DOCUMENT)

    @staticmethod
    def global_key(category: str) -> str:
        return "{0}{1}{2}".format(category, COLUMN_PREFS_SUFFIX, COLUMN_PREFS_GLOBAL_SUFFIX)

    # ── Raw tier access ──────────────────────────────────────────────────
    def _load(self, key: str) -> Optional[List[str]]:
        """Read a saved list; anything unreadable counts as absent."""
        try:
            raw = self.storage.get_item(key)
        except Exception as exc:
            logger.warning("Unable to read column preferences %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring corrupt column preferences at %s", key)
            return None
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            logger.warning("Ignoring malformed column preferences at %s", key)
            return None
        return value

    def _store(self, key: str, keys: Sequence[str]) -> bool:
        try:
            self.storage.set_item(key, json.dumps(list(keys)))
        except Exception as exc:
            logger.warning("Unable to save column preferences %s: %s", key, exc)
            return False
        return True

    def _remove(self, key: str) -> bool:
        try:
            self.storage.remove_item(key)
        except Exception as exc:
            logger.warning("Unable to remove column preferences %s: %s", key, exc)
            return False
        return True

    def load_override(self, category: str, document_key: Optional[str]) -> Optional[List[str]]:
        return self._load(self.storage_key(category, document_key))

    def load_global_default(self, category: str) -> Optional[List[str]]:
        return self._load(self.global_key(category))

    def has_override(self, category: str, document_key: Optional[str]) -> bool:
        return bool(self.load_override(category, document_key))

    def has_global_default(self, category: str) -> bool:
        return bool(self.load_global_default(category))

    # ── Resolution ───────────────────────────────────────────────────────
    @staticmethod
    def baseline(all_known_keys: Iterable[str]) -> List[str]:
        return order_named_first(dict.fromkeys(all_known_keys))

    def effective_default(self, category: str, all_known_keys: Sequence[str]) -> List[str]:
        """Global default when one is set and still matches something, else the baseline."""
        global_keys = normalize_keys(self.load_global_default(category), all_known_keys)
        if global_keys:
            return global_keys
        return self.baseline(all_known_keys)

    def resolve(self, category: str, document_key: Optional[str], all_known_keys: Sequence[str]) -> List[str]:
        override = normalize_keys(self.load_override(category, document_key), all_known_keys)
        if override:
            return override
        return self.effective_default(category, all_known_keys)

    # ── Writes ───────────────────────────────────────────────────────────
    def save(self, category: str, document_key: Optional[str], ordered_keys: Sequence[str],
             all_known_keys: Optional[Sequence[str]] = None) -> bool:
        """Persist a per-document selection, or clear it when it equals the default.

        Without ``all_known_keys`` the built-in baseline is unknown, so only a
        global default can make the selection count as "default".

        Returns True when an override is stored, False when none remains.
        """
        key = self.storage_key(category, document_key)
        if all_known_keys is not None:
            default = self.effective_default(category, all_known_keys)
            selection = normalize_keys(ordered_keys, all_known_keys)
        else:
            global_keys = self.load_global_default(category)
            default = order_named_first(dict.fromkeys(global_keys)) if global_keys else None
            selection = order_named_first(dict.fromkeys(ordered_keys))

        if default is not None and selection == default:
            self._remove(key)
            return False
        return self._store(key, selection)

    def clear_override(self, category: str, document_key: Optional[str]) -> bool:
        return self._remove(self.storage_key(category, document_key))

    def set_global_default(self, category: str, ordered_keys: Sequence[str]) -> bool:
        # Existing per-document overrides are left untouched.
        return self._store(self.global_key(category), list(dict.fromkeys(ordered_keys)))

    def clear_global_default(self, category: str) -> bool:
        return self._remove(self.global_key(category))

    diff = staticmethod(diff)

    # ── Modal status line ────────────────────────────────────────────────
    def describe(self, category: str, document_key: Optional[str], all_known_keys: Sequence[str],
                 current: Sequence[str]) -> PreferenceStatus:
        global_keys = normalize_keys(self.load_global_default(category), all_known_keys)
        default_keys = self.effective_default(category, all_known_keys)
        saved_keys = normalize_keys(self.load_override(category, document_key), all_known_keys)

        has_global = bool(global_keys)
        override_active = bool(saved_keys) and not same_selection(saved_keys, default_keys, all_known_keys)

        if same_selection(default_keys, current, all_known_keys):
            return PreferenceStatus(
                mode='global' if has_global else 'default',
                text='This file is using: Default (Global)' if has_global else 'This file is using: Default',
                hint='(a file override existed and was cleared)' if override_active else '',
                has_global_default=has_global,
                has_override=override_active,
            )

        is_saved = override_active and same_selection(saved_keys, current, all_known_keys)
        hint = ''
        if has_global:
            counts = diff(global_keys, normalize_keys(current, all_known_keys))
            parts = []
            if counts['added']:
                parts.append('+{0}'.format(counts['added']))
            if counts['removed']:
                parts.append('-{0}'.format(counts['removed']))
            if parts:
                hint = 'vs global default: {0}'.format(' '.join(parts))

        return PreferenceStatus(
            mode='saved' if is_saved else 'custom',
            text='This file is using: Saved selection' if is_saved else 'This file is using: Custom selection',
            hint=hint,
            has_global_default=has_global,
            has_override=override_active,
        )


def same_selection(a: Optional[Sequence[str]], b: Optional[Sequence[str]], all_known_keys: Sequence[str]) -> bool:
    """Equal in membership and order once both are normalized to the key universe."""
    return normalize_keys(a, all_known_keys) == normalize_keys(b, all_known_keys)
