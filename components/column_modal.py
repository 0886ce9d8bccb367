"""
components/column_modal.py
──────────────────────────
Summary column picker.

Owns:
  • Column checkbox list with filter + select all
  • Status line (default / global default / saved / custom)
  • Reset, make-global-default and clear-global-default actions

Does NOT own:
  • Preference storage (SettingsResolver, injected)
  • Table rendering (on_columns_changed_cb, injected)

Every change is saved for the current file straight away.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from nicegui import ui

from constants import SUMMARY_CATEGORY
from core.column_prefs import SettingsResolver, order_named_first


class ColumnPickerModal:
    """Dialog that edits the visible summary columns for one document."""

    def __init__(self, resolver: SettingsResolver, on_columns_changed_cb: Callable[[List[str]], None],
                 category: str = SUMMARY_CATEGORY):
        """
        Parameters
        ----------
        resolver : SettingsResolver
            Injected preference resolver.
        on_columns_changed_cb : callable
            Called with the new ordered column list after every change.
        category : str
            Preference namespace, ``summary`` for the summary table.
        """
        self.resolver = resolver
        self.on_columns_changed_cb = on_columns_changed_cb
        self.category = category

        self.document_key: Optional[str] = None
        self.all_keys: List[str] = []
        self.visible: List[str] = []
        self.filter_text = ''

        # Modal refs
        self.dialog = None
        self.status_label = None
        self.status_hint_label = None
        self.global_badge = None
        self.file_badge = None
        self.selected_count_label = None
        self.select_all_button = None
        self.column_list = None

    # ── Data ────────────────────────────────────────────────────────────
    def load(self, document_key: Optional[str], all_keys: List[str]) -> List[str]:
        """Point the modal at a document and return its resolved columns."""
        self.document_key = document_key
        self.all_keys = order_named_first(all_keys)
        self.visible = self.resolver.resolve(self.category, document_key, self.all_keys)
        return list(self.visible)

    def _apply(self, columns: List[str]):
        wanted = set(columns)
        self.visible = [key for key in self.all_keys if key in wanted]
        self.resolver.save(self.category, self.document_key, self.visible, self.all_keys)
        self.refresh()
        self.on_columns_changed_cb(list(self.visible))

    # ── UI ──────────────────────────────────────────────────────────────
    def build(self):
        self.dialog = ui.dialog()
        with self.dialog, ui.card().classes(
            'relative bg-zinc-900/98 border border-zinc-700/90 rounded-2xl p-6 w-[520px] max-w-[92vw] shadow-2xl'
        ):
            ui.button(icon='close', on_click=self.dialog.close, color=None).props(
                'flat round dense no-ripple'
            ).style('color: #9ca3af !important; position: absolute; top: 12px; right: 12px; z-index: 10;')

            with ui.column().classes('w-full gap-1 mb-3'):
                ui.label('Select Summary Columns').classes('text-xl font-bold text-white tracking-tight')
                self.status_label = ui.label('').classes('text-sm text-zinc-300')
                self.status_hint_label = ui.label('').classes('text-xs text-zinc-500')

            with ui.row().classes('items-center gap-2 mb-2'):
                self.global_badge = ui.badge('Global default').props('outline')
                self.file_badge = ui.badge('This file override').props('outline')

            ui.label(
                'Your global default is used for files with no saved selection. '
                'Changes made here are saved for this file automatically.'
            ).classes('text-xs text-zinc-500 mb-2')

            with ui.row().classes('w-full gap-2 mb-3'):
                ui.button('Reset to Default', on_click=self.handle_reset).props('outline no-caps').tooltip(
                    'Stop overriding this file and go back to the default column selection'
                )
                ui.button('Make Global Default', on_click=self.handle_make_global_default).props('outline no-caps').tooltip(
                    'Use this selection as the default for future files'
                )
                ui.button('Clear Global Default', on_click=self.handle_clear_global_default).props('outline no-caps').tooltip(
                    'Remove the saved global default'
                )

            with ui.row().classes('w-full items-center justify-between'):
                ui.input(placeholder='Filter columns', on_change=self.handle_filter).props('dense clearable').classes('grow')
                self.select_all_button = ui.button('Select All', on_click=self.handle_select_all).props('flat no-caps')
            self.selected_count_label = ui.label('').classes('text-xs text-zinc-500')

            self.column_list = ui.column().classes('w-full gap-0 max-h-[50vh] overflow-auto')

            with ui.row().classes('w-full justify-end mt-3'):
                ui.button('Close', on_click=self.dialog.close).props('flat no-caps').tooltip(
                    'Changes are saved automatically'
                )

    def open(self):
        if self.dialog is None:
            self.build()
        self.refresh()
        self.dialog.open()

    def refresh(self):
        if self.column_list is None:
            return

        status = self.resolver.describe(self.category, self.document_key, self.all_keys, self.visible)
        self.status_label.set_text(status.text)
        self.status_hint_label.set_text(status.hint)
        self.global_badge.props(f'color={"green" if status.has_global_default else "grey"}')
        self.file_badge.props(f'color={"orange" if status.has_override else "grey"}')

        all_selected = len(self.visible) == len(self.all_keys)
        self.select_all_button.set_text('Deselect All' if all_selected else 'Select All')
        self.selected_count_label.set_text(f'{len(self.visible)} of {len(self.all_keys)} selected')

        needle = self.filter_text.lower()
        shown = [key for key in self.all_keys if needle in key.lower()] if needle else self.all_keys
        self.column_list.clear()
        with self.column_list:
            ui.checkbox('Type', value=True).props('dense disable')
            if not shown:
                ui.label('No matching columns').classes('text-sm text-zinc-500')
            for key in shown:
                ui.checkbox(
                    key,
                    value=key in self.visible,
                    on_change=lambda e, k=key: self.handle_toggle(k, e.value),
                ).props('dense')

    # ── Handlers ────────────────────────────────────────────────────────
    def handle_toggle(self, key: str, checked: bool):
        columns = [k for k in self.visible if k != key]
        if checked:
            columns.append(key)
        self._apply(columns)

    def handle_select_all(self):
        self._apply([] if len(self.visible) == len(self.all_keys) else list(self.all_keys))

    def handle_filter(self, e):
        self.filter_text = e.value or ''
        self.refresh()

    def handle_reset(self):
        self._apply(self.resolver.effective_default(self.category, self.all_keys))

    def handle_make_global_default(self):
        self.resolver.set_global_default(self.category, self.visible)
        # The file override is now redundant; saving clears it.
        self._apply(self.visible)
        ui.notify('Saved as global default', type='positive')

    def handle_clear_global_default(self):
        self.resolver.clear_global_default(self.category)
        self._apply(self.visible)
