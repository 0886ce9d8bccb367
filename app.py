"""
FitView - FIT activity summary viewer
"""

# Standard library imports
import logging

# Third-party imports
import pyperclip
from nicegui import ui

# Local imports
from constants import FIT_DECODE_OPERATION_ID, OPERATIONS_NAMESPACE, THEME_CHOICES
from db import SettingsDatabase
from decoder import FitDecoder
from fit_integration import FitIntegration
from state import StateStore
from core.column_prefs import SettingsResolver, document_key_for_path
from core.computed import ComputedCache
from core.data_manager import SummaryData, format_cell
from core.metrics import MetricsRecorder
from core.operations import OperationTracker
from core.settings import SettingsManager
from components.column_modal import ColumnPickerModal

logger = logging.getLogger(__name__)

INITIAL_STATE = {
    'ui': {'sidebarCollapsed': False},
    'charts': {'controlsVisible': True, 'isRendering': False},
    'map': {'baseLayer': 'osm'},
    'current_file': {'status': 'idle'},
}


class MuteFrameworkNoise(logging.Filter):
    def filter(self, record):
        # Filter out the specific NiceGUI warning about event listeners
        return "Event listeners changed after initial definition" not in record.getMessage()


class FitViewApp:
    """Main application class: wires the state engine and draws the summary view."""

    def __init__(self, db_path=None):
        self.db = SettingsDatabase(db_path)

        # ── State engine ─────────────────────────────────────────────────
        self.store = StateStore(INITIAL_STATE)
        self.disable_persistence = self.store.enable_persistence(self.db)
        self.settings = SettingsManager(self.db, self.store)
        self.settings.initialize()
        self.tracker = OperationTracker(self.store)
        self.metrics = MetricsRecorder(self.store)
        self.integration = FitIntegration(
            self.store, FitDecoder(), tracker=self.tracker, metrics=self.metrics, settings=self.settings
        )

        # Summary rows are rebuilt lazily whenever a new file is published
        self.computed = ComputedCache(self.store)
        self.computed.register_computed(
            'summary_data',
            lambda: SummaryData(self.store.get('global_data')),
            deps=['global_data'],
        )

        self.resolver = SettingsResolver(self.db)
        self.column_modal = ColumnPickerModal(self.resolver, on_columns_changed_cb=self._on_columns_changed)

        self.visible_columns = []
        self.row_filter = 'All'

        # ── UI widget handles ────────────────────────────────────────────
        self.path_input = None
        self.progress_bar = None
        self.status_label = None
        self.row_filter_select = None
        self.summary_container = None

        self.store.subscribe(f'{OPERATIONS_NAMESPACE}.{FIT_DECODE_OPERATION_ID}', self._on_decode_operation)
        self.store.subscribe('current_file.status', self._on_file_status)

        self.build_ui()

    @property
    def summary(self) -> SummaryData:
        return self.computed.get_computed_value('summary_data') or SummaryData()

    # ── Layout ──────────────────────────────────────────────────────────
    def build_ui(self):
        """Construct the header bar and the summary panel."""
        theme = self.settings.get_setting('theme')
        self.dark_mode = ui.dark_mode(value=None if theme == 'auto' else theme == 'dark')

        with ui.header().classes('items-center gap-4 bg-zinc-900 px-4 py-2'):
            ui.label('FitView').classes('text-lg font-bold text-white')
            self.path_input = ui.input(placeholder='Path to a .fit file').props('dense dark clearable').classes('grow')
            ui.button('Open', icon='folder_open', on_click=self.handle_open).props('no-caps')
            ui.select(
                list(THEME_CHOICES),
                value=theme,
                on_change=self.handle_theme_change,
            ).props('dense dark').classes('w-28')

        with ui.column().classes('w-full p-4 gap-3'):
            self.progress_bar = ui.linear_progress(value=0, show_value=False).props('instant-feedback')
            self.progress_bar.set_visibility(False)
            self.status_label = ui.label('No file loaded').classes('text-sm text-zinc-400')

            with ui.row().classes('items-center gap-2'):
                self.row_filter_select = ui.select(['All'], value='All', on_change=self.handle_row_filter).props('dense')
                ui.button(icon='settings', on_click=self.column_modal.open).props('flat round dense').tooltip(
                    'Choose summary columns'
                )
                ui.button('Copy as CSV', icon='content_copy', on_click=self.copy_summary_to_clipboard).props(
                    'flat no-caps'
                )

            self.summary_container = ui.column().classes('w-full')

        self.column_modal.build()

    def render_summary(self):
        if self.summary_container is None:
            return
        self.summary_container.clear()
        summary = self.summary
        if not self.visible_columns:
            with self.summary_container:
                ui.label('No columns selected').classes('text-sm text-zinc-500')
            return

        frame = summary.to_frame(self.visible_columns, self.row_filter)
        columns = [{'name': name, 'label': name, 'field': name, 'align': 'left'} for name in frame.columns]
        rows = [
            {key: format_cell(value) for key, value in row.items()}
            for row in frame.to_dict('records')
        ]
        with self.summary_container:
            ui.table(columns=columns, rows=rows, row_key='Type').props('flat bordered dense').classes('w-full text-sm')

    # ── State callbacks ─────────────────────────────────────────────────
    def _on_decode_operation(self, operation):
        if not isinstance(operation, dict) or self.progress_bar is None:
            return
        status = operation.get('status')
        self.progress_bar.set_visibility(status == 'running')
        self.progress_bar.set_value((operation.get('progress') or 0) / 100.0)
        if status == 'failed':
            error = operation.get('error') or {}
            ui.notify(f"Decode failed: {error.get('message', 'unknown error')}", type='negative')

    def _on_file_status(self, status):
        if status != 'loaded':
            if status == 'error':
                error = self.store.get('current_file.error') or {}
                self.status_label.set_text(f"Error: {error.get('message', 'unknown error')}")
            return

        summary = self.summary
        document_key = document_key_for_path(summary.file_path)
        self.visible_columns = self.column_modal.load(document_key, summary.all_keys())
        self.row_filter = 'All'
        self.row_filter_select.set_options(summary.row_labels(), value='All')

        operation = self.tracker.get_operation(FIT_DECODE_OPERATION_ID) or {}
        duration_ms = operation.get('duration_ms')
        self.status_label.set_text(
            f"{summary.file_path} ({summary.get_record_count()} records"
            + (f", decoded in {duration_ms:.0f} ms)" if duration_ms is not None else ")")
        )
        self.render_summary()

    def _on_columns_changed(self, columns):
        self.visible_columns = columns
        self.render_summary()

    # ── Handlers ────────────────────────────────────────────────────────
    async def handle_open(self):
        path = (self.path_input.value or '').strip()
        if not path:
            ui.notify('Enter the path of a .fit file first', type='warning')
            return
        result = await self.integration.decode_fit_file_with_state(path)
        if 'error' not in result:
            ui.notify('File loaded', type='positive', timeout=2000)

    def handle_row_filter(self, e):
        self.row_filter = e.value or 'All'
        self.render_summary()

    def handle_theme_change(self, e):
        if self.settings.set_setting('theme', e.value):
            self.dark_mode.set_value(None if e.value == 'auto' else e.value == 'dark')

    def copy_summary_to_clipboard(self):
        """Copy the visible summary table to the clipboard in CSV format."""
        if not self.visible_columns:
            ui.notify('Nothing to copy', type='warning')
            return
        try:
            pyperclip.copy(self.summary.to_csv(self.visible_columns, self.row_filter))
        except pyperclip.PyperclipException as e:
            logger.warning("Clipboard copy failed: %s", e)
            ui.notify(f'Error copying summary: {e}', type='negative')
            return
        ui.notify(
            'Summary copied to clipboard!',
            color='#18181b',
            text_color='white',
            icon='check_circle',
            icon_color='green',
            timeout=2000,
            position='bottom',
        )


def main():
    """Application entry point."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Suppress known NiceGUI framework listener-churn warning noise
    nicegui_logger = logging.getLogger('nicegui')
    nicegui_logger.addFilter(MuteFrameworkNoise())

    FitViewApp()

    try:
        ui.run(
            native=True,
            window_size=(1200, 900),
            title="FitView",
            reload=False,
        )
    except KeyboardInterrupt:
        # Graceful terminal interrupt during local development.
        pass
    except RuntimeError as e:
        msg = str(e)
        if 'Cannot close a running event loop' in msg or 'this event loop is already running' in msg:
            # uvloop teardown can surface this after Ctrl+C; treat as graceful exit.
            pass
        else:
            raise


if __name__ == "__main__":
    main()
