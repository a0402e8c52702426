"""porttop - Main Textual application."""

import argparse
import logging
from collections.abc import Callable, Iterable
from queue import Empty, Queue

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Grid
from textual.css.query import NoMatches
from textual.message import Message
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Input, Label, Static

from porttop.config import TABLE_SOURCES, MonitorConfig
from porttop.coordinator import RefreshCoordinator
from porttop.errors import LocationUnavailable
from porttop.launcher import open_location
from porttop.logs import configure_logging
from porttop.models import COPY_HEADER, AnnotatedRow, ChangeState, ConnectionSnapshot
from porttop.monitor import ConnectionMonitor, MonitorUpdate, SnapshotUpdate, StatusUpdate
from porttop.policy import plan_kill

logger = logging.getLogger(__name__)

CHANGE_STYLES = {
    ChangeState.NEW: "bold green",
    ChangeState.CHANGED: "bold yellow",
}

# (label, key, width) in display order; a width of None fills the rest.
COLUMNS = [
    (" ", "mark", 1),
    ("Proto", "protocol", 5),
    ("Local Address", "local_address", 15),
    ("Port", "local_port", 6),
    ("Remote Address", "remote_address", 15),
    ("RPort", "remote_port", 6),
    ("State", "state", 12),
    ("PID", "pid", 7),
    ("Process", "process", 20),
    ("User", "owner", 16),
    ("Path", "path", None),
]

# Row keys of group header rows; connection rows are keyed by UniqueKey.
GROUP_ROW_PREFIX = "group:"


class StatsBar(Static):
    """Header widget showing connection counts and the status line."""

    DEFAULT_CSS = """
    StatsBar {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize the StatsBar."""
        super().__init__(*args, markup=False, **kwargs)
        self._total = 0
        self._tcp = 0
        self._udp = 0
        self._processes = 0
        self._auto_refresh = True
        self._status = "Ready"

    def on_mount(self) -> None:
        self._refresh_display()

    def update_stats(self, snapshot: ConnectionSnapshot) -> None:
        """Update the counters from a snapshot."""
        self._total = snapshot.total
        self._tcp = snapshot.tcp_count
        self._udp = snapshot.udp_count
        self._processes = snapshot.process_count
        self._refresh_display()

    def set_status(self, message: str) -> None:
        self._status = message
        self._refresh_display()

    def set_auto_refresh(self, enabled: bool) -> None:
        self._auto_refresh = enabled
        self._refresh_display()

    @property
    def status(self) -> str:
        return self._status

    def summary_text(self) -> str:
        auto = "on" if self._auto_refresh else "off"
        return (
            f"Connections: {self._total}  TCP: {self._tcp}  UDP: {self._udp}  "
            f"Processes: {self._processes}  Auto refresh: {auto}\n{self._status}"
        )

    def _refresh_display(self) -> None:
        self.update(self.summary_text())


class ConnectionTable(Container):
    """Container for the connection data table."""

    DEFAULT_CSS = """
    ConnectionTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize the ConnectionTable."""
        super().__init__(*args, **kwargs)
        self._snapshot = ConnectionSnapshot()
        self._visible: dict[str, AnnotatedRow] = {}
        self._groups: dict[str, str] = {}
        self._marked: set[str] = set()
        self._query = ""
        self._grouped = False
        self._expanded = True

    @property
    def query_text(self) -> str:
        return self._query

    @property
    def visible_rows(self) -> list[AnnotatedRow]:
        """Rows matching the filter, including those in collapsed groups."""
        return list(self._visible.values())

    @property
    def marked_rows(self) -> list[AnnotatedRow]:
        return [row for row_id, row in self._visible.items() if row_id in self._marked]

    @property
    def grouped(self) -> bool:
        return self._grouped

    @property
    def expanded(self) -> bool:
        return self._expanded

    def compose(self) -> ComposeResult:
        yield DataTable(id="connection-table")

    def on_mount(self) -> None:
        table = self.query_one("#connection-table", DataTable)
        table.cursor_type = "row"
        for label, key, width in COLUMNS:
            table.add_column(label, key=key, width=width)

    def update_snapshot(self, snapshot: ConnectionSnapshot) -> None:
        """Show a new snapshot, keeping the cursor on the same connection."""
        self._snapshot = snapshot
        self._rebuild()

    def set_query(self, query: str) -> None:
        self._query = query
        self._rebuild()

    def set_grouped(self, grouped: bool) -> None:
        """Switch between the flat list and sections per GroupKey."""
        self._grouped = grouped
        self._rebuild()

    def set_expanded(self, expanded: bool) -> None:
        """Show or hide the connection rows under every group header."""
        self._expanded = expanded
        self._rebuild()

    def selected_row(self) -> AnnotatedRow | None:
        """The connection row under the cursor (None on a group header)."""
        row_id = self._cursor_key()
        return self._visible.get(row_id) if row_id is not None else None

    def selected_group(self) -> str | None:
        """GroupKey of the header or connection row under the cursor."""
        row_id = self._cursor_key()
        if row_id is None:
            return None
        if row_id in self._groups:
            return self._groups[row_id]
        row = self._visible.get(row_id)
        return row.group_key if row is not None else None

    def group_rows(self, group_key: str) -> list[AnnotatedRow]:
        """Every row of the displayed snapshot in a group, filtered or not."""
        return self._snapshot.group(group_key)

    def toggle_mark(self) -> None:
        """Mark or unmark the row under the cursor for a multi-row kill."""
        row = self.selected_row()
        if row is None:
            return
        row_id = str(row.key)
        if row_id in self._marked:
            self._marked.discard(row_id)
        else:
            self._marked.add(row_id)
        table = self.query_one("#connection-table", DataTable)
        table.update_cell(row_id, "mark", "*" if row_id in self._marked else "")

    def _cursor_key(self) -> str | None:
        table = self.query_one("#connection-table", DataTable)
        if table.row_count == 0:
            return None
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        return row_key.value

    def _rebuild(self) -> None:
        table = self.query_one("#connection-table", DataTable)
        selected_id = self._cursor_key()

        table.clear()
        self._visible = {
            str(row.key): row for row in self._snapshot.rows if row.matches(self._query)
        }
        self._groups = {}
        shown: set[str] = set()
        if self._grouped:
            sections: dict[str, list[AnnotatedRow]] = {}
            for row in self._visible.values():
                sections.setdefault(row.group_key, []).append(row)
            for group_key in sorted(sections, key=str.casefold):
                rows = sections[group_key]
                header_id = GROUP_ROW_PREFIX + group_key
                self._groups[header_id] = group_key
                table.add_row(*self._group_cells(rows, self._expanded), key=header_id)
                shown.add(header_id)
                if self._expanded:
                    shown.update(self._add_rows(table, rows))
        else:
            shown.update(self._add_rows(table, self._visible.values()))
        self._marked &= set(self._visible)

        if selected_id in self._visible and selected_id not in shown:
            # Collapsed: stay on the group the row belongs to
            selected_id = GROUP_ROW_PREFIX + self._visible[selected_id].group_key
        if selected_id in shown:
            table.move_cursor(row=table.get_row_index(selected_id))

    def _add_rows(self, table: DataTable, rows: Iterable[AnnotatedRow]) -> list[str]:
        added = []
        for row in rows:
            row_id = str(row.key)
            table.add_row(*self._cells(row, row_id in self._marked), key=row_id)
            added.append(row_id)
        return added

    @staticmethod
    def _cells(row: AnnotatedRow, marked: bool) -> list[Text]:
        style = CHANGE_STYLES.get(row.change_state, "dim" if row.protected else "")
        record = row.record
        values = [
            "*" if marked else "",
            record.protocol.value,
            record.local_address,
            str(record.local_port),
            record.remote_address,
            str(record.remote_port),
            record.state,
            str(record.pid),
            row.process.name,
            row.process.owner,
            row.process.path,
        ]
        return [Text(value, style=style) for value in values]

    @staticmethod
    def _group_cells(rows: list[AnnotatedRow], expanded: bool) -> list[Text]:
        process = rows[0].process
        values = {
            "mark": "v" if expanded else ">",
            "state": f"{len(rows)} socket(s)",
            "process": process.name,
            "path": process.path,
        }
        return [Text(values.get(key, ""), style="bold") for _, key, _ in COLUMNS]


class ConfirmScreen(ModalScreen[bool]):
    """Yes/No confirmation before terminating processes."""

    AUTO_FOCUS = "#no"

    DEFAULT_CSS = """
    ConfirmScreen {
        align: center middle;
    }

    #confirm-dialog {
        grid-size: 2;
        grid-gutter: 1 2;
        padding: 1 2;
        width: 70;
        height: auto;
        border: thick $error;
        background: $surface;
    }

    #confirm-message {
        column-span: 2;
        width: 1fr;
    }
    """

    BINDINGS = [
        ("y", "confirm", "Yes"),
        ("n", "cancel", "No"),
        ("escape", "cancel", "No"),
    ]

    def __init__(self, message: str) -> None:
        super().__init__()
        self._message = message

    def compose(self) -> ComposeResult:
        yield Grid(
            Label(self._message, id="confirm-message", markup=False),
            Button("Yes", variant="error", id="yes"),
            Button("No", variant="primary", id="no"),
            id="confirm-dialog",
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "yes")

    def action_confirm(self) -> None:
        self.dismiss(True)

    def action_cancel(self) -> None:
        self.dismiss(False)


class FilterInput(Input):
    """Filter box that stays out of the focus chain while hidden."""

    BINDINGS = [Binding("escape", "close", "Close filter", show=False)]

    can_focus = False

    class Closed(Message):
        """Posted when the user dismisses the filter."""

    def show(self) -> None:
        self.can_focus = True
        self.add_class("visible")
        self.focus()

    def hide(self) -> None:
        self.remove_class("visible")
        self.can_focus = False

    def action_close(self) -> None:
        self.post_message(self.Closed())


class PorttopApp(App):
    """Main porttop application."""

    TITLE = "porttop"
    SUB_TITLE = "Ports and the processes holding them"
    AUTO_FOCUS = "#connection-table"

    CSS = """
    Screen {
        layout: vertical;
    }

    #stats-bar {
        dock: top;
        height: auto;
        min-height: 2;
    }

    #filter {
        display: none;
    }

    #filter.visible {
        display: block;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("a", "toggle_auto", "Auto refresh"),
        ("space", "mark", "Mark"),
        ("k", "kill", "Kill"),
        ("g", "kill_group", "Kill group"),
        ("v", "toggle_grouped", "Group"),
        ("e", "toggle_expanded", "Expand"),
        ("o", "open_location", "Open location"),
        ("c", "copy", "Copy"),
        Binding("i", "copy_field('pid')", "Copy PID", show=False),
        Binding("p", "copy_field('port')", "Copy port", show=False),
        Binding("f", "copy_field('path')", "Copy path", show=False),
        ("slash", "search", "Filter"),
    ]

    def __init__(
        self,
        config: MonitorConfig | None = None,
        coordinator: RefreshCoordinator | None = None,
        launcher: Callable[[str], None] = open_location,
    ) -> None:
        """Initialize the PorttopApp."""
        super().__init__()
        self._config = config or MonitorConfig()
        self._update_queue: Queue[MonitorUpdate] = Queue()
        self._monitor = ConnectionMonitor(
            self._update_queue, coordinator=coordinator, config=self._config
        )
        self._launcher = launcher

    def compose(self) -> ComposeResult:
        yield StatsBar(id="stats-bar")
        yield FilterInput(
            placeholder="Filter by port, PID, process, path, address, protocol or state",
            id="filter",
        )
        yield ConnectionTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the connection monitor when the app is mounted."""
        self.query_one("#stats-bar", StatsBar).set_auto_refresh(self._monitor.auto_refresh)
        self.query_one("#connection-table", DataTable).focus()
        self._monitor.start()
        # Set up a timer to poll the queue for updates
        self.set_interval(0.25, self._check_for_updates)

    def check_action(self, action: str, parameters: tuple[object, ...]) -> bool | None:
        """Disable Open location unless the selected row has a real path."""
        if action == "open_location":
            try:
                row = self.query_one(ConnectionTable).selected_row()
            except NoMatches:
                return None
            return True if row is not None and row.process.has_location else None
        return True

    def _check_for_updates(self) -> None:
        """Apply every queued monitor update in order."""
        while True:
            try:
                update = self._update_queue.get_nowait()
            except Empty:
                break
            try:
                self._apply_update(update)
            except Exception:
                # The UI must keep running whatever one update contains
                logger.exception("Failed to apply %s", type(update).__name__)

    def _apply_update(self, update: MonitorUpdate) -> None:
        stats = self.query_one("#stats-bar", StatsBar)
        if isinstance(update, SnapshotUpdate):
            stats.update_stats(update.snapshot)
            self.query_one(ConnectionTable).update_snapshot(update.snapshot)
            self.refresh_bindings()
        elif isinstance(update, StatusUpdate):
            stats.set_status(update.message)
            if update.error:
                self.notify(update.message, severity="error")

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self.refresh_bindings()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "filter":
            table = self.query_one(ConnectionTable)
            table.set_query(event.value)
            self.query_one("#stats-bar", StatsBar).set_status(
                f"{len(table.visible_rows)} rows match"
            )

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "filter":
            self.query_one("#connection-table", DataTable).focus()

    def on_filter_input_closed(self, event: FilterInput.Closed) -> None:
        """Clear and hide the filter, then hand the keyboard back to the table."""
        filter_input = self.query_one("#filter", FilterInput)
        filter_input.value = ""
        self.query_one(ConnectionTable).set_query("")
        filter_input.hide()
        self.query_one("#connection-table", DataTable).focus()

    def _status(self, message: str) -> None:
        self.query_one("#stats-bar", StatsBar).set_status(message)

    def action_refresh(self) -> None:
        if not self._monitor.request_refresh():
            self.notify("Refresh already in progress")

    def action_toggle_auto(self) -> None:
        enabled = not self._monitor.auto_refresh
        self._monitor.auto_refresh = enabled
        self.query_one("#stats-bar", StatsBar).set_auto_refresh(enabled)

    def action_search(self) -> None:
        self.query_one("#filter", FilterInput).show()

    def action_mark(self) -> None:
        self.query_one(ConnectionTable).toggle_mark()

    def action_toggle_grouped(self) -> None:
        table = self.query_one(ConnectionTable)
        table.set_grouped(not table.grouped)
        self._status("Grouped by process" if table.grouped else "Ungrouped")

    def action_toggle_expanded(self) -> None:
        table = self.query_one(ConnectionTable)
        table.set_expanded(not table.expanded)

    def action_kill(self) -> None:
        """Kill the marked rows, or the row under the cursor when none are marked."""
        table = self.query_one(ConnectionTable)
        rows = table.marked_rows
        if not rows:
            selected = table.selected_row()
            rows = [selected] if selected is not None else []
        self._confirm_kill(rows, label=None)

    def action_kill_group(self) -> None:
        """Kill every process sharing the GroupKey of the row under the cursor."""
        table = self.query_one(ConnectionTable)
        group_key = table.selected_group()
        if group_key is None:
            return
        self._confirm_kill(table.group_rows(group_key), label=group_key)

    def _confirm_kill(self, rows: list[AnnotatedRow], label: str | None) -> None:
        plan = plan_kill(rows)
        if plan.all_protected:
            self.notify("Rejected: these processes are protected system processes", severity="error")
            return
        if plan.rejected:
            self.notify("Nothing to terminate")
            return

        pids = ", ".join(map(str, plan.pids))
        if label is None:
            message = f"Terminate {len(plan.pids)} process(es): PID {pids}?"
        else:
            message = f"Terminate every process in \"{label}\" (PID {pids})?"
        if plan.protected_count:
            message += f"\n\n{plan.protected_count} protected row(s) will be skipped."

        def on_confirm(confirmed: bool | None) -> None:
            # Kill exactly the rows shown in the dialog, whatever refreshed since
            if confirmed:
                self._monitor.request_kill(rows)

        self.push_screen(ConfirmScreen(message), on_confirm)

    def action_open_location(self) -> None:
        row = self.query_one(ConnectionTable).selected_row()
        if row is None or not row.process.has_location:
            self.notify("No file location for this row", severity="warning")
            return
        try:
            self._launcher(row.process.path)
        except LocationUnavailable as exc:
            self._status(str(exc))
            self.notify(str(exc), severity="error")
            return
        self._status(f"Opened location of {row.process.name}")

    def action_copy(self) -> None:
        """Copy the marked rows (or the selected one) with a header line."""
        table = self.query_one(ConnectionTable)
        rows = table.marked_rows
        if not rows:
            selected = table.selected_row()
            rows = [selected] if selected is not None else []
        if not rows:
            return
        self.copy_to_clipboard("\n".join([COPY_HEADER, *(row.describe() for row in rows)]))
        self._status(f"Copied {len(rows)} row(s)")

    def action_copy_field(self, field: str) -> None:
        row = self.query_one(ConnectionTable).selected_row()
        if row is None:
            return
        values = {
            "pid": ("PID", str(row.pid)),
            "port": ("port", str(row.local_port)),
            "path": ("path", row.process.path),
        }
        label, value = values[field]
        self.copy_to_clipboard(value)
        self._status(f"Copied {label} to clipboard")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="porttop",
        description="Monitor TCP/UDP connections and terminate the processes holding ports.",
    )
    parser.add_argument(
        "-i", "--interval", type=float, default=5.0, help="auto refresh interval in seconds"
    )
    parser.add_argument(
        "--no-auto-refresh", action="store_true", help="start with auto refresh disabled"
    )
    parser.add_argument(
        "--kill-timeout", type=float, default=2.0, help="seconds to wait for a killed process"
    )
    parser.add_argument(
        "--pending-retention",
        type=int,
        default=None,
        help="refresh cycles a killed socket stays tracked (default: until released)",
    )
    parser.add_argument(
        "--source", choices=TABLE_SOURCES, default="psutil", help="connection table source"
    )
    parser.add_argument("--log-file", default="logs/porttop.log", help="log file path")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MonitorConfig:
    return MonitorConfig(
        poll_rate=args.interval,
        auto_refresh=not args.no_auto_refresh,
        kill_timeout=args.kill_timeout,
        pending_retention=args.pending_retention,
        table_source=args.source,
        log_file=args.log_file,
    )


def main(argv: list[str] | None = None) -> None:
    """Entry point for porttop application."""
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_file, getattr(logging, args.log_level))
    app = PorttopApp(config=config)
    app.run()


if __name__ == "__main__":
    main()
