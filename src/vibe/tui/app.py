from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Header, Input, Static

from vibe.cli.utils import build_refresh_loop
from vibe.config import Config
from vibe.models import VISIBLE_STATUSES
from vibe.refresh import RefreshLoop

COLUMNS = ("Task", "Status", "Activity", "Context", "Checks", "Linear", "Plan")


def build_rows(loop: RefreshLoop, search: str = "") -> list[tuple[str, ...]]:
    """Table rows for every visible task, column by column."""
    rows = []
    for column in VISIBLE_STATUSES:
        for task in loop.tasks_in_column(column, search=search):
            view = loop.describe(task)
            session = view.session
            context = ""
            if session is not None and session.context_percentage is not None:
                context = f"{session.context_percentage:.0f}%"
            checks = ""
            if view.pr is not None:
                checks = f"#{view.pr.number} {(view.pr.checks_status() or '-').lower()}"
                if view.pr.has_conflicts():
                    checks += " !"
            linear = view.linear_status.state_name if view.linear_status else ""
            activity = str(session.activity_state) if session is not None else ""
            rows.append(
                (
                    f"#{task.id} {task.title}",
                    view.status.label,
                    activity,
                    context,
                    checks,
                    linear,
                    "plan" if view.has_plan else "",
                )
            )
    return rows


class VibeApp(App):
    """Kanban board TUI for vibe."""

    TITLE = "vibe"

    CSS = """
    Screen {
        layout: vertical;
    }

    #search {
        dock: top;
    }

    #warnings {
        dock: bottom;
        height: 1;
        padding: 0 1;
        color: $warning;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=True),
        Binding("r", "reload", "Refresh", show=True),
        Binding("slash", "focus_search", "Search", show=True),
        Binding("escape", "clear_search", "Clear search", show=False),
    ]

    def __init__(self, config: Config, refresh_loop: RefreshLoop | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.vibe_config = config
        self.refresh_loop = refresh_loop or build_refresh_loop(config)
        self.search_text = ""
        self.warnings_text = ""

    def compose(self) -> ComposeResult:
        yield Header()
        yield Input(placeholder="Search tasks", id="search")
        yield DataTable(id="tasks")
        yield Static("", id="warnings")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#tasks", DataTable)
        table.cursor_type = "row"
        table.add_columns(*COLUMNS)
        table.focus()

        self.refresh_loop.start()
        self.refresh_loop.tick()
        self.set_interval(self.vibe_config.watch_interval, self._drain)
        self.set_interval(self.vibe_config.refresh_interval, self.refresh_loop.tick)

    def on_unmount(self) -> None:
        self.refresh_loop.close()

    def _drain(self) -> None:
        """Apply finished refresh jobs; redraw only if something changed."""
        if self.refresh_loop.drain():
            self._update_table()

    def _update_table(self) -> None:
        table = self.query_one("#tasks", DataTable)
        table.clear()
        for row in build_rows(self.refresh_loop, self.search_text):
            table.add_row(*row)

        self.warnings_text = " | ".join(self.refresh_loop.warnings())
        self.query_one("#warnings", Static).update(self.warnings_text)

    def on_input_changed(self, event: Input.Changed) -> None:
        self.search_text = event.value.strip()
        self._update_table()

    def action_reload(self) -> None:
        self.refresh_loop.pr_cache.clear_no_pr_cache()
        self.refresh_loop.tick()

    def action_focus_search(self) -> None:
        self.query_one("#search", Input).focus()

    def action_clear_search(self) -> None:
        self.query_one("#search", Input).value = ""
        self.query_one("#tasks", DataTable).focus()
