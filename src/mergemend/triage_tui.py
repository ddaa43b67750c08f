from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
import webbrowser

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Static

from mergemend.classifier import AttentionClassifier
from mergemend.config import ServerConfig
from mergemend.models import AttentionSignal, Candidate
from mergemend.provider import ProviderGateway
from mergemend.push_router import is_others_request
from mergemend.selector import choose_kind


_COLUMNS: tuple[str, ...] = (
    "Server",
    "Request",
    "Title",
    "Conflicts",
    "Review",
    "Pipeline",
    "Action",
    "Route",
)
_TITLE_MAX_CHARS = 48


@dataclass(frozen=True)
class TriageRow:
    server_id: str
    request_id: int
    title: str
    web_url: str
    conflicts: bool | None = None
    review_status: str | None = None
    pipeline_failed: bool | None = None
    action: str = "none"
    route: str = "-"
    error: str | None = None


def triage_rows(
    *,
    server: ServerConfig,
    gateway: ProviderGateway,
    classifier: AttentionClassifier,
) -> tuple[TriageRow, ...]:
    """Classify every open request without touching any working copy."""
    try:
        candidates = gateway.list_open_requests(server.user_name)
    except Exception as exc:  # noqa: BLE001
        return (
            TriageRow(
                server_id=server.server_id,
                request_id=0,
                title="<listing failed>",
                web_url="",
                error=str(exc),
            ),
        )
    scan = classifier.scan(candidates)
    rows = [_row(server, gateway, candidate, signal) for candidate, signal in scan.classified]
    for failure in scan.failures:
        rows.append(
            TriageRow(
                server_id=server.server_id,
                request_id=failure.request_id or 0,
                title="<details unavailable>",
                web_url="",
                error=failure.message,
            )
        )
    return tuple(rows)


def _row(
    server: ServerConfig,
    gateway: ProviderGateway,
    candidate: Candidate,
    signal: AttentionSignal,
) -> TriageRow:
    action = choose_kind(signal) if signal.needs_attention else "none"
    route = "-"
    if signal.needs_attention:
        others = is_others_request(gateway, candidate.author_name, server.user_name)
        route = "fork" if others else "direct"
    return TriageRow(
        server_id=server.server_id,
        request_id=candidate.request_id,
        title=candidate.title,
        web_url=candidate.web_url,
        conflicts=signal.has_conflicts,
        review_status=signal.review_status,
        pipeline_failed=signal.pipeline_failed,
        action=action,
        route=route,
    )


class _RowDetail(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("q", "close", "Close"),
        Binding("o", "open", "Open"),
    ]
    CSS = """
    #row-detail {
        width: 80%;
        height: 60%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    """

    def __init__(self, row: TriageRow) -> None:
        super().__init__()
        self._row = row

    def compose(self) -> ComposeResult:
        with Vertical(id="row-detail"):
            with VerticalScroll():
                yield Static(_detail_text(self._row), id="row-detail-body")
            yield Static("Press o to open in a browser, Esc or q to close.")

    def action_open(self) -> None:
        if self._row.web_url:
            webbrowser.open(self._row.web_url)

    def action_close(self) -> None:
        self.dismiss(None)


class TriageApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    #summary {
        height: 1;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, load_rows: Callable[[], tuple[TriageRow, ...]]) -> None:
        super().__init__()
        self._load_rows = load_rows
        self._rows: tuple[TriageRow, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("", id="summary")
        yield DataTable(id="triage-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#triage-table", DataTable)
        table.add_columns(*_COLUMNS)
        self.refresh_rows()

    @property
    def rows(self) -> tuple[TriageRow, ...]:
        return self._rows

    def action_refresh(self) -> None:
        self.refresh_rows()

    def refresh_rows(self) -> None:
        self._rows = self._load_rows()
        table = self.query_one("#triage-table", DataTable)
        table.clear(columns=False)
        for row in self._rows:
            table.add_row(*_cells(row))
        self.query_one("#summary", Static).update(summary_text(self._rows))

    def action_show_detail(self) -> None:
        table = self.query_one("#triage-table", DataTable)
        index = table.cursor_row
        if index < 0 or index >= len(self._rows):
            return
        self.push_screen(_RowDetail(self._rows[index]))

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        _ = event
        self.action_show_detail()


def summary_text(rows: tuple[TriageRow, ...]) -> str:
    attention = sum(1 for row in rows if row.action != "none")
    errors = sum(1 for row in rows if row.error is not None)
    return f"requests={len(rows)} needs_attention={attention} errors={errors}"


def _cells(row: TriageRow) -> tuple[str, ...]:
    title = row.title
    if len(title) > _TITLE_MAX_CHARS:
        title = f"{title[: _TITLE_MAX_CHARS - 3]}..."
    return (
        row.server_id,
        f"#{row.request_id}",
        title,
        _flag(row.conflicts),
        row.review_status or "-",
        _flag(row.pipeline_failed),
        "error" if row.error is not None else row.action,
        row.route,
    )


def _flag(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def _detail_text(row: TriageRow) -> str:
    lines = [
        f"Request #{row.request_id} on {row.server_id}",
        f"Title: {row.title}",
        f"URL: {row.web_url or '<none>'}",
        f"Conflicts: {_flag(row.conflicts)}",
        f"Review: {row.review_status or '-'}",
        f"Pipeline failed: {_flag(row.pipeline_failed)}",
        f"Action: {row.action}",
        f"Route: {row.route}",
    ]
    if row.error is not None:
        lines.append(f"Error: {row.error}")
    return "\n".join(lines)
