from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal


_ROOT_LOGGER: Final[str] = "mergemend"
_VALUE_LIMIT: Final[int] = 160
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Events kept with --verbose low. Records at WARNING and above always pass.
_MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "batch_started",
        "batch_completed",
        "candidate_selected",
        "workflow_finished",
        "agent_invocation_started",
        "agent_invocation_finished",
        "fork_redirect_request_created",
        "review_note_posted",
        "pipeline_issue_created",
    }
)

VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    log_dir: Path | None = None,
) -> None:
    """(Re)attach the ``mergemend`` handlers; safe to call more than once.

    ``None``/``False`` silences the tree, ``"low"`` keeps milestone events and anything
    at WARNING or above, ``"high"``/``True`` keeps everything. With ``log_dir`` each
    line is also appended to ``<log_dir>/YYYY-MM-DD.log`` (UTC date).
    """
    mode = verbose_mode(verbose)
    root = logging.getLogger(_ROOT_LOGGER)
    root.propagate = False
    while root.handlers:
        handler = root.handlers.pop()
        handler.close()

    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    root.setLevel(logging.INFO)
    formatter = logging.Formatter(_LINE_FORMAT)
    sinks: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir is not None:
        sinks.append(_UtcDailyFileHandler(log_dir))
    for sink in sinks:
        sink.setFormatter(formatter)
        if mode == "low":
            sink.addFilter(_keep_milestones)
        root.addHandler(sink)


def verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    key = verbose.strip().lower()
    if key == "low":
        return "low"
    if key == "high":
        return "high"
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: object,
) -> None:
    """Emit ``event=<name> key=value ...`` with keys sorted; the name also rides on the record."""
    logger.log(level, format_event(event, fields), extra={"event": event})


def format_event(event: str, fields: dict[str, object]) -> str:
    pairs = [("event", event), *sorted(fields.items())]
    return " ".join(f"{key}={_quoted(_text(value))}" for key, value in pairs)


def _text(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, tuple | list):
        return ",".join(_text(item) for item in value) or "<empty>"
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"
    flat = " ".join(value.split())
    if not flat:
        return "<empty>"
    return flat if len(flat) <= _VALUE_LIMIT else f"{flat[:_VALUE_LIMIT]}..."


def _quoted(text: str) -> str:
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _keep_milestones(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, "event", None) in _MILESTONE_EVENTS


def _utc_day() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class _UtcDailyFileHandler(logging.FileHandler):
    """A FileHandler whose target file follows the UTC date."""

    def __init__(self, log_dir: Path) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        self._log_dir = log_dir
        self._day = _utc_day()
        super().__init__(log_dir / f"{self._day}.log", encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._follow_day()
            super().emit(record)
        except Exception:
            self.handleError(record)

    def _follow_day(self) -> None:
        day = _utc_day()
        if day == self._day:
            return
        self._day = day
        self.baseFilename = str((self._log_dir / f"{day}.log").absolute())
        if self.stream is not None:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
