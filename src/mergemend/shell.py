from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import re
import subprocess


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    pass


LOGGER = logging.getLogger("mergemend.shell")
_URL_CREDENTIALS_PATTERN = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def redact(text: str) -> str:
    return _URL_CREDENTIALS_PATTERN.sub(r"\g<scheme>***@", text)


def _display(argv: list[str]) -> str:
    return redact(" ".join(argv))


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run_command(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run argv and return its exit code and output without raising on failure.

    Extra ``env`` entries are layered over the current environment. A timeout raises
    CommandTimeoutError since there is no exit code to report.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = dict(os.environ)
        merged_env.update(env)
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            env=merged_env,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            _display(argv),
            timeout_seconds,
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout_seconds}s\ncmd: {_display(argv)}"
        ) from exc
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> str:
    result = run_command(
        argv,
        cwd=cwd,
        input_text=input_text,
        env=env,
        timeout_seconds=timeout_seconds,
    )
    if check and not result.ok:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            _display(argv),
            result.returncode,
            _preview(redact(result.stderr)),
            _preview(redact(result.stdout)),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {_display(argv)}\n"
            f"exit: {result.returncode}\n"
            f"stdout:\n{redact(result.stdout)}\n"
            f"stderr:\n{redact(result.stderr)}"
        )
    return result.stdout
