from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Iterator


LOCK_FILENAME = ".mergemend.lock"


class WorkspaceLockError(RuntimeError):
    """Another live process already owns the workspace root."""


@contextmanager
def workspace_lock(*, workspace_dir: Path, command: str) -> Iterator[Path]:
    """Hold an exclusive lock file under ``workspace_dir`` for the duration of the block.

    The lock records the owner pid; a lock left behind by a dead process is reclaimed once.
    """
    lock_path = workspace_dir / LOCK_FILENAME
    workspace_dir.mkdir(parents=True, exist_ok=True)
    _acquire(lock_path, command=command)
    try:
        yield lock_path
    finally:
        _release(lock_path)


def _acquire(lock_path: Path, *, command: str) -> None:
    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            if _reclaim_stale(lock_path):
                continue
            raise WorkspaceLockError(_busy_message(lock_path)) from None
        payload = {
            "pid": os.getpid(),
            "command": command,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
        finally:
            os.close(fd)
        return
    raise WorkspaceLockError(_busy_message(lock_path))


def _release(lock_path: Path) -> None:
    if _owner_pid(lock_path) != os.getpid():
        return
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass


def _reclaim_stale(lock_path: Path) -> bool:
    pid = _owner_pid(lock_path)
    if pid is None or pid == os.getpid() or _pid_is_running(pid):
        return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return True


def _owner_pid(lock_path: Path) -> int | None:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    pid = payload.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        return None
    return pid


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _busy_message(lock_path: Path) -> str:
    pid = _owner_pid(lock_path)
    owner = f" (pid={pid})" if pid is not None else ""
    return (
        f"Another mergemend process appears to own this workspace{owner}. "
        f"Lock file: {lock_path}. Remove it if no such process is running."
    )
