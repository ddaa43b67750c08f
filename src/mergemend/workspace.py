from __future__ import annotations

from pathlib import Path
import logging
import shutil

from mergemend.models import CloneMode
from mergemend.observability import log_event
from mergemend.provider import with_credentials
from mergemend.shell import CommandError, run, run_command


LOGGER = logging.getLogger("mergemend.workspace")


class WorkspaceManager:
    """Git plumbing for one working copy per candidate.

    Every call shells out to ``git -C <path>``; failures raise CommandError unless the
    method documents an exit-code or boolean result instead.
    """

    def reset_repository(
        self,
        path: Path,
        branch: str,
        clone_url: str,
        mode: CloneMode = "full",
        auth: str | None = None,
    ) -> None:
        remote_url = with_credentials(clone_url, auth) if auth else clone_url
        if not (path / ".git").is_dir():
            if path.exists():
                log_event(LOGGER, "workspace_discarded", path=str(path))
                shutil.rmtree(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            log_event(LOGGER, "workspace_cloned", path=str(path), branch=branch, mode=mode)
            clone_cmd = ["git", "clone"]
            if mode == "shallow":
                clone_cmd.extend(["--depth", "1", "--no-single-branch"])
            clone_cmd.extend([remote_url, str(path)])
            run(clone_cmd)
        else:
            log_event(LOGGER, "workspace_remote_set", path=str(path))
            run(["git", "-C", str(path), "remote", "set-url", "origin", remote_url])

        log_event(LOGGER, "workspace_reset", path=str(path), branch=branch)
        fetch_cmd = ["git", "-C", str(path), "fetch", "origin", "--prune"]
        if mode == "shallow":
            fetch_cmd.extend(["--depth", "1"])
        run(fetch_cmd)
        # -f also discards an unmerged index left behind by an interrupted conflict run.
        run(["git", "-C", str(path), "checkout", "-f", "-B", branch, f"origin/{branch}"])
        run(["git", "-C", str(path), "reset", "--hard", f"origin/{branch}"])
        run(["git", "-C", str(path), "clean", "-ffdx"])

    def set_identity(self, path: Path, name: str, email: str) -> None:
        run(["git", "-C", str(path), "config", "user.name", name])
        run(["git", "-C", str(path), "config", "user.email", email])

    def has_pending_changes(self, path: Path) -> bool:
        status = run(["git", "-C", str(path), "status", "--porcelain"])
        return bool(status.strip())

    def commit(self, path: Path, message: str, branch: str) -> bool:
        log_event(LOGGER, "git_commit", path=str(path), branch=branch)
        try:
            run(["git", "-C", str(path), "checkout", "-B", branch])
            run(["git", "-C", str(path), "add", "-A"])
            run(["git", "-C", str(path), "commit", "-m", message])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_commit_failed",
                level=logging.ERROR,
                path=str(path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            return False
        return True

    def push(self, path: Path, branch: str, url: str, *, force: bool) -> None:
        log_event(LOGGER, "git_push", path=str(path), branch=branch, force=force)
        cmd = ["git", "-C", str(path), "push"]
        if force:
            cmd.append("--force")
        cmd.extend([url, f"HEAD:refs/heads/{branch}"])
        try:
            run(cmd)
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                level=logging.ERROR,
                path=str(path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def fetch_branch(self, path: Path, branch: str) -> None:
        run(["git", "-C", str(path), "fetch", "origin", branch])

    def configure_merge(self, path: Path) -> None:
        run(["git", "-C", str(path), "config", "pull.rebase", "false"])

    def merge_branch(self, path: Path, ref: str) -> int:
        """Merge ``ref`` into HEAD and return git's exit code; conflicts are not errors here."""
        result = run_command(["git", "-C", str(path), "merge", "--no-edit", ref])
        log_event(LOGGER, "git_merge", path=str(path), ref=ref, exit_code=result.returncode)
        return result.returncode

    def list_conflicted_files(self, path: Path) -> tuple[str, ...]:
        output = run(["git", "-C", str(path), "diff", "--name-only", "--diff-filter=U"])
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def ahead_count(self, path: Path, branch: str) -> int | None:
        """Commits on HEAD missing from origin/<branch>; None when git cannot say."""
        result = run_command(
            ["git", "-C", str(path), "rev-list", "--count", "HEAD", f"^origin/{branch}"]
        )
        if not result.ok:
            log_event(
                LOGGER,
                "git_ahead_count_unavailable",
                level=logging.WARNING,
                path=str(path),
                branch=branch,
                exit_code=result.returncode,
            )
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            log_event(
                LOGGER,
                "git_ahead_count_unparsable",
                level=logging.WARNING,
                path=str(path),
                branch=branch,
            )
            return None
