from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
import logging
import os
import shutil

from mergemend.config import AgentConfig
from mergemend.observability import log_event
from mergemend.shell import CommandTimeoutError, run_command


LOGGER = logging.getLogger("mergemend.agent_adapter")


class AgentAdapter(ABC):
    @abstractmethod
    def invoke(self, cwd: Path, prompt: str, *, hide_history: bool) -> bool:
        """Run the code-modification agent in ``cwd``; True when it reports success.

        With ``hide_history`` the agent must not see ``.git``.
        """


class CliAgentAdapter(AgentAdapter):
    """Shared driver for agents that read their task from stdin.

    The prompt is also left in a task file inside the working copy while the agent
    runs, so the agent can re-read it. The file and any hidden ``.git`` are always
    put back the way they were.
    """

    name = "agent"
    task_filename = ".agent-task.txt"

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    @abstractmethod
    def build_command(self) -> list[str]:
        pass

    def invoke(self, cwd: Path, prompt: str, *, hide_history: bool) -> bool:
        task_path = cwd / self.task_filename
        git_path = cwd / ".git"
        hidden_git_path = cwd.parent / f"{cwd.name}-hidden-git"
        cmd = self.build_command()
        log_event(
            LOGGER,
            "agent_invocation_started",
            agent=self.name,
            cwd=str(cwd),
            hide_history=hide_history,
            prompt_chars=len(prompt),
        )
        try:
            task_path.write_text(prompt, encoding="utf-8")
            if hide_history and git_path.is_dir():
                git_path.rename(hidden_git_path)
            try:
                result = run_command(
                    cmd,
                    cwd=cwd,
                    input_text=prompt,
                    env=self._agent_env(),
                    timeout_seconds=self._config.timeout_seconds,
                )
            except CommandTimeoutError:
                log_event(
                    LOGGER,
                    "agent_invocation_finished",
                    level=logging.WARNING,
                    agent=self.name,
                    ok=False,
                    reason="timeout",
                    timeout_seconds=self._config.timeout_seconds,
                )
                return False
        finally:
            _restore_git(git_path, hidden_git_path)
            task_path.unlink(missing_ok=True)

        if not result.ok:
            log_event(
                LOGGER,
                "agent_invocation_finished",
                level=logging.WARNING,
                agent=self.name,
                ok=False,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
            return False
        log_event(
            LOGGER,
            "agent_invocation_finished",
            agent=self.name,
            ok=True,
            stdout=result.stdout,
        )
        return True

    def _agent_env(self) -> dict[str, str] | None:
        key_env = self._config.api_key_env
        if key_env is None:
            return None
        value = os.environ.get(key_env)
        if not value:
            log_event(LOGGER, "agent_api_key_missing", level=logging.WARNING, env_var=key_env)
            return None
        return {key_env: value}


def _restore_git(git_path: Path, hidden_git_path: Path) -> None:
    if not hidden_git_path.is_dir():
        return
    if git_path.exists():
        # The agent ran `git init` while history was hidden; ours wins.
        shutil.rmtree(git_path)
    hidden_git_path.rename(git_path)
