from __future__ import annotations

from mergemend.agent_adapter import CliAgentAdapter


class CodexAdapter(CliAgentAdapter):
    name = "codex"
    task_filename = ".codex-task.txt"

    def build_command(self) -> list[str]:
        cmd = ["codex", "exec", "--skip-git-repo-check", "--full-auto"]
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
        # Trailing "-" tells codex exec to read the prompt from stdin.
        cmd.append("-")
        return cmd
