from __future__ import annotations

from mergemend.agent_adapter import CliAgentAdapter


class GeminiAdapter(CliAgentAdapter):
    """``gemini --yolo`` with the task on stdin; --yolo auto-approves tool calls."""

    name = "gemini"
    task_filename = ".gemini-task.txt"

    def build_command(self) -> list[str]:
        cmd = ["gemini", "--yolo"]
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        cmd.extend(self._config.extra_args)
        return cmd
