from __future__ import annotations

from pathlib import Path

import pytest

from mergemend.config import AgentConfig
from mergemend.gemini_adapter import GeminiAdapter
from mergemend.observability import configure_logging
from mergemend.shell import CommandResult, CommandTimeoutError


def _workspace(tmp_path: Path) -> Path:
    cwd = tmp_path / "10-repo-request-7"
    (cwd / ".git").mkdir(parents=True)
    (cwd / ".git" / "HEAD").write_text("ref: refs/heads/feature\n", encoding="utf-8")
    return cwd


def test_gemini_command_line() -> None:
    adapter = GeminiAdapter(AgentConfig(model="gemini-2.5-pro", extra_args=("--debug",)))
    assert adapter.build_command() == ["gemini", "--yolo", "--model", "gemini-2.5-pro", "--debug"]
    assert GeminiAdapter(AgentConfig()).build_command() == ["gemini", "--yolo"]


def test_invoke_passes_prompt_and_cleans_up(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    cwd = _workspace(tmp_path)
    seen: dict[str, object] = {}

    def fake_run_command(cmd: list[str], **kwargs: object) -> CommandResult:
        seen["cmd"] = cmd
        seen.update(kwargs)
        seen["task_text"] = (cwd / ".gemini-task.txt").read_text(encoding="utf-8")
        seen["git_visible"] = (cwd / ".git").is_dir()
        return CommandResult(returncode=0, stdout="done", stderr="")

    monkeypatch.setattr("mergemend.agent_adapter.run_command", fake_run_command)

    ok = GeminiAdapter(AgentConfig(timeout_seconds=30)).invoke(cwd, "fix it", hide_history=False)

    assert ok is True
    assert seen["cmd"] == ["gemini", "--yolo"]
    assert seen["cwd"] == cwd
    assert seen["input_text"] == "fix it"
    assert seen["timeout_seconds"] == 30
    assert seen["task_text"] == "fix it"
    assert seen["git_visible"] is True
    assert not (cwd / ".gemini-task.txt").exists()


def test_invoke_hides_and_restores_history(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    cwd = _workspace(tmp_path)
    seen: dict[str, object] = {}

    def fake_run_command(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = cmd, kwargs
        seen["git_visible"] = (cwd / ".git").exists()
        # An agent that re-initialises git must not clobber the real history.
        (cwd / ".git").mkdir()
        return CommandResult(returncode=1, stdout="", stderr="gave up")

    monkeypatch.setattr("mergemend.agent_adapter.run_command", fake_run_command)

    ok = GeminiAdapter(AgentConfig()).invoke(cwd, "fix it", hide_history=True)

    assert ok is False
    assert seen["git_visible"] is False
    assert (cwd / ".git" / "HEAD").read_text(encoding="utf-8") == "ref: refs/heads/feature\n"
    assert not (tmp_path / "10-repo-request-7-hidden-git").exists()


def test_invoke_timeout_returns_false(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cwd = _workspace(tmp_path)

    def fake_run_command(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = cmd, kwargs
        raise CommandTimeoutError("Command timed out after 1s")

    monkeypatch.setattr("mergemend.agent_adapter.run_command", fake_run_command)
    configure_logging(verbose=True)

    assert GeminiAdapter(AgentConfig(timeout_seconds=1)).invoke(cwd, "p", hide_history=True) is False
    assert (cwd / ".git").is_dir()
    stderr = capsys.readouterr().err
    assert "event=agent_invocation_finished" in stderr
    assert "reason=timeout" in stderr


def test_invoke_forwards_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cwd = _workspace(tmp_path)
    envs: list[object] = []

    def fake_run_command(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = cmd
        envs.append(kwargs["env"])
        return CommandResult(returncode=0, stdout="", stderr="")

    monkeypatch.setattr("mergemend.agent_adapter.run_command", fake_run_command)
    adapter = GeminiAdapter(AgentConfig(api_key_env="GEMINI_API_KEY"))

    monkeypatch.setenv("GEMINI_API_KEY", "k")
    adapter.invoke(cwd, "p", hide_history=False)
    monkeypatch.delenv("GEMINI_API_KEY")
    adapter.invoke(cwd, "p", hide_history=False)

    assert envs == [{"GEMINI_API_KEY": "k"}, None]
