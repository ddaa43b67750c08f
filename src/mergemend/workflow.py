from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Literal
import logging

from mergemend.agent_adapter import AgentAdapter
from mergemend.config import ServerConfig
from mergemend.models import (
    CloneMode,
    FailureKind,
    MissingDataError,
    Repository,
    WorkflowOutcome,
)
from mergemend.observability import log_event
from mergemend.provider import ProviderError, ProviderGateway
from mergemend.shell import CommandError
from mergemend.workspace import WorkspaceManager


LOGGER = logging.getLogger("mergemend.workflow")

WorkflowState = Literal[
    "init",
    "repository_resolved",
    "workspace_prepared",
    "conflict_triggered",
    "agent_invoked",
    "changes_evaluated",
    "noop",
    "committed",
    "finalized",
    "failed",
]


class ConflictAnomalyError(RuntimeError):
    """The merge failed but git reports no conflicted files."""


class CommitError(RuntimeError):
    pass


class PushError(RuntimeError):
    pass


class ForkTimeoutError(RuntimeError):
    pass


@dataclass(frozen=True)
class WorkflowContext:
    server: ServerConfig
    project_id: int
    source_branch: str
    target_branch: str
    workspace_label: str
    prompt: str
    commit_message: str
    push_branch: str
    request_id: int | None = None
    hide_history: bool = False
    resolve_conflicts: bool = False
    skip_commit: bool = False
    clone_mode: CloneMode = "full"
    repository: Repository | None = None
    workspace_path: Path | None = None
    conflicted_files: tuple[str, ...] = ()
    agent_succeeded: bool | None = None
    has_pending_changes: bool = False
    ahead_count: int = 0
    state: WorkflowState = "init"

    def require_repository(self) -> Repository:
        if self.repository is None:
            raise MissingDataError("Repository has not been resolved")
        return self.repository

    def require_workspace(self) -> Path:
        if self.workspace_path is None:
            raise MissingDataError("Workspace has not been prepared")
        return self.workspace_path


FinalizeCallback = Callable[[WorkflowContext], WorkflowOutcome]


class ConflictTrigger:
    """Merge origin/<target> into the working copy so the agent sees conflict markers."""

    def __init__(self, workspace: WorkspaceManager) -> None:
        self._workspace = workspace

    def trigger(self, path: Path, target_branch: str) -> tuple[str, ...]:
        self._workspace.fetch_branch(path, target_branch)
        self._workspace.configure_merge(path)
        exit_code = self._workspace.merge_branch(path, f"origin/{target_branch}")
        if exit_code == 0:
            log_event(
                LOGGER,
                "conflict_merge_clean",
                path=str(path),
                target_branch=target_branch,
            )
            return ()

        conflicted = self._workspace.list_conflicted_files(path)
        if not conflicted:
            log_event(
                LOGGER,
                "conflict_merge_anomaly",
                level=logging.CRITICAL,
                path=str(path),
                target_branch=target_branch,
                exit_code=exit_code,
            )
            raise ConflictAnomalyError(
                f"Merging origin/{target_branch} failed with exit code {exit_code} "
                "but no conflicted files were found"
            )
        log_event(
            LOGGER,
            "conflict_merge_conflicted",
            path=str(path),
            target_branch=target_branch,
            files=conflicted,
        )
        return conflicted


@dataclass(frozen=True)
class ChangeReport:
    pending: bool
    ahead: int

    @property
    def has_changes(self) -> bool:
        return self.pending or self.ahead > 0


class ChangeDetector:
    def __init__(self, workspace: WorkspaceManager) -> None:
        self._workspace = workspace

    def evaluate(self, path: Path, branch: str) -> ChangeReport:
        pending = self._workspace.has_pending_changes(path)
        # Unknown ahead count counts as "not ahead".
        ahead = self._workspace.ahead_count(path, branch) or 0
        return ChangeReport(pending=pending, ahead=max(ahead, 0))

    def commit(self, path: Path, message: str, branch: str) -> None:
        if not self._workspace.commit(path, message, branch):
            raise CommitError(f"Commit to {branch} failed in {path}")


class WorkflowEngine:
    """Drive one candidate from repository lookup to a finalized or no-op outcome.

    Each step takes a context and returns a new one; ``execute`` is the only place
    exceptions become outcomes.
    """

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        workspace: WorkspaceManager,
        agent: AgentAdapter,
        workspace_dir: Path,
    ) -> None:
        self._gateway = gateway
        self._workspace = workspace
        self._agent = agent
        self._workspace_dir = workspace_dir
        self._conflicts = ConflictTrigger(workspace)
        self._changes = ChangeDetector(workspace)

    def execute(self, context: WorkflowContext, finalize: FinalizeCallback) -> WorkflowOutcome:
        ctx = context
        try:
            ctx = self.resolve_repository(ctx)
            ctx = self.prepare_workspace(ctx)
            if ctx.resolve_conflicts:
                ctx = self.trigger_conflicts(ctx)
            ctx = self.invoke_agent(ctx)
            ctx = self.evaluate_changes(ctx)
            if ctx.skip_commit:
                outcome = finalize(replace(ctx, state="finalized"))
            elif not ctx.has_pending_changes and ctx.ahead_count == 0:
                ctx = replace(ctx, state="noop")
                outcome = self._noop_outcome(ctx)
            else:
                if ctx.has_pending_changes:
                    ctx = self.commit(ctx)
                ctx = replace(ctx, state="finalized")
                outcome = finalize(ctx)
        except Exception as exc:  # noqa: BLE001
            outcome = self._failure_outcome(ctx, exc)
            ctx = replace(ctx, state="failed")

        log_event(
            LOGGER,
            "workflow_finished",
            level=logging.WARNING if outcome.status == "failed" else logging.INFO,
            request_id=ctx.request_id,
            label=ctx.workspace_label,
            state=ctx.state,
            status=outcome.status,
            failure_kind=outcome.failure_kind,
            agent_succeeded=ctx.agent_succeeded,
        )
        return outcome

    def resolve_repository(self, ctx: WorkflowContext) -> WorkflowContext:
        repository = self._gateway.get_repository(ctx.project_id)
        if not repository.clone_url:
            raise MissingDataError(f"Project {ctx.project_id} has no clone URL")
        return replace(ctx, repository=repository, state="repository_resolved")

    def prepare_workspace(self, ctx: WorkflowContext) -> WorkflowContext:
        repository = ctx.require_repository()
        path = self.workspace_path(ctx.project_id, repository.name, ctx.workspace_label)
        self._workspace.reset_repository(
            path,
            ctx.source_branch,
            repository.clone_url,
            ctx.clone_mode,
            ctx.server.auth,
        )
        self._workspace.set_identity(path, ctx.server.display_name, ctx.server.user_email)
        return replace(ctx, workspace_path=path, state="workspace_prepared")

    def trigger_conflicts(self, ctx: WorkflowContext) -> WorkflowContext:
        conflicted = self._conflicts.trigger(ctx.require_workspace(), ctx.target_branch)
        return replace(ctx, conflicted_files=conflicted, state="conflict_triggered")

    def invoke_agent(self, ctx: WorkflowContext) -> WorkflowContext:
        ok = self._agent.invoke(ctx.require_workspace(), ctx.prompt, hide_history=ctx.hide_history)
        return replace(ctx, agent_succeeded=ok, state="agent_invoked")

    def evaluate_changes(self, ctx: WorkflowContext) -> WorkflowContext:
        report = self._changes.evaluate(ctx.require_workspace(), ctx.source_branch)
        log_event(
            LOGGER,
            "changes_evaluated",
            request_id=ctx.request_id,
            pending=report.pending,
            ahead=report.ahead,
        )
        return replace(
            ctx,
            has_pending_changes=report.pending,
            ahead_count=report.ahead,
            state="changes_evaluated",
        )

    def commit(self, ctx: WorkflowContext) -> WorkflowContext:
        self._changes.commit(ctx.require_workspace(), ctx.commit_message, ctx.push_branch)
        return replace(ctx, state="committed")

    def workspace_path(self, project_id: int, repo_name: str, label: str) -> Path:
        return self._workspace_dir / f"{project_id}-{repo_name}-{label}"

    def _noop_outcome(self, ctx: WorkflowContext) -> WorkflowOutcome:
        if ctx.agent_succeeded is False:
            return WorkflowOutcome.failed(
                "Agent failed and left no changes",
                failure_kind="agent",
                request_id=ctx.request_id,
            )
        return WorkflowOutcome.skipped("agent made no changes", request_id=ctx.request_id)

    def _failure_outcome(self, ctx: WorkflowContext, exc: Exception) -> WorkflowOutcome:
        kind = failure_kind_for(exc)
        log_event(
            LOGGER,
            "workflow_step_failed",
            level=logging.ERROR,
            request_id=ctx.request_id,
            state=ctx.state,
            failure_kind=kind,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return WorkflowOutcome.failed(str(exc), failure_kind=kind, request_id=ctx.request_id)


def failure_kind_for(exc: Exception) -> FailureKind:
    if isinstance(exc, MissingDataError):
        return "missing_data"
    if isinstance(exc, ConflictAnomalyError):
        return "conflict_anomaly"
    if isinstance(exc, CommitError):
        return "commit"
    if isinstance(exc, PushError):
        return "push"
    if isinstance(exc, ForkTimeoutError):
        return "fork_timeout"
    if isinstance(exc, ProviderError):
        return "provider"
    if isinstance(exc, CommandError):
        return "workspace"
    return "unexpected"
