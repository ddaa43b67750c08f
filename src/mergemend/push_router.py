from __future__ import annotations

from typing import Callable
import logging
import time

from mergemend.models import Candidate, Repository, WorkflowOutcome
from mergemend.observability import log_event
from mergemend.prompts import build_replacement_request_body
from mergemend.provider import (
    ProviderGateway,
    SupportsAssigneeManagement,
    SupportsAuthorAttribution,
)
from mergemend.shell import CommandError
from mergemend.workflow import ForkTimeoutError, PushError, WorkflowContext
from mergemend.workspace import WorkspaceManager


LOGGER = logging.getLogger("mergemend.push_router")


def is_others_request(gateway: ProviderGateway, author_name: str | None, bot_user: str) -> bool:
    """True when the request belongs to someone else and must go through a fork.

    Without attribution support the author is unknowable, so the bot assumes the
    request is its own. With attribution, an unknown author counts as someone else.
    """
    if not isinstance(gateway, SupportsAuthorAttribution):
        return False
    if author_name is None:
        return True
    return author_name.strip().lower() != bot_user.strip().lower()


def replacement_branch(request_id: int) -> str:
    return f"fix-request-{request_id}"


def replacement_title(candidate: Candidate) -> str:
    return f"[Bot Fix] {candidate.title} (Replacement for #{candidate.request_id})"


class ForkCoordinator:
    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        delay_seconds: float,
        timeout_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._delay_seconds = delay_seconds
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    def ensure_fork(self, repository: Repository, user: str) -> None:
        """Make sure ``user`` owns a fork of ``repository``, waiting for it to appear.

        Raises ForkTimeoutError once ``timeout_seconds`` pass without the fork showing up.
        """
        if self._gateway.fork_exists(user, repository.name):
            return
        log_event(LOGGER, "fork_requested", owner=repository.owner, repo_name=repository.name)
        self._gateway.fork_repository(repository.owner, repository.name)

        deadline = self._monotonic() + self._timeout_seconds
        attempts = 0
        while True:
            self._sleep(self._delay_seconds)
            attempts += 1
            if self._gateway.fork_exists(user, repository.name):
                log_event(
                    LOGGER,
                    "fork_ready",
                    repo_name=repository.name,
                    attempts=attempts,
                )
                return
            if self._monotonic() >= deadline:
                log_event(
                    LOGGER,
                    "fork_wait_timed_out",
                    level=logging.ERROR,
                    repo_name=repository.name,
                    attempts=attempts,
                    timeout_seconds=self._timeout_seconds,
                )
                raise ForkTimeoutError(
                    f"Fork of {repository.owner}/{repository.name} for {user} did not appear "
                    f"within {self._timeout_seconds}s"
                )


class PushRouter:
    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        workspace: WorkspaceManager,
        forks: ForkCoordinator,
    ) -> None:
        self._gateway = gateway
        self._workspace = workspace
        self._forks = forks

    def push_branch_for(self, candidate: Candidate, source_branch: str) -> str:
        if self._is_others(candidate):
            return replacement_branch(candidate.request_id)
        return source_branch

    def finalize(self, ctx: WorkflowContext, candidate: Candidate) -> WorkflowOutcome:
        if self._is_others(candidate):
            return self._fork_and_redirect(ctx, candidate)
        repository = ctx.require_repository()
        self._push(ctx, self._gateway.resolve_push_url(repository))
        return WorkflowOutcome.succeeded(
            f"Pushed {ctx.push_branch} for request #{candidate.request_id}",
            request_id=candidate.request_id,
        )

    def _is_others(self, candidate: Candidate) -> bool:
        return is_others_request(
            self._gateway, candidate.author_name, self._gateway.server.user_name
        )

    def _fork_and_redirect(self, ctx: WorkflowContext, candidate: Candidate) -> WorkflowOutcome:
        bot_user = ctx.server.user_name
        target = self._gateway.get_repository(candidate.project_id)
        self._forks.ensure_fork(target, bot_user)
        fork = self._gateway.get_repository(candidate.project_id, owner=bot_user)
        self._push(ctx, self._gateway.resolve_push_url(fork))

        created = self._gateway.create_request(
            target,
            ctx.push_branch,
            ctx.target_branch,
            replacement_title(candidate),
            build_replacement_request_body(
                original_request_id=candidate.request_id,
                original_url=candidate.web_url,
            ),
            source=fork,
        )
        log_event(
            LOGGER,
            "fork_redirect_request_created",
            original_request_id=candidate.request_id,
            new_request_id=created.request_id,
            branch=ctx.push_branch,
            target_branch=ctx.target_branch,
        )
        self._hand_over_assignment(candidate, created.request_id)
        return WorkflowOutcome.succeeded(
            f"Opened replacement request #{created.request_id} for #{candidate.request_id}",
            request_id=candidate.request_id,
        )

    def _hand_over_assignment(self, candidate: Candidate, new_request_id: int) -> None:
        gateway = self._gateway
        if not isinstance(gateway, SupportsAssigneeManagement):
            return
        try:
            gateway.unassign_self(candidate.project_id, candidate.request_id)
            gateway.assign_to_self(candidate.project_id, new_request_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "assignment_handover_failed",
                level=logging.WARNING,
                original_request_id=candidate.request_id,
                new_request_id=new_request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _push(self, ctx: WorkflowContext, url: str) -> None:
        try:
            # The bot owns every branch it finalizes, so its local view always wins.
            self._workspace.push(ctx.require_workspace(), ctx.push_branch, url, force=True)
        except CommandError as exc:
            raise PushError(f"Push of {ctx.push_branch} failed: {exc}") from exc
