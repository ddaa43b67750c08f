from __future__ import annotations

from dataclasses import dataclass
import logging

from mergemend.classifier import AttentionClassifier
from mergemend.config import ServerConfig
from mergemend.models import (
    MIN_TIMESTAMP,
    AttentionSignal,
    BatchResult,
    Candidate,
    DiscussionNote,
    MissingDataError,
    Project,
    WorkflowOutcome,
)
from mergemend.observability import log_event
from mergemend.prompts import (
    BOT_ATTRIBUTION_MARKER,
    REVIEW_ARTIFACT,
    attributed_note,
    build_code_review_prompt,
    build_pipeline_issue_description,
)
from mergemend.provider import (
    ProviderError,
    ProviderGateway,
    SupportsCodeReview,
    SupportsProjectPipelines,
    SupportsReviewDiscussions,
)
from mergemend.push_router import PushRouter
from mergemend.selector import ActionSelector, collect_failure_logs
from mergemend.workflow import WorkflowContext, WorkflowEngine, failure_kind_for


LOGGER = logging.getLogger("mergemend.processor")

PIPELINE_ISSUE_TITLE = "Default branch pipeline is failing"


def _listing_failed(server: ServerConfig, flow: str, exc: Exception) -> BatchResult:
    log_event(
        LOGGER,
        "batch_listing_failed",
        level=logging.ERROR,
        server=server.server_id,
        flow=flow,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return BatchResult(server_id=server.server_id, flow=flow, error=str(exc))


def _completed(result: BatchResult) -> BatchResult:
    log_event(
        LOGGER,
        "batch_completed",
        server=result.server_id,
        flow=result.flow,
        processed=result.processed,
        succeeded=result.succeeded,
        skipped=result.skipped,
        failed=result.failed,
    )
    return result


@dataclass
class RemediationProcessor:
    """List, classify, filter, then remediate one candidate at a time."""

    server: ServerConfig
    gateway: ProviderGateway
    classifier: AttentionClassifier
    selector: ActionSelector
    engine: WorkflowEngine
    router: PushRouter

    flow = "remediation"

    def process(self) -> BatchResult:
        log_event(LOGGER, "batch_started", server=self.server.server_id, flow=self.flow)
        try:
            candidates = self.gateway.list_open_requests(self.server.user_name)
        except Exception as exc:  # noqa: BLE001
            return _listing_failed(self.server, self.flow, exc)

        scan = self.classifier.scan(candidates)
        outcomes = list(scan.failures)
        for candidate, signal in scan.needing_attention():
            outcomes.append(self.process_candidate(candidate, signal))
        return _completed(
            BatchResult(server_id=self.server.server_id, flow=self.flow, outcomes=tuple(outcomes))
        )

    def process_candidate(self, candidate: Candidate, signal: AttentionSignal) -> WorkflowOutcome:
        log_event(
            LOGGER,
            "candidate_selected",
            request_id=candidate.request_id,
            title=candidate.title,
        )
        try:
            context = self.build_context(candidate, signal)
        except MissingDataError as exc:
            log_event(
                LOGGER,
                "candidate_skipped",
                level=logging.WARNING,
                request_id=candidate.request_id,
                reason=str(exc),
            )
            return WorkflowOutcome.skipped(str(exc), request_id=candidate.request_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "candidate_failed",
                level=logging.ERROR,
                request_id=candidate.request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return WorkflowOutcome.failed(
                str(exc), failure_kind=failure_kind_for(exc), request_id=candidate.request_id
            )

        return self.engine.execute(context, lambda ctx: self.router.finalize(ctx, candidate))

    def build_context(self, candidate: Candidate, signal: AttentionSignal) -> WorkflowContext:
        if not candidate.source_branch:
            raise MissingDataError(f"Request #{candidate.request_id} has no source branch")
        directive = self.selector.select(candidate, signal)
        return WorkflowContext(
            server=self.server,
            project_id=candidate.pipeline_project_id,
            source_branch=candidate.source_branch,
            target_branch=signal.target_branch,
            workspace_label=f"request-{candidate.request_id}",
            prompt=directive.prompt,
            commit_message=directive.commit_message,
            push_branch=self.router.push_branch_for(candidate, candidate.source_branch),
            request_id=candidate.request_id,
            resolve_conflicts=directive.kind == "resolve_conflict",
        )


@dataclass
class ReviewProcessor:
    """Post an agent-written code review on requests where the bot is a reviewer."""

    server: ServerConfig
    gateway: ProviderGateway
    engine: WorkflowEngine
    default_target_branch: str

    flow = "review"

    def process(self) -> BatchResult:
        gateway = self.gateway
        if not isinstance(gateway, SupportsCodeReview):
            log_event(LOGGER, "batch_unsupported", server=self.server.server_id, flow=self.flow)
            return BatchResult(server_id=self.server.server_id, flow=self.flow)

        log_event(LOGGER, "batch_started", server=self.server.server_id, flow=self.flow)
        try:
            candidates = gateway.list_review_requests(self.server.user_name)
        except Exception as exc:  # noqa: BLE001
            return _listing_failed(self.server, self.flow, exc)

        outcomes: list[WorkflowOutcome] = []
        for candidate in candidates:
            if self.needs_review(candidate):
                outcomes.append(self.review(candidate, gateway))
        return _completed(
            BatchResult(server_id=self.server.server_id, flow=self.flow, outcomes=tuple(outcomes))
        )

    def needs_review(self, candidate: Candidate) -> bool:
        """True when the newest commit is newer than the bot's newest note."""
        gateway = self.gateway
        if not isinstance(gateway, SupportsReviewDiscussions):
            return False
        try:
            commits = gateway.list_request_commits(candidate.project_id, candidate.request_id)
            notes = gateway.list_request_discussions(candidate.project_id, candidate.request_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_check_failed",
                level=logging.WARNING,
                request_id=candidate.request_id,
                error_type=type(exc).__name__,
            )
            return False
        last_commit = max((commit.created_at for commit in commits), default=MIN_TIMESTAMP)
        last_review = max(
            (
                note.created_at
                for note in notes
                if not note.system
                and (self.server.is_bot(note.author) or BOT_ATTRIBUTION_MARKER in note.body)
            ),
            default=MIN_TIMESTAMP,
        )
        return last_commit > last_review

    def review(self, candidate: Candidate, gateway: SupportsCodeReview) -> WorkflowOutcome:
        if not candidate.source_branch:
            return WorkflowOutcome.skipped(
                f"Request #{candidate.request_id} has no source branch",
                request_id=candidate.request_id,
            )
        notes: list[DiscussionNote] = []
        if isinstance(self.gateway, SupportsReviewDiscussions):
            try:
                notes = self.gateway.list_request_discussions(
                    candidate.project_id, candidate.request_id
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "discussion_transcript_unavailable",
                    level=logging.WARNING,
                    request_id=candidate.request_id,
                    error_type=type(exc).__name__,
                )
        target_branch = candidate.target_branch or self.default_target_branch
        context = WorkflowContext(
            server=self.server,
            project_id=candidate.pipeline_project_id,
            source_branch=candidate.source_branch,
            target_branch=target_branch,
            workspace_label=f"review-{candidate.request_id}",
            prompt=build_code_review_prompt(
                candidate=candidate, target_branch=target_branch, notes=notes
            ),
            commit_message="",
            push_branch=candidate.source_branch,
            request_id=candidate.request_id,
            skip_commit=True,
        )

        def post_review(ctx: WorkflowContext) -> WorkflowOutcome:
            artifact = ctx.require_workspace() / REVIEW_ARTIFACT
            content = artifact.read_text(encoding="utf-8") if artifact.is_file() else ""
            if not content.strip():
                log_event(
                    LOGGER,
                    "review_artifact_missing",
                    level=logging.WARNING,
                    request_id=candidate.request_id,
                )
                return WorkflowOutcome.skipped(
                    f"agent wrote no {REVIEW_ARTIFACT}", request_id=candidate.request_id
                )
            gateway.post_request_note(
                candidate.project_id, candidate.request_id, attributed_note(content)
            )
            log_event(LOGGER, "review_note_posted", request_id=candidate.request_id)
            return WorkflowOutcome.succeeded(
                f"Posted review on request #{candidate.request_id}",
                request_id=candidate.request_id,
            )

        return self.engine.execute(context, post_review)


@dataclass
class PipelineWatcher:
    """Open one tracking issue per starred project whose default branch is red."""

    server: ServerConfig
    gateway: ProviderGateway

    flow = "pipeline_watch"

    def process(self) -> BatchResult:
        gateway = self.gateway
        if not isinstance(gateway, SupportsProjectPipelines):
            log_event(LOGGER, "batch_unsupported", server=self.server.server_id, flow=self.flow)
            return BatchResult(server_id=self.server.server_id, flow=self.flow)

        log_event(LOGGER, "batch_started", server=self.server.server_id, flow=self.flow)
        try:
            projects = gateway.list_starred_projects()
        except Exception as exc:  # noqa: BLE001
            return _listing_failed(self.server, self.flow, exc)

        outcomes = [self.check_project(project, gateway) for project in projects]
        return _completed(
            BatchResult(server_id=self.server.server_id, flow=self.flow, outcomes=tuple(outcomes))
        )

    def check_project(self, project: Project, gateway: SupportsProjectPipelines) -> WorkflowOutcome:
        try:
            pipeline = gateway.latest_pipeline(project.project_id, project.default_branch)
            if pipeline is None or pipeline.status != "failed":
                status = pipeline.status if pipeline is not None else "not found"
                return WorkflowOutcome.skipped(f"{project.name} pipeline is {status}")
            if gateway.find_open_issue(
                project.project_id, PIPELINE_ISSUE_TITLE, self.server.user_name
            ):
                return WorkflowOutcome.skipped(f"{project.name} already has an open issue")

            logs = (
                collect_failure_logs(self.gateway, project.project_id, pipeline.pipeline_id)
                if pipeline.pipeline_id is not None
                else "(logs unavailable: the pipeline has no id)"
            )
            gateway.create_issue(
                project.project_id,
                PIPELINE_ISSUE_TITLE,
                build_pipeline_issue_description(
                    pipeline_id=pipeline.pipeline_id,
                    pipeline_url=pipeline.web_url,
                    failure_logs=logs,
                ),
            )
        except ProviderError as exc:
            log_event(
                LOGGER,
                "pipeline_check_failed",
                level=logging.ERROR,
                project_id=project.project_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return WorkflowOutcome.failed(f"{project.name}: {exc}", failure_kind="provider")
        log_event(
            LOGGER,
            "pipeline_issue_created",
            project_id=project.project_id,
            pipeline_id=pipeline.pipeline_id,
        )
        return WorkflowOutcome.succeeded(f"Opened pipeline issue for {project.name}")
