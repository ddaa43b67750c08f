from __future__ import annotations

import logging

from mergemend.models import (
    AttentionSignal,
    Candidate,
    DirectiveKind,
    DiscussionNote,
    EmptySignalError,
    MissingDataError,
    PipelineJob,
    RemediationDirective,
)
from mergemend.observability import log_event
from mergemend.prompts import (
    build_conflict_prompt,
    build_pipeline_prompt,
    build_review_prompt,
    conflict_commit_message,
    format_job_logs,
    pipeline_commit_message,
    review_commit_message,
)
from mergemend.provider import ProviderGateway, SupportsReviewDiscussions


LOGGER = logging.getLogger("mergemend.selector")


class MissingPipelineDataError(MissingDataError):
    """A pipeline fix was selected but the request carries no usable pipeline id."""


def choose_kind(signal: AttentionSignal) -> DirectiveKind:
    """Highest-priority true flag: conflicts, then new human review, then pipeline."""
    if signal.has_conflicts:
        return "resolve_conflict"
    if signal.has_new_human_review:
        return "address_review"
    if signal.pipeline_failed:
        return "fix_pipeline"
    raise EmptySignalError("Signal has no true flag")


def collect_failure_logs(gateway: ProviderGateway, project_id: int, pipeline_id: int) -> str:
    """Concatenated logs of every failed job; fetch failures degrade to explicit notes."""
    try:
        jobs = gateway.get_pipeline_jobs(project_id, pipeline_id)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "pipeline_jobs_unavailable",
            level=logging.WARNING,
            project_id=project_id,
            pipeline_id=pipeline_id,
            error_type=type(exc).__name__,
        )
        return "(logs unavailable: the pipeline job list could not be fetched)"

    jobs_with_logs: list[tuple[PipelineJob, str | None]] = []
    for job in jobs:
        if job.status != "failed":
            continue
        try:
            log_text: str | None = gateway.get_job_log(project_id, job.job_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "job_log_unavailable",
                level=logging.WARNING,
                project_id=project_id,
                job_id=job.job_id,
                error_type=type(exc).__name__,
            )
            log_text = None
        jobs_with_logs.append((job, log_text))
    return format_job_logs(jobs_with_logs)


class ActionSelector:
    def __init__(self, *, gateway: ProviderGateway) -> None:
        self._gateway = gateway

    def select(self, candidate: Candidate, signal: AttentionSignal) -> RemediationDirective:
        kind = choose_kind(signal)
        if kind == "resolve_conflict":
            prompt = build_conflict_prompt(candidate=candidate, target_branch=signal.target_branch)
            commit_message = conflict_commit_message(candidate.request_id)
        elif kind == "address_review":
            prompt = build_review_prompt(
                candidate=candidate,
                target_branch=signal.target_branch,
                notes=self._discussion(candidate),
                last_bot_action_time=signal.last_bot_action_time,
            )
            commit_message = review_commit_message(candidate.request_id)
        else:
            prompt = self._pipeline_prompt(candidate, signal)
            commit_message = pipeline_commit_message(candidate.request_id)

        log_event(
            LOGGER,
            "directive_selected",
            request_id=candidate.request_id,
            kind=kind,
        )
        return RemediationDirective.for_signal(
            signal, kind=kind, prompt=prompt, commit_message=commit_message
        )

    def _pipeline_prompt(self, candidate: Candidate, signal: AttentionSignal) -> str:
        pipeline = signal.details.pipeline if signal.details is not None else None
        if pipeline is None or pipeline.pipeline_id is None or pipeline.pipeline_id <= 0:
            raise MissingPipelineDataError(
                f"Request #{candidate.request_id} has a failed pipeline without a valid pipeline id"
            )
        # Fork-originated requests run their pipelines in the source project.
        logs = collect_failure_logs(
            self._gateway, candidate.pipeline_project_id, pipeline.pipeline_id
        )
        return build_pipeline_prompt(
            candidate=candidate,
            target_branch=signal.target_branch,
            pipeline_url=pipeline.web_url,
            failure_logs=logs,
        )

    def _discussion(self, candidate: Candidate) -> list[DiscussionNote]:
        gateway = self._gateway
        if not isinstance(gateway, SupportsReviewDiscussions):
            return []
        try:
            return gateway.list_request_discussions(candidate.project_id, candidate.request_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "discussion_transcript_unavailable",
                level=logging.WARNING,
                request_id=candidate.request_id,
                error_type=type(exc).__name__,
            )
            return []
