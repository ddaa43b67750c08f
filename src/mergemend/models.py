from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal


DirectiveKind = Literal["resolve_conflict", "address_review", "fix_pipeline"]
ReviewStatus = Literal["new", "none", "unknown", "unsupported"]
OutcomeStatus = Literal["succeeded", "skipped", "failed"]
FailureKind = Literal[
    "missing_data",
    "provider",
    "conflict_anomaly",
    "agent",
    "commit",
    "push",
    "workspace",
    "fork_timeout",
    "unexpected",
]
CloneMode = Literal["full", "shallow"]

MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: object) -> datetime:
    """Parse a provider ISO-8601 timestamp into an aware UTC datetime.

    Missing or malformed values map to MIN_TIMESTAMP so they never count as "newer".
    """
    if not isinstance(value, str) or not value.strip():
        return MIN_TIMESTAMP
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return MIN_TIMESTAMP
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Candidate:
    request_id: int
    title: str
    project_id: int
    source_project_id: int
    source_branch: str | None
    target_branch: str | None = None
    author_name: str | None = None
    web_url: str = ""

    @property
    def pipeline_project_id(self) -> int:
        # Requests opened from a fork run their pipelines (and host their branch) in the fork.
        if self.source_project_id > 0:
            return self.source_project_id
        return self.project_id


@dataclass(frozen=True)
class PipelineInfo:
    pipeline_id: int | None
    status: str
    web_url: str


@dataclass(frozen=True)
class RequestDetails:
    has_conflicts: bool
    pipeline: PipelineInfo | None


@dataclass(frozen=True)
class PipelineJob:
    job_id: int
    name: str
    stage: str
    status: str


@dataclass(frozen=True)
class Repository:
    project_id: int
    name: str
    owner: str
    clone_url: str
    default_branch: str = "main"


@dataclass(frozen=True)
class CommitRecord:
    message: str
    created_at: datetime


@dataclass(frozen=True)
class DiscussionNote:
    body: str
    author: str
    created_at: datetime
    system: bool


@dataclass(frozen=True)
class CreatedRequest:
    request_id: int
    web_url: str


@dataclass(frozen=True)
class Project:
    project_id: int
    name: str
    default_branch: str


@dataclass(frozen=True)
class AttentionSignal:
    has_conflicts: bool
    review_status: ReviewStatus
    pipeline_failed: bool
    target_branch: str
    author_name: str | None
    last_bot_action_time: datetime
    details: RequestDetails | None = None

    @property
    def has_new_human_review(self) -> bool:
        return self.review_status == "new"

    @property
    def needs_attention(self) -> bool:
        return self.has_conflicts or self.has_new_human_review or self.pipeline_failed


class EmptySignalError(ValueError):
    """A directive was requested for a signal with no true flag."""


@dataclass(frozen=True)
class RemediationDirective:
    kind: DirectiveKind
    prompt: str
    commit_message: str

    @classmethod
    def for_signal(
        cls,
        signal: AttentionSignal,
        *,
        kind: DirectiveKind,
        prompt: str,
        commit_message: str,
    ) -> RemediationDirective:
        if not signal.needs_attention:
            raise EmptySignalError("Cannot build a directive for a signal with no true flag")
        return cls(kind=kind, prompt=prompt, commit_message=commit_message)


@dataclass(frozen=True)
class WorkflowOutcome:
    status: OutcomeStatus
    message: str
    request_id: int | None = None
    failure_kind: FailureKind | None = None

    @classmethod
    def succeeded(cls, message: str, *, request_id: int | None = None) -> WorkflowOutcome:
        return cls(status="succeeded", message=message, request_id=request_id)

    @classmethod
    def skipped(cls, reason: str, *, request_id: int | None = None) -> WorkflowOutcome:
        return cls(status="skipped", message=f"Skipped: {reason}", request_id=request_id)

    @classmethod
    def failed(
        cls,
        message: str,
        *,
        failure_kind: FailureKind,
        request_id: int | None = None,
    ) -> WorkflowOutcome:
        return cls(
            status="failed",
            message=message,
            request_id=request_id,
            failure_kind=failure_kind,
        )

    def __str__(self) -> str:
        if self.status == "failed":
            return f"Failed: {self.message}"
        if self.status == "skipped":
            return self.message
        return f"Success: {self.message}"


@dataclass(frozen=True)
class BatchResult:
    server_id: str
    flow: str
    outcomes: tuple[WorkflowOutcome, ...] = ()
    error: str | None = None

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "succeeded")

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")

    def summary(self) -> str:
        text = (
            f"server={self.server_id} flow={self.flow} processed={self.processed} "
            f"succeeded={self.succeeded} skipped={self.skipped} failed={self.failed}"
        )
        if self.error is not None:
            text += f" error={self.error}"
        return text


class MissingDataError(ValueError):
    """A candidate lacks data the workflow cannot proceed without."""
