from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from mergemend.config import ServerConfig
from mergemend.models import (
    MIN_TIMESTAMP,
    AttentionSignal,
    Candidate,
    CommitRecord,
    DiscussionNote,
    FailureKind,
    ReviewStatus,
    WorkflowOutcome,
)
from mergemend.observability import log_event
from mergemend.prompts import BOT_ATTRIBUTION_MARKER
from mergemend.provider import ProviderError, ProviderGateway, SupportsReviewDiscussions


LOGGER = logging.getLogger("mergemend.classifier")


@dataclass(frozen=True)
class ScanResult:
    classified: tuple[tuple[Candidate, AttentionSignal], ...]
    failures: tuple[WorkflowOutcome, ...]

    def needing_attention(self) -> list[tuple[Candidate, AttentionSignal]]:
        return [
            (candidate, signal) for candidate, signal in self.classified if signal.needs_attention
        ]


def last_bot_action_time(commits: list[CommitRecord], notes: list[DiscussionNote]) -> datetime:
    stamps = [commit.created_at for commit in commits if BOT_ATTRIBUTION_MARKER in commit.message]
    stamps.extend(note.created_at for note in notes if BOT_ATTRIBUTION_MARKER in note.body)
    return max(stamps, default=MIN_TIMESTAMP)


def latest_human_note_time(notes: list[DiscussionNote], *, bot_user: str) -> datetime:
    bot = bot_user.strip().lower()
    return max(
        (
            note.created_at
            for note in notes
            if not note.system and note.author.strip().lower() != bot
        ),
        default=MIN_TIMESTAMP,
    )


def review_status_for(
    commits: list[CommitRecord],
    notes: list[DiscussionNote],
    *,
    bot_user: str,
) -> tuple[ReviewStatus, datetime]:
    bot_time = last_bot_action_time(commits, notes)
    # Strict: a human note at the very instant of the bot's action is not new.
    if latest_human_note_time(notes, bot_user=bot_user) > bot_time:
        return "new", bot_time
    return "none", bot_time


class AttentionClassifier:
    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        server: ServerConfig,
        default_target_branch: str,
    ) -> None:
        self._gateway = gateway
        self._server = server
        self._default_target_branch = default_target_branch

    def classify(self, candidate: Candidate) -> AttentionSignal:
        """Compute the three attention flags for one candidate.

        Details lookups propagate ProviderError; review detection never raises and
        reports "unknown" instead.
        """
        details = self._gateway.get_request_details(candidate.project_id, candidate.request_id)
        review_status, bot_time = self._review_status(candidate)
        signal = AttentionSignal(
            has_conflicts=details.has_conflicts,
            review_status=review_status,
            pipeline_failed=details.pipeline is not None and details.pipeline.status == "failed",
            target_branch=candidate.target_branch or self._default_target_branch,
            author_name=candidate.author_name,
            last_bot_action_time=bot_time,
            details=details,
        )
        log_event(
            LOGGER,
            "candidate_classified",
            request_id=candidate.request_id,
            project_id=candidate.project_id,
            has_conflicts=signal.has_conflicts,
            review_status=signal.review_status,
            pipeline_failed=signal.pipeline_failed,
            needs_attention=signal.needs_attention,
        )
        return signal

    def scan(self, candidates: list[Candidate]) -> ScanResult:
        classified: list[tuple[Candidate, AttentionSignal]] = []
        failures: list[WorkflowOutcome] = []
        for candidate in candidates:
            try:
                classified.append((candidate, self.classify(candidate)))
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "candidate_classification_failed",
                    level=logging.ERROR,
                    request_id=candidate.request_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                kind: FailureKind = "provider" if isinstance(exc, ProviderError) else "unexpected"
                failures.append(
                    WorkflowOutcome.failed(
                        f"Could not load request details: {exc}",
                        failure_kind=kind,
                        request_id=candidate.request_id,
                    )
                )
        return ScanResult(classified=tuple(classified), failures=tuple(failures))

    def _review_status(self, candidate: Candidate) -> tuple[ReviewStatus, datetime]:
        gateway = self._gateway
        if not isinstance(gateway, SupportsReviewDiscussions):
            return "unsupported", MIN_TIMESTAMP
        try:
            commits = gateway.list_request_commits(candidate.project_id, candidate.request_id)
            notes = gateway.list_request_discussions(candidate.project_id, candidate.request_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_detection_failed",
                level=logging.WARNING,
                request_id=candidate.request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "unknown", MIN_TIMESTAMP
        return review_status_for(commits, notes, bot_user=self._server.user_name)
