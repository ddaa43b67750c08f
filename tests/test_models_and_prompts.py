from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st
import pytest

from mergemend.models import (
    MIN_TIMESTAMP,
    AttentionSignal,
    BatchResult,
    Candidate,
    DiscussionNote,
    EmptySignalError,
    PipelineJob,
    RemediationDirective,
    WorkflowOutcome,
    parse_timestamp,
)
from mergemend.prompts import (
    BOT_ATTRIBUTION_MARKER,
    attributed_note,
    build_code_review_prompt,
    build_conflict_prompt,
    build_pipeline_issue_description,
    build_pipeline_prompt,
    build_replacement_request_body,
    build_review_prompt,
    conflict_commit_message,
    format_job_logs,
    format_transcript,
    pipeline_commit_message,
    review_commit_message,
)


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _candidate(**overrides: object) -> Candidate:
    values: dict[str, object] = {
        "request_id": 7,
        "title": "Add parser",
        "project_id": 10,
        "source_project_id": 10,
        "source_branch": "feature/parser",
        "target_branch": "main",
    }
    values.update(overrides)
    return Candidate(**values)  # type: ignore[arg-type]


def _signal(*, conflicts: bool = False, review: str = "none", pipeline: bool = False) -> AttentionSignal:
    return AttentionSignal(
        has_conflicts=conflicts,
        review_status=review,  # type: ignore[arg-type]
        pipeline_failed=pipeline,
        target_branch="main",
        author_name=None,
        last_bot_action_time=MIN_TIMESTAMP,
    )


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp("2024-05-01T12:00:00Z") == T0
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == T0
    assert parse_timestamp("2024-05-01T12:00:00") == T0
    assert parse_timestamp("not a date") == MIN_TIMESTAMP
    assert parse_timestamp("") == MIN_TIMESTAMP
    assert parse_timestamp(None) == MIN_TIMESTAMP


def test_pipeline_project_prefers_fork_source() -> None:
    assert _candidate(source_project_id=99).pipeline_project_id == 99
    assert _candidate(source_project_id=0).pipeline_project_id == 10


@given(
    conflicts=st.booleans(),
    review=st.sampled_from(["new", "none", "unknown", "unsupported"]),
    pipeline=st.booleans(),
)
def test_needs_attention_is_or_of_flags(conflicts: bool, review: str, pipeline: bool) -> None:
    signal = _signal(conflicts=conflicts, review=review, pipeline=pipeline)
    assert signal.has_new_human_review == (review == "new")
    assert signal.needs_attention == (conflicts or review == "new" or pipeline)


def test_directive_rejects_empty_signal() -> None:
    with pytest.raises(EmptySignalError):
        RemediationDirective.for_signal(
            _signal(review="unknown"), kind="address_review", prompt="p", commit_message="m"
        )
    directive = RemediationDirective.for_signal(
        _signal(pipeline=True), kind="fix_pipeline", prompt="p", commit_message="m"
    )
    assert directive.kind == "fix_pipeline"


def test_outcome_rendering() -> None:
    assert str(WorkflowOutcome.succeeded("Pushed")) == "Success: Pushed"
    assert str(WorkflowOutcome.skipped("nothing to do")) == "Skipped: nothing to do"
    failed = WorkflowOutcome.failed("boom", failure_kind="push", request_id=3)
    assert str(failed) == "Failed: boom"
    assert failed.failure_kind == "push"
    assert failed.request_id == 3


def test_batch_result_summary_counts() -> None:
    result = BatchResult(
        server_id="corp",
        flow="remediation",
        outcomes=(
            WorkflowOutcome.succeeded("a"),
            WorkflowOutcome.skipped("b"),
            WorkflowOutcome.failed("c", failure_kind="agent"),
            WorkflowOutcome.failed("d", failure_kind="push"),
        ),
    )
    assert result.summary() == (
        "server=corp flow=remediation processed=4 succeeded=1 skipped=1 failed=2"
    )
    broken = BatchResult(server_id="corp", flow="review", error="listing failed")
    assert broken.summary().endswith("error=listing failed")


def test_commit_messages_carry_marker() -> None:
    for message in (
        conflict_commit_message(7),
        review_commit_message(7),
        pipeline_commit_message(7),
    ):
        assert "request #7" in message
        assert BOT_ATTRIBUTION_MARKER in message
    assert conflict_commit_message(7).startswith("Resolve merge conflicts")
    assert BOT_ATTRIBUTION_MARKER in attributed_note("LGTM\n")


def test_format_transcript_marks_new_and_skips_system() -> None:
    notes = [
        DiscussionNote(body="second", author="bob", created_at=T0 + timedelta(hours=2), system=False),
        DiscussionNote(body="first", author="amy", created_at=T0, system=False),
        DiscussionNote(body="added 1 commit", author="amy", created_at=T0, system=True),
    ]

    text = format_transcript(notes, since=T0 + timedelta(hours=1))

    lines = text.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("amy")
    assert lines[1].startswith("[NEW] bob")
    assert format_transcript([], since=None) == "(no discussion)"


def test_format_job_logs() -> None:
    job = PipelineJob(job_id=1, name="unit", stage="test", status="failed")
    text = format_job_logs([(job, "AssertionError\n"), (job, None)])
    assert "=== Job: unit (Stage: test) ===" in text
    assert "AssertionError" in text
    assert "(logs unavailable)" in text
    assert format_job_logs([]) == "(no failed jobs reported)"


def test_prompts_mention_request_and_branches() -> None:
    candidate = _candidate()
    conflict = build_conflict_prompt(candidate=candidate, target_branch="main")
    assert "#7" in conflict and "feature/parser" in conflict and "<<<<<<<" in conflict

    review = build_review_prompt(
        candidate=candidate,
        target_branch="main",
        notes=[DiscussionNote(body="rename x", author="amy", created_at=T0, system=False)],
        last_bot_action_time=MIN_TIMESTAMP,
    )
    assert "[NEW] amy" in review

    pipeline = build_pipeline_prompt(
        candidate=candidate, target_branch="main", pipeline_url="", failure_logs="LOGS"
    )
    assert "<unknown>" in pipeline and "LOGS" in pipeline

    code_review = build_code_review_prompt(candidate=candidate, target_branch="main", notes=[])
    assert "review.md" in code_review
    assert "No discussions found." in code_review


def test_issue_and_replacement_bodies() -> None:
    issue = build_pipeline_issue_description(pipeline_id=None, pipeline_url="", failure_logs="L")
    assert "Pipeline ID: <unknown>" in issue
    assert BOT_ATTRIBUTION_MARKER in issue

    body = build_replacement_request_body(original_request_id=7, original_url="https://x/7")
    assert "#7 (https://x/7)" in body
    assert BOT_ATTRIBUTION_MARKER in body
