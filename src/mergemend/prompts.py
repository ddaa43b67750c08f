from __future__ import annotations

from datetime import datetime

from mergemend.models import Candidate, DiscussionNote, PipelineJob


# Shared by every bot-authored commit and note; the classifier recognises bot activity
# solely by this substring, so changing it resets "new since the bot last acted".
BOT_ATTRIBUTION_MARKER = "Automatically generated fix by MergeMend Bot"

REVIEW_ARTIFACT = "review.md"

_CONFLICT_VERB = "Resolve merge conflicts"
_REVIEW_VERB = "Address human review"
_PIPELINE_VERB = "Fix pipeline failure"


def build_commit_message(verb: str, request_id: int) -> str:
    return f"{verb} for request #{request_id}\n\n{BOT_ATTRIBUTION_MARKER}."


def conflict_commit_message(request_id: int) -> str:
    return build_commit_message(_CONFLICT_VERB, request_id)


def review_commit_message(request_id: int) -> str:
    return build_commit_message(_REVIEW_VERB, request_id)


def pipeline_commit_message(request_id: int) -> str:
    return build_commit_message(_PIPELINE_VERB, request_id)


def attributed_note(body: str) -> str:
    return f"{body.rstrip()}\n\n---\n_{BOT_ATTRIBUTION_MARKER}._"


def build_conflict_prompt(*, candidate: Candidate, target_branch: str) -> str:
    return f"""
You are fixing merge request #{candidate.request_id}: {candidate.title}

Situation:
- Source branch: {candidate.source_branch}
- Target branch: {target_branch}
- The target branch has already been merged into the working copy and left merge
  conflicts behind.

Task:
- Find every conflicted file (look for <<<<<<<, ======= and >>>>>>> markers).
- Resolve each conflict so that the intent of both sides is preserved.
- Remove every conflict marker. No marker may remain anywhere in the repository.
- Make sure the project still builds and its tests still pass.
- Commit when done, completing the merge.
""".strip()


def build_review_prompt(
    *,
    candidate: Candidate,
    target_branch: str,
    notes: list[DiscussionNote],
    last_bot_action_time: datetime,
) -> str:
    return f"""
You are addressing human review feedback on merge request #{candidate.request_id}: {candidate.title}

- Source branch: {candidate.source_branch}
- Target branch: {target_branch}

Discussion, oldest first. Entries marked [NEW] arrived after your last change:
{format_transcript(notes, since=last_bot_action_time)}

Task:
- Apply every change the [NEW] entries ask for, using the older entries as context.
- If a request is unclear or wrong, make the most reasonable change and keep it small.
- Keep the build and tests passing.
- Commit when done.
""".strip()


def build_pipeline_prompt(
    *,
    candidate: Candidate,
    target_branch: str,
    pipeline_url: str,
    failure_logs: str,
) -> str:
    return f"""
The CI pipeline failed for merge request #{candidate.request_id}: {candidate.title}

- Source branch: {candidate.source_branch}
- Target branch: {target_branch}
- Pipeline: {pipeline_url or "<unknown>"}

Logs of the failed jobs:
{failure_logs}

Task:
- Find the root cause from the logs above and fix it in the code.
- Do not disable, skip or delete failing tests to make the pipeline pass.
- Commit when done.
""".strip()


def build_code_review_prompt(
    *,
    candidate: Candidate,
    target_branch: str,
    notes: list[DiscussionNote],
) -> str:
    discussion = format_transcript(notes, since=None) if notes else "No discussions found."
    return f"""
You are a code reviewer for merge request #{candidate.request_id}: {candidate.title}

- Source branch: {candidate.source_branch}
- Target branch: {target_branch}

Recent discussions:
{discussion}

Your task:
1. Analyze the changes in the current codebase compared to the target branch.
2. Provide a constructive code review covering correctness, security and performance.
3. Write the review into a file named '{REVIEW_ARTIFACT}' in the root of the project.
4. If everything looks good, say so in '{REVIEW_ARTIFACT}'.
5. Do not modify any other file.
""".strip()


def format_transcript(notes: list[DiscussionNote], *, since: datetime | None) -> str:
    lines: list[str] = []
    for note in sorted(notes, key=lambda item: item.created_at):
        if note.system:
            continue
        marker = "[NEW] " if since is not None and note.created_at > since else ""
        lines.append(f"{marker}{note.author} ({note.created_at.isoformat()}): {note.body}")
    return "\n".join(lines) or "(no discussion)"


def format_job_logs(jobs_with_logs: list[tuple[PipelineJob, str | None]]) -> str:
    if not jobs_with_logs:
        return "(no failed jobs reported)"
    sections: list[str] = []
    for job, log_text in jobs_with_logs:
        body = log_text if log_text is not None and log_text.strip() else "(logs unavailable)"
        sections.append(
            f"=== Job: {job.name} (Stage: {job.stage}) ===\n{body.rstrip()}\n=== End of Job Log ==="
        )
    return "\n\n".join(sections)


def build_pipeline_issue_description(
    *, pipeline_id: int | None, pipeline_url: str, failure_logs: str
) -> str:
    return f"""
The latest pipeline on the default branch failed.

- Pipeline ID: {pipeline_id if pipeline_id is not None else "<unknown>"}
- Pipeline: {pipeline_url or "<unknown>"}

{failure_logs}

{BOT_ATTRIBUTION_MARKER}.
""".strip()


def build_replacement_request_body(*, original_request_id: int, original_url: str) -> str:
    reference = f"#{original_request_id}"
    if original_url:
        reference = f"{reference} ({original_url})"
    return f"""
This request replaces {reference}.

The bot cannot push to the original source branch, so it pushed its fix to a branch in
its own fork and opened this request against the same target branch. Review and merge
this one; the original can be closed once it lands.

{BOT_ATTRIBUTION_MARKER}.
""".strip()
