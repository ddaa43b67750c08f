from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from mergemend.agent_adapter import AgentAdapter
from mergemend.config import ServerConfig
from mergemend.models import (
    Candidate,
    CommitRecord,
    CreatedRequest,
    DiscussionNote,
    PipelineInfo,
    PipelineJob,
    Project,
    Repository,
    RequestDetails,
)
from mergemend.provider import (
    ProviderGateway,
    ProviderNotFoundError,
    SupportsAssigneeManagement,
    SupportsAuthorAttribution,
    SupportsCodeReview,
    SupportsProjectPipelines,
    SupportsReviewDiscussions,
)
from mergemend.shell import CommandError


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_server(*, server_id: str = "corp", provider: str = "gitlab") -> ServerConfig:
    return ServerConfig(
        server_id=server_id,
        provider=provider,  # type: ignore[arg-type]
        endpoint="https://gitlab.example.com",
        user_name="fixbot",
        token="tok",
        display_name="Fix Bot",
        user_email="fixbot@example.com",
    )


def make_candidate(**overrides: object) -> Candidate:
    values: dict[str, object] = {
        "request_id": 7,
        "title": "Add parser",
        "project_id": 10,
        "source_project_id": 10,
        "source_branch": "feature",
        "target_branch": "main",
        "author_name": "fixbot",
        "web_url": "https://gitlab.example.com/team/repo/-/merge_requests/7",
    }
    values.update(overrides)
    return Candidate(**values)  # type: ignore[arg-type]


def make_repository(project_id: int = 10, *, owner: str = "team", name: str = "repo") -> Repository:
    return Repository(
        project_id=project_id,
        name=name,
        owner=owner,
        clone_url=f"https://gitlab.example.com/{owner}/{name}.git",
    )


class FakeGateway(ProviderGateway):
    """In-memory gateway; values that are exceptions are raised when looked up."""

    def __init__(self, server: ServerConfig | None = None) -> None:
        self.server = server or make_server()
        self.candidates: list[Candidate] | Exception = []
        self.details: dict[int, RequestDetails | Exception] = {}
        self.repositories: dict[tuple[int, str | None], Repository] = {
            (10, None): make_repository(10)
        }
        self.jobs: dict[tuple[int, int], list[PipelineJob] | Exception] = {}
        self.logs: dict[tuple[int, int], str | Exception] = {}
        self.forks: set[tuple[str, str]] = set()
        self.fork_appears_after: int | None = None
        self.fork_exists_calls = 0
        self.fork_requests: list[tuple[str, str]] = []
        self.created: list[dict[str, object]] = []
        self.calls: list[str] = []

    def list_open_requests(self, user: str) -> list[Candidate]:
        self.calls.append(f"list_open_requests:{user}")
        if isinstance(self.candidates, Exception):
            raise self.candidates
        return list(self.candidates)

    def get_request_details(self, project_id: int, request_id: int) -> RequestDetails:
        self.calls.append(f"details:{project_id}:{request_id}")
        value = self.details.get(request_id, RequestDetails(has_conflicts=False, pipeline=None))
        if isinstance(value, Exception):
            raise value
        return value

    def get_repository(self, project_id: int, owner: str | None = None) -> Repository:
        self.calls.append(f"repository:{project_id}:{owner}")
        try:
            return self.repositories[(project_id, owner)]
        except KeyError:
            raise ProviderNotFoundError(f"project {project_id} owner {owner}") from None

    def get_pipeline_jobs(self, project_id: int, pipeline_id: int) -> list[PipelineJob]:
        self.calls.append(f"jobs:{project_id}:{pipeline_id}")
        value = self.jobs.get((project_id, pipeline_id), [])
        if isinstance(value, Exception):
            raise value
        return value

    def get_job_log(self, project_id: int, job_id: int) -> str:
        self.calls.append(f"log:{project_id}:{job_id}")
        value = self.logs.get((project_id, job_id), "")
        if isinstance(value, Exception):
            raise value
        return value

    def create_request(
        self,
        target: Repository,
        head_ref: str,
        base_ref: str,
        title: str,
        body: str,
        *,
        source: Repository | None = None,
    ) -> CreatedRequest:
        self.created.append(
            {
                "target": target,
                "head_ref": head_ref,
                "base_ref": base_ref,
                "title": title,
                "body": body,
                "source": source,
            }
        )
        return CreatedRequest(request_id=100 + len(self.created), web_url="new-url")

    def fork_exists(self, user: str, repo_name: str) -> bool:
        self.fork_exists_calls += 1
        if self.fork_appears_after is not None and self.fork_exists_calls > self.fork_appears_after:
            self.forks.add((user, repo_name))
        return (user, repo_name) in self.forks

    def fork_repository(self, owner: str, repo_name: str) -> None:
        self.fork_requests.append((owner, repo_name))


class FakeFullGateway(
    FakeGateway,
    SupportsReviewDiscussions,
    SupportsAssigneeManagement,
    SupportsAuthorAttribution,
    SupportsCodeReview,
    SupportsProjectPipelines,
):
    def __init__(self, server: ServerConfig | None = None) -> None:
        super().__init__(server)
        self.commits: dict[int, list[CommitRecord] | Exception] = {}
        self.discussions: dict[int, list[DiscussionNote] | Exception] = {}
        self.review_candidates: list[Candidate] | Exception = []
        self.posted_notes: list[tuple[int, int, str]] = []
        self.assignments: list[tuple[str, int, int]] = []
        self.assignment_error: Exception | None = None
        self.projects: list[Project] | Exception = []
        self.pipelines: dict[int, PipelineInfo | None | Exception] = {}
        self.open_issues: set[tuple[int, str]] = set()
        self.issues: list[tuple[int, str, str]] = []

    def list_request_commits(self, project_id: int, request_id: int) -> list[CommitRecord]:
        value = self.commits.get(request_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    def list_request_discussions(self, project_id: int, request_id: int) -> list[DiscussionNote]:
        value = self.discussions.get(request_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    def unassign_self(self, project_id: int, request_id: int) -> None:
        if self.assignment_error is not None:
            raise self.assignment_error
        self.assignments.append(("unassign", project_id, request_id))

    def assign_to_self(self, project_id: int, request_id: int) -> None:
        self.assignments.append(("assign", project_id, request_id))

    def list_review_requests(self, user: str) -> list[Candidate]:
        if isinstance(self.review_candidates, Exception):
            raise self.review_candidates
        return list(self.review_candidates)

    def post_request_note(self, project_id: int, request_id: int, body: str) -> None:
        self.posted_notes.append((project_id, request_id, body))

    def list_starred_projects(self) -> list[Project]:
        if isinstance(self.projects, Exception):
            raise self.projects
        return list(self.projects)

    def latest_pipeline(self, project_id: int, ref: str) -> PipelineInfo | None:
        value = self.pipelines.get(project_id)
        if isinstance(value, Exception):
            raise value
        return value

    def find_open_issue(self, project_id: int, title: str, assignee: str) -> bool:
        return (project_id, title) in self.open_issues

    def create_issue(self, project_id: int, title: str, description: str) -> None:
        self.issues.append((project_id, title, description))


@dataclass
class FakeWorkspace:
    """Stands in for WorkspaceManager and records every git-level action."""

    pending: bool = False
    ahead: int | None = 0
    merge_exit: int = 0
    conflicted: tuple[str, ...] = ()
    commit_ok: bool = True
    push_error: bool = False
    reset_error: bool = False
    actions: list[tuple[object, ...]] = field(default_factory=list)

    def reset_repository(
        self,
        path: Path,
        branch: str,
        clone_url: str,
        mode: str = "full",
        auth: str | None = None,
    ) -> None:
        self.actions.append(("reset", path, branch, clone_url, mode, auth))
        if self.reset_error:
            raise CommandError("Command failed\ncmd: git clone")
        path.mkdir(parents=True, exist_ok=True)

    def set_identity(self, path: Path, name: str, email: str) -> None:
        self.actions.append(("identity", name, email))

    def has_pending_changes(self, path: Path) -> bool:
        return self.pending

    def commit(self, path: Path, message: str, branch: str) -> bool:
        self.actions.append(("commit", message, branch))
        return self.commit_ok

    def push(self, path: Path, branch: str, url: str, *, force: bool) -> None:
        self.actions.append(("push", branch, url, force))
        if self.push_error:
            raise CommandError("Command failed\ncmd: git push")

    def fetch_branch(self, path: Path, branch: str) -> None:
        self.actions.append(("fetch", branch))

    def configure_merge(self, path: Path) -> None:
        self.actions.append(("configure_merge",))

    def merge_branch(self, path: Path, ref: str) -> int:
        self.actions.append(("merge", ref))
        return self.merge_exit

    def list_conflicted_files(self, path: Path) -> tuple[str, ...]:
        return self.conflicted

    def ahead_count(self, path: Path, branch: str) -> int | None:
        self.actions.append(("ahead", branch))
        return self.ahead

    def kinds(self) -> list[object]:
        return [action[0] for action in self.actions]


class FakeAgent(AgentAdapter):
    def __init__(
        self,
        *,
        ok: bool = True,
        on_invoke: Callable[[Path], None] | None = None,
    ) -> None:
        self.ok = ok
        self.on_invoke = on_invoke
        self.invocations: list[tuple[Path, str, bool]] = []

    def invoke(self, cwd: Path, prompt: str, *, hide_history: bool) -> bool:
        self.invocations.append((cwd, prompt, hide_history))
        if self.on_invoke is not None:
            self.on_invoke(cwd)
        return self.ok
