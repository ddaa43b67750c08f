from __future__ import annotations

import logging
from urllib.parse import urlencode

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
    parse_timestamp,
)
from mergemend.observability import log_event
from mergemend.provider import (
    CliApiClient,
    ProviderError,
    ProviderGateway,
    ProviderNotFoundError,
    SupportsAssigneeManagement,
    SupportsAuthorAttribution,
    SupportsCodeReview,
    SupportsProjectPipelines,
    SupportsReviewDiscussions,
    as_bool,
    as_int,
    as_object_dict,
    as_optional_int,
    as_optional_str,
    as_string,
    encode_path,
    nested_str,
    require_object_dict,
)


LOGGER = logging.getLogger("mergemend.gitlab_gateway")


class GitLabGateway(
    ProviderGateway,
    SupportsReviewDiscussions,
    SupportsAssigneeManagement,
    SupportsAuthorAttribution,
    SupportsCodeReview,
    SupportsProjectPipelines,
):
    """GitLab REST v4 through ``glab api``."""

    def __init__(self, server: ServerConfig, *, client: CliApiClient | None = None) -> None:
        self.server = server
        self._client = client or CliApiClient(
            cli="glab",
            hostname=server.hostname,
            token_env={"GITLAB_TOKEN": server.token},
            label="GitLab",
        )
        self._user_id: int | None = None

    def list_open_requests(self, user: str) -> list[Candidate]:
        # GitLab scopes "assigned_to_me" to the token owner; `user` names it for logging.
        query = urlencode({"scope": "assigned_to_me", "state": "opened"})
        candidates = self._candidates(f"merge_requests?{query}")
        log_event(
            LOGGER, "gitlab_read", endpoint="assigned_requests", user=user, count=len(candidates)
        )
        return candidates

    def list_review_requests(self, user: str) -> list[Candidate]:
        query = urlencode({"reviewer_username": user, "state": "opened", "scope": "all"})
        candidates = self._candidates(f"merge_requests?{query}")
        log_event(
            LOGGER, "gitlab_read", endpoint="review_requests", user=user, count=len(candidates)
        )
        return candidates

    def get_request_details(self, project_id: int, request_id: int) -> RequestDetails:
        payload = require_object_dict(
            self._client.get_json(f"projects/{project_id}/merge_requests/{request_id}"),
            what="merge request",
        )
        pipeline_obj = as_object_dict(payload.get("head_pipeline")) or as_object_dict(
            payload.get("pipeline")
        )
        pipeline: PipelineInfo | None = None
        if pipeline_obj is not None:
            pipeline = PipelineInfo(
                pipeline_id=as_optional_int(pipeline_obj.get("id")),
                status=as_string(pipeline_obj.get("status")).strip().lower(),
                web_url=as_string(pipeline_obj.get("web_url")),
            )
        details = RequestDetails(
            has_conflicts=as_bool(payload.get("has_conflicts")), pipeline=pipeline
        )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_request",
            project_id=project_id,
            request_id=request_id,
            has_conflicts=details.has_conflicts,
            pipeline_status=pipeline.status if pipeline else None,
        )
        return details

    def get_repository(self, project_id: int, owner: str | None = None) -> Repository:
        if owner is None:
            payload = self._client.get_json(f"projects/{project_id}")
            return _repository(require_object_dict(payload, what="project"))

        query = urlencode({"owned": "true"})
        for item in self._client.get_list(f"projects/{project_id}/forks?{query}"):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            namespace = nested_str(item_obj.get("namespace"), "path") or ""
            if namespace.lower() == owner.lower():
                return _repository(item_obj)
        raise ProviderNotFoundError(f"No fork of project {project_id} owned by {owner}")

    def get_pipeline_jobs(self, project_id: int, pipeline_id: int) -> list[PipelineJob]:
        jobs: list[PipelineJob] = []
        for item in self._client.get_list(f"projects/{project_id}/pipelines/{pipeline_id}/jobs"):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            jobs.append(
                PipelineJob(
                    job_id=as_int(item_obj.get("id"), field="id"),
                    name=as_string(item_obj.get("name")),
                    stage=as_string(item_obj.get("stage")),
                    status=as_string(item_obj.get("status")).strip().lower(),
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="pipeline_jobs",
            project_id=project_id,
            pipeline_id=pipeline_id,
            count=len(jobs),
        )
        return jobs

    def get_job_log(self, project_id: int, job_id: int) -> str:
        return self._client.get_text(f"projects/{project_id}/jobs/{job_id}/trace")

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
        source_project_id = source.project_id if source is not None else target.project_id
        payload = require_object_dict(
            self._client.request_json(
                "POST",
                f"projects/{source_project_id}/merge_requests",
                payload={
                    "source_branch": head_ref,
                    "target_branch": base_ref,
                    "target_project_id": target.project_id,
                    "title": title,
                    "description": body,
                },
            ),
            what="created merge request",
        )
        created = CreatedRequest(
            request_id=as_int(payload.get("iid"), field="iid"),
            web_url=as_string(payload.get("web_url")),
        )
        log_event(
            LOGGER,
            "gitlab_request_created",
            project_id=target.project_id,
            source_project_id=source_project_id,
            request_id=created.request_id,
            head=head_ref,
            base=base_ref,
        )
        return created

    def fork_exists(self, user: str, repo_name: str) -> bool:
        try:
            self._client.get_json(f"projects/{encode_path(f'{user}/{repo_name}')}")
        except ProviderNotFoundError:
            return False
        return True

    def fork_repository(self, owner: str, repo_name: str) -> None:
        self._client.request_json("POST", f"projects/{encode_path(f'{owner}/{repo_name}')}/fork")
        log_event(LOGGER, "gitlab_fork_requested", owner=owner, repo_name=repo_name)

    def list_request_commits(self, project_id: int, request_id: int) -> list[CommitRecord]:
        commits: list[CommitRecord] = []
        path = f"projects/{project_id}/merge_requests/{request_id}/commits"
        for item in self._client.get_list(path):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            commits.append(
                CommitRecord(
                    message=as_string(item_obj.get("message")),
                    created_at=parse_timestamp(item_obj.get("created_at")),
                )
            )
        return commits

    def list_request_discussions(self, project_id: int, request_id: int) -> list[DiscussionNote]:
        notes: list[DiscussionNote] = []
        path = f"projects/{project_id}/merge_requests/{request_id}/discussions"
        for discussion in self._client.get_list(path):
            discussion_obj = as_object_dict(discussion)
            raw_notes = discussion_obj.get("notes") if discussion_obj is not None else None
            if not isinstance(raw_notes, list):
                continue
            for note in raw_notes:
                note_obj = as_object_dict(note)
                if note_obj is None:
                    continue
                notes.append(
                    DiscussionNote(
                        body=as_string(note_obj.get("body")),
                        author=nested_str(note_obj.get("author"), "username") or "",
                        created_at=parse_timestamp(note_obj.get("created_at")),
                        system=as_bool(note_obj.get("system")),
                    )
                )
        return notes

    def unassign_self(self, project_id: int, request_id: int) -> None:
        self._client.request_json(
            "PUT",
            f"projects/{project_id}/merge_requests/{request_id}",
            payload={"assignee_ids": []},
        )
        log_event(LOGGER, "gitlab_request_unassigned", project_id=project_id, request_id=request_id)

    def assign_to_self(self, project_id: int, request_id: int) -> None:
        self._client.request_json(
            "PUT",
            f"projects/{project_id}/merge_requests/{request_id}",
            payload={"assignee_ids": [self._current_user_id()]},
        )
        log_event(LOGGER, "gitlab_request_assigned", project_id=project_id, request_id=request_id)

    def post_request_note(self, project_id: int, request_id: int, body: str) -> None:
        self._client.request_json(
            "POST",
            f"projects/{project_id}/merge_requests/{request_id}/notes",
            payload={"body": body},
        )

    def list_starred_projects(self) -> list[Project]:
        projects: list[Project] = []
        query = urlencode({"starred": "true", "membership": "true"})
        for item in self._client.get_list(f"projects?{query}"):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            projects.append(
                Project(
                    project_id=as_int(item_obj.get("id"), field="id"),
                    name=as_string(item_obj.get("name")),
                    default_branch=as_optional_str(item_obj.get("default_branch")) or "master",
                )
            )
        log_event(LOGGER, "gitlab_read", endpoint="starred_projects", count=len(projects))
        return projects

    def latest_pipeline(self, project_id: int, ref: str) -> PipelineInfo | None:
        query = urlencode({"ref": ref, "per_page": 1})
        payload = self._client.get_json(f"projects/{project_id}/pipelines?{query}")
        if not isinstance(payload, list):
            raise ProviderError("Unexpected GitLab response: expected list for pipelines")
        if not payload:
            return None
        latest = require_object_dict(payload[0], what="pipeline")
        return PipelineInfo(
            pipeline_id=as_optional_int(latest.get("id")),
            status=as_string(latest.get("status")).strip().lower(),
            web_url=as_string(latest.get("web_url")),
        )

    def find_open_issue(self, project_id: int, title: str, assignee: str) -> bool:
        query = urlencode({"state": "opened", "search": title, "assignee_username": assignee})
        for item in self._client.get_list(f"projects/{project_id}/issues?{query}"):
            item_obj = as_object_dict(item)
            if item_obj is not None and as_string(item_obj.get("title")) == title:
                return True
        return False

    def create_issue(self, project_id: int, title: str, description: str) -> None:
        self._client.request_json(
            "POST",
            f"projects/{project_id}/issues",
            payload={
                "title": title,
                "description": description,
                "assignee_ids": [self._current_user_id()],
            },
        )
        log_event(LOGGER, "gitlab_issue_created", project_id=project_id, title=title)

    def _current_user_id(self) -> int:
        if self._user_id is None:
            payload = require_object_dict(self._client.get_json("user"), what="user")
            self._user_id = as_int(payload.get("id"), field="id")
        return self._user_id

    def _candidates(self, path: str) -> list[Candidate]:
        candidates: list[Candidate] = []
        for item in self._client.get_list(path):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            project_id = as_int(item_obj.get("project_id"), field="project_id")
            candidates.append(
                Candidate(
                    request_id=as_int(item_obj.get("iid"), field="iid"),
                    title=as_string(item_obj.get("title")),
                    project_id=project_id,
                    source_project_id=as_optional_int(item_obj.get("source_project_id")) or 0,
                    source_branch=as_optional_str(item_obj.get("source_branch")),
                    target_branch=as_optional_str(item_obj.get("target_branch")),
                    author_name=nested_str(item_obj.get("author"), "username"),
                    web_url=as_string(item_obj.get("web_url")),
                )
            )
        return candidates


def _repository(payload: dict[str, object]) -> Repository:
    return Repository(
        project_id=as_int(payload.get("id"), field="id"),
        name=as_string(payload.get("path") or payload.get("name")),
        owner=(
            nested_str(payload.get("namespace"), "full_path")
            or nested_str(payload.get("namespace"), "path")
            or ""
        ),
        clone_url=as_string(payload.get("http_url_to_repo")),
        default_branch=as_optional_str(payload.get("default_branch")) or "main",
    )
