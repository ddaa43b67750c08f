from __future__ import annotations

import logging
from urllib.parse import urlencode

from mergemend.config import ServerConfig
from mergemend.models import (
    Candidate,
    CreatedRequest,
    PipelineInfo,
    PipelineJob,
    Repository,
    RequestDetails,
)
from mergemend.observability import log_event
from mergemend.provider import (
    CliApiClient,
    ProviderError,
    ProviderGateway,
    ProviderNotFoundError,
    as_int,
    as_object_dict,
    as_optional_str,
    as_string,
    nested_str,
    require_object_dict,
)


LOGGER = logging.getLogger("mergemend.github_gateway")
_FAILED_CONCLUSIONS = {"failure", "timed_out", "startup_failure"}


class GitHubGateway(ProviderGateway):
    """GitHub REST through ``gh api``.

    Declares no optional capability: pull requests are listed by author (the bot's own
    requests), and review threads are not addressable the way GitLab discussions are.
    Workflow runs stand in for pipelines and workflow jobs for pipeline jobs.
    """

    def __init__(self, server: ServerConfig, *, client: CliApiClient | None = None) -> None:
        self.server = server
        self._client = client or CliApiClient(
            cli="gh",
            hostname=server.hostname,
            token_env={"GH_TOKEN": server.token, "GH_ENTERPRISE_TOKEN": server.token},
            label="GitHub",
        )
        self._full_names: dict[int, str] = {}

    def list_open_requests(self, user: str) -> list[Candidate]:
        query = urlencode({"q": f"is:pr is:open author:{user}"})
        candidates: list[Candidate] = []
        for item in self._client.get_list(f"search/issues?{query}", item_key="items"):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            full_name = _full_name_from_repository_url(as_string(item_obj.get("repository_url")))
            if full_name is None:
                continue
            try:
                number = as_int(item_obj.get("number"), field="number")
                candidates.append(self._candidate(full_name, number))
            except ProviderError as exc:
                log_event(
                    LOGGER,
                    "github_candidate_unavailable",
                    level=logging.WARNING,
                    repository=full_name,
                    request_id=item_obj.get("number"),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        log_event(
            LOGGER, "github_read", endpoint="authored_pulls", user=user, count=len(candidates)
        )
        return candidates

    def get_request_details(self, project_id: int, request_id: int) -> RequestDetails:
        full_name = self._full_name(project_id)
        pull = require_object_dict(
            self._client.get_json(f"repos/{full_name}/pulls/{request_id}"),
            what="pull request",
        )
        # "dirty" is GitHub's mergeable_state for a branch that conflicts with its base.
        has_conflicts = as_string(pull.get("mergeable_state")).lower() == "dirty"
        head_sha = nested_str(pull.get("head"), "sha")
        pipeline = self._latest_run(full_name, head_sha) if head_sha else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            project_id=project_id,
            request_id=request_id,
            has_conflicts=has_conflicts,
            pipeline_status=pipeline.status if pipeline else None,
        )
        return RequestDetails(has_conflicts=has_conflicts, pipeline=pipeline)

    def get_repository(self, project_id: int, owner: str | None = None) -> Repository:
        payload = require_object_dict(
            self._client.get_json(f"repositories/{project_id}"), what="repository"
        )
        repository = _repository(payload)
        if owner is None or owner.lower() == repository.owner.lower():
            return repository
        try:
            fork = self._client.get_json(f"repos/{owner}/{repository.name}")
        except ProviderNotFoundError as exc:
            raise ProviderNotFoundError(
                f"No fork of {repository.owner}/{repository.name} owned by {owner}"
            ) from exc
        return _repository(require_object_dict(fork, what="repository"))

    def get_pipeline_jobs(self, project_id: int, pipeline_id: int) -> list[PipelineJob]:
        full_name = self._full_name(project_id)
        jobs: list[PipelineJob] = []
        for item in self._client.get_list(
            f"repos/{full_name}/actions/runs/{pipeline_id}/jobs", item_key="jobs"
        ):
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            conclusion = as_string(item_obj.get("conclusion")).lower()
            status = "failed" if conclusion in _FAILED_CONCLUSIONS else conclusion or "running"
            jobs.append(
                PipelineJob(
                    job_id=as_int(item_obj.get("id"), field="id"),
                    name=as_string(item_obj.get("name")),
                    stage=as_string(item_obj.get("workflow_name")),
                    status=status,
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_jobs",
            project_id=project_id,
            run_id=pipeline_id,
            count=len(jobs),
        )
        return jobs

    def get_job_log(self, project_id: int, job_id: int) -> str:
        full_name = self._full_name(project_id)
        return self._client.get_text(f"repos/{full_name}/actions/jobs/{job_id}/logs")

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
        head = head_ref
        if source is not None and source.owner.lower() != target.owner.lower():
            head = f"{source.owner}:{head_ref}"
        payload = require_object_dict(
            self._client.request_json(
                "POST",
                f"repos/{target.owner}/{target.name}/pulls",
                payload={"title": title, "head": head, "base": base_ref, "body": body},
            ),
            what="created pull request",
        )
        created = CreatedRequest(
            request_id=as_int(payload.get("number"), field="number"),
            web_url=as_string(payload.get("html_url")),
        )
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=f"{target.owner}/{target.name}",
            pr_number=created.request_id,
            head=head,
            base=base_ref,
        )
        return created

    def fork_exists(self, user: str, repo_name: str) -> bool:
        try:
            self._client.get_json(f"repos/{user}/{repo_name}")
        except ProviderNotFoundError:
            return False
        return True

    def fork_repository(self, owner: str, repo_name: str) -> None:
        self._client.request_json("POST", f"repos/{owner}/{repo_name}/forks", payload={})
        log_event(LOGGER, "github_fork_requested", owner=owner, repo_name=repo_name)

    def _candidate(self, full_name: str, number: int) -> Candidate:
        pull = require_object_dict(
            self._client.get_json(f"repos/{full_name}/pulls/{number}"), what="pull request"
        )
        head = as_object_dict(pull.get("head")) or {}
        base = as_object_dict(pull.get("base")) or {}
        base_repo = as_object_dict(base.get("repo")) or {}
        head_repo = as_object_dict(head.get("repo")) or {}
        project_id = as_int(base_repo.get("id"), field="base.repo.id")
        self._full_names[project_id] = full_name
        source_project_id = 0
        if head_repo:
            source_project_id = as_int(head_repo.get("id"), field="head.repo.id")
            head_full_name = as_optional_str(head_repo.get("full_name"))
            if head_full_name:
                self._full_names[source_project_id] = head_full_name
        return Candidate(
            request_id=number,
            title=as_string(pull.get("title")),
            project_id=project_id,
            source_project_id=source_project_id,
            source_branch=as_optional_str(head.get("ref")),
            target_branch=as_optional_str(base.get("ref")),
            author_name=None,
            web_url=as_string(pull.get("html_url")),
        )

    def _latest_run(self, full_name: str, head_sha: str) -> PipelineInfo | None:
        query = urlencode({"head_sha": head_sha, "per_page": 1})
        payload = require_object_dict(
            self._client.get_json(f"repos/{full_name}/actions/runs?{query}"),
            what="workflow runs",
        )
        runs = payload.get("workflow_runs")
        if not isinstance(runs, list):
            raise ProviderError("Unexpected GitHub response: expected workflow_runs list")
        if not runs:
            return None
        latest = require_object_dict(runs[0], what="workflow run")
        status = as_string(latest.get("status")).lower()
        conclusion = as_string(latest.get("conclusion")).lower()
        if status == "completed":
            status = "failed" if conclusion in _FAILED_CONCLUSIONS else conclusion or "success"
        return PipelineInfo(
            pipeline_id=as_int(latest.get("id"), field="id"),
            status=status,
            web_url=as_string(latest.get("html_url")),
        )

    def _full_name(self, project_id: int) -> str:
        cached = self._full_names.get(project_id)
        if cached is not None:
            return cached
        payload = require_object_dict(
            self._client.get_json(f"repositories/{project_id}"), what="repository"
        )
        full_name = as_string(payload.get("full_name"))
        if not full_name:
            raise ProviderError(f"GitHub repository {project_id} has no full_name")
        self._full_names[project_id] = full_name
        return full_name


def _full_name_from_repository_url(url: str) -> str | None:
    marker = "/repos/"
    if marker not in url:
        return None
    full_name = url.split(marker, 1)[1].strip("/")
    if full_name.count("/") != 1:
        return None
    return full_name


def _repository(payload: dict[str, object]) -> Repository:
    return Repository(
        project_id=as_int(payload.get("id"), field="id"),
        name=as_string(payload.get("name")),
        owner=nested_str(payload.get("owner"), "login") or "",
        clone_url=as_string(payload.get("clone_url")),
        default_branch=as_optional_str(payload.get("default_branch")) or "main",
    )
