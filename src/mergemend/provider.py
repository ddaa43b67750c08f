from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import re
from typing import cast
from urllib.parse import quote, urlencode

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
from mergemend.observability import log_event
from mergemend.shell import redact, run


LOGGER = logging.getLogger("mergemend.provider")
PAGE_SIZE = 100
_STATUS_LINE = re.compile(r"^HTTP/[\d.]+ (\d{3})\b", re.MULTILINE)


class ProviderError(RuntimeError):
    """A provider API call failed or returned an unexpected payload."""


class ProviderNotFoundError(ProviderError):
    """The provider answered 404 for the requested resource."""


class ProviderGateway(ABC):
    """Operations every forge adapter offers to the remediation core.

    Optional operations live on the Supports* mixins below; callers check them with
    isinstance rather than by provider name.
    """

    server: ServerConfig

    @abstractmethod
    def list_open_requests(self, user: str) -> list[Candidate]:
        """Open requests the bot account is responsible for."""

    @abstractmethod
    def get_request_details(self, project_id: int, request_id: int) -> RequestDetails:
        """Conflict flag plus the head pipeline of one request."""

    @abstractmethod
    def get_repository(self, project_id: int, owner: str | None = None) -> Repository:
        """Repository metadata; with ``owner``, that owner's fork of the project."""

    @abstractmethod
    def get_pipeline_jobs(self, project_id: int, pipeline_id: int) -> list[PipelineJob]:
        pass

    @abstractmethod
    def get_job_log(self, project_id: int, job_id: int) -> str:
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    def fork_exists(self, user: str, repo_name: str) -> bool:
        pass

    @abstractmethod
    def fork_repository(self, owner: str, repo_name: str) -> None:
        pass

    def resolve_push_url(self, repository: Repository) -> str:
        return with_credentials(repository.clone_url, self.server.auth)


class SupportsReviewDiscussions(ABC):
    @abstractmethod
    def list_request_commits(self, project_id: int, request_id: int) -> list[CommitRecord]:
        pass

    @abstractmethod
    def list_request_discussions(self, project_id: int, request_id: int) -> list[DiscussionNote]:
        """All notes of all discussion threads, flattened, in provider order."""


class SupportsAssigneeManagement(ABC):
    @abstractmethod
    def unassign_self(self, project_id: int, request_id: int) -> None:
        pass

    @abstractmethod
    def assign_to_self(self, project_id: int, request_id: int) -> None:
        pass


class SupportsAuthorAttribution:
    """Marker: list_open_requests fills Candidate.author_name reliably."""


class SupportsCodeReview(ABC):
    @abstractmethod
    def list_review_requests(self, user: str) -> list[Candidate]:
        pass

    @abstractmethod
    def post_request_note(self, project_id: int, request_id: int, body: str) -> None:
        pass


class SupportsProjectPipelines(ABC):
    @abstractmethod
    def list_starred_projects(self) -> list[Project]:
        pass

    @abstractmethod
    def latest_pipeline(self, project_id: int, ref: str) -> PipelineInfo | None:
        pass

    @abstractmethod
    def find_open_issue(self, project_id: int, title: str, assignee: str) -> bool:
        pass

    @abstractmethod
    def create_issue(self, project_id: int, title: str, description: str) -> None:
        """Open an issue assigned to the bot account."""


def with_credentials(url: str, auth: str) -> str:
    """Embed ``user:token`` into an HTTPS clone URL; other schemes pass through."""
    scheme, sep, rest = url.partition("://")
    if not sep or scheme.lower() not in {"http", "https"}:
        return url
    if "@" in rest.split("/", 1)[0]:
        rest = rest.split("@", 1)[1]
    user, _, token = auth.partition(":")
    return f"{scheme}://{quote(user, safe='')}:{quote(token, safe='')}@{rest}"


class CliApiClient:
    """Runs ``<cli> api --include`` calls and decodes the HTTP response.

    Both ``glab api`` and ``gh api`` accept the same flags for what we need, so one
    client serves both gateways.
    """

    def __init__(self, *, cli: str, hostname: str, token_env: dict[str, str], label: str) -> None:
        self._cli = cli
        self._hostname = hostname
        self._token_env = token_env
        self._label = label

    def get_json(self, path: str) -> object:
        return self.request_json("GET", path)

    def get_text(self, path: str) -> str:
        status_code, body = self._request("GET", path, payload=None)
        self._raise_for_status("GET", path, status_code, body)
        return body

    def get_list(self, path: str, *, item_key: str | None = None) -> list[object]:
        """Follow ``page`` until a short page comes back."""
        items: list[object] = []
        page = 1
        separator = "&" if "?" in path else "?"
        while True:
            paged = f"{path}{separator}{urlencode({'per_page': PAGE_SIZE, 'page': page})}"
            payload = self.get_json(paged)
            if item_key is not None:
                payload_obj = as_object_dict(payload)
                payload = payload_obj.get(item_key) if payload_obj is not None else None
            if not isinstance(payload, list):
                raise ProviderError(
                    f"Unexpected {self._label} response: expected list for {path}"
                )
            items.extend(payload)
            if len(payload) < PAGE_SIZE:
                return items
            page += 1

    def request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
    ) -> object:
        method_upper = method.upper()
        status_code, body = self._request(method_upper, path, payload=payload)
        self._raise_for_status(method_upper, path, status_code, body)
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"Unexpected {self._label} response: invalid JSON for {method_upper} {path}"
            ) from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, object] | None,
    ) -> tuple[int, str]:
        cmd = [
            self._cli,
            "api",
            "--hostname",
            self._hostname,
            "--method",
            method,
            "--include",
        ]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        cmd.append(path)
        raw = run(cmd, input_text=stdin_payload, check=False, env=self._token_env)
        try:
            status_code, body = parse_http_response(raw)
        except ProviderError:
            log_event(
                LOGGER,
                "provider_response_unparsable",
                level=logging.WARNING,
                provider=self._label,
                method=method,
                path=path,
                raw=redact(raw),
            )
            raise
        return status_code, body

    def _raise_for_status(self, method: str, path: str, status_code: int, body: str) -> None:
        if 200 <= status_code < 300:
            return
        message = body.strip() or "<empty>"
        log_event(
            LOGGER,
            "provider_request_failed",
            level=logging.WARNING,
            provider=self._label,
            method=method,
            path=path,
            status_code=status_code,
        )
        if status_code == 404:
            raise ProviderNotFoundError(f"{self._label} {method} {path} returned 404: {message}")
        raise ProviderError(
            f"{self._label} {method} {path} failed with status {status_code}: {message}"
        )


def encode_path(value: str) -> str:
    return quote(value, safe="")


def parse_http_response(raw: str) -> tuple[int, str]:
    """Split ``--include`` output into status code and body.

    Redirects and ``100 Continue`` print several header blocks; the last one wins.
    """
    text = raw.replace("\r\n", "\n")
    blocks = list(_STATUS_LINE.finditer(text))
    if not blocks:
        raise ProviderError("Unexpected provider response: missing HTTP status line")
    last = blocks[-1]
    _headers, blank, body = text[last.end() :].partition("\n\n")
    return int(last.group(1)), body if blank else ""


def as_object_dict(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(dict[str, object], value)
    return None


def require_object_dict(value: object, *, what: str) -> dict[str, object]:
    value_obj = as_object_dict(value)
    if value_obj is None:
        raise ProviderError(f"Unexpected provider response: expected object for {what}")
    return value_obj


def as_string(value: object) -> str:
    return "" if value is None else str(value)


def as_optional_str(value: object) -> str | None:
    return as_string(value) or None


def as_int(value: object, *, field: str) -> int:
    # bool is an int subclass; a JSON true/false is never a valid id.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise ProviderError(f"Unexpected provider response value for {field}: {value!r}")


def as_optional_int(value: object) -> int | None:
    try:
        return as_int(value, field="")
    except ProviderError:
        return None


def as_bool(value: object) -> bool:
    return value is True


def nested_str(value: object, key: str) -> str | None:
    value_obj = as_object_dict(value)
    return as_optional_str(value_obj.get(key)) if value_obj is not None else None
