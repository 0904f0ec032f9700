"""GitHub REST API backends: the contents-API document store and the PR source."""

from __future__ import annotations

import base64
import json
from typing import Any

import requests

from qa_portal.errors import (
    AuthenticationRequired,
    InternalError,
    NotFoundError,
    PermissionDenied,
    RateLimited,
    VersionConflict,
)
from qa_portal.store.document_store import StoredDocument

_RAW_MEDIA_TYPE = "application/vnd.github.raw+json"


class GitHubAPIClient:
    def __init__(
        self,
        owner: str,
        repo: str,
        read_token: str | None = None,
        write_token: str | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout_s: float = 15,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.read_token = read_token
        self.write_token = write_token
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def _request(
        self,
        method: str,
        path: str,
        token: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        accept: str = "application/vnd.github+json",
    ) -> requests.Response:
        headers = {
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers=headers,
                json=json,
                params=params,
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise InternalError(
                f"GitHub API unreachable: {exc}", code="backend_unreachable"
            ) from exc

        if _looks_like_rate_limit(response):
            raise RateLimited(
                "GitHub API rate limit reached, retry later",
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
            )
        if response.status_code == 401:
            raise AuthenticationRequired(
                "GitHub API rejected the configured token", code="backend_unauthorized"
            )
        if response.status_code == 403:
            raise PermissionDenied(
                "GitHub API denied access to the repository", code="backend_forbidden"
            )
        if response.status_code >= 500:
            raise InternalError(
                f"GitHub API {response.status_code} response",
                code=f"github_{response.status_code}",
            )
        return response


class GitHubContentsStore(GitHubAPIClient):
    """Document store over the GitHub contents API; the blob sha is the version token."""

    def __init__(self, owner: str, repo: str, branch: str = "main", **kwargs: Any) -> None:
        super().__init__(owner=owner, repo=repo, **kwargs)
        self.branch = branch

    def read(self, path: str) -> StoredDocument:
        response = self._request(
            "GET",
            f"{self.repo_path}/contents/{path}",
            token=self.read_token,
            params={"ref": self.branch},
        )
        if response.status_code == 404:
            raise NotFoundError(f"Document not found: {path}", code="document_not_found")
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict) or payload.get("type") != "file":
            raise NotFoundError(f"{path} is not a file", code="document_not_found")

        if payload.get("encoding") == "none":
            # Files over 1 MB come back without inline content.
            raw = self._request(
                "GET",
                f"{self.repo_path}/contents/{path}",
                token=self.read_token,
                params={"ref": self.branch},
                accept=_RAW_MEDIA_TYPE,
            )
            raw.raise_for_status()
            text = raw.text
        else:
            text = base64.b64decode(payload.get("content", "")).decode("utf-8")

        try:
            content = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InternalError(
                f"Document {path} is not valid JSON", code="document_corrupt"
            ) from exc
        return StoredDocument(content=content, version=str(payload["sha"]))

    def write(
        self,
        path: str,
        content: dict[str, Any],
        message: str,
        expected_version: str | None = None,
    ) -> str:
        encoded = base64.b64encode(json.dumps(content, indent=2).encode("utf-8")).decode("ascii")
        body: dict[str, Any] = {
            "message": message,
            "content": encoded,
            "branch": self.branch,
        }
        if expected_version:
            body["sha"] = expected_version

        response = self._request(
            "PUT",
            f"{self.repo_path}/contents/{path}",
            token=self.write_token,
            json=body,
        )
        if response.status_code == 409 or _is_sha_rejection(response):
            raise VersionConflict(
                f"Document {path} changed since it was read",
                details={"path": path, "expected_version": expected_version},
            )
        if response.status_code == 404:
            raise NotFoundError(f"Repository or branch not found for {path}", code="backend_not_found")
        response.raise_for_status()
        payload = response.json()
        return str((payload.get("content") or {}).get("sha", ""))


class GitHubPullRequestSource(GitHubAPIClient):
    """Read-only view of the tracked repository's pull requests."""

    def list_pull_requests(self, state: str = "open", per_page: int = 50) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"{self.repo_path}/pulls",
            token=self.read_token,
            params={"state": state, "per_page": str(per_page)},
        )
        response.raise_for_status()
        rows = response.json()
        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
        return []


def _is_sha_rejection(response: requests.Response) -> bool:
    if response.status_code != 422:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    return "sha" in str(payload.get("message", "")).lower()


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if str((response.headers or {}).get("X-RateLimit-Remaining", "")) == "0":
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    message = str(payload.get("message", "")).lower()
    return "rate limit" in message


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
