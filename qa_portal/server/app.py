"""QA portal application surface with a minimal ASGI HTTP layer."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable
from urllib.parse import parse_qs

from qa_portal.errors import NotFoundError, PortalError, ValidationError, error_payload
from qa_portal.server.activity import ActivityLog
from qa_portal.server.assignments import AssignmentEngine
from qa_portal.server.documents import DocumentSession
from qa_portal.server.issues import IssueService
from qa_portal.server.notifications import Notifier, WebhookNotifier
from qa_portal.server.permissions import PermissionEngine, public_user_view
from qa_portal.server.pr_lifecycle import PullRequestService
from qa_portal.server.pr_sync import PullRequestSource, PullRequestSync
from qa_portal.server.test_cases import TestCaseService
from qa_portal.shared.logging_config import configure_logging
from qa_portal.shared.settings import PortalSettings
from qa_portal.store.document_store import (
    DocumentKind,
    DocumentStore,
    build_store_from_env,
    utc_now,
)
from qa_portal.store.retry import RetryPolicy

logger = logging.getLogger(__name__)

CORS_HEADERS = [
    (b"access-control-allow-origin", b"*"),
    (b"access-control-allow-headers", b"Content-Type, Authorization, X-User-Id"),
    (b"access-control-allow-methods", b"GET, POST, PUT, DELETE, OPTIONS"),
]
MINIMAL_USER_FIELDS = ("username", "display_name", "role")


def _default_pr_source(settings: PortalSettings) -> PullRequestSource | None:
    if settings.store != "github" or not (settings.owner and settings.repo):
        return None
    from qa_portal.store.github_api import GitHubPullRequestSource

    return GitHubPullRequestSource(
        owner=settings.owner, repo=settings.repo, read_token=settings.github_read_token
    )


class ServerApp:
    """Thin callable facade over the portal services, one method per endpoint."""

    def __init__(
        self,
        store: DocumentStore | None = None,
        settings: PortalSettings | None = None,
        notifier: Notifier | None = None,
        pr_source: PullRequestSource | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or PortalSettings.from_env()
        self.store = store if store is not None else build_store_from_env(self.settings)
        self.session = DocumentSession(self.store, self.settings, policy=policy, clock=clock)
        self.notifier = notifier or WebhookNotifier(self.settings.webhook_urls)
        self.permissions = PermissionEngine(self.session)
        self.activity = ActivityLog(self.session, cap=self.settings.activity_cap)
        self.prs = PullRequestService(self.session, self.permissions, self.activity, self.notifier)
        self.assignments = AssignmentEngine(self.session, self.permissions, self.activity, self.prs)
        self.test_cases = TestCaseService(
            self.session, self.permissions, self.activity, self.notifier
        )
        self.issues = IssueService(self.session, self.permissions, self.activity, self.notifier)
        self.pr_sync = PullRequestSync(
            self.session,
            self.permissions,
            self.activity,
            source=pr_source if pr_source is not None else _default_pr_source(self.settings),
        )

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "store": self.settings.store,
            "webhooks": len(self.settings.webhook_urls),
        }

    def get_data(self, data_type: str, actor_id: str | None = None) -> dict[str, Any]:
        if not data_type:
            raise ValidationError("dataType parameter is required", code="missing_data_type")
        try:
            kind = DocumentKind(data_type)
        except ValueError as exc:
            raise ValidationError(f"Invalid dataType: {data_type}", code="invalid_data_type") from exc

        content = self.session.read(kind).content
        if kind is not DocumentKind.USERS:
            return content

        users = content.get("items", [])
        try:
            reader = self.permissions.resolve(actor_id)
        except PortalError:
            items = [{key: user.get(key) for key in MINIMAL_USER_FIELDS} for user in users]
        else:
            if reader.can_override:
                return content
            items = [public_user_view(user) for user in users]
        return {**content, "items": items}

    # Endpoint methods keep the (payload, actor) calling convention of the services.
    def create_pr(self, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.prs.create_pr(payload, actor_id)

    def update_pr(self, pr_id: str, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.prs.update_pr(pr_id, payload, actor_id)

    def associate_test_cases(
        self, pr_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.prs.associate_test_cases(pr_id, payload, actor_id)

    def record_test_results(
        self, pr_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.prs.record_test_results(pr_id, payload, actor_id)

    def apply_pr_action(
        self, pr_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.prs.apply_action(pr_id, payload, actor_id)

    def add_test_case(self, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.test_cases.add_test_case(payload, actor_id)

    def update_test_case(
        self, test_case_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.test_cases.update_test_case(test_case_id, payload, actor_id)

    def delete_test_case(self, test_case_id: str, actor_id: str | None) -> dict[str, Any]:
        return self.test_cases.delete_test_case(test_case_id, actor_id)

    def assign_test(self, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.assignments.assign(payload, actor_id)

    def update_test_progress(
        self, assignment_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.assignments.update_progress(assignment_id, payload, actor_id)

    def report_issue(self, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.issues.report_issue(payload, actor_id)

    def escalate_issue(
        self, issue_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.issues.escalate_issue(issue_id, payload, actor_id)

    def resolve_issue(
        self, issue_id: str, payload: dict[str, Any], actor_id: str | None
    ) -> dict[str, Any]:
        return self.issues.resolve_issue(issue_id, payload, actor_id)

    def sync_github_prs(self, payload: dict[str, Any], actor_id: str | None) -> dict[str, Any]:
        return self.pr_sync.sync(payload, actor_id)


class ASGIServer:
    """Minimal ASGI adapter mapping HTTP routes onto ServerApp methods."""

    def __init__(self, service: ServerApp | None = None) -> None:
        self.service = service or create_app()

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope.get("type") != "http":
            await self._send_json(send, 500, {"success": False, "error": "unsupported_scope"})
            return

        method = scope.get("method", "GET")
        path = scope.get("path", "")
        query_params = self._parse_query_params(scope.get("query_string", b""))
        headers = self._parse_headers(scope.get("headers", []))
        body = await self._read_body(receive)

        if method == "OPTIONS":
            await self._send(send, 200, b"", content_type=None)
            return

        payload = self._parse_json(body)
        if payload is None:
            await self._send_json(
                send, 400, {"success": False, "error": "Invalid JSON body", "code": "invalid_json"}
            )
            return
        actor_id = (
            headers.get("x-user-id")
            or str(payload.pop("userId", "") or "")
            or query_params.get("userId", "")
            or None
        )

        try:
            # Store calls block on HTTP and retry backoff.
            status, data = await asyncio.to_thread(
                self._dispatch, method, path, payload, query_params, actor_id
            )
        except PortalError as exc:
            status, body_payload = error_payload(exc)
            if status >= 500:
                logger.error("%s %s failed: %s", method, path, exc)
            await self._send_json(send, status, body_payload)
            return
        except Exception as exc:  # pragma: no cover
            logger.exception("%s %s failed unexpectedly", method, path)
            status, body_payload = error_payload(exc)
            await self._send_json(send, status, body_payload)
            return

        await self._send_json(send, status, {"success": True, "data": data})

    def _dispatch(
        self,
        method: str,
        path: str,
        payload: dict[str, Any],
        query_params: dict[str, str],
        actor_id: str | None,
    ) -> tuple[int, Any]:
        service = self.service
        parts = [part for part in path.split("/") if part]

        if method == "GET" and parts == ["health"]:
            return 200, service.health()
        if method == "GET" and parts == ["data"]:
            return 200, service.get_data(query_params.get("dataType", ""), actor_id)

        if parts[:1] == ["prs"]:
            if method == "POST" and len(parts) == 1:
                return 201, service.create_pr(payload, actor_id)
            if method == "PUT" and len(parts) == 2:
                return 200, service.update_pr(parts[1], payload, actor_id)
            if method == "POST" and len(parts) == 3:
                if parts[2] == "test-cases":
                    return 200, service.associate_test_cases(parts[1], payload, actor_id)
                if parts[2] == "test-results":
                    return 200, service.record_test_results(parts[1], payload, actor_id)
                if parts[2] == "actions":
                    return 200, service.apply_pr_action(parts[1], payload, actor_id)

        if parts[:1] == ["test-cases"]:
            if method == "POST" and len(parts) == 1:
                return 201, service.add_test_case(payload, actor_id)
            if method == "PUT" and len(parts) == 2:
                return 200, service.update_test_case(parts[1], payload, actor_id)
            if method == "DELETE" and len(parts) == 2:
                return 200, service.delete_test_case(parts[1], actor_id)

        if parts[:1] == ["assignments"] and method == "POST":
            if len(parts) == 1:
                return 200, service.assign_test(payload, actor_id)
            if len(parts) == 3 and parts[2] == "progress":
                return 200, service.update_test_progress(parts[1], payload, actor_id)

        if parts[:1] == ["issues"] and method == "POST":
            if len(parts) == 1:
                return 201, service.report_issue(payload, actor_id)
            if len(parts) == 3 and parts[2] == "escalate":
                return 200, service.escalate_issue(parts[1], payload, actor_id)
            if len(parts) == 3 and parts[2] == "resolve":
                return 200, service.resolve_issue(parts[1], payload, actor_id)

        if method == "POST" and parts == ["sync", "github-prs"]:
            return 200, service.sync_github_prs(payload, actor_id)

        raise NotFoundError(f"No route for {method} {path}", code="route_not_found")

    def _parse_headers(self, raw_headers: list[tuple[bytes, bytes]]) -> dict[str, str]:
        return {
            name.decode("latin-1").lower(): value.decode("latin-1").strip()
            for name, value in raw_headers
        }

    async def _read_body(self, receive: Any) -> bytes:
        chunks: list[bytes] = []
        while True:
            message = await receive()
            if message["type"] != "http.request":
                continue
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break
        return b"".join(chunks)

    def _parse_query_params(self, raw_query: bytes) -> dict[str, str]:
        if not raw_query:
            return {}
        parsed = parse_qs(raw_query.decode("utf-8"), keep_blank_values=False)
        return {key: values[-1] for key, values in parsed.items() if values}

    def _parse_json(self, body: bytes) -> dict[str, Any] | None:
        if not body:
            return {}
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def _send_json(self, send: Any, status: int, payload: dict[str, Any]) -> None:
        await self._send(send, status, json.dumps(payload).encode("utf-8"))

    async def _send(
        self, send: Any, status: int, body: bytes, content_type: bytes | None = b"application/json"
    ) -> None:
        headers = list(CORS_HEADERS)
        if content_type is not None:
            headers.append((b"content-type", content_type))
        await send({"type": "http.response.start", "status": status, "headers": headers})
        await send({"type": "http.response.body", "body": body})


def create_app(
    store: DocumentStore | None = None,
    settings: PortalSettings | None = None,
    notifier: Notifier | None = None,
    pr_source: PullRequestSource | None = None,
    policy: RetryPolicy | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ServerApp:
    return ServerApp(
        store=store,
        settings=settings,
        notifier=notifier,
        pr_source=pr_source,
        policy=policy,
        clock=clock,
    )


app = ASGIServer()


def main() -> int:
    parser = argparse.ArgumentParser(description="qa-portal ASGI server entrypoint")
    parser.add_argument(
        "--print-startup",
        action="store_true",
        help="print the supported uvicorn startup command and exit",
    )
    args = parser.parse_args()

    if args.print_startup:
        print("uvicorn qa_portal.server.app:app --host 127.0.0.1 --port 8000")
        return 0

    settings = PortalSettings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
