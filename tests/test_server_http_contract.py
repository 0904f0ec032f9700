import asyncio
import json
import subprocess
import sys
import threading

import pytest

from qa_portal.server.app import ASGIServer, ServerApp


async def _asgi_call(
    app: ASGIServer,
    method: str,
    path: str,
    body: bytes = b"",
    query_string: bytes = b"",
    user: str | None = None,
) -> tuple[int, dict | None, dict[bytes, bytes]]:
    headers = [(b"content-type", b"application/json")]
    if user:
        headers.append((b"x-user-id", user.encode("utf-8")))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string,
        "headers": headers,
    }
    sent: list[dict] = []
    received = False

    async def receive() -> dict:
        nonlocal received
        if received:
            return {"type": "http.request", "body": b"", "more_body": False}
        received = True
        return {"type": "http.request", "body": body, "more_body": False}

    async def send(message: dict) -> None:
        sent.append(message)

    await app(scope, receive, send)

    start = next(msg for msg in sent if msg["type"] == "http.response.start")
    payload = b"".join(msg.get("body", b"") for msg in sent if msg["type"] == "http.response.body")
    decoded = json.loads(payload.decode("utf-8")) if payload else None
    return start["status"], decoded, dict(start["headers"])


def _asgi_request(
    app: ASGIServer,
    method: str,
    path: str,
    body: bytes = b"",
    query_string: bytes = b"",
    user: str | None = None,
) -> tuple[int, dict | None, dict[bytes, bytes]]:
    return asyncio.run(_asgi_call(app, method, path, body, query_string, user))


def _json(body: dict) -> bytes:
    return json.dumps(body).encode("utf-8")


@pytest.fixture
def http(portal: ServerApp) -> ASGIServer:
    return ASGIServer(service=portal)


def test_documented_server_startup_command_is_available():
    result = subprocess.run(
        [sys.executable, "-m", "qa_portal.server.app", "--print-startup"],
        check=False,
        capture_output=True,
        text=True,
    )

    assert result.returncode == 0
    assert "uvicorn qa_portal.server.app:app --host 127.0.0.1 --port 8000" in result.stdout


def test_options_preflight_returns_cors_headers(http):
    status, payload, headers = _asgi_request(http, "OPTIONS", "/prs")

    assert status == 200
    assert payload is None
    assert headers[b"access-control-allow-origin"] == b"*"
    assert b"DELETE" in headers[b"access-control-allow-methods"]


def test_health_route(http):
    status, payload, headers = _asgi_request(http, "GET", "/health")

    assert status == 200
    assert payload == {"success": True, "data": {"status": "ok", "store": "in_memory", "webhooks": 0}}
    assert headers[b"access-control-allow-origin"] == b"*"


def test_create_pr_over_http(http):
    status, payload, _ = _asgi_request(
        http,
        "POST",
        "/prs",
        body=_json({"name": "Checkout flow", "developer": "dana", "testCaseIds": ["tc_login"]}),
        user="u_dev",
    )

    assert status == 201
    assert payload["success"] is True
    assert payload["data"]["status"] == "new"


def test_user_id_may_come_from_body_or_query(http):
    status, payload, _ = _asgi_request(
        http, "POST", "/prs", body=_json({"name": "A", "developer": "dana", "userId": "u_dev"})
    )
    assert status == 201
    assert "userId" not in payload["data"]

    status, _, _ = _asgi_request(
        http, "POST", "/prs", body=_json({"name": "B", "developer": "dana"}), query_string=b"userId=dana"
    )
    assert status == 201


def test_error_envelopes(http):
    status, payload, _ = _asgi_request(http, "POST", "/prs", body=_json({"name": "A", "developer": "d"}))
    assert status == 401
    assert payload == {"success": False, "error": "User authentication required", "code": "authentication_required"}

    status, payload, _ = _asgi_request(
        http, "POST", "/prs", body=_json({"name": "A", "developer": "d"}), user="u_alice"
    )
    assert status == 403
    assert payload["details"] == {"required": "pr_create", "role": "qa_engineer"}

    status, payload, _ = _asgi_request(http, "POST", "/prs", body=b"{oops", user="u_dev")
    assert status == 400
    assert payload["code"] == "invalid_json"

    status, payload, _ = _asgi_request(http, "POST", "/prs", body=_json({"developer": "d"}), user="u_dev")
    assert status == 400
    assert payload["code"] == "invalid_payload"
    assert payload["details"]["errors"][0]["path"] == "name"

    status, payload, _ = _asgi_request(http, "GET", "/nowhere")
    assert status == 404
    assert payload["code"] == "route_not_found"

    status, payload, _ = _asgi_request(
        http, "PUT", "/prs/pr_missing", body=_json({"description": "x"}), user="u_dev"
    )
    assert status == 404
    assert payload["code"] == "pr_not_found"


def test_merge_conflict_is_409(http):
    _, created, _ = _asgi_request(
        http, "POST", "/prs", body=_json({"name": "A", "developer": "dana"}), user="u_dev"
    )
    pr_id = created["data"]["id"]

    status, payload, _ = _asgi_request(
        http, "POST", f"/prs/{pr_id}/actions", body=_json({"action": "merge-tests"}), user="u_sam"
    )

    assert status == 409
    assert payload["code"] == "merge_not_ready"
    assert payload["details"]["status"] == "new"


def test_assignment_capacity_over_http(http):
    _, created, _ = _asgi_request(
        http,
        "POST",
        "/prs",
        body=_json({"name": "A", "developer": "dana", "testCaseIds": ["tc_login", "tc_logout"]}),
        user="u_dev",
    )
    pr_id = created["data"]["id"]

    status, first, _ = _asgi_request(
        http,
        "POST",
        "/assignments",
        body=_json({"testCaseId": "tc_login", "prId": pr_id, "assignedTo": "alice"}),
        user="u_sam",
    )
    assert status == 200

    status, payload, _ = _asgi_request(
        http,
        "POST",
        "/assignments",
        body=_json({"testCaseId": "tc_logout", "prId": pr_id, "assignedTo": "alice"}),
        user="u_sam",
    )
    assert status == 409
    assert payload["code"] == "capacity_exceeded"

    status, progress, _ = _asgi_request(
        http,
        "POST",
        f"/assignments/{first['data']['id']}/progress",
        body=_json({"action": "complete"}),
        user="u_alice",
    )
    assert status == 200
    assert progress["data"]["assignment"]["status"] == "completed"


def test_test_case_and_issue_routes(http):
    status, added, _ = _asgi_request(
        http,
        "POST",
        "/test-cases",
        body=_json(
            {
                "name": "Search finds products",
                "tags": ["search"],
                "bddSteps": [
                    {"type": "given", "text": "the catalog is indexed"},
                    {"type": "when", "text": "I search for socks"},
                    {"type": "then", "text": "socks are listed"},
                ],
            }
        ),
        user="u_dev",
    )
    assert status == 201
    test_case_id = added["data"]["id"]

    status, _, _ = _asgi_request(
        http, "PUT", f"/test-cases/{test_case_id}", body=_json({"name": "Search v2"}), user="u_dev"
    )
    assert status == 200
    status, deleted, _ = _asgi_request(http, "DELETE", f"/test-cases/{test_case_id}", user="u_dev")
    assert status == 200
    assert deleted["data"]["test_case"]["name"] == "Search v2"

    _, created, _ = _asgi_request(
        http, "POST", "/prs", body=_json({"name": "A", "developer": "dana"}), user="u_dev"
    )
    status, issue, _ = _asgi_request(
        http,
        "POST",
        "/issues",
        body=_json({"prId": created["data"]["id"], "title": "Broken layout"}),
        user="u_alice",
    )
    assert status == 201
    issue_id = issue["data"]["id"]

    status, escalated, _ = _asgi_request(
        http, "POST", f"/issues/{issue_id}/escalate", body=_json({"reason": "release"}), user="u_sam"
    )
    assert status == 200
    assert escalated["data"]["notification_recipients"] == ["senior_qa_engineer"]

    status, resolved, _ = _asgi_request(http, "POST", f"/issues/{issue_id}/resolve", user="u_alice")
    assert status == 200
    assert resolved["data"]["status"] == "resolved"


def test_get_data_filters_users_by_reader(http):
    status, anonymous, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=users")
    assert status == 200
    assert anonymous["data"]["items"][0] == {"username": "alice", "display_name": "Alice QA", "role": "qa_engineer"}

    _, member, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=users", user="u_alice")
    assert "email" not in member["data"]["items"][0]
    assert member["data"]["items"][0]["team"] == "qa"

    _, lead, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=users", user="u_sam")
    assert lead["data"]["items"][0]["email"] == "alice@example.com"

    _, cases, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=test-cases")
    assert len(cases["data"]["items"]) == 2


def test_get_data_validates_data_type(http):
    status, payload, _ = _asgi_request(http, "GET", "/data")
    assert status == 400
    assert payload["code"] == "missing_data_type"

    status, payload, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=secrets")
    assert status == 400
    assert payload["code"] == "invalid_data_type"

    status, payload, _ = _asgi_request(http, "GET", "/data", query_string=b"dataType=issues")
    assert status == 404
    assert payload["code"] == "document_not_found"


def test_sync_route_without_source(http):
    status, payload, _ = _asgi_request(http, "POST", "/sync/github-prs", user="u_dev")
    assert status == 500
    assert payload["code"] == "sync_source_unavailable"


class _SlowDataService:
    """Serves a data read that waits until a health check arrives."""

    def __init__(self) -> None:
        self.health_seen = threading.Event()
        self.read_unblocked: bool | None = None

    def get_data(self, data_type: str, actor_id: str | None) -> dict:
        self.read_unblocked = self.health_seen.wait(timeout=5)
        return {"items": []}

    def health(self) -> dict:
        self.health_seen.set()
        return {"status": "ok"}


def test_blocking_request_does_not_stall_the_event_loop():
    service = _SlowDataService()
    http = ASGIServer(service=service)

    async def _both():
        return await asyncio.gather(
            _asgi_call(http, "GET", "/data", query_string=b"dataType=prs"),
            _asgi_call(http, "GET", "/health"),
        )

    (data_status, _, _), (health_status, _, _) = asyncio.run(_both())

    assert (data_status, health_status) == (200, 200)
    assert service.read_unblocked is True
