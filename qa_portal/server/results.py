"""TestResult records appended to the test-results document."""

from __future__ import annotations

from typing import Any

from qa_portal.server.documents import DocumentSession, new_id
from qa_portal.store.document_store import DocumentKind, commit_message

# Feature/main branch markers stored on a PR's associated test cases.
RESULT_MARKERS = {"passed": "pass", "failed": "fail", "skipped": "skip"}


def build_test_result(
    *,
    test_case_id: str,
    pr_id: str,
    status: str,
    executed_by: str,
    executed_at: str,
    branch: str = "feature",
    test_name: str = "",
    duration: int | None = None,
    notes: str = "",
    failure_reason: str | None = None,
    error_messages: list[str] | None = None,
    assignment_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": new_id("result"),
        "test_case_id": test_case_id,
        "pr_id": pr_id,
        "assignment_id": assignment_id,
        "test_name": test_name,
        "status": status,
        "branch": branch,
        "duration": duration,
        "notes": notes,
        "failure_reason": failure_reason,
        "error_messages": list(error_messages or []),
        "executed_by": executed_by,
        "executed_at": executed_at,
    }


def append_test_results(
    session: DocumentSession, records: list[dict[str, Any]], actor_id: str
) -> int:
    if not records:
        return 0

    def _append(content: dict[str, Any]) -> int:
        content["items"].extend(records)
        return len(records)

    failed = sum(1 for record in records if record["status"] == "failed")
    details = f"{len(records)} result(s) for {records[0]['pr_id']}, {failed} failed"
    return session.mutate(
        DocumentKind.TEST_RESULTS,
        _append,
        commit_message("Test Results Recorded", details, actor_id, session.clock()),
        create_if_missing=True,
    ).value
