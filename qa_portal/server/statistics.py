"""Derived counters recomputed from a full scan of a document after every mutation."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable

from qa_portal.server.models import (
    ASSIGNMENT_STATUSES,
    ASSIGNMENT_TERMINAL_STATUSES,
    ISSUE_SEVERITIES,
    ISSUE_STATUSES,
    PR_STATUSES,
    TEST_RESULT_STATUSES,
)
from qa_portal.store.document_store import DocumentKind

StatsCalculator = Callable[[list[dict[str, Any]], datetime], dict[str, Any]]


def touch_metadata(content: dict[str, Any], now: datetime) -> dict[str, Any]:
    items = content.setdefault("items", [])
    metadata = content.setdefault("metadata", {})
    metadata["lastUpdated"] = now.isoformat()
    metadata["totalCount"] = len(items)
    return content


def status_counts(
    items: list[dict[str, Any]], known: tuple[str, ...], key: str = "status"
) -> dict[str, int]:
    """Zero-filled counts for ``known`` values plus any value seen in ``items``."""
    counts: dict[str, int] = {value: 0 for value in known}
    for item in items:
        value = str(item.get(key) or "unknown")
        counts[value] = counts.get(value, 0) + 1
    return counts


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_overdue(assignment: dict[str, Any], now: datetime) -> bool:
    if assignment.get("status") in ASSIGNMENT_TERMINAL_STATUSES:
        return False
    due = _parse_timestamp(assignment.get("due_date"))
    return due is not None and due < now


def calculate_assignment_stats(
    assignments: list[dict[str, Any]], now: datetime
) -> dict[str, Any]:
    by_status = status_counts(assignments, ASSIGNMENT_STATUSES)
    by_tester: dict[str, int] = {}
    for assignment in assignments:
        tester = assignment.get("assigned_to") or "unassigned"
        by_tester[tester] = by_tester.get(tester, 0) + 1
    return {
        "total_assignments": len(assignments),
        **{status: count for status, count in by_status.items()},
        "by_status": by_status,
        "active": sum(
            1 for a in assignments if a.get("status") not in ASSIGNMENT_TERMINAL_STATUSES
        ),
        "overdue": sum(1 for a in assignments if is_overdue(a, now)),
        "by_tester": by_tester,
    }


def calculate_pr_stats(prs: list[dict[str, Any]], now: datetime) -> dict[str, Any]:
    by_status = status_counts(prs, PR_STATUSES)
    return {
        "total_prs": len(prs),
        "by_status": by_status,
        "ready_for_merge": sum(
            1 for pr in prs if (pr.get("merge_readiness") or {}).get("ready_for_merge")
        ),
        "by_developer": dict(Counter(str(pr.get("developer") or "unknown") for pr in prs)),
    }


def calculate_issue_stats(issues: list[dict[str, Any]], now: datetime) -> dict[str, Any]:
    return {
        "total_issues": len(issues),
        "by_status": status_counts(issues, ISSUE_STATUSES),
        "by_severity": status_counts(issues, ISSUE_SEVERITIES, key="severity"),
        "escalated": sum(1 for issue in issues if int(issue.get("escalation_level") or 0) > 0),
    }


def calculate_test_result_stats(results: list[dict[str, Any]], now: datetime) -> dict[str, Any]:
    by_status = status_counts(results, TEST_RESULT_STATUSES)
    executed = by_status["passed"] + by_status["failed"]
    return {
        "total_results": len(results),
        "by_status": by_status,
        "pass_rate": round(by_status["passed"] / executed, 4) if executed else None,
    }


STATS_BY_KIND: dict[DocumentKind, StatsCalculator] = {
    DocumentKind.ASSIGNMENTS: calculate_assignment_stats,
    DocumentKind.PRS: calculate_pr_stats,
    DocumentKind.ISSUES: calculate_issue_stats,
    DocumentKind.TEST_RESULTS: calculate_test_result_stats,
}


def refresh_document(kind: DocumentKind, content: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Recompute statistics for ``kind`` and stamp the metadata invariants."""
    touch_metadata(content, now)
    calculator = STATS_BY_KIND.get(kind)
    if calculator is not None:
        content["metadata"]["statistics"] = calculator(content["items"], now)
    return content
