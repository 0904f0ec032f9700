"""Pull-request lifecycle: derived status, merge readiness, and gated actions."""

from __future__ import annotations

import logging
from typing import Any

from qa_portal.errors import ConflictError, NotFoundError
from qa_portal.server.activity import ActivityLog
from qa_portal.server.documents import DocumentSession, find_item, new_id
from qa_portal.server.models import (
    PR_TERMINAL_STATUSES,
    AssociateTestCasesRequest,
    CreatePRRequest,
    PRActionRequest,
    RecordTestResultsRequest,
    UpdatePRRequest,
    parse_payload,
)
from qa_portal.server.notifications import (
    DEV_PR_MERGED,
    PR_BLOCKED,
    PR_CREATED,
    PR_STATUS_CHANGED,
    PR_UNBLOCKED,
    PR_UPDATED,
    QA_TESTS_MERGED,
    TEST_FAILED,
    TEST_RESULT_CHANGED,
    Notifier,
    NullNotifier,
)
from qa_portal.server.outbox import SideEffectOutbox
from qa_portal.server.permissions import Actor, Capability, PermissionEngine
from qa_portal.server.results import RESULT_MARKERS, append_test_results, build_test_result
from qa_portal.server.workload import WorkloadLedger, close_assignments_for_pr
from qa_portal.store.document_store import DocumentKind, commit_message

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "new": {"testing", "ready", "blocked"},
    "testing": {"new", "ready", "blocked"},
    "ready": {"testing", "blocked", "qa-tests-merged"},
    "blocked": {"new", "testing", "ready", "qa-tests-merged"},
    "qa-tests-merged": {"fully-merged", "blocked"},
    "fully-merged": set(),
    "closed": set(),
}

REQUIREMENT_TESTS_PASSING = "Tests passing"
REQUIREMENT_NO_FAILURES = "No failing tests"
REQUIREMENT_QA_APPROVAL = "QA approval"
BLOCKER_NO_TESTS = "No tests executed"
BLOCKER_TESTS_FAILING = "Tests failing"
BLOCKER_NO_APPROVAL = "No QA approval"
REJECTION_PREFIX = "Rejected by "

ACTION_CAPABILITIES: dict[str, Capability] = {
    "approve": Capability.PR_MERGE,
    "merge-tests": Capability.PR_MERGE,
    "merge": Capability.PR_MERGE,
    "merge-dev": Capability.PR_MERGE,
    "reject": Capability.PR_MERGE,
    "block": Capability.TEST_EXECUTE,
    "unblock": Capability.TEST_EXECUTE,
}


def assert_transition(from_status: str, to_status: str) -> None:
    if from_status in PR_TERMINAL_STATUSES:
        raise ConflictError(
            f"PR is {from_status} and can no longer change status",
            code="invalid_transition:terminal_state",
        )
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise ConflictError(
            f"Cannot move PR from {from_status} to {to_status}",
            code=f"invalid_transition:{from_status}->{to_status}",
        )


def set_status(pr: dict[str, Any], to_status: str, now: str) -> str | None:
    """Move ``pr`` to ``to_status``; returns the previous status, or None when unchanged."""
    from_status = pr.get("status", "new")
    if from_status == to_status:
        return None
    assert_transition(from_status, to_status)
    if to_status == "blocked":
        pr["status_before_block"] = from_status
    elif from_status == "blocked":
        pr["status_before_block"] = None
    pr["status"] = to_status
    pr["status_changed_at"] = now
    return from_status


def _branch_counts(entries: list[dict[str, Any]], key: str) -> dict[str, int]:
    return {
        "tests_passed": sum(1 for e in entries if e.get(key) == "pass"),
        "tests_failed": sum(1 for e in entries if e.get(key) == "fail"),
        "tests_skipped": sum(1 for e in entries if e.get(key) == "skip"),
    }


def recount_branches(pr: dict[str, Any]) -> dict[str, Any]:
    entries = pr.get("associated_test_cases", [])
    comparison = pr.setdefault("branch_comparison", {})
    feature = comparison.setdefault("feature_branch", {"name": pr.get("branch") or pr["name"]})
    main = comparison.setdefault("main_branch", {"name": "main"})
    feature.update(_branch_counts(entries, "feature_result"))
    main.update(_branch_counts(entries, "main_result"))

    executed = sum(1 for e in entries if e.get("feature_result", "pending") != "pending")
    if pr.get("status") == "fully-merged":
        pr["progress"] = 100
    else:
        pr["progress"] = round(100 * executed / len(entries)) if entries else 0
    return comparison


def recompute_merge_readiness(pr: dict[str, Any]) -> dict[str, Any]:
    feature = pr["branch_comparison"]["feature_branch"]
    readiness = pr.setdefault("merge_readiness", {})
    approved_by = readiness.setdefault("approved_by", [])
    rejections = [
        blocker
        for blocker in readiness.get("merge_blockers", [])
        if blocker.startswith(REJECTION_PREFIX)
    ]

    checks = (
        (feature["tests_passed"] > 0, REQUIREMENT_TESTS_PASSING, BLOCKER_NO_TESTS),
        (feature["tests_failed"] == 0, REQUIREMENT_NO_FAILURES, BLOCKER_TESTS_FAILING),
        (bool(approved_by), REQUIREMENT_QA_APPROVAL, BLOCKER_NO_APPROVAL),
    )
    readiness["merge_requirements_met"] = [met for ok, met, _ in checks if ok]
    readiness["merge_blockers"] = [blocker for ok, _, blocker in checks if not ok] + rejections
    readiness["ready_for_merge"] = not readiness["merge_blockers"]
    readiness["can_proceed_to_merge"] = readiness["ready_for_merge"] and pr.get(
        "status"
    ) not in PR_TERMINAL_STATUSES | {"qa-tests-merged"}
    readiness.setdefault("qa_approval_date", None)
    readiness.setdefault("merge_requested_at", None)
    return readiness


def derive_status(pr: dict[str, Any]) -> str:
    """Status implied by the stored results; terminal and explicit blocks stay put."""
    status = pr.get("status", "new")
    if status in PR_TERMINAL_STATUSES:
        return status
    if pr.get("blocked_reason"):
        return "blocked"

    entries = pr.get("associated_test_cases", [])
    feature = [entry.get("feature_result", "pending") for entry in entries]
    if "fail" in feature:
        return "blocked"
    if status == "qa-tests-merged" or (
        status == "blocked" and pr.get("status_before_block") == "qa-tests-merged"
    ):
        return "qa-tests-merged"
    if feature and all(result == "pass" for result in feature):
        return "ready"
    if any(result != "pending" for result in feature):
        return "testing"
    return "new"


def refresh_pull_request(pr: dict[str, Any], now: str) -> str | None:
    """Recount, recompute readiness, and apply the derived status."""
    recount_branches(pr)
    previous = set_status(pr, derive_status(pr), now)
    recompute_merge_readiness(pr)
    pr["updated_at"] = now
    return previous


def new_pull_request(request: CreatePRRequest, actor: Actor, now: str) -> dict[str, Any]:
    branch = request.branch or request.name
    pr: dict[str, Any] = {
        "id": new_id("pr"),
        "name": request.name,
        "developer": request.developer,
        "description": request.description,
        "priority": request.priority,
        "environment": request.environment,
        "branch": branch,
        "status": "new",
        "progress": 0,
        "created_at": now,
        "updated_at": now,
        "status_changed_at": now,
        "created_by": actor.user_id,
        "associated_test_cases": [
            _pending_entry(test_case_id, now) for test_case_id in dict.fromkeys(request.test_case_ids)
        ],
        "branch_comparison": {
            "feature_branch": {"name": branch},
            "main_branch": {"name": "main"},
        },
        "assigned_testers": [],
        "merge_readiness": {
            "approved_by": [],
            "qa_approval_date": None,
            "merge_requested_at": None,
            "merge_blockers": [],
        },
        "blocked_reason": None,
        "status_before_block": None,
        "qa_tests_merged_at": None,
        "dev_pr_merged_at": None,
    }
    recount_branches(pr)
    recompute_merge_readiness(pr)
    return pr


def _pending_entry(test_case_id: str, now: str) -> dict[str, Any]:
    return {
        "test_case_id": test_case_id,
        "feature_result": "pending",
        "main_result": "pending",
        "updated_at": now,
    }


def apply_results(
    pr: dict[str, Any], results: list[tuple[str, str]], branch: str, now: str
) -> list[str]:
    """Record ``(test_case_id, status)`` pairs on a branch; returns the failing ids."""
    key = "main_result" if branch == "main" else "feature_result"
    entries = pr.setdefault("associated_test_cases", [])
    failed = []
    for test_case_id, status in results:
        entry = next((e for e in entries if e["test_case_id"] == test_case_id), None)
        if entry is None:
            entry = _pending_entry(test_case_id, now)
            entries.append(entry)
        entry[key] = RESULT_MARKERS[status]
        entry["updated_at"] = now
        if status == "failed":
            failed.append(test_case_id)
    return failed


def _find_pr(content: dict[str, Any], pr_id: str) -> dict[str, Any]:
    pr = find_item(content["items"], pr_id)
    if pr is None:
        raise NotFoundError("PR not found", code="pr_not_found", details={"pr_id": pr_id})
    return pr


def _pr_summary(pr: dict[str, Any]) -> dict[str, Any]:
    return {
        "pr_id": pr["id"],
        "pr_name": pr["name"],
        "developer": pr.get("developer"),
        "priority": pr.get("priority"),
        "status": pr.get("status"),
    }


class PullRequestService:
    def __init__(
        self,
        session: DocumentSession,
        permissions: PermissionEngine,
        activity: ActivityLog,
        notifier: Notifier | None = None,
    ) -> None:
        self.session = session
        self.permissions = permissions
        self.activity = activity
        self.notifier = notifier or NullNotifier()
        self.workload = WorkloadLedger(session)

    def _message(self, action: str, details: str, actor: Actor) -> str:
        return commit_message(action, details, actor.user_id, self.session.clock())

    def _require_test_cases(self, test_case_ids: list[str]) -> None:
        if not test_case_ids:
            return
        known = {tc.get("id") for tc in self.session.items(DocumentKind.TEST_CASES, missing_ok=True)}
        missing = [tc_id for tc_id in test_case_ids if tc_id not in known]
        if missing:
            raise NotFoundError(
                "Test case not found",
                code="test_case_not_found",
                details={"test_case_ids": missing},
            )

    def _status_effects(
        self, outbox: SideEffectOutbox, pr: dict[str, Any], previous: str | None
    ) -> None:
        if previous is None:
            return
        current = pr["status"]
        data = {**_pr_summary(pr), "old_status": previous, "new_status": current}
        outbox.add(
            "webhook:pr.status_changed",
            lambda: self.notifier.notify(PR_STATUS_CHANGED, data),
        )
        if current == "blocked":
            outbox.add("webhook:pr.blocked", lambda: self.notifier.notify(PR_BLOCKED, data))
        elif previous == "blocked":
            outbox.add("webhook:pr.unblocked", lambda: self.notifier.notify(PR_UNBLOCKED, data))

    def create_pr(self, payload: dict[str, Any] | None, actor_id: str | None) -> dict[str, Any]:
        request = parse_payload(CreatePRRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.PR_CREATE)
        self._require_test_cases(request.test_case_ids)

        def _create(content: dict[str, Any]) -> dict[str, Any]:
            pr = new_pull_request(request, actor, self.session.now_iso())
            content["items"].append(pr)
            return pr

        pr = self.session.mutate(
            DocumentKind.PRS,
            _create,
            lambda pr: self._message("PR Created", f"{pr['name']} by {pr['developer']}", actor),
            create_if_missing=True,
        ).value

        outbox = SideEffectOutbox()
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "pr_created",
                "pr_added",
                actor.label,
                {**_pr_summary(pr), "environment": pr["environment"]},
                f"{actor.label} created new PR: {pr['name']}",
            ),
        )
        outbox.add(
            "webhook:pr.created",
            lambda: self.notifier.notify(PR_CREATED, {**_pr_summary(pr), "created_at": pr["created_at"]}),
        )
        outbox.dispatch()
        return pr

    def update_pr(
        self, pr_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(UpdatePRRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.PR_CREATE)
        changes = request.model_dump(exclude_none=True)

        def _update(content: dict[str, Any]) -> dict[str, Any]:
            pr = _find_pr(content, pr_id)
            pr.update(changes)
            pr["updated_at"] = self.session.now_iso()
            pr["updated_by"] = actor.label
            return pr

        pr = self.session.mutate(
            DocumentKind.PRS,
            _update,
            lambda pr: self._message("PR Updated", f"{pr['name']}: {', '.join(changes) or 'no changes'}", actor),
        ).value

        outbox = SideEffectOutbox()
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "pr_management",
                "pr_updated",
                actor.label,
                {**_pr_summary(pr), "fields": sorted(changes)},
                f"{actor.label} updated PR: {pr['name']}",
            ),
        )
        outbox.add(
            "webhook:pr.updated",
            lambda: self.notifier.notify(PR_UPDATED, {**_pr_summary(pr), "fields": sorted(changes)}),
        )
        outbox.dispatch()
        return pr

    def associate_test_cases(
        self, pr_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(AssociateTestCasesRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.TEST_ASSIGN)
        self._require_test_cases(request.test_case_ids)
        previous: str | None = None

        def _associate(content: dict[str, Any]) -> dict[str, Any]:
            nonlocal previous
            now = self.session.now_iso()
            pr = _find_pr(content, pr_id)
            if pr["status"] in PR_TERMINAL_STATUSES:
                raise ConflictError(
                    f"PR is {pr['status']}", code="invalid_transition:terminal_state"
                )
            entries = pr.setdefault("associated_test_cases", [])
            known = {entry["test_case_id"] for entry in entries}
            for test_case_id in dict.fromkeys(request.test_case_ids):
                if test_case_id not in known:
                    entries.append(_pending_entry(test_case_id, now))
            previous = refresh_pull_request(pr, now)
            return pr

        pr = self.session.mutate(
            DocumentKind.PRS,
            _associate,
            lambda pr: self._message(
                "Test Cases Associated",
                f"{pr['name']}: {len(request.test_case_ids)} test case(s)",
                actor,
            ),
        ).value

        outbox = SideEffectOutbox()
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "pr_management",
                "test_cases_associated",
                actor.label,
                {**_pr_summary(pr), "test_case_ids": request.test_case_ids},
                f"{actor.label} associated {len(request.test_case_ids)} test case(s) with {pr['name']}",
            ),
        )
        self._status_effects(outbox, pr, previous)
        outbox.dispatch()
        return pr

    def record_test_results(
        self, pr_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(RecordTestResultsRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.TEST_EXECUTE)
        pr, previous, failed = self._ingest(
            pr_id,
            [(entry.test_case_id, entry.status) for entry in request.results],
            request.branch,
            actor,
        )
        now = self.session.now_iso()
        records = [
            build_test_result(
                test_case_id=entry.test_case_id,
                pr_id=pr_id,
                status=entry.status,
                executed_by=actor.label,
                executed_at=now,
                branch=request.branch,
                test_name=entry.test_name,
                duration=entry.duration,
                notes=entry.notes,
                failure_reason=entry.failure_reason,
                error_messages=entry.error_messages,
            )
            for entry in request.results
        ]

        outbox = SideEffectOutbox()
        outbox.add("test_results", lambda: append_test_results(self.session, records, actor.user_id))
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "test_execution",
                "results_recorded",
                actor.label,
                {**_pr_summary(pr), "branch": request.branch, "failed": failed},
                f"{actor.label} recorded {len(records)} result(s) on {pr['name']}",
            ),
        )
        self._result_effects(outbox, pr, previous, failed)
        report = outbox.dispatch()
        return {"pr": pr, "results": records, "side_effects": report}

    def ingest_results(
        self,
        pr_id: str,
        results: list[tuple[str, str]],
        actor: Actor,
        branch: str = "feature",
    ) -> dict[str, Any]:
        """Feed already-authorized results into a PR; used by the assignment engine."""
        pr, previous, failed = self._ingest(pr_id, results, branch, actor)
        outbox = SideEffectOutbox()
        self._result_effects(outbox, pr, previous, failed)
        outbox.dispatch()
        return pr

    def _ingest(
        self, pr_id: str, results: list[tuple[str, str]], branch: str, actor: Actor
    ) -> tuple[dict[str, Any], str | None, list[str]]:
        previous: str | None = None
        failed: list[str] = []

        def _record(content: dict[str, Any]) -> dict[str, Any]:
            nonlocal previous, failed
            now = self.session.now_iso()
            pr = _find_pr(content, pr_id)
            if pr["status"] in PR_TERMINAL_STATUSES:
                raise ConflictError(
                    f"PR is {pr['status']}", code="invalid_transition:terminal_state"
                )
            failed = apply_results(pr, results, branch, now)
            previous = refresh_pull_request(pr, now)
            return pr

        pr = self.session.mutate(
            DocumentKind.PRS,
            _record,
            lambda pr: self._message(
                "Test Results Updated",
                f"{pr['name']}: {len(results)} {branch} result(s), {len(failed)} failing",
                actor,
            ),
        ).value
        return pr, previous, failed

    def _result_effects(
        self,
        outbox: SideEffectOutbox,
        pr: dict[str, Any],
        previous: str | None,
        failed: list[str],
    ) -> None:
        outbox.add(
            "webhook:test.result_changed",
            lambda: self.notifier.notify(
                TEST_RESULT_CHANGED,
                {**_pr_summary(pr), "branch_comparison": pr["branch_comparison"]},
            ),
        )
        if failed:
            outbox.add(
                "webhook:test.failed",
                lambda: self.notifier.notify(
                    TEST_FAILED, {**_pr_summary(pr), "failed_tests": failed}
                ),
            )
        self._status_effects(outbox, pr, previous)

    def apply_action(
        self, pr_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(PRActionRequest, payload)
        action = "merge-tests" if request.action == "merge" else request.action
        actor = self.permissions.authorize(actor_id, ACTION_CAPABILITIES[action])
        previous: str | None = None
        summary = ""

        def _apply(content: dict[str, Any]) -> dict[str, Any]:
            nonlocal previous, summary
            now = self.session.now_iso()
            pr = _find_pr(content, pr_id)
            previous, summary = self._transition(pr, action, request, actor, now)
            pr["updated_at"] = now
            return pr

        title = action.replace("-", " ").title()
        pr = self.session.mutate(
            DocumentKind.PRS,
            _apply,
            lambda pr: self._message(f"PR {title}", f"{pr['name']}: {summary}", actor),
        ).value

        outbox = SideEffectOutbox()
        if action == "merge-dev":
            outbox.add("close_assignments", lambda: self._close_assignments(pr, actor))
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "pr_management",
                f"pr_{action.replace('-', '_')}",
                actor.label,
                {
                    **_pr_summary(pr),
                    "action": action,
                    "ready_for_merge": pr["merge_readiness"]["ready_for_merge"],
                    "approved_by": pr["merge_readiness"]["approved_by"],
                    "comments": request.comments,
                },
                f"{summary}: {request.comments}" if request.comments else summary,
            ),
        )
        if action == "merge-tests":
            outbox.add(
                "webhook:qa.tests_merged",
                lambda: self.notifier.notify(
                    QA_TESTS_MERGED,
                    {
                        **_pr_summary(pr),
                        "qa_tests_merged_at": pr["qa_tests_merged_at"],
                        "test_count": len(pr["associated_test_cases"]),
                        "branch": pr["branch"],
                    },
                ),
            )
        if action == "merge-dev":
            outbox.add(
                "webhook:dev.pr_merged",
                lambda: self.notifier.notify(
                    DEV_PR_MERGED,
                    {
                        **_pr_summary(pr),
                        "dev_pr_merged_at": pr["dev_pr_merged_at"],
                        "qa_tests_merged_at": pr["qa_tests_merged_at"],
                        "test_count": len(pr["associated_test_cases"]),
                    },
                ),
            )
        self._status_effects(outbox, pr, previous)
        report = outbox.dispatch()
        return {
            "pr": pr,
            "action": action,
            "merge_status": {
                "ready_for_merge": pr["merge_readiness"]["ready_for_merge"],
                "requirements_met": pr["merge_readiness"]["merge_requirements_met"],
                "blockers": pr["merge_readiness"]["merge_blockers"],
            },
            "side_effects": report,
        }

    def _transition(
        self,
        pr: dict[str, Any],
        action: str,
        request: PRActionRequest,
        actor: Actor,
        now: str,
    ) -> tuple[str | None, str]:
        status = pr["status"]
        readiness = pr["merge_readiness"]
        entries = pr.get("associated_test_cases", [])

        if status in PR_TERMINAL_STATUSES:
            raise ConflictError(
                f"PR is {status} and accepts no further actions",
                code="invalid_transition:terminal_state",
            )

        if action == "approve":
            if actor.username not in readiness["approved_by"]:
                readiness["approved_by"].append(actor.username)
            readiness["qa_approval_date"] = now
            readiness["merge_blockers"] = [
                b for b in readiness.get("merge_blockers", []) if not b.startswith(REJECTION_PREFIX)
            ]
            recompute_merge_readiness(pr)
            return None, f"PR approved by {actor.label}"

        if action == "merge-tests":
            recompute_merge_readiness(pr)
            if status != "ready" or not readiness["ready_for_merge"]:
                raise ConflictError(
                    "PR is not ready for merge",
                    code="merge_not_ready",
                    details={"status": status, "blockers": readiness["merge_blockers"]},
                )
            previous = set_status(pr, "qa-tests-merged", now)
            for entry in entries:
                entry["main_result"] = "fail"
                entry["updated_at"] = now
            pr["qa_tests_merged_at"] = now
            readiness["merge_requested_at"] = now
            recount_branches(pr)
            recompute_merge_readiness(pr)
            return previous, f"QA tests merged by {actor.label}"

        if action == "merge-dev":
            if status != "qa-tests-merged":
                raise ConflictError(
                    "QA tests must be merged before the development PR",
                    code=f"invalid_transition:{status}->fully-merged",
                )
            previous = set_status(pr, "fully-merged", now)
            for entry in entries:
                entry["main_result"] = "pass"
                entry["updated_at"] = now
            pr["dev_pr_merged_at"] = now
            pr["merged_by"] = actor.label
            recount_branches(pr)
            recompute_merge_readiness(pr)
            return previous, f"PR merged by {actor.label}"

        if action == "reject":
            if status == "qa-tests-merged":
                raise ConflictError(
                    "QA tests are already merged", code="invalid_transition:qa-tests-merged->testing"
                )
            readiness["approved_by"] = [a for a in readiness["approved_by"] if a != actor.username]
            readiness["qa_approval_date"] = None
            readiness["merge_blockers"].append(f"{REJECTION_PREFIX}{actor.label}")
            pr["blocked_reason"] = None
            # Failing feature results keep the PR blocked.
            failing = any(entry.get("feature_result") == "fail" for entry in entries)
            previous = set_status(pr, "blocked" if failing else "testing", now)
            recompute_merge_readiness(pr)
            return previous, f"PR rejected by {actor.label}"

        if action == "block":
            previous = set_status(pr, "blocked", now)
            pr["blocked_reason"] = request.reason
            pr["blocked_by"] = actor.label
            pr["blocked_at"] = now
            return previous, f"PR blocked by {actor.label}: {request.reason}"

        # unblock
        if status != "blocked":
            raise ConflictError("PR is not blocked", code="not_blocked")
        if not pr.get("blocked_reason"):
            raise ConflictError(
                "PR is blocked by failing tests; record passing results to unblock it",
                code="blocked_by_failing_tests",
            )
        pr["blocked_reason"] = None
        restored = pr.get("status_before_block") or "testing"
        target = derive_status({**pr, "status": restored})
        if target == "blocked":
            raise ConflictError(
                "PR still has failing tests", code="blocked_by_failing_tests"
            )
        previous = set_status(pr, target, now)
        pr["blocked_by"] = None
        pr["blocked_at"] = None
        recompute_merge_readiness(pr)
        return previous, f"PR unblocked by {actor.label}"

    def _close_assignments(self, pr: dict[str, Any], actor: Actor) -> int:
        closed = close_assignments_for_pr(self.session, pr["id"], pr["name"], actor.user_id)
        for assignment in closed:
            try:
                self.workload.release(assignment["assigned_to"], actor.user_id)
            except Exception as exc:
                logger.warning(
                    "failed to release workload for %s after merge of %s: %s",
                    assignment["assigned_to"],
                    pr["id"],
                    exc,
                )
        return len(closed)
