from __future__ import annotations

from typing import Any

import pytest

from conftest import FIXED_NOW, RecordingNotifier, user_by_username
from qa_portal.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from qa_portal.server.app import ServerApp
from qa_portal.server.pr_lifecycle import assert_transition, derive_status
from qa_portal.store.document_store_inmemory import InMemoryDocumentStore


def _create(portal: ServerApp, **extra: Any) -> dict[str, Any]:
    payload = {"name": "Checkout flow", "developer": "dana", "testCaseIds": ["tc_login"], **extra}
    return portal.create_pr(payload, "u_dev")


def _results(portal: ServerApp, pr_id: str, status: str, branch: str = "feature") -> dict[str, Any]:
    return portal.record_test_results(
        pr_id,
        {"results": [{"testCaseId": "tc_login", "status": status}], "branch": branch},
        "u_alice",
    )


def _ready_and_approved(portal: ServerApp) -> dict[str, Any]:
    pr = _create(portal)
    _results(portal, pr["id"], "passed")
    return portal.apply_pr_action(pr["id"], {"action": "approve"}, "u_sam")["pr"]


def test_create_pr_starts_new_with_pending_cases(
    portal: ServerApp, store: InMemoryDocumentStore, notifier: RecordingNotifier
) -> None:
    pr = _create(portal, priority="high")

    assert pr["status"] == "new"
    assert pr["priority"] == "high"
    assert pr["created_by"] == "u_dev"
    assert pr["created_at"] == FIXED_NOW.isoformat()
    assert pr["associated_test_cases"][0]["feature_result"] == "pending"
    assert pr["merge_readiness"]["ready_for_merge"] is False
    assert pr["merge_readiness"]["merge_blockers"] == ["No tests executed", "No QA approval"]

    stored = store.snapshot("data/prs.json")
    assert [item["id"] for item in stored["items"]] == [pr["id"]]
    assert stored["metadata"]["statistics"]["by_status"]["new"] == 1
    assert notifier.names() == ["pr.created"]
    assert store.snapshot("data/activity.json")["items"][0]["action"] == "pr_added"


def test_create_pr_requires_pr_create_and_known_test_cases(portal: ServerApp) -> None:
    with pytest.raises(PermissionDenied):
        portal.create_pr({"name": "x", "developer": "y"}, "u_alice")
    with pytest.raises(NotFoundError) as excinfo:
        portal.create_pr({"name": "x", "developer": "y", "testCaseIds": ["tc_nope"]}, "u_dev")
    assert excinfo.value.details == {"test_case_ids": ["tc_nope"]}
    with pytest.raises(ValidationError):
        portal.create_pr({"name": "", "developer": "dana"}, "u_dev")


def test_failing_result_blocks_and_passing_result_makes_ready(
    portal: ServerApp, notifier: RecordingNotifier
) -> None:
    pr = _create(portal)

    failed = _results(portal, pr["id"], "failed")["pr"]
    assert failed["status"] == "blocked"
    assert failed["status_before_block"] == "new"
    assert "Tests failing" in failed["merge_readiness"]["merge_blockers"]
    assert failed["branch_comparison"]["feature_branch"]["tests_failed"] == 1
    assert failed["progress"] == 100

    passed = _results(portal, pr["id"], "passed")["pr"]
    assert passed["status"] == "ready"
    assert passed["status_before_block"] is None
    assert passed["merge_readiness"]["merge_blockers"] == ["No QA approval"]

    names = notifier.names()
    assert "test.failed" in names
    assert "pr.blocked" in names
    assert "pr.unblocked" in names


def test_recorded_results_are_appended_to_test_results(
    portal: ServerApp, store: InMemoryDocumentStore
) -> None:
    pr = _create(portal)
    outcome = _results(portal, pr["id"], "failed")

    assert outcome["results"][0]["status"] == "failed"
    assert {effect["effect"] for effect in outcome["side_effects"]} >= {"test_results", "activity"}
    stored = store.snapshot("data/test-results.json")
    assert [(r["test_case_id"], r["status"], r["executed_by"]) for r in stored["items"]] == [
        ("tc_login", "failed", "Alice QA")
    ]
    assert stored["metadata"]["statistics"]["pass_rate"] == 0.0


def test_unknown_test_case_in_results_is_associated(portal: ServerApp) -> None:
    pr = portal.create_pr({"name": "Empty", "developer": "dana"}, "u_dev")
    updated = portal.record_test_results(
        pr["id"], {"results": [{"testCaseId": "tc_logout", "status": "passed"}]}, "u_alice"
    )["pr"]

    assert [entry["test_case_id"] for entry in updated["associated_test_cases"]] == ["tc_logout"]
    assert updated["status"] == "ready"


def test_full_merge_flow(portal: ServerApp, notifier: RecordingNotifier) -> None:
    pr = _ready_and_approved(portal)
    assert pr["merge_readiness"]["ready_for_merge"] is True
    assert pr["merge_readiness"]["approved_by"] == ["sam"]

    merged_tests = portal.apply_pr_action(pr["id"], {"action": "merge-tests"}, "u_sam")
    assert merged_tests["pr"]["status"] == "qa-tests-merged"
    assert merged_tests["pr"]["qa_tests_merged_at"] == FIXED_NOW.isoformat()
    assert merged_tests["pr"]["branch_comparison"]["main_branch"]["tests_failed"] == 1
    assert merged_tests["pr"]["merge_readiness"]["can_proceed_to_merge"] is False

    merged = portal.apply_pr_action(pr["id"], {"action": "merge-dev"}, "u_sam")
    assert merged["pr"]["status"] == "fully-merged"
    assert merged["pr"]["progress"] == 100
    assert merged["pr"]["branch_comparison"]["main_branch"]["tests_passed"] == 1
    assert merged["merge_status"]["ready_for_merge"] is True

    assert "qa.tests_merged" in notifier.names()
    assert "dev.pr_merged" in notifier.names()

    with pytest.raises(ConflictError) as excinfo:
        portal.apply_pr_action(pr["id"], {"action": "block", "reason": "late"}, "u_sam")
    assert excinfo.value.code == "invalid_transition:terminal_state"
    with pytest.raises(ConflictError):
        _results(portal, pr["id"], "failed")


def test_merge_alias_and_merge_gating(portal: ServerApp) -> None:
    pr = _create(portal)
    with pytest.raises(ConflictError) as excinfo:
        portal.apply_pr_action(pr["id"], {"action": "merge"}, "u_sam")
    assert excinfo.value.code == "merge_not_ready"
    assert excinfo.value.details["blockers"] == ["No tests executed", "No QA approval"]

    with pytest.raises(ConflictError) as excinfo:
        portal.apply_pr_action(pr["id"], {"action": "merge-dev"}, "u_sam")
    assert excinfo.value.code == "invalid_transition:new->fully-merged"

    with pytest.raises(PermissionDenied):
        portal.apply_pr_action(pr["id"], {"action": "approve"}, "u_alice")


def test_merge_dev_closes_open_assignments(portal: ServerApp, store: InMemoryDocumentStore) -> None:
    pr = _create(portal)
    portal.assign_test(
        {"testCaseId": "tc_login", "prId": pr["id"], "assignedTo": "alice"}, "u_sam"
    )
    assert user_by_username(store, "alice")["current_assignments"] == 3

    _results(portal, pr["id"], "passed")
    portal.apply_pr_action(pr["id"], {"action": "approve"}, "u_sam")
    portal.apply_pr_action(pr["id"], {"action": "merge-tests"}, "u_sam")
    outcome = portal.apply_pr_action(pr["id"], {"action": "merge-dev"}, "u_sam")

    assert {"effect": "close_assignments", "status": "applied"} in outcome["side_effects"]
    assignment = store.snapshot("data/test-assignments.json")["items"][0]
    assert assignment["status"] == "completed"
    assert assignment["progress"] == 100
    assert assignment["progress_updates"][-1]["message"] == "Auto-completed after PR merge"
    assert user_by_username(store, "alice")["current_assignments"] == 2


def test_reject_withdraws_approval_and_returns_to_testing(portal: ServerApp) -> None:
    pr = _ready_and_approved(portal)

    outcome = portal.apply_pr_action(
        pr["id"], {"action": "reject", "comments": "flaky on Safari"}, "u_sam"
    )

    rejected = outcome["pr"]
    assert rejected["status"] == "testing"
    assert rejected["merge_readiness"]["approved_by"] == []
    assert "Rejected by Sam Senior" in outcome["merge_status"]["blockers"]
    assert outcome["merge_status"]["ready_for_merge"] is False

    approved = portal.apply_pr_action(pr["id"], {"action": "approve"}, "u_sam")
    assert approved["merge_status"]["blockers"] == []


def test_reject_keeps_a_pr_with_failing_results_blocked(portal: ServerApp) -> None:
    pr = _create(portal)
    _results(portal, pr["id"], "failed")

    outcome = portal.apply_pr_action(pr["id"], {"action": "reject"}, "u_sam")

    rejected = outcome["pr"]
    assert rejected["status"] == "blocked"
    assert derive_status(rejected) == "blocked"
    assert "Tests failing" in outcome["merge_status"]["blockers"]
    assert "Rejected by Sam Senior" in outcome["merge_status"]["blockers"]

    passed = _results(portal, pr["id"], "passed")["pr"]
    assert passed["status"] == "ready"


def test_reject_after_tests_merged_is_a_conflict(portal: ServerApp) -> None:
    pr = _ready_and_approved(portal)
    portal.apply_pr_action(pr["id"], {"action": "merge-tests"}, "u_sam")

    with pytest.raises(ConflictError):
        portal.apply_pr_action(pr["id"], {"action": "reject"}, "u_sam")


def test_block_and_unblock_restore_derived_status(portal: ServerApp) -> None:
    pr = _ready_and_approved(portal)

    blocked = portal.apply_pr_action(
        pr["id"], {"action": "block", "reason": "staging is down"}, "u_alice"
    )["pr"]
    assert blocked["status"] == "blocked"
    assert blocked["blocked_reason"] == "staging is down"
    assert blocked["status_before_block"] == "ready"

    # Passing results do not lift a manual block.
    assert _results(portal, pr["id"], "passed")["pr"]["status"] == "blocked"

    unblocked = portal.apply_pr_action(pr["id"], {"action": "unblock"}, "u_alice")["pr"]
    assert unblocked["status"] == "ready"
    assert unblocked["blocked_reason"] is None

    with pytest.raises(ConflictError) as excinfo:
        portal.apply_pr_action(pr["id"], {"action": "unblock"}, "u_alice")
    assert excinfo.value.code == "not_blocked"


def test_unblock_cannot_clear_failing_tests(portal: ServerApp) -> None:
    pr = _create(portal)
    _results(portal, pr["id"], "failed")

    with pytest.raises(ConflictError) as excinfo:
        portal.apply_pr_action(pr["id"], {"action": "unblock"}, "u_alice")
    assert excinfo.value.code == "blocked_by_failing_tests"

    with pytest.raises(ValidationError):
        portal.apply_pr_action(pr["id"], {"action": "block"}, "u_alice")


def test_update_pr_and_associate_test_cases(portal: ServerApp, notifier: RecordingNotifier) -> None:
    pr = _create(portal)
    _results(portal, pr["id"], "passed")

    updated = portal.update_pr(pr["id"], {"description": "now with coupons"}, "u_dev")
    assert updated["description"] == "now with coupons"
    assert updated["updated_by"] == "Dana Dev"
    assert updated["updated_at"] == FIXED_NOW.isoformat()
    assert updated["status"] == "ready"

    associated = portal.associate_test_cases(pr["id"], {"testCaseIds": ["tc_logout", "tc_login"]}, "u_sam")
    assert [e["test_case_id"] for e in associated["associated_test_cases"]] == ["tc_login", "tc_logout"]
    assert associated["status"] == "testing"
    assert associated["progress"] == 50
    assert "pr.updated" in notifier.names()
    assert notifier.events[-1][1]["new_status"] == "testing"

    with pytest.raises(NotFoundError):
        portal.update_pr("pr_missing", {"description": "x"}, "u_dev")


def test_transition_table_and_derivation() -> None:
    assert_transition("new", "testing")
    with pytest.raises(ConflictError) as excinfo:
        assert_transition("new", "fully-merged")
    assert excinfo.value.code == "invalid_transition:new->fully-merged"
    with pytest.raises(ConflictError) as excinfo:
        assert_transition("closed", "new")
    assert excinfo.value.code == "invalid_transition:terminal_state"

    def pr(status: str, *results: str, **extra: Any) -> dict[str, Any]:
        entries = [{"test_case_id": f"tc_{n}", "feature_result": r} for n, r in enumerate(results)]
        return {"status": status, "associated_test_cases": entries, **extra}

    assert derive_status(pr("new")) == "new"
    assert derive_status(pr("new", "pass", "pending")) == "testing"
    assert derive_status(pr("testing", "pass", "pass")) == "ready"
    assert derive_status(pr("ready", "pass", "fail")) == "blocked"
    assert derive_status(pr("ready", "pass", blocked_reason="env down")) == "blocked"
    assert derive_status(pr("qa-tests-merged", "pass")) == "qa-tests-merged"
    assert derive_status(pr("blocked", "pass", status_before_block="qa-tests-merged")) == "qa-tests-merged"
    assert derive_status(pr("fully-merged", "fail")) == "fully-merged"
