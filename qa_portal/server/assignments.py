"""Test assignment engine: workload-capped assignment and progress actions."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from qa_portal.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from qa_portal.server.activity import ActivityLog
from qa_portal.server.documents import DocumentSession, find_item, new_id
from qa_portal.server.issues import append_issue, blocking_issue
from qa_portal.server.models import (
    ASSIGNMENT_TERMINAL_STATUSES,
    AssignTestRequest,
    ProgressUpdateRequest,
    parse_payload,
)
from qa_portal.server.outbox import SideEffectOutbox
from qa_portal.server.permissions import Actor, Capability, PermissionEngine
from qa_portal.server.pr_lifecycle import PullRequestService
from qa_portal.server.results import append_test_results, build_test_result
from qa_portal.server.workload import WorkloadLedger, lookup_user, user_label
from qa_portal.store.document_store import DocumentKind, commit_message

logger = logging.getLogger(__name__)

DEFAULT_DUE_IN = timedelta(hours=24)
DEFAULT_ESTIMATED_DURATION_MS = 2000

# Statuses each progress action may start from.
ACTION_SOURCES: dict[str, frozenset[str]] = {
    "start": frozenset({"assigned"}),
    "update_progress": frozenset({"assigned", "in_progress"}),
    "complete": frozenset({"assigned", "in_progress"}),
    "fail": frozenset({"assigned", "in_progress"}),
    "pause": frozenset({"in_progress", "blocked"}),
    "block": frozenset({"assigned", "in_progress"}),
}
ACTION_TARGETS = {
    "start": "in_progress",
    "complete": "completed",
    "fail": "failed",
    "pause": "assigned",
    "block": "blocked",
}


def is_active(assignment: dict[str, Any]) -> bool:
    return assignment.get("status") not in ASSIGNMENT_TERMINAL_STATUSES


def same_user(identity: str | None, user: dict[str, Any]) -> bool:
    return bool(identity) and identity in {user.get("id"), user.get("username")}


def active_for_pair(
    items: list[dict[str, Any]], pr_id: str, test_case_id: str
) -> list[dict[str, Any]]:
    return [
        item
        for item in items
        if item.get("pr_id") == pr_id and item.get("test_case_id") == test_case_id and is_active(item)
    ]


def progress_record(action: str, message: str, progress: int, actor: Actor, now: str) -> dict[str, Any]:
    return {
        "id": new_id("upd"),
        "timestamp": now,
        "message": message,
        "progress": progress,
        "user": actor.label,
        "action": action,
    }


class AssignmentEngine:
    def __init__(
        self,
        session: DocumentSession,
        permissions: PermissionEngine,
        activity: ActivityLog,
        prs: PullRequestService,
    ) -> None:
        self.session = session
        self.permissions = permissions
        self.activity = activity
        self.prs = prs
        self.workload = WorkloadLedger(session)

    def _target(
        self, items: list[dict[str, Any]], request: AssignTestRequest
    ) -> dict[str, Any] | None:
        if request.assignment_id:
            target = find_item(items, request.assignment_id)
            if target is None:
                raise NotFoundError(
                    "Assignment not found",
                    code="assignment_not_found",
                    details={"assignment_id": request.assignment_id},
                )
            if (target.get("pr_id"), target.get("test_case_id")) != (
                request.pr_id,
                request.test_case_id,
            ):
                raise ValidationError(
                    "Assignment belongs to a different PR or test case",
                    code="assignment_mismatch",
                )
            return target
        active = active_for_pair(items, request.pr_id, request.test_case_id)
        return active[0] if active else None

    def assign(self, payload: dict[str, Any] | None, actor_id: str | None) -> dict[str, Any]:
        request = parse_payload(AssignTestRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.TEST_ASSIGN)

        test_case = find_item(self.session.items(DocumentKind.TEST_CASES, missing_ok=True), request.test_case_id)
        if test_case is None:
            raise NotFoundError("Test case not found", code="test_case_not_found")
        if find_item(self.session.items(DocumentKind.PRS, missing_ok=True), request.pr_id) is None:
            raise NotFoundError("PR not found", code="pr_not_found")
        assignee = lookup_user(self.session, request.assigned_to)

        existing = self._target(
            self.session.items(DocumentKind.ASSIGNMENTS, missing_ok=True), request
        )
        keeps_slot = existing is not None and is_active(existing) and same_user(
            existing.get("assigned_to"), assignee
        )
        if not keeps_slot:
            assignee = self.workload.reserve(request.assigned_to, actor.user_id)

        previous_assignee: str | None = None

        def _assign(content: dict[str, Any]) -> dict[str, Any]:
            nonlocal previous_assignee
            now = self.session.clock()
            stamp = now.isoformat()
            items = content["items"]
            target = self._target(items, request)
            previous_assignee = None

            if target is not None and is_active(target):
                previous_assignee = target.get("assigned_to")
                if same_user(previous_assignee, assignee) != keeps_slot:
                    raise ConflictError(
                        "Assignment changed while it was being updated; retry the request",
                        code="assignment_changed",
                    )
            elif keeps_slot:
                raise ConflictError(
                    "Assignment changed while it was being updated; retry the request",
                    code="assignment_changed",
                )

            if target is not None and not is_active(target):
                others = [
                    item
                    for item in active_for_pair(items, request.pr_id, request.test_case_id)
                    if item["id"] != target["id"]
                ]
                if others:
                    raise ConflictError(
                        "Another active assignment exists for this PR and test case",
                        code="active_assignment_exists",
                        details={"assignment_id": others[0]["id"]},
                    )

            due = (request.due_date or now + DEFAULT_DUE_IN).isoformat()
            username = str(assignee.get("username") or assignee.get("id"))
            if target is None:
                target = {
                    "id": new_id("assign"),
                    "pr_id": request.pr_id,
                    "test_case_id": request.test_case_id,
                    "test_name": test_case.get("name", ""),
                    "estimated_duration": test_case.get("expected_duration")
                    or DEFAULT_ESTIMATED_DURATION_MS,
                    "actual_duration": None,
                    "started_at": None,
                    "completed_at": None,
                    "progress": 0,
                    "progress_updates": [],
                    "requirements": request.requirements,
                    "notes": f"Assigned by {actor.label}",
                    "created_at": stamp,
                }
                items.append(target)
                message = f"Assigned to {user_label(assignee)}"
            else:
                if not is_active(target):
                    target.update({"progress": 0, "started_at": None, "completed_at": None})
                message = f"Reassigned to {user_label(assignee)}"

            target.update(
                {
                    "assigned_to": username,
                    "assigned_to_id": assignee.get("id"),
                    "assigned_at": stamp,
                    "assigned_by": actor.label,
                    "status": "assigned",
                    "priority": request.priority,
                    "due_date": due,
                    "updated_at": stamp,
                }
            )
            if request.requirements:
                target["requirements"] = request.requirements
            target["progress_updates"].append(
                progress_record("assign", message, target["progress"], actor, stamp)
            )
            return target

        try:
            assignment = self.session.mutate(
                DocumentKind.ASSIGNMENTS,
                _assign,
                lambda a: commit_message(
                    "Test Assigned",
                    f"{a['test_name']} to {user_label(assignee)}",
                    actor.user_id,
                    self.session.clock(),
                ),
                create_if_missing=True,
            ).value
        except Exception:
            if not keeps_slot:
                self._release_quietly(request.assigned_to, actor)
            raise

        outbox = SideEffectOutbox()
        if previous_assignee and not same_user(previous_assignee, assignee):
            outbox.add(
                "release_previous_assignee",
                lambda: self.workload.release(previous_assignee, actor.user_id),
            )
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "test_assigned",
                "test_reassigned" if previous_assignee else "test_assigned",
                actor.label,
                {
                    "assignment_id": assignment["id"],
                    "test_name": assignment["test_name"],
                    "assigned_to": user_label(assignee),
                    "previous_assignee": previous_assignee,
                    "pr_id": assignment["pr_id"],
                    "priority": assignment["priority"],
                },
                f'{actor.label} assigned "{assignment["test_name"]}" to {user_label(assignee)}',
            ),
        )
        outbox.dispatch()
        return assignment

    def _release_quietly(self, identity: str, actor: Actor) -> None:
        try:
            self.workload.release(identity, actor.user_id)
        except Exception as exc:
            logger.warning("failed to release reserved slot for %s: %s", identity, exc)

    def update_progress(
        self, assignment_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(ProgressUpdateRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.TEST_EXECUTE)
        update: dict[str, Any] = {}

        def _progress(content: dict[str, Any]) -> dict[str, Any]:
            stamp = self.session.now_iso()
            assignment = find_item(content["items"], assignment_id)
            if assignment is None:
                raise NotFoundError(
                    "Assignment not found",
                    code="assignment_not_found",
                    details={"assignment_id": assignment_id},
                )
            owner = {assignment.get("assigned_to"), assignment.get("assigned_to_id")}
            if not (owner & {actor.user_id, actor.username}) and not actor.can_override:
                raise PermissionDenied(
                    "You can only update your own assignments", code="not_assignee"
                )
            status = assignment.get("status")
            if status in ASSIGNMENT_TERMINAL_STATUSES:
                raise ConflictError(
                    f"Assignment is {status} and accepts no further updates",
                    code="invalid_transition:terminal_state",
                )
            if status not in ACTION_SOURCES[request.action]:
                raise ConflictError(
                    f"Cannot {request.action} an assignment that is {status}",
                    code=f"invalid_transition:{status}->{request.action}",
                )

            message = self._apply(assignment, request, stamp)
            if request.action in ACTION_TARGETS:
                assignment["status"] = ACTION_TARGETS[request.action]
            assignment["updated_at"] = stamp
            update.clear()
            update.update(
                progress_record(
                    request.action, request.message or message, assignment["progress"], actor, stamp
                )
            )
            assignment.setdefault("progress_updates", []).append(dict(update))
            return assignment

        assignment = self.session.mutate(
            DocumentKind.ASSIGNMENTS,
            _progress,
            lambda a: commit_message(
                "Test Progress Updated",
                f"{a.get('test_name', a['id'])}: {request.action} ({a['progress']}%)",
                actor.user_id,
                self.session.clock(),
            ),
        ).value

        outbox = SideEffectOutbox()
        if request.action in {"complete", "fail"}:
            self._completion_effects(outbox, assignment, request, actor)
        if request.action == "block" and request.blocking_reason is not None:
            reason = request.blocking_reason.model_dump()
            outbox.add(
                "blocking_issue",
                lambda: append_issue(
                    self.session,
                    blocking_issue(assignment, reason, actor, self.session.now_iso()),
                    actor.user_id,
                ),
            )
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "test_execution",
                {"completed": "test_passed", "failed": "test_failed"}.get(
                    assignment["status"], "test_updated"
                ),
                actor.label,
                {
                    "assignment_id": assignment["id"],
                    "test_name": assignment.get("test_name", ""),
                    "status": assignment["status"],
                    "progress": assignment["progress"],
                    "action": request.action,
                },
                update["message"],
            ),
        )
        report = outbox.dispatch()
        return {"assignment": assignment, "progress_update": update, "side_effects": report}

    def _apply(self, assignment: dict[str, Any], request: ProgressUpdateRequest, stamp: str) -> str:
        name = assignment.get("test_name", "")
        progress = int(assignment.get("progress") or 0)
        outcome = request.test_result

        if request.action == "start":
            assignment["started_at"] = stamp
            assignment["progress"] = max(progress, 10)
            return f"Started testing: {name}"
        if request.action == "update_progress":
            if request.progress is not None:
                assignment["progress"] = min(max(request.progress, 0), 100)
            return f"Progress update: {assignment['progress']}%"
        if request.action in {"complete", "fail"}:
            assignment["completed_at"] = stamp
            duration = outcome.duration if outcome else None
            assignment["actual_duration"] = (
                duration if duration is not None else assignment.get("estimated_duration")
            )
            if request.action == "complete":
                assignment["progress"] = 100
                return f"Completed testing: {name}"
            return f"Test failed: {name}"
        if request.action == "pause":
            return f"Paused testing: {name}"
        if request.blocking_reason is not None:
            assignment["blocked_reason"] = request.blocking_reason.description
        return f"Test blocked: {name}"

    def _completion_effects(
        self,
        outbox: SideEffectOutbox,
        assignment: dict[str, Any],
        request: ProgressUpdateRequest,
        actor: Actor,
    ) -> None:
        outcome = request.test_result
        default = "passed" if request.action == "complete" else "failed"
        status = (outcome.status if outcome else None) or default
        record = build_test_result(
            test_case_id=assignment["test_case_id"],
            pr_id=assignment["pr_id"],
            status=status,
            executed_by=actor.label,
            executed_at=assignment["completed_at"],
            test_name=assignment.get("test_name", ""),
            duration=assignment.get("actual_duration"),
            notes=(outcome.notes if outcome else "") or assignment.get("notes", ""),
            failure_reason=outcome.failure_reason if outcome else None,
            error_messages=outcome.error_messages if outcome else None,
            assignment_id=assignment["id"],
        )
        outbox.add(
            "release_workload",
            lambda: self.workload.release(assignment["assigned_to"], actor.user_id),
        )
        outbox.add("test_result", lambda: append_test_results(self.session, [record], actor.user_id))
        outbox.add(
            "pr_results",
            lambda: self.prs.ingest_results(
                assignment["pr_id"], [(assignment["test_case_id"], status)], actor
            ),
        )
