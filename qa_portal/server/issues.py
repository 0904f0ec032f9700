"""Issue reporting and escalation."""

from __future__ import annotations

from typing import Any

from qa_portal.errors import ConflictError, NotFoundError
from qa_portal.server.activity import ActivityLog
from qa_portal.server.documents import DocumentSession, find_item, new_id
from qa_portal.server.models import (
    EscalateIssueRequest,
    ReportIssueRequest,
    ResolveIssueRequest,
    parse_payload,
)
from qa_portal.server.notifications import ISSUE_ESCALATED, Notifier, NullNotifier
from qa_portal.server.outbox import SideEffectOutbox
from qa_portal.server.permissions import Actor, Capability, PermissionEngine, Role
from qa_portal.store.document_store import DocumentKind, commit_message


def escalation_recipients(level: int) -> list[str]:
    if level >= 3:
        roles = [Role.ADMIN, Role.SENIOR_QA_ENGINEER, Role.SENIOR_DEVELOPER]
    elif level == 2:
        roles = [Role.ADMIN, Role.SENIOR_QA_ENGINEER]
    elif level == 1:
        roles = [Role.SENIOR_QA_ENGINEER]
    else:
        roles = []
    return [role.value for role in roles]


def build_issue(
    *,
    pr_id: str,
    title: str,
    reported_by: str,
    now: str,
    test_case_id: str | None = None,
    test_name: str = "",
    description: str = "",
    severity: str = "medium",
    issue_type: str = "technical",
    note: str = "Issue reported",
) -> dict[str, Any]:
    return {
        "id": new_id("issue"),
        "pr_id": pr_id,
        "test_case_id": test_case_id,
        "test_name": test_name,
        "type": issue_type,
        "severity": severity,
        "title": title,
        "description": description,
        "reported_by": reported_by,
        "reported_at": now,
        "updated_at": now,
        "status": "open",
        "assigned_to": None,
        "escalation_level": 0,
        "updates": [
            {
                "id": new_id("upd"),
                "timestamp": now,
                "user": reported_by,
                "message": note,
                "action": "reported",
            }
        ],
    }


def append_issue(session: DocumentSession, issue: dict[str, Any], actor_id: str) -> dict[str, Any]:
    def _append(content: dict[str, Any]) -> dict[str, Any]:
        content["items"].append(issue)
        return issue

    return session.mutate(
        DocumentKind.ISSUES,
        _append,
        commit_message("Issue Reported", issue["title"], actor_id, session.clock()),
        create_if_missing=True,
    ).value


def _find_issue(content: dict[str, Any], issue_id: str) -> dict[str, Any]:
    issue = find_item(content["items"], issue_id)
    if issue is None:
        raise NotFoundError("Issue not found", code="issue_not_found", details={"issue_id": issue_id})
    return issue


class IssueService:
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

    def report_issue(self, payload: dict[str, Any] | None, actor_id: str | None) -> dict[str, Any]:
        request = parse_payload(ReportIssueRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.ISSUE_REPORT)
        if find_item(self.session.items(DocumentKind.PRS, missing_ok=True), request.pr_id) is None:
            raise NotFoundError("PR not found", code="pr_not_found", details={"pr_id": request.pr_id})

        issue = append_issue(
            self.session,
            build_issue(
                pr_id=request.pr_id,
                title=request.title,
                reported_by=actor.label,
                now=self.session.now_iso(),
                test_case_id=request.test_case_id,
                description=request.description,
                severity=request.severity,
                issue_type=request.type,
            ),
            actor.user_id,
        )
        self.activity.record(
            "issue_reported",
            f"severity_{issue['severity']}",
            actor.label,
            {"issue_id": issue["id"], "issue_title": issue["title"], "pr_id": issue["pr_id"]},
            f"{actor.label} reported issue: {issue['title']}",
        )
        return issue

    def escalate_issue(
        self, issue_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(EscalateIssueRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.ISSUE_ESCALATE)
        update: dict[str, Any] = {}

        def _escalate(content: dict[str, Any]) -> dict[str, Any]:
            now = self.session.now_iso()
            issue = _find_issue(content, issue_id)
            if issue.get("status") == "resolved":
                raise ConflictError("Issue is already resolved", code="issue_resolved")
            current = int(issue.get("escalation_level") or 0)
            level = request.escalation_level or current + 1
            if level < current:
                raise ConflictError(
                    f"Escalation level cannot decrease from {current} to {level}",
                    code="escalation_level_decrease",
                )
            update.clear()
            update.update(
                {
                    "id": new_id("esc"),
                    "timestamp": now,
                    "user": actor.label,
                    "message": request.reason or f"Issue escalated to level {level}",
                    "action": "escalated",
                    "previous_level": current,
                    "new_level": level,
                    "previous_assignee": issue.get("assigned_to"),
                    "new_assignee": request.assign_to,
                }
            )
            issue["escalation_level"] = level
            issue["severity"] = request.severity or issue.get("severity", "medium")
            issue["assigned_to"] = request.assign_to or issue.get("assigned_to")
            issue["status"] = "escalated"
            issue["escalated_at"] = now
            issue["escalated_by"] = actor.label
            issue["updated_at"] = now
            issue.setdefault("updates", []).append(dict(update))
            return issue

        issue = self.session.mutate(
            DocumentKind.ISSUES,
            _escalate,
            lambda issue: commit_message(
                "Issue Escalated",
                f"{issue['title']}: Level {issue['escalation_level']}",
                actor.user_id,
                self.session.clock(),
            ),
        ).value
        recipients = escalation_recipients(issue["escalation_level"])

        outbox = SideEffectOutbox()
        outbox.add(
            "activity",
            lambda: self.activity.record(
                "issue_escalated",
                f"escalation_level_{issue['escalation_level']}",
                actor.label,
                {
                    "issue_id": issue["id"],
                    "issue_title": issue["title"],
                    "previous_level": update["previous_level"],
                    "new_level": issue["escalation_level"],
                    "severity": issue["severity"],
                    "assigned_to": issue["assigned_to"],
                    "notification_recipients": recipients,
                },
                update["message"],
            ),
        )
        outbox.add(
            "webhook:issue.escalated",
            lambda: self.notifier.notify(
                ISSUE_ESCALATED,
                {
                    "issue_id": issue["id"],
                    "pr_id": issue["pr_id"],
                    "escalation_level": issue["escalation_level"],
                    "recipients": recipients,
                },
            ),
        )
        outbox.dispatch()
        return {"issue": issue, "escalation_update": update, "notification_recipients": recipients}

    def resolve_issue(
        self, issue_id: str, payload: dict[str, Any] | None, actor_id: str | None
    ) -> dict[str, Any]:
        request = parse_payload(ResolveIssueRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.ISSUE_REPORT)

        def _resolve(content: dict[str, Any]) -> dict[str, Any]:
            now = self.session.now_iso()
            issue = _find_issue(content, issue_id)
            if issue.get("status") == "resolved":
                raise ConflictError("Issue is already resolved", code="issue_resolved")
            issue["status"] = "resolved"
            issue["resolution"] = request.resolution
            issue["resolved_at"] = now
            issue["resolved_by"] = actor.label
            issue["updated_at"] = now
            issue.setdefault("updates", []).append(
                {
                    "id": new_id("upd"),
                    "timestamp": now,
                    "user": actor.label,
                    "message": request.resolution or "Issue resolved",
                    "action": "resolved",
                }
            )
            return issue

        issue = self.session.mutate(
            DocumentKind.ISSUES,
            _resolve,
            lambda issue: commit_message(
                "Issue Resolved", issue["title"], actor.user_id, self.session.clock()
            ),
        ).value
        self.activity.record(
            "issue_resolved",
            "resolved",
            actor.label,
            {"issue_id": issue["id"], "issue_title": issue["title"]},
            f"{actor.label} resolved issue: {issue['title']}",
        )
        return issue


def blocking_issue(
    assignment: dict[str, Any], reason: dict[str, Any], actor: Actor, now: str
) -> dict[str, Any]:
    return build_issue(
        pr_id=assignment["pr_id"],
        title=reason.get("title") or f"Test blocked: {assignment.get('test_name', '')}",
        reported_by=actor.label,
        now=now,
        test_case_id=assignment.get("test_case_id"),
        test_name=assignment.get("test_name", ""),
        description=reason.get("description") or "Test execution blocked",
        severity=reason.get("severity") or "medium",
        issue_type=reason.get("type") or "technical",
        note="Issue reported due to test blocking",
    )
