"""Per-user workload counters kept on the users document."""

from __future__ import annotations

import logging
from typing import Any

from qa_portal.errors import CapacityExceeded, NotFoundError
from qa_portal.server.documents import DocumentSession, new_id
from qa_portal.server.models import ASSIGNMENT_TERMINAL_STATUSES
from qa_portal.server.permissions import find_user
from qa_portal.store.document_store import DocumentKind, commit_message

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_ASSIGNMENTS = 5


def user_label(user: dict[str, Any]) -> str:
    return str(user.get("display_name") or user.get("username") or user.get("id") or "")


def capacity_of(user: dict[str, Any]) -> tuple[int, int]:
    current = int(user.get("current_assignments") or 0)
    limit = user.get("max_concurrent_assignments")
    return current, DEFAULT_MAX_CONCURRENT_ASSIGNMENTS if limit is None else int(limit)


def lookup_user(session: DocumentSession, identity: str) -> dict[str, Any]:
    user = find_user(session.items(DocumentKind.USERS), identity)
    if user is None:
        raise NotFoundError(f"User {identity} not found", code="user_not_found")
    return user


class WorkloadLedger:
    """Reserve and release assignment slots with a CAS unit on the users document."""

    def __init__(self, session: DocumentSession) -> None:
        self.session = session

    def reserve(self, identity: str, actor_id: str) -> dict[str, Any]:
        now = self.session.clock()

        def _reserve(content: dict[str, Any]) -> dict[str, Any]:
            user = find_user(content["items"], identity)
            if user is None:
                raise NotFoundError(f"User {identity} not found", code="user_not_found")
            current, limit = capacity_of(user)
            if current >= limit:
                raise CapacityExceeded(
                    f"User {user_label(user)} is at maximum capacity ({limit} assignments)",
                    details={
                        "user": user.get("username") or identity,
                        "current_assignments": current,
                        "max_concurrent_assignments": limit,
                    },
                )
            user["current_assignments"] = current + 1
            user["last_active"] = now.isoformat()
            return dict(user)

        return self.session.mutate(
            DocumentKind.USERS,
            _reserve,
            lambda user: commit_message(
                "Workload Reserved",
                f"{user_label(user)} now at {user['current_assignments']} assignments",
                actor_id,
                now,
            ),
        ).value

    def release(self, identity: str, actor_id: str) -> dict[str, Any] | None:
        """Give one slot back, never dropping below zero. Unknown users are a no-op."""
        now = self.session.clock()

        def _release(content: dict[str, Any]) -> dict[str, Any] | None:
            user = find_user(content["items"], identity)
            if user is None:
                return None
            current, _ = capacity_of(user)
            user["current_assignments"] = max(0, current - 1)
            return dict(user)

        result = self.session.mutate(
            DocumentKind.USERS,
            _release,
            lambda user: commit_message(
                "Workload Released",
                f"{user_label(user) if user else identity} assignment count updated",
                actor_id,
                now,
            ),
        )
        if result.value is None:
            logger.warning("workload release skipped, user %s not found", identity)
        return result.value


def close_assignments_for_pr(
    session: DocumentSession, pr_id: str, pr_name: str, actor_id: str
) -> list[dict[str, Any]]:
    """Mark every active assignment of a merged PR completed; returns the closed ones."""
    now = session.now_iso()

    def _close(content: dict[str, Any]) -> list[dict[str, Any]]:
        closed = []
        for assignment in content["items"]:
            if assignment.get("pr_id") != pr_id:
                continue
            if assignment.get("status") in ASSIGNMENT_TERMINAL_STATUSES:
                continue
            assignment["status"] = "completed"
            assignment["completed_at"] = now
            assignment["updated_at"] = now
            assignment["progress"] = 100
            assignment.setdefault("progress_updates", []).append(
                {
                    "id": new_id("upd"),
                    "timestamp": now,
                    "message": "Auto-completed after PR merge",
                    "progress": 100,
                    "user": actor_id,
                    "action": "complete",
                }
            )
            closed.append(dict(assignment))
        return closed

    return session.mutate(
        DocumentKind.ASSIGNMENTS,
        _close,
        f"Auto-completed assignments for merged PR: {pr_name}",
        create_if_missing=True,
    ).value
