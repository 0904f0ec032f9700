"""Role-based capability checks and actor resolution from the users document."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from qa_portal.errors import AuthenticationRequired, NotFoundError, PermissionDenied
from qa_portal.server.documents import DocumentSession
from qa_portal.store.document_store import DocumentKind


class Role(str, Enum):
    QA_ENGINEER = "qa_engineer"
    SENIOR_QA_ENGINEER = "senior_qa_engineer"
    DEVELOPER = "developer"
    SENIOR_DEVELOPER = "senior_developer"
    UI_DEVELOPER = "ui_developer"
    ADMIN = "admin"


class Capability(str, Enum):
    TEST_EXECUTE = "test_execute"
    TEST_ASSIGN = "test_assign"
    TEST_CREATE = "test_create"
    TEST_APPROVE = "test_approve"
    ISSUE_REPORT = "issue_report"
    ISSUE_ESCALATE = "issue_escalate"
    TRACE_UPLOAD = "trace_upload"
    TEAM_MANAGE = "team_manage"
    PR_CREATE = "pr_create"
    PR_MERGE = "pr_merge"


_QA = frozenset(
    {
        Capability.TEST_EXECUTE,
        Capability.TEST_ASSIGN,
        Capability.ISSUE_REPORT,
        Capability.TRACE_UPLOAD,
    }
)
_DEV = frozenset({Capability.PR_CREATE, Capability.TEST_CREATE, Capability.TRACE_UPLOAD})

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.QA_ENGINEER: _QA,
    Role.SENIOR_QA_ENGINEER: _QA
    | {
        Capability.TEST_APPROVE,
        Capability.TEAM_MANAGE,
        Capability.PR_MERGE,
        Capability.ISSUE_ESCALATE,
    },
    Role.DEVELOPER: _DEV,
    Role.UI_DEVELOPER: _DEV,
    Role.SENIOR_DEVELOPER: _DEV | {Capability.TEST_ASSIGN},
    Role.ADMIN: frozenset(Capability),
}

# May act on assignments and test cases owned by someone else.
OVERRIDE_ROLES = frozenset({Role.SENIOR_QA_ENGINEER, Role.ADMIN})

PUBLIC_USER_FIELDS = ("id", "username", "display_name", "role", "team", "specialties", "status")


@dataclass(frozen=True)
class Actor:
    user_id: str
    username: str
    display_name: str
    role: Role

    @property
    def label(self) -> str:
        return self.display_name or self.username

    @property
    def can_override(self) -> bool:
        return self.role in OVERRIDE_ROLES

    def matches(self, identity: str | None) -> bool:
        return bool(identity) and identity in {self.user_id, self.username}


def capabilities_for(role: Role) -> frozenset[Capability]:
    return ROLE_CAPABILITIES[role]


def check_permission(actor: Actor | None, capability: Capability) -> None:
    if actor is None:
        raise AuthenticationRequired("User authentication required")
    if capability not in ROLE_CAPABILITIES[actor.role]:
        raise PermissionDenied(
            f"Permission denied. Required: {capability.value}",
            details={"required": capability.value, "role": actor.role.value},
        )


def find_user(users: list[dict[str, Any]], identity: str) -> dict[str, Any] | None:
    for user in users:
        if identity and identity in {user.get("id"), user.get("username")}:
            return user
    return None


def actor_from_user(user: dict[str, Any]) -> Actor:
    try:
        role = Role(str(user.get("role") or ""))
    except ValueError as exc:
        raise AuthenticationRequired(
            "User has no resolvable role", code="unknown_role"
        ) from exc
    return Actor(
        user_id=str(user.get("id") or user.get("username") or ""),
        username=str(user.get("username") or user.get("id") or ""),
        display_name=str(user.get("display_name") or ""),
        role=role,
    )


class PermissionEngine:
    def __init__(self, session: DocumentSession) -> None:
        self.session = session

    def resolve(self, actor_id: str | None) -> Actor:
        identity = (actor_id or "").strip()
        if not identity:
            raise AuthenticationRequired("User authentication required")
        try:
            users = self.session.items(DocumentKind.USERS)
        except NotFoundError as exc:
            raise AuthenticationRequired(
                "Failed to authenticate user", code="users_unavailable"
            ) from exc
        user = find_user(users, identity)
        if user is None:
            raise AuthenticationRequired("Failed to authenticate user", code="unknown_user")
        return actor_from_user(user)

    def authorize(self, actor_id: str | None, capability: Capability) -> Actor:
        actor = self.resolve(actor_id)
        check_permission(actor, capability)
        return actor


def public_user_view(user: dict[str, Any]) -> dict[str, Any]:
    return {key: user[key] for key in PUBLIC_USER_FIELDS if key in user}
