from __future__ import annotations

import pytest

from conftest import seeded_store
from qa_portal.errors import AuthenticationRequired, PermissionDenied
from qa_portal.server.documents import DocumentSession
from qa_portal.server.permissions import (
    Actor,
    Capability,
    PermissionEngine,
    Role,
    capabilities_for,
    check_permission,
    public_user_view,
)
from qa_portal.store.document_store_inmemory import InMemoryDocumentStore


def _engine() -> PermissionEngine:
    return PermissionEngine(DocumentSession(seeded_store()))


def test_role_capability_table() -> None:
    qa = capabilities_for(Role.QA_ENGINEER)
    assert Capability.TEST_EXECUTE in qa
    assert Capability.ISSUE_REPORT in qa
    assert Capability.PR_MERGE not in qa
    assert Capability.PR_CREATE not in qa

    senior_qa = capabilities_for(Role.SENIOR_QA_ENGINEER)
    assert {Capability.PR_MERGE, Capability.ISSUE_ESCALATE, Capability.TEST_APPROVE} <= senior_qa

    assert Capability.TEST_ASSIGN in capabilities_for(Role.SENIOR_DEVELOPER)
    assert Capability.TEST_ASSIGN not in capabilities_for(Role.DEVELOPER)
    assert capabilities_for(Role.ADMIN) == frozenset(Capability)


def test_check_permission_requires_an_actor() -> None:
    with pytest.raises(AuthenticationRequired):
        check_permission(None, Capability.TEST_EXECUTE)


def test_check_permission_reports_missing_capability() -> None:
    actor = Actor(user_id="u_dev", username="dana", display_name="Dana Dev", role=Role.DEVELOPER)

    with pytest.raises(PermissionDenied) as excinfo:
        check_permission(actor, Capability.PR_MERGE)

    assert excinfo.value.message == "Permission denied. Required: pr_merge"
    assert excinfo.value.details == {"required": "pr_merge", "role": "developer"}


def test_resolve_accepts_id_or_username() -> None:
    engine = _engine()

    by_id = engine.resolve("u_sam")
    by_name = engine.resolve("sam")

    assert by_id == by_name
    assert by_id.role is Role.SENIOR_QA_ENGINEER
    assert by_id.label == "Sam Senior"
    assert by_id.can_override
    assert by_id.matches("sam") and by_id.matches("u_sam")
    assert not engine.resolve("alice").can_override


@pytest.mark.parametrize(
    ("actor_id", "code"),
    [(None, "authentication_required"), ("   ", "authentication_required"), ("mallory", "unknown_user")],
)
def test_resolve_rejects_missing_or_unknown_actors(actor_id: str | None, code: str) -> None:
    with pytest.raises(AuthenticationRequired) as excinfo:
        _engine().resolve(actor_id)
    assert excinfo.value.code == code


def test_resolve_without_users_document() -> None:
    engine = PermissionEngine(DocumentSession(InMemoryDocumentStore()))
    with pytest.raises(AuthenticationRequired) as excinfo:
        engine.resolve("alice")
    assert excinfo.value.code == "users_unavailable"


def test_resolve_rejects_unknown_role() -> None:
    store = InMemoryDocumentStore(
        {"data/users.json": {"items": [{"id": "u_x", "username": "x", "role": "intern"}], "metadata": {}}}
    )
    with pytest.raises(AuthenticationRequired) as excinfo:
        PermissionEngine(DocumentSession(store)).resolve("x")
    assert excinfo.value.code == "unknown_role"


def test_authorize_checks_capability_of_resolved_actor() -> None:
    engine = _engine()

    assert engine.authorize("u_dev", Capability.PR_CREATE).username == "dana"
    with pytest.raises(PermissionDenied):
        engine.authorize("alice", Capability.PR_CREATE)


def test_public_user_view_drops_private_fields() -> None:
    user = {
        "id": "u_alice",
        "username": "alice",
        "display_name": "Alice QA",
        "email": "alice@example.com",
        "role": "qa_engineer",
        "current_assignments": 2,
    }
    assert public_user_view(user) == {
        "id": "u_alice",
        "username": "alice",
        "display_name": "Alice QA",
        "role": "qa_engineer",
    }
