from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

import pytest

from qa_portal.server.app import ServerApp
from qa_portal.shared.settings import PortalSettings
from qa_portal.store.document_store_inmemory import InMemoryDocumentStore
from qa_portal.store.retry import RetryPolicy

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

USERS: list[dict[str, Any]] = [
    {
        "id": "u_alice",
        "username": "alice",
        "display_name": "Alice QA",
        "email": "alice@example.com",
        "role": "qa_engineer",
        "team": "qa",
        "current_assignments": 2,
        "max_concurrent_assignments": 3,
    },
    {
        "id": "u_bob",
        "username": "bob",
        "display_name": "Bob QA",
        "email": "bob@example.com",
        "role": "qa_engineer",
        "team": "qa",
        "current_assignments": 0,
        "max_concurrent_assignments": 3,
    },
    {
        "id": "u_sam",
        "username": "sam",
        "display_name": "Sam Senior",
        "email": "sam@example.com",
        "role": "senior_qa_engineer",
        "team": "qa",
        "current_assignments": 0,
    },
    {
        "id": "u_dev",
        "username": "dana",
        "display_name": "Dana Dev",
        "email": "dana@example.com",
        "role": "developer",
        "team": "web",
    },
    {
        "id": "u_lee",
        "username": "lee",
        "display_name": "Lee Dev",
        "email": "lee@example.com",
        "role": "developer",
        "team": "web",
    },
    {
        "id": "u_root",
        "username": "root",
        "display_name": "Portal Admin",
        "email": "root@example.com",
        "role": "admin",
    },
]

TEST_CASES: list[dict[str, Any]] = [
    {
        "id": "tc_login",
        "name": "Login works",
        "intent": "e2e",
        "tags": ["auth"],
        "expected_duration": 3000,
        "created_by": "dana",
        "bdd_steps": [
            {"type": "given", "text": "a registered user", "formatted": "Given a registered user"},
            {"type": "when", "text": "they log in", "formatted": "When they log in"},
            {"type": "then", "text": "the dashboard loads", "formatted": "Then the dashboard loads"},
        ],
    },
    {"id": "tc_logout", "name": "Logout works", "intent": "smoke", "tags": ["auth"]},
]


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event: str, data: dict[str, Any]) -> list[dict[str, Any]]:
        self.events.append((event, data))
        return []

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


def seeded_store(settings: PortalSettings | None = None) -> InMemoryDocumentStore:
    resolved = settings or PortalSettings()
    return InMemoryDocumentStore(
        {
            resolved.document_path("users"): {
                "items": copy.deepcopy(USERS),
                "metadata": {"totalCount": len(USERS)},
            },
            resolved.document_path("test-cases"): {
                "items": copy.deepcopy(TEST_CASES),
                "metadata": {"totalCount": len(TEST_CASES), "tags": ["auth"]},
            },
        }
    )


def no_wait_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay_s=0.0, sleep=lambda _: None)


def user_by_username(store: InMemoryDocumentStore, username: str) -> dict[str, Any]:
    users = store.snapshot("data/users.json")["items"]
    return next(user for user in users if user["username"] == username)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return seeded_store()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def portal(store: InMemoryDocumentStore, notifier: RecordingNotifier) -> ServerApp:
    return ServerApp(
        store=store,
        settings=PortalSettings(),
        notifier=notifier,
        policy=no_wait_policy(),
        clock=lambda: FIXED_NOW,
    )
