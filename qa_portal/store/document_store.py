"""Versioned JSON document contracts, named documents, and factory helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from qa_portal.shared.settings import PortalSettings


class DocumentKind(str, Enum):
    PRS = "prs"
    TEST_CASES = "test-cases"
    TEST_RESULTS = "test-results"
    ASSIGNMENTS = "test-assignments"
    USERS = "users"
    ISSUES = "issues"
    ACTIVITY = "activity"


@dataclass(frozen=True)
class StoredDocument:
    content: dict[str, Any]
    version: str


class DocumentStore(Protocol):
    """Whole-document compare-and-swap contract shared by every backend."""

    def read(self, path: str) -> StoredDocument: ...

    def write(
        self,
        path: str,
        content: dict[str, Any],
        message: str,
        expected_version: str | None = None,
    ) -> str: ...


def empty_document(**extra: Any) -> dict[str, Any]:
    return {
        "items": [],
        "metadata": {"lastUpdated": utc_now_iso(), "totalCount": 0, **extra},
    }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def commit_message(action: str, details: str, actor: str, now: datetime | None = None) -> str:
    day = (now or utc_now()).date().isoformat()
    return f"QA Portal: {action} - {details} (by {actor}) [{day}]"


def build_store_from_env(settings: PortalSettings | None = None) -> DocumentStore:
    resolved = settings or PortalSettings.from_env()
    if resolved.store == "github":
        from qa_portal.store.github_api import GitHubContentsStore

        return GitHubContentsStore(
            owner=resolved.owner,
            repo=resolved.repo,
            branch=resolved.branch,
            read_token=resolved.github_read_token,
            write_token=resolved.github_write_token,
        )

    from qa_portal.store.document_store_inmemory import InMemoryDocumentStore

    return InMemoryDocumentStore()


__all__ = [
    "DocumentKind",
    "DocumentStore",
    "StoredDocument",
    "build_store_from_env",
    "commit_message",
    "empty_document",
    "utc_now",
    "utc_now_iso",
]
