"""Read-compute-write units over the named JSON documents."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, TypeVar

from qa_portal.errors import NotFoundError
from qa_portal.server.statistics import refresh_document
from qa_portal.shared.settings import PortalSettings
from qa_portal.store.document_store import (
    DocumentKind,
    DocumentStore,
    StoredDocument,
    empty_document,
    utc_now,
)
from qa_portal.store.retry import RetryPolicy, run_with_retry

T = TypeVar("T")

Mutation = Callable[[dict[str, Any]], T]
CommitMessage = str | Callable[[T], str]


@dataclass(frozen=True)
class MutationResult(Generic[T]):
    value: T
    content: dict[str, Any]
    version: str


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def find_item(items: list[dict[str, Any]], item_id: str) -> dict[str, Any] | None:
    for item in items:
        if item.get("id") == item_id:
            return item
    return None


class DocumentSession:
    """Binds a store to document paths, a retry policy, and a clock."""

    def __init__(
        self,
        store: DocumentStore,
        settings: PortalSettings | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or PortalSettings()
        self.policy = policy or RetryPolicy(
            max_attempts=self.settings.retry_attempts,
            base_delay_s=self.settings.retry_base_delay_s,
        )
        self.clock = clock

    def path_for(self, kind: DocumentKind) -> str:
        return self.settings.document_path(kind.value)

    def now_iso(self) -> str:
        return self.clock().isoformat()

    def read(self, kind: DocumentKind) -> StoredDocument:
        return self.store.read(self.path_for(kind))

    def items(self, kind: DocumentKind, missing_ok: bool = False) -> list[dict[str, Any]]:
        try:
            return list(self.read(kind).content.get("items", []))
        except NotFoundError:
            if missing_ok:
                return []
            raise

    def mutate(
        self,
        kind: DocumentKind,
        mutate: Mutation[T],
        message: CommitMessage[T],
        *,
        create_if_missing: bool = False,
        policy: RetryPolicy | None = None,
    ) -> MutationResult[T]:
        """Apply ``mutate`` to a fresh snapshot and CAS-write it, retrying on conflicts.

        ``mutate`` runs once per attempt against the snapshot just read, so it
        must derive everything from its argument. Exceptions it raises abort
        the unit before anything is written.
        """
        path = self.path_for(kind)

        def unit() -> MutationResult[T]:
            try:
                stored = self.store.read(path)
                content, version = stored.content, stored.version
            except NotFoundError:
                if not create_if_missing:
                    raise
                content, version = empty_document(), None
            content.setdefault("items", [])
            content.setdefault("metadata", {})

            value = mutate(content)
            refresh_document(kind, content, self.clock())
            text = message(value) if callable(message) else message
            new_version = self.store.write(path, content, text, expected_version=version)
            return MutationResult(value=value, content=content, version=new_version)

        return run_with_retry(unit, policy or self.policy, label=path)
