"""In-memory document store for deterministic tests and local runs."""

from __future__ import annotations

import copy
import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any

from qa_portal.errors import NotFoundError, VersionConflict
from qa_portal.store.document_store import StoredDocument


@dataclass(frozen=True)
class RecordedWrite:
    path: str
    message: str
    expected_version: str | None
    new_version: str


class InMemoryDocumentStore:
    """Same CAS contract as the GitHub backend, held in a dict."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, tuple[str, str]] = {}
        self._revision = 0
        self._injected_conflicts: dict[str, int] = {}
        self.writes: list[RecordedWrite] = []
        for path, content in (documents or {}).items():
            self._documents[path] = (json.dumps(content), self._next_version(path))

    def _next_version(self, path: str) -> str:
        self._revision += 1
        return hashlib.sha1(f"{path}:{self._revision}".encode()).hexdigest()

    def inject_conflicts(self, path: str, count: int = 1) -> None:
        """Make the next ``count`` writes to ``path`` fail as if another writer won."""
        with self._lock:
            self._injected_conflicts[path] = self._injected_conflicts.get(path, 0) + count

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._documents

    def snapshot(self, path: str) -> dict[str, Any]:
        return copy.deepcopy(self.read(path).content)

    def read(self, path: str) -> StoredDocument:
        with self._lock:
            stored = self._documents.get(path)
        if stored is None:
            raise NotFoundError(f"Document not found: {path}", code="document_not_found")
        body, version = stored
        return StoredDocument(content=json.loads(body), version=version)

    def write(
        self,
        path: str,
        content: dict[str, Any],
        message: str,
        expected_version: str | None = None,
    ) -> str:
        body = json.dumps(content)
        with self._lock:
            pending = self._injected_conflicts.get(path, 0)
            if pending:
                self._injected_conflicts[path] = pending - 1
                raise VersionConflict(
                    f"Document {path} changed since it was read",
                    details={"path": path, "expected_version": expected_version},
                )
            current = self._documents.get(path)
            current_version = current[1] if current else None
            if current_version != expected_version:
                raise VersionConflict(
                    f"Document {path} changed since it was read",
                    details={"path": path, "expected_version": expected_version},
                )
            new_version = self._next_version(path)
            self._documents[path] = (body, new_version)
            self.writes.append(
                RecordedWrite(
                    path=path,
                    message=message,
                    expected_version=expected_version,
                    new_version=new_version,
                )
            )
            return new_version
