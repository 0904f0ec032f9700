"""Append-only audit trail with bounded retention, written best-effort."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from qa_portal.server.documents import DocumentSession, new_id
from qa_portal.store.document_store import DocumentKind

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_CAP = 100


class ActivityLog:
    def __init__(self, session: DocumentSession, cap: int = DEFAULT_ACTIVITY_CAP) -> None:
        self.session = session
        self.cap = max(1, cap)
        self.policy = dataclasses.replace(session.policy, max_attempts=2)

    def record(
        self,
        activity_type: str,
        action: str,
        actor: str,
        details: dict[str, Any],
        message: str,
    ) -> dict[str, Any] | None:
        """Insert one record at the head of the log; returns None when the write failed."""
        entry = {
            "id": new_id("act"),
            "type": activity_type,
            "action": action,
            "user": actor,
            "timestamp": self.session.now_iso(),
            "details": details,
            "message": message,
        }

        def _prepend(content: dict[str, Any]) -> dict[str, Any]:
            items = content["items"]
            items.insert(0, entry)
            del items[self.cap :]
            return entry

        try:
            self.session.mutate(
                DocumentKind.ACTIVITY,
                _prepend,
                f"Activity: {message}",
                create_if_missing=True,
                policy=self.policy,
            )
        except Exception as exc:
            logger.warning(
                "failed to log activity %s/%s: %s",
                activity_type,
                action,
                exc,
                extra={"actor": actor},
            )
            return None
        return entry

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.session.items(DocumentKind.ACTIVITY, missing_ok=True)[:limit]
