"""Outbound webhook delivery for lifecycle events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import requests

from qa_portal.store.document_store import utc_now_iso

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "qa-tracking-portal"
WEBHOOK_USER_AGENT = "QA-Portal-Webhook/1.0"

PR_CREATED = "pr.created"
PR_UPDATED = "pr.updated"
PR_STATUS_CHANGED = "pr.status_changed"
QA_TESTS_MERGED = "qa.tests_merged"
DEV_PR_MERGED = "dev.pr_merged"
TEST_CASE_CREATED = "test_case.created"
TEST_CASE_UPDATED = "test_case.updated"
TEST_RESULT_CHANGED = "test.result_changed"
TEST_FAILED = "test.failed"
PR_BLOCKED = "pr.blocked"
PR_UNBLOCKED = "pr.unblocked"
ISSUE_ESCALATED = "issue.escalated"

WEBHOOK_EVENTS = frozenset(
    {
        PR_CREATED,
        PR_UPDATED,
        PR_STATUS_CHANGED,
        QA_TESTS_MERGED,
        DEV_PR_MERGED,
        TEST_CASE_CREATED,
        TEST_CASE_UPDATED,
        TEST_RESULT_CHANGED,
        TEST_FAILED,
        PR_BLOCKED,
        PR_UNBLOCKED,
        ISSUE_ESCALATED,
    }
)


class Notifier(Protocol):
    def notify(self, event: str, data: dict[str, Any]) -> list[dict[str, Any]]: ...


def webhook_payload(event: str, data: dict[str, Any], timestamp: str = "") -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": timestamp or utc_now_iso(),
        "source": WEBHOOK_SOURCE,
        "data": data,
    }


class WebhookNotifier:
    """Fire-and-forget POST of event payloads to every configured endpoint."""

    def __init__(
        self,
        urls: tuple[str, ...] | list[str] = (),
        session: requests.Session | None = None,
        timeout_s: float = 5.0,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.urls = tuple(url for url in urls if url)
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.clock = clock

    def notify(self, event: str, data: dict[str, Any]) -> list[dict[str, Any]]:
        if event not in WEBHOOK_EVENTS:
            logger.warning("dropping unknown webhook event %s", event)
            return []
        if not self.urls:
            logger.debug("no webhooks configured for %s", event)
            return []

        payload = webhook_payload(event, data, timestamp=self.clock())
        return [self._deliver(url, payload) for url in self.urls]

    def _deliver(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.request(
                method="POST",
                url=url,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": WEBHOOK_USER_AGENT,
                },
                json=payload,
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(
                "webhook delivery of %s to %s failed: %s",
                payload["event"],
                url,
                exc,
                extra={"event": payload["event"]},
            )
            return {"url": url, "delivered": False, "error": str(exc)}
        logger.info("webhook %s delivered to %s", payload["event"], url)
        return {"url": url, "delivered": True, "status_code": response.status_code}


class NullNotifier:
    def notify(self, event: str, data: dict[str, Any]) -> list[dict[str, Any]]:
        return []
