"""One-way import of pull-request metadata from the tracked repository."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from qa_portal.errors import InternalError
from qa_portal.server.activity import ActivityLog
from qa_portal.server.documents import DocumentSession
from qa_portal.server.models import (
    PR_TERMINAL_STATUSES,
    CreatePRRequest,
    SyncPullRequestsRequest,
    parse_payload,
)
from qa_portal.server.permissions import Actor, Capability, PermissionEngine
from qa_portal.server.pr_lifecycle import new_pull_request, recompute_merge_readiness
from qa_portal.store.document_store import DocumentKind

logger = logging.getLogger(__name__)


class PullRequestSource(Protocol):
    def list_pull_requests(self, state: str = "open", per_page: int = 50) -> list[dict[str, Any]]: ...


def upstream_fields(remote: dict[str, Any]) -> dict[str, Any]:
    number = remote.get("number")
    return {
        "name": str(remote.get("title") or f"PR #{number}"),
        "developer": str((remote.get("user") or {}).get("login") or "unknown"),
        "description": str(remote.get("body") or ""),
        "branch": str((remote.get("head") or {}).get("ref") or ""),
        "github_number": number,
        "github_url": remote.get("html_url"),
        "github_state": "merged" if remote.get("merged_at") else remote.get("state", "open"),
        "github_updated_at": remote.get("updated_at"),
    }


def import_pull_request(remote: dict[str, Any], actor: Actor, now: str) -> dict[str, Any]:
    fields = upstream_fields(remote)
    pr = new_pull_request(
        CreatePRRequest(
            name=fields["name"],
            developer=fields["developer"],
            description=fields["description"],
            branch=fields["branch"],
        ),
        actor,
        now,
    )
    pr.update(fields)
    pr["id"] = f"gh_pr_{fields['github_number']}"
    pr["source"] = "github"
    return pr


def _close_if_upstream_closed(pr: dict[str, Any], now: str) -> None:
    if pr.get("github_state") in {"closed", "merged"} and pr["status"] not in PR_TERMINAL_STATUSES:
        pr["status"] = "closed"
        pr["status_changed_at"] = now
        recompute_merge_readiness(pr)


class PullRequestSync:
    def __init__(
        self,
        session: DocumentSession,
        permissions: PermissionEngine,
        activity: ActivityLog,
        source: PullRequestSource | None = None,
    ) -> None:
        self.session = session
        self.permissions = permissions
        self.activity = activity
        self.source = source

    def sync(self, payload: dict[str, Any] | None, actor_id: str | None) -> dict[str, Any]:
        request = parse_payload(SyncPullRequestsRequest, payload)
        actor = self.permissions.authorize(actor_id, Capability.PR_CREATE)
        if self.source is None:
            raise InternalError(
                "No pull request source is configured", code="sync_source_unavailable"
            )

        remote_prs = self.source.list_pull_requests(state=request.state, per_page=request.per_page)
        logger.info(
            "fetched %d pull requests (state=%s, mode=%s)",
            len(remote_prs),
            request.state,
            request.sync_mode,
        )
        def _sync(content: dict[str, Any]) -> dict[str, Any]:
            now = self.session.now_iso()
            existing = {
                pr.get("github_number"): pr
                for pr in content["items"]
                if pr.get("github_number") is not None
            }
            synced: list[dict[str, Any]] = []
            seen: set[str] = set()
            counts = {"added": 0, "updated": 0, "skipped": 0, "errors": []}

            for remote in remote_prs:
                number = remote.get("number")
                if number is None:
                    counts["errors"].append({"pr_title": remote.get("title"), "error": "missing number"})
                    continue
                current = existing.get(number)
                if current is not None and request.sync_mode == "merge":
                    pr = dict(current)
                    pr.update(upstream_fields(remote))
                    pr["updated_at"] = now
                    counts["updated"] += 1
                else:
                    pr = import_pull_request(remote, actor, now)
                    if current is not None:
                        pr["id"] = current["id"]
                        pr["created_at"] = current.get("created_at", now)
                        counts["updated"] += 1
                    else:
                        counts["added"] += 1
                _close_if_upstream_closed(pr, now)
                synced.append(pr)
                seen.add(pr["id"])

            if request.sync_mode == "merge":
                for pr in content["items"]:
                    if pr["id"] not in seen:
                        synced.append(pr)
                        counts["skipped"] += 1

            content["items"] = synced
            content["metadata"]["lastGitHubSync"] = now
            content["metadata"]["syncResults"] = counts
            return counts

        written = self.session.mutate(
            DocumentKind.PRS,
            _sync,
            lambda counts: (
                f"GitHub PR Sync: {counts['added']} added, {counts['updated']} updated "
                f"({actor.user_id})"
            ),
            create_if_missing=True,
        )
        results = written.value
        self.activity.record(
            "github_sync",
            "prs_synced",
            actor.label,
            {"sync_results": results, "state": request.state, "pr_count": len(remote_prs)},
            f"GitHub PRs synced: {results['added']} added, {results['updated']} updated",
        )
        return {
            "sync_results": results,
            "total_prs": len(written.content["items"]),
            "github_prs_fetched": len(remote_prs),
        }
