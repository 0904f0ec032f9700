"""Shared runtime settings for the document backend, retries, and notifications."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PortalSettings:
    """Backend location and tuning knobs read from the environment."""

    store: str = "in_memory"
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    data_prefix: str = "data"
    retry_attempts: int = 3
    retry_base_delay_s: float = 1.0
    activity_cap: int = 100
    webhook_urls: tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"
    log_format: str = "readable"
    github_read_token: str | None = field(default=None, repr=False)
    github_write_token: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "PortalSettings":
        source = os.environ if env is None else env
        webhook_urls = tuple(
            url.strip()
            for url in (source.get("QA_PORTAL_WEBHOOK_URLS") or "").split(",")
            if url.strip()
        )
        shared_token = _token(source.get("QA_PORTAL_GITHUB_TOKEN") or source.get("GITHUB_TOKEN"))
        return cls(
            store=(source.get("QA_PORTAL_STORE") or "in_memory").strip().lower(),
            owner=(source.get("GITHUB_OWNER") or "").strip(),
            repo=(source.get("GITHUB_REPO") or "").strip(),
            branch=(source.get("GITHUB_BRANCH") or "main").strip(),
            data_prefix=(source.get("QA_PORTAL_DATA_PREFIX") or "data").strip("/ "),
            retry_attempts=max(1, int(source.get("QA_PORTAL_RETRY_ATTEMPTS", 3))),
            retry_base_delay_s=max(0.0, float(source.get("QA_PORTAL_RETRY_BASE_DELAY_S", 1.0))),
            activity_cap=max(1, int(source.get("QA_PORTAL_ACTIVITY_CAP", 100))),
            webhook_urls=webhook_urls,
            log_level=(source.get("QA_PORTAL_LOG_LEVEL") or "INFO").strip().upper(),
            log_format=(source.get("QA_PORTAL_LOG_FORMAT") or "readable").strip().lower(),
            github_read_token=_token(source.get("QA_PORTAL_GITHUB_READ_TOKEN")) or shared_token,
            github_write_token=_token(source.get("QA_PORTAL_GITHUB_WRITE_TOKEN")) or shared_token,
        )

    def document_path(self, name: str) -> str:
        if not self.data_prefix:
            return f"{name}.json"
        return f"{self.data_prefix}/{name}.json"

    def masked_tokens(self) -> dict[str, str]:
        """Backend tokens safe to print: ``unset``, ``***``, or first and last four characters."""
        return {
            "read": _mask(self.github_read_token),
            "write": _mask(self.github_write_token),
        }


def _token(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _mask(token: str | None) -> str:
    if token is None:
        return "unset"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
