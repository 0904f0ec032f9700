"""qa-portal operator CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from qa_portal.errors import NotFoundError, PortalError
from qa_portal.server.documents import DocumentSession
from qa_portal.shared.logging_config import configure_logging
from qa_portal.shared.settings import PortalSettings
from qa_portal.store.document_store import DocumentKind, build_store_from_env, commit_message

app = typer.Typer(add_completion=False, help="qa-portal: QA workflow tracking over a document store")

CLI_ACTOR = "qa-portal-cli"


def _session() -> DocumentSession:
    settings = PortalSettings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    return DocumentSession(build_store_from_env(settings), settings)


def _parse_kind(value: str) -> DocumentKind:
    try:
        return DocumentKind(value)
    except ValueError as exc:
        choices = ", ".join(kind.value for kind in DocumentKind)
        raise typer.BadParameter(f"unknown document {value!r}; expected one of: {choices}") from exc


def _load_seed(path: Path) -> dict[str, list[dict[str, Any]]]:
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter("seed file must be a mapping of document name to items")
    seed: dict[str, list[dict[str, Any]]] = {}
    for name, items in data.items():
        _parse_kind(str(name))
        if not isinstance(items, list):
            raise typer.BadParameter(f"seed entry {name!r} must be a list")
        seed[str(name)] = [item for item in items if isinstance(item, dict)]
    return seed


@app.command()
def status() -> None:
    """Print the configured backend and the size of every document."""
    session = _session()
    settings = session.settings
    location = "process memory"
    if settings.store == "github":
        location = f"{settings.owner}/{settings.repo}@{settings.branch}"
    typer.echo(f"store: {settings.store} ({location})")
    if settings.store == "github":
        tokens = settings.masked_tokens()
        typer.echo(f"tokens: read={tokens['read']} write={tokens['write']}")
    for kind in DocumentKind:
        try:
            stored = session.read(kind)
        except NotFoundError:
            typer.echo(f"  {session.path_for(kind)}: missing")
            continue
        typer.echo(
            f"  {session.path_for(kind)}: {len(stored.content.get('items', []))} items "
            f"(version {stored.version[:8]})"
        )


@app.command("init-data")
def init_data(
    seed: Optional[Path] = typer.Option(None, "--seed", exists=True, dir_okay=False),
) -> None:
    """Create any missing documents, optionally filling empty ones from a YAML seed."""
    session = _session()
    seed_items = _load_seed(seed) if seed else {}
    for kind in DocumentKind:
        items = seed_items.get(kind.value, [])

        def _init(content: dict[str, Any], items: list[dict[str, Any]] = items) -> int:
            if content["items"] or not items:
                return 0
            content["items"].extend(items)
            return len(items)

        try:
            result = session.mutate(
                kind,
                _init,
                lambda count, kind=kind: commit_message(
                    "Data Initialized", f"{kind.value} seeded with {count} items", CLI_ACTOR
                ),
                create_if_missing=True,
            )
        except PortalError as exc:
            typer.echo(f"{kind.value}: failed ({exc.code}: {exc.message})", err=True)
            raise typer.Exit(code=1) from exc
        typer.echo(f"{kind.value}: {len(result.content['items'])} items (+{result.value} seeded)")


@app.command()
def show(
    document: str,
    limit: int = typer.Option(0, "--limit", min=0, help="show at most this many items"),
) -> None:
    """Print a document as JSON."""
    session = _session()
    try:
        content = session.read(_parse_kind(document)).content
    except NotFoundError as exc:
        typer.echo(json.dumps({"error": exc.message, "code": exc.code}), err=True)
        raise typer.Exit(code=1) from exc
    if limit:
        content = {**content, "items": content.get("items", [])[:limit]}
    typer.echo(json.dumps(content, indent=2))


@app.command("recompute-stats")
def recompute_stats() -> None:
    """Rewrite every existing document with freshly computed metadata."""
    session = _session()
    for kind in DocumentKind:
        try:
            result = session.mutate(
                kind,
                lambda content: len(content["items"]),
                commit_message("Statistics Recomputed", kind.value, CLI_ACTOR),
            )
        except NotFoundError:
            typer.echo(f"{kind.value}: missing, skipped")
            continue
        typer.echo(f"{kind.value}: {result.value} items")


@app.command()
def serve(
    print_startup: bool = typer.Option(
        False, "--print-startup", help="print the supported uvicorn startup command and exit"
    ),
) -> None:
    """Show how to run the HTTP server."""
    command = "uvicorn qa_portal.server.app:app --host 127.0.0.1 --port 8000"
    if print_startup:
        typer.echo(command)
        return
    typer.echo(f"Run the ASGI app with an ASGI server, for example:\n  {command}")


if __name__ == "__main__":
    app()
