"""compliance-rt CLI — run the realtime service and poke at a running one.

Usage:
    compliance-rt serve                                   # Run the API + WebSocket server
    compliance-rt status                                  # Connections, projects, feed health
    compliance-rt connections proj-1                      # Who is subscribed to a project
    compliance-rt broadcast "Maintenance in 5 minutes"    # Status message to everyone
    compliance-rt broadcast "Rescored" -p proj-1          # Status message to one project
    compliance-rt push metrics proj-1 '{"score": 87}'     # Typed update to one project
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:3004"


def _api_url() -> str:
    return os.environ.get("COMPLIANCE_RT_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the realtime service."""
    headers = {}
    token = os.environ.get("COMPLIANCE_RT_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=10.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler."""
    return asyncio.run(coro)


def _fail(resp: httpx.Response) -> None:
    click.secho(f"Error {resp.status_code}: {resp.text}", fg="red", err=True)
    sys.exit(1)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) or "—")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


_FEED_COLORS = {
    "running": "green",
    "starting": "yellow",
    "degraded": "red",
    "stopped": "red",
}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="compliance-rt")
def main():
    """compliance-rt — real-time compliance update service."""


@main.command()
@click.option("--host", default=None, help="Bind address (default: COMPLIANCE_RT_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: COMPLIANCE_RT_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes (development)")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the HTTP API and WebSocket endpoint."""
    import uvicorn

    from compliance_realtime.config import settings

    uvicorn.run(
        "compliance_realtime.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def status(as_json: bool):
    """Show connection counts and change-feed health."""
    _run(_status_impl(as_json))


async def _status_impl(as_json: bool):
    async with _client() as c:
        r = await c.get("/api/v1/realtime/stats")
    if r.status_code != 200:
        _fail(r)
    stats = r.json()

    if as_json:
        click.echo(json.dumps(stats, indent=2))
        return

    state = click.style("degraded", fg="red") if stats["degraded"] else click.style("ok", fg="green")
    click.echo(f"Gateway: {state}  accepting={stats['accepting']}")
    click.echo(f"Connections: {stats['connections']}")

    if stats["projects"]:
        click.echo()
        rows = [{"project": p, "count": n} for p, n in sorted(stats["projects"].items())]
        _print_table(rows, [("PROJECT", "project", 36), ("CONNECTIONS", "count", 11)])

    if stats["feeds"]:
        click.echo()
        click.secho("Feeds", bold=True)
        for source, feed in stats["feeds"].items():
            color = _FEED_COLORS.get(feed["state"], "white")
            line = f"  {source:<14} {click.style(feed['state'], fg=color)}  events={feed['events']}"
            if feed.get("last_error"):
                line += f"  last_error={feed['last_error']}"
            click.echo(line)


@main.command()
@click.argument("project_id")
def connections(project_id: str):
    """List connections subscribed to PROJECT_ID."""
    _run(_connections_impl(project_id))


async def _connections_impl(project_id: str):
    async with _client() as c:
        r = await c.get(f"/api/v1/realtime/projects/{project_id}/connections")
    if r.status_code != 200:
        _fail(r)
    rows = r.json()
    if not rows:
        click.echo(f"No connections for project {project_id}")
        return
    _print_table(
        rows,
        [
            ("ID", "id", 38),
            ("USER", "user_id", 20),
            ("ALIVE", "is_alive", 6),
            ("CONNECTED", "connected_at", 26),
        ],
    )


@main.command()
@click.argument("message")
@click.option("--project-id", "-p", help="Only deliver to this project's subscribers")
def broadcast(message: str, project_id: Optional[str]):
    """Send a STATUS_UPDATE MESSAGE to one project or to every client."""
    _run(_broadcast_impl(message, project_id))


async def _broadcast_impl(message: str, project_id: Optional[str]):
    body = {"message": message}
    if project_id:
        body["projectId"] = project_id
    async with _client() as c:
        r = await c.post("/api/v1/realtime/status", json=body)
    if r.status_code != 202:
        _fail(r)
    click.echo(f"Delivered to {r.json()['delivered']} connection(s)")


@main.command()
@click.argument("kind", type=click.Choice(["metrics", "issues", "quality"]))
@click.argument("project_id")
@click.argument("data", default="{}")
def push(kind: str, project_id: str, data: str):
    """Send a typed update (KIND) with JSON DATA to PROJECT_ID's subscribers."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"DATA must be JSON: {e}")
    if not isinstance(payload, dict):
        raise click.BadParameter("DATA must be a JSON object")
    _run(_push_impl(kind, project_id, payload))


async def _push_impl(kind: str, project_id: str, payload: dict):
    async with _client() as c:
        r = await c.post(
            f"/api/v1/realtime/projects/{project_id}/{kind}",
            json={"data": payload},
        )
    if r.status_code != 202:
        _fail(r)
    click.echo(f"Delivered to {r.json()['delivered']} connection(s)")


if __name__ == "__main__":
    main()
