"""Switchboard CLI: inspect queues, drive dispatches, read loop dashboards.

Usage:
    switchboard agents                          # Registered agents
    switchboard queue forge                     # Pending/running work for an agent
    switchboard pending                         # Claimable dispatches, priority order
    switchboard dispatch <agent-id> "run tests" # Queue a dispatch
    switchboard claim 42                        # pending → running
    switchboard complete 42 --result "ok"       # running → completed
    switchboard fail 42 "timeout"               # running → failed (may schedule a retry)
    switchboard retry 42                        # Retry a failed dispatch now
    switchboard lineage 42                      # Original dispatch and its retry clones
    switchboard events forge                    # Pending events for an agent
    switchboard loops                           # Today's loop summary and per-agent breakdown
    switchboard cleanup stuck                   # Fail dispatches stuck in running
    switchboard create-key ops --scope admin    # Mint an API key (direct DB access)

Talks to the API at SWITCHBOARD_API_URL using SWITCHBOARD_API_KEY, except
create-key, which writes to the database directly.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("SWITCHBOARD_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Switchboard API."""
    headers = {}
    api_key = os.environ.get("SWITCHBOARD_API_KEY")
    if api_key:
        headers["X-API-Key"] = api_key
    return httpx.AsyncClient(base_url=f"{_api_url()}/api/v1", headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when a loop is already running (CliRunner inside
    an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) if row.get(k) is not None else "-")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "idle": "green",
        "busy": "yellow",
        "offline": "red",
        "pending": "yellow",
        "running": "cyan",
        "completed": "green",
        "failed": "red",
        "delivered": "green",
        "expired": "red",
    }
    return colors.get(status, "white")


def _check(r: httpx.Response, what: str) -> None:
    """Exit with a readable message on 401/403/404/409, raise on anything else."""
    if r.status_code in (401, 403):
        click.secho("Not authorized. Set SWITCHBOARD_API_KEY.", fg="red", err=True)
        sys.exit(1)
    if r.status_code == 404:
        click.secho(f"{what} not found.", fg="red", err=True)
        sys.exit(1)
    if r.status_code == 409:
        detail = r.json().get("detail", {})
        current = detail.get("status") if isinstance(detail, dict) else None
        msg = f"{what} is {current}." if current else f"{what}: conflict."
        click.secho(msg, fg="yellow", err=True)
        sys.exit(1)
    r.raise_for_status()


def _echo_dispatch(d: dict) -> None:
    status_str = click.style(d["status"], fg=_status_color(d["status"]))
    label = d.get("ticket_identifier") or d["command"]
    click.echo(f"  #{d['id']}  {status_str}  {label}  agent={d.get('agent_name') or d['agent_id']}")
    if d.get("error"):
        click.echo(f"    error: {d['error']}")
    if d.get("next_retry_at"):
        click.echo(f"    retry {d['retry_count'] + 1}/{d['max_retries']} at {d['next_retry_at']}")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="switchboard")
def main():
    """Switchboard: dispatch queue and loop accounting for agent fleets."""


# ---------------------------------------------------------------------------
# Agents and queues
# ---------------------------------------------------------------------------


@main.command()
def agents():
    """List registered agents."""
    _run(_agents_impl())


async def _agents_impl():
    async with _client() as c:
        r = await c.get("/agents")
        _check(r, "Agents")
        rows = r.json()

    if not rows:
        click.echo("No agents registered.")
        return
    for a in rows:
        a["online"] = "yes" if a["online"] else "no"
    _print_table(rows, [
        ("NAME", "name", 16), ("ROLE", "role", 10), ("STATUS", "status", 8),
        ("ONLINE", "online", 6), ("ID", "id", 36),
    ])


@main.command()
@click.argument("agent_name")
def queue(agent_name: str):
    """Show pending and running work for AGENT_NAME."""
    _run(_queue_impl(agent_name))


async def _queue_impl(agent_name: str):
    async with _client() as c:
        r = await c.get(f"/agents/by-name/{agent_name}/queue")
        _check(r, f"Agent {agent_name}")
        q = r.json()

    click.secho(f"Queue for {q['agent_name']}", bold=True)
    click.echo(f"  Pending: {q['pending']}")
    click.echo(f"  Running: {q['running']}")
    if q["pending_tickets"]:
        click.echo(f"  Tickets: {', '.join(q['pending_tickets'])}")


@main.command()
@click.option("--limit", "-n", default=None, type=int, help="Max dispatches to show")
def pending(limit: Optional[int]):
    """List claimable dispatches in claim order."""
    _run(_pending_impl(limit))


async def _pending_impl(limit: Optional[int]):
    async with _client() as c:
        params = {"limit": limit} if limit else {}
        r = await c.get("/dispatches/pending", params=params)
        _check(r, "Dispatches")
        rows = r.json()

    if not rows:
        click.echo("Queue is empty.")
        return
    _print_table(rows, [
        ("ID", "id", 6), ("PRI", "priority", 3), ("AGENT", "agent_name", 14),
        ("TICKET", "ticket_identifier", 12), ("COMMAND", "command", 40),
    ])


# ---------------------------------------------------------------------------
# Dispatch lifecycle
# ---------------------------------------------------------------------------


@main.command()
@click.argument("agent_id")
@click.argument("command")
@click.option("--payload", "-p", help="Payload text or JSON")
@click.option("--priority", type=click.IntRange(0, 3), default=2, help="0 = most urgent")
@click.option("--urgent", is_flag=True, help="Mark as urgent")
@click.option("--max-retries", type=int, help="Override the retry budget")
def dispatch(agent_id: str, command: str, payload: Optional[str], priority: int,
             urgent: bool, max_retries: Optional[int]):
    """Queue COMMAND for the agent with AGENT_ID."""
    body: dict = {
        "agent_id": agent_id,
        "command": command,
        "payload": payload,
        "priority": priority,
        "is_urgent": urgent,
    }
    if max_retries is not None:
        body["max_retries"] = max_retries
    _run(_post_dispatch("/dispatches", body, "Agent"))


async def _post_dispatch(path: str, body: Optional[dict], what: str):
    async with _client() as c:
        r = await c.post(path, json=body)
        _check(r, what)
        _echo_dispatch(r.json())


@main.command()
@click.argument("dispatch_id", type=int)
def claim(dispatch_id: int):
    """Move dispatch DISPATCH_ID from pending to running."""
    _run(_post_dispatch(f"/dispatches/{dispatch_id}/claim", None, f"Dispatch #{dispatch_id}"))


@main.command()
@click.argument("dispatch_id", type=int)
@click.option("--result", "-r", help="Result text")
def complete(dispatch_id: int, result: Optional[str]):
    """Mark a running dispatch completed."""
    _run(_post_dispatch(
        f"/dispatches/{dispatch_id}/complete", {"result": result}, f"Dispatch #{dispatch_id}",
    ))


@main.command()
@click.argument("dispatch_id", type=int)
@click.argument("error")
def fail(dispatch_id: int, error: str):
    """Mark a running dispatch failed with ERROR."""
    _run(_post_dispatch(
        f"/dispatches/{dispatch_id}/fail", {"error": error}, f"Dispatch #{dispatch_id}",
    ))


@main.command()
@click.argument("dispatch_id", type=int)
def retry(dispatch_id: int):
    """Clone a failed dispatch into a new pending one immediately."""
    _run(_post_dispatch(f"/dispatches/{dispatch_id}/retry", None, f"Dispatch #{dispatch_id}"))


@main.command()
@click.argument("dispatch_id", type=int)
def lineage(dispatch_id: int):
    """Show the original dispatch and every retry clone."""
    _run(_lineage_impl(dispatch_id))


async def _lineage_impl(dispatch_id: int):
    async with _client() as c:
        r = await c.get(f"/dispatches/{dispatch_id}/lineage")
        _check(r, f"Dispatch #{dispatch_id}")
        for d in r.json():
            _echo_dispatch(d)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command()
@click.argument("agent_name")
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def events(agent_name: str, as_json: bool):
    """Show pending events for AGENT_NAME."""
    _run(_events_impl(agent_name, as_json))


async def _events_impl(agent_name: str, as_json: bool):
    async with _client() as c:
        r = await c.get(f"/events/{agent_name}")
        _check(r, "Events")
        batch = r.json()

    if as_json:
        click.echo(_pretty_json(batch))
        return
    if not batch["events"]:
        click.echo(f"No pending events for {agent_name}.")
        return
    for e in batch["events"]:
        message = e["payload"].get("message", "")
        click.echo(f"  #{e['id']}  [{click.style(e['type'], fg='cyan')}]  {message}")


# ---------------------------------------------------------------------------
# Loops
# ---------------------------------------------------------------------------


@main.command()
@click.option("--days", "-d", default=7, help="Breakdown lookback in days (default: 7)")
def loops(days: int):
    """Show today's loop summary and the per-agent breakdown."""
    _run(_loops_impl(days))


async def _loops_impl(days: int):
    async with _client() as c:
        r = await c.get("/loops/summary")
        _check(r, "Loop summary")
        summary = r.json()
        r = await c.get("/loops/breakdown", params={"since_days": days})
        _check(r, "Loop breakdown")
        breakdown = r.json()

    click.secho("Loops today", bold=True)
    click.echo(f"  Open:       {summary['total_active']}")
    click.echo(f"  Completed:  {summary['completed_today']}")
    click.echo(f"  Broken:     {summary['broken_today']}")
    avg = summary.get("avg_completion_time_ms")
    click.echo(f"  Avg close:  {avg / 60000:.1f} min" if avg is not None else "  Avg close:  -")

    if breakdown:
        click.echo()
        click.secho(f"  Per agent (last {days} days):", bold=True)
        _print_table(breakdown, [
            ("AGENT", "agent_name", 16), ("TOTAL", "total", 6), ("CLOSED", "closed", 6),
            ("BROKEN", "broken", 6), ("BREACH", "sla_breaches", 6), ("DONE%", "completion_pct", 5),
        ])


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@main.command()
@click.argument("what", type=click.Choice(["duplicates", "stuck"]))
@click.option("--max-age", type=int, help="Minutes before a running dispatch counts as stuck")
def cleanup(what: str, max_age: Optional[int]):
    """Remove duplicate pending dispatches or fail stuck running ones."""
    _run(_cleanup_impl(what, max_age))


async def _cleanup_impl(what: str, max_age: Optional[int]):
    async with _client() as c:
        if what == "duplicates":
            r = await c.post("/dispatches/maintenance/cleanup-duplicates")
        else:
            params = {"max_age_minutes": max_age} if max_age else {}
            r = await c.post("/dispatches/maintenance/cleanup-stuck", params=params)
        _check(r, "Maintenance")
        click.secho(f"{r.json()['affected']} dispatch(es) affected.", fg="green")


@main.command("create-key")
@click.argument("name")
@click.option("--scope", "scopes", multiple=True, help="Scope to grant (repeatable, default: all)")
@click.option("--agent-id", help="Bind the key to an agent UUID")
def create_key(name: str, scopes: tuple[str, ...], agent_id: Optional[str]):
    """Mint an API key. Talks to the database, not the API."""
    _run(_create_key_impl(name, list(scopes), agent_id))


async def _create_key_impl(name: str, scopes: list[str], agent_id: Optional[str]):
    import uuid

    from switchboard.auth.dependencies import create_api_key
    from switchboard.db.engine import async_session_factory, engine

    try:
        async with async_session_factory() as db:
            row, key = await create_api_key(
                db, name, scopes=scopes or None,
                agent_id=uuid.UUID(agent_id) if agent_id else None,
            )
    finally:
        await engine.dispose()

    click.secho(f"Created key {row.prefix}… for {name} (scopes: {', '.join(row.scopes)})", fg="green")
    click.echo(key)
    click.secho("Store it now; it cannot be shown again.", fg="yellow")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
