"""
Gatekeeper CLI Tool
Command-line reporting and administration for the Gatekeeper API.
"""

import json
import logging
import sys
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

from gatekeeper.client import GatekeeperClient

console = Console()


def get_client(url: str, api_key: Optional[str] = None) -> GatekeeperClient:
    """Create a client instance."""
    return GatekeeperClient(base_url=url, api_key=api_key)


def _fail(message: str) -> None:
    console.print(f"❌ [red]{message}[/red]")
    sys.exit(1)


def _describe_error(e: httpx.HTTPError) -> str:
    if isinstance(e, httpx.HTTPStatusError):
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        return f"HTTP {e.response.status_code}: {detail}"
    return f"Connection failed: {e}"


@click.group()
@click.option("--url", "-u", default="http://localhost:8000", help="API server URL")
@click.option("--api-key", "-k", envvar="GATEKEEPER_ADMIN_KEY", help="Admin API key")
@click.option("--verbose", "-v", is_flag=True, help="Log HTTP traffic")
@click.pass_context
def cli(ctx, url: str, api_key: Optional[str], verbose: bool):
    """Gatekeeper CLI - inspect quotas, windows and blocks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["api_key"] = api_key


@cli.command()
@click.pass_context
def health(ctx):
    """Check API server and store health."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            status = client.health()
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

        store = status.get("store", {})
        if status.get("status") == "healthy":
            console.print("✅ [green]API is healthy[/green]")
        else:
            console.print("⚠️ [yellow]API is degraded[/yellow]")
        console.print(f"   Store: {store.get('backend', 'unknown')}")
        console.print(f"   Connected: {store.get('connected', False)}")


@cli.command()
@click.argument("identity")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def usage(ctx, identity: str, as_json: bool):
    """Show daily quota usage of IDENTITY."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            stats = client.usage(identity)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                console.print(f"[yellow]No usage recorded for {identity}[/yellow]")
                return
            _fail(_describe_error(e))
            return
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

    if as_json:
        console.print(json.dumps(stats, indent=2))
        return

    limit = stats.get("queries_limit")
    table = Table(title=f"Usage for {identity}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Premium", "yes" if stats.get("is_premium") else "no")
    table.add_row("Queries today", str(stats.get("queries_today", 0)))
    table.add_row("Daily limit", "unlimited" if limit is None else str(limit))
    table.add_row("Remaining", "unlimited" if limit is None else str(stats.get("remaining")))
    table.add_row("Total queries", str(stats.get("total_queries", 0)))
    table.add_row("Resets at", str(stats.get("reset_time")))
    console.print(table)


@cli.command()
@click.option("--identifier", "-i", default=None, help="Restrict to one identifier")
@click.option("--blocked", is_flag=True, help="Only blocked windows")
@click.option("--limit", "-n", default=50, help="Number of windows to show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def windows(ctx, identifier: Optional[str], blocked: bool, limit: int, as_json: bool):
    """List recent rate limit windows."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            records = client.windows(identifier=identifier, blocked_only=blocked, limit=limit)
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

    if as_json:
        console.print(json.dumps(records, indent=2))
        return

    if not records:
        console.print("[dim]No windows recorded[/dim]")
        return

    table = Table(title="Rate Limit Windows")
    table.add_column("Identifier", style="cyan")
    table.add_column("Type", style="dim")
    table.add_column("Endpoint")
    table.add_column("Window start")
    table.add_column("Requests", justify="right")
    table.add_column("Blocked")

    for r in records:
        blocked_cell = f"[red]{r.get('block_reason') or 'yes'}[/red]" if r.get("is_blocked") else ""
        table.add_row(
            r["identifier"],
            r["identifier_type"],
            r["endpoint"],
            r["window_start"],
            str(r["requests_count"]),
            blocked_cell,
        )
    console.print(table)


@cli.command()
@click.argument("identifier")
@click.option("--endpoint", "-e", default=None, help="Include the state of one endpoint")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def block(ctx, identifier: str, endpoint: Optional[str], as_json: bool):
    """Show the escalation state of IDENTIFIER."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            status = client.block_status(identifier, endpoint=endpoint)
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

    if as_json:
        console.print(json.dumps(status, indent=2))
        return

    if status.get("blocked"):
        console.print(f"⛔ [red]{identifier} is blocked[/red]")
    else:
        console.print(f"✅ [green]{identifier} is not blocked[/green]")

    for label, key in (("Identifier-wide", "identifier_wide"), (f"Endpoint {endpoint}", "endpoint")):
        state = status.get(key)
        if state:
            console.print(
                f"   {label}: {state['consecutive_violations']} violations, "
                f"blocked until {state['blocked_until'] or '-'}"
            )


@cli.command()
@click.argument("identifier")
@click.argument("severity", type=click.Choice(["low", "medium", "high"]))
@click.pass_context
def signal(ctx, identifier: str, severity: str):
    """Report suspicious activity by IDENTIFIER."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            state = client.report_signal(identifier, severity)
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

    console.print(
        f"Recorded {severity} signal for [cyan]{identifier}[/cyan]: "
        f"{state['consecutive_violations']} violations"
    )
    if state.get("blocked_until"):
        console.print(f"⛔ [red]Blocked until {state['blocked_until']}[/red]")


@cli.command()
@click.pass_context
def prune(ctx):
    """Delete window records and quiet block states past the retention period."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            result = client.prune()
        except httpx.HTTPError as e:
            _fail(_describe_error(e))
            return

    console.print(
        f"🧹 Pruned {result['deleted']} window records and "
        f"{result.get('blocks_deleted', 0)} block states older than {result['retention_days']} days"
    )


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
