"""CLI command implementations — the MCP server plus terminal versions of the search tools."""

from __future__ import annotations

import asyncio
import logging

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from msgraph_mcp.config import AuthConfig, CacheConfig, ConfigError, ServerConfig
from msgraph_mcp.graph.auth import AuthError, GraphAuthenticator
from msgraph_mcp.graph.client import GraphError, graph_client
from msgraph_mcp.server import run_server
from msgraph_mcp.storage.cache import ResultCache
from msgraph_mcp.tools.copilot import DATA_SOURCES, CopilotTools
from msgraph_mcp.tools.mail import MailTools

logger = logging.getLogger(__name__)
console = Console(width=200)

# Ad-hoc commands run once and exit; no background sweep needed.
_ONE_SHOT_CACHE = CacheConfig(sweep_interval_ms=0)


def _load_auth_config() -> AuthConfig:
    try:
        return AuthConfig.from_env()
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc


@click.command()
def serve() -> None:
    """Run the MCP server on stdio."""
    try:
        config = ServerConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        raise SystemExit(1) from exc
    logging.getLogger().setLevel(config.logging_level)
    try:
        asyncio.run(run_server(config))
    except AuthError as exc:
        logger.error("Authentication failed: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("Shutting down")


@click.command()
def login() -> None:
    """Authenticate with the device code flow and cache the token."""
    config = _load_auth_config()
    try:
        asyncio.run(GraphAuthenticator(config).initialize())
    except AuthError as exc:
        console.print(f"[red]Authentication failed: {exc}[/red]")
        raise SystemExit(1) from exc
    console.print(f"[green]Signed in.[/green] Token cache: [dim]{config.cache_path}[/dim]")


@click.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True, help="Number of results.")
@click.option("--mailbox", default=None, help="Shared or delegated mailbox to search.")
def search(query: str, limit: int, mailbox: str | None) -> None:
    """Search emails with a KQL query."""
    config = _load_auth_config()
    try:
        results = asyncio.run(_search_async(config, query, limit, mailbox))
    except (AuthError, GraphError) as exc:
        console.print(f"[red]Search failed: {exc}[/red]")
        raise SystemExit(1) from exc

    if not results:
        console.print("[yellow]No emails matched that query.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Date", width=12)
    table.add_column("From", max_width=26)
    table.add_column("Subject", max_width=38)
    table.add_column("Snippet", max_width=60)
    table.add_column("!", width=2)

    for i, email in enumerate(results, start=1):
        flag = "[red]![/red]" if email["importance"] == "high" else ""
        table.add_row(
            str(i),
            email["receivedDateTime"][:10],
            email["from"],
            email["subject"],
            f"[dim]{email['snippet']}[/dim]",
            flag,
        )

    console.print(f"\nEmails matching [bold]{query!r}[/bold]\n")
    console.print(table)


async def _search_async(config: AuthConfig, query: str, limit: int, mailbox: str | None) -> list[dict]:
    cache = ResultCache(_ONE_SHOT_CACHE)
    async with graph_client(config) as client:
        return await MailTools(client, cache).search_emails(query, limit, mailbox)


@click.command()
@click.argument("query")
@click.option(
    "--source",
    type=click.Choice(DATA_SOURCES),
    default="sharePoint",
    show_default=True,
    help="Where to search.",
)
@click.option("--limit", default=10, show_default=True, help="Number of results (1-25).")
def content(query: str, source: str, limit: int) -> None:
    """Search SharePoint/OneDrive content in natural language."""
    config = _load_auth_config()
    try:
        result = asyncio.run(_content_async(config, query, source, limit))
    except (AuthError, GraphError) as exc:
        console.print(f"[red]Content search failed: {exc}[/red]")
        raise SystemExit(1) from exc

    if not result["results"]:
        console.print("[yellow]No content matched that query.[/yellow]")
        return

    console.print(f"\n{result['totalResults']} result(s) for [bold]{query!r}[/bold] in {source}\n")
    for brief in result["results"]:
        label = f"  [magenta]{brief['sensitivityLabel']}[/magenta]" if brief.get("sensitivityLabel") else ""
        console.print(
            Panel(
                f"{brief['briefExcerpt'] or '[dim](no excerpt)[/dim]'}\n\n[dim]{brief['url']}[/dim]",
                title=f"[bold]{brief['title']}[/bold]  [cyan]{brief['relevance']:.2f}[/cyan]{label}",
                border_style="blue",
            )
        )


async def _content_async(config: AuthConfig, query: str, source: str, limit: int) -> dict:
    cache = ResultCache(_ONE_SHOT_CACHE)
    async with graph_client(config) as client:
        return await CopilotTools(client, cache).search_content(
            query, data_source=source, max_results=limit
        )
