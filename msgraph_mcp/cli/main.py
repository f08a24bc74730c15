"""CLI entry point for the Microsoft Graph MCP server."""

import logging
import sys

import click
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@click.group()
def cli() -> None:
    """Microsoft Graph MCP server — serve, login, and ad-hoc search commands."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # stdout belongs to MCP when serving; keep logs on stderr
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        stream=sys.stderr,
    )


# Import and register commands after cli is defined to avoid circular imports.
from msgraph_mcp.cli.commands import content, login, search, serve  # noqa: E402

cli.add_command(serve)
cli.add_command(login)
cli.add_command(search)
cli.add_command(content)
