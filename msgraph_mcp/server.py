"""MCP stdio server — exposes the mail and content tools plus cached-result resources.

The protocol owns stdout, so logging goes to stderr.  Tool exceptions are
logged here and re-raised; the MCP layer turns them into ``isError`` tool
results.  Resource reads surface the resolver's distinct malformed vs.
expired messages.
"""

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server

from msgraph_mcp.config import ServerConfig
from msgraph_mcp.graph.client import graph_client
from msgraph_mcp.storage.cache import ResultCache
from msgraph_mcp.storage.references import to_protocol_uri
from msgraph_mcp.storage.resources import DrillDownResolver, ResolvedContent
from msgraph_mcp.tools.copilot import DATA_SOURCES, CopilotTools
from msgraph_mcp.tools.mail import MailTools, ToolError

logger = logging.getLogger(__name__)

SERVER_NAME = "msgraph-mcp"
SERVER_VERSION = "0.1.0"
TOOL_PREFIX = "mcp__msgraph__"

_MAILBOX_PROPERTY = {
    "type": "string",
    "description": "Shared or delegated mailbox address (default: your own mailbox)",
}

TOOLS: list[types.Tool] = [
    types.Tool(
        name=f"{TOOL_PREFIX}search_emails_by_entities",
        description=(
            "Batch search emails for multiple entities (companies, people) with optional keywords. "
            "Returns token-efficient summaries grouped by entity, e.g. for checking 50 companies at once."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "entities": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Entities (companies, people) to search for",
                },
                "keywords": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": 'Optional keywords to filter results (e.g. ["cancel", "churn"])',
                },
                "dateFrom": {"type": "string", "description": "Optional start date (ISO 8601)"},
                "dateTo": {"type": "string", "description": "Optional end date (ISO 8601)"},
                "maxResultsPerEntity": {
                    "type": "number",
                    "description": "Max results per entity (default: 5)",
                    "default": 5,
                },
                "mailbox": _MAILBOX_PROPERTY,
            },
            "required": ["entities"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}search_emails",
        description=(
            "Search emails with a custom KQL query. Returns token-efficient summaries, newest first."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": 'KQL query (e.g. "from:john subject:urgent")'},
                "maxResults": {
                    "type": "number",
                    "description": "Maximum results to return (default: 25)",
                    "default": 25,
                },
                "mailbox": _MAILBOX_PROPERTY,
            },
            "required": ["query"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}get_email",
        description=(
            "Get one email by message ID, to drill down after a search. Optionally includes the full body."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The message ID to retrieve"},
                "includeBody": {
                    "type": "boolean",
                    "description": "Include the full body (more tokens, default: false)",
                    "default": False,
                },
                "mailbox": _MAILBOX_PROPERTY,
            },
            "required": ["messageId"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}list_mail_folders",
        description="List mail folders with their item counts.",
        inputSchema={"type": "object", "properties": {"mailbox": _MAILBOX_PROPERTY}},
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}get_attachments",
        description=(
            "List a message's attachments. With includeContent, the bytes are cached server-side and "
            "each attachment gets a resourceUri to read instead of inline base64."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The message ID"},
                "includeContent": {
                    "type": "boolean",
                    "description": "Cache attachment content for resource reads (default: false)",
                    "default": False,
                },
                "mailbox": _MAILBOX_PROPERTY,
            },
            "required": ["messageId"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}download_attachment",
        description="Save an attachment to a local file. Returns only the file path and size.",
        inputSchema={
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The message ID"},
                "attachmentId": {"type": "string", "description": "The attachment ID"},
                "outputPath": {"type": "string", "description": "Where to write the file"},
                "mailbox": _MAILBOX_PROPERTY,
            },
            "required": ["messageId", "attachmentId", "outputPath"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}send_message",
        description="Create a draft email, or send it immediately when sendImmediately is true.",
        inputSchema={
            "type": "object",
            "properties": {
                "to": {"type": "array", "items": {"type": "string"}, "description": "Recipient addresses"},
                "subject": {"type": "string"},
                "body": {"type": "string"},
                "cc": {"type": "array", "items": {"type": "string"}},
                "bcc": {"type": "array", "items": {"type": "string"}},
                "bodyType": {"type": "string", "enum": ["text", "html"], "default": "text"},
                "importance": {"type": "string", "enum": ["low", "normal", "high"], "default": "normal"},
                "sendImmediately": {"type": "boolean", "default": False},
                "mailbox": _MAILBOX_PROPERTY,
                "from": {"type": "string", "description": "Send as this address (needs Send As rights)"},
                "attachments": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "contentType": {"type": "string"},
                            "contentBytes": {"type": "string", "description": "Base64 content"},
                        },
                        "required": ["name", "contentBytes"],
                    },
                },
            },
            "required": ["to", "subject", "body"],
        },
    ),
    types.Tool(
        name=f"{TOOL_PREFIX}search_content",
        description=(
            "Search SharePoint, OneDrive, or connector content in natural language with the Copilot "
            "Retrieval API. Returns brief excerpts with relevance scores; read a result's resourceUri "
            "for the full extracts."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language query (max 1500 chars)"},
                "dataSource": {
                    "type": "string",
                    "enum": list(DATA_SOURCES),
                    "description": "Where to search (default: sharePoint)",
                    "default": "sharePoint",
                },
                "filterExpression": {
                    "type": "string",
                    "description": 'Optional KQL filter (e.g. "FileExtension:pdf")',
                },
                "maxResults": {
                    "type": "number",
                    "description": "Maximum results (1-25, default: 10)",
                    "default": 10,
                },
                "includeMetadata": {
                    "type": "boolean",
                    "description": "Include file metadata (default: false)",
                    "default": False,
                },
            },
            "required": ["query"],
        },
    ),
]


class MsGraphServer:
    """Routes MCP tool calls and resource requests to the tools and the resolver."""

    def __init__(self, mail: MailTools, copilot: CopilotTools, resolver: DrillDownResolver) -> None:
        self._resolver = resolver
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "search_emails_by_entities": lambda a: mail.search_emails_by_entities(
                entities=a["entities"],
                keywords=a.get("keywords"),
                date_from=a.get("dateFrom"),
                date_to=a.get("dateTo"),
                max_results_per_entity=int(a.get("maxResultsPerEntity", 5)),
                mailbox=a.get("mailbox"),
            ),
            "search_emails": lambda a: mail.search_emails(
                a["query"], int(a.get("maxResults", 25)), a.get("mailbox")
            ),
            "get_email": lambda a: mail.get_email(
                a["messageId"], bool(a.get("includeBody", False)), a.get("mailbox")
            ),
            "list_mail_folders": lambda a: mail.list_mail_folders(a.get("mailbox")),
            "get_attachments": lambda a: mail.get_attachments(
                a["messageId"], bool(a.get("includeContent", False)), a.get("mailbox")
            ),
            "download_attachment": lambda a: mail.download_attachment(
                a["messageId"], a["attachmentId"], a["outputPath"], a.get("mailbox")
            ),
            "send_message": lambda a: mail.send_message(
                to=a["to"],
                subject=a["subject"],
                body=a["body"],
                cc=a.get("cc"),
                bcc=a.get("bcc"),
                body_type=a.get("bodyType", "text"),
                importance=a.get("importance", "normal"),
                send_immediately=bool(a.get("sendImmediately", False)),
                mailbox=a.get("mailbox"),
                from_address=a.get("from"),
                attachments=a.get("attachments"),
            ),
            "search_content": lambda a: copilot.search_content(
                a["query"],
                data_source=a.get("dataSource", "sharePoint"),
                filter_expression=a.get("filterExpression"),
                max_results=int(a.get("maxResults", 10)),
                include_metadata=bool(a.get("includeMetadata", False)),
            ),
        }

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> Any:
        """Run the tool called `name` (with or without the prefix)."""
        handler = self._handlers.get(name.removeprefix(TOOL_PREFIX))
        if handler is None:
            raise ToolError(f"Unknown tool: {name}")
        logger.info("Tool call: %s", name)
        try:
            return await handler(arguments or {})
        except Exception:
            logger.exception("Error executing tool %s", name)
            raise

    def list_resources(self) -> list[types.Resource]:
        return [
            types.Resource(
                uri=to_protocol_uri(d.uri),
                name=d.name,
                description=d.description,
                mimeType=d.mime_type,
            )
            for d in self._resolver.list_resources()
        ]

    def read_resource(self, uri: str) -> ResolvedContent:
        logger.info("Resource read: %s", uri)
        return self._resolver.resolve(uri)


def create_server(app: MsGraphServer) -> Server:
    """Register `app`'s handlers on a low-level MCP server."""
    server: Server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        result = await app.call_tool(name, arguments)
        return [types.TextContent(type="text", text=json.dumps(result, indent=2))]

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return app.list_resources()

    @server.read_resource()
    async def read_resource(uri: Any) -> Iterable[ReadResourceContents]:
        content = app.read_resource(str(uri))
        body = content.text if content.text is not None else content.blob or b""
        return [ReadResourceContents(content=body, mime_type=content.mime_type)]

    return server


async def run_server(config: ServerConfig) -> None:
    """Authenticate, then serve MCP over stdio until the client disconnects."""
    logger.info("Starting %s %s", SERVER_NAME, SERVER_VERSION)
    cache = ResultCache(config.cache)
    try:
        async with graph_client(config.auth) as client:
            app = MsGraphServer(
                MailTools(client, cache, config.user_email),
                CopilotTools(client, cache),
                DrillDownResolver(cache),
            )
            server = create_server(app)
            async with stdio_server() as (read_stream, write_stream):
                logger.info("Server ready on stdio")
                await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        cache.close()

