#!/usr/bin/env python3
"""
Splunk MCP Server

A Model Context Protocol server for interacting with Splunk.
Provides tools for configuring a connection, running searches, running saved
searches and listing indexes, plus read-only status and server info resources.
"""

import sys
import json
import asyncio
import logging
import argparse
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional

import structlog
from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult, TextContent
from pydantic import Field

from splunk_client import (
    DEFAULT_PORT,
    ConnectionConfig,
    SearchRequest,
    SplunkClient,
    SplunkConnectionError,
    SplunkSettings,
)

SERVER_NAME = "Splunk MCP Server"
STATUS_URI = "splunk://status"
INFO_URI = "splunk://info"

TRANSPORTS = ("stdio", "sse", "streamable-http")

logger = structlog.get_logger(__name__)


def setup_logging(level: str = "info", fmt: str = "console") -> None:
    """
    Configure structured logging.

    Logs go to stderr because stdout carries the MCP stdio protocol.

    Args:
        level: Standard logging level name
        fmt: 'console' for human-readable lines, 'json' for one JSON object per line
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )


@dataclass
class ToolResponse:
    """Uniform result of a tool handler: the text payload and whether it is an error."""

    text: str
    is_error: bool = False


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def _success(value: Any) -> ToolResponse:
    return ToolResponse(text=_to_text(value))


def _failure(prefix: str, error: Exception, **context) -> ToolResponse:
    logger.warning("tool_failed", prefix=prefix, error=str(error), error_type=type(error).__name__, **context)
    return ToolResponse(text=f"{prefix}: {error}", is_error=True)


class SplunkTools:
    """
    Tool and resource handlers bound to one SplunkClient.

    Every handler catches failures and returns them as an error ToolResponse,
    so nothing raises past this layer.
    """

    def __init__(self, splunk: SplunkClient):
        self.splunk = splunk

    async def configure(
        self,
        host: str,
        username: str,
        password: str,
        port: int = DEFAULT_PORT,
        scheme: str = "https"
    ) -> ToolResponse:
        config = ConnectionConfig(host=host, port=port, username=username, password=password, scheme=scheme)
        try:
            await self.splunk.configure(config)
        except SplunkConnectionError as e:
            # Already carries the "Failed to connect to Splunk" prefix
            logger.warning("tool_failed", prefix="configure", error=str(e), url=config.url)
            return ToolResponse(text=str(e), is_error=True)
        return _success(f"Successfully connected to Splunk at {config.url}")

    async def search(
        self,
        query: str,
        earliest_time: Optional[str] = None,
        latest_time: Optional[str] = None,
        max_count: int = 100,
        output_mode: str = "json"
    ) -> ToolResponse:
        request = SearchRequest(
            query=query,
            earliest_time=earliest_time,
            latest_time=latest_time,
            max_count=max_count,
            output_mode=output_mode,
        )
        try:
            search_results = await self.splunk.search(request)
        except Exception as e:
            return _failure("Error executing search", e)
        return _success(search_results)

    async def list_saved_searches(self) -> ToolResponse:
        try:
            saved_searches = await self.splunk.list_saved_searches()
        except Exception as e:
            return _failure("Error listing saved searches", e)
        return _success(saved_searches)

    async def run_saved_search(
        self,
        name: str,
        earliest_time: Optional[str] = None,
        latest_time: Optional[str] = None
    ) -> ToolResponse:
        try:
            search_results = await self.splunk.run_saved_search(name, earliest_time, latest_time)
        except Exception as e:
            return _failure("Error running saved search", e, name=name)
        return _success(search_results)

    async def list_indexes(self) -> ToolResponse:
        try:
            indexes = await self.splunk.list_indexes()
        except Exception as e:
            return _failure("Error listing indexes", e)
        return _success(indexes)

    async def connection_status(self) -> str:
        return "Connected" if self.splunk.is_connected else "Not connected"

    async def server_info(self) -> str:
        # Resources carry no error flag, so failures are reported as text
        try:
            info = await self.splunk.get_server_info()
        except Exception as e:
            return _failure("Error getting server info", e).text
        return _to_text(info)


def _to_result(response: ToolResponse) -> CallToolResult:
    # Returned as-is so the client sees the handler text and error flag unchanged
    return CallToolResult(
        content=[TextContent(type="text", text=response.text)],
        isError=response.is_error,
    )


def create_server(splunk: Optional[SplunkClient] = None) -> FastMCP:
    """
    Build the MCP server and register its tools and resources.

    Args:
        splunk: Client holding the Splunk session. A new, unconfigured one is
            created when omitted.

    Returns:
        A FastMCP instance ready to run
    """
    tools = SplunkTools(splunk if splunk is not None else SplunkClient())
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    async def configure(
        host: Annotated[str, Field(description="Splunk server hostname or IP")],
        username: Annotated[str, Field(description="Splunk username")],
        password: Annotated[str, Field(description="Splunk password")],
        port: Annotated[int, Field(description="Splunk management port")] = DEFAULT_PORT,
        scheme: Annotated[Literal["http", "https"], Field(description="Connection scheme")] = "https"
    ) -> CallToolResult:
        """
        Configure the connection to Splunk, replacing any existing connection.

        Authenticates immediately; a failed login leaves the server unconfigured.
        """
        return _to_result(await tools.configure(host, username, password, port=port, scheme=scheme))

    @mcp.tool()
    async def search(
        query: Annotated[str, Field(description="The Splunk search query to execute")],
        earliest_time: Annotated[
            Optional[str],
            Field(description="Earliest time for the search (e.g., '-1h', '-24h@h', '2023-01-01T00:00:00')")
        ] = None,
        latest_time: Annotated[
            Optional[str],
            Field(description="Latest time for the search (e.g., 'now', '2023-01-01T23:59:59')")
        ] = None,
        max_count: Annotated[
            int,
            Field(ge=1, le=10000, description="Maximum number of results to return")
        ] = 100,
        output_mode: Annotated[
            Literal["json", "csv", "xml"],
            Field(description="Output format for results")
        ] = "json"
    ) -> CallToolResult:
        """
        Execute a search query in Splunk and return results.

        The query is prefixed with 'search' unless it already starts with a
        leading command. Waits for the job to complete before fetching results.
        """
        return _to_result(await tools.search(query, earliest_time, latest_time, max_count, output_mode))

    @mcp.tool()
    async def list_saved_searches() -> CallToolResult:
        """List all saved searches with their query text, description and time window."""
        return _to_result(await tools.list_saved_searches())

    @mcp.tool()
    async def run_saved_search(
        name: Annotated[str, Field(description="Name of the saved search to run")],
        earliest_time: Annotated[Optional[str], Field(description="Override earliest time")] = None,
        latest_time: Annotated[Optional[str], Field(description="Override latest time")] = None
    ) -> CallToolResult:
        """Execute a saved search by name and return its results."""
        return _to_result(await tools.run_saved_search(name, earliest_time, latest_time))

    @mcp.tool()
    async def list_indexes() -> CallToolResult:
        """List all indexes available in Splunk."""
        return _to_result(await tools.list_indexes())

    @mcp.resource(STATUS_URI, name="connection_status", mime_type="text/plain")
    async def connection_status() -> str:
        """Whether a Splunk connection is configured."""
        return await tools.connection_status()

    @mcp.resource(INFO_URI, name="server_info", mime_type="text/plain")
    async def server_info() -> str:
        """Version, build and license state of the connected Splunk server."""
        return await tools.server_info()

    return mcp


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="splunk-mcp-server", description=SERVER_NAME)
    parser.add_argument("--transport", choices=TRANSPORTS, default="stdio", help="MCP transport (default: stdio)")
    parser.add_argument("--log-level", default=None, help="Log level (default: SPLUNK_MCP_LOG_LEVEL or info)")
    return parser.parse_args(argv)


def _configure_from_env(splunk: SplunkClient, settings: SplunkSettings) -> None:
    if not settings.has_credentials:
        logger.info("splunk_env_credentials_absent")
        return
    try:
        asyncio.run(splunk.configure(settings.connection_config()))
    except SplunkConnectionError as e:
        logger.warning("splunk_env_configure_failed", error=str(e))


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the MCP server."""
    args = _parse_args(argv)

    try:
        settings = SplunkSettings.from_env()
    except ValueError:
        setup_logging(args.log_level or "info")
        logger.exception("invalid_settings")
        return 1
    setup_logging(args.log_level or settings.log_level, settings.log_format)

    try:
        splunk = SplunkClient(poll_interval=settings.poll_interval)
        _configure_from_env(splunk, settings)
        server = create_server(splunk)
        logger.info("server_started", name=SERVER_NAME, transport=args.transport)
        server.run(transport=args.transport)
    except KeyboardInterrupt:
        logger.info("server_stopped")
    except Exception:
        logger.exception("server_error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
