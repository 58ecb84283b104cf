"""MCP server exposing Caido operations over stdio."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import mcp.server.stdio as mcp_stdio
import mcp.types as types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .config import Settings
from .dispatcher import ToolDispatcher
from .graphql import GraphQLClient
from .invoker import FunctionInvoker
from .session import AuthSession
from .tools import ToolCatalog, load_catalog
from .token_store import TokenStore
from .version import __version__

logger = logging.getLogger(__name__)

SERVER_NAME = "caido-mcp-server"

SERVER_INSTRUCTIONS = """You are helping the user with security testing using Caido.

Caido has the following modules:
- **Filters** - Used for creating filters that users can later use in search using preset:alias
- **Replay** - Consists of collections. Each collection contains sessions (requests). Users typically send interesting requests, and it's very important that both requests and collections are properly named so users don't get confused later.
- **Match/Replace (Tamper)** - Consists of collections. Each collection contains rules. Needed so users can automatically modify requests or responses. Like with Replay, it's important to maintain proper naming.
- **Findings** - Consists of discovered vulnerabilities. Users can create and view security findings.
- **Scopes** - Consists of scopes. Usually bug hunters and pentesters are limited to a certain scope, on which they have the right to send requests. So sometimes it can be useful.

IMPORTANT: The MCP server automatically manages authentication tokens:
- On startup, it loads saved tokens from disk and refreshes them if expired
- If no saved token is available, you MUST authenticate:
  1. Use the "authenticate" tool to start the OAuth flow - it will give the user a verification URL
  2. After the user confirms they've authorized, use "check_authentication" to complete the setup
- Once authenticated, tokens are saved to disk and reused across sessions automatically
- If a tool fails with an auth error, try "authenticate" again

After authenticating, check the tools version with "get_tools_version"."""


def build_dispatcher(
    settings: Settings,
    catalog: Optional[ToolCatalog] = None,
    graphql: Optional[GraphQLClient] = None,
) -> ToolDispatcher:
    graphql = graphql or GraphQLClient(settings)
    session = AuthSession(settings, graphql, TokenStore(settings))
    return ToolDispatcher(session, FunctionInvoker(session, graphql), catalog or load_catalog())


class CaidoMCPServer:
    """Wires the tool dispatcher into an MCP low-level server."""

    def __init__(self, settings: Settings, dispatcher: Optional[ToolDispatcher] = None) -> None:
        self.settings = settings
        self.dispatcher = dispatcher or build_dispatcher(settings)
        self.server = Server(SERVER_NAME, version=__version__, instructions=SERVER_INSTRUCTIONS)
        self._register_handlers()

    @property
    def session(self) -> AuthSession:
        return self.dispatcher.session

    def list_tools(self) -> List[types.Tool]:
        return [
            types.Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema)
            for spec in self.dispatcher.catalog.listing()
        ]

    def _register_handlers(self) -> None:
        @self.server.list_tools()  # type: ignore
        async def handle_list_tools() -> List[types.Tool]:
            logger.debug("Listing available tools")
            return self.list_tools()

        # Arguments are checked by the dispatcher against required names only.
        @self.server.call_tool(validate_input=False)  # type: ignore
        async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
            result = await self.dispatcher.dispatch(name, arguments or {})
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=result.text)],
                isError=result.is_error,
            )

    async def run_stdio(self) -> None:
        await self.session.restore()
        async with mcp_stdio.stdio_server() as (read_stream, write_stream):
            logger.info("Caido MCP Server started (endpoint %s)", self.settings.base_url)
            await self.server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name=SERVER_NAME,
                    server_version=__version__,
                    capabilities=self.server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                    instructions=SERVER_INSTRUCTIONS,
                ),
            )

    async def close(self) -> None:
        await self.session.close()
        await self.dispatcher.invoker.graphql.close()


def run_mcp_server(settings: Settings) -> None:
    server = CaidoMCPServer(settings)

    async def main() -> None:
        try:
            await server.run_stdio()
        finally:
            await server.close()

    asyncio.run(main())
