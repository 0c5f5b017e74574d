"""Lockdown MCP server: a filtering proxy in front of downstream servers.

Connects to every configured downstream server, runs each advertised
tool through a ``PolicyEngine`` and republishes the survivors under
``<tool>_using_<server>``.  One extra tool, ``explain_missing_tools``,
reports every veto recorded so far.

Startup runs in two phases:

1. Per-server fetch-and-filter tasks run concurrently, each bounded by
   its server's timeout.  A server that fails to connect or list is
   logged and contributes no tools; it never aborts the others.
2. Registration of the republished names happens afterwards, in
   configuration order, so the resulting tool list is deterministic.

Uses the low-level ``mcp.server.lowlevel.Server`` so the ``call_tool``
handler can return the downstream ``CallToolResult`` verbatim
(preserving ``isError``).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from .errors import UnsupportedConnectionType
from .mcp_client import DownstreamConnection, DownstreamError, error_result
from .models import LockdownConfig, ServerConnection, StdioConnection, Tool
from .policy import PolicyEngine

logger = logging.getLogger("mcp_lockdown.aggregator")

SERVER_NAME = "mcp_lockdown"

EXPLAIN_TOOL_NAME = "explain_missing_tools"
EXPLAIN_TOOL_TITLE = "Lockdown Explain Missing Tools"
EXPLAIN_TOOL_DESCRIPTION = (
    "Returns a list of reasons that tools were removed from the lockdown "
    "MCP server"
)
NO_REJECTIONS_MESSAGE = "No tools were removed by lockdown policies."
UNSUPPORTED_SERVER_MESSAGE = "Sorry that MCP server is not yet supported"

_NAME_SEPARATOR = "_using_"


def republished_name(tool_name: str, server_name: str) -> str:
    return f"{tool_name}{_NAME_SEPARATOR}{server_name}"


@dataclass
class RegisteredTool:
    """A policy-approved downstream tool and where it came from."""
    server: str
    original_name: str
    descriptor: dict[str, Any]


class LockdownAggregator:
    """MCP server republishing policy-approved tools from downstreams.

    Usage::

        aggregator = LockdownAggregator(load_lockdown_config(path),
                                        default_engine())
        asyncio.run(aggregator.run_stdio())
    """

    def __init__(
        self,
        config: LockdownConfig,
        policy_engine: PolicyEngine,
    ) -> None:
        self._config = config
        self._engine = policy_engine
        self._tool_map: dict[str, RegisteredTool] = {}
        self._server_errors: dict[str, str] = {}
        self._server = Server(SERVER_NAME)
        self._setup_handlers()

    # -- properties ----------------------------------------------------------

    @property
    def server(self) -> Server:
        """The underlying low-level MCP server."""
        return self._server

    @property
    def policy_engine(self) -> PolicyEngine:
        return self._engine

    @property
    def tool_map(self) -> dict[str, RegisteredTool]:
        """Republished name -> registered tool, in registration order."""
        return dict(self._tool_map)

    @property
    def server_errors(self) -> dict[str, str]:
        """Server name -> error message for servers that failed at startup."""
        return dict(self._server_errors)

    # -- handlers ------------------------------------------------------------

    def _setup_handlers(self) -> None:
        """Register ``list_tools`` and ``call_tool`` handlers on the
        low-level MCP server."""
        aggregator = self

        @self._server.list_tools()
        async def handle_list_tools() -> list[types.Tool]:
            return aggregator._build_tool_list()

        @self._server.call_tool()
        async def handle_call_tool(
            name: str, arguments: dict[str, Any] | None,
        ) -> types.CallToolResult:
            return await aggregator._forward_call(name, arguments)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Fetch and filter every downstream's tools, then register them."""
        servers = list(self._config.servers.items())

        # Phase 1: concurrent fetch-and-filter, failures isolated per task
        results = await asyncio.gather(*(
            self._fetch_and_filter(name, connection)
            for name, connection in servers
        ))

        # Phase 2: registration in configuration order
        for (server_name, _), approved in zip(servers, results):
            for descriptor in approved:
                self._register(server_name, descriptor)

        logger.info(
            "Lockdown started: %d tools from %d server(s), %d rejected",
            len(self._tool_map),
            len(servers),
            len(self._engine.rejections),
        )

    async def shutdown(self) -> None:
        """Forget all registered tools.  Sessions are per call, so there
        is nothing left open."""
        self._tool_map.clear()
        self._server_errors.clear()

    async def run_stdio(self) -> None:
        """Start the aggregator, serve on stdio, and shut down on exit."""
        await self.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        finally:
            await self.shutdown()

    # -- fetch and filter ----------------------------------------------------

    async def _fetch_and_filter(
        self, server_name: str, connection: ServerConnection,
    ) -> list[dict[str, Any]]:
        """Return the descriptors from *connection* that pass every policy.

        Never raises for downstream failures; they are logged and
        recorded in ``server_errors``.
        """
        if not isinstance(connection, StdioConnection):
            logger.warning(
                "Server '%s': %s connections are not yet supported; "
                "it contributes no tools",
                server_name, connection.type,
            )
            return []

        try:
            descriptors = await asyncio.wait_for(
                self._list_downstream_tools(connection),
                timeout=connection.timeout,
            )
        except asyncio.TimeoutError:
            return self._server_failed(
                server_name,
                f"listing tools timed out after {connection.timeout}s",
            )
        except (DownstreamError, UnsupportedConnectionType) as e:
            return self._server_failed(server_name, str(e))

        approved: list[dict[str, Any]] = []
        for descriptor in descriptors:
            tool = Tool.from_dict(descriptor)
            if await self._engine.evaluate(tool):
                approved.append(descriptor)
        logger.info(
            "Server '%s': %d of %d tools approved",
            server_name, len(approved), len(descriptors),
        )
        return approved

    async def _list_downstream_tools(
        self, connection: StdioConnection,
    ) -> list[dict[str, Any]]:
        async with DownstreamConnection.for_server(connection) as downstream:
            return downstream.tools

    def _server_failed(self, server_name: str, message: str) -> list:
        logger.error("Server '%s' failed: %s", server_name, message)
        self._server_errors[server_name] = message
        return []

    def _register(self, server_name: str, descriptor: dict[str, Any]) -> None:
        original = descriptor["name"]
        name = republished_name(original, server_name)
        if name in self._tool_map or name == EXPLAIN_TOOL_NAME:
            logger.warning(
                "Tool name collision: %s (already registered); "
                "keeping the first registration",
                name,
            )
            return
        self._tool_map[name] = RegisteredTool(
            server=server_name,
            original_name=original,
            descriptor=descriptor,
        )

    # -- tool list -----------------------------------------------------------

    def _build_tool_list(self) -> list[types.Tool]:
        tools = [
            _dict_to_tool(name, registered.descriptor)
            for name, registered in self._tool_map.items()
        ]
        tools.append(_build_explain_tool())
        return tools

    # -- tool calls ----------------------------------------------------------

    async def _forward_call(
        self, name: str, arguments: dict[str, Any] | None,
    ) -> types.CallToolResult:
        if name == EXPLAIN_TOOL_NAME:
            return _text_result(self.explain_missing_tools())

        registered = self._tool_map.get(name)
        if registered is None:
            return error_result(f"Unknown tool: {name}")

        connection = self._config.servers.get(registered.server)
        if not isinstance(connection, StdioConnection):
            return _text_result(UNSUPPORTED_SERVER_MESSAGE)

        # Fresh session per call; the descriptor was approved at startup
        downstream = DownstreamConnection(connection)
        try:
            await downstream.connect()
        except DownstreamError as e:
            logger.error("Forwarding %s failed: %s", name, e)
            return error_result(
                f"Could not reach server '{registered.server}': {e}"
            )
        try:
            return await downstream.call_tool(
                registered.original_name, arguments,
            )
        finally:
            await downstream.close()

    def explain_missing_tools(self) -> str:
        """Comma-joined rejection messages, or a note that there are none."""
        rejections = self._engine.list_rejections()
        if not rejections:
            return NO_REJECTIONS_MESSAGE
        return ", ".join(rejections)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_explain_tool() -> types.Tool:
    return types.Tool(
        name=EXPLAIN_TOOL_NAME,
        title=EXPLAIN_TOOL_TITLE,
        description=EXPLAIN_TOOL_DESCRIPTION,
        inputSchema={"type": "object", "properties": {}},
    )


def _text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
    )


def _dict_to_tool(
    republished: str, tool_dict: dict[str, Any],
) -> types.Tool:
    """Convert a downstream tool dict into an MCP ``Tool`` object.

    Preserves the downstream schema, title, description and
    annotations; only the name changes.
    """
    kwargs: dict[str, Any] = {
        "name": republished,
        "inputSchema": tool_dict.get("inputSchema") or {"type": "object"},
    }
    if "description" in tool_dict:
        kwargs["description"] = tool_dict["description"]
    if "outputSchema" in tool_dict:
        kwargs["outputSchema"] = tool_dict["outputSchema"]
    if "title" in tool_dict:
        kwargs["title"] = tool_dict["title"]
    if "annotations" in tool_dict:
        kwargs["annotations"] = types.ToolAnnotations(
            **tool_dict["annotations"],
        )
    return types.Tool(**kwargs)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def run_lockdown(argv: list[str] | None = None) -> None:
    """Parse ``--config`` and run the lockdown proxy on stdio."""
    import argparse

    from .config import LockdownConfigError, load_lockdown_config
    from .rules import default_engine

    parser = argparse.ArgumentParser(
        prog="mcp-lockdown-proxy",
        description="MCP lockdown proxy: republishes policy-approved tools",
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to the lockdown server-set file (JSON or YAML)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log at INFO level on stderr",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO if args.verbose else logging.WARNING,
    )

    try:
        config = load_lockdown_config(args.config)
    except LockdownConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    aggregator = LockdownAggregator(config, default_engine())
    asyncio.run(aggregator.run_stdio())
