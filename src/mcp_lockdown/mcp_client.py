"""MCP client for downstream stdio MCP server connections.

Spawns a child process, performs the MCP handshake, discovers tools and
forwards tool call requests.  The aggregator opens one connection per
server at startup to fetch the tool listing, and a fresh one per
forwarded call.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.types import CallToolResult, TextContent

from .errors import UnsupportedConnectionType
from .models import ServerConnection, StdioConnection

logger = logging.getLogger("mcp_lockdown.mcp_client")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DownstreamError(Exception):
    """Base error for downstream MCP connection issues."""


class DownstreamConnectionError(DownstreamError):
    """Failed to connect to or initialize a downstream MCP server."""


class DownstreamTimeoutError(DownstreamError):
    """A downstream MCP operation timed out."""


# ---------------------------------------------------------------------------
# DownstreamConnection
# ---------------------------------------------------------------------------

class DownstreamConnection:
    """MCP client connection to a single downstream stdio MCP server.

    Usage::

        async with DownstreamConnection(StdioConnection(...)) as conn:
            tools = conn.tools
            result = await conn.call_tool("add", {"a": 1, "b": 2})
    """

    def __init__(self, connection: StdioConnection) -> None:
        self._connection = connection
        self._timeout = connection.timeout
        self._session: ClientSession | None = None
        self._tools: list[dict[str, Any]] = []
        self._exit_stack: AsyncExitStack | None = None
        self._connected = False

    @classmethod
    def for_server(cls, connection: ServerConnection) -> DownstreamConnection:
        """Build a connection for *connection*, or raise if its type is
        one the proxy cannot open."""
        if not isinstance(connection, StdioConnection):
            raise UnsupportedConnectionType(
                f"Server '{connection.name}' uses unsupported connection "
                f"type '{connection.type}'"
            )
        return cls(connection)

    # -- properties ----------------------------------------------------------

    @property
    def name(self) -> str:
        return self._connection.name

    @property
    def connected(self) -> bool:
        """Whether the client is connected to the downstream server."""
        return self._connected

    @property
    def tools(self) -> list[dict[str, Any]]:
        """Tool descriptors discovered at connect time, in listing order."""
        return list(self._tools)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Spawn the downstream server, handshake and list its tools.

        Raises:
            DownstreamConnectionError: If the server cannot be started
                or the MCP handshake fails.
            DownstreamTimeoutError: If connection times out.
        """
        if self._connected:
            raise DownstreamConnectionError("Already connected")

        command = self._connection.command
        stack = AsyncExitStack()
        try:
            params = StdioServerParameters(
                command=command,
                args=list(self._connection.args),
                env=self._connection.env,
            )

            read_stream, write_stream = await stack.enter_async_context(
                stdio_client(params)
            )

            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream)
            )

            await asyncio.wait_for(
                session.initialize(), timeout=self._timeout
            )

            tools_result = await asyncio.wait_for(
                session.list_tools(), timeout=self._timeout
            )

            self._tools = [_tool_to_dict(t) for t in tools_result.tools]
            self._session = session
            self._exit_stack = stack
            self._connected = True
            logger.debug(
                "Connected to '%s' (%d tools)", self.name, len(self._tools),
            )

        except asyncio.TimeoutError:
            await _safe_close_stack(stack)
            raise DownstreamTimeoutError(
                f"Connection to '{self.name}' timed out "
                f"after {self._timeout}s"
            )
        except asyncio.CancelledError:
            # Outer wait_for expired; don't leave the child process behind
            await _safe_close_stack(stack)
            raise
        except OSError as e:
            await _safe_close_stack(stack)
            raise DownstreamConnectionError(
                f"Failed to start '{command}': {e}"
            ) from e
        except Exception as e:
            await _safe_close_stack(stack)
            raise DownstreamConnectionError(
                f"Failed to connect to '{self.name}': {e}"
            ) from e

    async def close(self) -> None:
        """Shut down the connection and terminate the child process."""
        self._connected = False
        self._session = None
        self._tools = []
        if self._exit_stack is not None:
            await _safe_close_stack(self._exit_stack)
            self._exit_stack = None

    # -- tool calls ----------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Forward a tool call to the downstream server.

        Never raises: timeouts, crashes and protocol errors come back as
        a result with ``isError=True`` and a descriptive message.
        """
        if not self._connected or self._session is None:
            return error_result("Not connected to downstream server")

        try:
            return await asyncio.wait_for(
                self._session.call_tool(name, arguments),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return error_result(
                f"Tool call '{name}' timed out after {self._timeout}s"
            )
        except Exception as e:
            self._connected = False
            return error_result(
                f"Tool call '{name}' failed: {type(e).__name__}: {e}"
            )

    # -- context manager -----------------------------------------------------

    async def __aenter__(self) -> DownstreamConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tool_to_dict(tool: Any) -> dict[str, Any]:
    """Convert an MCP Tool object to a plain dict preserving all fields."""
    return tool.model_dump(exclude_none=True)


def error_result(message: str) -> CallToolResult:
    """Create a ``CallToolResult`` representing an error."""
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        isError=True,
    )


async def _safe_close_stack(stack: AsyncExitStack) -> None:
    """Close an ``AsyncExitStack``, logging cleanup errors.

    Catches ``BaseException`` because ``asyncio.CancelledError`` can be
    raised while the child process is being torn down.
    """
    try:
        await stack.aclose()
    except BaseException:
        logger.debug("Error during stack cleanup", exc_info=True)
