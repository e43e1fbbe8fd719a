# session.py
# One live protocol channel to one tool server, spawned or remote.
#
# A ToolSession owns its Channel. Both channels run the MCP transport inside
# a dedicated owner task, so the transport is entered and exited from the
# same task. A stdio subprocess is terminated on every exit path: normal
# close, failed handshake, hung call, idle eviction and cancellation.
#
# Every transport failure is converted to a typed error at this boundary.

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Protocol, TextIO

import jsonschema
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, METHOD_NOT_FOUND

from mcp_workflow.errors import ConnectError, ToolCallError
from mcp_workflow.fingerprint import pool_key
from mcp_workflow.models import (
    AuthContext,
    SessionState,
    SpawnConfig,
    ToolCallErrorKind,
    ToolInfo,
    ToolServerDescriptor,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class Channel(Protocol):
    """Transport to one tool server."""

    async def open(self) -> list[ToolInfo]: ...

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[SpawnConfig], Channel]


class _OwnedChannel:
    """
    Runs one MCP SDK transport inside a dedicated owner task. Subclasses
    supply the transport as an async context manager yielding (read, write).
    """

    def __init__(self, config: SpawnConfig, close_timeout: float = 5.0) -> None:
        self._config = config
        self._close_timeout = close_timeout
        self._client: ClientSession | None = None
        self._tools: list[ToolInfo] = []
        self._error: BaseException | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def _transport(self) -> AsyncContextManager[tuple[Any, Any]]:
        raise NotImplementedError

    def _label(self) -> str:
        raise NotImplementedError

    async def open(self) -> list[ToolInfo]:
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self._label()}")
        await self._ready.wait()
        if self._error is not None:
            raise self._error
        if self._client is None:
            raise RuntimeError("Tool server went away during handshake.")
        return list(self._tools)

    async def _run(self) -> None:
        try:
            async with self._transport() as (read, write):
                async with ClientSession(read, write) as client:
                    await client.initialize()
                    listed = await client.list_tools()
                    self._tools = [
                        ToolInfo(
                            name=tool.name,
                            description=tool.description or "",
                            input_schema=tool.inputSchema or {},
                        )
                        for tool in listed.tools
                    ]
                    self._client = client
                    self._ready.set()
                    await self._stop.wait()
        except Exception as exc:
            self._error = exc
        finally:
            self._client = None
            self._ready.set()

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        if self._client is None:
            raise RuntimeError("Channel is not open.")
        return await self._client.call_tool(tool_name, arguments)

    async def close(self) -> None:
        self._stop.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), self._close_timeout)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class StdioChannel(_OwnedChannel):
    """MCP over the stdin/stdout of a child process, via the official SDK."""

    def __init__(self, config: SpawnConfig, errlog: TextIO | None = None, close_timeout: float = 5.0) -> None:
        super().__init__(config, close_timeout)
        self._errlog = errlog

    def _label(self) -> str:
        return f"stdio:{self._config.command}"

    def _transport(self) -> AsyncContextManager[tuple[Any, Any]]:
        params = StdioServerParameters(
            command=self._config.command,
            args=list(self._config.args),
            env=dict(self._config.env),
        )
        return stdio_client(params, errlog=self._errlog or sys.stderr)


class HttpChannel(_OwnedChannel):
    """MCP over streamable HTTP to an already running server."""

    def __init__(self, config: SpawnConfig, timeout: float = 30.0, close_timeout: float = 5.0) -> None:
        super().__init__(config, close_timeout)
        self._timeout = timeout

    def _label(self) -> str:
        return f"http:{self._config.url}"

    @asynccontextmanager
    async def _transport(self) -> AsyncIterator[tuple[Any, Any]]:
        async with streamablehttp_client(
            self._config.url,
            headers=dict(self._config.headers) or None,
            timeout=timedelta(seconds=self._timeout),
        ) as (read, write, _session_id):
            yield read, write


def stdio_channel_factory(config: SpawnConfig) -> Channel:
    return StdioChannel(config)


def http_channel_factory(config: SpawnConfig) -> Channel:
    return HttpChannel(config)


def default_channel_factory(config: SpawnConfig) -> Channel:
    """Pick the channel for the config's transport."""
    if config.transport == "http":
        return http_channel_factory(config)
    return stdio_channel_factory(config)


# ---------------------------------------------------------------------------
# ToolSession
# ---------------------------------------------------------------------------


class ToolSession:
    """
    A pooled session: lifecycle state, tool cache, reference count.

    Sessions are created and destroyed by the ConnectionPool only. The tool
    cache is filled on connect and never refreshed while the session lives.
    """

    def __init__(
        self,
        descriptor: ToolServerDescriptor,
        auth: AuthContext,
        channel: Channel,
        *,
        connect_timeout: float = 30.0,
        call_timeout: float = 60.0,
    ) -> None:
        self.descriptor = descriptor
        self.canonical_name = descriptor.canonical_name
        self.user_id = auth.user_id
        self.fingerprint = auth.fingerprint
        self.key = pool_key(descriptor.canonical_name, auth.fingerprint)
        self.state = SessionState.CONNECTING
        self.tools: list[ToolInfo] = []
        self.ref_count = 0
        self.in_flight = 0
        self.last_used_at = time.time()
        self._channel = channel
        self._connect_timeout = connect_timeout
        self._call_timeout = call_timeout

    def __repr__(self) -> str:
        return (
            f"ToolSession({self.canonical_name!r}, user={self.user_id!r}, "
            f"state={self.state.value}, refs={self.ref_count})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Spawn, handshake and discover tools. CONNECTING → READY, or DEGRADED + ConnectError."""
        try:
            tools = await asyncio.wait_for(self._channel.open(), self._connect_timeout)
        except asyncio.TimeoutError:
            await self._abandon()
            raise ConnectError(self.canonical_name, f"handshake timed out after {self._connect_timeout}s")
        except asyncio.CancelledError:
            await self._abandon()
            raise
        except Exception as exc:
            await self._abandon()
            raise ConnectError(self.canonical_name, str(exc) or type(exc).__name__) from exc

        self.tools = list(tools)
        self.state = SessionState.READY
        self.last_used_at = time.time()
        logger.info("Connected to %s (%d tools)", self.canonical_name, len(self.tools))

    async def _abandon(self) -> None:
        self.state = SessionState.DEGRADED
        await self._close_channel()

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await self._close_channel()
        logger.info("Closed session for %s", self.canonical_name)

    async def _close_channel(self) -> None:
        try:
            await self._channel.close()
        except Exception:
            logger.warning("Error while closing %s", self.canonical_name, exc_info=True)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        self.ref_count += 1
        self.last_used_at = time.time()

    def release(self) -> None:
        if self.ref_count > 0:
            self.ref_count -= 1
        self.last_used_at = time.time()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def is_idle(self) -> bool:
        return self.ref_count == 0 and self.in_flight == 0

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def tool(self, name: str) -> ToolInfo | None:
        for info in self.tools:
            if info.name == name:
                return info
        return None

    def validate_input(self, tool_name: str, arguments: dict[str, Any]) -> ToolInfo:
        """Check the tool exists and `arguments` satisfy its discovered input schema."""
        info = self.tool(tool_name)
        if info is None:
            available = ", ".join(t.name for t in self.tools) or "none"
            raise ToolCallError(
                ToolCallErrorKind.NOT_FOUND,
                f"Tool {tool_name!r} is not provided by {self.canonical_name!r} (available: {available}).",
                tool_name,
            )
        if info.input_schema:
            try:
                jsonschema.validate(arguments, info.input_schema)
            except jsonschema.ValidationError as exc:
                raise ToolCallError(
                    ToolCallErrorKind.INVALID_INPUT,
                    f"Input for {self.canonical_name}.{tool_name} is invalid: {exc.message}",
                    tool_name,
                ) from exc
            except jsonschema.SchemaError:
                logger.warning("%s.%s advertises an invalid input schema; skipping validation",
                               self.canonical_name, tool_name)
        return info

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """
        Invoke one tool under a hard timeout and return the raw result.

        A timeout kills the channel and leaves the session DEGRADED so the pool
        replaces it on next use. Transport failures degrade it as well.
        """
        if not self.is_ready:
            raise ToolCallError(
                ToolCallErrorKind.REMOTE_FAILURE,
                f"Session for {self.canonical_name!r} is {self.state.value}.",
                tool_name,
            )
        self.validate_input(tool_name, arguments)

        self.in_flight += 1
        try:
            return await asyncio.wait_for(self._channel.call(tool_name, arguments), self._call_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s.%s timed out after %ss; killing session",
                           self.canonical_name, tool_name, self._call_timeout)
            self.state = SessionState.DEGRADED
            await self._close_channel()
            raise ToolCallError(
                ToolCallErrorKind.TIMEOUT,
                f"{self.canonical_name}.{tool_name} timed out after {self._call_timeout}s.",
                tool_name,
            )
        except McpError as exc:
            code = exc.error.code
            if code == INVALID_PARAMS:
                kind = ToolCallErrorKind.INVALID_INPUT
            elif code == METHOD_NOT_FOUND:
                kind = ToolCallErrorKind.NOT_FOUND
            else:
                kind = ToolCallErrorKind.REMOTE_FAILURE
            raise ToolCallError(kind, f"{self.canonical_name}.{tool_name}: {exc.error.message}", tool_name) from exc
        except ToolCallError:
            raise
        except Exception as exc:
            logger.warning("%s.%s failed at the transport level: %s", self.canonical_name, tool_name, exc)
            self.state = SessionState.DEGRADED
            raise ToolCallError(
                ToolCallErrorKind.REMOTE_FAILURE,
                f"{self.canonical_name}.{tool_name} failed: {exc or type(exc).__name__}",
                tool_name,
            ) from exc
        finally:
            self.in_flight -= 1
            self.last_used_at = time.time()
