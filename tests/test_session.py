import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, ErrorData

from mcp_workflow.errors import ConnectError, ToolCallError
from mcp_workflow.fingerprint import ANONYMOUS
from mcp_workflow.models import AuthContext, SessionState, SpawnConfig, ToolCallErrorKind
from mcp_workflow.session import HttpChannel, StdioChannel, ToolSession, default_channel_factory

ANON = AuthContext(user_id=None, credentials={}, fingerprint=ANONYMOUS)


async def _session(registry, factory, **kwargs) -> ToolSession:
    channel = factory(SpawnConfig(command="echo-server"))
    session = ToolSession(registry["echo-mcp"], ANON, channel, **kwargs)
    await session.connect()
    return session


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def test_connect_discovers_tools(registry, factory):
    session = await _session(registry, factory)
    assert session.state is SessionState.READY
    assert [t.name for t in session.tools] == ["echo", "whoami", "flaky", "hang"]


async def test_failed_handshake_degrades_and_closes_channel(registry, factory):
    factory.fail_opens = 1
    channel = factory(SpawnConfig(command="echo-server"))
    session = ToolSession(registry["echo-mcp"], ANON, channel)

    with pytest.raises(ConnectError) as excinfo:
        await session.connect()

    assert excinfo.value.retryable
    assert session.state is SessionState.DEGRADED
    assert channel.closed


async def test_handshake_timeout_is_a_connect_error(registry, factory):
    factory.open_delay = 1.0
    channel = factory(SpawnConfig(command="echo-server"))
    session = ToolSession(registry["echo-mcp"], ANON, channel, connect_timeout=0.05)

    with pytest.raises(ConnectError, match="timed out"):
        await session.connect()
    assert session.state is SessionState.DEGRADED


async def test_close_is_idempotent(registry, factory):
    session = await _session(registry, factory)
    await session.close()
    await session.close()
    assert session.state is SessionState.CLOSED
    assert factory.channels[0].closed


async def test_release_never_goes_negative(registry, factory):
    session = await _session(registry, factory)
    session.acquire()
    session.release()
    session.release()
    assert session.ref_count == 0


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

async def test_call_tool_returns_raw_result(registry, factory):
    session = await _session(registry, factory)
    raw = await session.call_tool("echo", {"text": "hi"})
    assert raw["content"][0]["text"] == "hi"
    assert session.in_flight == 0


async def test_unknown_tool_is_not_found(registry, factory):
    session = await _session(registry, factory)
    with pytest.raises(ToolCallError) as excinfo:
        await session.call_tool("teleport", {})
    assert excinfo.value.error_kind is ToolCallErrorKind.NOT_FOUND
    assert not excinfo.value.retryable
    assert factory.calls == []


async def test_schema_violation_is_invalid_input_before_dispatch(registry, factory):
    session = await _session(registry, factory)
    with pytest.raises(ToolCallError) as excinfo:
        await session.call_tool("echo", {"text": 42})
    assert excinfo.value.error_kind is ToolCallErrorKind.INVALID_INPUT
    assert factory.calls == []


async def test_remote_invalid_params_maps_to_invalid_input(registry, factory):
    factory.script("flaky", McpError(ErrorData(code=INVALID_PARAMS, message="bad argument")))
    session = await _session(registry, factory)
    with pytest.raises(ToolCallError) as excinfo:
        await session.call_tool("flaky", {})
    assert excinfo.value.error_kind is ToolCallErrorKind.INVALID_INPUT
    assert session.state is SessionState.READY


async def test_hung_call_times_out_and_degrades_session(registry, factory):
    session = await _session(registry, factory, call_timeout=0.05)

    with pytest.raises(ToolCallError) as excinfo:
        await session.call_tool("hang", {})

    assert excinfo.value.error_kind is ToolCallErrorKind.TIMEOUT
    assert excinfo.value.retryable
    assert session.state is SessionState.DEGRADED
    assert factory.channels[0].closed
    assert session.in_flight == 0


async def test_transport_failure_is_remote_failure(registry, factory):
    factory.script("flaky", BrokenPipeError("pipe closed"))
    session = await _session(registry, factory)
    with pytest.raises(ToolCallError) as excinfo:
        await session.call_tool("flaky", {})
    assert excinfo.value.error_kind is ToolCallErrorKind.REMOTE_FAILURE
    assert session.state is SessionState.DEGRADED


async def test_calls_on_degraded_session_fail_fast(registry, factory):
    session = await _session(registry, factory)
    session.state = SessionState.DEGRADED
    with pytest.raises(ToolCallError):
        await session.call_tool("echo", {"text": "x"})
    assert factory.calls == []


async def test_cancellation_is_not_converted(registry, factory):
    session = await _session(registry, factory, call_timeout=5)
    call = asyncio.create_task(session.call_tool("hang", {}))
    await asyncio.sleep(0.01)
    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call
    assert session.in_flight == 0


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class _ScriptedClientSession:
    """Replaces mcp.ClientSession over whatever streams the transport yields."""

    def __init__(self, read, write):
        self.streams = (read, write)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def initialize(self):
        return None

    async def list_tools(self):
        tool = SimpleNamespace(name="search", description=None, inputSchema={"type": "object"})
        return SimpleNamespace(tools=[tool])

    async def call_tool(self, name, arguments):
        return {"tool": name, "arguments": arguments}


def test_default_factory_picks_channel_by_transport():
    assert isinstance(default_channel_factory(SpawnConfig(command="echo-server")), StdioChannel)
    assert isinstance(
        default_channel_factory(SpawnConfig(transport="http", url="https://mcp.example.com/mcp")),
        HttpChannel,
    )


async def test_http_channel_opens_calls_and_closes():
    opened = {}

    @asynccontextmanager
    async def fake_streamablehttp_client(url, headers=None, timeout=None):
        opened.update(url=url, headers=headers)
        yield "read", "write", lambda: "session-id"
        opened["closed"] = True

    config = SpawnConfig(
        transport="http",
        url="https://mcp.example.com/acme/mcp",
        headers={"Authorization": "Bearer alice-remote"},
    )
    with patch("mcp_workflow.session.streamablehttp_client", fake_streamablehttp_client), \
            patch("mcp_workflow.session.ClientSession", _ScriptedClientSession):
        channel = HttpChannel(config)
        tools = await channel.open()
        result = await channel.call("search", {"q": "mcp"})
        await channel.close()

    assert [t.name for t in tools] == ["search"]
    assert tools[0].description == ""
    assert result == {"tool": "search", "arguments": {"q": "mcp"}}
    assert opened == {
        "url": "https://mcp.example.com/acme/mcp",
        "headers": {"Authorization": "Bearer alice-remote"},
        "closed": True,
    }


async def test_http_channel_connection_failure_surfaces_on_open():
    @asynccontextmanager
    async def refusing_client(url, headers=None, timeout=None):
        raise ConnectionRefusedError("refused")
        yield

    with patch("mcp_workflow.session.streamablehttp_client", refusing_client):
        channel = HttpChannel(SpawnConfig(transport="http", url="https://mcp.example.com/mcp"))
        with pytest.raises(ConnectionRefusedError):
            await channel.open()
