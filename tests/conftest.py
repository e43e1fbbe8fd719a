import asyncio
import inspect
from collections import defaultdict
from typing import Any

import pytest
import pytest_asyncio

from mcp_workflow.auth import AuthGate, InMemoryCredentialStore
from mcp_workflow.config import Settings
from mcp_workflow.models import AuthRecord, SpawnConfig, SpawnSpec, ToolInfo, ToolServerDescriptor
from mcp_workflow.pool import ConnectionPool
from mcp_workflow.registry import ToolServerRegistry

# ---------------------------------------------------------------------------
# Fake tool server channel
# ---------------------------------------------------------------------------

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}

FAKE_TOOLS = [
    ToolInfo(name="echo", description="Echo text back", input_schema=ECHO_SCHEMA),
    ToolInfo(name="whoami", description="Return the token the server was spawned with"),
    ToolInfo(name="flaky", description="Scripted outcomes"),
    ToolInfo(name="hang", description="Never returns"),
]


def text_result(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}], "isError": False}


def _echo(arguments: dict, config: SpawnConfig) -> dict:
    return text_result(arguments["text"])


def _whoami(arguments: dict, config: SpawnConfig) -> dict:
    return text_result(config.env.get("VAULT_TOKEN", "anonymous"))


async def _hang(arguments: dict, config: SpawnConfig) -> dict:
    await asyncio.sleep(3600)
    return text_result("unreachable")


class FakeChannel:
    def __init__(self, config: SpawnConfig, factory: "FakeChannelFactory") -> None:
        self.config = config
        self.factory = factory
        self.closed = False

    async def open(self) -> list[ToolInfo]:
        self.factory.opens += 1
        if self.factory.open_delay:
            await asyncio.sleep(self.factory.open_delay)
        if self.factory.fail_opens > 0:
            self.factory.fail_opens -= 1
            raise OSError("spawn failed")
        return list(self.factory.tools)

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        self.factory.calls.append((self.config.command, tool_name, dict(arguments)))
        script = self.factory.scripts.get(tool_name)
        if script:
            outcome = script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        result = self.factory.handlers[tool_name](arguments, self.config)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeChannelFactory:
    """Stands in for process spawning. Records every channel it creates."""

    def __init__(self) -> None:
        self.tools = list(FAKE_TOOLS)
        self.handlers = {"echo": _echo, "whoami": _whoami, "hang": _hang, "flaky": _echo}
        self.scripts: dict[str, list[Any]] = defaultdict(list)
        self.channels: list[FakeChannel] = []
        self.calls: list[tuple[str, str, dict]] = []
        self.opens = 0
        self.fail_opens = 0
        self.open_delay = 0.0

    def __call__(self, config: SpawnConfig) -> FakeChannel:
        channel = FakeChannel(config, self)
        self.channels.append(channel)
        return channel

    def script(self, tool_name: str, *outcomes: Any) -> None:
        self.scripts[tool_name].extend(outcomes)

    @property
    def spawned(self) -> list[SpawnConfig]:
        return [channel.config for channel in self.channels]


# ---------------------------------------------------------------------------
# Fake LLM
# ---------------------------------------------------------------------------


class FakeLLM:
    """Replays canned planner replies in order; records every prompt."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def complete(self, prompt: str, options=None) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            return '{"done": true, "final_answer": "out of replies"}'
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_registry() -> ToolServerRegistry:
    return ToolServerRegistry(
        [
            ToolServerDescriptor(
                canonical_name="echo-mcp",
                aliases=frozenset({"echo", "parrot"}),
                spawn=SpawnSpec(command="echo-server"),
                category="Testing",
                description="Echoes input.",
            ),
            ToolServerDescriptor(
                canonical_name="vault-mcp-server",
                aliases=frozenset({"vault"}),
                spawn=SpawnSpec(command="vault-server", args=("--token", "${VAULT_TOKEN}"), env={"VAULT_TOKEN": ""}),
                category="Testing",
                description="Needs a per-user token.",
                auth_schema={"VAULT_TOKEN": "Vault access token"},
            ),
            ToolServerDescriptor(
                canonical_name="remote-mcp",
                spawn=SpawnSpec(
                    url="https://mcp.example.com/${REMOTE_TENANT}/mcp",
                    headers={"Authorization": "Bearer ${REMOTE_TOKEN}"},
                ),
                transport="http",
                auth_schema={"REMOTE_TENANT": "Tenant id", "REMOTE_TOKEN": "API token"},
            ),
        ]
    )


@pytest.fixture
def registry() -> ToolServerRegistry:
    return make_registry()


@pytest.fixture
def factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore(
        [
            AuthRecord(user_id="alice", canonical_name="vault-mcp-server", credentials={"VAULT_TOKEN": "alice-token"}),
            AuthRecord(user_id="bob", canonical_name="vault-mcp-server", credentials={"VAULT_TOKEN": "bob-token"}),
            AuthRecord(
                user_id="alice",
                canonical_name="remote-mcp",
                credentials={"REMOTE_TENANT": "acme", "REMOTE_TOKEN": "alice-remote"},
            ),
        ]
    )


@pytest.fixture
def gate(registry, store) -> AuthGate:
    return AuthGate(registry, store)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_iterations=10,
        retry_budget=3,
        loop_threshold=3,
        max_parse_errors=3,
        tool_timeout=0.2,
        connect_timeout=1.0,
        connect_attempts=3,
        connect_backoff=0.0,
        planner_timeout=1.0,
    )


@pytest_asyncio.fixture(scope="function")
async def pool(registry, factory, settings):
    pool = ConnectionPool.from_settings(registry, settings, channel_factory=factory)
    yield pool
    await pool.close()
