# registry.py
# Static catalog of tool server descriptors.
#
# A registry is a value: load it once and pass it by reference into the
# NameResolver and the ConnectionPool. There is no module-level instance, so
# independent pools can coexist (tests rely on this).

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

import httpx
from pydantic import ValidationError

from mcp_workflow.errors import NameNotFoundError, RegistryError
from mcp_workflow.models import SpawnSpec, ToolServerDescriptor


class ToolServerRegistry:
    """Immutable catalog keyed by canonical name, with a flat alias table."""

    def __init__(self, descriptors: Iterable[ToolServerDescriptor]) -> None:
        servers: dict[str, ToolServerDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.canonical_name in servers:
                raise RegistryError(f"Duplicate canonical name {descriptor.canonical_name!r}.")
            servers[descriptor.canonical_name] = descriptor

        aliases: dict[str, str] = {}
        for descriptor in servers.values():
            for alias in descriptor.aliases:
                if alias == descriptor.canonical_name:
                    continue
                if alias in servers:
                    raise RegistryError(
                        f"Alias {alias!r} of {descriptor.canonical_name!r} shadows a canonical name."
                    )
                owner = aliases.get(alias)
                if owner is not None and owner != descriptor.canonical_name:
                    raise RegistryError(
                        f"Alias {alias!r} is claimed by both {owner!r} and {descriptor.canonical_name!r}."
                    )
                aliases[alias] = descriptor.canonical_name

        self._servers: Mapping[str, ToolServerDescriptor] = MappingProxyType(servers)
        self._aliases: Mapping[str, str] = MappingProxyType(aliases)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, canonical_name: str) -> ToolServerDescriptor | None:
        return self._servers.get(canonical_name)

    def __getitem__(self, canonical_name: str) -> ToolServerDescriptor:
        descriptor = self._servers.get(canonical_name)
        if descriptor is None:
            raise NameNotFoundError(canonical_name)
        return descriptor

    def __contains__(self, canonical_name: object) -> bool:
        return canonical_name in self._servers

    def __iter__(self) -> Iterator[ToolServerDescriptor]:
        return iter(self._servers.values())

    def __len__(self) -> int:
        return len(self._servers)

    @property
    def aliases(self) -> Mapping[str, str]:
        """Alias → canonical name."""
        return self._aliases

    def names(self) -> list[str]:
        return list(self._servers)

    def categories(self) -> list[str]:
        return sorted({d.category for d in self._servers.values() if d.category})

    def by_category(self, category: str) -> list[ToolServerDescriptor]:
        return [d for d in self._servers.values() if d.category == category]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ToolServerRegistry":
        """
        Build a registry from the MCP client config shape:

            {"servers": {"github": {"command": "npx", "args": [...], "env": {...},
                                    "aliases": [...], "auth_schema": {...}},
                         "search": {"url": "https://...", "headers": {...}}}}

        An entry with a `url` and no `command` is an http server.
        """
        servers = data.get("servers")
        if not isinstance(servers, Mapping):
            raise RegistryError("Registry config must contain a 'servers' object.")

        descriptors = []
        for name, entry in servers.items():
            if not isinstance(entry, Mapping) or not ("command" in entry or "url" in entry):
                raise RegistryError(f"Server {name!r} must define a 'command' or a 'url'.")
            default_transport = "stdio" if "command" in entry else "http"
            try:
                descriptor = ToolServerDescriptor(
                    canonical_name=name,
                    aliases=frozenset(entry.get("aliases", ())),
                    spawn=SpawnSpec(
                        command=entry.get("command", ""),
                        args=tuple(entry.get("args", ())),
                        env=dict(entry.get("env", {})),
                        url=entry.get("url", ""),
                        headers=dict(entry.get("headers", {})),
                    ),
                    category=entry.get("category", ""),
                    description=entry.get("description", ""),
                    auth_schema=dict(entry.get("auth_schema", entry.get("authParams", {}))),
                    transport=entry.get("transport", default_transport),
                )
            except ValidationError as exc:
                raise RegistryError(f"Server {name!r} is misconfigured: {exc}") from exc
            descriptors.append(descriptor)
        return cls(descriptors)

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolServerRegistry":
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Failed to load tool server registry from {path}: {exc}") from exc
        return cls.from_mapping(data)

    @classmethod
    def from_url(cls, url: str, timeout: float = 10.0) -> "ToolServerRegistry":
        """Fetch a shared catalog published over HTTP(S)."""
        try:
            response = httpx.get(url, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Failed to load tool server registry from {url}: {exc}") from exc
        return cls.from_mapping(data)

    @classmethod
    def load(cls, location: str | Path) -> "ToolServerRegistry":
        """A file path or an http(s) URL."""
        if str(location).startswith(("http://", "https://")):
            return cls.from_url(str(location))
        return cls.from_file(location)


# ---------------------------------------------------------------------------
# Built-in catalog
# ---------------------------------------------------------------------------


def _npx(package: str, *extra: str) -> SpawnSpec:
    return SpawnSpec(command="npx", args=("-y", package, *extra))


_DEFAULT_SERVERS: tuple[ToolServerDescriptor, ...] = (
    ToolServerDescriptor(
        canonical_name="playwright",
        aliases=frozenset({"playwright-mcp", "playwright-mcp-service", "browser"}),
        spawn=SpawnSpec(command="npx", args=("@playwright/mcp@latest",)),
        category="Automation",
        description="Browser automation through Playwright.",
    ),
    ToolServerDescriptor(
        canonical_name="12306-mcp",
        aliases=frozenset({"12306-mcp-service", "train"}),
        spawn=_npx("12306-mcp"),
        category="Travel",
        description="China Railway 12306 ticket search.",
    ),
    ToolServerDescriptor(
        canonical_name="evm-mcp",
        aliases=frozenset({"evm-mcp-server", "evm-mcp-service", "ethereum"}),
        spawn=_npx("@mcpdotdirect/evm-mcp-server"),
        category="Chain RPC",
        description="EVM blockchain access across 30+ networks.",
    ),
    ToolServerDescriptor(
        canonical_name="coingecko-mcp",
        aliases=frozenset({"coingecko", "coingecko-server", "coingecko-mcp-service"}),
        spawn=SpawnSpec(
            command="npx",
            args=("-y", "@coingecko/coingecko-mcp"),
            env={"COINGECKO_API_KEY": ""},
        ),
        category="Market Data",
        description="CoinGecko market data, historical prices and OHLC candles.",
        auth_schema={"COINGECKO_API_KEY": "CoinGecko API key"},
    ),
    ToolServerDescriptor(
        canonical_name="coinmarketcap-mcp-service",
        aliases=frozenset({"coinmarketcap", "cmc", "coinmarketcap-mcp"}),
        spawn=SpawnSpec(
            command="npx",
            args=("-y", "coinmarketcap-mcp"),
            env={"COINMARKETCAP_API_KEY": ""},
        ),
        category="Market Data",
        description="CoinMarketCap market data and analytics.",
        auth_schema={"COINMARKETCAP_API_KEY": "CoinMarketCap API key"},
    ),
    ToolServerDescriptor(
        canonical_name="dexscreener-mcp-server",
        aliases=frozenset({"dexscreener"}),
        spawn=_npx("dexscreener-mcp-server"),
        category="Market Data",
        description="DEX Screener pair and token data.",
    ),
    ToolServerDescriptor(
        canonical_name="github-mcp-server",
        aliases=frozenset({"github", "github-mcp"}),
        spawn=SpawnSpec(
            command="npx",
            args=("-y", "@modelcontextprotocol/server-github"),
            env={"GITHUB_PERSONAL_ACCESS_TOKEN": ""},
        ),
        category="Dev Tool",
        description="GitHub repository management.",
        auth_schema={"GITHUB_PERSONAL_ACCESS_TOKEN": "GitHub personal access token"},
    ),
    ToolServerDescriptor(
        canonical_name="x-mcp",
        aliases=frozenset({"twitter", "x-mcp-server"}),
        spawn=SpawnSpec(
            command="npx",
            args=("-y", "x-mcp-server"),
            env={
                "TWITTER_API_KEY": "",
                "TWITTER_API_SECRET": "",
                "TWITTER_ACCESS_TOKEN": "",
                "TWITTER_ACCESS_SECRET": "",
            },
        ),
        category="Social",
        description="X (Twitter) timeline reading and posting.",
        auth_schema={
            "TWITTER_API_KEY": "X API key",
            "TWITTER_API_SECRET": "X API secret",
            "TWITTER_ACCESS_TOKEN": "X access token",
            "TWITTER_ACCESS_SECRET": "X access token secret",
        },
    ),
    ToolServerDescriptor(
        canonical_name="notion-mcp-server",
        aliases=frozenset({"notion", "notion-mcp", "notion-mcp-service"}),
        spawn=SpawnSpec(
            command="npx",
            args=("-y", "@notionhq/notion-mcp-server"),
            env={"OPENAPI_MCP_HEADERS": '{"Authorization": "Bearer ${NOTION_TOKEN}", "Notion-Version": "2022-06-28"}'},
        ),
        category="Productivity",
        description="Notion workspace pages and databases.",
        auth_schema={"NOTION_TOKEN": "Notion integration token"},
    ),
)


def default_registry() -> ToolServerRegistry:
    return ToolServerRegistry(_DEFAULT_SERVERS)
