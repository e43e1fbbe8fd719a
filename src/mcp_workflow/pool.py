# pool.py
# Multi-tenant connection pool for tool server sessions.
#
# Sessions are keyed by (canonical name, credential fingerprint). The same
# server under two fingerprints is always two sessions and two processes.
# Concurrent connects for one key share a single in-flight spawn; there is
# no global lock.

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from mcp_workflow.auth import build_spawn_config
from mcp_workflow.errors import ConnectError
from mcp_workflow.fingerprint import pool_key
from mcp_workflow.models import AuthContext, PoolStatusEntry, SessionState, ToolInfo
from mcp_workflow.registry import ToolServerRegistry
from mcp_workflow.retry import retry_async
from mcp_workflow.session import ChannelFactory, ToolSession, default_channel_factory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectResult:
    session: ToolSession
    already_connected: bool


@dataclass(frozen=True)
class DisconnectResult:
    was_connected: bool


class ConnectionPool:
    """
    Owns every ToolSession: connect, reuse, release, evict.

    Example:
        async with ConnectionPool(registry) as pool:
            result = await pool.ensure_connected("github-mcp-server", auth)
            try:
                raw = await pool.call_tool(result.session, "search_repositories", {"query": "mcp"})
            finally:
                pool.release(result.session)
    """

    def __init__(
        self,
        registry: ToolServerRegistry,
        *,
        channel_factory: ChannelFactory = default_channel_factory,
        connect_timeout: float = 30.0,
        call_timeout: float = 60.0,
        connect_attempts: int = 3,
        connect_backoff: float = 0.5,
        idle_ttl: float = 300.0,
        sweep_interval: float = 60.0,
    ) -> None:
        self._registry = registry
        self._channel_factory = channel_factory
        self._connect_timeout = connect_timeout
        self._call_timeout = call_timeout
        self._connect_attempts = connect_attempts
        self._connect_backoff = connect_backoff
        self._idle_ttl = idle_ttl
        self._sweep_interval = sweep_interval
        self._sessions: dict[str, ToolSession] = {}
        self._connecting: dict[str, asyncio.Future[ToolSession]] = {}
        self._waiting: dict[str, int] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, registry: ToolServerRegistry, settings: Any, **kwargs: Any) -> "ConnectionPool":
        return cls(
            registry,
            connect_timeout=settings.connect_timeout,
            call_timeout=settings.tool_timeout,
            connect_attempts=settings.connect_attempts,
            connect_backoff=settings.connect_backoff,
            idle_ttl=settings.idle_ttl,
            sweep_interval=settings.sweep_interval,
            **kwargs,
        )

    async def __aenter__(self) -> "ConnectionPool":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def ensure_connected(self, canonical_name: str, auth: AuthContext) -> ConnectResult:
        """
        Return a READY session for (canonical_name, auth.fingerprint), holding
        one reference for the caller. Spawns at most one process per key.

        Raises ConnectError (retryable) when the spawn keeps failing, and
        NameNotFoundError for names outside the registry.
        """
        descriptor = self._registry[canonical_name]
        key = pool_key(canonical_name, auth.fingerprint)

        session = self._sessions.get(key)
        if session is not None:
            if session.is_ready:
                session.acquire()
                logger.debug("Reusing session for %s", canonical_name)
                return ConnectResult(session, already_connected=True)
            logger.info("Evicting %s session for %s", session.state.value, canonical_name)
            await self._evict(key, session)

        pending = self._connecting.get(key)
        spawned_here = pending is None
        if pending is None:
            pending = asyncio.ensure_future(self._spawn(key, descriptor, auth))
            self._connecting[key] = pending
            pending.add_done_callback(lambda fut, key=key: self._forget_connect(key, fut))

        # A published session with pending waiters is not idle until each waiter holds its reference.
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            session = await asyncio.shield(pending)
            session.acquire()
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
        return ConnectResult(session, already_connected=not spawned_here)

    def _is_idle(self, key: str, session: ToolSession) -> bool:
        return session.is_idle and key not in self._waiting

    def _forget_connect(self, key: str, future: asyncio.Future[ToolSession]) -> None:
        if self._connecting.get(key) is future:
            del self._connecting[key]
        if not future.cancelled():
            # Consume the exception so an abandoned failed connect is never reported as unretrieved.
            future.exception()

    async def _spawn(self, key: str, descriptor: Any, auth: AuthContext) -> ToolSession:
        name = descriptor.canonical_name
        config = build_spawn_config(descriptor, auth.credentials)
        attempts = 0
        last: ToolSession | None = None

        async def attempt() -> ToolSession:
            nonlocal attempts, last
            attempts += 1
            last = ToolSession(
                descriptor,
                auth,
                self._channel_factory(config),
                connect_timeout=self._connect_timeout,
                call_timeout=self._call_timeout,
            )
            await last.connect()
            return last

        def on_retry(n: int, exc: BaseException) -> None:
            logger.warning("Connect attempt %d to %s failed: %s", n, name, exc)

        try:
            session = await retry_async(
                attempt,
                attempts=self._connect_attempts,
                backoff=self._connect_backoff,
                on_retry=on_retry,
            )
        except ConnectError as exc:
            if last is not None:
                # Keep the degraded entry visible in status until the next connect or sweep.
                self._sessions[key] = last
            logger.error("Giving up on %s after %d attempt(s)", name, attempts)
            raise ConnectError(name, exc.reason, attempts, retryable=exc.retryable) from exc

        self._sessions[key] = session
        return session

    async def disconnect(self, canonical_name: str, auth: AuthContext) -> DisconnectResult:
        """
        Drop one reference. The process is terminated and the entry removed
        only when no references remain. Unknown keys are a no-op.
        """
        key = pool_key(canonical_name, auth.fingerprint)
        session = self._sessions.get(key)
        if session is None:
            return DisconnectResult(was_connected=False)
        session.release()
        if self._is_idle(key, session):
            await self._evict(key, session)
        return DisconnectResult(was_connected=True)

    def release(self, session: ToolSession) -> None:
        """Drop one reference but keep the session pooled for reuse."""
        session.release()

    async def _evict(self, key: str, session: ToolSession) -> None:
        if self._sessions.get(key) is session:
            del self._sessions[key]
        await session.close()

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def list_tools(self, session: ToolSession) -> list[ToolInfo]:
        return list(session.tools)

    async def call_tool(self, session: ToolSession, tool_name: str, tool_input: dict[str, Any]) -> Any:
        return await session.call_tool(tool_name, tool_input)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def sweep_idle(self, now: float | None = None) -> list[str]:
        """
        Evict sessions unused for longer than the idle TTL, and degraded ones.
        Sessions with references, in-flight calls or callers still waiting on
        their connect are never touched.
        """
        now = time.time() if now is None else now
        evicted: list[str] = []
        for key, session in list(self._sessions.items()):
            if not self._is_idle(key, session):
                continue
            expired = now - session.last_used_at >= self._idle_ttl
            if expired or session.state in (SessionState.DEGRADED, SessionState.CLOSED):
                await self._evict(key, session)
                evicted.append(session.canonical_name)
        if evicted:
            logger.info("Idle sweep evicted %s", evicted)
        return evicted

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("Idle sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="mcp-pool-sweeper")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> list[PoolStatusEntry]:
        return [
            PoolStatusEntry(
                name=session.canonical_name,
                user_id=session.user_id,
                state=session.state,
                tool_count=len(session.tools),
                last_used_at=datetime.fromtimestamp(session.last_used_at, tz=timezone.utc),
                ref_count=session.ref_count,
            )
            for session in self._sessions.values()
        ]
