# auth.py
# Per-user credential lookup, the pre-execution AuthGate, and credential
# injection into spawn configs.
#
# This module only reads credentials. Verification and storage belong to an
# external auth flow.

import logging
import re
from typing import Iterable, Protocol

from mcp_workflow.errors import AuthRequiredError
from mcp_workflow.fingerprint import ANONYMOUS, credential_fingerprint
from mcp_workflow.models import (
    AuthCheck,
    AuthContext,
    AuthRecord,
    MissingAuth,
    SpawnConfig,
    ToolServerDescriptor,
)
from mcp_workflow.registry import ToolServerRegistry

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------------------------------------------------------------------------
# Credential store boundary
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    async def get(self, user_id: str, canonical_name: str) -> AuthRecord | None: ...


class InMemoryCredentialStore:
    """Dict-backed store for embedding and tests."""

    def __init__(self, records: Iterable[AuthRecord] = ()) -> None:
        self._records: dict[tuple[str, str], AuthRecord] = {}
        for record in records:
            self.put(record)

    def put(self, record: AuthRecord) -> None:
        self._records[(record.user_id, record.canonical_name)] = record

    async def get(self, user_id: str, canonical_name: str) -> AuthRecord | None:
        return self._records.get((user_id, canonical_name))


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def _unmet_keys(descriptor: ToolServerDescriptor, record: AuthRecord | None) -> list[str]:
    if record is None or not record.verified:
        return list(descriptor.auth_schema)
    return [key for key in descriptor.auth_schema if not record.credentials.get(key)]


class AuthGate:
    """
    Decides, before any dispatch, whether a user holds verified credentials
    for every tool server a task needs.
    """

    def __init__(self, registry: ToolServerRegistry, store: CredentialStore) -> None:
        self._registry = registry
        self._store = store

    async def check(self, user_id: str, canonical_names: Iterable[str]) -> AuthCheck:
        missing: list[MissingAuth] = []
        seen: set[str] = set()
        for name in canonical_names:
            if name in seen:
                continue
            seen.add(name)
            descriptor = self._registry[name]
            if not descriptor.requires_auth:
                continue
            record = await self._store.get(user_id, name)
            if _unmet_keys(descriptor, record):
                missing.append(MissingAuth(canonical_name=name, auth_schema=dict(descriptor.auth_schema)))
        if missing:
            logger.info("User %s is missing auth for %s", user_id, [m.canonical_name for m in missing])
        return AuthCheck(satisfied=not missing, missing=missing)

    async def require(self, user_id: str, canonical_names: Iterable[str]) -> None:
        result = await self.check(user_id, canonical_names)
        if not result.satisfied:
            raise AuthRequiredError(result.missing)

    async def context_for(self, user_id: str, canonical_name: str) -> AuthContext:
        """
        Credentials and fingerprint for one (user, server) pair.

        Servers without an auth schema get the shared anonymous context and
        are pooled once for everyone.
        """
        descriptor = self._registry[canonical_name]
        if not descriptor.requires_auth:
            return AuthContext(user_id=None, credentials={}, fingerprint=ANONYMOUS)

        record = await self._store.get(user_id, canonical_name)
        if _unmet_keys(descriptor, record):
            raise AuthRequiredError(
                [MissingAuth(canonical_name=canonical_name, auth_schema=dict(descriptor.auth_schema))]
            )
        credentials = {key: record.credentials[key] for key in descriptor.auth_schema}
        return AuthContext(
            user_id=user_id,
            credentials=credentials,
            fingerprint=credential_fingerprint(credentials, user_id),
        )


# ---------------------------------------------------------------------------
# Credential injection
# ---------------------------------------------------------------------------


def _substitute(template: str, credentials: dict[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: credentials.get(m.group(1), ""), template)


def build_spawn_config(descriptor: ToolServerDescriptor, credentials: dict[str, str]) -> SpawnConfig:
    """
    Resolve a descriptor's spawn template against one credential set.

    An env value of "" is a credential slot named by its key; ${NAME}
    anywhere in an env value, argument, url or header is replaced by
    credential NAME. Headers that resolve to an empty value are dropped.
    Nothing is taken from the host environment, so one user's secrets can
    only reach a process spawned for that user.
    """
    env: dict[str, str] = {}
    for key, template in descriptor.spawn.env.items():
        value = credentials.get(key, "") if template == "" else _substitute(template, credentials)
        if value:
            env[key] = value
    args = tuple(_substitute(arg, credentials) for arg in descriptor.spawn.args)
    headers = {key: _substitute(value, credentials) for key, value in descriptor.spawn.headers.items()}
    return SpawnConfig(
        transport=descriptor.transport,
        command=descriptor.spawn.command,
        args=args,
        env=env,
        url=_substitute(descriptor.spawn.url, credentials),
        headers={key: value for key, value in headers.items() if value.strip()},
    )
