import pytest

from mcp_workflow.auth import AuthGate, InMemoryCredentialStore, build_spawn_config
from mcp_workflow.errors import AuthRequiredError
from mcp_workflow.fingerprint import ANONYMOUS, credential_fingerprint
from mcp_workflow.models import AuthRecord
from mcp_workflow.registry import default_registry


# ---------------------------------------------------------------------------
# AuthGate.check
# ---------------------------------------------------------------------------

async def test_servers_without_auth_schema_are_always_satisfied(gate):
    result = await gate.check("nobody", ["echo-mcp"])
    assert result.satisfied
    assert result.missing == []


async def test_check_reports_every_missing_server_once(gate):
    result = await gate.check("carol", ["vault-mcp-server", "echo-mcp", "vault-mcp-server"])
    assert not result.satisfied
    assert [m.canonical_name for m in result.missing] == ["vault-mcp-server"]
    assert result.missing[0].auth_schema == {"VAULT_TOKEN": "Vault access token"}


async def test_unverified_or_incomplete_records_do_not_satisfy():
    registry = default_registry()
    store = InMemoryCredentialStore([
        AuthRecord(user_id="u", canonical_name="github-mcp-server",
                   credentials={"GITHUB_PERSONAL_ACCESS_TOKEN": "t"}, verified=False),
        AuthRecord(user_id="u", canonical_name="x-mcp", credentials={"TWITTER_API_KEY": "k"}),
    ])
    gate = AuthGate(registry, store)

    result = await gate.check("u", ["github-mcp-server", "x-mcp"])

    assert [m.canonical_name for m in result.missing] == ["github-mcp-server", "x-mcp"]


async def test_require_raises_with_missing_entries(gate):
    with pytest.raises(AuthRequiredError) as excinfo:
        await gate.require("carol", ["vault-mcp-server"])
    assert excinfo.value.missing[0].canonical_name == "vault-mcp-server"
    assert not excinfo.value.retryable


# ---------------------------------------------------------------------------
# AuthGate.context_for
# ---------------------------------------------------------------------------

async def test_anonymous_servers_share_one_context(gate):
    alice = await gate.context_for("alice", "echo-mcp")
    bob = await gate.context_for("bob", "echo-mcp")
    assert alice.fingerprint == bob.fingerprint == ANONYMOUS
    assert alice.credentials == {}


async def test_contexts_are_per_user(gate):
    alice = await gate.context_for("alice", "vault-mcp-server")
    bob = await gate.context_for("bob", "vault-mcp-server")
    assert alice.credentials == {"VAULT_TOKEN": "alice-token"}
    assert alice.fingerprint != bob.fingerprint


async def test_context_for_missing_credentials_raises(gate):
    with pytest.raises(AuthRequiredError):
        await gate.context_for("carol", "vault-mcp-server")


def test_identical_secrets_for_different_users_fingerprint_differently():
    credentials = {"TOKEN": "same"}
    assert credential_fingerprint(credentials, "alice") != credential_fingerprint(credentials, "bob")
    assert credential_fingerprint({}, "alice") == ANONYMOUS


async def test_credentials_are_not_in_repr(gate):
    context = await gate.context_for("alice", "vault-mcp-server")
    assert "alice-token" not in repr(context)


# ---------------------------------------------------------------------------
# Spawn config
# ---------------------------------------------------------------------------

def test_build_spawn_config_fills_slots_and_placeholders(registry):
    config = build_spawn_config(registry["vault-mcp-server"], {"VAULT_TOKEN": "s3cret"})
    assert config.env == {"VAULT_TOKEN": "s3cret"}
    assert config.args == ("--token", "s3cret")


def test_build_spawn_config_substitutes_inside_templates():
    descriptor = default_registry()["notion-mcp-server"]
    config = build_spawn_config(descriptor, {"NOTION_TOKEN": "ntn_123"})
    assert "Bearer ntn_123" in config.env["OPENAPI_MCP_HEADERS"]


def test_build_spawn_config_never_reads_host_environment(monkeypatch, registry):
    monkeypatch.setenv("VAULT_TOKEN", "host-secret")
    config = build_spawn_config(registry["vault-mcp-server"], {})
    assert "VAULT_TOKEN" not in config.env
    assert "host-secret" not in config.args


def test_build_spawn_config_templates_http_url_and_headers(registry):
    config = build_spawn_config(
        registry["remote-mcp"], {"REMOTE_TENANT": "acme", "REMOTE_TOKEN": "alice-remote"}
    )
    assert config.transport == "http"
    assert config.url == "https://mcp.example.com/acme/mcp"
    assert config.headers == {"Authorization": "Bearer alice-remote"}
    assert config.command == ""
