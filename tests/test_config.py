import pytest
from pydantic import ValidationError

from mcp_workflow.config import Settings


def test_defaults_need_no_environment(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    settings = Settings.from_env(dotenv=False)
    assert settings.max_iterations == 10
    assert settings.retry_budget == 3
    assert settings.api_key is None


def test_prefixed_variables_override_defaults(monkeypatch):
    monkeypatch.setenv("MCP_WORKFLOW_MAX_ITERATIONS", "4")
    monkeypatch.setenv("MCP_WORKFLOW_TOOL_TIMEOUT", "2.5")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    monkeypatch.setenv("MCP_REGISTRY_PATH", "/etc/mcp/registry.json")

    settings = Settings.from_env(dotenv=False)

    assert settings.max_iterations == 4
    assert settings.tool_timeout == 2.5
    assert settings.api_key == "sk-test"
    assert settings.registry_path == "/etc/mcp/registry.json"
    assert "sk-test" not in repr(settings)


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("MCP_WORKFLOW_MAX_ITERATIONS", "0")
    with pytest.raises(ValidationError):
        Settings.from_env(dotenv=False)
