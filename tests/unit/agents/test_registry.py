"""Tests for the agent registry."""
import pytest

from conftest import FakeAgent
from patchpilot.agents.claude import ClaudeCodeAgent
from patchpilot.agents.codex import CodexAgent
from patchpilot.agents.registry import AgentRegistry
from patchpilot.core.errors import ErrorCode, PatchPilotError


def test_builtin_providers_registered():
    assert set(AgentRegistry.registered_ids()) == {"claude-code", "codex", "gemini", "opencode"}


def test_create_returns_new_instances():
    first = AgentRegistry.create("codex")
    second = AgentRegistry.create("codex")

    assert isinstance(first, CodexAgent)
    assert first is not second


def test_aliases_resolve():
    assert AgentRegistry.resolve_id("codex-cli") == "codex"
    assert isinstance(AgentRegistry.create("claude"), ClaudeCodeAgent)


def test_unknown_provider_raises():
    with pytest.raises(PatchPilotError) as exc_info:
        AgentRegistry.create("nope")

    assert exc_info.value.code == ErrorCode.AGENT_NOT_AVAILABLE
    assert exc_info.value.context["provider_id"] == "nope"


def test_register_custom_factory():
    AgentRegistry.register("fake", lambda: FakeAgent("fake"))

    assert AgentRegistry.create("fake").id == "fake"
    assert "fake" in AgentRegistry.registered_ids()


def test_reload_drops_custom_factories():
    AgentRegistry.register("fake", lambda: FakeAgent("fake"))
    AgentRegistry.reload()

    assert AgentRegistry.get("fake") is None
