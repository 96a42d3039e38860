"""Agent registry: factories for the built-in providers, keyed by id."""

import logging
from typing import Callable

from patchpilot.agents.protocol import AgentProvider
from patchpilot.core.errors import ErrorCode, execution_error

logger = logging.getLogger(__name__)

AgentFactory = Callable[[], AgentProvider]


class AgentRegistry:
    """Creates agent providers by id.

    Factories are used rather than shared instances so each engine run
    tracks its own running executions. Aliases map legacy or short ids
    onto canonical ones (``codex-cli`` -> ``codex``).
    """

    _factories: dict[str, AgentFactory] = {}
    _aliases: dict[str, str] = {}
    _initialized: bool = False

    @classmethod
    def initialize(cls) -> None:
        """Register the built-in providers."""
        if cls._initialized:
            return

        cls._factories.clear()
        cls._aliases.clear()
        cls._load_builtin_agents()
        cls._initialized = True

    @classmethod
    def _load_builtin_agents(cls) -> None:
        from patchpilot.agents.claude import ClaudeCodeAgent
        from patchpilot.agents.codex import CodexAgent
        from patchpilot.agents.gemini import GeminiAgent
        from patchpilot.agents.opencode import OpenCodeAgent

        cls._factories["claude-code"] = ClaudeCodeAgent
        cls._factories["codex"] = CodexAgent
        cls._factories["gemini"] = GeminiAgent
        cls._factories["opencode"] = OpenCodeAgent
        cls._aliases["codex-cli"] = "codex"
        cls._aliases["claude"] = "claude-code"

    @classmethod
    def _ensure_initialized(cls) -> None:
        if not cls._initialized:
            cls.initialize()

    @classmethod
    def register(cls, provider_id: str, factory: AgentFactory) -> None:
        """Register a factory, replacing any previous one for the same id.

        Useful for testing or programmatic registration.
        """
        cls._ensure_initialized()
        cls._factories[provider_id] = factory

    @classmethod
    def alias(cls, alias: str, provider_id: str) -> None:
        cls._ensure_initialized()
        cls._aliases[alias] = provider_id

    @classmethod
    def resolve_id(cls, provider_id: str) -> str:
        cls._ensure_initialized()
        return cls._aliases.get(provider_id, provider_id)

    @classmethod
    def get(cls, provider_id: str) -> AgentFactory | None:
        cls._ensure_initialized()
        return cls._factories.get(cls.resolve_id(provider_id))

    @classmethod
    def create(cls, provider_id: str) -> AgentProvider:
        """Create a provider instance, or raise AGENT_NOT_AVAILABLE."""
        factory = cls.get(provider_id)
        if factory is None:
            raise execution_error(
                ErrorCode.AGENT_NOT_AVAILABLE,
                f"Unknown agent provider: {provider_id}",
                context={"provider_id": provider_id, "registered": cls.registered_ids()},
            )
        return factory()

    @classmethod
    def registered_ids(cls) -> list[str]:
        cls._ensure_initialized()
        return list(cls._factories)

    @classmethod
    def reload(cls) -> None:
        """Drop custom registrations and reload the built-ins."""
        cls._initialized = False
        cls.initialize()
