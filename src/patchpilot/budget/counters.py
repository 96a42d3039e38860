"""Per-provider token counting strategies backed by tiktoken."""

import logging
from abc import ABC, abstractmethod

import tiktoken

logger = logging.getLogger(__name__)


class TokenCounter(ABC):
    """Counts tokens the way one provider's model family does."""

    @property
    @abstractmethod
    def invocation_overhead(self) -> int:
        """Fixed tokens spent by every agent invocation (system prompt, tools)."""
        ...

    @property
    @abstractmethod
    def max_context_tokens(self) -> int:
        ...

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        ...


class TiktokenCounter(TokenCounter):
    """Counter that encodes with the first tiktoken encoding that loads."""

    encodings: tuple[str, ...] = ("cl100k_base",)
    overhead: int = 1_000
    max_context: int = 200_000

    def __init__(self) -> None:
        self._encoder: tiktoken.Encoding | None = None

    @property
    def invocation_overhead(self) -> int:
        return self.overhead

    @property
    def max_context_tokens(self) -> int:
        return self.max_context

    @property
    def encoding(self) -> str:
        return self._get_encoder().name

    def _get_encoder(self) -> tiktoken.Encoding:
        if self._encoder is not None:
            return self._encoder

        last_error: Exception | None = None
        for name in self.encodings:
            try:
                self._encoder = tiktoken.get_encoding(name)
                return self._encoder
            except Exception as e:
                logger.debug("Encoding %s unavailable: %s", name, e)
                last_error = e
        raise RuntimeError(f"No tiktoken encoding available from {self.encodings}") from last_error

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoder().encode(text, disallowed_special=()))

    def reset(self) -> None:
        """Drop the cached encoder so it is loaded again on next use."""
        self._encoder = None


class ClaudeTokenCounter(TiktokenCounter):
    encodings = ("cl100k_base",)
    overhead = 1_500
    max_context = 200_000


class CodexTokenCounter(TiktokenCounter):
    encodings = ("o200k_base", "cl100k_base")
    overhead = 1_000
    max_context = 200_000


class GeminiTokenCounter(TiktokenCounter):
    encodings = ("o200k_base", "cl100k_base")
    overhead = 1_200
    max_context = 1_000_000


_COUNTER_CLASSES: dict[str, type[TiktokenCounter]] = {
    "claude-code": ClaudeTokenCounter,
    "codex": CodexTokenCounter,
    "gemini": GeminiTokenCounter,
}

_ALIASES = {
    "claude": "claude-code",
    "codex-cli": "codex",
}

_counters: dict[str, TiktokenCounter] = {}


def get_token_counter(provider_id: str) -> TokenCounter:
    """Get the shared counter for a provider; unknown providers count like codex."""
    key = _ALIASES.get(provider_id, provider_id)
    if key not in _COUNTER_CLASSES:
        key = "codex"
    if key not in _counters:
        _counters[key] = _COUNTER_CLASSES[key]()
    return _counters[key]


def reset_counters() -> None:
    _counters.clear()


def approximate_token_count(text: str) -> int:
    """Rough count of one token per four characters."""
    if not text:
        return 0
    return max(1, -(-len(text) // 4))
