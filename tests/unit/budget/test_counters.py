"""Tests for provider token counters."""
import pytest

from patchpilot.budget import counters
from patchpilot.budget.counters import (
    ClaudeTokenCounter,
    CodexTokenCounter,
    GeminiTokenCounter,
    approximate_token_count,
    get_token_counter,
)


class FakeEncoding:
    def __init__(self, name):
        self.name = name

    def encode(self, text, disallowed_special=()):
        return text.split()


@pytest.fixture(autouse=True)
def fresh_counters():
    counters.reset_counters()
    yield
    counters.reset_counters()


@pytest.fixture
def loaded_encodings(monkeypatch):
    loaded = []

    def get_encoding(name):
        loaded.append(name)
        return FakeEncoding(name)

    monkeypatch.setattr(counters.tiktoken, "get_encoding", get_encoding)
    return loaded


def test_get_token_counter_by_provider():
    assert isinstance(get_token_counter("claude-code"), ClaudeTokenCounter)
    assert isinstance(get_token_counter("codex"), CodexTokenCounter)
    assert isinstance(get_token_counter("gemini"), GeminiTokenCounter)


def test_aliases_and_unknown_providers():
    assert get_token_counter("claude") is get_token_counter("claude-code")
    assert get_token_counter("codex-cli") is get_token_counter("codex")
    assert isinstance(get_token_counter("opencode"), CodexTokenCounter)


def test_provider_limits():
    assert get_token_counter("claude-code").invocation_overhead == 1_500
    assert get_token_counter("codex").invocation_overhead == 1_000
    assert get_token_counter("gemini").max_context_tokens == 1_000_000


def test_count_tokens_uses_encoding(loaded_encodings):
    counter = CodexTokenCounter()

    assert counter.count_tokens("one two three") == 3
    assert counter.count_tokens("") == 0
    assert counter.encoding == "o200k_base"
    assert loaded_encodings == ["o200k_base"]


def test_encoder_falls_back_to_next_encoding(monkeypatch):
    def get_encoding(name):
        if name == "o200k_base":
            raise ValueError("unknown encoding")
        return FakeEncoding(name)

    monkeypatch.setattr(counters.tiktoken, "get_encoding", get_encoding)

    assert CodexTokenCounter().encoding == "cl100k_base"


def test_encoder_unavailable_raises(monkeypatch):
    def get_encoding(name):
        raise ValueError("offline")

    monkeypatch.setattr(counters.tiktoken, "get_encoding", get_encoding)

    with pytest.raises(RuntimeError):
        ClaudeTokenCounter().count_tokens("hello")


def test_encoder_is_cached(loaded_encodings):
    counter = ClaudeTokenCounter()
    counter.count_tokens("a")
    counter.count_tokens("b")
    assert loaded_encodings == ["cl100k_base"]

    counter.reset()
    counter.count_tokens("c")
    assert loaded_encodings == ["cl100k_base", "cl100k_base"]


def test_approximate_token_count():
    assert approximate_token_count("") == 0
    assert approximate_token_count("abc") == 1
    assert approximate_token_count("abcdefghi") == 3
