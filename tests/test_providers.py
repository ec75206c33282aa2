"""Tests for provider adapters and priority-ordered fallback."""

from dataclasses import replace

import httpx
import openai
import pytest

from Devotional_Generator import (
    AllProvidersFailed,
    LLMConfig,
    Prompt,
    ProviderAdapter,
    ProviderChain,
    ProviderEmptyResponse,
    ProviderHttpError,
    ProviderSpec,
    ProviderTimeout,
    ProviderUnavailable,
    UnusableResponse,
    parse_candidate,
)
from helpers import CONTENT_A, TODAY, StubProvider, devotional_json, fake_client

REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
PROMPT = Prompt(system="You write devotionals.", user="Write today's devotional.")
SPEC = ProviderSpec("groq", "https://api.example.test/v1", "llama-test", "TEST_GROQ_KEY")


def status_error(cls, status):
    return cls(f"HTTP {status}", response=httpx.Response(status, request=REQUEST), body=None)


def adapter_with(outcomes, max_tries=3, **spec_overrides):
    client, completions = fake_client(outcomes)
    spec = replace(SPEC, **spec_overrides)
    llm = LLMConfig(max_tries=max_tries, backoff_factor=0, max_tokens=500)
    return ProviderAdapter(spec, llm, client=client, debug=False), completions


class TestProviderAdapter:
    """Test request shaping and error translation for one provider."""

    def test_returns_stripped_completion(self):
        adapter, completions = adapter_with(["  Stars of Hope  "])
        assert adapter.generate(PROMPT, temperature=0.95) == "Stars of Hope"
        call = completions.calls[0]
        assert call["model"] == "llama-test"
        assert call["temperature"] == 0.95
        assert call["max_tokens"] == 500
        assert [m["role"] for m in call["messages"]] == ["system", "user"]

    def test_provider_overrides_temperature_and_tokens(self):
        adapter, completions = adapter_with(["ok"], temperature=0.5, max_tokens=42)
        adapter.generate(PROMPT, temperature=1.1)
        assert completions.calls[0]["temperature"] == 0.5
        assert completions.calls[0]["max_tokens"] == 42

    def test_missing_key_is_unavailable(self, monkeypatch):
        monkeypatch.delenv("TEST_GROQ_KEY", raising=False)
        adapter = ProviderAdapter(SPEC, LLMConfig(), debug=False)
        with pytest.raises(ProviderUnavailable):
            adapter.generate(PROMPT)

    def test_timeout_is_retried_then_raised(self):
        adapter, completions = adapter_with([openai.APITimeoutError(request=REQUEST)], max_tries=3)
        with pytest.raises(ProviderTimeout):
            adapter.generate(PROMPT)
        assert len(completions.calls) == 3

    def test_server_error_then_success(self):
        adapter, completions = adapter_with([status_error(openai.InternalServerError, 503), "recovered"])
        assert adapter.generate(PROMPT) == "recovered"
        assert len(completions.calls) == 2

    def test_rate_limit_is_transient(self):
        adapter, completions = adapter_with([status_error(openai.RateLimitError, 429)], max_tries=2)
        with pytest.raises(ProviderHttpError) as exc_info:
            adapter.generate(PROMPT)
        assert exc_info.value.status == 429
        assert exc_info.value.transient
        assert len(completions.calls) == 2

    def test_auth_error_is_not_retried(self):
        adapter, completions = adapter_with([status_error(openai.AuthenticationError, 401)])
        with pytest.raises(ProviderHttpError) as exc_info:
            adapter.generate(PROMPT)
        assert exc_info.value.status == 401
        assert not exc_info.value.transient
        assert len(completions.calls) == 1

    def test_connection_error_is_unavailable(self):
        adapter, completions = adapter_with([openai.APIConnectionError(request=REQUEST)])
        with pytest.raises(ProviderUnavailable):
            adapter.generate(PROMPT)
        assert len(completions.calls) == 1

    def test_empty_completion(self):
        adapter, completions = adapter_with(["   "])
        with pytest.raises(ProviderEmptyResponse):
            adapter.generate(PROMPT)
        assert len(completions.calls) == 1


class TestProviderChain:
    """Test priority-ordered fallback across providers."""

    def test_first_success_wins(self):
        a = StubProvider("groq", ["from groq"])
        b = StubProvider("openai", ["from openai"])
        assert ProviderChain([a, b], debug=False).generate(PROMPT) == ("groq", "from groq")
        assert b.calls == 0

    def test_failover_to_next_provider(self):
        a = StubProvider("groq", [ProviderHttpError("groq", 401, "bad key")])
        b = StubProvider("openai", ["from openai"])
        name, text = ProviderChain([a, b], debug=False).generate(PROMPT)
        assert (name, text) == ("openai", "from openai")
        assert a.calls == 1

    def test_unusable_response_counts_as_failure(self):
        a = StubProvider("groq", ["# Only A Title"])
        b = StubProvider("openai", [devotional_json("Stars of Hope", CONTENT_A)])
        name, candidate = ProviderChain([a, b], debug=False).generate(
            PROMPT, parse=lambda raw: parse_candidate(raw, TODAY, debug=False))
        assert name == "openai"
        assert candidate.title == "Stars of Hope"

    def test_all_failures_are_collected(self):
        a = StubProvider("groq", [ProviderTimeout("groq", "timed out")])
        b = StubProvider("openai", ["# Only A Title"])
        with pytest.raises(AllProvidersFailed) as exc_info:
            ProviderChain([a, b], debug=False).generate(
                PROMPT, parse=lambda raw: parse_candidate(raw, TODAY, debug=False))
        failures = exc_info.value.failures
        assert [f.provider for f in failures] == ["groq", "openai"]
        assert isinstance(failures[1], UnusableResponse)

    def test_no_providers(self):
        with pytest.raises(AllProvidersFailed):
            ProviderChain([], debug=False).generate(PROMPT)

    def test_from_config_keeps_order(self):
        llm = LLMConfig()
        chain = ProviderChain.from_config(llm, debug=False)
        assert [a.name for a in chain.adapters] == ["groq", "openai", "deepseek"]
