"""Tests for coinsight/llm.py: guard rails around the Anthropic client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import anthropic
import httpx
import pytest

from coinsight.circuit_breaker import CircuitBreaker
from coinsight.errors import (
    LLMUnavailable,
    UpstreamCapacity,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from coinsight.llm import LLMClient
from conftest import FakeStatusError, llm_message


def make_client(settings, **kwargs) -> tuple[LLMClient, MagicMock]:
    llm = LLMClient(settings, sleep=lambda s: None, **kwargs)
    sdk = MagicMock()
    llm._client = sdk
    return llm, sdk


class TestGuards:
    def test_no_key_raises_without_calling(self, make_settings):
        llm, sdk = make_client(make_settings())
        with pytest.raises(LLMUnavailable):
            llm.complete("sys", [{"role": "user", "content": "hi"}])
        sdk.messages.create.assert_not_called()

    def test_open_breaker_raises_without_calling(self, make_settings):
        breaker = CircuitBreaker(300)
        breaker.record_failure()
        llm, sdk = make_client(make_settings(anthropic_api_key="k"), breaker=breaker)
        with pytest.raises(LLMUnavailable):
            llm.complete("sys", [{"role": "user", "content": "hi"}])
        sdk.messages.create.assert_not_called()

    @patch("coinsight.llm.anthropic.Anthropic")
    def test_client_is_lazy_and_sdk_retries_disabled(self, mock_cls, make_settings):
        llm = LLMClient(make_settings(anthropic_api_key="k"))
        mock_cls.assert_not_called()
        _ = llm.client
        mock_cls.assert_called_once_with(api_key="k", max_retries=0)


class TestComplete:
    def test_returns_text_and_model(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        sdk.messages.create.return_value = llm_message("hello")

        response = llm.complete("sys", [{"role": "user", "content": "hi"}], max_tokens=50, timeout=5)

        assert response.text == "hello"
        assert response.model == "model-a"
        kwargs = sdk.messages.create.call_args.kwargs
        assert kwargs["model"] == "model-a"
        assert kwargs["system"] == "sys"
        assert kwargs["max_tokens"] == 50
        assert kwargs["timeout"] == 5

    def test_timeout_omitted_when_not_set(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        sdk.messages.create.return_value = llm_message("x")
        llm.complete("sys", [{"role": "user", "content": "hi"}])
        assert "timeout" not in sdk.messages.create.call_args.kwargs

    def test_falls_back_to_next_model(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        sdk.messages.create.side_effect = [FakeStatusError(529, "overloaded"), llm_message("ok")]

        response = llm.complete("sys", [{"role": "user", "content": "hi"}])

        assert response.model == "model-b"
        assert llm.breaker.allow_call()

    def test_exhausted_capacity_opens_breaker(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        sdk.messages.create.side_effect = FakeStatusError(503, "over capacity")

        with pytest.raises(UpstreamCapacity):
            llm.complete("sys", [{"role": "user", "content": "hi"}])

        assert sdk.messages.create.call_count == 4
        assert not llm.breaker.allow_call()
        with pytest.raises(LLMUnavailable):
            llm.complete("sys", [{"role": "user", "content": "hi"}])
        assert sdk.messages.create.call_count == 4

    def test_exhausted_rate_limit_keeps_breaker_closed(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k", llm_max_retries=1))
        sdk.messages.create.side_effect = FakeStatusError(429, "rate limit")

        with pytest.raises(UpstreamRateLimited):
            llm.complete("sys", [{"role": "user", "content": "hi"}])

        assert sdk.messages.create.call_count == 2
        assert llm.breaker.allow_call()

    def test_sdk_timeout_maps_to_upstream_timeout(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        sdk.messages.create.side_effect = anthropic.APITimeoutError(request=request)

        with pytest.raises(UpstreamTimeout):
            llm.complete("sys", [{"role": "user", "content": "hi"}], timeout=1)

    def test_non_retryable_error_propagates(self, make_settings):
        llm, sdk = make_client(make_settings(anthropic_api_key="k"))
        sdk.messages.create.side_effect = FakeStatusError(400, "bad request")
        with pytest.raises(FakeStatusError):
            llm.complete("sys", [{"role": "user", "content": "hi"}])
        assert sdk.messages.create.call_count == 1
