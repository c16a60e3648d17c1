from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from modelgate.llm.base import ProviderError, ProviderRateLimitError
from modelgate.llm.providers.openai_compat import OpenAICompatibleProvider, parse_retry_after_ms

URL = "http://alpha.invalid/v1/chat/completions"


def _status_error(cls, status: int, headers=None):
    response = httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", URL))
    return cls(f"status {status}", response=response, body=None)


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after_ms("2") == 2000
        assert parse_retry_after_ms(" 1.5 ") == 1500

    def test_http_date(self):
        now = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
        assert parse_retry_after_ms("Mon, 02 Mar 2026 12:00:10 GMT", now=now) == 10_000

    def test_past_http_date_is_zero(self):
        now = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
        assert parse_retry_after_ms("Mon, 02 Mar 2026 11:00:00 GMT", now=now) == 0

    def test_garbage(self):
        assert parse_retry_after_ms(None) is None
        assert parse_retry_after_ms("") is None
        assert parse_retry_after_ms("soon") is None
        assert parse_retry_after_ms("-3") is None


@pytest.mark.asyncio
class TestOpenAICompatibleProvider:
    def _provider(self, api_key="key"):
        return OpenAICompatibleProvider(
            name="alpha",
            base_url="http://alpha.invalid/v1",
            api_key=api_key,
            models=["alpha-large"],
        )

    def _with_create(self, provider, **kwargs):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(**kwargs)
        provider._client = client
        return client

    async def test_unavailable_without_key(self):
        provider = self._provider(api_key=None)
        assert provider.is_available() is False
        with pytest.raises(ProviderError):
            await provider.complete([{"role": "user", "content": "hi"}])

    async def test_success_maps_usage(self):
        provider = self._provider()
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="hello"), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )
        client = self._with_create(provider, return_value=completion)

        response = await provider.complete([{"role": "user", "content": "hi"}])
        assert response.content == "hello"
        assert response.provider == "alpha"
        assert response.model == "alpha-large"
        assert response.total_tokens == 15
        assert client.chat.completions.create.await_args.kwargs["model"] == "alpha-large"

    async def test_rate_limit_carries_retry_after(self):
        provider = self._provider()
        self._with_create(provider, side_effect=_status_error(openai.RateLimitError, 429, {"retry-after": "3"}))

        with pytest.raises(ProviderRateLimitError) as exc_info:
            await provider.complete([{"role": "user", "content": "hi"}])
        assert exc_info.value.retry_after_ms == 3000
        assert exc_info.value.status_code == 429

    async def test_server_error(self):
        provider = self._provider()
        self._with_create(provider, side_effect=_status_error(openai.InternalServerError, 503))

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete([{"role": "user", "content": "hi"}])
        assert exc_info.value.status_code == 503
        assert not isinstance(exc_info.value, ProviderRateLimitError)

    async def test_empty_choices(self):
        provider = self._provider()
        self._with_create(provider, return_value=SimpleNamespace(choices=[], usage=None))

        with pytest.raises(ProviderError):
            await provider.complete([{"role": "user", "content": "hi"}])
