from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import openai

from modelgate.llm.base import LLMProvider, LLMResponse, ProviderError, ProviderRateLimitError
from modelgate.observability.logger import get_logger

log = get_logger("llm.openai_compat")


def parse_retry_after_ms(raw: str | None, now: datetime | None = None) -> int | None:
    """Retry-After header as milliseconds; accepts delta-seconds or an HTTP date."""
    if not raw:
        return None
    raw = raw.strip()
    try:
        seconds = float(raw)
    except ValueError:
        try:
            at = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(0, int((at - now).total_seconds() * 1000))
    if seconds < 0:
        return None
    return int(seconds * 1000)


class OpenAICompatibleProvider(LLMProvider):
    """Any chat-completions endpoint speaking the OpenAI wire format."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str | None,
        models: list[str],
        extra_headers: dict[str, str] | None = None,
    ):
        self.name = name
        self.base_url = base_url
        self._api_key = api_key
        self._models = list(models)
        self._extra_headers = dict(extra_headers or {})
        self._client = None

    def _get_client(self):
        if self._client is None and self._api_key:
            # Retries are the router's job.
            self._client = openai.AsyncOpenAI(
                api_key=self._api_key,
                base_url=self.base_url,
                default_headers=self._extra_headers or None,
                max_retries=0,
            )
        return self._client

    def is_available(self) -> bool:
        return bool(self._api_key)

    def get_models(self) -> list[str]:
        return list(self._models)

    async def complete(
        self,
        messages: list[dict],
        model: str = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict] = None,
    ) -> LLMResponse:
        client = self._get_client()
        if not client:
            raise ProviderError(f"{self.name} API key not configured")

        model = model or self._models[0]
        kwargs = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.RateLimitError as e:
            retry_after = parse_retry_after_ms(e.response.headers.get("retry-after"))
            log.warning("provider_rate_limited", provider=self.name, model=model, retry_after_ms=retry_after)
            raise ProviderRateLimitError(f"429 Too Many Requests: {model}", retry_after_ms=retry_after) from e
        except openai.APIStatusError as e:
            log.error("provider_http_error", provider=self.name, model=model, status=e.status_code)
            raise ProviderError(f"HTTP {e.status_code}: {e.message}", status_code=e.status_code) from e
        except openai.APIError as e:
            log.error("provider_transport_error", provider=self.name, model=model, error=str(e))
            raise ProviderError(f"Transport error: {e}") from e

        if not response.choices:
            raise ProviderError(f"{self.name} returned empty choices for {model}", status_code=200)
        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=model,
            provider=self.name,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            finish_reason=choice.finish_reason,
        )
