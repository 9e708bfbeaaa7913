import httpx

from semcache.core.circuit_breaker import CircuitBreaker
from semcache.domain.models import Completion, Message, TokenUsage
from semcache.providers.base import LLMProvider


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        client: httpx.AsyncClient,
        base_url: str = "https://api.openai.com/v1",
    ):
        super().__init__(circuit_breaker, client, base_url)

    @property
    def name(self) -> str:
        return "openai"

    @property
    def models(self) -> list[str]:
        return ["gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo", "o1", "o1-mini"]

    @property
    def model_prefixes(self) -> tuple[str, ...]:
        return ("gpt-", "o1-", "o3-")

    async def _do_completion(self, model: str, messages: list[Message], api_key: str) -> Completion:
        """POST /chat/completions with the caller's key."""
        headers = {"Authorization": f"Bearer {api_key}"}
        payload = {
            "model": model,
            "messages": [{"role": msg.role.value, "content": msg.content} for msg in messages],
        }
        response = await self._client.post(
            f"{self._base_url}/chat/completions", json=payload, headers=headers
        )
        # Exhausted credit arrives as 429; report it as a billing failure, not throttling
        if response.status_code == 429:
            error = response.json().get("error", {}) if response.content else {}
            if error.get("code") == "insufficient_quota":
                response = httpx.Response(402, text=response.text, request=response.request)
        self._raise_for_status(response)

        data = response.json()
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return Completion(
            text=choice["message"]["content"],
            model=data.get("model", model),
            provider=self.name,
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                model=model,
                provider=self.name,
            ),
        )
