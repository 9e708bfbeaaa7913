import httpx

from semcache.core.circuit_breaker import CircuitBreaker
from semcache.domain.models import Completion, Message, Role, TokenUsage
from semcache.providers.base import LLMProvider


class GoogleProvider(LLMProvider):
    """Google Gemini generateContent API."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        client: httpx.AsyncClient,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ):
        super().__init__(circuit_breaker, client, base_url)

    @property
    def name(self) -> str:
        return "google"

    @property
    def models(self) -> list[str]:
        return ["gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.0-flash", "gemini-2.5-pro"]

    @property
    def model_prefixes(self) -> tuple[str, ...]:
        return ("gemini-",)

    def _prepare_contents(self, messages: list[Message]) -> tuple[dict | None, list[dict]]:
        system_parts = []
        contents = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_parts.append({"text": msg.content})
                continue
            role = "model" if msg.role == Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": msg.content}]})
        system = {"parts": system_parts} if system_parts else None
        return system, contents

    async def _do_completion(self, model: str, messages: list[Message], api_key: str) -> Completion:
        system, contents = self._prepare_contents(messages)
        payload: dict = {"contents": contents}
        if system:
            payload["systemInstruction"] = system

        response = await self._client.post(
            f"{self._base_url}/models/{model}:generateContent",
            json=payload,
            headers={"x-goog-api-key": api_key},
        )
        # Gemini reports an invalid key as 400 INVALID_ARGUMENT
        if response.status_code == 400 and "API_KEY_INVALID" in response.text:
            response = httpx.Response(401, text=response.text, request=response.request)
        self._raise_for_status(response)
        data = response.json()

        candidate = data["candidates"][0]
        text = "".join(part.get("text", "") for part in candidate["content"]["parts"])
        usage = data.get("usageMetadata") or {}
        return Completion(
            text=text,
            model=model,
            provider=self.name,
            usage=TokenUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                model=model,
                provider=self.name,
            ),
        )
