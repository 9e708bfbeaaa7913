import httpx

from semcache.core.circuit_breaker import CircuitBreaker
from semcache.domain.models import Completion, Message, Role, TokenUsage
from semcache.providers.base import LLMProvider

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    """Anthropic provider."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        client: httpx.AsyncClient,
        base_url: str = "https://api.anthropic.com/v1",
        max_tokens: int = 1024,
    ):
        super().__init__(circuit_breaker, client, base_url)
        self._max_tokens = max_tokens

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def models(self) -> list[str]:
        return [
            "claude-sonnet-4-20250514",
            "claude-opus-4-20250514",
            "claude-3-5-sonnet-latest",
            "claude-3-5-haiku-latest",
            "claude-3-haiku-20240307",
        ]

    @property
    def model_prefixes(self) -> tuple[str, ...]:
        return ("claude-",)

    def _prepare_messages(self, messages: list[Message]) -> tuple[str | None, list[dict[str, str]]]:
        """
        Separate system messages from conversation messages.

        Returns:
            tuple of (system_prompt, conversation_messages)
            - system_prompt: Combined system messages, or None if there are none
            - conversation_messages: List of {"role": ..., "content": ...} dicts
        """
        system_prompts = []
        conversation_messages = []

        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_prompts.append(msg.content)
            else:
                conversation_messages.append({"role": msg.role.value, "content": msg.content})
        system_prompt = None if not system_prompts else "\n".join(system_prompts)
        return system_prompt, conversation_messages

    async def _do_completion(self, model: str, messages: list[Message], api_key: str) -> Completion:
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        system_prompt, conversation_messages = self._prepare_messages(messages)
        payload = {
            "model": model,
            "messages": conversation_messages,
            "max_tokens": self._max_tokens,
        }
        if system_prompt:
            payload["system"] = system_prompt

        response = await self._client.post(f"{self._base_url}/messages", json=payload, headers=headers)
        # Anthropic signals overload with 529
        self._raise_for_status(response)
        data = response.json()

        text = "".join(
            block.get("text", "") for block in data["content"] if block.get("type") == "text"
        )
        return Completion(
            text=text,
            model=data.get("model", model),
            provider=self.name,
            usage=TokenUsage(
                prompt_tokens=data["usage"]["input_tokens"],
                completion_tokens=data["usage"]["output_tokens"],
                model=model,
                provider=self.name,
            ),
        )
