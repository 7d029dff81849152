# completion.py
# Completion service adapters.
#
# The engine only needs "messages in, text out". Everything the service
# returns is untrusted and re-validated by the planner.

import os

from openai import AsyncOpenAI, OpenAIError

from turn_orchestrator.errors import CompletionError, ConfigurationError

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class CompletionModel:
    """Interface for a chat completion service."""

    name: str = "completion-model"

    async def complete(self, messages: list[dict]) -> str:
        raise NotImplementedError


class OpenAIChatModel(CompletionModel):
    """
    Chat completions against any OpenAI-compatible endpoint.

    Example:
        model = OpenAIChatModel("anthropic/claude-3.5-haiku")
        text = await model.complete([{"role": "user", "content": "hi"}])
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.name = model
        self._temperature = temperature
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("OPENROUTER_API_KEY")
            if not api_key:
                raise ConfigurationError("Missing model configuration variable: OPENAI_API_KEY")
            client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self._client = client

    async def complete(self, messages: list[dict]) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.name,
                messages=messages,
                temperature=self._temperature,
                n=1,
            )
        except OpenAIError as exc:
            raise CompletionError(f"Completion request to {self.name} failed: {exc}") from exc

        if not response.choices or not response.choices[0].message.content:
            raise CompletionError(f"Invalid completion response from {self.name}: no content.")
        return response.choices[0].message.content.strip()
