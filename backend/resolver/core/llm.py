"""LLM provider for answer generation."""

from collections.abc import AsyncIterator
from dataclasses import dataclass

from openai import AsyncOpenAI

from .config import get_settings


@dataclass
class TokenUsage:
    """Minimal token usage tracking."""

    input: int = 0
    output: int = 0
    model: str = ""

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            model=other.model or self.model,
        )


class LLM:
    """Async OpenAI chat wrapper with streaming support and token tracking."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_chat_model
        self.temperature = settings.generation_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.generation_max_tokens
        self._client: AsyncOpenAI | None = None
        self._last_usage: TokenUsage | None = None
        self._last_finish_reason: str | None = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @property
    def last_usage(self) -> TokenUsage | None:
        """Token usage from the most recent API call."""
        return self._last_usage

    @property
    def last_finish_reason(self) -> str | None:
        return self._last_finish_reason

    def _track_usage(self, response, model: str) -> None:
        """Extract token usage from a response or final stream chunk."""
        if getattr(response, "usage", None):
            self._last_usage = TokenUsage(
                input=response.usage.prompt_tokens,
                output=response.usage.completion_tokens,
                model=getattr(response, "model", None) or model,
            )

    async def chat(self, messages: list[dict[str, str]], model: str | None = None) -> str:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Optional model override

        Returns:
            Response text (empty string when the model returned none)
        """
        model = model or self.model
        self._last_usage = None
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        self._track_usage(response, model)
        choice = response.choices[0]
        self._last_finish_reason = choice.finish_reason
        return choice.message.content or ""

    async def stream(self, messages: list[dict[str, str]], model: str | None = None) -> AsyncIterator[str]:
        """Stream a chat completion, yielding non-empty content deltas."""
        model = model or self.model
        self._last_usage = None
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                self._track_usage(chunk, model)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    self._last_finish_reason = choice.finish_reason
                if choice.delta and choice.delta.content:
                    yield choice.delta.content
        finally:
            await stream.close()
