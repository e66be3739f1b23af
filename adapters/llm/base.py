"""
Text-generation adapter contract.

Module: adapters/llm/base.py

Every provider (a local Ollama server, the scripted mock) is reached through
``LLMAdapter``. Providers implement the chat-style calls; the engine itself
only uses ``generate`` and ``generate_stream``, which wrap a single prompt
and an optional system message.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    """Speaker of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    role: MessageRole
    content: str


class GenerationOptions(BaseModel):
    """Per-call sampling knobs passed through to the provider."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    num_ctx: Optional[int] = Field(default=None, description="Context window in tokens")
    max_tokens: Optional[int] = Field(default=None, description="Cap on generated tokens")


def _empty_usage() -> Dict[str, int]:
    return dict.fromkeys(("prompt_tokens", "completion_tokens", "total_tokens"), 0)


class LLMResponse(BaseModel):
    """Completed (non-streamed) provider reply."""

    content: str
    model: str
    finish_reason: str
    usage: Dict[str, int] = Field(default_factory=_empty_usage)
    raw_response: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LLMError(Exception):
    """
    Provider failure surfaced to the engine.

    ``provider`` names the adapter that failed and ``original_error`` keeps
    the transport or decoding exception underneath, when there is one.
    """

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


class LLMAdapter(ABC):
    """
    Provider-neutral text generation.

    Subclasses set ``provider`` and implement ``complete``,
    ``stream_complete`` and ``validate_connection``. Options not named in the
    signatures (``num_ctx`` for Ollama, for instance) arrive via ``**kwargs``
    and providers ignore the ones they do not understand.
    """

    provider: str = "base"

    def __init__(self, model: str, api_key: Optional[str] = None, **kwargs: Any) -> None:
        self.model = model
        self.api_key = api_key
        self.config = kwargs

    @abstractmethod
    async def complete(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Run one chat exchange and wait for the full reply.

        ``model`` overrides the adapter default for this call only.
        Implementations raise ``LLMError`` for provider failures.
        """

    @abstractmethod
    def stream_complete(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Same as ``complete`` but yields text fragments in arrival order."""

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Return True when the provider answers a cheap health request."""

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        """Reply text for ``prompt``, optionally preceded by a system message."""
        response = await self.complete(
            self._prompt_messages(prompt, system_prompt),
            model=model,
            **self._option_kwargs(options),
        )
        return response.content

    async def generate_stream(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        stream = self.stream_complete(
            self._prompt_messages(prompt, system_prompt),
            model=model,
            **self._option_kwargs(options),
        )
        async for fragment in stream:
            yield fragment

    async def aclose(self) -> None:
        """Release connections held by the provider client."""

    def count_tokens(self, text: str) -> int:
        # Rough estimate, four characters per token
        return len(text) // 4

    @staticmethod
    def _option_kwargs(options: Optional[GenerationOptions]) -> Dict[str, Any]:
        chosen = options or GenerationOptions()
        return {
            "temperature": chosen.temperature,
            "max_tokens": chosen.max_tokens,
            "num_ctx": chosen.num_ctx,
        }

    @staticmethod
    def _prompt_messages(prompt: str, system_prompt: Optional[str]) -> List[LLMMessage]:
        messages = [LLMMessage(role=MessageRole.USER, content=prompt)]
        if system_prompt:
            messages.insert(0, LLMMessage(role=MessageRole.SYSTEM, content=system_prompt))
        return messages
