"""
Scripted adapter.

Module: adapters/llm/mock.py

Used by the test suite and by ``coquette --provider mock``. Each call takes
the next entry of a reply script, so decision, recovery and synthesis
prompts can be answered deterministically and inspected afterwards.
"""

from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Sequence, Union

import anyio

from adapters.llm.base import LLMAdapter, LLMMessage, LLMResponse, MessageRole

ScriptedReply = Union[str, Exception]


class MockLLMAdapter(LLMAdapter):
    """
    Adapter that answers from a script.

    An ``Exception`` in the script is raised at the call that reaches it.
    When the script runs out, replies fall back to ``response_template``
    formatted with the start of the last user message. Every call is logged
    in ``calls`` with its prompt and generation settings.
    """

    provider = "mock"

    def __init__(
        self,
        model: str = "mock-model",
        api_key: Optional[str] = None,
        responses: Optional[Sequence[ScriptedReply]] = None,
        response_template: str = "Mock response to: {prompt}",
        delay_ms: int = 0,
        chunk_size: int = 8,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, api_key, **kwargs)
        self._script: Deque[ScriptedReply] = deque(responses or ())
        self.response_template = response_template
        self.delay_ms = delay_ms
        self.chunk_size = max(1, chunk_size)
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def _pause(self) -> None:
        await anyio.sleep(self.delay_ms / 1000.0)

    def _next_reply(self, messages: List[LLMMessage], **params: Any) -> str:
        prompt = next(
            (m.content for m in reversed(messages) if m.role == MessageRole.USER.value),
            "no prompt",
        )
        self.calls.append({"prompt": prompt, **params})

        if not self._script:
            return self.response_template.format(prompt=prompt[:50])
        reply = self._script.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def complete(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> LLMResponse:
        await self._pause()
        used_model = model or self.model
        text = self._next_reply(
            messages, model=used_model, temperature=temperature, stream=False, **kwargs
        )

        prompt_tokens = self.count_tokens("".join(m.content for m in messages))
        reply_tokens = self.count_tokens(text)
        return LLMResponse(
            content=text,
            model=used_model,
            finish_reason="stop",
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": reply_tokens,
                "total_tokens": prompt_tokens + reply_tokens,
            },
            raw_response={"scripted": True, "call": self.call_count},
        )

    async def stream_complete(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Yield the next reply in ``chunk_size`` pieces."""
        text = self._next_reply(
            messages, model=model or self.model, temperature=temperature, stream=True, **kwargs
        )
        size = self.chunk_size
        for offset in range(0, len(text), size):
            await self._pause()
            yield text[offset : offset + size]

    async def validate_connection(self) -> bool:
        await anyio.sleep(0)
        return True
