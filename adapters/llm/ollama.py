"""
Ollama adapter.

Module: adapters/llm/ollama.py

Chat requests go to ``POST /api/chat``. With ``stream`` enabled the server
answers with one JSON object per line, each carrying a slice of the reply in
``message.content`` and ``done: true`` on the last one.
"""

import json
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .base import LLMAdapter, LLMError, LLMMessage, LLMResponse

CHAT_PATH = "/api/chat"
TAGS_PATH = "/api/tags"


class OllamaAdapter(LLMAdapter):
    """
    Client for an Ollama server on the device or the local network.

    The endpoint comes from the argument, then ``OLLAMA_ENDPOINT``, then the
    Ollama default port. ``transport`` is handed to httpx untouched, which is
    how the tests substitute ``httpx.MockTransport``.
    """

    provider = "ollama"

    DEFAULT_ENDPOINT: str = "http://localhost:11434"
    DEFAULT_MODEL: str = "gemma3n:e4b"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, api_key, **kwargs)
        self.endpoint = (endpoint or os.getenv("OLLAMA_ENDPOINT") or self.DEFAULT_ENDPOINT).rstrip("/")
        self.default_timeout: float = kwargs.get("default_timeout", 120.0)

        # Bearer token only matters when the server sits behind a proxy
        auth = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=self.endpoint,
            headers={"Content-Type": "application/json", **auth},
            timeout=self.default_timeout,
            transport=transport,
        )

    def _payload(
        self,
        messages: List[LLMMessage],
        *,
        model: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
        num_ctx: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": temperature}
        if num_ctx:
            options["num_ctx"] = num_ctx
        if max_tokens:
            options["num_predict"] = max_tokens
        return {
            "model": model or self.model,
            "messages": [m.model_dump() for m in messages],
            "stream": stream,
            "options": options,
        }

    def _transport_error(self, exc: httpx.HTTPError, action: str) -> Exception:
        if isinstance(exc, httpx.TimeoutException):
            return TimeoutError(f"Ollama {action} timed out after waiting on {self.endpoint}")
        return LLMError(f"Ollama {action} failed: {exc}", self.provider, exc)

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
        Send a non-streamed chat request.

        ``max_tokens`` maps to Ollama's ``num_predict``; ``num_ctx`` is read
        from ``kwargs``. Raises ``TimeoutError`` when the request times out
        and ``LLMError`` for any other failure, including a reply body
        without ``message.content``.
        """
        payload = self._payload(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            num_ctx=kwargs.get("num_ctx"),
            stream=False,
        )
        try:
            response = await self.client.post(
                CHAT_PATH, json=payload, timeout=timeout or self.default_timeout
            )
        except httpx.HTTPError as e:
            raise self._transport_error(e, "request") from e

        if response.status_code != 200:
            raise LLMError(f"Ollama returned HTTP {response.status_code}: {response.text}", self.provider)

        try:
            body = response.json()
            text = body["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise LLMError(f"Unexpected Ollama reply: {e}", self.provider, e) from e

        prompt_count = body.get("prompt_eval_count", 0)
        reply_count = body.get("eval_count", 0)
        return LLMResponse(
            content=text,
            model=body.get("model", payload["model"]),
            finish_reason=body.get("done_reason", "stop"),
            usage={
                "prompt_tokens": prompt_count,
                "completion_tokens": reply_count,
                "total_tokens": prompt_count + reply_count,
            },
            raw_response=body,
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
        payload = self._payload(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            num_ctx=kwargs.get("num_ctx"),
            stream=True,
        )
        try:
            async with self.client.stream(
                "POST", CHAT_PATH, json=payload, timeout=timeout or self.default_timeout
            ) as response:
                if response.status_code != 200:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMError(
                        f"Ollama returned HTTP {response.status_code}: {detail}", self.provider
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except ValueError:
                        # partial or keep-alive line
                        continue
                    if event.get("error"):
                        raise LLMError(f"Ollama stream reported: {event['error']}", self.provider)

                    piece = (event.get("message") or {}).get("content", "")
                    if piece:
                        yield piece
                    if event.get("done"):
                        return
        except httpx.HTTPError as e:
            raise self._transport_error(e, "stream") from e

    async def list_models(self) -> List[str]:
        """Model tags installed on the server."""
        try:
            response = await self.client.get(TAGS_PATH)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LLMError(f"Could not list Ollama models: {e}", self.provider, e) from e
        return [entry.get("name", "") for entry in response.json().get("models", [])]

    async def validate_connection(self) -> bool:
        try:
            await self.list_models()
        except LLMError:
            return False
        return True

    async def aclose(self) -> None:
        await self.client.aclose()
