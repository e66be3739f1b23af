"""
Response Synthesizer.

Streams the final answer from the model, building its prompt from the
validated tool output of the Turn, and hands every partial answer to the
caller with ``<think>`` markup already separated out.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from adapters.llm import GenerationOptions, LLMAdapter

from .generation import transport_guard
from .models import Request, ToolExecutionRecord
from .thinking_parser import ParsedResponse, ThinkingStreamAggregator

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[ParsedResponse], Awaitable[None]]


class ResponseSynthesizer:
    """Builds the synthesis prompt and streams the answer."""

    SYSTEM_PROMPT = (
        "You are a helpful assistant running on a mobile device. Answer clearly and "
        "concisely. When tool results are provided, base your answer on them."
    )

    CONVERSATION_PROMPT = """Recent conversation:
{summary}

User: {query}"""

    TOOL_CONTEXT_PROMPT = """## TOOL EXECUTION CONTEXT
User request: {query}
Tools executed: {executed}
{failures}
## RAW CONTENT FOR ANALYSIS
{content}

## INSTRUCTIONS
Answer the user's request using the content above. Summarize in your own words instead of copying, and say so plainly if the content does not answer the request.

Recent conversation:
{summary}"""

    def __init__(
        self,
        llm: LLMAdapter,
        model: Optional[str] = None,
        temperature: float = 0.7,
        timeout: float = 120.0,
        context_chars: int = 6000,
    ) -> None:
        """
        Initialize the synthesizer.

        Args:
            llm: Text-generation adapter
            model: Model override for the synthesis call
            temperature: Sampling temperature
            timeout: Seconds allowed for the whole stream
            context_chars: Budget of tool output characters in the prompt
        """
        self.llm = llm
        self.model = model
        self.options = GenerationOptions(temperature=temperature)
        self.timeout = timeout
        self.context_chars = context_chars

    @staticmethod
    def content_records(records: Sequence[ToolExecutionRecord]) -> List[ToolExecutionRecord]:
        """Validated records whose output was not consumed by a later validated step."""
        selected = []
        for index, record in enumerate(records):
            if not record.validated:
                continue
            consumed = any(
                later.validated and later.chained_from == record.tool_name
                for later in records[index + 1 :]
            )
            if not consumed:
                selected.append(record)
        return selected

    def build_prompt(
        self,
        request: Request,
        conversation_summary: str,
        records: Sequence[ToolExecutionRecord] = (),
    ) -> str:
        summary = conversation_summary or "No previous conversation."
        if not records:
            return self.CONVERSATION_PROMPT.format(summary=summary, query=request.text)

        sources = self.content_records(records)
        budget = self.context_chars // max(1, len(sources))
        content = "\n\n".join(
            f"[{record.tool_name}]\n{self._truncate(record.output, budget)}" for record in sources
        )
        failed = [record for record in records if not record.validated]
        failures = ""
        if failed:
            failures = "Steps without usable output: " + ", ".join(
                f"{record.tool_name} ({record.validation_reason or 'failed'})" for record in failed
            ) + "\n"

        return self.TOOL_CONTEXT_PROMPT.format(
            query=request.text,
            executed=" -> ".join(record.tool_name for record in records),
            failures=failures,
            content=content or "(no usable content)",
            summary=summary,
        )

    @staticmethod
    def _truncate(text: str, limit: int) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + "\n[truncated]"

    async def synthesize(
        self,
        request: Request,
        conversation_summary: str = "",
        records: Sequence[ToolExecutionRecord] = (),
        on_update: Optional[UpdateCallback] = None,
    ) -> ParsedResponse:
        """
        Stream the answer.

        Args:
            request: User request
            conversation_summary: Condensed recent conversation
            records: Execution records of the Turn
            on_update: Awaited with the visible/reasoning split after each chunk

        Returns:
            Final ParsedResponse

        Raises:
            TransportError: If the stream fails or exceeds the timeout
        """
        prompt = self.build_prompt(request, conversation_summary, records)
        aggregator = ThinkingStreamAggregator()

        with transport_guard(self.timeout, "synthesis"):
            async for chunk in self.llm.generate_stream(
                prompt, model=self.model, options=self.options, system_prompt=self.SYSTEM_PROMPT
            ):
                parsed = aggregator.feed(chunk)
                if on_update:
                    await on_update(parsed)

        result = aggregator.finish()
        logger.info(
            f"Synthesized {len(result.content)} chars in {aggregator.chunk_count} chunks"
            + (" (with reasoning)" if result.has_thinking else "")
        )
        return result
