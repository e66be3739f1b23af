"""
Separation of ``<think>`` reasoning markup from visible model output.

Reasoning models interleave their chain of thought in ``<think>...</think>``
blocks. The visible answer must never show that markup, including while a
block is still streaming in and its closing tag has not arrived yet.
"""

import re
from dataclasses import dataclass

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

THINK_BLOCK = re.compile(r"<think>(.*?)</think>", re.DOTALL | re.IGNORECASE)
OPEN_THINK_TAIL = re.compile(r"<think>(.*)$", re.DOTALL | re.IGNORECASE)
EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ParsedResponse:
    """Visible content and extracted reasoning of one model response."""

    content: str
    thinking: str = ""
    thinking_open: bool = False

    @property
    def has_thinking(self) -> bool:
        return bool(self.thinking)


def _partial_open_tag_length(text: str) -> int:
    """Length of a trailing prefix of ``<think>`` (e.g. ``"<thi"``), else 0."""
    lowered = text[-len(THINK_OPEN) :].lower()
    for size in range(min(len(THINK_OPEN) - 1, len(lowered)), 0, -1):
        if THINK_OPEN.startswith(lowered[-size:]):
            return size
    return 0


def parse_thinking(text: str, streaming: bool = False) -> ParsedResponse:
    """
    Split a response into visible content and reasoning.

    Args:
        text: Raw response text (complete, or accumulated so far)
        streaming: True while more chunks may arrive; hides an unclosed
            block and a partially received opening tag

    Returns:
        ParsedResponse with markup removed from ``content``
    """
    blocks = [block.strip() for block in THINK_BLOCK.findall(text)]
    visible = THINK_BLOCK.sub("", text)

    # Some chat templates open the block in the prompt, so only the closing tag shows up.
    if THINK_CLOSE in visible.lower():
        index = visible.lower().rfind(THINK_CLOSE)
        blocks.insert(0, visible[:index].strip())
        visible = visible[index + len(THINK_CLOSE) :]

    thinking_open = False
    open_match = OPEN_THINK_TAIL.search(visible)
    if open_match:
        blocks.append(open_match.group(1).strip())
        visible = visible[: open_match.start()]
        thinking_open = True
    elif streaming:
        partial = _partial_open_tag_length(visible)
        if partial:
            visible = visible[:-partial]

    visible = EXCESS_NEWLINES.sub("\n\n", visible).strip()
    thinking = "\n\n".join(block for block in blocks if block)
    return ParsedResponse(content=visible, thinking=thinking, thinking_open=thinking_open)


class ThinkingStreamAggregator:
    """
    Accumulates streamed chunks and re-parses the running text.

    Each ``feed`` returns the current visible/reasoning split, so observers
    can render partial answers without ever seeing ``<think>`` markup.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.chunk_count = 0

    @property
    def raw(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> ParsedResponse:
        self._buffer += chunk
        self.chunk_count += 1
        return parse_thinking(self._buffer, streaming=True)

    def finish(self) -> ParsedResponse:
        return parse_thinking(self._buffer)


def join_trace(*parts: str) -> str:
    """Join non-empty reasoning fragments with blank lines."""
    return "\n\n".join(part.strip() for part in parts if part and part.strip())
