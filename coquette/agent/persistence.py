"""
Turn persistence collaborator.

The engine only needs two calls: save a completed Turn and load the most
recent Turns of a conversation to build a context summary.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Sequence

import anyio

from .models import HistoryEntry, MessageAuthor, Turn

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION = "default"


class TurnStore(ABC):
    """Storage interface for completed Turns."""

    @abstractmethod
    async def save(self, turn: Turn) -> None:
        """
        Persist a completed Turn.

        Raises:
            ValueError: If the Turn is not complete
        """

    @abstractmethod
    async def load_recent(self, conversation_id: str, limit: int) -> List[Turn]:
        """
        Load the most recent Turns of a conversation, oldest first.

        Args:
            conversation_id: Conversation to read
            limit: Maximum number of Turns
        """


class InMemoryTurnStore(TurnStore):
    """Process-local TurnStore."""

    def __init__(self) -> None:
        self._turns: Dict[str, List[Turn]] = defaultdict(list)
        self._lock = anyio.Lock()

    async def save(self, turn: Turn) -> None:
        if not turn.is_complete:
            raise ValueError(f"Turn {turn.id} is not complete")
        async with self._lock:
            self._turns[turn.conversation_id or DEFAULT_CONVERSATION].append(turn)
        logger.debug(f"Saved turn {turn.id}")

    async def load_recent(self, conversation_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        async with self._lock:
            return list(self._turns.get(conversation_id, [])[-limit:])


def turns_to_history(turns: Sequence[Turn]) -> List[HistoryEntry]:
    """Flatten Turns into alternating user/assistant history entries."""
    history: List[HistoryEntry] = []
    for turn in turns:
        history.append(HistoryEntry(author=MessageAuthor.USER, content=turn.request.text))
        if turn.final_content:
            history.append(HistoryEntry(author=MessageAuthor.ASSISTANT, content=turn.final_content))
    return history


def build_conversation_summary(
    history: Sequence[HistoryEntry], window: int = 6, snippet_chars: int = 100
) -> str:
    """
    Condense recent history for a prompt.

    Args:
        history: Messages, oldest first
        window: Number of trailing messages kept
        snippet_chars: Characters kept per message

    Returns:
        ``"USER: ... | ASSISTANT: ..."`` or a placeholder when empty
    """
    recent = list(history)[-window:] if window > 0 else []
    if not recent:
        return "No previous conversation."

    parts = []
    for entry in recent:
        content = " ".join(entry.content.split())
        if len(content) > snippet_chars:
            content = content[:snippet_chars] + "..."
        parts.append(f"{entry.author.value.upper()}: {content}")
    return " | ".join(parts)
