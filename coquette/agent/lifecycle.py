"""
Turn lifecycle publisher.

Holds the current immutable snapshot of one Turn and pushes every new
snapshot to subscribed observers over anyio memory object streams.
"""

import logging
from typing import Any, List, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .errors import InvalidTransitionError
from .models import ToolExecutionRecord, Turn, TurnState

logger = logging.getLogger(__name__)


class TurnLifecycle:
    """
    Snapshot publisher for a single Turn.

    Intermediate snapshots are offered without waiting; an observer whose
    intermediate buffer is full misses them. The terminal snapshot always
    fits, so publishing never waits on a stalled observer.
    Observers that close their stream are dropped and the Turn carries on.
    """

    def __init__(self, turn: Turn, buffer_size: int = 64) -> None:
        self._snapshot = turn
        self._buffer_size = max(1, buffer_size)
        self._subscribers: List[MemoryObjectSendStream[Turn]] = []
        self._closed = False

    @property
    def snapshot(self) -> Turn:
        return self._snapshot

    def subscribe(self) -> MemoryObjectReceiveStream[Turn]:
        """
        Open a stream of snapshots, starting with the current one.

        The stream ends after the terminal snapshot.
        """
        # One slot beyond the intermediate buffer is kept for the terminal snapshot
        send, receive = anyio.create_memory_object_stream(max_buffer_size=self._buffer_size + 1)
        send.send_nowait(self._snapshot)
        if self._closed:
            send.close()
        else:
            self._subscribers.append(send)
        return receive

    async def publish(self, turn: Turn) -> None:
        """
        Replace the current snapshot and notify observers.

        Never waits on an observer: intermediates go out only while the
        observer has intermediate buffer left, and the terminal snapshot
        takes the reserved slot.

        Raises:
            InvalidTransitionError: If ``turn`` regresses the state or the
                current snapshot is already complete
        """
        current = self._snapshot
        if current.is_complete:
            raise InvalidTransitionError(f"Turn {current.id} is already complete")
        if turn.id != current.id:
            raise InvalidTransitionError(f"Snapshot of turn {turn.id} published to turn {current.id}")
        if turn.state.rank < current.state.rank:
            raise InvalidTransitionError(
                f"Turn {current.id} cannot move from {current.state.value} to {turn.state.value}"
            )

        self._snapshot = turn
        if turn.state != current.state:
            logger.debug(f"Turn {turn.id}: {current.state.value} -> {turn.state.value}")

        for send in list(self._subscribers):
            if not turn.is_complete and send.statistics().current_buffer_used >= self._buffer_size:
                logger.debug(f"Observer of turn {turn.id} is lagging, snapshot skipped")
                continue
            try:
                send.send_nowait(turn)
            except anyio.WouldBlock:
                logger.warning(f"Observer of turn {turn.id} has no room for the final snapshot")
                self._drop(send)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                logger.debug(f"Observer of turn {turn.id} went away")
                self._drop(send)

    def _drop(self, send: MemoryObjectSendStream[Turn]) -> None:
        self._subscribers.remove(send)
        send.close()

    async def update(self, state: Optional[TurnState] = None, **changes: Any) -> Turn:
        """Derive and publish the next snapshot."""
        turn = self._snapshot.advance(state, **changes)
        await self.publish(turn)
        return turn

    async def set_activity(self, activity: str) -> None:
        await self.update(activity=activity)

    async def append_record(self, record: ToolExecutionRecord) -> None:
        await self.publish(self._snapshot.with_record(record))

    async def aclose(self) -> None:
        """End every observer stream."""
        self._closed = True
        for send in self._subscribers:
            await send.aclose()
        self._subscribers.clear()
