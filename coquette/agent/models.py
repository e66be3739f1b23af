"""
Data models for the agent engine.

All models are immutable pydantic models: a snapshot handed to an observer
never changes afterwards, and every update produces a new instance.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class TurnState(str, Enum):
    """Lifecycle state of a Turn."""

    THINKING = "thinking"
    EXECUTING_TOOL = "executing_tool"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    TurnState.THINKING: 0,
    TurnState.EXECUTING_TOOL: 1,
    TurnState.COMPLETE: 2,
}


class MessageAuthor(str, Enum):
    """Author of a history entry."""

    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# Request
# =============================================================================


class HistoryEntry(BaseModel):
    """One prior message of the conversation."""

    model_config = ConfigDict(frozen=True)

    author: MessageAuthor = Field(..., description="Who wrote the message")
    content: str = Field(..., description="Message text")


class Request(BaseModel):
    """User input for one Turn, with read-only conversation history."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1, description="Free-text user input")
    history: Tuple[HistoryEntry, ...] = Field(
        default_factory=tuple, description="Prior messages, oldest first"
    )
    conversation_id: Optional[str] = Field(default=None, description="Conversation identifier")


# =============================================================================
# Decision and Recovery
# =============================================================================


class ToolInvocation(BaseModel):
    """A planned call of one tool."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., description="Registered tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Named arguments")
    reasoning: str = Field(default="", description="Why the model chose this call")


class RecoveryAlternative(ToolInvocation):
    """An alternative invocation proposed by the recovery strategist."""

    priority: int = Field(default=1, description="Lower values run first")


class Decision(BaseModel):
    """Outcome of the decision stage."""

    model_config = ConfigDict(frozen=True)

    requires_tools: bool = False
    invocations: Tuple[ToolInvocation, ...] = ()
    direct_response: Optional[str] = None
    reasoning_trace: str = ""


class RecoveryStrategy(BaseModel):
    """Outcome of the recovery stage."""

    model_config = ConfigDict(frozen=True)

    recovery_possible: bool = False
    reasoning: str = ""
    alternatives: Tuple[RecoveryAlternative, ...] = ()
    user_clarification_question: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    def ordered_alternatives(self) -> Tuple[RecoveryAlternative, ...]:
        """Alternatives sorted by priority, stable for equal priorities."""
        return tuple(sorted(self.alternatives, key=lambda alt: alt.priority))


# =============================================================================
# Execution records
# =============================================================================


class ToolExecutionRecord(BaseModel):
    """Outcome of one executed chain step."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    arguments: Dict[str, Any] = Field(
        default_factory=dict, description="Effective arguments after chaining"
    )
    output: str = ""
    start_time: datetime
    end_time: datetime
    success: bool
    validated: bool = False
    reasoning: str = ""
    validation_reason: Optional[str] = None
    chained_from: Optional[str] = Field(
        default=None, description="Producer tool whose output filled an argument"
    )
    recovery: bool = Field(default=False, description="Step belongs to the recovery cycle")

    @property
    def execution_time_ms(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() * 1000)


# =============================================================================
# Turn
# =============================================================================


class Turn(BaseModel):
    """
    Immutable snapshot of one request/response cycle.

    Use ``advance`` to derive the next snapshot; it enforces that the state
    only moves forward and that a completed Turn never changes.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: Optional[str] = None
    request: Request
    state: TurnState = TurnState.THINKING
    reasoning_trace: str = ""
    tool_executions: Tuple[ToolExecutionRecord, ...] = ()
    final_content: str = ""
    activity: Optional[str] = None
    error: Optional[str] = None
    recovery_attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @classmethod
    def start(cls, request: Request) -> "Turn":
        """Create the initial THINKING snapshot for a request."""
        return cls(request=request, conversation_id=request.conversation_id)

    @property
    def is_complete(self) -> bool:
        return self.state == TurnState.COMPLETE

    def advance(self, state: Optional[TurnState] = None, **changes: Any) -> "Turn":
        """
        Derive the next snapshot.

        Args:
            state: New state; defaults to the current one
            **changes: Field updates

        Returns:
            New Turn instance

        Raises:
            InvalidTransitionError: On regression or any change after COMPLETE
        """
        if self.is_complete:
            raise InvalidTransitionError(f"Turn {self.id} is already complete")

        target = state or self.state
        if target.rank < self.state.rank:
            raise InvalidTransitionError(
                f"Turn {self.id} cannot move from {self.state.value} to {target.value}"
            )

        changes["state"] = target
        if target == TurnState.COMPLETE:
            changes.setdefault("completed_at", utc_now())
            changes.setdefault("activity", None)
        return self.model_copy(update=changes)

    def with_record(self, record: ToolExecutionRecord) -> "Turn":
        """Append an execution record."""
        return self.advance(tool_executions=self.tool_executions + (record,))

    def validated_records(self) -> Tuple[ToolExecutionRecord, ...]:
        return tuple(record for record in self.tool_executions if record.validated)
