"""
Error taxonomy for the agent engine.

Only TransportError ends a turn early; the others are handled inside the
stage that raises them and become data on the Turn.
"""

from typing import Optional


class AgentError(Exception):
    """Base exception for agent engine errors."""

    pass


class ParseError(AgentError):
    """Model output could not be interpreted by either parse stage."""

    pass


class ToolExecutionError(AgentError):
    """A tool timed out or rejected its arguments; recorded as a failed step."""

    def __init__(self, tool_name: str, detail: str):
        super().__init__(f"{tool_name}: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class ValidationFailure(AgentError):
    """A step's output was unusable and no later step made up for it."""

    def __init__(self, tool_name: str, reason: str, index: int):
        super().__init__(f"{tool_name} output rejected: {reason}")
        self.tool_name = tool_name
        self.reason = reason
        self.index = index


class RecoveryExhausted(AgentError):
    """Recovery was declined or its retry cycle produced no usable result."""

    def __init__(self, message: str, clarification: str):
        super().__init__(message)
        self.clarification = clarification


class TransportError(AgentError):
    """The text-generation capability failed or timed out."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class InvalidTransitionError(AgentError):
    """A Turn was moved backwards or changed after completion."""

    pass
