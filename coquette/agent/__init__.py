"""
Coquette Agent - turn orchestration engine.

Components:
- DecisionEngine: Decides whether and which tools to run
- ToolChainExecutor: Runs tools in order, chaining validated output
- ResultValidator: Heuristic checks of tool output
- RecoveryStrategist: Second reasoning pass after a failed step
- TurnLifecycle: Immutable Turn snapshots streamed to observers
- ResponseSynthesizer: Streams the final answer
- AgentCore: Orchestrates a Turn end to end
"""

from .chain_executor import ToolChainExecutor
from .core import AgentCore
from .decision_engine import DecisionEngine
from .error_recovery import RecoveryStrategist, ResourceConstraints
from .errors import (
    AgentError,
    InvalidTransitionError,
    ParseError,
    RecoveryExhausted,
    ToolExecutionError,
    TransportError,
    ValidationFailure,
)
from .lifecycle import TurnLifecycle
from .models import (
    Decision,
    HistoryEntry,
    MessageAuthor,
    RecoveryAlternative,
    RecoveryStrategy,
    Request,
    ToolExecutionRecord,
    ToolInvocation,
    Turn,
    TurnState,
)
from .persistence import InMemoryTurnStore, TurnStore, build_conversation_summary
from .result_validator import ResultValidator, ValidationThresholds, ValidationVerdict
from .synthesizer import ResponseSynthesizer
from .thinking_parser import ParsedResponse, ThinkingStreamAggregator, parse_thinking
from .tool_registry import RiskLevel, Tool, ToolClass, ToolParameter, ToolRegistry, ToolResult

__all__ = [
    # Core
    "AgentCore",
    "DecisionEngine",
    "ToolChainExecutor",
    "ResultValidator",
    "ValidationThresholds",
    "ValidationVerdict",
    "RecoveryStrategist",
    "ResourceConstraints",
    "ResponseSynthesizer",
    "TurnLifecycle",
    # Tools
    "RiskLevel",
    "Tool",
    "ToolClass",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    # Models
    "Decision",
    "HistoryEntry",
    "MessageAuthor",
    "RecoveryAlternative",
    "RecoveryStrategy",
    "Request",
    "ToolExecutionRecord",
    "ToolInvocation",
    "Turn",
    "TurnState",
    # Persistence
    "InMemoryTurnStore",
    "TurnStore",
    "build_conversation_summary",
    # Thinking markup
    "ParsedResponse",
    "ThinkingStreamAggregator",
    "parse_thinking",
    # Errors
    "AgentError",
    "InvalidTransitionError",
    "ParseError",
    "RecoveryExhausted",
    "ToolExecutionError",
    "TransportError",
    "ValidationFailure",
]
