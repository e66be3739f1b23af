"""
Tool contract and registry.

A tool declares how it is described to the model (name, description,
argument schema, risk level), how its output is judged (tool class), and
which data types it produces and consumes so chain steps can be wired
together without naming specific tools.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None]]


class RiskLevel(str, Enum):
    """How much care a tool call warrants."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ToolClass(str, Enum):
    """Family of a tool, selecting the validation heuristics for its output."""

    FETCH = "fetch"
    EXTRACTION = "extraction"
    GENERIC = "generic"


class ToolParameter(BaseModel):
    """One argument of a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = True


class ToolResult(BaseModel):
    """Outcome reported by a tool."""

    success: bool
    output: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, output: str, **metadata: Any) -> "ToolResult":
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def error(cls, message: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, output=f"Error: {message}", metadata=metadata)


class Tool(ABC):
    """
    Base class for tools callable by the agent.

    Subclasses set the class attributes and implement ``execute``. Tools
    must not keep per-turn state: one instance serves concurrent turns.
    """

    name: str = ""
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    tool_class: ToolClass = ToolClass.GENERIC
    parameters: List[ToolParameter] = []
    produces: Optional[str] = None
    consumes: Optional[str] = None
    input_slot: Optional[str] = None
    timeout: Optional[float] = None

    @abstractmethod
    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        """
        Run the tool.

        Args:
            args: Named arguments

        Returns:
            ToolResult
        """

    async def execute_stream(
        self, args: Dict[str, Any], on_progress: Optional[ProgressCallback] = None
    ) -> ToolResult:
        """Run the tool, reporting progress messages when supported."""
        return await self.execute(args)

    def validate_args(self, args: Mapping[str, Any]) -> Optional[str]:
        """
        Check required arguments.

        Returns:
            Error message, or None when the arguments are acceptable
        """
        missing = [
            param.name
            for param in self.parameters
            if param.required and (args.get(param.name) is None or args.get(param.name) == "")
        ]
        if missing:
            return f"missing required argument(s): {', '.join(missing)}"
        return None

    def catalog_entry(self) -> str:
        """Describe the tool for a prompt."""
        params = ", ".join(
            f"{param.name}: {param.type}{'' if param.required else ' (optional)'}"
            for param in self.parameters
        )
        lines = [f"- {self.name}({params}) [risk: {self.risk_level.value}]", f"  {self.description}"]
        if self.consumes and self.input_slot:
            lines.append(
                f"  Accepts {self.consumes} from the previous step as '{self.input_slot}'."
            )
        if self.produces:
            lines.append(f"  Produces {self.produces}.")
        return "\n".join(lines)


class ToolRegistry:
    """
    Read-only map of tool name to tool.

    Tools are registered while building the registry; after ``freeze`` the
    registry can be shared by concurrent turns.
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None, freeze: bool = True) -> None:
        self._tools: Mapping[str, Tool] = {}
        self._frozen = False
        for tool in tools or []:
            self.register(tool)
        if freeze:
            self.freeze()

    def register(self, tool: Tool) -> None:
        """
        Add a tool.

        Raises:
            RuntimeError: If the registry is frozen
            ValueError: If the name is empty or already registered
        """
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        if tool.consumes and not tool.input_slot:
            raise ValueError(f"Tool '{tool.name}' consumes {tool.consumes} but has no input slot")
        self._tools = {**self._tools, tool.name: tool}
        logger.debug(f"Registered tool {tool.name} ({tool.tool_class.value})")

    def freeze(self) -> None:
        self._frozen = True
        self._tools = MappingProxyType(dict(self._tools))

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def resolve(self, name: str) -> Optional[str]:
        """Canonical tool name for ``name``, matching case-insensitively."""
        if name in self._tools:
            return name
        lowered = name.strip().lower()
        for registered in self._tools:
            if registered.lower() == lowered:
                return registered
        return None

    def has(self, name: str) -> bool:
        return self.resolve(name) is not None

    def names(self) -> List[str]:
        return list(self._tools)

    def all(self) -> List[Tool]:
        return list(self._tools.values())

    def by_risk_level(self, level: RiskLevel) -> List[Tool]:
        return [tool for tool in self._tools.values() if tool.risk_level == level]

    def producers_of(self, data_type: str) -> List[Tool]:
        return [tool for tool in self._tools.values() if tool.produces == data_type]

    def describe_catalog(self, exclude: Iterable[str] = ()) -> str:
        """Render the catalog for a prompt."""
        excluded = set(exclude)
        entries = [tool.catalog_entry() for tool in self._tools.values() if tool.name not in excluded]
        return "\n".join(entries) if entries else "(no tools available)"

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)
