"""
Recovery Strategist for failed tool steps.

When a chain step produces unusable output, a second reasoning pass asks
the model what went wrong and which alternative invocations could still
answer the request, taking the device's resource constraints into account.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from adapters.llm import GenerationOptions, LLMAdapter

from .errors import ParseError
from .generation import generate_text
from .json_parsing import find_bool, find_number, find_string, iter_embedded_objects, parse_json_model
from .models import RecoveryAlternative, RecoveryStrategy, ToolExecutionRecord
from .thinking_parser import parse_thinking
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class ResourceConstraints(BaseModel):
    """Device conditions the recovery plan must respect."""

    model_config = ConfigDict(frozen=True)

    metered_network: bool = False
    battery_percent: Optional[int] = Field(default=None, ge=0, le=100)
    low_power_mode: bool = False

    def describe(self) -> str:
        lines = [
            "- Network: " + ("metered, avoid large downloads" if self.metered_network else "unmetered"),
            "- Battery: "
            + (f"{self.battery_percent}%" if self.battery_percent is not None else "unknown")
            + (", low-power mode on" if self.low_power_mode else ""),
            "- Processing: on-device, prefer a single lightweight retry",
        ]
        return "\n".join(lines)


class _AlternativePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool: str = Field(validation_alias=AliasChoices("tool", "toolName", "name"))
    args: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("args", "arguments", "parameters")
    )
    reasoning: str = ""
    priority: int = 1

    @field_validator("args", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return v or {}


class _RecoveryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    recovery_possible: bool = Field(
        validation_alias=AliasChoices("recoveryPossible", "recovery_possible")
    )
    reasoning: str = ""
    alternatives: List[_AlternativePayload] = Field(
        default_factory=list, validation_alias=AliasChoices("alternatives", "alternativeTools")
    )
    user_question: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userQuestion", "userClarificationQuestion", "user_question"),
    )
    confidence: float = 0.5

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return min(max(v, 0.0), 1.0)

    @field_validator("alternatives", mode="before")
    @classmethod
    def _none_as_list(cls, v: Any) -> Any:
        return v or []


class RecoveryStrategist:
    """
    Proposes recovery for a failed chain step.

    Stateless between calls; the per-turn invocation bound is enforced by
    the turn orchestrator.
    """

    RECOVERY_PROMPT = """A tool in a mobile assistant's plan produced unusable output. Analyze the failure and propose a recovery.

Failed tool: {tool_name}
Arguments: {arguments}
Tool reported success: {success}
Why the output was rejected: {validation_reason}
Output preview:
{preview}

Original user request: {query}

Available tools:
{catalog}

Device constraints:
{constraints}

Respond with ONLY a JSON object:
{{"recoveryPossible": true or false, "reasoning": "<what went wrong>", "alternatives": [{{"tool": "<tool name>", "args": {{}}, "reasoning": "<why this helps>", "priority": 1}}], "userQuestion": "<question for the user when recovery is not possible, otherwise null>", "confidence": 0.0 to 1.0}}"""

    GENERIC_CLARIFICATION = "I had trouble analyzing the failure. Could you try rephrasing your request?"
    FALLBACK_CONFIDENCE = 0.3

    def __init__(
        self,
        llm: LLMAdapter,
        registry: ToolRegistry,
        model: Optional[str] = None,
        temperature: float = 0.4,
        num_ctx: int = 8192,
        preview_chars: int = 500,
        timeout: float = 120.0,
    ) -> None:
        """
        Initialize the strategist.

        Args:
            llm: Text-generation adapter
            registry: Tools that alternatives may name
            model: Model override for the analysis call
            temperature: Sampling temperature for the analysis call
            num_ctx: Context window for the analysis call
            preview_chars: Characters of failing output shown to the model
            timeout: Seconds allowed for the analysis call
        """
        self.llm = llm
        self.registry = registry
        self.model = model
        self.options = GenerationOptions(temperature=temperature, num_ctx=num_ctx)
        self.preview_chars = preview_chars
        self.timeout = timeout

    def build_prompt(
        self,
        failed: ToolExecutionRecord,
        query: str,
        constraints: Optional[ResourceConstraints] = None,
    ) -> str:
        return self.RECOVERY_PROMPT.format(
            tool_name=failed.tool_name,
            arguments=json.dumps(self._preview_arguments(failed.arguments), ensure_ascii=False),
            success=str(failed.success).lower(),
            validation_reason=failed.validation_reason or "unknown",
            preview=failed.output[: self.preview_chars] or "(empty)",
            query=query,
            catalog=self.registry.describe_catalog(),
            constraints=(constraints or ResourceConstraints()).describe(),
        )

    def _preview_arguments(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        # Chained inputs can be whole pages.
        return {
            key: value[: self.preview_chars] + "..."
            if isinstance(value, str) and len(value) > self.preview_chars
            else value
            for key, value in arguments.items()
        }

    async def analyze_failure(
        self,
        failed: ToolExecutionRecord,
        query: str,
        constraints: Optional[ResourceConstraints] = None,
    ) -> RecoveryStrategy:
        """
        Ask the model for a recovery strategy.

        Args:
            failed: Record of the failed step
            query: Original user request
            constraints: Device resource constraints

        Returns:
            RecoveryStrategy (never raises on malformed output)

        Raises:
            TransportError: If the text-generation call fails
        """
        logger.info(f"Analyzing failure of {failed.tool_name}: {failed.validation_reason}")
        raw = await generate_text(
            self.llm,
            self.build_prompt(failed, query, constraints),
            model=self.model,
            options=self.options,
            timeout=self.timeout,
            purpose="recovery",
        )
        strategy = self.parse_strategy(raw)
        logger.info(
            f"Recovery possible={strategy.recovery_possible} "
            f"alternatives={len(strategy.alternatives)} confidence={strategy.confidence:.2f}"
        )
        return strategy

    def parse_strategy(self, raw: str) -> RecoveryStrategy:
        """Parse model output with the strict stage, then the salvage stage."""
        parsed = parse_thinking(raw)
        text = parsed.content or raw

        try:
            payload = parse_json_model(text, _RecoveryPayload)
        except ParseError as e:
            logger.debug(f"Strict recovery parse failed: {e}")
            return self._salvage(text)

        return RecoveryStrategy(
            recovery_possible=payload.recovery_possible,
            reasoning=payload.reasoning,
            alternatives=self._known_alternatives(
                [alt.model_dump() for alt in payload.alternatives]
            ),
            user_clarification_question=payload.user_question or None,
            confidence=payload.confidence,
        )

    def _salvage(self, text: str) -> RecoveryStrategy:
        recovery_possible = find_bool(text, "recoveryPossible")
        alternatives = self._known_alternatives(self._embedded_alternatives(text))

        if recovery_possible is None and not alternatives:
            logger.warning("Could not parse recovery analysis, declining recovery")
            return self.fallback_strategy(find_string(text, "reasoning") or "")

        confidence = find_number(text, "confidence")
        return RecoveryStrategy(
            recovery_possible=bool(recovery_possible) if recovery_possible is not None else True,
            reasoning=find_string(text, "reasoning") or "",
            alternatives=alternatives,
            user_clarification_question=find_string(text, "userQuestion"),
            confidence=(
                min(max(confidence, 0.0), 1.0)
                if confidence is not None
                else self.FALLBACK_CONFIDENCE
            ),
        )

    def fallback_strategy(self, reasoning: str = "") -> RecoveryStrategy:
        """Strategy used when the analysis cannot be interpreted."""
        return RecoveryStrategy(
            recovery_possible=False,
            reasoning=reasoning or "Failed to parse recovery analysis",
            user_clarification_question=self.GENERIC_CLARIFICATION,
            confidence=self.FALLBACK_CONFIDENCE,
        )

    @staticmethod
    def _embedded_alternatives(text: str) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []

        def walk(node: Any) -> None:
            if isinstance(node, dict):
                if "tool" in node or "toolName" in node:
                    found.append(node)
                    return
                for value in node.values():
                    walk(value)
            elif isinstance(node, list):
                for item in node:
                    walk(item)

        for obj in iter_embedded_objects(text):
            walk(obj)
        return found

    def _known_alternatives(
        self, raw_alternatives: List[Dict[str, Any]]
    ) -> Tuple[RecoveryAlternative, ...]:
        alternatives = []
        for raw in raw_alternatives:
            try:
                payload = _AlternativePayload.model_validate(raw)
            except ValueError:
                continue
            name = self.registry.resolve(payload.tool)
            if name is None:
                logger.warning(f"Dropping recovery alternative for unknown tool '{payload.tool}'")
                continue
            alternatives.append(
                RecoveryAlternative(
                    tool_name=name,
                    arguments=payload.args,
                    reasoning=payload.reasoning,
                    priority=payload.priority,
                )
            )
        return tuple(alternatives)

    @staticmethod
    def generate_user_clarification(strategy: RecoveryStrategy) -> str:
        """
        Message shown to the user when recovery does not succeed.

        Args:
            strategy: The strategy returned by ``analyze_failure``

        Returns:
            The model's question, or a message derived from its reasoning
        """
        if strategy.user_clarification_question:
            return strategy.user_clarification_question

        reasoning = strategy.reasoning.lower()
        if "javascript" in reasoning:
            return (
                "This website relies on heavy JavaScript that I can't process on a mobile "
                "device. Could you try a different source or share the article text directly?"
            )
        if "network" in reasoning:
            return (
                "I'm having trouble connecting to that website. Could you check your "
                "connection or try a different source?"
            )
        if strategy.reasoning:
            return (
                f"I ran into a problem: {strategy.reasoning}. Could you rephrase your "
                "request or try a different approach?"
            )
        return RecoveryStrategist.GENERIC_CLARIFICATION
