"""
Decision Engine.

Asks the model whether a request needs tools and, if so, which ones in
which order. Model output is parsed tolerantly: a strict schema pass first,
a field-by-field salvage second, and a safe "no tools" decision when both
fail.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from adapters.llm import GenerationOptions, LLMAdapter

from .errors import ParseError
from .generation import generate_text
from .json_parsing import find_bool, find_string, iter_embedded_objects, parse_json_model
from .models import Decision, Request, ToolInvocation
from .thinking_parser import join_trace, parse_thinking
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class _InvocationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool: str = Field(validation_alias=AliasChoices("tool", "toolName", "name"))
    args: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("args", "arguments", "parameters")
    )
    reasoning: str = ""

    @field_validator("args", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return v or {}

    @field_validator("reasoning", mode="before")
    @classmethod
    def _none_as_blank(cls, v: Any) -> Any:
        return v or ""


class _DecisionPayload(BaseModel):
    """Wire schema, including the older ``type``/``tools``/``response`` shape."""

    model_config = ConfigDict(extra="ignore")

    requires_tools: bool = Field(validation_alias=AliasChoices("requiresTools", "requires_tools"))
    invocations: List[_InvocationPayload] = Field(
        default_factory=list, validation_alias=AliasChoices("invocations", "tools")
    )
    direct_response: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("directResponse", "response", "direct_response")
    )
    reasoning: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_type_field(cls, data: Any) -> Any:
        if isinstance(data, dict) and "requiresTools" not in data:
            kind = str(data.get("type", "")).lower()
            if kind in ("direct", "tools"):
                data = {**data, "requiresTools": kind == "tools"}
        return data

    @field_validator("invocations", mode="before")
    @classmethod
    def _none_as_list(cls, v: Any) -> Any:
        return v or []


class DecisionEngine:
    """
    Produces a Decision for a request.

    Uses one text-generation call per request; never raises on malformed
    model output.
    """

    DECISION_PROMPT = """You are the planning stage of a mobile assistant. Decide whether the user's request needs tools.

Available tools:
{catalog}

Recent conversation:
{summary}

User request: {query}

Respond with ONLY a JSON object in this format:
{{"requiresTools": true or false, "invocations": [{{"tool": "<tool name>", "args": {{}}, "reasoning": "<why>"}}], "directResponse": "<answer when no tools are needed, otherwise null>", "reasoning": "<one sentence>"}}

Rules:
- Use tools only for information the conversation does not already contain, such as current web content.
- List invocations in execution order. A step that accepts the previous step's output may leave that argument empty.
- For greetings, small talk and general knowledge set requiresTools to false and answer in directResponse."""

    def __init__(
        self,
        llm: LLMAdapter,
        registry: ToolRegistry,
        model: Optional[str] = None,
        temperature: float = 0.1,
        timeout: float = 120.0,
    ) -> None:
        """
        Initialize the decision engine.

        Args:
            llm: Text-generation adapter
            registry: Tools the model may plan with
            model: Model override for the decision call
            temperature: Sampling temperature for the decision call
            timeout: Seconds allowed for the decision call
        """
        self.llm = llm
        self.registry = registry
        self.model = model
        self.options = GenerationOptions(temperature=temperature)
        self.timeout = timeout

    def build_prompt(self, request: Request, conversation_summary: str = "") -> str:
        return self.DECISION_PROMPT.format(
            catalog=self.registry.describe_catalog(),
            summary=conversation_summary or "No previous conversation.",
            query=request.text,
        )

    async def decide(self, request: Request, conversation_summary: str = "") -> Decision:
        """
        Decide how to handle a request.

        Args:
            request: User request
            conversation_summary: Condensed recent conversation

        Returns:
            Decision with unknown tools removed

        Raises:
            TransportError: If the text-generation call fails
        """
        raw = await generate_text(
            self.llm,
            self.build_prompt(request, conversation_summary),
            model=self.model,
            options=self.options,
            timeout=self.timeout,
            purpose="decision",
        )
        decision = self.parse_decision(raw)
        logger.info(
            f"Decision: requires_tools={decision.requires_tools} "
            f"tools={[inv.tool_name for inv in decision.invocations]}"
        )
        return decision

    def parse_decision(self, raw: str) -> Decision:
        """
        Interpret raw model output.

        Args:
            raw: Model output, possibly fenced, wrapped in prose, or malformed

        Returns:
            Decision; ``requires_tools=False`` with no response on total failure
        """
        parsed = parse_thinking(raw)
        text = parsed.content or raw

        try:
            payload = parse_json_model(text, _DecisionPayload)
        except ParseError as e:
            logger.debug(f"Strict decision parse failed: {e}")
            decision = self._salvage(text, parsed.thinking)
        else:
            decision = Decision(
                requires_tools=payload.requires_tools,
                invocations=tuple(
                    ToolInvocation(tool_name=inv.tool, arguments=inv.args, reasoning=inv.reasoning)
                    for inv in payload.invocations
                ),
                direct_response=payload.direct_response or None,
                reasoning_trace=join_trace(parsed.thinking, payload.reasoning),
            )

        return self._filter_unknown_tools(decision)

    def _salvage(self, text: str, thinking: str) -> Decision:
        requires_tools = find_bool(text, "requiresTools")
        direct_response = find_string(text, "directResponse")
        reasoning = find_string(text, "reasoning")
        invocations = tuple(self._embedded_invocations(text))

        if requires_tools is None and not invocations and direct_response is None:
            kind = find_string(text, "type")
            if kind and kind.lower() == "direct":
                direct_response = find_string(text, "response")
                requires_tools = False

        if requires_tools is None and not invocations and direct_response is None:
            logger.warning("Could not parse decision, answering without tools")
            return Decision(requires_tools=False, reasoning_trace=thinking)

        if requires_tools is None:
            requires_tools = bool(invocations)

        logger.info("Decision recovered by salvage parse")
        return Decision(
            requires_tools=requires_tools,
            invocations=invocations,
            direct_response=direct_response or None,
            reasoning_trace=join_trace(thinking, reasoning),
        )

    @staticmethod
    def _embedded_invocations(text: str) -> List[ToolInvocation]:
        invocations: List[ToolInvocation] = []

        def walk(node: Any) -> None:
            if isinstance(node, dict):
                is_call = "tool" in node or "toolName" in node or (
                    "name" in node and ("args" in node or "arguments" in node)
                )
                if is_call:
                    try:
                        payload = _InvocationPayload.model_validate(node)
                    except ValueError:
                        return
                    invocations.append(
                        ToolInvocation(
                            tool_name=payload.tool,
                            arguments=payload.args,
                            reasoning=payload.reasoning,
                        )
                    )
                    return
                for value in node.values():
                    walk(value)
            elif isinstance(node, list):
                for item in node:
                    walk(item)

        for obj in iter_embedded_objects(text):
            walk(obj)
        return invocations

    def _filter_unknown_tools(self, decision: Decision) -> Decision:
        if not decision.requires_tools:
            if decision.invocations:
                return decision.model_copy(update={"invocations": ()})
            return decision

        known = []
        for invocation in decision.invocations:
            name = self.registry.resolve(invocation.tool_name)
            if name is None:
                logger.warning(f"Dropping invocation of unknown tool '{invocation.tool_name}'")
                continue
            if name != invocation.tool_name:
                invocation = invocation.model_copy(update={"tool_name": name})
            known.append(invocation)

        if not known:
            logger.warning("No known tools left in decision, answering without tools")
        return decision.model_copy(
            update={"invocations": tuple(known), "requires_tools": bool(known)}
        )
