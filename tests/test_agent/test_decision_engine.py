"""
Tests for the Decision Engine.

Module: tests/test_agent/test_decision_engine.py
"""

import logging

import pytest

from adapters.llm import LLMError, MockLLMAdapter
from coquette.agent.decision_engine import DecisionEngine
from coquette.agent.errors import TransportError
from coquette.agent.models import Request
from coquette.agent.tool_registry import ToolRegistry
from tests.fakes import DESKTOP_URL, decision_json, step


class TestParseDecision:
    """Test DecisionEngine.parse_decision."""

    @pytest.fixture
    def engine(self, registry: ToolRegistry) -> DecisionEngine:
        """Create engine with an unused adapter."""
        return DecisionEngine(MockLLMAdapter(), registry)

    def test_fenced_direct_response(self, engine: DecisionEngine) -> None:
        """Test a fenced direct answer needs no tools."""
        raw = '```json\n{"requiresTools": false, "directResponse": "Hi!"}\n```'

        decision = engine.parse_decision(raw)

        assert decision.requires_tools is False
        assert decision.direct_response == "Hi!"
        assert decision.invocations == ()

    def test_prose_wrapped_equals_bare(self, engine: DecisionEngine) -> None:
        """Test fences and prose do not change the parsed decision."""
        bare = decision_json(step("WebFetchTool", url=DESKTOP_URL), step("ExtractorTool"))
        wrapped = f"Here is my plan:\n```json\n{bare}\n```\nLet me know!"

        assert engine.parse_decision(wrapped) == engine.parse_decision(bare)

    def test_tool_plan_in_order(self, engine: DecisionEngine) -> None:
        """Test invocations keep the planned order and arguments."""
        raw = decision_json(step("WebFetchTool", url=DESKTOP_URL), step("ExtractorTool"))

        decision = engine.parse_decision(raw)

        assert decision.requires_tools is True
        assert [inv.tool_name for inv in decision.invocations] == ["WebFetchTool", "ExtractorTool"]
        assert decision.invocations[0].arguments == {"url": DESKTOP_URL}
        assert decision.invocations[1].arguments == {}
        assert decision.reasoning_trace == "test plan"

    def test_thinking_goes_to_trace(self, engine: DecisionEngine) -> None:
        """Test reasoning markup is moved into the trace."""
        raw = '<think>Simple greeting.</think>{"requiresTools": false, "directResponse": "Hello!", "reasoning": "chit-chat"}'

        decision = engine.parse_decision(raw)

        assert decision.direct_response == "Hello!"
        assert decision.reasoning_trace == "Simple greeting.\n\nchit-chat"

    def test_legacy_direct_shape(self, engine: DecisionEngine) -> None:
        """Test the older type/response shape is understood."""
        decision = engine.parse_decision('{"type": "direct", "response": "Sure thing."}')

        assert decision.requires_tools is False
        assert decision.direct_response == "Sure thing."

    def test_legacy_tools_shape(self, engine: DecisionEngine) -> None:
        """Test the older type/tools shape with toolName keys."""
        raw = '{"type": "tools", "tools": [{"toolName": "EchoTool", "arguments": {"text": "x"}}]}'

        decision = engine.parse_decision(raw)

        assert decision.requires_tools is True
        assert decision.invocations[0].tool_name == "EchoTool"
        assert decision.invocations[0].arguments == {"text": "x"}

    def test_salvage_from_malformed_json(self, engine: DecisionEngine) -> None:
        """Test fields are salvaged when the object does not decode."""
        raw = (
            '{"requiresTools": true, "invocations": ['
            f'{{"tool": "WebFetchTool", "args": {{"url": "{DESKTOP_URL}"}}}}, ], "reasoning": "news"'
        )

        decision = engine.parse_decision(raw)

        assert decision.requires_tools is True
        assert [inv.tool_name for inv in decision.invocations] == ["WebFetchTool"]
        assert decision.reasoning_trace == "news"

    def test_salvage_direct_response_with_trailing_comma(self, engine: DecisionEngine) -> None:
        """Test a direct answer survives a trailing comma."""
        decision = engine.parse_decision('{"requiresTools": false, "directResponse": "Hi!",}')

        assert decision.requires_tools is False
        assert decision.direct_response == "Hi!"

    def test_total_failure_means_no_tools(self, engine: DecisionEngine) -> None:
        """Test unparseable output yields a safe no-tools decision."""
        decision = engine.parse_decision("I am not sure what you mean.")

        assert decision.requires_tools is False
        assert decision.invocations == ()
        assert decision.direct_response is None

    def test_unknown_tool_dropped(
        self, engine: DecisionEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test invocations of unregistered tools are removed and logged."""
        raw = decision_json(step("TeleportTool"), step("EchoTool", text="hi"))

        with caplog.at_level(logging.WARNING):
            decision = engine.parse_decision(raw)

        assert [inv.tool_name for inv in decision.invocations] == ["EchoTool"]
        assert "TeleportTool" in caplog.text

    def test_all_unknown_tools_means_no_tools(self, engine: DecisionEngine) -> None:
        """Test a plan with only unknown tools falls back to no tools."""
        decision = engine.parse_decision(decision_json(step("TeleportTool")))

        assert decision.requires_tools is False
        assert decision.invocations == ()

    def test_tool_names_resolved_case_insensitively(self, engine: DecisionEngine) -> None:
        """Test tool names are mapped to their registered spelling."""
        decision = engine.parse_decision(decision_json(step("echotool", text="hi")))

        assert decision.invocations[0].tool_name == "EchoTool"

    def test_invocations_cleared_without_tools(self, engine: DecisionEngine) -> None:
        """Test a no-tools decision carries no invocations."""
        raw = '{"requiresTools": false, "invocations": [{"tool": "EchoTool"}], "directResponse": "ok"}'

        assert engine.parse_decision(raw).invocations == ()


class TestDecide:
    """Test DecisionEngine.decide."""

    @pytest.mark.asyncio
    async def test_decide_uses_decision_settings(self, registry: ToolRegistry) -> None:
        """Test the call uses the configured model and temperature."""
        llm = MockLLMAdapter(responses=['{"requiresTools": false, "directResponse": "Hi!"}'])
        engine = DecisionEngine(llm, registry, model="planner", temperature=0.1)

        decision = await engine.decide(Request(text="hello"), "USER: earlier question")

        assert decision.direct_response == "Hi!"
        assert llm.call_count == 1
        assert llm.calls[0]["model"] == "planner"
        assert llm.calls[0]["temperature"] == 0.1
        assert "User request: hello" in llm.calls[0]["prompt"]
        assert "USER: earlier question" in llm.calls[0]["prompt"]

    def test_prompt_lists_catalog(self, registry: ToolRegistry) -> None:
        """Test the prompt describes every registered tool."""
        engine = DecisionEngine(MockLLMAdapter(), registry)

        prompt = engine.build_prompt(Request(text="news?"))

        for name in registry.names():
            assert name in prompt
        assert "No previous conversation." in prompt

    @pytest.mark.asyncio
    async def test_adapter_failure_raises_transport_error(self, registry: ToolRegistry) -> None:
        """Test adapter errors surface as TransportError."""
        llm = MockLLMAdapter(responses=[LLMError("connection refused", "mock")])
        engine = DecisionEngine(llm, registry)

        with pytest.raises(TransportError):
            await engine.decide(Request(text="hello"))

    @pytest.mark.asyncio
    async def test_timeout_raises_transport_error(self, registry: ToolRegistry) -> None:
        """Test a slow adapter surfaces as TransportError."""
        engine = DecisionEngine(MockLLMAdapter(delay_ms=1000), registry, timeout=0.05)

        with pytest.raises(TransportError, match="did not answer"):
            await engine.decide(Request(text="hello"))
