"""
Tests for AgentCore - end-to-end turns with scripted model output.

Module: tests/test_agent/test_core.py
"""

import json
from typing import List

import anyio
import pytest

from adapters.llm import LLMError, MockLLMAdapter
from coquette.agent.core import AgentCore
from coquette.agent.error_recovery import RecoveryStrategist
from coquette.agent.errors import ValidationFailure
from coquette.agent.models import (
    HistoryEntry,
    MessageAuthor,
    RecoveryAlternative,
    Request,
    ToolExecutionRecord,
    ToolInvocation,
    Turn,
    TurnState,
    utc_now,
)
from coquette.agent.persistence import InMemoryTurnStore
from coquette.agent.tool_registry import ToolRegistry
from coquette.config import CoquetteConfig
from tests.fakes import (
    DESKTOP_URL,
    JS_HEAVY_TEXT,
    MOBILE_HTML,
    MOBILE_URL,
    READABLE_TEXT,
    SLASHDOT_HTML,
    EchoTool,
    ExplodingTool,
    ScriptedExtractorTool,
    StaticFetchTool,
    decision_json,
    step,
)

NEWS_PLAN = decision_json(step("WebFetchTool", url=DESKTOP_URL), step("ExtractorTool"))

MOBILE_RECOVERY = json.dumps(
    {
        "recoveryPossible": True,
        "reasoning": "The desktop page is JavaScript-heavy; the mobile site is static",
        "alternatives": [
            {"tool": "WebFetchTool", "args": {"url": MOBILE_URL}, "reasoning": "mobile", "priority": 1}
        ],
        "userQuestion": None,
        "confidence": 0.8,
    }
)


def _registry(desktop_text: str, mobile_text: str) -> ToolRegistry:
    fetch = StaticFetchTool({DESKTOP_URL: SLASHDOT_HTML, MOBILE_URL: MOBILE_HTML})
    extractor = ScriptedExtractorTool({SLASHDOT_HTML: desktop_text, MOBILE_HTML: mobile_text})
    return ToolRegistry([fetch, extractor, ExplodingTool(), EchoTool()])


def _record(name: str, validated: bool) -> ToolExecutionRecord:
    now = utc_now()
    return ToolExecutionRecord(
        tool_name=name, start_time=now, end_time=now, success=True, validated=validated
    )


class TestAgentCoreTurns:
    """End-to-end turns."""

    @pytest.mark.asyncio
    async def test_fetch_extract_synthesize(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test a two-step chain feeds extracted text into the answer."""
        llm = MockLLMAdapter(responses=[NEWS_PLAN, "Here are today's headlines."])
        agent = AgentCore(llm, registry, settings=settings)

        turn = await agent.process(Request(text="What's new on Slashdot?"))

        assert turn.state == TurnState.COMPLETE
        assert turn.error is None
        assert turn.final_content == "Here are today's headlines."
        assert [r.tool_name for r in turn.tool_executions] == ["WebFetchTool", "ExtractorTool"]
        assert turn.tool_executions[1].chained_from == "WebFetchTool"
        assert turn.tool_executions[1].arguments["html"] == SLASHDOT_HTML
        assert turn.recovery_attempts == 0
        assert llm.call_count == 2

        synthesis = llm.calls[1]
        assert synthesis["stream"] is True
        assert synthesis["model"] == settings.synthesis_model
        assert synthesis["temperature"] == settings.synthesis_temperature
        assert READABLE_TEXT in synthesis["prompt"]
        assert SLASHDOT_HTML not in synthesis["prompt"]

    @pytest.mark.asyncio
    async def test_recovery_with_alternative_source(self, settings: CoquetteConfig) -> None:
        """Test a script-heavy extraction is recovered through the mobile site."""
        llm = MockLLMAdapter(responses=[NEWS_PLAN, MOBILE_RECOVERY, "Top stories: open weights."])
        agent = AgentCore(llm, _registry(JS_HEAVY_TEXT, READABLE_TEXT), settings=settings)

        turn = await agent.process(Request(text="What's new on Slashdot?"))

        records = turn.tool_executions
        assert [r.tool_name for r in records] == [
            "WebFetchTool",
            "ExtractorTool",
            "WebFetchTool",
            "ExtractorTool",
        ]
        assert [r.recovery for r in records] == [False, False, True, True]
        assert records[1].success and not records[1].validated
        assert records[2].arguments == {"url": MOBILE_URL}
        assert records[3].arguments["html"] == MOBILE_HTML
        assert records[3].validated
        assert turn.recovery_attempts == 1
        assert turn.final_content == "Top stories: open weights."
        assert llm.call_count == 3

        recovery_call = llm.calls[1]
        assert recovery_call["temperature"] == settings.recovery_temperature
        assert recovery_call["num_ctx"] == settings.recovery_num_ctx
        assert recovery_call["model"] == settings.effective_recovery_model

    @pytest.mark.asyncio
    async def test_recovery_runs_at_most_once(self, settings: CoquetteConfig) -> None:
        """Test a failing retry ends the turn with a clarification."""
        llm = MockLLMAdapter(responses=[NEWS_PLAN, MOBILE_RECOVERY, MOBILE_RECOVERY])
        agent = AgentCore(llm, _registry(JS_HEAVY_TEXT, JS_HEAVY_TEXT), settings=settings)

        turn = await agent.process(Request(text="What's new on Slashdot?"))

        assert llm.call_count == 2
        assert turn.recovery_attempts == 1
        assert len(turn.tool_executions) == 4
        assert turn.state == TurnState.COMPLETE
        assert turn.error is None
        assert "JavaScript" in turn.final_content

    @pytest.mark.asyncio
    async def test_low_confidence_recovery_asks_user(self, settings: CoquetteConfig) -> None:
        """Test alternatives are not run below the confidence floor."""
        hesitant = json.dumps(
            {
                "recoveryPossible": True,
                "alternatives": [{"tool": "WebFetchTool", "args": {"url": MOBILE_URL}}],
                "userQuestion": "Could you paste the article text?",
                "confidence": 0.2,
            }
        )
        llm = MockLLMAdapter(responses=[NEWS_PLAN, hesitant])
        agent = AgentCore(llm, _registry(JS_HEAVY_TEXT, READABLE_TEXT), settings=settings)

        turn = await agent.process(Request(text="What's new on Slashdot?"))

        assert len(turn.tool_executions) == 2
        assert turn.final_content == "Could you paste the article text?"

    @pytest.mark.asyncio
    async def test_recovery_disabled(self, settings: CoquetteConfig) -> None:
        """Test a zero recovery budget skips the analysis call."""
        llm = MockLLMAdapter(responses=[NEWS_PLAN])
        agent = AgentCore(
            llm,
            _registry(JS_HEAVY_TEXT, READABLE_TEXT),
            settings=settings.model_copy(update={"max_recovery_cycles": 0}),
        )

        turn = await agent.process(Request(text="What's new on Slashdot?"))

        assert llm.call_count == 1
        assert turn.recovery_attempts == 0
        assert turn.final_content == RecoveryStrategist.GENERIC_CLARIFICATION

    @pytest.mark.asyncio
    async def test_direct_response(self, registry: ToolRegistry, settings: CoquetteConfig) -> None:
        """Test a greeting is answered without tools or synthesis."""
        llm = MockLLMAdapter(responses=['```json\n{"requiresTools": false, "directResponse": "Hi!"}\n```'])
        agent = AgentCore(llm, registry, settings=settings)

        snapshots: List[Turn] = []
        async with agent.stream_turn(Request(text="Hello")) as updates:
            async for snapshot in updates:
                snapshots.append(snapshot)

        final = snapshots[-1]
        assert final.final_content == "Hi!"
        assert final.tool_executions == ()
        assert llm.call_count == 1
        assert {s.state for s in snapshots} == {TurnState.THINKING, TurnState.COMPLETE}

    @pytest.mark.asyncio
    async def test_raising_tool_does_not_abort_turn(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test a tool exception is recorded and the turn still completes."""
        plan = decision_json(step("BrokenTool"), step("EchoTool", text="hi"))
        llm = MockLLMAdapter(responses=[plan, "I could not make sense of that."])
        agent = AgentCore(llm, registry, settings=settings)

        turn = await agent.process(Request(text="Read the sensor"))

        assert turn.state == TurnState.COMPLETE
        assert turn.error is None
        assert turn.tool_executions[0].success is False
        assert turn.tool_executions[0].output.startswith("Error:")
        assert turn.tool_executions[1].validated
        assert turn.final_content == RecoveryStrategist.GENERIC_CLARIFICATION

    @pytest.mark.asyncio
    async def test_decision_transport_error(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test an unreachable model completes the turn with an error."""
        llm = MockLLMAdapter(responses=[LLMError("connection refused", "mock")])
        agent = AgentCore(llm, registry, settings=settings)

        turn = await agent.process(Request(text="Hello"))

        assert turn.state == TurnState.COMPLETE
        assert turn.error is not None
        assert turn.final_content.startswith("Sorry, I couldn't get an answer")

    @pytest.mark.asyncio
    async def test_synthesis_transport_error_keeps_records(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test a failed answer stream keeps the executed steps."""
        plan = decision_json(step("EchoTool", text="hi"))
        llm = MockLLMAdapter(responses=[plan, LLMError("stream dropped", "mock")])
        agent = AgentCore(llm, registry, settings=settings)

        turn = await agent.process(Request(text="Echo hi"))

        assert turn.state == TurnState.COMPLETE
        assert turn.error is not None
        assert len(turn.tool_executions) == 1

    @pytest.mark.asyncio
    async def test_model_timeout(self, registry: ToolRegistry, settings: CoquetteConfig) -> None:
        """Test a slow model is cut off by the configured timeout."""
        llm = MockLLMAdapter(delay_ms=1000)
        agent = AgentCore(
            llm, registry, settings=settings.model_copy(update={"llm_timeout_seconds": 0.05})
        )

        turn = await agent.process(Request(text="Hello"))

        assert turn.state == TurnState.COMPLETE
        assert "did not answer" in turn.error

    @pytest.mark.asyncio
    async def test_streamed_snapshots_are_ordered(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test observers see forward-only states and never see reasoning markup."""
        llm = MockLLMAdapter(
            responses=[NEWS_PLAN, "<think>Reading the page.</think>Here is the answer."],
            chunk_size=4,
        )
        agent = AgentCore(llm, registry, settings=settings)

        snapshots: List[Turn] = []
        async with agent.stream_turn(Request(text="What's new on Slashdot?")) as updates:
            async for snapshot in updates:
                snapshots.append(snapshot)

        ranks = [s.state.rank for s in snapshots]
        assert ranks == sorted(ranks)
        assert snapshots[0].state == TurnState.THINKING
        assert TurnState.EXECUTING_TOOL in {s.state for s in snapshots}
        assert snapshots[-1].is_complete
        counts = [len(s.tool_executions) for s in snapshots]
        assert counts == sorted(counts)
        assert all("<" not in s.final_content for s in snapshots)
        assert snapshots[-1].final_content == "Here is the answer."
        assert "Reading the page." in snapshots[-1].reasoning_trace
        assert "test plan" in snapshots[-1].reasoning_trace
        assert len({s.id for s in snapshots}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_turns(self, registry: ToolRegistry, settings: CoquetteConfig) -> None:
        """Test one engine serves overlapping turns independently."""
        agent = AgentCore(MockLLMAdapter(delay_ms=10), registry, settings=settings)
        results: List[Turn] = []

        async def run(text: str) -> None:
            results.append(await agent.process(Request(text=text)))

        async with anyio.create_task_group() as tg:
            tg.start_soon(run, "first")
            tg.start_soon(run, "second")

        assert len(results) == 2
        assert all(turn.is_complete for turn in results)
        assert {turn.request.text for turn in results} == {"first", "second"}
        assert results[0].id != results[1].id

    @pytest.mark.asyncio
    async def test_turn_completes_with_stalled_observer(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test an observer that stops reading cannot hold the turn open."""
        llm = MockLLMAdapter(responses=[decision_json(), "x" * 1000], chunk_size=4)
        agent = AgentCore(
            llm, registry, settings=settings.model_copy(update={"snapshot_buffer_size": 4})
        )
        lifecycle = agent.create_lifecycle(Request(text="Tell me a long story"))
        stalled = lifecycle.subscribe()

        with anyio.fail_after(5):
            await agent.run_turn(lifecycle, Request(text="Tell me a long story"))

        assert lifecycle.snapshot.is_complete
        received = [snapshot async for snapshot in stalled]
        assert received[-1].is_complete
        assert received[-1].final_content == "x" * 1000
        assert len(received) <= 5


class TestConversationContext:
    """Tests for history handling."""

    @pytest.mark.asyncio
    async def test_store_supplies_history(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test completed turns are saved and summarized for the next turn."""
        direct = '{"requiresTools": false, "directResponse": "Hi!"}'
        llm = MockLLMAdapter(responses=[direct, direct])
        store = InMemoryTurnStore()
        agent = AgentCore(llm, registry, settings=settings, store=store)

        first = await agent.process(Request(text="first question", conversation_id="c1"))
        await agent.process(Request(text="second question", conversation_id="c1"))

        saved = await store.load_recent("c1", 10)
        assert [turn.id for turn in saved][0] == first.id
        assert len(saved) == 2
        assert "USER: first question | ASSISTANT: Hi!" in llm.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_request_history_used(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test history passed with the request reaches the decision prompt."""
        llm = MockLLMAdapter(responses=['{"requiresTools": false, "directResponse": "Yes."}'])
        agent = AgentCore(llm, registry, settings=settings)
        history = (
            HistoryEntry(author=MessageAuthor.USER, content="Tell me about Slashdot"),
            HistoryEntry(author=MessageAuthor.ASSISTANT, content="It is a tech news site."),
        )

        await agent.process(Request(text="Is it old?", history=history))

        assert "ASSISTANT: It is a tech news site." in llm.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_turn(
        self, registry: ToolRegistry, settings: CoquetteConfig
    ) -> None:
        """Test persistence errors are logged, not raised."""

        class BrokenStore(InMemoryTurnStore):
            async def save(self, turn: Turn) -> None:
                raise OSError("disk full")

        llm = MockLLMAdapter(responses=['{"requiresTools": false, "directResponse": "Hi!"}'])
        agent = AgentCore(llm, registry, settings=settings, store=BrokenStore())

        turn = await agent.process(Request(text="Hello"))

        assert turn.final_content == "Hi!"
        assert turn.error is None


class TestRecoveryPlanning:
    """Tests for failure bookkeeping helpers."""

    @pytest.fixture
    def agent(self, registry: ToolRegistry, settings: CoquetteConfig) -> AgentCore:
        return AgentCore(MockLLMAdapter(), registry, settings=settings)

    def test_failure_compensated_by_later_same_tool(self, agent: AgentCore) -> None:
        """Test a later validated run of the same tool compensates."""
        records = [
            _record("WebFetchTool", True),
            _record("ExtractorTool", False),
            _record("ExtractorTool", True),
        ]

        assert agent.find_uncompensated_failure(records) is None

    def test_failure_uncompensated(self, agent: AgentCore) -> None:
        """Test an unrelated later success does not compensate."""
        records = [_record("BrokenTool", False), _record("EchoTool", True)]

        assert agent.find_uncompensated_failure(records) == 0

    def test_retry_plan_reruns_failed_consumer(self, agent: AgentCore) -> None:
        """Test a new source is followed by the failed step again."""
        plan = [
            ToolInvocation(tool_name="WebFetchTool", arguments={"url": DESKTOP_URL}),
            ToolInvocation(tool_name="ExtractorTool"),
        ]
        alternatives = [RecoveryAlternative(tool_name="WebFetchTool", arguments={"url": MOBILE_URL})]

        retry = agent.build_retry_plan(alternatives, plan, failure_index=1)

        assert [inv.tool_name for inv in retry] == ["WebFetchTool", "ExtractorTool"]
        assert retry[0].arguments == {"url": MOBILE_URL}

    def test_retry_plan_replaces_failed_producer(self, agent: AgentCore) -> None:
        """Test an alternative producing the same data replaces the failed step."""
        plan = [
            ToolInvocation(tool_name="WebFetchTool", arguments={"url": DESKTOP_URL}),
            ToolInvocation(tool_name="ExtractorTool"),
        ]
        alternatives = [RecoveryAlternative(tool_name="WebFetchTool", arguments={"url": MOBILE_URL})]

        retry = agent.build_retry_plan(alternatives, plan, failure_index=0)

        assert [inv.tool_name for inv in retry] == ["WebFetchTool", "ExtractorTool"]
        assert retry[0].arguments == {"url": MOBILE_URL}
        assert all(type(inv) is ToolInvocation for inv in retry)

    def test_ensure_usable_reports_first_uncompensated_failure(self, agent: AgentCore) -> None:
        """Test the first unusable step is raised with its position."""
        rejected = _record("ExtractorTool", False).model_copy(
            update={"validation_reason": "extracted content looks like script code"}
        )
        records = [_record("WebFetchTool", True), rejected]

        with pytest.raises(ValidationFailure) as exc_info:
            agent.ensure_usable(records)

        assert exc_info.value.index == 1
        assert exc_info.value.tool_name == "ExtractorTool"
        assert "script code" in str(exc_info.value)

    def test_ensure_usable_accepts_compensated_chain(self, agent: AgentCore) -> None:
        """Test nothing is raised once a later step makes up for a failure."""
        records = [_record("ExtractorTool", False), _record("ExtractorTool", True)]

        agent.ensure_usable(records)
