"""
Agent Core for Coquette.

The turn orchestrator that brings the engine together:
- Decides whether a request needs tools
- Runs the planned tool chain with validation and chaining
- Runs at most a bounded number of recovery passes on failure
- Streams the synthesized answer as lifecycle snapshots
- Persists each completed Turn
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream

from adapters.llm import LLMAdapter

from ..config import CoquetteConfig, config
from .chain_executor import ToolChainExecutor
from .decision_engine import DecisionEngine
from .error_recovery import ResourceConstraints, RecoveryStrategist
from .errors import RecoveryExhausted, TransportError, ValidationFailure
from .lifecycle import TurnLifecycle
from .models import Request, ToolExecutionRecord, ToolInvocation, Turn, TurnState
from .persistence import TurnStore, build_conversation_summary, turns_to_history
from .result_validator import ResultValidator, ValidationThresholds
from .synthesizer import ResponseSynthesizer
from .thinking_parser import ParsedResponse, join_trace
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class AgentCore:
    """
    Turn orchestrator.

    One instance serves many turns, concurrently if needed; all per-turn
    state lives in the Turn snapshots and local variables.

    Usage:
        agent = AgentCore(llm, ToolRegistry([WebFetchTool(), ExtractorTool()]))
        turn = await agent.process(Request(text="What's new on Slashdot?"))

        async with agent.stream_turn(request) as updates:
            async for snapshot in updates:
                render(snapshot)
    """

    TRANSPORT_ERROR_MESSAGE = "Sorry, I couldn't get an answer from the language model. {error}"
    UNEXPECTED_ERROR_MESSAGE = "Sorry, something went wrong while handling your request."
    EMPTY_ANSWER_MESSAGE = "I wasn't able to put together an answer. Could you try asking again?"

    def __init__(
        self,
        llm: LLMAdapter,
        registry: ToolRegistry,
        settings: Optional[CoquetteConfig] = None,
        store: Optional[TurnStore] = None,
    ) -> None:
        """
        Initialize agent core.

        Args:
            llm: Text-generation adapter shared by all stages
            registry: Tools available to the engine
            settings: Engine configuration (module config when omitted)
            store: Optional persistence for completed Turns
        """
        self.settings = settings or config
        self.llm = llm
        self.registry = registry
        self.store = store

        s = self.settings
        self.validator = ResultValidator(
            ValidationThresholds(
                code_marker_threshold=s.code_marker_threshold,
                content_marker_floor=s.content_marker_floor,
                code_check_min_length=s.code_check_min_length,
                min_extraction_length=s.min_extraction_length,
            )
        )
        self.decision_engine = DecisionEngine(
            llm,
            registry,
            model=s.decision_model,
            temperature=s.decision_temperature,
            timeout=s.llm_timeout_seconds,
        )
        self.executor = ToolChainExecutor(
            registry, self.validator, default_timeout=s.tool_timeout_seconds
        )
        self.strategist = RecoveryStrategist(
            llm,
            registry,
            model=s.effective_recovery_model,
            temperature=s.recovery_temperature,
            num_ctx=s.recovery_num_ctx,
            preview_chars=s.recovery_preview_chars,
            timeout=s.llm_timeout_seconds,
        )
        self.synthesizer = ResponseSynthesizer(
            llm,
            model=s.synthesis_model,
            temperature=s.synthesis_temperature,
            timeout=s.llm_timeout_seconds,
            context_chars=s.synthesis_context_chars,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    def create_lifecycle(self, request: Request) -> TurnLifecycle:
        return TurnLifecycle(Turn.start(request), buffer_size=self.settings.snapshot_buffer_size)

    async def process(
        self,
        request: Request,
        constraints: Optional[ResourceConstraints] = None,
    ) -> Turn:
        """
        Run one Turn to completion.

        Args:
            request: User request
            constraints: Device resource constraints for recovery

        Returns:
            The terminal (COMPLETE) Turn snapshot
        """
        lifecycle = self.create_lifecycle(request)
        await self.run_turn(lifecycle, request, constraints)
        return lifecycle.snapshot

    @asynccontextmanager
    async def stream_turn(
        self,
        request: Request,
        constraints: Optional[ResourceConstraints] = None,
    ) -> AsyncIterator[MemoryObjectReceiveStream[Turn]]:
        """
        Run one Turn in the background and expose its snapshots.

        The stream starts with the THINKING snapshot and ends after COMPLETE.
        Leaving the block early stops observation, not the Turn.
        """
        lifecycle = self.create_lifecycle(request)
        updates = lifecycle.subscribe()
        async with anyio.create_task_group() as tg:
            tg.start_soon(self.run_turn, lifecycle, request, constraints)
            async with updates:
                yield updates

    async def run_turn(
        self,
        lifecycle: TurnLifecycle,
        request: Request,
        constraints: Optional[ResourceConstraints] = None,
    ) -> None:
        """Drive a lifecycle from THINKING to COMPLETE. Never raises for turn failures."""
        turn_id = lifecycle.snapshot.id
        logger.info(f"Turn {turn_id} started")
        try:
            content, error = await self._execute_turn(lifecycle, request, constraints)
        except TransportError as e:
            logger.error(f"Turn {turn_id} aborted: {e}")
            content, error = self.TRANSPORT_ERROR_MESSAGE.format(error=e), str(e)
        except Exception as e:
            logger.exception(f"Turn {turn_id} failed unexpectedly")
            content, error = self.UNEXPECTED_ERROR_MESSAGE, str(e) or type(e).__name__

        try:
            await self._complete(lifecycle, content, error)
        finally:
            await lifecycle.aclose()

    # =========================================================================
    # Turn stages
    # =========================================================================

    async def _execute_turn(
        self,
        lifecycle: TurnLifecycle,
        request: Request,
        constraints: Optional[ResourceConstraints],
    ) -> Tuple[str, Optional[str]]:
        summary = await self.conversation_summary(request)
        decision = await self.decision_engine.decide(request, summary)
        if decision.reasoning_trace:
            await lifecycle.update(reasoning_trace=decision.reasoning_trace)

        if not decision.requires_tools:
            if decision.direct_response:
                return decision.direct_response, None
            return await self._synthesize(lifecycle, request, summary, ()), None

        await lifecycle.update(TurnState.EXECUTING_TOOL)
        plan: List[ToolInvocation] = list(decision.invocations)
        records = await self.executor.execute_chain(
            plan,
            request.text,
            on_record=lifecycle.append_record,
            on_activity=lifecycle.set_activity,
        )

        try:
            await self._recover(lifecycle, request, plan, records, constraints)
        except RecoveryExhausted as e:
            logger.info(f"Turn {lifecycle.snapshot.id}: {e}")
            return e.clarification, None

        answer = await self._synthesize(
            lifecycle, request, summary, lifecycle.snapshot.tool_executions
        )
        return answer, None

    async def _recover(
        self,
        lifecycle: TurnLifecycle,
        request: Request,
        plan: List[ToolInvocation],
        records: List[ToolExecutionRecord],
        constraints: Optional[ResourceConstraints],
    ) -> None:
        """
        Run recovery cycles while an uncompensated failure remains.

        ``plan`` and ``records`` are parallel lists and grow with each cycle.

        Raises:
            RecoveryExhausted: When recovery is declined, or no usable output
                is left once the recovery budget is spent
        """
        strategy = None
        while True:
            try:
                self.ensure_usable(records)
                return
            except ValidationFailure as failure:
                logger.info(f"Turn {lifecycle.snapshot.id}: {failure}")
                if lifecycle.snapshot.recovery_attempts >= self.settings.max_recovery_cycles:
                    break
                failure_index = failure.index

            failed = records[failure_index]
            await lifecycle.update(
                recovery_attempts=lifecycle.snapshot.recovery_attempts + 1,
                activity=f"Recovering from {failed.tool_name} failure",
            )
            strategy = await self.strategist.analyze_failure(failed, request.text, constraints)
            alternatives = strategy.ordered_alternatives()

            if not (
                strategy.recovery_possible
                and alternatives
                and strategy.confidence >= self.settings.min_recovery_confidence
            ):
                raise RecoveryExhausted(
                    f"recovery declined for {failed.tool_name}",
                    self.strategist.generate_user_clarification(strategy),
                )

            retry_plan = self.build_retry_plan(alternatives, plan, failure_index)
            logger.info(f"Retry cycle: {[inv.tool_name for inv in retry_plan]}")
            retry_records = await self.executor.execute_chain(
                retry_plan,
                request.text,
                on_record=lifecycle.append_record,
                on_activity=lifecycle.set_activity,
                recovery=True,
            )
            plan.extend(retry_plan)
            records.extend(retry_records)

        if records and records[-1].validated:
            return

        clarification = (
            self.strategist.generate_user_clarification(strategy)
            if strategy is not None
            else self.strategist.GENERIC_CLARIFICATION
        )
        raise RecoveryExhausted("no usable tool output after recovery", clarification)

    def ensure_usable(self, records: Sequence[ToolExecutionRecord]) -> None:
        """
        Check that every failed step was made up for by a later one.

        Raises:
            ValidationFailure: For the first uncompensated failure
        """
        index = self.find_uncompensated_failure(records)
        if index is not None:
            record = records[index]
            raise ValidationFailure(
                record.tool_name, record.validation_reason or "unusable output", index
            )

    def find_uncompensated_failure(self, records: Sequence[ToolExecutionRecord]) -> Optional[int]:
        """
        Index of the first invalid record that no later record makes up for.

        A later record compensates when it is validated and comes from the
        same tool or from a tool producing the same data type.
        """
        for index, record in enumerate(records):
            if record.validated:
                continue
            if not any(
                later.validated and self._same_output(record.tool_name, later.tool_name)
                for later in records[index + 1 :]
            ):
                return index
        return None

    def _same_output(self, first: str, second: str) -> bool:
        if first == second:
            return True
        a, b = self.registry.get(first), self.registry.get(second)
        return bool(a and b and a.produces and a.produces == b.produces)

    def build_retry_plan(
        self,
        alternatives: Sequence[ToolInvocation],
        plan: Sequence[ToolInvocation],
        failure_index: int,
    ) -> List[ToolInvocation]:
        """
        Alternatives followed by the planned steps downstream of the failure.

        When the last alternative replaces the failed step's output, the
        failed step is skipped; otherwise it is re-run on the new input.
        """
        failed_name = plan[failure_index].tool_name
        replaces_failed = self._same_output(failed_name, alternatives[-1].tool_name)
        downstream_start = failure_index + 1 if replaces_failed else failure_index
        downstream = [
            ToolInvocation(
                tool_name=step.tool_name, arguments=step.arguments, reasoning=step.reasoning
            )
            for step in plan[downstream_start:]
        ]
        retry = [
            ToolInvocation(tool_name=alt.tool_name, arguments=alt.arguments, reasoning=alt.reasoning)
            for alt in alternatives
        ]
        return retry + downstream

    async def _synthesize(
        self,
        lifecycle: TurnLifecycle,
        request: Request,
        summary: str,
        records: Sequence[ToolExecutionRecord],
    ) -> str:
        base_trace = lifecycle.snapshot.reasoning_trace

        async def on_update(parsed: ParsedResponse) -> None:
            await lifecycle.update(
                final_content=parsed.content,
                reasoning_trace=join_trace(base_trace, parsed.thinking),
                activity="Writing answer",
            )

        result = await self.synthesizer.synthesize(request, summary, records, on_update)
        if result.thinking:
            await lifecycle.update(reasoning_trace=join_trace(base_trace, result.thinking))
        return result.content or self.EMPTY_ANSWER_MESSAGE

    async def _complete(
        self, lifecycle: TurnLifecycle, content: str, error: Optional[str]
    ) -> None:
        if lifecycle.snapshot.is_complete:
            return
        terminal = lifecycle.snapshot.advance(TurnState.COMPLETE, final_content=content, error=error)

        if self.store is not None:
            try:
                await self.store.save(terminal)
            except Exception:
                logger.exception(f"Failed to persist turn {terminal.id}")

        await lifecycle.publish(terminal)
        logger.info(
            f"Turn {terminal.id} complete: {len(terminal.tool_executions)} tool step(s), "
            f"error={terminal.error is not None}"
        )

    async def conversation_summary(self, request: Request) -> str:
        """Summary of recent messages from the request, or from the store."""
        history = list(request.history)
        if not history and self.store is not None and request.conversation_id:
            turns = await self.store.load_recent(
                request.conversation_id, self.settings.history_window
            )
            history = turns_to_history(turns)
        return build_conversation_summary(history, window=self.settings.history_window)
