"""
Tool Chain Executor.

Runs planned tool invocations strictly in order:
- Threads a validated producer's output into the next step's input slot
- Bounds every call with the tool's timeout
- Turns exceptions and timeouts into failed records instead of aborting
- Validates every result and reports each record as soon as it exists
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import anyio

from .errors import ToolExecutionError
from .models import ToolExecutionRecord, ToolInvocation, utc_now
from .result_validator import ResultValidator
from .tool_registry import Tool, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

RecordCallback = Callable[[ToolExecutionRecord], Awaitable[None]]
ActivityCallback = Callable[[str], Awaitable[None]]


class ToolChainExecutor:
    """
    Sequential executor for a chain of tool invocations.

    The executor holds no per-turn state and can serve concurrent turns.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        validator: Optional[ResultValidator] = None,
        default_timeout: float = 30.0,
    ) -> None:
        """
        Initialize the executor.

        Args:
            registry: Tools available to the chain
            validator: Result validator (default thresholds when omitted)
            default_timeout: Seconds allowed for tools that declare no timeout
        """
        self.registry = registry
        self.validator = validator or ResultValidator()
        self.default_timeout = default_timeout

    async def execute_chain(
        self,
        invocations: Sequence[ToolInvocation],
        query: str,
        on_record: Optional[RecordCallback] = None,
        on_activity: Optional[ActivityCallback] = None,
        recovery: bool = False,
    ) -> List[ToolExecutionRecord]:
        """
        Execute invocations in order.

        Args:
            invocations: Planned steps
            query: Original user request, passed to the validator
            on_record: Awaited with each record right after its step
            on_activity: Awaited with short status messages
            recovery: Mark records as part of a recovery cycle

        Returns:
            One record per invocation, failed steps included
        """
        records: List[ToolExecutionRecord] = []
        previous: Optional[ToolExecutionRecord] = None

        for step, invocation in enumerate(invocations, start=1):
            logger.info(f"Chain step {step}/{len(invocations)}: {invocation.tool_name}")
            record = await self.execute_step(
                invocation, query, previous=previous, on_activity=on_activity, recovery=recovery
            )
            records.append(record)
            if on_record:
                await on_record(record)
            previous = record

        return records

    def chain_arguments(
        self,
        invocation: ToolInvocation,
        tool: Tool,
        previous: Optional[ToolExecutionRecord],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        Effective arguments for a step.

        The previous output replaces the consumer's input slot only when the
        previous record was validated and its tool produces the data type
        this tool consumes.

        Returns:
            (arguments, producer tool name or None)
        """
        args = dict(invocation.arguments)
        if previous is None or not previous.validated:
            return args, None

        producer = self.registry.get(previous.tool_name)
        if (
            producer is not None
            and producer.produces is not None
            and tool.consumes == producer.produces
            and tool.input_slot
        ):
            args[tool.input_slot] = previous.output
            return args, producer.name
        return args, None

    async def execute_step(
        self,
        invocation: ToolInvocation,
        query: str,
        previous: Optional[ToolExecutionRecord] = None,
        on_activity: Optional[ActivityCallback] = None,
        recovery: bool = False,
    ) -> ToolExecutionRecord:
        """Execute and validate a single step."""
        start_time = utc_now()
        resolved = self.registry.resolve(invocation.tool_name)
        tool = self.registry.get(resolved) if resolved else None

        if tool is None:
            logger.warning(f"Skipping unknown tool '{invocation.tool_name}'")
            return ToolExecutionRecord(
                tool_name=invocation.tool_name,
                arguments=dict(invocation.arguments),
                output=f"Error: tool '{invocation.tool_name}' not found",
                start_time=start_time,
                end_time=utc_now(),
                success=False,
                reasoning=invocation.reasoning,
                validation_reason="unknown tool",
                recovery=recovery,
            )

        args, chained_from = self.chain_arguments(invocation, tool, previous)
        if chained_from:
            logger.debug(f"{tool.name}.{tool.input_slot} <- output of {chained_from}")

        result = await self._run_tool(tool, args, on_activity)
        end_time = utc_now()

        verdict = self.validator.validate(tool.tool_class, result.output, query, result.success)
        if not verdict.is_valid:
            logger.info(f"{tool.name} output rejected: {verdict.reason}")

        return ToolExecutionRecord(
            tool_name=tool.name,
            arguments=args,
            output=result.output,
            start_time=start_time,
            end_time=end_time,
            success=result.success,
            validated=verdict.is_valid,
            reasoning=invocation.reasoning,
            validation_reason=verdict.reason,
            chained_from=chained_from,
            recovery=recovery,
        )

    async def _run_tool(
        self,
        tool: Tool,
        args: Dict[str, Any],
        on_activity: Optional[ActivityCallback],
    ) -> ToolResult:
        """Run a tool, turning every failure into a failed result."""
        try:
            return await self._invoke(tool, args, on_activity)
        except ToolExecutionError as e:
            logger.warning(str(e))
            return ToolResult.error(e.detail)
        except Exception as e:
            logger.warning(f"{tool.name} raised {e!r}", exc_info=True)
            return ToolResult.error(str(e) or type(e).__name__)

    async def _invoke(
        self,
        tool: Tool,
        args: Dict[str, Any],
        on_activity: Optional[ActivityCallback],
    ) -> ToolResult:
        problem = tool.validate_args(args)
        if problem:
            raise ToolExecutionError(tool.name, problem)

        async def report(message: str) -> None:
            if on_activity:
                await on_activity(f"{tool.name}: {message}")

        if on_activity:
            await on_activity(f"Running {tool.name}")

        timeout = tool.timeout or self.default_timeout
        try:
            with anyio.fail_after(timeout):
                return await tool.execute_stream(args, report)
        except TimeoutError as e:
            raise ToolExecutionError(
                tool.name, f"{tool.name} timed out after {timeout:g} seconds"
            ) from e
