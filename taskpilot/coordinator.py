"""Tool execution coordinator: runs model-requested calls and records them."""

import asyncio

from taskpilot.events import EventChannel, ToolCallCompleted, ToolCallRequested
from taskpilot.history import ConversationHistory, FunctionCall, FunctionResponse
from taskpilot.logging import get_logger
from taskpilot.tools.registry import ToolErrorKind, ToolRegistry, ToolResult

log = get_logger(__name__)


class ToolExecutionCoordinator:
    """Executes function calls one at a time and keeps history paired.

    Every call that passes through ``run_pending`` ends up with exactly one
    ``FunctionResponse`` in history, whatever happened during execution.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        history: ConversationHistory,
        events: EventChannel | None = None,
        abort_event: asyncio.Event | None = None,
    ):
        self.registry = registry
        self.history = history
        self.events = events
        self.abort_event = abort_event if abort_event is not None else asyncio.Event()

    def abort(self) -> None:
        """Abort the tool that is currently running, if any."""
        self.abort_event.set()

    async def _publish(self, event: ToolCallRequested | ToolCallCompleted) -> None:
        if self.events is not None and not self.events.closed:
            await self.events.publish(event)

    async def execute(self, call: FunctionCall) -> ToolResult:
        """Run one call in its own task; never raises."""
        task = asyncio.create_task(
            self.registry.invoke(call.name, call.args, abort_event=self.abort_event)
        )
        try:
            return await task
        except asyncio.CancelledError:
            if not task.done():
                task.cancel()
            log.warning("Tool execution cancelled", tool=call.name, call_id=call.id)
            return ToolResult.failure("Tool execution was cancelled", ToolErrorKind.CANCELLED)
        except Exception as e:
            log.error("Tool execution crashed", tool=call.name, error=str(e))
            return ToolResult.failure(str(e), ToolErrorKind.EXECUTION_ERROR)

    def record(self, call: FunctionCall, result: ToolResult) -> None:
        """Append the call (unless already recorded) and its normalized response."""
        if not self.history.has_pending_call(call.id):
            self.history.add_function_call(call)
        self.history.add_function_response(
            FunctionResponse(name=call.name, response=result.to_response_payload(), id=call.id)
        )

    async def run_pending(self, calls: list[FunctionCall]) -> list[tuple[FunctionCall, ToolResult]]:
        """Execute calls in declared order, one at a time.

        Args:
            calls: Calls collected from one model response

        Returns:
            (call, result) pairs in the same order
        """
        results: list[tuple[FunctionCall, ToolResult]] = []
        for call in calls:
            await self._publish(ToolCallRequested(call=call))
            if self.abort_event.is_set():
                result = ToolResult.failure("Tool execution was cancelled", ToolErrorKind.CANCELLED)
            else:
                result = await self.execute(call)
            self.record(call, result)
            log.info(
                "Tool call completed",
                tool=call.name,
                call_id=call.id,
                success=result.success,
                error_kind=result.error.kind.value if result.error else None,
            )
            await self._publish(ToolCallCompleted(name=call.name, result=result))
            results.append((call, result))
        return results
