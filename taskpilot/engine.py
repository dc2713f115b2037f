"""Conversation turn engine: request, parse, execute tools, continue."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

from taskpilot.config import Config, get_config
from taskpilot.coordinator import ToolExecutionCoordinator
from taskpilot.environment import EnvironmentDescriptor, detect_environment
from taskpilot.events import (
    Completed,
    CredentialsExhausted,
    Event,
    EventChannel,
    Failed,
    TextChunk,
)
from taskpilot.exceptions import (
    CancelledRequestError,
    CredentialsExhaustedError,
    LLMAPIError,
    MalformedRequestError,
    MalformedResponseError,
    TurnLimitExceededError,
)
from taskpilot.history import (
    ConversationHistory,
    Content,
    FunctionCall,
    FunctionCallPart,
    Part,
    TextPart,
    make_call_id,
)
from taskpilot.instructions import InstructionLoader
from taskpilot.intent import (
    IntentType,
    detect_commands_only,
    detect_intents,
    needs_documentation_search,
)
from taskpilot.llm.base import CanonicalRequest, GenerationSettings, ToolDeclaration
from taskpilot.llm.client import ProviderClient
from taskpilot.llm.parsing import (
    MALFORMED_FUNCTION_CALL,
    MAX_TOKENS,
    SAFETY,
    STOP,
    ParsedResponse,
)
from taskpilot.logging import get_logger
from taskpilot.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled"
NO_FINISH_MESSAGE = "No finish reason or tool calls"

FINISH_REASON_FAILURES = {
    MAX_TOKENS: "Response truncated: maximum output tokens reached",
    SAFETY: "Response blocked by safety filters",
    MALFORMED_FUNCTION_CALL: "Model produced a malformed function call",
}


class TurnPhase(str, Enum):
    AWAITING_REQUEST = "awaiting_request"
    REQUEST_SENT = "request_sent"
    RESPONSE_RECEIVED = "response_received"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    TERMINATING = "terminating"


@dataclass
class TurnState:
    """Bookkeeping for the turn currently in flight."""

    turn: int = 0
    phase: TurnPhase = TurnPhase.AWAITING_REQUEST
    has_tool_calls: bool = False
    finish_reason: str | None = None
    # (call, result once executed, correlation id)
    pending_calls: list[tuple[FunctionCall, ToolResult | None, str]] = field(default_factory=list)


class TurnEngine:
    """Drives one conversation with a provider.

    The engine owns the turn loop: it sends the history, forwards visible
    text, lets the coordinator execute requested tools, and continues
    automatically until the model stops or a terminal condition is hit.
    Every ``send``/``run`` ends with exactly one of ``Completed``,
    ``Failed`` or ``CredentialsExhausted``.
    """

    def __init__(
        self,
        client: ProviderClient,
        registry: ToolRegistry,
        history: ConversationHistory | None = None,
        config: Config | None = None,
        instructions: InstructionLoader | None = None,
        environment: EnvironmentDescriptor | None = None,
        workspace_root: Path | str | None = None,
        model: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.client = client
        self.registry = registry
        self.history = history if history is not None else ConversationHistory()
        self.config = config or get_config()
        self.workspace_root = Path(workspace_root or Path.cwd()).resolve()
        self.instructions = instructions or InstructionLoader(workspace_dir=self.workspace_root)
        self._environment = environment
        self.model = model
        self.state = TurnState()
        self.last_intents: list[IntentType] = []
        self.needs_documentation = False
        self.commands_only = False
        # Shared with the coordinator and, when wired, the recovery loop.
        self.cancel_event = cancel_event if cancel_event is not None else asyncio.Event()

    @property
    def environment(self) -> EnvironmentDescriptor:
        if self._environment is None:
            self._environment = detect_environment()
        return self._environment

    @property
    def max_turns(self) -> int:
        return self.config.engine.max_turns

    def cancel(self) -> None:
        """Raise the cooperative cancellation flag.

        The loop stops before its next request and the running tool, if
        any, is aborted.
        """
        self.cancel_event.set()
        self.client.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def get_history(self) -> list[Content]:
        """Snapshot of the conversation; safe to mutate."""
        return self.history.snapshot()

    def reset(self) -> None:
        self.history.clear()
        self.state = TurnState()
        self.last_intents = []
        self.needs_documentation = False
        self.commands_only = False

    def _build_system_instruction(self) -> str:
        environment = self.environment
        template = self.config.engine.system_prompt_template
        try:
            return self.instructions.system_prompt(
                template,
                system_context=environment.as_prompt_block(),
                workspace_root=self.workspace_root,
                tool_names=self.registry.list_tools(),
            )
        except FileNotFoundError as e:
            log.warning("System prompt template missing", template=template, error=str(e))
            return environment.as_prompt_block()

    def _tool_declarations(self) -> list[ToolDeclaration]:
        if not self.config.engine.include_tools:
            return []
        return [ToolDeclaration.from_dict(decl) for decl in self.registry.get_declarations()]

    def _generation_settings(self) -> GenerationSettings:
        model_cfg = self.config.model
        return GenerationSettings(
            temperature=model_cfg.temperature,
            top_p=model_cfg.top_p,
            max_output_tokens=model_cfg.max_tokens,
        )

    @staticmethod
    def _model_parts(response: ParsedResponse) -> list[Part]:
        """Visible text and calls recorded as one model content; thoughts are dropped."""
        parts: list[Part] = []
        if response.text:
            parts.append(TextPart(text=response.text))
        parts.extend(FunctionCallPart(function_call=call) for call in response.calls)
        return parts

    def _dedupe_call_ids(self, calls: list[FunctionCall]) -> None:
        """Re-key calls whose provider id is already taken in this conversation.

        Some OpenAI-compatible servers number calls per response (``call_0``)
        and reuse the same ids on every turn.
        """
        seen: set[str] = set()
        for call in calls:
            if call.id in seen or self.history.has_call_id(call.id):
                original = call.id
                call.id = make_call_id(call.name)
                log.debug("Reassigned reused call id", tool=call.name, original=original, call_id=call.id)
            seen.add(call.id)

    @staticmethod
    def _terminal_for(response: ParsedResponse) -> Event:
        reason = response.finish_reason
        if reason == STOP:
            return Completed()
        if reason in FINISH_REASON_FAILURES:
            return Failed(FINISH_REASON_FAILURES[reason])
        if reason is not None:
            log.warning("Unexpected finish reason", finish_reason=reason)
        return Failed(NO_FINISH_MESSAGE)

    async def _run_turns(self, user_message: str, channel: EventChannel) -> Event:
        self.last_intents = detect_intents(user_message, self.workspace_root)
        self.needs_documentation = needs_documentation_search(user_message)
        self.commands_only = detect_commands_only(user_message, self.workspace_root)
        log.info(
            "Starting conversation turn",
            intents=[intent.value for intent in self.last_intents],
            needs_documentation=self.needs_documentation,
            commands_only=self.commands_only,
            history=len(self.history),
        )
        self.history.add_user_text(user_message)

        coordinator = ToolExecutionCoordinator(
            self.registry, self.history, channel, abort_event=self.cancel_event
        )
        system_instruction = self._build_system_instruction()
        tools = self._tool_declarations()
        generation = self._generation_settings()

        turn = 0
        while True:
            if self.cancelled:
                return Failed(CANCELLED_MESSAGE)
            if turn >= self.max_turns:
                error = TurnLimitExceededError(self.max_turns)
                log.warning("Turn limit reached", max_turns=self.max_turns)
                return Failed(str(error))

            turn += 1
            self.state = TurnState(turn=turn, phase=TurnPhase.REQUEST_SENT)
            request = CanonicalRequest(
                contents=self.history.to_wire(),
                tools=tools,
                system_instruction=system_instruction,
                generation=generation,
            )
            log.info("Calling LLM", turn=turn, contents=len(request.contents), tools=len(tools))
            try:
                response = await self.client.generate(request, model=self.model)
            except CredentialsExhaustedError as e:
                log.warning("Credentials exhausted", error=str(e))
                return CredentialsExhausted(message=str(e))
            except CancelledRequestError:
                return Failed(CANCELLED_MESSAGE)
            except (LLMAPIError, MalformedRequestError, MalformedResponseError) as e:
                log.error("LLM call failed", turn=turn, error=str(e))
                return Failed(str(e))

            self.state.phase = TurnPhase.RESPONSE_RECEIVED
            self.state.finish_reason = response.finish_reason
            for fragment in response.text_events:
                await channel.publish(TextChunk(text=fragment))

            self._dedupe_call_ids(response.calls)
            parts = self._model_parts(response)
            if parts:
                self.history.add_model_parts(parts)

            if response.calls:
                self.state.phase = TurnPhase.TOOL_CALLS_PENDING
                self.state.has_tool_calls = True
                self.state.pending_calls = [(call, None, call.id) for call in response.calls]
                log.info("Tool calls detected", turn=turn, count=len(response.calls))
                results = await coordinator.run_pending(response.calls)
                self.state.pending_calls = [(call, result, call.id) for call, result in results]
                self.state.phase = TurnPhase.AWAITING_REQUEST
                continue

            self.state.phase = TurnPhase.TERMINATING
            return self._terminal_for(response)

    async def send(self, user_message: str, channel: EventChannel) -> Event:
        """Process one user message, publishing every event to ``channel``.

        Returns:
            The terminal event that was published last
        """
        self.cancel_event.clear()
        self.client.clear_cancel()
        try:
            terminal = await self._run_turns(user_message, channel)
        except asyncio.CancelledError:
            self.state.phase = TurnPhase.TERMINATING
            if not channel.closed:
                channel.publish_nowait(Failed(CANCELLED_MESSAGE))
            raise
        except Exception as e:
            log.error("Turn loop failed", error=str(e), exc_info=True)
            terminal = Failed(f"{type(e).__name__}: {e}")

        self.state.phase = TurnPhase.TERMINATING
        log.info("Conversation turn finished", outcome=type(terminal).__name__, turns=self.state.turn)
        await channel.publish(terminal)
        return terminal

    async def run(self, user_message: str) -> AsyncIterator[Event]:
        """Process one user message and yield its events in order."""
        channel = EventChannel()
        task = asyncio.create_task(self.send(user_message, channel))
        try:
            async for event in channel.subscribe():
                yield event
        finally:
            if not task.done():
                self.cancel()
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
