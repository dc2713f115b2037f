"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import jsonschema
from pydantic import BaseModel, ConfigDict

from taskpilot.exceptions import ToolArgumentError, ToolExecutionError, ToolNotFoundError
from taskpilot.logging import get_logger

log = get_logger(__name__)


class ToolErrorKind(str, Enum):
    """Why a tool call produced no usable output."""

    NOT_FOUND = "not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION_ERROR = "execution_error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ToolFailure(BaseModel):
    """Error attached to a failed tool result."""

    model_config = ConfigDict(frozen=True)

    message: str
    kind: ToolErrorKind = ToolErrorKind.EXECUTION_ERROR


class ToolResult(BaseModel):
    """Result from tool execution."""

    model_config = ConfigDict(frozen=True)

    content: str | dict[str, Any] = ""
    display_text: str = ""
    error: ToolFailure | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, content: str | dict[str, Any], display_text: str = "") -> "ToolResult":
        if not display_text:
            display_text = content if isinstance(content, str) else ""
        return cls(content=content, display_text=display_text)

    @classmethod
    def failure(
        cls,
        message: str,
        kind: ToolErrorKind = ToolErrorKind.EXECUTION_ERROR,
        content: str | dict[str, Any] = "",
    ) -> "ToolResult":
        message = (message or "").strip() or "Tool execution failed"
        return cls(
            content=content,
            display_text=f"Error: {message}",
            error=ToolFailure(message=message, kind=kind),
        )

    def to_response_payload(self) -> dict[str, Any]:
        """Model-facing payload: ``{"error": ...}`` or ``{"output": ...}``."""
        if self.error is not None:
            return {"error": self.error.message}
        return {"output": self.content}


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with content or a typed error
        """
        pass

    def get_declaration(self) -> dict[str, Any]:
        """Get the JSON-schema shaped declaration sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against the declared parameter schema.

        Raises:
            ToolArgumentError if the arguments do not match
        """
        if not isinstance(arguments, dict):
            raise ToolArgumentError(self.name, "arguments must be an object")
        if not self.parameters:
            return
        try:
            jsonschema.validate(instance=arguments, schema=self.parameters)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path)
            detail = f"{path}: {e.message}" if path else e.message
            raise ToolArgumentError(self.name, detail) from e


class ToolRegistry:
    """Registry for managing available tools.

    ``invoke`` is the capability the rest of the system consumes: it always
    returns a ``ToolResult`` and only lets task cancellation escape.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_declarations(self) -> list[dict[str, Any]]:
        """Get all tool declarations for the model."""
        return [tool.get_declaration() for tool in self._tools.values()]

    def validate_arguments(self, name: str, arguments: dict[str, Any]) -> None:
        self.get(name).validate_arguments(arguments)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def _run(
        self,
        tool: Tool,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None,
    ) -> ToolResult:
        """Run one tool with its timeout, honouring an external abort event."""
        timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        execute_task: asyncio.Task[ToolResult] = asyncio.create_task(tool.execute(**arguments))
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            wait_tasks: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = execute_task.result()
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(tool.name, "Tool returned invalid result payload")
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                return ToolResult.failure("Execution aborted", ToolErrorKind.CANCELLED)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            return ToolResult.failure(
                f"Execution timed out after {timeout_label}s",
                ToolErrorKind.TIMEOUT,
            )
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        finally:
            await self._cancel_task(abort_wait_task)

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Invoke a tool by name and return a typed result.

        Args:
            name: Tool name
            arguments: Tool arguments
            abort_event: Optional event that aborts the running tool

        Returns:
            ToolResult; failures are reported through ``ToolResult.error``
        """
        arguments = dict(arguments or {})
        try:
            tool = self.get(name)
        except ToolNotFoundError as e:
            log.warning("Unknown tool requested", tool=name)
            return ToolResult.failure(str(e), ToolErrorKind.NOT_FOUND)

        try:
            tool.validate_arguments(arguments)
        except ToolArgumentError as e:
            log.warning("Tool arguments rejected", tool=name, error=str(e))
            return ToolResult.failure(str(e), ToolErrorKind.INVALID_ARGUMENTS)

        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await self._run(tool, arguments, abort_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolResult.failure(str(e), ToolErrorKind.EXECUTION_ERROR)

        log.info("Tool executed", tool=name, success=result.success)
        return result
