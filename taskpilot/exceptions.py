"""Custom exceptions for TaskPilot."""


class TaskPilotError(Exception):
    """Base exception for TaskPilot."""

    pass


class ConfigurationError(TaskPilotError):
    """Configuration-related errors."""

    pass


class HistoryError(TaskPilotError):
    """Conversation history invariant violated."""

    pass


class LLMError(TaskPilotError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedRequestError(LLMError):
    """Canonical request could not be converted for a provider."""

    condition = "MALFORMED_REQUEST"

    def __init__(self, message: str, provider: str = ""):
        super().__init__(f"{self.condition}: {message}")
        self.provider = provider


class MalformedResponseError(LLMError):
    """Provider response body held nothing parseable."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class CredentialsExhaustedError(LLMError):
    """No usable credential remains for the current provider."""

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error


class CancelledRequestError(LLMError):
    """Request abandoned because the cancellation flag was raised."""

    pass


class ToolError(TaskPilotError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolArgumentError(ToolError):
    """Tool arguments do not match the declared parameter schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class TurnLimitExceededError(TaskPilotError):
    """Conversation hit the hard turn ceiling."""

    def __init__(self, max_turns: int):
        super().__init__("Maximum number of turns reached")
        self.max_turns = max_turns


class RecoveryError(TaskPilotError):
    """Command remediation could not be attempted."""

    pass
