"""Shell tool for executing commands."""

import asyncio
import os
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from taskpilot.config import get_config
from taskpilot.logging import get_logger
from taskpilot.tools.registry import Tool, ToolErrorKind, ToolResult

if TYPE_CHECKING:
    from taskpilot.recovery.runner import RemediationRunner

log = get_logger(__name__)

CONTROL_OPERATORS = frozenset({";", "&&", "||", "|", "&"})
# Words that run the next word rather than being the program themselves.
PASSTHROUGH_WORDS = frozenset({"sudo", "command", "builtin", "nohup", "time", "env"})
_ENV_PREFIX_RE = re.compile(r"^[A-Za-z_]\w*=")

FAILURE_TEXT_NOTE = "[note] exit status 0, but the output reads like a failure"


@dataclass(frozen=True)
class ShellSegment:
    """One simple command between control operators."""

    words: tuple[str, ...]

    @property
    def text(self) -> str:
        return " ".join(self.words)

    @property
    def executable(self) -> str:
        """The program this segment runs, past ``VAR=value`` prefixes and wrappers."""
        for word in self.words:
            if word in PASSTHROUGH_WORDS:
                continue
            if _ENV_PREFIX_RE.match(word) and "/" not in word:
                continue
            return word
        return ""


def parse_shell_segments(command: str) -> list[ShellSegment]:
    """Tokenize a command line and cut it at control operators.

    Raises:
        ValueError: If quoting is unbalanced
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[ShellSegment] = []
    words: list[str] = []
    for token in [*lexer, ";"]:
        if token not in CONTROL_OPERATORS:
            words.append(token)
        elif words:
            segments.append(ShellSegment(tuple(words)))
            words = []
    return segments


def extract_shell_base_commands(command: str) -> list[str]:
    """Programs run by each segment, in order; empty when unparseable."""
    try:
        segments = parse_shell_segments(command or "")
    except ValueError:
        return []
    return [segment.executable for segment in segments if segment.executable]


def _as_regex(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def blocked_reason(command: str, patterns: list[str]) -> str | None:
    """Why ``command`` may not run, or ``None`` when it may.

    A pattern with whitespace is searched for in every segment's text. A
    single word must match the start of some segment's program, so
    ``mkfs`` blocks ``mkfs.ext4 /dev/sda`` but not ``echo mkfs``.
    """
    if not (command or "").strip():
        return "Command is empty"
    try:
        segments = parse_shell_segments(command)
    except ValueError:
        return "Command is not parseable"
    programs = [segment.executable for segment in segments if segment.executable]
    if not programs:
        return "Command is not parseable"

    texts = [segment.text for segment in segments]
    for raw in patterns:
        pattern = (raw or "").strip()
        if not pattern:
            continue
        regex = _as_regex(pattern)
        if any(char.isspace() for char in pattern):
            hit = any(regex.search(text) for text in texts)
        else:
            hit = any(regex.match(program) for program in programs)
        if hit:
            return f"Command matches blocked pattern: {pattern}"
    return None


@dataclass(frozen=True)
class CommandOutcome:
    """Exit status and captured streams of one shell command."""

    command: str
    exit_code: int
    output: str = ""
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ShellTool(Tool):
    """Execute shell commands."""

    name = "shell"
    description = "Execute a shell command and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, cwd: str | None = None, recovery: "RemediationRunner | None" = None):
        self.config = get_config()
        self.cwd = cwd
        self.attach_recovery(recovery)

    def attach_recovery(self, recovery: "RemediationRunner | None") -> None:
        """Route failed commands through ``recovery`` before reporting them."""
        self.recovery = recovery
        # Registry-level timeout sits just above the command timeout so the
        # command's own timeout message wins. Each remediation attempt may run
        # a plan and a retry.
        commands = 1
        if recovery is not None:
            recovery_cfg = self.config.recovery
            commands += 2 * recovery_cfg.max_attempts + len(recovery_cfg.restricted_probe_commands)
        self.timeout_seconds = float(self.config.tools.shell.timeout) * commands + 5.0

    def _truncate(self, text: str) -> str:
        max_length = self.config.tools.shell.max_output_chars
        if len(text) > max_length:
            return text[:max_length] + f"\n... [truncated, {len(text)} total chars]"
        return text

    async def run_command(self, command: str, timeout: float | None = None) -> CommandOutcome:
        """Run a command and capture its streams.

        Blocked commands, timeouts and spawn failures are reported with a
        non-zero exit code rather than raised.
        """
        reason = blocked_reason(command, self.config.tools.shell.blocked)
        if reason:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return CommandOutcome(command=command, exit_code=126, error=f"Command blocked: {reason}")

        if timeout is None:
            timeout = self.config.tools.shell.timeout
        timeout = max(1.0, float(timeout))

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, timeout=timeout)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            return CommandOutcome(command=command, exit_code=127, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandOutcome(
                command=command,
                exit_code=124,
                error=f"Command timed out after {timeout:g}s",
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        return CommandOutcome(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            output=self._truncate(stdout.decode("utf-8", errors="replace").strip()),
            error=self._truncate(stderr.decode("utf-8", errors="replace").strip()),
        )

    async def execute(self, command: str, timeout: float | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override

        Returns:
            ToolResult with command output
        """
        from taskpilot.recovery.classifier import detect_failure_keywords

        outcome = await self.run_command(command, timeout=timeout)

        recovery_note = ""
        if not outcome.succeeded and self.recovery is not None:
            report = await self.recovery.recover(command, outcome)
            recovery_note = report.summary()
            if report.recovered and report.final_outcome is not None:
                outcome = report.final_outcome

        output = outcome.output
        if outcome.error:
            output += f"\n[stderr] {outcome.error}" if output else f"[stderr] {outcome.error}"
        output = output or "[no output]"
        if recovery_note:
            output += f"\n[recovery]\n{recovery_note}"

        if outcome.succeeded:
            if detect_failure_keywords(outcome.output) or detect_failure_keywords(outcome.error):
                log.info("Command exited 0 but its output reports a failure", command=command)
                output += f"\n{FAILURE_TEXT_NOTE}"
            return ToolResult.ok(output)
        return ToolResult.failure(
            f"Command exited with status {outcome.exit_code}\n{output}",
            ToolErrorKind.EXECUTION_ERROR,
            content=output,
        )
