"""Remediation loop: classify a failed command, try fallback plans, retry."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from taskpilot.config import Config, get_config
from taskpilot.environment import EnvironmentDescriptor
from taskpilot.logging import get_logger
from taskpilot.recovery.cache import CommandAvailabilityCache
from taskpilot.recovery.classifier import ErrorType, classify, missing_command
from taskpilot.recovery.planner import (
    FailureAnalysis,
    FallbackPlan,
    FallbackPlanner,
    RestrictedEnvironmentProbe,
)
from taskpilot.tools.shell import CommandOutcome, ShellTool

log = get_logger(__name__)

RESTRICTED_REASON = "Restricted environment: basic commands are failing, remediation skipped"


@runtime_checkable
class CommandRunner(Protocol):
    async def run(self, command: str) -> CommandOutcome: ...


class ShellCommandRunner:
    """Runs commands through a ``ShellTool`` without going through the registry."""

    def __init__(self, shell: ShellTool | None = None, timeout: float | None = None):
        self.shell = shell or ShellTool()
        self.timeout = timeout

    async def run(self, command: str) -> CommandOutcome:
        return await self.shell.run_command(command, timeout=self.timeout)


@dataclass
class RemediationAttempt:
    plan: FallbackPlan
    outcome: CommandOutcome
    retry: CommandOutcome | None = None

    @property
    def recovered(self) -> bool:
        if not self.outcome.succeeded:
            return False
        if self.plan.should_retry_original:
            return self.retry is not None and self.retry.succeeded
        return True


@dataclass
class RecoveryReport:
    recovered: bool
    error_type: ErrorType | None
    analysis: FailureAnalysis
    attempts: list[RemediationAttempt] = field(default_factory=list)
    restricted: bool = False
    cancelled: bool = False

    @property
    def final_outcome(self) -> CommandOutcome | None:
        """Outcome that should replace the original failure, if recovery worked."""
        for attempt in reversed(self.attempts):
            if attempt.recovered:
                return attempt.retry or attempt.outcome
        return None

    def summary(self) -> str:
        lines = [f"Failure type: {self.error_type.value if self.error_type else 'none'}"]
        if self.analysis.reason:
            lines.append(f"Reason: {self.analysis.reason}")
        for attempt in self.attempts:
            status = "ok" if attempt.outcome.succeeded else f"exit {attempt.outcome.exit_code}"
            lines.append(f"Tried `{attempt.plan.command}` ({status})")
            if attempt.retry is not None:
                retry_status = "ok" if attempt.retry.succeeded else f"exit {attempt.retry.exit_code}"
                lines.append(f"Retried original command ({retry_status})")
        if self.restricted:
            lines.append(RESTRICTED_REASON)
        if self.cancelled:
            lines.append("Recovery cancelled")
        lines.append("Recovered" if self.recovered else "Not recovered")
        return "\n".join(lines)


class RemediationRunner:
    """Tries fallback plans for a failed command until one works."""

    def __init__(
        self,
        runner: CommandRunner,
        planner: FallbackPlanner,
        environment: EnvironmentDescriptor,
        config: Config | None = None,
        probe: RestrictedEnvironmentProbe | None = None,
        workspace: Path | str | None = None,
        commands: CommandAvailabilityCache | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.runner = runner
        self.planner = planner
        self.environment = environment
        self.config = config or get_config()
        recovery = self.config.recovery
        self.probe = probe or RestrictedEnvironmentProbe(
            runner,
            commands=list(recovery.restricted_probe_commands),
            threshold=recovery.restricted_threshold,
        )
        self.workspace = Path(workspace) if workspace else None
        self.commands = commands
        self._cancel_event = cancel_event if cancel_event is not None else asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def clear_cancel(self) -> None:
        self._cancel_event.clear()

    @property
    def _workspace_key(self) -> str | None:
        return str(self.workspace) if self.workspace else None

    def _mark_installed(self, plan: FallbackPlan) -> None:
        if not plan.dependency:
            return
        self.planner.cache.record(
            plan.dependency, True, check_command=plan.command, workspace=self._workspace_key
        )
        # Module dependencies are keyed "ecosystem:name"; bare names are executables.
        if self.commands is not None and ":" not in plan.dependency:
            self.commands.record(
                plan.dependency, True, check_command=plan.command, workspace=self._workspace_key
            )

    async def _check_missing_command(self, command: str, output: str) -> None:
        """Look up the executable a failure complains about on PATH.

        When it is there after all, the planner's cache learns so and install
        plans for it are skipped.
        """
        if self.commands is None:
            return
        name = missing_command(output, command)
        if not name or not await self.commands.check(name, self.runner, self._workspace_key):
            return
        log.info("Reported missing command is available", missing=name)
        self.planner.cache.record(name, True, workspace=self._workspace_key)

    async def recover(self, command: str, outcome: CommandOutcome) -> RecoveryReport:
        """Attempt to recover from a failed command.

        Plans run in order, at most ``recovery.max_attempts`` of them. A plan
        that asks for it is followed by a retry of the original command.
        """
        if outcome.succeeded:
            return RecoveryReport(recovered=True, error_type=None, analysis=FailureAnalysis(reason=""))

        error_type = classify(outcome.output, outcome.error, command)
        combined = "\n".join(part for part in (outcome.output, outcome.error) if part)
        log.info("Classified command failure", command=command, error_type=error_type.value)

        if not self.config.recovery.enabled:
            return RecoveryReport(
                recovered=False,
                error_type=error_type,
                analysis=FailureAnalysis(reason="Recovery is disabled"),
            )

        if await self.probe.is_restricted():
            return RecoveryReport(
                recovered=False,
                error_type=error_type,
                analysis=FailureAnalysis(reason=RESTRICTED_REASON),
                restricted=True,
            )

        if error_type == ErrorType.COMMAND_NOT_FOUND:
            await self._check_missing_command(command, combined)

        analysis = await self.planner.plan(
            error_type, command, combined, self.environment, self.workspace
        )
        report = RecoveryReport(recovered=False, error_type=error_type, analysis=analysis)

        for plan in analysis.plans[: self.config.recovery.max_attempts]:
            if self.cancelled:
                report.cancelled = True
                break
            log.info("Trying fallback plan", plan=plan.command, retry_original=plan.should_retry_original)
            attempt = RemediationAttempt(plan=plan, outcome=await self.runner.run(plan.command))
            report.attempts.append(attempt)
            if not attempt.outcome.succeeded:
                log.info("Fallback plan failed", plan=plan.command, exit_code=attempt.outcome.exit_code)
                continue

            self._mark_installed(plan)
            if plan.should_retry_original:
                if self.cancelled:
                    report.cancelled = True
                    break
                attempt.retry = await self.runner.run(command)

            if attempt.recovered:
                report.recovered = True
                log.info("Recovered from command failure", command=command, plan=plan.command)
                break

        if not report.recovered:
            log.info("Command failure not recovered", command=command, attempts=len(report.attempts))
        return report
