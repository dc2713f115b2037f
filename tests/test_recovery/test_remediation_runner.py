import asyncio
from pathlib import Path

import pytest

from taskpilot.config import Config, RecoveryConfig, set_config
from taskpilot.environment import EnvironmentDescriptor
from taskpilot.recovery.cache import CommandAvailabilityCache
from taskpilot.recovery.classifier import ErrorType
from taskpilot.recovery.planner import FallbackPlanner
from taskpilot.recovery.runner import (
    RESTRICTED_REASON,
    CommandRunner,
    RemediationRunner,
    ShellCommandRunner,
)
from taskpilot.tools.shell import CommandOutcome

NPM_MISSING = CommandOutcome("npm install", 127, error="bash: npm: command not found")


class ScriptedRunner:
    """Exit codes per command; lists are consumed one call at a time."""

    def __init__(self, script: dict[str, int | list[int]] | None = None, default: int = 0):
        self.script = script or {}
        self.default = default
        self.commands: list[str] = []

    async def run(self, command: str) -> CommandOutcome:
        self.commands.append(command)
        code = self.script.get(command, self.default)
        if isinstance(code, list):
            code = code.pop(0) if code else self.default
        return CommandOutcome(command, code, output=f"ran {command}")


def make_runner(
    runner: ScriptedRunner,
    workspace: Path | None = None,
    commands: CommandAvailabilityCache | None = None,
    cancel_event: asyncio.Event | None = None,
    **recovery: object,
) -> RemediationRunner:
    config = Config(recovery=RecoveryConfig(**recovery))
    set_config(config)
    environment = EnvironmentDescriptor.for_package_manager("Ubuntu 22.04", "apt")
    return RemediationRunner(
        runner,
        FallbackPlanner(),
        environment,
        config=config,
        workspace=workspace,
        commands=commands,
        cancel_event=cancel_event,
    )


def test_scripted_runner_satisfies_protocol():
    assert isinstance(ScriptedRunner(), CommandRunner)
    assert isinstance(ShellCommandRunner(), CommandRunner)


@pytest.mark.asyncio
async def test_missing_npm_is_installed_and_original_retried(tmp_path: Path):
    runner = ScriptedRunner()
    remediation = make_runner(runner, workspace=tmp_path)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert report.recovered
    assert report.error_type == ErrorType.COMMAND_NOT_FOUND
    assert runner.commands[-2:] == ["apt-get install -y nodejs npm", "npm install"]
    assert report.final_outcome.command == "npm install"
    assert report.final_outcome.succeeded
    assert remediation.planner.cache.is_available("npm", str(tmp_path)) is True
    assert report.summary().endswith("Recovered")


@pytest.mark.asyncio
async def test_second_plan_runs_when_first_fails():
    runner = ScriptedRunner({"apt-get install -y nodejs npm": 100})
    remediation = make_runner(runner)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert report.recovered
    assert [attempt.plan.command for attempt in report.attempts] == [
        "apt-get install -y nodejs npm",
        "apt-get update && apt-get install -y nodejs npm",
    ]
    assert not report.attempts[0].recovered
    assert "Tried `apt-get install -y nodejs npm` (exit 100)" in report.summary()


@pytest.mark.asyncio
async def test_attempts_are_capped_by_max_attempts():
    runner = ScriptedRunner({"apt-get install -y nodejs npm": 100})
    remediation = make_runner(runner, max_attempts=1)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert not report.recovered
    assert len(report.attempts) == 1
    assert report.final_outcome is None
    assert report.summary().endswith("Not recovered")


@pytest.mark.asyncio
async def test_failed_retry_is_not_recovery():
    runner = ScriptedRunner({"npm install": 1})
    remediation = make_runner(runner, max_attempts=1)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert not report.recovered
    assert report.attempts[0].outcome.succeeded
    assert report.attempts[0].retry.exit_code == 1
    assert "Retried original command (exit 1)" in report.summary()


@pytest.mark.asyncio
async def test_restricted_environment_short_circuits():
    runner = ScriptedRunner(default=1)
    remediation = make_runner(runner)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert report.restricted
    assert report.attempts == []
    assert runner.commands == ["ls", "pwd", "echo ok"]
    assert RESTRICTED_REASON in report.summary()


@pytest.mark.asyncio
async def test_disabled_recovery_only_classifies():
    runner = ScriptedRunner()
    remediation = make_runner(runner, enabled=False)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert not report.recovered
    assert report.error_type == ErrorType.COMMAND_NOT_FOUND
    assert report.analysis.reason == "Recovery is disabled"
    assert runner.commands == []


@pytest.mark.asyncio
async def test_cancel_stops_before_the_next_plan():
    runner = ScriptedRunner()
    remediation = make_runner(runner)
    remediation.cancel()

    report = await remediation.recover("npm install", NPM_MISSING)

    assert report.cancelled
    assert report.attempts == []
    assert "Recovery cancelled" in report.summary()

    remediation.clear_cancel()
    assert not remediation.cancelled


@pytest.mark.asyncio
async def test_plan_without_retry_counts_as_recovery_on_success():
    runner = ScriptedRunner()
    remediation = make_runner(runner)
    outcome = CommandOutcome("npm ci", 1, output="package-lock.json is invalid or out of date")

    report = await remediation.recover("npm ci", outcome)

    assert report.error_type == ErrorType.CONFIGURATION_ERROR
    assert report.recovered
    assert report.attempts[0].retry is None
    assert report.final_outcome.command == "npm install"


@pytest.mark.asyncio
async def test_successful_outcome_needs_no_recovery():
    runner = ScriptedRunner()
    remediation = make_runner(runner)

    report = await remediation.recover("ls", CommandOutcome("ls", 0, output="a"))

    assert report.recovered
    assert report.error_type is None
    assert runner.commands == []


@pytest.mark.asyncio
async def test_shell_command_runner_uses_shell_tool():
    set_config(Config())

    outcome = await ShellCommandRunner(timeout=5).run("echo hello")

    assert outcome.succeeded
    assert outcome.output == "hello"


@pytest.mark.asyncio
async def test_missing_command_found_on_path_skips_install_plans(tmp_path: Path):
    runner = ScriptedRunner()
    commands = CommandAvailabilityCache()
    remediation = make_runner(runner, workspace=tmp_path, commands=commands)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert "command -v npm" in runner.commands
    assert commands.is_available("npm", str(tmp_path)) is True
    assert not any(command.startswith("apt-get") for command in runner.commands)
    assert report.attempts == []
    assert not report.recovered


@pytest.mark.asyncio
async def test_install_updates_command_availability(tmp_path: Path):
    runner = ScriptedRunner({"command -v npm": 1})
    commands = CommandAvailabilityCache()
    remediation = make_runner(runner, workspace=tmp_path, commands=commands)

    report = await remediation.recover("npm install", NPM_MISSING)

    assert report.recovered
    assert runner.commands[-2:] == ["apt-get install -y nodejs npm", "npm install"]
    assert commands.is_available("npm", str(tmp_path)) is True

    # The next failure trusts the cache instead of probing PATH again.
    await remediation.recover("npm install", NPM_MISSING)
    assert runner.commands.count("command -v npm") == 1


@pytest.mark.asyncio
async def test_shared_cancel_event_stops_remediation():
    shared = asyncio.Event()
    runner = ScriptedRunner()
    remediation = make_runner(runner, cancel_event=shared)

    shared.set()
    report = await remediation.recover("npm install", NPM_MISSING)

    assert remediation.cancelled
    assert report.cancelled
    assert report.attempts == []
