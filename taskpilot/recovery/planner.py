"""Fallback planning for failed shell commands.

A static remediation table is consulted first. Only when it yields
nothing is an optional plan generator (usually the model) asked for
ideas.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Protocol

from taskpilot.environment import PACKAGE_MANAGERS, EnvironmentDescriptor
from taskpilot.exceptions import LLMError, RecoveryError
from taskpilot.instructions import InstructionLoader
from taskpilot.llm.base import CanonicalRequest
from taskpilot.logging import get_logger
from taskpilot.recovery.cache import DependencyCache
from taskpilot.recovery.classifier import ErrorType, missing_command, missing_module
from taskpilot.tools.shell import CommandOutcome, extract_shell_base_commands

if TYPE_CHECKING:
    from taskpilot.llm.client import ProviderClient
    from taskpilot.recovery.runner import CommandRunner

log = get_logger(__name__)

FALLBACK_PROMPT_TEMPLATE = "fallback_plan_prompt.md"
MAX_PROMPT_OUTPUT_CHARS = 4000


@dataclass(frozen=True)
class FallbackPlan:
    """One remediation command proposed for a failure."""

    command: str
    description: str
    should_retry_original: bool = False
    # Cache key of what the command installs, if anything.
    dependency: str | None = None


@dataclass
class FailureAnalysis:
    reason: str
    plans: list[FallbackPlan] = field(default_factory=list)
    source: str = "none"


ECOSYSTEM_MANIFESTS: dict[str, tuple[str, ...]] = {
    "node": ("package.json",),
    "python": ("requirements.txt", "pyproject.toml", "setup.py", "Pipfile"),
    "go": ("go.mod",),
    "rust": ("Cargo.toml",),
    "maven": ("pom.xml",),
    "gradle": ("build.gradle", "build.gradle.kts"),
    "ruby": ("Gemfile",),
    "php": ("composer.json",),
}

COMMAND_ECOSYSTEMS: dict[str, str] = {
    "node": "node", "npm": "node", "npx": "node", "yarn": "node", "pnpm": "node",
    "python": "python", "python3": "python", "pip": "python", "pip3": "python", "pytest": "python",
    "go": "go",
    "cargo": "rust", "rustc": "rust",
    "mvn": "maven",
    "gradle": "gradle",
    "ruby": "ruby", "bundle": "ruby", "gem": "ruby",
    "php": "php", "composer": "php",
}

# Packages providing a missing command, named for apt.
RUNTIME_PACKAGES: dict[str, str] = {
    "node": "nodejs npm",
    "npm": "nodejs npm",
    "npx": "nodejs npm",
    "python": "python3 python3-pip",
    "python3": "python3 python3-pip",
    "pip": "python3 python3-pip",
    "pip3": "python3 python3-pip",
    "go": "golang",
    "cargo": "cargo",
    "rustc": "rustc",
    "java": "openjdk-17-jdk",
    "javac": "openjdk-17-jdk",
    "mvn": "maven",
    "gradle": "gradle",
    "gcc": "gcc",
    "g++": "g++",
    "make": "make",
    "git": "git",
    "curl": "curl",
    "wget": "wget",
    "ruby": "ruby",
    "php": "php",
}

# Package names that differ from apt's.
PACKAGE_NAME_OVERRIDES: dict[str, dict[str, str]] = {
    "apk": {"python3 python3-pip": "python3 py3-pip", "golang": "go", "openjdk-17-jdk": "openjdk17"},
    "brew": {"nodejs npm": "node", "python3 python3-pip": "python", "openjdk-17-jdk": "openjdk@17", "rustc": "rust", "cargo": "rust"},
    "dnf": {"openjdk-17-jdk": "java-17-openjdk-devel", "g++": "gcc-c++"},
    "yum": {"openjdk-17-jdk": "java-17-openjdk-devel", "g++": "gcc-c++"},
    "pacman": {"python3 python3-pip": "python python-pip", "golang": "go", "openjdk-17-jdk": "jdk17-openjdk", "rustc": "rust", "cargo": "rust", "g++": "gcc"},
    "pkg": {"python3 python3-pip": "python3 py39-pip", "golang": "go", "openjdk-17-jdk": "openjdk17"},
}

REASON_TEMPLATES: dict[ErrorType, str] = {
    ErrorType.COMMAND_NOT_FOUND: "`{missing}` is not installed or not on PATH",
    ErrorType.CODE_ERROR: "The command ran but the code it executed failed",
    ErrorType.DEPENDENCY_MISSING: "A project dependency is missing",
    ErrorType.PERMISSION_ERROR: "The command lacks the permissions it needs",
    ErrorType.CONFIGURATION_ERROR: "The project or tool configuration is invalid",
    ErrorType.NETWORK_ERROR: "A network operation failed",
    ErrorType.UNKNOWN: "The command failed for an unrecognized reason",
}


def detect_ecosystems(workspace: Path | str | None) -> set[str]:
    """Ecosystems whose manifest files sit at the workspace root."""
    if not workspace:
        return set()
    root = Path(workspace)
    found: set[str] = set()
    for ecosystem, manifests in ECOSYSTEM_MANIFESTS.items():
        if any((root / manifest).is_file() for manifest in manifests):
            found.add(ecosystem)
    return found


def runtime_package(command_name: str | None, package_manager: str) -> str | None:
    if not command_name:
        return None
    package = RUNTIME_PACKAGES.get(command_name)
    if package is None:
        return None
    return PACKAGE_NAME_OVERRIDES.get(package_manager, {}).get(package, package)


@dataclass(frozen=True)
class FailureContext:
    """Everything the remediation rules look at for one failure."""

    error_type: ErrorType
    command: str
    output: str
    environment: EnvironmentDescriptor
    ecosystems: frozenset[str]
    missing_command: str | None = None
    missing_module: str | None = None
    workspace: Path | None = None

    @classmethod
    def build(
        cls,
        error_type: ErrorType,
        command: str,
        output: str,
        environment: EnvironmentDescriptor,
        workspace: Path | str | None = None,
    ) -> "FailureContext":
        bases = extract_shell_base_commands(command)
        ecosystems = detect_ecosystems(workspace)
        ecosystems.update(
            COMMAND_ECOSYSTEMS[base] for base in bases if base in COMMAND_ECOSYSTEMS
        )
        missing = None
        if error_type == ErrorType.COMMAND_NOT_FOUND:
            missing = missing_command(output, command)
        return cls(
            error_type=error_type,
            command=command,
            output=output,
            environment=environment,
            ecosystems=frozenset(ecosystems),
            missing_command=missing,
            missing_module=missing_module(output),
            workspace=Path(workspace) if workspace else None,
        )

    @property
    def has_package_manager(self) -> bool:
        return self.environment.package_manager in PACKAGE_MANAGERS

    @property
    def executable(self) -> str:
        bases = extract_shell_base_commands(self.command)
        return bases[0] if bases else ""

    def has_file(self, name: str) -> bool:
        return self.workspace is not None and (self.workspace / name).is_file()

    def placeholders(self) -> dict[str, str]:
        return {
            "install": self.environment.install_command,
            "update": self.environment.update_command,
            "manager": self.environment.package_manager,
            "package": runtime_package(self.missing_command, self.environment.package_manager) or "",
            "command": self.command,
            "missing": self.missing_command or "",
            "module": self.missing_module or "",
            "executable": self.executable,
        }

    def reason(self) -> str:
        if self.error_type == ErrorType.DEPENDENCY_MISSING and self.missing_module:
            return f"Missing dependency `{self.missing_module}`"
        return REASON_TEMPLATES[self.error_type].format(missing=self.missing_command or "command")


@dataclass(frozen=True)
class PlanTemplate:
    command: str
    description: str
    should_retry_original: bool = False
    dependency: str | None = None

    def render(self, values: dict[str, str]) -> FallbackPlan:
        try:
            return FallbackPlan(
                command=self.command.format_map(values),
                description=self.description.format_map(values),
                should_retry_original=self.should_retry_original,
                dependency=self.dependency.format_map(values) if self.dependency else None,
            )
        except KeyError as e:
            raise RecoveryError(
                f"Remediation template {self.command!r} uses unknown placeholder {e}"
            ) from e


@dataclass(frozen=True)
class RemediationRule:
    error_types: frozenset[ErrorType]
    ecosystem: str | None
    trigger: Callable[[FailureContext], bool]
    templates: tuple[PlanTemplate, ...]

    def matches(self, context: FailureContext) -> bool:
        if context.error_type not in self.error_types:
            return False
        if self.ecosystem is not None and self.ecosystem not in context.ecosystems:
            return False
        return self.trigger(context)


def _rule(
    error_types: ErrorType | tuple[ErrorType, ...],
    ecosystem: str | None,
    trigger: Callable[[FailureContext], bool],
    *templates: PlanTemplate,
) -> RemediationRule:
    if isinstance(error_types, ErrorType):
        error_types = (error_types,)
    return RemediationRule(frozenset(error_types), ecosystem, trigger, templates)


def _always(context: FailureContext) -> bool:
    return True


def _known_runtime_missing(context: FailureContext) -> bool:
    return context.has_package_manager and context.missing_command in RUNTIME_PACKAGES


def _other_command_missing(context: FailureContext) -> bool:
    return (
        context.has_package_manager
        and bool(context.missing_command)
        and context.missing_command not in RUNTIME_PACKAGES
    )


def _local_node_binary(context: FailureContext) -> bool:
    if not context.missing_command or context.workspace is None:
        return False
    return (context.workspace / "node_modules" / ".bin" / context.missing_command).exists()


def _module_named(context: FailureContext) -> bool:
    return bool(context.missing_module)


def _local_script(context: FailureContext) -> bool:
    return context.executable.startswith(("./", "../")) and "permission denied" in context.output.lower()


def _npm_global_eacces(context: FailureContext) -> bool:
    output = context.output.lower()
    return "eacces" in output and " -g" in f" {context.command}"


def _stale_lockfile(context: FailureContext) -> bool:
    return "npm ci" in context.command and "package-lock" in context.output.lower()


_RETRY = True
DEPENDENCY_ERRORS = (ErrorType.DEPENDENCY_MISSING, ErrorType.CODE_ERROR)

REMEDIATION_TABLE: list[RemediationRule] = [
    _rule(
        ErrorType.COMMAND_NOT_FOUND, "node", _local_node_binary,
        PlanTemplate("npx {command}", "Run the project-local {missing} through npx"),
    ),
    _rule(
        ErrorType.COMMAND_NOT_FOUND, None, _known_runtime_missing,
        PlanTemplate("{install} {package}", "Install {package} with {manager}", _RETRY, "{missing}"),
        PlanTemplate(
            "{update} && {install} {package}",
            "Refresh the {manager} package index, then install {package}",
            _RETRY,
            "{missing}",
        ),
    ),
    _rule(
        ErrorType.COMMAND_NOT_FOUND, None, _other_command_missing,
        PlanTemplate("{install} {missing}", "Install {missing} with {manager}", _RETRY, "{missing}"),
    ),
    _rule(
        DEPENDENCY_ERRORS, "python", _module_named,
        PlanTemplate("python3 -m pip install {module}", "Install the Python package {module}", _RETRY, "python:{module}"),
        PlanTemplate(
            "python3 -m pip install --user {module}",
            "Install {module} into the user site-packages",
            _RETRY,
            "python:{module}",
        ),
    ),
    _rule(
        DEPENDENCY_ERRORS, "node", _module_named,
        PlanTemplate("npm install {module}", "Install the npm package {module}", _RETRY, "node:{module}"),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "node", _always,
        PlanTemplate("npm install", "Install the dependencies declared in package.json", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "python", lambda ctx: ctx.has_file("requirements.txt"),
        PlanTemplate("python3 -m pip install -r requirements.txt", "Install requirements.txt", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "python",
        lambda ctx: ctx.has_file("pyproject.toml") or ctx.has_file("setup.py"),
        PlanTemplate("python3 -m pip install -e .", "Install the project in editable mode", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "go", _always,
        PlanTemplate("go mod download", "Download the Go module dependencies", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "rust", _always,
        PlanTemplate("cargo fetch", "Fetch the crate dependencies", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "maven", _always,
        PlanTemplate("mvn -q dependency:resolve", "Resolve the Maven dependencies", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "gradle", _always,
        PlanTemplate("gradle dependencies", "Resolve the Gradle dependencies", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "ruby", _always,
        PlanTemplate("bundle install", "Install the gems from the Gemfile", _RETRY),
    ),
    _rule(
        ErrorType.DEPENDENCY_MISSING, "php", _always,
        PlanTemplate("composer install", "Install the Composer dependencies", _RETRY),
    ),
    _rule(
        ErrorType.PERMISSION_ERROR, None, _local_script,
        PlanTemplate("chmod +x {executable}", "Make {executable} executable", _RETRY),
    ),
    _rule(
        ErrorType.PERMISSION_ERROR, "node", _npm_global_eacces,
        PlanTemplate(
            "mkdir -p ~/.npm-global && npm config set prefix ~/.npm-global",
            "Point global npm installs at a user-writable prefix",
            _RETRY,
        ),
    ),
    _rule(
        ErrorType.CONFIGURATION_ERROR, "node", _stale_lockfile,
        PlanTemplate("npm install", "Reinstall and refresh the out-of-date package-lock.json"),
    ),
    _rule(
        ErrorType.NETWORK_ERROR, None, _always,
        PlanTemplate("sleep 5", "Wait briefly for a transient network problem to clear", _RETRY),
    ),
]


class PlanGenerator(Protocol):
    async def generate(self, context: FailureContext) -> list[FallbackPlan]: ...


class FallbackPlanner:
    """Turns a classified failure into an ordered list of remediation plans."""

    def __init__(
        self,
        cache: DependencyCache | None = None,
        plan_generator: PlanGenerator | None = None,
        table: list[RemediationRule] | None = None,
    ):
        self.cache = cache if cache is not None else DependencyCache()
        self.plan_generator = plan_generator
        self.table = table if table is not None else REMEDIATION_TABLE

    def _already_available(self, plan: FallbackPlan, workspace: Path | None) -> bool:
        if not plan.dependency:
            return False
        workspace_key = str(workspace) if workspace else None
        return self.cache.is_available(plan.dependency, workspace_key) is True

    def _filter(self, plans: Iterable[FallbackPlan], workspace: Path | None) -> list[FallbackPlan]:
        seen: set[str] = set()
        kept: list[FallbackPlan] = []
        for plan in plans:
            if plan.command in seen:
                continue
            if self._already_available(plan, workspace):
                log.debug("Skipping plan for available dependency", dependency=plan.dependency)
                continue
            seen.add(plan.command)
            kept.append(plan)
        return kept

    def static_plans(self, context: FailureContext) -> list[FallbackPlan]:
        values = context.placeholders()
        plans = [
            template.render(values)
            for rule in self.table
            if rule.matches(context)
            for template in rule.templates
        ]
        return self._filter(plans, context.workspace)

    async def plan(
        self,
        error_type: ErrorType,
        command: str,
        output: str,
        environment: EnvironmentDescriptor,
        workspace: Path | str | None = None,
    ) -> FailureAnalysis:
        context = FailureContext.build(error_type, command, output, environment, workspace)
        reason = context.reason()

        plans = self.static_plans(context)
        if plans:
            log.info("Fallback plans from table", error_type=error_type.value, count=len(plans))
            return FailureAnalysis(reason=reason, plans=plans, source="table")

        if self.plan_generator is None:
            return FailureAnalysis(reason=reason)

        generated = self._filter(await self.plan_generator.generate(context), context.workspace)
        log.info("Fallback plans from model", error_type=error_type.value, count=len(generated))
        return FailureAnalysis(reason=reason, plans=generated, source="model" if generated else "none")


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _plans_from_json(items: list[object]) -> list[FallbackPlan]:
    plans: list[FallbackPlan] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        command = item.get("command")
        if not isinstance(command, str) or not command.strip():
            continue
        retry = item.get("shouldRetryOriginal", item.get("should_retry_original", False))
        plans.append(
            FallbackPlan(
                command=command.strip(),
                description=str(item.get("description") or ""),
                should_retry_original=retry is True,
            )
        )
    return plans


def parse_plan_reply(text: str) -> list[FallbackPlan]:
    """Plans from the first JSON array in a model reply; ``[]`` when there is none."""
    if not text:
        return []
    decoder = json.JSONDecoder()
    candidates = [match.group(1) for match in _FENCE_RE.finditer(text)] + [text]
    for candidate in candidates:
        start = candidate.find("[")
        while start != -1:
            try:
                value, _ = decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                start = candidate.find("[", start + 1)
                continue
            if isinstance(value, list):
                return _plans_from_json(value)
            start = candidate.find("[", start + 1)
    return []


class ModelPlanGenerator:
    """Asks the model for remediation commands when the table has none."""

    def __init__(
        self,
        client: "ProviderClient",
        model: str | None = None,
        instructions: InstructionLoader | None = None,
        max_plans: int = 3,
    ):
        self.client = client
        self.model = model
        self.instructions = instructions or InstructionLoader()
        self.max_plans = max_plans

    def build_prompt(self, context: FailureContext) -> str:
        return self.instructions.render(
            FALLBACK_PROMPT_TEMPLATE,
            command=context.command,
            error_type=context.error_type.value,
            output=context.output[-MAX_PROMPT_OUTPUT_CHARS:],
            system_context=context.environment.as_prompt_block(),
            max_plans=self.max_plans,
        )

    async def generate(self, context: FailureContext) -> list[FallbackPlan]:
        request = CanonicalRequest(
            contents=[{"role": "user", "parts": [{"text": self.build_prompt(context)}]}],
        )
        try:
            response = await self.client.generate(request, model=self.model)
        except LLMError as e:
            log.warning("Fallback plan generation failed", error=str(e))
            return []
        plans = parse_plan_reply(response.text)
        if not plans:
            log.info("Model proposed no usable fallback plans")
        return plans[: self.max_plans]


def is_restricted_environment(
    probe_results: Iterable[CommandOutcome | bool],
    threshold: float = 0.5,
) -> bool:
    """Whether more than ``threshold`` of the basic probe commands failed."""
    results = [r if isinstance(r, bool) else r.succeeded for r in probe_results]
    if not results:
        return False
    failures = sum(1 for succeeded in results if not succeeded)
    return failures / len(results) > threshold


class RestrictedEnvironmentProbe:
    """Runs a few harmless commands once and remembers the verdict."""

    def __init__(
        self,
        runner: "CommandRunner",
        commands: list[str] | None = None,
        threshold: float = 0.5,
    ):
        self.runner = runner
        self.commands = commands if commands is not None else ["ls", "pwd", "echo ok"]
        self.threshold = threshold
        self._verdict: bool | None = None

    async def is_restricted(self) -> bool:
        if self._verdict is None:
            results = [await self.runner.run(command) for command in self.commands]
            self._verdict = is_restricted_environment(results, self.threshold)
            if self._verdict:
                log.warning("Restricted environment detected", probes=len(results))
        return self._verdict

    def reset(self) -> None:
        self._verdict = None
