"""Command failure classification, fallback planning and remediation."""

from taskpilot.recovery.cache import CommandAvailabilityCache, DependencyCache, DependencyInfo
from taskpilot.recovery.classifier import (
    CLASSIFICATION_RULES,
    ErrorType,
    classify,
    detect_failure_keywords,
    missing_command,
)
from taskpilot.recovery.planner import (
    REMEDIATION_TABLE,
    FailureAnalysis,
    FailureContext,
    FallbackPlan,
    FallbackPlanner,
    ModelPlanGenerator,
    RestrictedEnvironmentProbe,
    detect_ecosystems,
    is_restricted_environment,
    parse_plan_reply,
)
from taskpilot.recovery.runner import (
    CommandRunner,
    RecoveryReport,
    RemediationAttempt,
    RemediationRunner,
    ShellCommandRunner,
)

__all__ = [
    "CLASSIFICATION_RULES",
    "REMEDIATION_TABLE",
    "CommandAvailabilityCache",
    "CommandRunner",
    "DependencyCache",
    "DependencyInfo",
    "ErrorType",
    "FailureAnalysis",
    "FailureContext",
    "FallbackPlan",
    "FallbackPlanner",
    "ModelPlanGenerator",
    "RecoveryReport",
    "RemediationAttempt",
    "RemediationRunner",
    "RestrictedEnvironmentProbe",
    "ShellCommandRunner",
    "classify",
    "detect_ecosystems",
    "detect_failure_keywords",
    "is_restricted_environment",
    "missing_command",
    "parse_plan_reply",
]
