"""Classify failed shell commands into a closed set of error types.

Rules are an ordered table of ``(ErrorType, predicate)`` pairs evaluated
against the lower-cased output, error text and command. Categories
overlap, so the first matching rule wins.
"""

import re
from enum import Enum
from typing import Callable

from taskpilot.tools.shell import extract_shell_base_commands


class ErrorType(str, Enum):
    COMMAND_NOT_FOUND = "command_not_found"
    CODE_ERROR = "code_error"
    DEPENDENCY_MISSING = "dependency_missing"
    PERMISSION_ERROR = "permission_error"
    CONFIGURATION_ERROR = "configuration_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


Predicate = Callable[[str], bool]

RUNTIME_COMMANDS = (
    "node", "npm", "npx", "yarn", "python", "python3", "pip", "pip3",
    "go", "cargo", "rustc", "java", "javac", "mvn", "gradle", "gcc", "g++", "make",
)

CODE_ERROR_MARKERS = (
    "syntax error", "syntaxerror", "parse error", "parseerror",
    "type error", "typeerror", "reference error", "referenceerror",
    "name error", "nameerror", "attribute error", "attributeerror",
    "import error", "importerror", "module not found", "modulenotfound",
    "cannot import", "failed to import", "undefined", "is not defined",
    "traceback", "stack trace", "uncaught exception", "unhandled exception",
    "runtime error", "runtimeerror", "null pointer", "nullpointer",
    "cannot read property", "cannot access",
)

DEPENDENCY_MARKERS = (
    "module not found", "package not found", "dependency", "missing dependency",
    "cannot find module", "cannot resolve", "npm err", "yarn error",
    "pip error", "no module named",
)

PERMISSION_MARKERS = (
    "permission denied", "permissionerror", "access denied", "forbidden",
    "eacces", "read-only", "cannot write", "cannot read",
)

NETWORK_MARKERS = (
    "connection refused", "connection reset", "timeout", "timed out",
    "network error", "dns", "econnrefused", "econnreset",
)

CONFIGURATION_MARKERS = (
    "invalid", "wrong", "incorrect", "bad", "configuration", "config error",
    "ejsonparse", "json parse",
)

FAILURE_KEYWORDS = (
    # General
    "error", "failed", "failure", "fatal", "exception", "crash", "abort",
    "cannot", "can't", "unable", "not found", "missing", "not available",
    "permission denied", "access denied", "forbidden",
    "exit code", "exit status", "non-zero", "returned 1", "returned 2",
    "unexpected", "invalid", "incorrect", "undefined",
    "null pointer", "null reference", "nullpointerexception",
    "timeout", "timed out", "connection refused", "connection reset",
    # errno names
    "eaddrinuse", "eacces", "enoent", "eexist", "eisdir", "enotdir",
    # Process death
    "segmentation fault", "segfault", "bus error", "stack overflow",
    "out of memory", "memory error", "allocation failed",
    # Filesystem
    "cannot read", "cannot write", "read-only", "readonly",
    "no such file", "no such directory", "is a directory", "not a directory",
    "already exists", "file exists", "broken pipe",
    # Tooling
    "npm err", "yarn error", "pip error", "traceback", "stack trace",
    "uncaught", "unhandled", "unterminated", "unclosed",
    # Tests
    "test failed", "tests failed", "assertion failed", "assertionerror",
)

_RUNTIME_WORD_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(name) for name in RUNTIME_COMMANDS) + r")\b"
)
_MISSING_COMMAND_RES = (
    re.compile(r"([\w.+\-]+): (?:command )?not found"),
    re.compile(r"command not found: ([\w.+\-]+)"),
    re.compile(r"'([\w.+\-]+)' is not recognized as an internal or external command"),
)
_MISSING_MODULE_RES = (
    re.compile(r"no module named ['\"]?([\w\-]+)"),
    re.compile(r"cannot find module ['\"]([@\w.\-/]+)['\"]"),
)


def _contains_any(*markers: str) -> Predicate:
    return lambda text: any(marker in text for marker in markers)


def _is_command_not_found(text: str) -> bool:
    if "command not found" in text or "is not recognized as an internal or external command" in text:
        return True
    return "not found" in text and bool(_RUNTIME_WORD_RE.search(text))


def _is_dependency_missing(text: str) -> bool:
    if _contains_any(*DEPENDENCY_MARKERS)(text):
        return True
    return "package.json" in text and "not found" in text


def _is_configuration_error(text: str) -> bool:
    if _contains_any(*CONFIGURATION_MARKERS)(text):
        return True
    if "npm" in text and "error" in text and "code" in text:
        return True
    return "package.json" in text and any(marker in text for marker in ("parse", "json", "syntax"))


CLASSIFICATION_RULES: list[tuple[ErrorType, Predicate]] = [
    (ErrorType.COMMAND_NOT_FOUND, _is_command_not_found),
    (ErrorType.CODE_ERROR, _contains_any(*CODE_ERROR_MARKERS)),
    (ErrorType.DEPENDENCY_MISSING, _is_dependency_missing),
    (ErrorType.PERMISSION_ERROR, _contains_any(*PERMISSION_MARKERS)),
    (ErrorType.NETWORK_ERROR, _contains_any(*NETWORK_MARKERS)),
    (ErrorType.CONFIGURATION_ERROR, _is_configuration_error),
]


def combined_text(output: str, error_message: str = "", command: str = "") -> str:
    return f"{output or ''} {error_message or ''} {command or ''}".lower()


def classify(output: str, error_message: str = "", command: str = "") -> ErrorType:
    """Classify a failure; deterministic for identical inputs."""
    text = combined_text(output, error_message, command)
    for error_type, predicate in CLASSIFICATION_RULES:
        if predicate(text):
            return error_type
    return ErrorType.UNKNOWN


def detect_failure_keywords(output: str) -> bool:
    """Whether output that exited cleanly still reads like a failure."""
    if not output:
        return False
    text = output.lower()
    return any(keyword in text for keyword in FAILURE_KEYWORDS)


def missing_command(text: str, command: str = "") -> str | None:
    """Name of the executable a ``not found`` message complains about.

    Falls back to the first executable of ``command`` when the message has
    no recognizable shape.
    """
    lowered = (text or "").lower()
    for pattern in _MISSING_COMMAND_RES:
        for match in pattern.finditer(lowered):
            name = match.group(1)
            # "sh: 1: npm: not found" puts a line number first.
            if not name.isdigit() and name not in ("bash", "sh", "zsh"):
                return name
    if command:
        bases = extract_shell_base_commands(command)
        if bases:
            return bases[0].rsplit("/", 1)[-1]
    return None


def missing_module(text: str) -> str | None:
    """Module or package named in a missing-import message."""
    lowered = (text or "").lower()
    for pattern in _MISSING_MODULE_RES:
        match = pattern.search(lowered)
        if match:
            name = match.group(1)
            if name.startswith((".", "/")):
                return None
            if name.startswith("@"):
                return "/".join(name.split("/")[:2])
            return name.split("/")[0].split(".")[0]
    return None
