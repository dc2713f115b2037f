"""Lightweight keyword-based intent detection for user messages.

No model call is involved: every decision comes from the keyword and
pattern tables below, so the rules can be tested and extended in
isolation. Score arithmetic is a heuristic; only the precedence between
intents is meant to be stable.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from taskpilot.logging import get_logger

log = get_logger(__name__)


class IntentType(str, Enum):
    CREATE_NEW = "create_new"
    DEBUG_UPGRADE = "debug_upgrade"
    QUESTION_ONLY = "question_only"


DEBUG_KEYWORDS = (
    "debug", "fix", "repair", "error", "bug", "issue", "problem",
    "upgrade", "update", "improve", "refactor", "modify", "change",
    "enhance", "optimize", "correct", "resolve", "solve",
)

CREATE_KEYWORDS = (
    "create", "new", "build", "generate", "make", "start", "init",
    "setup", "scaffold", "bootstrap",
)

QUESTION_WORDS = (
    "what", "how", "why", "when", "where", "which", "who", "whom", "whose",
    "can you", "could you", "would you", "should i", "is there", "are there",
    "does", "do", "did", "will", "would", "should", "may", "might",
)

PROJECT_CONTEXT_WORDS = ("project", "codebase", "repository")

# Error output pasted into a message; any hit forces a debug intent.
STACK_TRACE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE | re.MULTILINE)
    for pattern in (
        r"exception:",
        r"traceback \(most recent call last\)",
        r"\bat\s+[\w.$/<>\-]+(?:\.\w+)?[:(]\d+",
        r"^\s+at\s+\S",
        r"java\.lang\.",
        r"kotlin\.",
        r"org\.junit\.",
        r"assertionerror",
        r"\w*error:",
        r"referenceerror",
        r"typeerror",
        r"syntaxerror",
    )
)

DOC_SEARCH_KEYWORDS = (
    "documentation", "docs", "tutorial", "example", "guide", "how to",
    "api", "library", "framework", "package", "npm", "pip", "crate",
    "learn", "understand", "reference", "specification",
    "unknown", "unfamiliar", "first time", "don't know",
    "latest", "up to date", "recent", "modern",
)

FRAMEWORK_KEYWORDS = (
    "react", "vue", "angular", "svelte", "next", "nuxt",
    "express", "fastapi", "django", "flask", "spring",
    "tensorflow", "pytorch", "keras", "pandas", "numpy",
)

DOC_SEARCH_PHRASES = ("how do i", "what is", "show me", "find")

COMMAND_ONLY_KEYWORDS = (
    "run", "execute", "install", "start", "launch", "test", "build", "compile",
    "deploy", "migrate", "update", "upgrade", "setup", "configure", "init",
)

AUTHORING_WORDS = ("create", "write", "generate", "make")


def _word_pattern(words: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(word) for word in sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_DEBUG_RE = _word_pattern(DEBUG_KEYWORDS)
_CREATE_RE = _word_pattern(CREATE_KEYWORDS)
_QUESTION_RE = _word_pattern(QUESTION_WORDS)
_PROJECT_RE = _word_pattern(PROJECT_CONTEXT_WORDS)
_DOC_RE = _word_pattern(DOC_SEARCH_KEYWORDS)
_FRAMEWORK_RE = _word_pattern(FRAMEWORK_KEYWORDS)
_DOC_PHRASE_RE = _word_pattern(DOC_SEARCH_PHRASES)
_COMMAND_RE = _word_pattern(COMMAND_ONLY_KEYWORDS)
_AUTHORING_RE = _word_pattern(AUTHORING_WORDS)
_LIBRARY_RE = _word_pattern(("library", "package", "framework", "tool"))

STACK_TRACE_BOOST = 3


def _count_distinct(pattern: re.Pattern[str], text: str) -> int:
    return len({match.lower() for match in pattern.findall(text)})


def has_stack_trace(text: str) -> bool:
    return any(pattern.search(text) for pattern in STACK_TRACE_PATTERNS)


def has_existing_files(workspace_root: Path | str | None) -> bool:
    """Whether the workspace holds at least one visible top-level file."""
    if not workspace_root:
        return False
    root = Path(workspace_root)
    try:
        return root.is_dir() and any(
            entry.is_file() and not entry.name.startswith(".") for entry in root.iterdir()
        )
    except OSError:
        return False


@dataclass
class IntentSignals:
    """Raw scores behind one detection, kept for logging and tests."""

    debug_score: int = 0
    create_score: int = 0
    question_indicators: int = 0
    ends_with_question_mark: bool = False
    stack_trace: bool = False
    existing_files: bool = False
    project_context: bool = False
    intents: list[IntentType] = field(default_factory=list)


def analyze_intents(
    message: str,
    workspace_root: Path | str | None = None,
    memory_context: str = "",
) -> IntentSignals:
    """Score a message and decide its intents.

    Precedence: stack-trace signals force DEBUG_UPGRADE and suppress
    QUESTION_ONLY; question markers otherwise add QUESTION_ONLY; create
    keywords add CREATE_NEW when the workspace is empty or create
    outweighs debug.
    """
    context = f"{message} {memory_context}"
    signals = IntentSignals(
        debug_score=_count_distinct(_DEBUG_RE, context),
        create_score=_count_distinct(_CREATE_RE, context),
        question_indicators=_count_distinct(_QUESTION_RE, message),
        ends_with_question_mark=message.strip().endswith("?"),
        stack_trace=has_stack_trace(context),
        existing_files=has_existing_files(workspace_root),
        project_context=bool(_PROJECT_RE.search(memory_context)),
    )
    if signals.stack_trace:
        signals.debug_score += STACK_TRACE_BOOST

    intents: list[IntentType] = []
    is_question = signals.ends_with_question_mark or signals.question_indicators > 0
    if is_question and not signals.stack_trace:
        intents.append(IntentType.QUESTION_ONLY)

    debug_by_context = signals.project_context and signals.debug_score >= signals.create_score
    if signals.stack_trace or (
        signals.existing_files and (signals.debug_score > 0 or debug_by_context)
    ):
        intents.append(IntentType.DEBUG_UPGRADE)

    if signals.create_score > 0 and (
        not signals.existing_files or signals.create_score > signals.debug_score
    ):
        intents.append(IntentType.CREATE_NEW)

    if not intents:
        intents.append(
            IntentType.DEBUG_UPGRADE if signals.existing_files else IntentType.CREATE_NEW
        )

    signals.intents = intents
    return signals


def detect_intents(
    message: str,
    workspace_root: Path | str | None = None,
    memory_context: str = "",
) -> list[IntentType]:
    """Detect every intent expressed by a user message, in precedence order."""
    signals = analyze_intents(message, workspace_root, memory_context)
    log.debug(
        "Detected intents",
        intents=[intent.value for intent in signals.intents],
        debug_score=signals.debug_score,
        create_score=signals.create_score,
        question_indicators=signals.question_indicators,
        stack_trace=signals.stack_trace,
        existing_files=signals.existing_files,
    )
    return signals.intents


def needs_documentation_search(message: str, memory_context: str = "") -> bool:
    """Whether a task likely needs docs, tutorials or examples looked up first."""
    context = f"{message} {memory_context}"
    if _DOC_RE.search(context) or _DOC_PHRASE_RE.search(message):
        return True
    return bool(_FRAMEWORK_RE.search(context) and _LIBRARY_RE.search(context))


def detect_commands_only(message: str, workspace_root: Path | str | None = None) -> bool:
    """Whether a task only needs commands run in an existing project (no authoring)."""
    return (
        bool(_COMMAND_RE.search(message))
        and has_existing_files(workspace_root)
        and not _AUTHORING_RE.search(message)
    )
