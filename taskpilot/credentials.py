"""Credential rotation for provider API keys."""

from enum import Enum
from typing import Literal, Protocol, Union, runtime_checkable

from taskpilot.exceptions import LLMAPIError
from taskpilot.logging import get_logger

log = get_logger(__name__)


class _Exhausted(Enum):
    EXHAUSTED = "exhausted"

    def __repr__(self) -> str:
        return "EXHAUSTED"


EXHAUSTED = _Exhausted.EXHAUSTED
"""Returned by ``next_key`` when no untried credential remains."""

KeyOrExhausted = Union[str, Literal[_Exhausted.EXHAUSTED]]

RATE_LIMIT_MARKERS = (
    "rate limit",
    "rpm",
    "rpd",
    "429",
    "503",
    "unavailable",
    "overloaded",
    "quota",
    "too many requests",
)
RATE_LIMIT_STATUS_CODES = {429, 503}


def looks_rate_limited(error: BaseException) -> bool:
    """Heuristic rate-limit check on status code and message text."""
    if isinstance(error, LLMAPIError) and error.status_code in RATE_LIMIT_STATUS_CODES:
        return True
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of API keys for one provider."""

    def next_key(self) -> KeyOrExhausted:
        ...

    def current_model(self) -> str:
        ...

    def is_rate_limit_error(self, error: BaseException) -> bool:
        ...

    def reset(self) -> None:
        ...


class KeyRing:
    """Rotates through configured API keys.

    Within one request cycle (between ``reset`` calls) each key is handed
    out at most once. A new cycle starts from the key that was used last,
    so a working key stays sticky across requests.
    """

    def __init__(self, keys: list[str] | None = None, model: str = "", keyless: bool = False):
        self._keys = [key.strip() for key in keys or [] if key and key.strip()]
        if not self._keys and keyless:
            # Self-hosted servers accept unauthenticated requests.
            self._keys = [""]
        self._model = model
        self._start = 0
        self._current = 0
        self._tried = 0

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> KeyOrExhausted:
        if self._tried >= len(self._keys):
            log.warning("Credentials exhausted", keys=len(self._keys), model=self._model)
            return EXHAUSTED
        self._current = (self._start + self._tried) % len(self._keys)
        self._tried += 1
        log.debug("Using credential", index=self._current, attempt=self._tried)
        return self._keys[self._current]

    def current_model(self) -> str:
        return self._model

    def is_rate_limit_error(self, error: BaseException) -> bool:
        return looks_rate_limited(error)

    def reset(self) -> None:
        self._start = self._current
        self._tried = 0
