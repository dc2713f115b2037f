"""TaskPilot - an autonomous coding agent that drives LLM providers and a shell."""

__version__ = "0.1.0"

from taskpilot.config import Config
from taskpilot.engine import TurnEngine

__all__ = ["Config", "TurnEngine", "__version__"]
