"""Prompt templates with layered overrides.

Templates resolve through a search path; the first layer holding the
file wins:

  1. ``<workspace>/.taskpilot/prompts/``  project overrides, when a workspace is given
  2. ``~/.taskpilot/instructions/``       personal overrides
  3. ``taskpilot/prompts/``               bundled defaults

Rendering uses ``str.format`` placeholders. A placeholder with no value is
left as written, so templates may show literal ``{...}`` examples.
"""

from __future__ import annotations

import os
from pathlib import Path
from string import Formatter
from typing import Any, Mapping, Sequence

PERSONAL_PROMPTS_DIR = Path("~/.taskpilot/instructions")
WORKSPACE_PROMPTS_DIR = Path(".taskpilot") / "prompts"
BUNDLED_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"


class _LenientFormatter(Formatter):
    """Formatter that renders unknown fields back as ``{name}``."""

    def get_value(self, key: int | str, args: Sequence[Any], kwargs: Mapping[str, Any]) -> Any:
        if isinstance(key, str) and key not in kwargs:
            return "{" + key + "}"
        return super().get_value(key, args, kwargs)


_FORMATTER = _LenientFormatter()


class InstructionLoader:
    """Loads prompt templates through the override layers and renders them."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
        workspace_dir: Path | str | None = None,
    ):
        env_dir = os.getenv("TASKPILOT_INSTRUCTIONS_DIR")
        self.base_dir = Path(base_dir or env_dir or BUNDLED_PROMPTS_DIR).expanduser().resolve()
        self.personal_dir = Path(personal_dir or PERSONAL_PROMPTS_DIR).expanduser().resolve()
        self.workspace_dir = (
            (Path(workspace_dir).expanduser() / WORKSPACE_PROMPTS_DIR).resolve()
            if workspace_dir is not None
            else None
        )
        self._cache: dict[str, str] = {}

    @property
    def search_path(self) -> list[Path]:
        """Template directories, highest priority first."""
        layers = [self.personal_dir, self.base_dir]
        if self.workspace_dir is not None:
            layers.insert(0, self.workspace_dir)
        return layers

    def resolve(self, name: str) -> Path:
        """Path of the layer that provides ``name``.

        Raises:
            FileNotFoundError: no layer has the template
        """
        for directory in self.search_path:
            candidate = directory / name
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(
            f"Prompt template {name!r} not found in: "
            + ", ".join(str(directory) for directory in self.search_path)
        )

    def is_overridden(self, name: str) -> bool:
        """Whether a layer above the bundled defaults provides ``name``."""
        try:
            return self.resolve(name).parent != self.base_dir
        except FileNotFoundError:
            return False

    def load(self, name: str) -> str:
        if name not in self._cache:
            self._cache[name] = self.resolve(name).read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **variables: object) -> str:
        return _FORMATTER.vformat(self.load(name), (), {k: str(v) for k, v in variables.items()})

    def list_templates(self) -> list[str]:
        """Names of every template visible through any layer."""
        names: set[str] = set()
        for directory in self.search_path:
            if directory.is_dir():
                names.update(path.name for path in directory.glob("*.md"))
        return sorted(names)

    def clear_cache(self) -> None:
        self._cache.clear()

    def system_prompt(
        self,
        name: str,
        system_context: str,
        workspace_root: Path | str,
        tool_names: list[str],
    ) -> str:
        """Render the conversation system instruction.

        The environment's system context is appended verbatim when the
        template has no ``{system_context}`` placeholder of its own.
        """
        rendered = self.render(
            name,
            system_context=system_context,
            workspace_root=workspace_root,
            tools=", ".join(tool_names) if tool_names else "none",
        )
        if system_context and "{system_context}" not in self.load(name):
            rendered = f"{rendered}\n\n{system_context}"
        return rendered
