from pathlib import Path

import pytest

from taskpilot.instructions import InstructionLoader


@pytest.fixture
def loader(tmp_path: Path) -> InstructionLoader:
    base = tmp_path / "base"
    personal = tmp_path / "personal"
    base.mkdir()
    personal.mkdir()
    (base / "greeting.md").write_text("Hello {name}, keep {unknown} and {{braces}}\n", encoding="utf-8")
    (base / "system.md").write_text("Workspace: {workspace_root}\nTools: {tools}", encoding="utf-8")
    return InstructionLoader(base_dir=base, personal_dir=personal)


def test_render_leaves_unknown_placeholders(loader: InstructionLoader):
    assert loader.render("greeting.md", name="Ada") == "Hello Ada, keep {unknown} and {braces}"


def test_personal_override_wins(loader: InstructionLoader):
    (loader.personal_dir / "greeting.md").write_text("Hi {name}", encoding="utf-8")

    assert loader.is_overridden("greeting.md")
    assert loader.render("greeting.md", name="Ada") == "Hi Ada"
    assert loader.list_templates() == ["greeting.md", "system.md"]


def test_workspace_layer_outranks_personal(tmp_path: Path):
    base = tmp_path / "base"
    personal = tmp_path / "personal"
    workspace = tmp_path / "project"
    for directory in (base, personal, workspace / ".taskpilot" / "prompts"):
        directory.mkdir(parents=True)
    (base / "greeting.md").write_text("bundled", encoding="utf-8")
    (personal / "greeting.md").write_text("personal", encoding="utf-8")
    (workspace / ".taskpilot" / "prompts" / "greeting.md").write_text("project", encoding="utf-8")

    loader = InstructionLoader(base_dir=base, personal_dir=personal, workspace_dir=workspace)

    assert loader.search_path[0] == (workspace / ".taskpilot" / "prompts").resolve()
    assert loader.load("greeting.md") == "project"
    assert loader.is_overridden("greeting.md")


def test_missing_template_raises(loader: InstructionLoader):
    assert not loader.is_overridden("absent.md")

    with pytest.raises(FileNotFoundError):
        loader.load("absent.md")


def test_system_prompt_appends_context_when_template_lacks_placeholder(loader: InstructionLoader):
    prompt = loader.system_prompt("system.md", "## System Information\n- OS: Linux", "/work", ["shell"])

    assert prompt.startswith("Workspace: /work\nTools: shell")
    assert prompt.endswith("## System Information\n- OS: Linux")


def test_system_prompt_without_tools(loader: InstructionLoader):
    assert loader.system_prompt("system.md", "", "/work", []) == "Workspace: /work\nTools: none"


def test_bundled_templates_are_available():
    loader = InstructionLoader(personal_dir="/nonexistent-taskpilot-dir")

    assert "system_prompt.md" in loader.list_templates()
    assert "fallback_plan_prompt.md" in loader.list_templates()
