"""Configuration management for TaskPilot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.taskpilot/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model and provider configuration."""

    provider: str = "google"
    model: str = "gemini-2.5-flash"
    api_keys: list[str] = Field(default_factory=list)
    base_url: str = ""
    temperature: float = 0.7
    max_tokens: int = 8192
    top_p: float = 0.95


class NetworkConfig(BaseModel):
    """HTTP timeouts and retry policy for provider calls."""

    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    write_timeout: float = 60.0
    pool_timeout: float = 30.0
    # Self-hosted models and very large prompts get a longer read allowance.
    long_read_timeout: float = 600.0
    large_prompt_chars: int = 200_000
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0


class EngineConfig(BaseModel):
    """Conversation turn engine limits."""

    max_turns: int = 100
    include_tools: bool = True
    system_prompt_template: str = "system_prompt.md"


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120
    max_output_chars: int = 10000
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ToolsConfig(BaseModel):
    """Tools configuration."""

    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class RecoveryConfig(BaseModel):
    """Failure classification and fallback planning."""

    enabled: bool = True
    max_attempts: int = 5
    use_model_plans: bool = True
    restricted_probe_commands: list[str] = ["ls", "pwd", "echo ok"]
    # Fraction of probe commands that must fail before the environment is
    # treated as restricted.
    restricted_threshold: float = 0.5


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"
    # Append log lines to this file instead of stderr.
    file: str = ""


class Config(BaseSettings):
    """Main configuration for TaskPilot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TASKPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; environment variables are applied by pydantic-settings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
