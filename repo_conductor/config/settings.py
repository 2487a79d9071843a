"""
Configuration system using Pydantic for type-safe settings management.

Settings come from three places, later ones winning: model defaults,
``CONDUCTOR_*`` environment variables (nested with ``__``, e.g.
``CONDUCTOR_RUN__RETRY``) and an optional YAML file
(``.conductor/config.yaml``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_conductor.enums import DEFAULT_PHASES, Phase
from repo_conductor.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = ".conductor/config.yaml"


class RunConfig(BaseModel):
    """Default execution behaviour for ``conductor run``."""

    phases: list[Phase] = Field(default_factory=lambda: list(DEFAULT_PHASES), description="Default phase list")
    phase_timeout: int = Field(default=1800, ge=1, description="Per-phase timeout in seconds")
    quality_loop: bool = Field(default=False, description="Re-run exec/qa until QA passes")
    max_iterations: int = Field(default=3, ge=1, le=10, description="Quality loop iteration cap")
    enhanced_mode: bool = Field(default=True, description="Enable agent tool integrations (MCP)")
    retry: bool = Field(default=True, description="Retry cold-start failures")
    smart_tests: bool = Field(default=True, description="Let the agent pick relevant tests")
    auto_detect_phases: bool = Field(default=True, description="Infer phases from labels and spec output")


class RotationConfig(BaseModel):
    """Run log rotation limits."""

    enabled: bool = Field(default=True, description="Rotate logs after each run")
    max_size_mb: float = Field(default=10, gt=0, description="Maximum total size of the log directory")
    max_files: int = Field(default=100, ge=1, description="Maximum number of run logs kept")


class LoggingConfig(BaseModel):
    """Run log configuration."""

    json_logs: bool = Field(default=True, description="Write a JSON run log per invocation")
    log_dir: str = Field(default=".conductor/logs", description="Directory for run logs")
    rotation: RotationConfig = Field(default_factory=RotationConfig)


class StateConfig(BaseModel):
    """Durable file locations."""

    state_path: str = Field(default=".conductor/state.json", description="Workflow state file")
    metrics_path: str = Field(default=".conductor/metrics.json", description="Run metrics file")


class AgentConfig(BaseModel):
    """External agent CLI configuration."""

    command: str = Field(default="claude", description="Agent executable")
    extra_args: list[str] = Field(default_factory=list, description="Additional CLI arguments")
    model: str | None = Field(default=None, description="Model name passed to the agent")


class GitConfig(BaseModel):
    """Version-control conventions."""

    trunk: str = Field(default="main", description="Trunk branch name")
    remote: str = Field(default="origin", description="Remote used for fetch, push and PRs")
    stale_threshold: int = Field(default=5, ge=0, description="Commits behind trunk before a worktree is stale")

    @field_validator("trunk", "remote")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class ConductorSettings(BaseSettings):
    """Main repo-conductor settings.

    Combines all configuration sections and provides loading from YAML
    files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    run: RunConfig = Field(default_factory=RunConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    git: GitConfig = Field(default_factory=GitConfig)

    @property
    def state_path(self) -> Path:
        return Path(self.state.state_path)

    @property
    def metrics_path(self) -> Path:
        return Path(self.state.metrics_path)

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @classmethod
    def from_yaml(cls, config_path: str) -> ConductorSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            ConductorSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        # An empty file is a valid "all defaults" configuration
        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are left unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))


def load_settings(config_path: str | None = None) -> ConductorSettings:
    """Load settings from an explicit path, the default path, or defaults.

    An explicit path must exist. The default path is optional.
    """
    if config_path is not None:
        return ConductorSettings.from_yaml(config_path)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return ConductorSettings.from_yaml(DEFAULT_CONFIG_PATH)
    try:
        return ConductorSettings()
    except Exception as e:
        raise ConfigurationError(f"Failed to validate configuration: {e}") from e
