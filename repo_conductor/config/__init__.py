"""Configuration system for repo-conductor.

Key Components:
    - ConductorSettings: Main configuration container with YAML loading support
    - RunConfig: Default phase list, timeouts and retry behaviour
    - LoggingConfig: Run log directory and rotation limits
    - StateConfig: State and metrics file locations
    - AgentConfig: External agent CLI invocation
    - GitConfig: Trunk branch, remote and staleness threshold

Example:
    >>> from repo_conductor.config import ConductorSettings
    >>> settings = ConductorSettings.from_yaml(".conductor/config.yaml")
    >>> settings.run.phase_timeout
    1800
"""

from repo_conductor.config.settings import (
    AgentConfig,
    ConductorSettings,
    GitConfig,
    LoggingConfig,
    RotationConfig,
    RunConfig,
    StateConfig,
    load_settings,
)

__all__ = [
    "AgentConfig",
    "ConductorSettings",
    "GitConfig",
    "LoggingConfig",
    "RotationConfig",
    "RunConfig",
    "StateConfig",
    "load_settings",
]
