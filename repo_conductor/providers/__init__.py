"""Collaborators at the process boundary: the agent CLI and the GitHub CLI.

Example:
    >>> from repo_conductor.providers import AgentCliRunner, GitHubCli
    >>> runner = AgentCliRunner(command="claude")
    >>> issue = await GitHubCli().get_issue(42)
"""

from repo_conductor.providers.agent import AgentCliRunner
from repo_conductor.providers.base import PhaseOutput, PhaseRequest, PhaseRunner
from repo_conductor.providers.github_cli import GitHubCli

__all__ = ["AgentCliRunner", "GitHubCli", "PhaseOutput", "PhaseRequest", "PhaseRunner"]
