"""Version-control plumbing.

Example:
    >>> from repo_conductor.git import git, RepositoryDiscovery
    >>> root = RepositoryDiscovery().root
    >>> result = await git("status", "--porcelain").run(cwd=root)
    >>> result.ok
    True
"""

from repo_conductor.git.commands import Command, CommandResult, gh, git
from repo_conductor.git.discovery import RepositoryDiscovery

__all__ = ["Command", "CommandResult", "RepositoryDiscovery", "gh", "git"]
