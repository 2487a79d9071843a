"""Repository discovery using GitPython.

Locates the repository root from any path inside it. Used once per
command; everything after that goes through the command builder in
``repo_conductor.git.commands``.
"""

from pathlib import Path

import git
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from repo_conductor.exceptions import GitOperationError


class RepositoryDiscovery:
    """Discovers the enclosing Git repository of a path.

    The repository is opened lazily on first access.

    Example:
        >>> discovery = RepositoryDiscovery("/repo/src/module")
        >>> discovery.root
        PosixPath('/repo')
    """

    def __init__(self, repo_path: str | Path = ".") -> None:
        self.repo_path = Path(repo_path).resolve()
        self._repo: git.Repo | None = None

    def _get_repo(self) -> git.Repo:
        if self._repo is None:
            try:
                self._repo = git.Repo(self.repo_path, search_parent_directories=True)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise GitOperationError(f"Not a git repository: {self.repo_path}") from e
        return self._repo

    @property
    def root(self) -> Path:
        """Top-level directory of the main working tree."""
        working_dir = self._get_repo().working_tree_dir
        if working_dir is None:
            raise GitOperationError(f"Bare repositories are not supported: {self.repo_path}")
        return Path(working_dir)
