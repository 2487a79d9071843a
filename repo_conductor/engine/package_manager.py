"""Package manager detection and dependency installation for worktrees."""

from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_conductor.git.commands import Command

log = structlog.get_logger(__name__)

INSTALL_TIMEOUT_SECONDS = 600


@dataclass(frozen=True)
class PackageManager:
    """How to install dependencies for one ecosystem.

    Attributes:
        name: Package manager executable name
        lockfile: Lockfile whose presence selects this manager
        install_args: Quiet install invocation
        marker: Directory that exists once dependencies are installed
    """

    name: str
    lockfile: str
    install_args: tuple[str, ...]
    marker: str

    @property
    def install_command(self) -> Command:
        return Command(self.install_args[0], self.install_args[1:])

    def needs_install(self, path: Path) -> bool:
        return not (path / self.marker).exists()

    async def install(self, path: Path) -> bool:
        """Install dependencies in ``path``. Failure is logged, not raised."""
        log.info("dependencies_installing", package_manager=self.name, path=str(path))
        result = await self.install_command.run(cwd=path, timeout=INSTALL_TIMEOUT_SECONDS)
        if not result.ok:
            log.warning("dependency_install_failed", package_manager=self.name, error=result.error_text())
            return False
        return True


# Checked in order; the first lockfile found wins.
PACKAGE_MANAGERS: tuple[PackageManager, ...] = (
    PackageManager("bun", "bun.lock", ("bun", "install", "--silent"), "node_modules"),
    PackageManager("pnpm", "pnpm-lock.yaml", ("pnpm", "install", "--silent"), "node_modules"),
    PackageManager("yarn", "yarn.lock", ("yarn", "install", "--silent"), "node_modules"),
    PackageManager("npm", "package-lock.json", ("npm", "install", "--silent"), "node_modules"),
    PackageManager("uv", "uv.lock", ("uv", "sync", "--quiet"), ".venv"),
    PackageManager("poetry", "poetry.lock", ("poetry", "install", "--quiet"), ".venv"),
)


def detect_package_manager(root: Path) -> PackageManager | None:
    for manager in PACKAGE_MANAGERS:
        if (root / manager.lockfile).exists():
            return manager
    return None
