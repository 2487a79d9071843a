"""Typed external command builder.

Every git and gh invocation is assembled as an explicit argument tuple and
executed without a shell. Running a command never raises for an ordinary
failure: non-zero exits, timeouts and a missing executable all come back
as a ``CommandResult`` the caller inspects.

Example:
    >>> result = await git("rev-parse", "HEAD").run(cwd=repo)
    >>> if result.ok:
    ...     sha = result.output
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_conductor.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


@dataclass(frozen=True)
class CommandResult:
    """Captured output of one external command."""

    args: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Stripped stdout."""
        return self.stdout.strip()

    @property
    def combined(self) -> str:
        """stdout and stderr together, for conflict and error sniffing."""
        return f"{self.stdout}\n{self.stderr}"

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    def error_text(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


@dataclass(frozen=True)
class Command:
    """An immutable program invocation."""

    program: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.program, *self.args)

    def arg(self, *more: str) -> Command:
        """Return a new command with extra arguments appended."""
        return Command(self.program, self.args + tuple(more))

    def __str__(self) -> str:
        return " ".join(self.argv)

    async def run(
        self,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute the command and capture its output."""
        try:
            stdout, stderr, code = await run_command(
                *self.argv,
                cwd=cwd,
                check=False,
                timeout=timeout,
                input_text=input_text,
                env=env,
            )
        except TimeoutError:
            log.warning("command_timeout", command=str(self), timeout=timeout)
            return CommandResult(self.argv, "", f"Timed out after {timeout}s", TIMEOUT_RETURNCODE)
        except FileNotFoundError:
            log.warning("command_not_found", program=self.program)
            return CommandResult(self.argv, "", f"{self.program}: command not found", NOT_FOUND_RETURNCODE)

        log.debug("command_completed", command=str(self), returncode=code)
        return CommandResult(self.argv, stdout, stderr, code)


def git(*args: str) -> Command:
    return Command("git", tuple(args))


def gh(*args: str) -> Command:
    return Command("gh", tuple(args))
