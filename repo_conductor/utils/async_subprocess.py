"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts.
Every external program (git, gh, the agent CLI, package managers) is run
through ``run_command`` with an explicit argument list, never a shell
string.

Key Features:
    - Non-blocking execution compatible with asyncio
    - Configurable timeout with automatic process cleanup
    - Optional check mode that raises on non-zero exit codes
    - Optional stdin payload and environment overrides

Example:
    >>> from repo_conductor.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)

Cancellation:
    If the awaiting task is cancelled (for example by the shutdown
    coordinator), the child process is killed before the cancellation
    propagates.
"""

import asyncio
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    capture_output: bool = True,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings. The first argument
            is the executable, subsequent arguments are passed to it.
        cwd: Working directory for command execution. If None, uses the
            current working directory of the parent process.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for command completion. If exceeded,
            the process is killed and TimeoutError is raised.
        capture_output: If True (default), capture stdout and stderr as
            strings. If False, output goes to the parent's stdout/stderr.
        input_text: Text written to the process's stdin, which is then closed.
        env: Extra environment variables layered over ``os.environ``.

    Returns:
        Tuple of (stdout, stderr, return_code) with outputs decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        TimeoutError: If timeout is exceeded. The process is killed before
            this exception is raised.
        FileNotFoundError: If the command executable is not found.
    """
    process_env = {**os.environ, **env} if env else None

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.PIPE if input_text is not None else None,
        stdout=asyncio.subprocess.PIPE if capture_output else None,
        stderr=asyncio.subprocess.PIPE if capture_output else None,
        env=process_env,
    )

    payload = input_text.encode("utf-8") if input_text is not None else None

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(payload),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
