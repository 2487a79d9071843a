"""Tests for repo_conductor.utils.async_subprocess module."""

import asyncio
import subprocess
from pathlib import Path

import pytest

from repo_conductor.utils.async_subprocess import run_command


class TestRunCommandBasic:
    """Test basic functionality of run_command."""

    @pytest.mark.asyncio
    async def test_run_simple_command(self):
        """Test running a simple command that succeeds."""
        stdout, stderr, returncode = await run_command("echo", "hello")

        assert stdout.strip() == "hello"
        assert stderr == ""
        assert returncode == 0

    @pytest.mark.asyncio
    async def test_arguments_are_not_shell_interpreted(self):
        """Test arguments reach the program verbatim."""
        stdout, _, _ = await run_command("echo", "$HOME; rm -rf /")

        assert stdout.strip() == "$HOME; rm -rf /"

    @pytest.mark.asyncio
    async def test_run_command_captures_stderr(self):
        """Test run_command captures stderr output."""
        _, stderr, _ = await run_command("bash", "-c", "echo error >&2")

        assert stderr.strip() == "error"

    @pytest.mark.asyncio
    async def test_run_command_with_non_zero_exit_check_false(self):
        """Test run_command with non-zero exit code when check=False."""
        _, _, returncode = await run_command("false", check=False)

        assert returncode != 0


class TestRunCommandWorkingDirectory:
    """Test run_command with working directory option."""

    @pytest.mark.asyncio
    async def test_run_command_with_cwd_as_path(self, tmp_path: Path):
        """Test run_command with cwd as Path object."""
        stdout, _, returncode = await run_command("pwd", cwd=tmp_path)

        assert Path(stdout.strip()).resolve() == tmp_path.resolve()
        assert returncode == 0


class TestRunCommandCheckOption:
    """Test run_command check parameter behavior."""

    @pytest.mark.asyncio
    async def test_run_command_check_default_is_true(self):
        """Test run_command defaults to check=True."""
        with pytest.raises(subprocess.CalledProcessError):
            await run_command("false")

    @pytest.mark.asyncio
    async def test_called_process_error_contains_output(self):
        """Test CalledProcessError contains stdout and stderr."""
        with pytest.raises(subprocess.CalledProcessError) as exc_info:
            await run_command("bash", "-c", "echo stdout_msg; echo stderr_msg >&2; exit 1")

        assert "stdout_msg" in exc_info.value.stdout
        assert "stderr_msg" in exc_info.value.stderr


class TestRunCommandTimeout:
    """Test run_command timeout behavior."""

    @pytest.mark.asyncio
    async def test_run_command_timeout_raises_timeout_error(self):
        """Test run_command raises TimeoutError when timeout exceeded."""
        with pytest.raises(TimeoutError):
            await run_command("sleep", "10", timeout=0.1)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """Test cancelling the awaiting task cancels the command."""
        task = asyncio.ensure_future(run_command("sleep", "10"))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestRunCommandInputAndEnv:
    """Test stdin payload and environment overrides."""

    @pytest.mark.asyncio
    async def test_input_text_is_written_to_stdin(self):
        """Test input_text is piped to the process."""
        stdout, _, _ = await run_command("cat", input_text="prompt body")

        assert stdout == "prompt body"

    @pytest.mark.asyncio
    async def test_env_is_layered_over_environment(self):
        """Test env adds variables without dropping PATH."""
        stdout, _, returncode = await run_command(
            "bash", "-c", "echo $CONDUCTOR_PHASE", env={"CONDUCTOR_PHASE": "exec"}
        )

        assert returncode == 0
        assert stdout.strip() == "exec"

    @pytest.mark.asyncio
    async def test_missing_executable_raises(self):
        """Test a missing program raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            await run_command("definitely-not-a-real-program-xyz")
