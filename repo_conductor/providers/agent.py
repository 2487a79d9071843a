"""Phase runner that drives an agent CLI in non-interactive mode."""

import json
from typing import Any

import structlog

from repo_conductor.exceptions import PhaseExecutionError
from repo_conductor.git.commands import NOT_FOUND_RETURNCODE, Command
from repo_conductor.providers.base import PhaseOutput, PhaseRequest, PhaseRunner

log = structlog.get_logger(__name__)

STDERR_EXCERPT = 500

_RESULT_ERRORS = {
    "error_max_turns": "Max turns reached",
    "error_during_execution": "Error during execution",
    "error_max_budget_usd": "Budget limit exceeded",
}


class AgentCliRunner(PhaseRunner):
    """Runs each phase as one ``claude --print`` invocation.

    The prompt goes over stdin so long prompts never hit argument limits.
    JSON output mode is used to recover the final result text and the
    session id.
    """

    def __init__(
        self,
        command: str = "claude",
        model: str | None = None,
        extra_args: list[str] | None = None,
    ):
        self.command = command
        self.model = model
        self.extra_args = extra_args or []

    def build_command(self, request: PhaseRequest) -> Command:
        """Assemble the agent invocation for a request."""
        cmd = Command(self.command).arg("--print", "--dangerously-skip-permissions", "--output-format", "json")
        if self.model:
            cmd = cmd.arg("--model", self.model)
        if request.session_id:
            cmd = cmd.arg("--resume", request.session_id)
        if not request.enhanced_mode:
            # No MCP servers: only tools from an explicit (empty) config
            cmd = cmd.arg("--strict-mcp-config")
        return cmd.arg(*self.extra_args)

    async def run(self, request: PhaseRequest) -> PhaseOutput:
        cmd = self.build_command(request)
        log.debug(
            "running_agent",
            issue=request.issue,
            phase=str(request.phase),
            cwd=str(request.cwd),
            enhanced_mode=request.enhanced_mode,
        )

        result = await cmd.run(cwd=request.cwd, input_text=request.prompt, env=request.env)

        if result.returncode == NOT_FOUND_RETURNCODE and not result.stdout:
            raise PhaseExecutionError(f"{self.command} CLI not found in PATH", phase=str(request.phase))

        payload = self._parse_json(result.stdout)
        output = str(payload.get("result", "")) if payload else result.stdout
        session_id = payload.get("session_id") if payload else None

        if not result.ok:
            stderr = result.stderr.strip()[:STDERR_EXCERPT]
            error = f"Agent exited with code {result.returncode}"
            if stderr:
                error = f"{error}\nStderr: {stderr}"
            return PhaseOutput(result.returncode, output, error, session_id)

        if payload and (payload.get("is_error") or payload.get("subtype", "success") != "success"):
            subtype = str(payload.get("subtype", "error"))
            error = _RESULT_ERRORS.get(subtype, f"Error: {subtype}")
            return PhaseOutput(1, output, error, session_id)

        log.info("agent_execution_complete", issue=request.issue, phase=str(request.phase), output_length=len(output))
        return PhaseOutput(0, output, None, session_id)

    @staticmethod
    def _parse_json(stdout: str) -> dict[str, Any] | None:
        text = stdout.strip()
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None
