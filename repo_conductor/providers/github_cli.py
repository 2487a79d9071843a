"""
GitHub access through the ``gh`` CLI.

Reads issue metadata and pull request state, and opens pull requests.
Reads degrade to None or a placeholder when ``gh`` fails; the caller logs
and carries on.
"""

import json
import re
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.git.commands import CommandResult, gh
from repo_conductor.models.domain import Issue
from repo_conductor.models.state import PullRequestInfo

log = structlog.get_logger(__name__)

PR_URL_PATTERN = re.compile(r"https://github\.com/[^\s]+/pull/(\d+)")


def _label_names(raw: Any) -> list[str]:
    names = []
    for label in raw or []:
        name = label.get("name") if isinstance(label, dict) else label
        if name:
            names.append(str(name))
    return names


class GitHubCli:
    """Thin async wrapper over the ``gh`` commands the engine needs."""

    def __init__(self, cwd: Path | str | None = None, timeout: float = 60.0):
        self.cwd = cwd
        self.timeout = timeout

    async def _json(self, *args: str) -> Any | None:
        result = await gh(*args).run(cwd=self.cwd, timeout=self.timeout)
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            log.warning("gh_invalid_json", command=" ".join(args[:3]))
            return None

    async def get_issue(self, number: int) -> Issue:
        """Fetch title, labels and body. Falls back to ``Issue #N``."""
        data = await self._json("issue", "view", str(number), "--json", "title,labels,body")
        if not isinstance(data, dict):
            log.warning("issue_info_unavailable", issue=number)
            return Issue(number=number, title=f"Issue #{number}")
        return Issue(
            number=number,
            title=data.get("title") or f"Issue #{number}",
            labels=_label_names(data.get("labels")),
            body=data.get("body") or "",
        )

    async def get_issue_title(self, number: int) -> str | None:
        result = await gh("issue", "view", str(number), "--json", "title", "-q", ".title").run(
            cwd=self.cwd, timeout=self.timeout
        )
        if not result.ok:
            return None
        return result.output or None

    async def find_pr(self, branch: str) -> PullRequestInfo | None:
        """Open pull request whose head is ``branch``, if any."""
        data = await self._json("pr", "view", branch, "--json", "number,url")
        if isinstance(data, dict) and data.get("number") and data.get("url"):
            return PullRequestInfo(number=int(data["number"]), url=str(data["url"]))
        return None

    async def create_pr(self, title: str, body: str, branch: str, cwd: Path | str | None = None) -> CommandResult:
        return await gh("pr", "create", "--title", title, "--body", body, "--head", branch).run(
            cwd=cwd or self.cwd, timeout=self.timeout
        )

    async def pr_state(self, number: int) -> str | None:
        """``OPEN``, ``CLOSED``, ``MERGED`` or None when unknown."""
        result = await gh("pr", "view", str(number), "--json", "state", "-q", ".state").run(
            cwd=self.cwd, timeout=self.timeout
        )
        if not result.ok or not result.output:
            return None
        return result.output.upper()

    @staticmethod
    def parse_pr_url(text: str) -> PullRequestInfo | None:
        match = PR_URL_PATTERN.search(text)
        if not match:
            return None
        return PullRequestInfo(number=int(match.group(1)), url=match.group(0))
