"""
Dependency ordering and per-issue phase planning.

Label matching is a case-insensitive substring check, so ``bugfix`` counts
as a bug label and ``web-ui`` as a UI label.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

import structlog

from repo_conductor.enums import DEFAULT_PHASES, Phase

log = structlog.get_logger(__name__)

UI_LABELS = ("ui", "frontend", "admin", "web", "browser")
BUG_LABELS = ("bug", "fix", "hotfix", "patch")
DOCS_LABELS = ("docs", "documentation", "readme")
COMPLEX_LABELS = ("complex", "refactor", "breaking", "major")
SECURITY_LABELS = ("security", "auth", "authentication", "permissions", "admin")

RECOMMENDED_WORKFLOW_PATTERN = re.compile(r"## Recommended Workflow[\s\S]*?\*\*Phases:\*\*\s*([^\n]+)", re.IGNORECASE)
QUALITY_LOOP_PATTERN = re.compile(r"\*\*Quality Loop:\*\*\s*(enabled|disabled|true|false|yes|no)", re.IGNORECASE)
PHASE_SEPARATOR = re.compile(r"\s*→\s*|\s*->\s*|\s*,\s*")
DEPENDS_ON_BODY = re.compile(r"\*?\*?depends\s+on\*?\*?:?\s*#?(\d+)", re.IGNORECASE)
DEPENDS_ON_LABEL = re.compile(r"depends-on[-/](\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class PhasePlan:
    """Phases chosen for an issue and whether the quality loop should run."""

    phases: tuple[Phase, ...]
    quality_loop: bool = False


def _has_label(labels: Iterable[str], keywords: Sequence[str]) -> bool:
    return any(keyword in label.lower() for label in labels for keyword in keywords)


def has_ui_labels(labels: Iterable[str]) -> bool:
    return _has_label(labels, UI_LABELS)


def has_bug_labels(labels: Iterable[str]) -> bool:
    return _has_label(labels, BUG_LABELS)


def has_security_labels(labels: Iterable[str]) -> bool:
    return _has_label(labels, SECURITY_LABELS)


def _insert_after(phases: list[Phase], anchor: Phase, phase: Phase) -> None:
    if anchor in phases and phase not in phases:
        phases.insert(phases.index(anchor) + 1, phase)


def detect_phases_from_labels(labels: Sequence[str]) -> PhasePlan:
    """Derive the phase list from issue labels.

    Rules:
        - bug or docs labels: exec, qa (no planning)
        - UI labels: spec, exec, test, qa
        - otherwise: spec, exec, qa
        - security labels add security-review right after spec, only when
          spec is in the list
        - complex labels turn the quality loop on

    Example:
        >>> [str(p) for p in detect_phases_from_labels(["ui", "auth"]).phases]
        ['spec', 'security-review', 'exec', 'test', 'qa']
    """
    if has_bug_labels(labels) or _has_label(labels, DOCS_LABELS):
        phases = [Phase.EXEC, Phase.QA]
    elif has_ui_labels(labels):
        phases = [Phase.SPEC, Phase.EXEC, Phase.TEST, Phase.QA]
    else:
        phases = list(DEFAULT_PHASES)

    if has_security_labels(labels):
        _insert_after(phases, Phase.SPEC, Phase.SECURITY_REVIEW)

    return PhasePlan(tuple(phases), quality_loop=_has_label(labels, COMPLEX_LABELS))


def parse_recommended_workflow(output: str | None) -> PhasePlan | None:
    """Parse the ``## Recommended Workflow`` block of planning output.

    Expects ``**Phases:** exec → qa`` (arrows, ``->`` or commas) and an
    optional ``**Quality Loop:** enabled`` line. Unknown phase names are
    dropped; None when nothing valid remains.
    """
    if not output:
        return None
    match = RECOMMENDED_WORKFLOW_PATTERN.search(output)
    if not match:
        return None

    phases = []
    for token in PHASE_SEPARATOR.split(match.group(1).strip()):
        if not token.strip():
            continue
        phase = Phase.parse(token)
        if phase is None:
            log.debug("recommended_phase_ignored", token=token.strip())
            continue
        phases.append(phase)

    if not phases:
        return None

    loop_match = QUALITY_LOOP_PATTERN.search(output)
    quality_loop = bool(loop_match) and loop_match.group(1).lower() in ("enabled", "true", "yes")
    return PhasePlan(tuple(phases), quality_loop=quality_loop)


def determine_phases_for_issue(
    labels: Sequence[str],
    explicit_phases: Sequence[Phase] | None = None,
    add_testgen: bool = False,
) -> list[Phase]:
    """Choose the phases to run for one issue.

    Explicit phases win over label rules. Either way, ``testgen`` is
    inserted after spec when requested, and UI labels add ``test`` before
    qa (or at the end when there is no qa).

    Example:
        >>> [str(p) for p in determine_phases_for_issue(["bug"])]
        ['exec', 'qa']
    """
    if explicit_phases is not None:
        phases = list(explicit_phases)
    else:
        phases = list(detect_phases_from_labels(labels).phases)

    if add_testgen:
        _insert_after(phases, Phase.SPEC, Phase.TESTGEN)

    if has_ui_labels(labels) and Phase.TEST not in phases:
        if Phase.QA in phases:
            phases.insert(phases.index(Phase.QA), Phase.TEST)
        else:
            phases.append(Phase.TEST)

    return phases


def filter_resumed_phases(phases: Sequence[Phase], completed: Iterable[Phase]) -> tuple[list[Phase], list[Phase]]:
    """Split phases into (to run, already completed)."""
    done = set(completed)
    return [p for p in phases if p not in done], [p for p in phases if p in done]


def parse_dependencies(body: str | None, labels: Iterable[str] = ()) -> list[int]:
    """Issue numbers an issue declares it depends on.

    Reads ``Depends on #12`` / ``**Depends on**: 12`` from the body and
    ``depends-on-12`` / ``depends-on/12`` labels. De-duplicated, first
    occurrence order.
    """
    found: list[int] = []
    if body:
        found.extend(int(m.group(1)) for m in DEPENDS_ON_BODY.finditer(body))
    for label in labels:
        match = DEPENDS_ON_LABEL.search(label)
        if match:
            found.append(int(match.group(1)))
    return list(dict.fromkeys(found))


def sort_by_dependencies(issues: Sequence[int], dependencies: Mapping[int, Iterable[int]]) -> list[int]:
    """Order issues so every issue comes after the issues it depends on.

    Only dependencies on issues in ``issues`` count. Issues caught in a
    cycle, or depending on one, keep their original relative order and go
    last.

    Example:
        >>> sort_by_dependencies([3, 2, 1], {3: [2], 2: [1]})
        [1, 2, 3]
    """
    members = set(issues)
    depends_on = {
        issue: [d for d in dict.fromkeys(dependencies.get(issue, ())) if d in members and d != issue]
        for issue in issues
    }

    queue = [issue for issue in issues if not depends_on[issue]]
    visited: set[int] = set()
    ordered: list[int] = []

    while queue:
        issue = queue.pop(0)
        if issue in visited:
            continue
        visited.add(issue)
        ordered.append(issue)
        for other in issues:
            deps = depends_on[other]
            if other not in visited and issue in deps and all(d in visited for d in deps):
                queue.append(other)

    remaining = [issue for issue in issues if issue not in visited]
    if remaining:
        log.warning("dependency_cycle_detected", issues=remaining)
    # Duplicate issue numbers in the input collapse to one entry
    return list(dict.fromkeys(ordered + remaining))
