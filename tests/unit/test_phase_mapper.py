"""Tests for repo_conductor.engine.phase_mapper."""

from repo_conductor.engine.phase_mapper import (
    detect_phases_from_labels,
    determine_phases_for_issue,
    filter_resumed_phases,
    parse_dependencies,
    parse_recommended_workflow,
    sort_by_dependencies,
)
from repo_conductor.enums import Phase


class TestDetectPhasesFromLabels:
    """Tests for label-based phase detection."""

    def test_bug_label_skips_spec(self):
        """Test bug fixes go straight to exec and qa."""
        plan = detect_phases_from_labels(["bug"])

        assert plan.phases == (Phase.EXEC, Phase.QA)
        assert plan.quality_loop is False

    def test_docs_label_skips_spec(self):
        """Test documentation issues skip planning."""
        assert detect_phases_from_labels(["documentation"]).phases == (Phase.EXEC, Phase.QA)

    def test_ui_and_auth_labels(self):
        """Test UI adds test and security adds security-review after spec."""
        plan = detect_phases_from_labels(["ui", "auth"])

        assert plan.phases == (Phase.SPEC, Phase.SECURITY_REVIEW, Phase.EXEC, Phase.TEST, Phase.QA)

    def test_default_phases(self):
        """Test unlabelled issues get spec, exec, qa."""
        assert detect_phases_from_labels([]).phases == (Phase.SPEC, Phase.EXEC, Phase.QA)

    def test_security_without_spec_is_not_added(self):
        """Test security-review needs spec in the list."""
        plan = detect_phases_from_labels(["bug", "security"])

        assert Phase.SECURITY_REVIEW not in plan.phases

    def test_substring_match_is_case_insensitive(self):
        """Test label matching is a case-insensitive substring check."""
        assert detect_phases_from_labels(["Web-UI"]).phases == (Phase.SPEC, Phase.EXEC, Phase.TEST, Phase.QA)
        assert detect_phases_from_labels(["BugFix"]).phases == (Phase.EXEC, Phase.QA)

    def test_complex_label_enables_quality_loop(self):
        """Test complex labels turn the quality loop on."""
        assert detect_phases_from_labels(["refactor"]).quality_loop is True


class TestParseRecommendedWorkflow:
    """Tests for parsing the spec phase's recommendation."""

    def test_parses_arrows_and_loop(self):
        """Test the arrow-separated phase list and quality loop flag."""
        output = (
            "Plan ready.\n\n"
            "## Recommended Workflow\n\n"
            "**Phases:** exec → test → qa\n"
            "**Quality Loop:** enabled\n"
        )

        plan = parse_recommended_workflow(output)

        assert plan is not None
        assert plan.phases == (Phase.EXEC, Phase.TEST, Phase.QA)
        assert plan.quality_loop is True

    def test_parses_ascii_arrows_and_commas(self):
        """Test -> and comma separators."""
        plan = parse_recommended_workflow("## Recommended Workflow\n**Phases:** spec -> exec, qa\n")

        assert plan is not None
        assert plan.phases == (Phase.SPEC, Phase.EXEC, Phase.QA)
        assert plan.quality_loop is False

    def test_unknown_phases_dropped(self):
        """Test unknown names are ignored."""
        plan = parse_recommended_workflow("## Recommended Workflow\n**Phases:** exec → deploy → qa\n")

        assert plan is not None
        assert plan.phases == (Phase.EXEC, Phase.QA)

    def test_no_block_returns_none(self):
        """Test output without the section yields None."""
        assert parse_recommended_workflow("**Phases:** exec") is None
        assert parse_recommended_workflow(None) is None

    def test_only_unknown_phases_returns_none(self):
        """Test a recommendation with no valid phase yields None."""
        assert parse_recommended_workflow("## Recommended Workflow\n**Phases:** deploy\n") is None


class TestDeterminePhasesForIssue:
    """Tests for determine_phases_for_issue."""

    def test_bug_labels_without_explicit_phases(self):
        """Test label rules apply when nothing is explicit."""
        assert determine_phases_for_issue(["bug"]) == [Phase.EXEC, Phase.QA]

    def test_explicit_phases_win(self):
        """Test explicit phases override label rules."""
        phases = determine_phases_for_issue(["bug"], explicit_phases=[Phase.SPEC, Phase.EXEC])

        assert phases == [Phase.SPEC, Phase.EXEC]

    def test_testgen_inserted_after_spec(self):
        """Test testgen goes right after spec."""
        phases = determine_phases_for_issue([], explicit_phases=[Phase.SPEC, Phase.EXEC, Phase.QA], add_testgen=True)

        assert phases == [Phase.SPEC, Phase.TESTGEN, Phase.EXEC, Phase.QA]

    def test_ui_label_adds_test_before_qa(self):
        """Test UI issues get browser testing before QA."""
        phases = determine_phases_for_issue(["frontend"], explicit_phases=[Phase.EXEC, Phase.QA])

        assert phases == [Phase.EXEC, Phase.TEST, Phase.QA]

    def test_ui_label_appends_test_without_qa(self):
        """Test test is appended when there is no QA phase."""
        phases = determine_phases_for_issue(["ui"], explicit_phases=[Phase.EXEC])

        assert phases == [Phase.EXEC, Phase.TEST]


class TestFilterResumedPhases:
    """Tests for resume filtering."""

    def test_splits_completed(self):
        """Test completed phases are split off in order."""
        to_run, done = filter_resumed_phases([Phase.SPEC, Phase.EXEC, Phase.QA], [Phase.SPEC])

        assert to_run == [Phase.EXEC, Phase.QA]
        assert done == [Phase.SPEC]


class TestDependencies:
    """Tests for dependency parsing and ordering."""

    def test_parse_body_and_labels(self):
        """Test body references and depends-on labels are combined."""
        deps = parse_dependencies("Depends on #12\n**Depends on**: 14\nalso depends on #12", ["depends-on-15"])

        assert deps == [12, 14, 15]

    def test_parse_nothing(self):
        """Test an issue without references has no dependencies."""
        assert parse_dependencies(None) == []

    def test_sort_chain(self):
        """Test dependents come after their dependencies."""
        assert sort_by_dependencies([3, 2, 1], {3: [2], 2: [1]}) == [1, 2, 3]

    def test_unrelated_dependencies_ignored(self):
        """Test dependencies outside the run do not affect order."""
        assert sort_by_dependencies([5, 6], {5: [99], 6: []}) == [5, 6]

    def test_independent_issues_keep_order(self):
        """Test issues with no dependencies keep their input order."""
        assert sort_by_dependencies([9, 4, 7], {}) == [9, 4, 7]

    def test_cycle_keeps_original_order_last(self):
        """Test issues in a cycle keep their relative order and go last."""
        ordered = sort_by_dependencies([1, 2, 3], {1: [2], 2: [1]})

        assert ordered == [3, 1, 2]
