"""Tests for trigger rule evaluation."""

from sentinel_core.repo_config import TriggersConfig
from sentinel_core.triggers import evaluate_triggers


def _evaluate(triggers, base="main", head="feature/x", author="octocat", labels=()):
    return evaluate_triggers(triggers, base_branch=base, head_branch=head, author=author, labels=list(labels))


class TestEvaluateTriggers:
    def test_empty_rules_review_everything(self):
        assert _evaluate(TriggersConfig()).should_review is True

    def test_target_branch_glob(self):
        triggers = TriggersConfig(target_branches=["main", "release/*"])
        assert _evaluate(triggers, base="release/1.2").should_review is True
        decision = _evaluate(triggers, base="develop")
        assert decision.should_review is False
        assert "develop" in decision.reason

    def test_skip_source_branch(self):
        decision = _evaluate(TriggersConfig(skip_source_branches=["dependabot/*"]), head="dependabot/npm/lodash")
        assert decision.should_review is False
        assert "dependabot/*" in decision.reason

    def test_skip_label(self):
        decision = _evaluate(TriggersConfig(skip_labels=["wip", "no-review"]), labels=["bug", "wip"])
        assert decision.should_review is False
        assert "wip" in decision.reason

    def test_skip_author(self):
        decision = _evaluate(TriggersConfig(skip_authors=["renovate*"]), author="renovate[bot]")
        assert decision.should_review is False

    def test_missing_author_is_not_skipped(self):
        assert _evaluate(TriggersConfig(skip_authors=["*"]), author=None).should_review is True

    def test_matching_is_case_sensitive(self):
        assert _evaluate(TriggersConfig(skip_labels=["WIP"]), labels=["wip"]).should_review is True
