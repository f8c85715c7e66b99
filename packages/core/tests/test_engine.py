"""Tests for provider selection in ReviewEngine."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from sentinel_core.engine import Guideline, NoProviderKeyError, ReviewContext, ReviewEngine
from sentinel_core.policy import ReviewPolicy
from sentinel_core.providers.anthropic import AnthropicReviewer
from sentinel_core.providers.openai import OpenAIReviewer
from sentinel_core.repo_config import AiProvider
from sentinel_core.results import ReviewResult
from sentinel_store.models import Run


def _context(repository, pull_request, **policy):
    run = Run(workspace_id="ws1", repository_id="repo1", external_reference="github:pull_request:12:x")
    return ReviewContext(
        run=run,
        repository=repository,
        policy=ReviewPolicy.from_dict(policy),
        pull_request=pull_request,
    )


def _engine(anthropic=None, openai=None, **kwargs):
    factory = MagicMock()
    factory.return_value.review.return_value = ReviewResult()
    engine = ReviewEngine({"anthropic": anthropic, "openai": openai}, reviewer_factory=factory, **kwargs)
    return engine, factory


class TestProvidersFor:
    def test_default_order(self):
        engine, _ = _engine(anthropic="a", openai="o")
        assert engine.providers_for(ReviewPolicy()) == [AiProvider.ANTHROPIC, AiProvider.OPENAI]

    def test_preferred_goes_first(self):
        engine, _ = _engine(anthropic="a", openai="o")
        policy = ReviewPolicy.from_dict({"provider": {"preferred": "openai"}})
        assert engine.providers_for(policy) == [AiProvider.OPENAI, AiProvider.ANTHROPIC]

    def test_only_providers_with_keys(self):
        engine, _ = _engine(openai="o")
        assert engine.providers_for(ReviewPolicy()) == [AiProvider.OPENAI]

    def test_fallback_disabled_restricts_to_preferred(self):
        engine, _ = _engine(anthropic="a")
        policy = ReviewPolicy.from_dict({"provider": {"preferred": "openai", "fallback": False}})
        assert engine.providers_for(policy) == []

    def test_has_any_provider(self):
        assert _engine(anthropic="a")[0].has_any_provider() is True
        assert _engine(anthropic="", openai=None)[0].has_any_provider() is False


class TestReview:
    def test_calls_first_eligible_provider_once(self, repository, pull_request):
        engine, factory = _engine(anthropic="a", openai="o", timeout=60)
        result = engine.review(_context(repository, pull_request))

        assert isinstance(result, ReviewResult)
        factory.assert_called_once_with(AiProvider.ANTHROPIC, "a", None, 60)
        factory.return_value.review.assert_called_once()

    def test_policy_model_is_passed_to_preferred_provider(self, repository, pull_request):
        engine, factory = _engine(anthropic="a", openai="o")
        engine.review(_context(repository, pull_request, provider={"preferred": "openai", "model": "gpt-4o-mini"}))
        assert factory.call_args.args[:3] == (AiProvider.OPENAI, "o", "gpt-4o-mini")

    def test_policy_model_dropped_on_fallback(self, repository, pull_request):
        engine, factory = _engine(anthropic="a")
        engine.review(_context(repository, pull_request, provider={"preferred": "openai", "model": "gpt-4o-mini"}))
        assert factory.call_args.args[:3] == (AiProvider.ANTHROPIC, "a", None)

    def test_applies_patch_budget(self, repository, pull_request):
        engine, factory = _engine(anthropic="a", max_patch_bytes=1234)
        engine.review(_context(repository, pull_request))
        assert factory.return_value.max_patch_bytes == 1234

    def test_no_keys_raises(self, repository, pull_request):
        engine, factory = _engine()
        with pytest.raises(NoProviderKeyError) as exc_info:
            engine.review(_context(repository, pull_request))
        assert exc_info.value.code == "no_provider_key"
        factory.assert_not_called()

    def test_missing_preferred_key_without_fallback_raises(self, repository, pull_request):
        engine, factory = _engine(anthropic="a")
        with pytest.raises(NoProviderKeyError):
            engine.review(_context(repository, pull_request, provider={"preferred": "openai", "fallback": False}))
        factory.assert_not_called()

    def test_provider_error_is_not_retried_elsewhere(self, repository, pull_request):
        engine, factory = _engine(anthropic="a", openai="o")
        factory.return_value.review.side_effect = TimeoutError("slow")
        with pytest.raises(TimeoutError):
            engine.review(_context(repository, pull_request))
        assert factory.call_count == 1

    def test_guidelines_reach_the_reviewer(self, repository, pull_request):
        engine, factory = _engine(anthropic="a")
        guideline = Guideline(path="docs/STYLE.md", content="Use snake_case.")
        context = replace(_context(repository, pull_request), guidelines=(guideline,))

        engine.review(context)

        assert factory.return_value.review.call_args.args[0].guidelines == (guideline,)


class TestFromConfig:
    def test_builds_real_reviewers(self, mocker, repository, pull_request):
        mocker.patch("anthropic.Anthropic")
        engine = ReviewEngine.from_config({"anthropic_api_key": "a", "openai_api_key": None, "ai_timeout_seconds": 90})
        assert engine.timeout == 90
        review = mocker.patch.object(AnthropicReviewer, "review", return_value=ReviewResult())
        engine.review(_context(repository, pull_request))
        review.assert_called_once()

    def test_openai_only(self, mocker, repository, pull_request):
        mocker.patch("sentinel_core.providers.openai._OpenAI")
        engine = ReviewEngine.from_config({"openai_api_key": "o"})
        review = mocker.patch.object(OpenAIReviewer, "review", return_value=ReviewResult())
        engine.review(_context(repository, pull_request))
        review.assert_called_once()
