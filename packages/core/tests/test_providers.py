"""Tests for AI provider implementations.

Shared behaviour (_parse, _build_system_prompt, _build_user_prompt, review)
lives in BaseReviewer and is tested once via a lightweight stub, not
duplicated per provider. Provider-specific tests cover only what differs
between implementations: the SDK client setup and _call_api.
"""

import json
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from sentinel_core.engine import Guideline, ReviewContext
from sentinel_core.policy import ReviewPolicy
from sentinel_core.providers.anthropic import AnthropicReviewer
from sentinel_core.providers.base import BaseReviewer, Completion, ResponseParseError
from sentinel_core.providers.openai import OpenAIReviewer
from sentinel_core.results import Severity
from sentinel_store.models import Run

VALID_JSON = json.dumps(
    {
        "summary": {"overview": "Adds a cache.", "verdict": "comment", "risk_level": "medium"},
        "findings": [
            {
                "severity": "high",
                "category": "reliability",
                "title": "Unbounded cache",
                "description": "The client never expires keys.",
                "file_path": "app/cache.py",
                "line_start": 2,
            }
        ],
    }
)


class _StubReviewer(BaseReviewer):
    """Minimal concrete subclass used to test BaseReviewer shared methods."""

    PROVIDER = "stub"
    model = "stub-1"

    def __init__(self, text=VALID_JSON, usage=None):
        self.text = text
        self.usage = usage or {}
        self.calls = []

    def _call_api(self, system_prompt: str, user_prompt: str) -> Completion:
        self.calls.append((system_prompt, user_prompt))
        return Completion(text=self.text, usage=self.usage)


@pytest.fixture
def context(repository, pull_request):
    run = Run(workspace_id="ws1", repository_id="repo1", external_reference="github:pull_request:12:x")
    return ReviewContext(run=run, repository=repository, policy=ReviewPolicy(), pull_request=pull_request)


def _policy(**data):
    return ReviewPolicy.from_dict(data)


# ---------------------------------------------------------------------------
# Shared behaviour, tested once through the stub
# ---------------------------------------------------------------------------


class TestBaseReviewerParse:
    def test_parses_valid_json(self):
        data = _StubReviewer()._parse(VALID_JSON)
        assert data["findings"][0]["title"] == "Unbounded cache"

    def test_strips_markdown_code_fences(self):
        assert "summary" in _StubReviewer()._parse(f"```json\n{VALID_JSON}\n```")

    def test_strips_bare_fences(self):
        assert "summary" in _StubReviewer()._parse(f"```\n{VALID_JSON}\n```")

    def test_preserves_code_blocks_inside_strings(self):
        """Backticks inside string values must not be stripped."""
        payload = json.dumps({"findings": [{"description": "Use this instead:\n```python\nfoo()\n```"}]})
        data = _StubReviewer()._parse(f"```json\n{payload}\n```")
        assert "```python" in data["findings"][0]["description"]

    def test_invalid_json_raises(self):
        with pytest.raises(ResponseParseError) as exc_info:
            _StubReviewer()._parse("not valid json")
        assert exc_info.value.code == "ai_response_unparsable"
        assert exc_info.value.raw == "not valid json"

    def test_non_object_root_raises(self):
        with pytest.raises(ResponseParseError):
            _StubReviewer()._parse("[]")

    def test_empty_response_raises(self):
        with pytest.raises(ResponseParseError):
            _StubReviewer()._parse("")


class TestBaseReviewerPrompts:
    def test_system_prompt_lists_enabled_rules(self):
        prompt = _StubReviewer()._build_system_prompt(_policy(enabled_rules=["security", "testing"]))
        assert "security, testing" in prompt

    def test_system_prompt_uses_threshold_and_limit(self):
        policy = _policy(severity_thresholds={"comment": "high"}, comment_limits={"max_inline_comments": 7})
        prompt = _StubReviewer()._build_system_prompt(policy)
        assert "'high' or higher" in prompt
        assert "at most 7 findings" in prompt

    def test_system_prompt_focus_and_language(self):
        prompt = _StubReviewer()._build_system_prompt(_policy(focus=["auth"], language="de"))
        assert "auth" in prompt
        assert "'de'" in prompt

    def test_system_prompt_omits_default_language(self):
        assert "ISO 639-1" not in _StubReviewer()._build_system_prompt(_policy())

    def test_system_prompt_tone(self):
        assert "Be direct" in _StubReviewer()._build_system_prompt(_policy(tone="direct"))

    def test_user_prompt_contains_pr_details(self, context):
        prompt = _StubReviewer()._build_user_prompt(context)
        assert "acme/api" in prompt
        assert "Add caching layer" in prompt
        assert "Caches user lookups." in prompt
        assert "feature/cache → main" in prompt
        assert "+import redis" in prompt

    def test_user_prompt_respects_ignored_paths(self, context):
        context = ReviewContext(
            run=context.run,
            repository=context.repository,
            policy=_policy(ignored_paths=["app/db.py"]),
            pull_request=context.pull_request,
        )
        prompt = _StubReviewer()._build_user_prompt(context)
        assert "### app/db.py" not in prompt
        assert "### app/cache.py" in prompt

    def test_user_prompt_without_description(self, context):
        pr = context.pull_request
        context = ReviewContext(
            run=context.run,
            repository=context.repository,
            policy=context.policy,
            pull_request=replace(pr, body="  "),
        )
        assert "_No description provided._" in _StubReviewer()._build_user_prompt(context)

    def test_user_prompt_includes_guidelines(self, context):
        context = replace(
            context,
            guidelines=(
                Guideline(path="docs/STYLE.md", content="Use snake_case.\n", description="House style"),
                Guideline(path="docs/API.md", content="Version every endpoint."),
            ),
        )
        prompt = _StubReviewer()._build_user_prompt(context)
        assert prompt.startswith("## Repository Guidelines")
        assert "### docs/STYLE.md: House style\nUse snake_case." in prompt
        assert "### docs/API.md\nVersion every endpoint." in prompt
        assert prompt.index("Version every endpoint.") < prompt.index("## Pull Request")

    def test_user_prompt_without_guidelines(self, context):
        assert "## Repository Guidelines" not in _StubReviewer()._build_user_prompt(context)

    def test_user_prompt_marks_sensitive_files(self, context):
        context = replace(context, policy=_policy(sensitive_paths=["app/db.py"]))
        prompt = _StubReviewer()._build_user_prompt(context)
        assert "### app/db.py (modified, +4/-2) [sensitive]" in prompt
        assert "### app/cache.py (added, +30/-0)\n" in prompt

    def test_user_prompt_limits_to_included_paths(self, context):
        context = replace(context, policy=_policy(included_paths=["app/cache.py"]))
        prompt = _StubReviewer()._build_user_prompt(context)
        assert "### app/cache.py" in prompt
        assert "### app/db.py" not in prompt

    def test_system_prompt_mentions_sensitive_files_and_guidelines(self):
        policy = _policy(sensitive_paths=["app/auth/"], guidelines=[{"path": "docs/STYLE.md"}])
        prompt = _StubReviewer()._build_system_prompt(policy)
        assert "[sensitive]" in prompt
        assert "repository guidelines" in prompt

    def test_system_prompt_without_paths_or_guidelines(self):
        prompt = _StubReviewer()._build_system_prompt(_policy())
        assert "[sensitive]" not in prompt
        assert "repository guidelines" not in prompt


class TestBaseReviewerReview:
    def test_makes_exactly_one_call(self, context):
        reviewer = _StubReviewer()
        reviewer.review(context)
        assert len(reviewer.calls) == 1

    def test_returns_normalized_result(self, context):
        result = _StubReviewer().review(context)
        assert result.summary.overview == "Adds a cache."
        assert len(result.findings) == 1
        assert result.findings[0].severity is Severity.HIGH

    def test_records_metrics(self, context):
        reviewer = _StubReviewer(usage={"input_tokens": 100, "output_tokens": 20, "cache_read_input_tokens": 30})
        metrics = reviewer.review(context).metrics
        assert metrics.input_tokens == 130
        assert metrics.output_tokens == 20
        assert metrics.tokens_used_estimated == 150
        assert metrics.files_changed == 2
        assert metrics.lines_added == 34
        assert metrics.lines_deleted == 2
        assert metrics.provider == "stub"
        assert metrics.model == "stub-1"

    def test_unparsable_response_raises(self, context):
        with pytest.raises(ResponseParseError):
            _StubReviewer(text="Sorry, I can't help with that.").review(context)

    def test_api_errors_propagate_without_retry(self, context):
        class _AlwaysFailReviewer(_StubReviewer):
            def _call_api(self, system_prompt, user_prompt):
                self.calls.append(1)
                raise TimeoutError("request timed out")

        reviewer = _AlwaysFailReviewer()
        with pytest.raises(TimeoutError):
            reviewer.review(context)
        assert len(reviewer.calls) == 1


# ---------------------------------------------------------------------------
# Provider-specific, only what differs between Anthropic and OpenAI
# ---------------------------------------------------------------------------


class TestAnthropicReviewer:
    def test_raises_import_error_without_sdk(self):
        """AnthropicReviewer.__init__ must raise if the anthropic package is absent."""
        with patch.dict("sys.modules", {"anthropic": None}):
            with pytest.raises(ImportError, match="sentinel-review\\[anthropic\\]"):
                AnthropicReviewer(api_key="key")

    def test_client_has_sdk_retries_disabled(self):
        with patch("anthropic.Anthropic") as client_cls:
            reviewer = AnthropicReviewer(api_key="key", timeout=30)
        client_cls.assert_called_once_with(api_key="key", timeout=30, max_retries=0)
        assert reviewer.model == AnthropicReviewer.MODEL

    def test_call_api_collects_text_and_usage(self):
        from anthropic.types import TextBlock

        with patch("anthropic.Anthropic"):
            reviewer = AnthropicReviewer(api_key="key", model="claude-test")
        usage = MagicMock()
        usage.model_dump.return_value = {"input_tokens": 10, "output_tokens": 5}
        reviewer.client.messages.create.return_value = SimpleNamespace(
            content=[TextBlock(type="text", text="{}")],
            usage=usage,
            model="claude-test",
        )

        completion = reviewer._call_api("system", "user")

        assert completion.text == "{}"
        assert completion.usage == {"input_tokens": 10, "output_tokens": 5}
        kwargs = reviewer.client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"] == "system"
        assert kwargs["temperature"] == AnthropicReviewer.TEMPERATURE

    def test_model_is_claude(self):
        assert "claude" in AnthropicReviewer.MODEL


class TestOpenAIReviewer:
    def test_raises_import_error_without_sdk(self, monkeypatch):
        """OpenAIReviewer.__init__ must raise if the openai package is absent."""
        import sentinel_core.providers.openai as openai_mod

        monkeypatch.setattr(openai_mod, "_OpenAI", None)
        with pytest.raises(ImportError, match="sentinel-review\\[openai\\]"):
            OpenAIReviewer(api_key="key")

    def test_call_api_requests_json_object(self, monkeypatch):
        import sentinel_core.providers.openai as openai_mod

        client_cls = MagicMock()
        monkeypatch.setattr(openai_mod, "_OpenAI", client_cls)
        reviewer = OpenAIReviewer(api_key="key")
        client_cls.assert_called_once_with(api_key="key", timeout=OpenAIReviewer.TIMEOUT_SECONDS, max_retries=0)

        usage = MagicMock()
        usage.model_dump.return_value = {"prompt_tokens": 12, "completion_tokens": 3}
        reviewer.client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"findings": []}'))],
            usage=usage,
            model="gpt-4o-2024-08-06",
        )

        completion = reviewer._call_api("system", "user")

        assert completion.text == '{"findings": []}'
        assert completion.model == "gpt-4o-2024-08-06"
        assert completion.usage == {"prompt_tokens": 12, "completion_tokens": 3}
        kwargs = reviewer.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    def test_model_is_gpt(self):
        assert "gpt" in OpenAIReviewer.MODEL
