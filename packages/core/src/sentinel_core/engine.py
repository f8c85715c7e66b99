"""ReviewEngine — picks an AI provider and runs one review against it.

Provider choice only looks at which API keys are configured: the policy's
preferred provider goes first, then (when fallback is enabled) the others
in a fixed order. Exactly one provider is called per review; a failing call
is not retried against the next provider.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sentinel_core.providers.anthropic import AnthropicReviewer
from sentinel_core.providers.base import BaseReviewer
from sentinel_core.providers.openai import OpenAIReviewer
from sentinel_core.repo_config import AiProvider
from sentinel_core.results import ReviewResult
from sentinel_core.utils.context import DEFAULT_MAX_PATCH_BYTES

if TYPE_CHECKING:
    from sentinel_core.gh.pull_request import PullRequestContext
    from sentinel_core.policy import ReviewPolicy
    from sentinel_store.models import Repository, Run

logger = logging.getLogger(__name__)

DEFAULT_AI_TIMEOUT_SECONDS = 420

_PROVIDER_ORDER = (AiProvider.ANTHROPIC, AiProvider.OPENAI)


class NoProviderKeyError(RuntimeError):
    """No AI provider has an API key configured for this review."""

    code = "no_provider_key"


@dataclass(frozen=True)
class Guideline:
    """A repository guideline document, read at the base branch."""

    path: str
    content: str
    description: str | None = None


@dataclass(frozen=True)
class ReviewContext:
    run: Run
    repository: Repository
    policy: ReviewPolicy
    pull_request: PullRequestContext
    guidelines: tuple[Guideline, ...] = ()


def _get_reviewer(provider: AiProvider, api_key: str, model: str | None, timeout: float) -> BaseReviewer:
    if provider is AiProvider.ANTHROPIC:
        return AnthropicReviewer(api_key=api_key, model=model, timeout=timeout)
    if provider is AiProvider.OPENAI:
        return OpenAIReviewer(api_key=api_key, model=model, timeout=timeout)
    raise ValueError(f"Unknown model provider: {provider!r}. Choose 'anthropic' or 'openai'.")


ReviewerFactory = Callable[[AiProvider, str, "str | None", float], BaseReviewer]


class ReviewEngine:
    def __init__(
        self,
        api_keys: Mapping[str, str | None],
        timeout: float = DEFAULT_AI_TIMEOUT_SECONDS,
        max_patch_bytes: int = DEFAULT_MAX_PATCH_BYTES,
        reviewer_factory: ReviewerFactory = _get_reviewer,
    ):
        self._api_keys = {AiProvider(name): key for name, key in api_keys.items() if key}
        self.timeout = timeout
        self.max_patch_bytes = max_patch_bytes
        self._reviewer_factory = reviewer_factory

    @classmethod
    def from_config(cls, config: dict) -> ReviewEngine:
        return cls(
            api_keys={
                AiProvider.ANTHROPIC.value: config.get("anthropic_api_key"),
                AiProvider.OPENAI.value: config.get("openai_api_key"),
            },
            timeout=config.get("ai_timeout_seconds", DEFAULT_AI_TIMEOUT_SECONDS),
            max_patch_bytes=config.get("max_patch_bytes", DEFAULT_MAX_PATCH_BYTES),
        )

    def has_any_provider(self) -> bool:
        return bool(self._api_keys)

    def providers_for(self, policy: ReviewPolicy) -> list[AiProvider]:
        """Eligible providers for policy, in the order they would be tried."""
        preferred = policy.preferred_provider
        order = list(_PROVIDER_ORDER)
        if preferred is not None:
            if not policy.fallback_enabled:
                order = [preferred]
            else:
                order.remove(preferred)
                order.insert(0, preferred)
        return [p for p in order if p in self._api_keys]

    def review(self, context: ReviewContext) -> ReviewResult:
        providers = self.providers_for(context.policy)
        if not providers:
            raise NoProviderKeyError("No AI provider API key is configured for this review.")

        provider = providers[0]
        model = context.policy.provider_model
        preferred = context.policy.preferred_provider
        if preferred is not None and provider is not preferred:
            logger.info("Preferred provider %s has no key; falling back to %s", preferred.value, provider.value)
            model = None

        reviewer = self._reviewer_factory(provider, self._api_keys[provider], model, self.timeout)
        reviewer.max_patch_bytes = self.max_patch_bytes
        return reviewer.review(context)
