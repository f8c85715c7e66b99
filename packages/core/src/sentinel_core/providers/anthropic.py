from __future__ import annotations

from sentinel_core.providers.base import BaseReviewer, Completion


class AnthropicReviewer(BaseReviewer):
    PROVIDER = "anthropic"
    MODEL = "claude-sonnet-4-5-20250929"
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, model: str | None = None, timeout: float | None = None):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'sentinel-review[anthropic]'"
            )
        self.model = model or self.MODEL
        self.client = Anthropic(api_key=api_key, timeout=timeout or self.TIMEOUT_SECONDS, max_retries=0)

    def _call_api(self, system_prompt: str, user_prompt: str) -> Completion:
        # __init__ already validated the package is installed.
        from anthropic.types import TextBlock

        response = self.client.messages.create(
            model=self.model,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
        )
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        usage = response.usage.model_dump() if response.usage is not None else {}
        return Completion(text="".join(text_blocks).strip(), usage=usage, model=response.model or self.model)
