from __future__ import annotations

try:
    from openai import OpenAI as _OpenAI
except ImportError:
    _OpenAI = None  # type: ignore[assignment,misc]

from sentinel_core.providers.base import BaseReviewer, Completion


class OpenAIReviewer(BaseReviewer):
    PROVIDER = "openai"
    MODEL = "gpt-4o"
    TEMPERATURE = 0.1

    def __init__(self, api_key: str, model: str | None = None, timeout: float | None = None):
        if _OpenAI is None:
            raise ImportError(
                "The 'openai' package is required for this provider. "
                "Install it with: pip install 'sentinel-review[openai]'"
            )
        self.model = model or self.MODEL
        self.client = _OpenAI(api_key=api_key, timeout=timeout or self.TIMEOUT_SECONDS, max_retries=0)

    def _call_api(self, system_prompt: str, user_prompt: str) -> Completion:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            response_format={"type": "json_object"},
        )
        usage = response.usage.model_dump() if response.usage is not None else {}
        return Completion(
            text=response.choices[0].message.content or "",
            usage=usage,
            model=response.model or self.model,
        )
