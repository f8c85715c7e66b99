"""Base reviewer implementing the Template Method pattern.

All providers share the same review algorithm:
    review() → _build_system_prompt() + _build_user_prompt()
             → _call_api()   ← only this differs per provider
             → _parse() → ReviewResult.from_dict()

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make exactly one raw API call and return a Completion

There is deliberately no retry loop here. A provider error or timeout
propagates to the caller, which fails the run; redelivery is the task
queue's job.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sentinel_core.repo_config import Tone
from sentinel_core.results import FindingCategory, ReviewMetrics, ReviewResult, summarize_usage
from sentinel_core.utils.context import DEFAULT_MAX_PATCH_BYTES, build_diff_context

if TYPE_CHECKING:
    from sentinel_core.engine import ReviewContext
    from sentinel_core.policy import ReviewPolicy

logger = logging.getLogger(__name__)

_MAX_TOKENS = 8192
_TIMEOUT_SECONDS = 420

_TONE_GUIDANCE = {
    Tone.CONSTRUCTIVE: "Be constructive: explain each problem and suggest a concrete fix.",
    Tone.DIRECT: "Be direct and concise. State the problem and the fix, nothing else.",
    Tone.EDUCATIONAL: "Be educational: explain the underlying principle so the author learns from each finding.",
    Tone.MINIMAL: "Be minimal: report only what matters, in as few words as possible.",
}


def _render_guidelines(guidelines) -> str:
    if not guidelines:
        return ""
    parts = ["## Repository Guidelines"]
    for g in guidelines:
        heading = f"### {g.path}"
        if g.description:
            heading += f": {g.description}"
        parts.append(f"{heading}\n{g.content.strip()}")
    return "\n\n".join(parts) + "\n\n"


class ResponseParseError(ValueError):
    """The model's response was not a JSON object, even after fence stripping."""

    code = "ai_response_unparsable"

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw[:500]


@dataclass(frozen=True)
class Completion:
    text: str
    usage: dict = field(default_factory=dict)
    model: str = ""


class BaseReviewer(ABC):
    PROVIDER: str = ""
    MODEL: str = ""
    MAX_TOKENS: int = _MAX_TOKENS
    TIMEOUT_SECONDS: int = _TIMEOUT_SECONDS

    model: str = ""
    max_patch_bytes: int = DEFAULT_MAX_PATCH_BYTES

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def review(self, context: ReviewContext) -> ReviewResult:
        """Review a whole pull request with a single completion call."""
        system = self._build_system_prompt(context.policy)
        user = self._build_user_prompt(context)

        started = time.monotonic()
        completion = self._call_api(system, user)
        duration_ms = int((time.monotonic() - started) * 1000)

        data = self._parse(completion.text)
        input_tokens, output_tokens = summarize_usage(completion.usage)
        pr = context.pull_request
        metrics = ReviewMetrics(
            files_changed=len(pr.files),
            lines_added=pr.lines_added,
            lines_deleted=pr.lines_deleted,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=completion.model or self.model,
            provider=self.PROVIDER,
            duration_ms=duration_ms,
        )
        result = ReviewResult.from_dict(data, metrics=metrics)
        logger.info(
            "%s reviewed %s#%d: %d finding(s), %d tokens in %dms",
            self.__class__.__name__,
            context.repository.full_name,
            pr.number,
            len(result.findings),
            metrics.tokens_used_estimated,
            duration_ms,
        )
        return result

    # ------------------------------------------------------------------ #
    # Abstract — implement in each provider                               #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str) -> Completion:
        """Make a single API call and return the raw completion.

        Must raise on failure; nothing above this method retries.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _build_system_prompt(self, policy: ReviewPolicy) -> str:
        categories = [c.value for c in FindingCategory]
        enabled = ", ".join(policy.enabled_rules) or ", ".join(categories)
        lines = [
            "You are a senior software engineer performing a pull request review.",
            "Identify real problems in the changed code. Do not comment on code that is fine.",
            "",
            "## Review Rules",
            f"- Focus on these categories: {enabled}.",
            f"- {_TONE_GUIDANCE.get(policy.tone, _TONE_GUIDANCE[Tone.CONSTRUCTIVE])}",
            f"- Only report findings of severity '{policy.comment_severity_threshold.value}' or higher.",
            f"- Report at most {policy.max_inline_comments} findings, most severe first.",
        ]
        if policy.language and policy.language != "en":
            lines.append(f"- Write all prose in the language with ISO 639-1 code '{policy.language}'.")
        if policy.focus:
            lines.append(f"- Pay particular attention to: {', '.join(policy.focus)}.")
        if policy.ignored_paths:
            lines.append(f"- Do not report findings in files matching: {', '.join(policy.ignored_paths)}.")
        if policy.sensitive_paths:
            lines.append("- Files marked [sensitive] handle security-relevant code; review them with extra care.")
        if policy.guidelines:
            lines.append("- Check the changes against the repository guidelines included with the pull request.")
        lines += [
            "",
            "## Output Format",
            "Respond with **only** a JSON object of this shape:",
            "",
            "{",
            '  "summary": {',
            '    "overview": "<2-3 sentence overview of the change and its risk>",',
            '    "verdict": "<approve|request_changes|comment>",',
            '    "risk_level": "<low|medium|high|critical>",',
            '    "strengths": ["..."],',
            '    "concerns": ["..."],',
            '    "recommendations": ["..."]',
            "  },",
            '  "findings": [',
            "    {",
            '      "severity": "<info|low|medium|high|critical>",',
            f'      "category": "<{"|".join(categories)}>",',
            '      "title": "<short title>",',
            '      "description": "<what is wrong>",',
            '      "impact": "<what happens if this ships>",',
            '      "confidence": <number between 0 and 1>,',
            '      "file_path": "<path as shown in the diff>",',
            '      "line_start": <line number in the new file>,',
            '      "line_end": <line number in the new file>,',
            '      "current_code": "<offending code, optional>",',
            '      "replacement_code": "<drop-in replacement for lines line_start..line_end, optional>",',
            '      "explanation": "<why the replacement is better, optional>",',
            '      "references": ["<links, optional>"]',
            "    }",
            "  ]",
            "}",
            "",
            'If there are no issues, return an empty "findings" list.',
            "Do not return any text outside the JSON object.",
        ]
        return "\n".join(lines)

    def _build_user_prompt(self, context: ReviewContext) -> str:
        pr = context.pull_request
        policy = context.policy
        diff = build_diff_context(
            list(pr.files),
            policy.ignored_paths,
            self.max_patch_bytes,
            included_paths=policy.included_paths,
            sensitive_paths=policy.sensitive_paths,
        )
        return f"""{_render_guidelines(context.guidelines)}## Pull Request
Repository: {context.repository.full_name}
Title: {pr.title}
Author: {pr.author or "unknown"}
Branches: {pr.head_branch} → {pr.base_branch}

### Description
{pr.body.strip() or "_No description provided._"}

## Change Stats
Files changed: {len(pr.files)} (+{pr.lines_added}/-{pr.lines_deleted})

## Changes
{diff.render()}"""

    def _parse(self, raw: str) -> dict:
        """Parse the model's raw text response into a dict.

        Raises ResponseParseError; a garbled response is never partially
        recovered.
        """
        # Strip only the outer ```json ... ``` fence, not backticks inside
        # string values.
        cleaned = re.sub(r"^```(?:json)?\s*", "", (raw or "").strip())
        cleaned = re.sub(r"\s*```$", "", cleaned.strip())
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            logger.warning("%s: response is not valid JSON: %s", self.__class__.__name__, (raw or "")[:200])
            raise ResponseParseError(f"AI response is not valid JSON: {e}", raw or "") from e
        if not isinstance(data, dict):
            raise ResponseParseError("AI response JSON root is not an object.", raw)
        return data
