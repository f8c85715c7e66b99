"""Review result types and the normalization rules applied to AI output.

The model's JSON is untrusted: every field goes through a total mapping
with an explicit fallback, so a misspelled severity or an out-of-range
confidence never reaches the database.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field
from enum import Enum


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value, default: Severity | None = None) -> Severity:
        """Map any value onto a Severity; unknown values fall back to default (info)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return default if default is not None else cls.INFO


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class FindingCategory(str, Enum):
    SECURITY = "security"
    CORRECTNESS = "correctness"
    RELIABILITY = "reliability"
    PERFORMANCE = "performance"
    MAINTAINABILITY = "maintainability"
    TESTING = "testing"
    DOCUMENTATION = "documentation"

    @classmethod
    def parse(cls, value) -> FindingCategory:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.MAINTAINABILITY


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value) -> RiskLevel:
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.LOW


class Verdict(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    @classmethod
    def parse(cls, value) -> Verdict:
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.COMMENT


DEFAULT_OVERVIEW = "Review completed."
DEFAULT_CONFIDENCE = 0.5


def clamp_confidence(value) -> float:
    """Clamp to [0.0, 1.0]; anything non-numeric becomes DEFAULT_CONFIDENCE."""
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return DEFAULT_CONFIDENCE
    if not isinstance(value, (int, float)) or math.isnan(value):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def _optional_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _optional_str(value) -> str | None:
    return value if isinstance(value, str) and value != "" else None


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


@dataclass(frozen=True)
class ReviewFinding:
    severity: Severity
    category: FindingCategory
    title: str
    description: str
    impact: str = ""
    confidence: float = DEFAULT_CONFIDENCE
    file_path: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    current_code: str | None = None
    replacement_code: str | None = None
    explanation: str | None = None
    references: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data) -> ReviewFinding | None:
        """Normalize one raw finding; returns None when title or description is unusable."""
        if not isinstance(data, dict):
            return None
        title = data.get("title")
        description = data.get("description")
        if not isinstance(title, str) or not title.strip():
            return None
        if not isinstance(description, str):
            return None

        impact = data.get("impact")
        return cls(
            severity=Severity.parse(data.get("severity")),
            category=FindingCategory.parse(data.get("category")),
            title=title.strip(),
            description=description,
            impact=impact if isinstance(impact, str) else "",
            confidence=clamp_confidence(data.get("confidence")),
            file_path=_optional_str(data.get("file_path")),
            line_start=_optional_int(data.get("line_start")),
            line_end=_optional_int(data.get("line_end")),
            current_code=_optional_str(data.get("current_code")),
            replacement_code=_optional_str(data.get("replacement_code")),
            explanation=_optional_str(data.get("explanation")),
            references=tuple(_str_list(data.get("references"))),
        )

    def to_dict(self) -> dict:
        data = {
            "severity": self.severity.value,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "confidence": self.confidence,
        }
        optional = {
            "file_path": self.file_path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "current_code": self.current_code,
            "replacement_code": self.replacement_code,
            "explanation": self.explanation,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.references:
            data["references"] = list(self.references)
        return data

    @property
    def finding_hash(self) -> str:
        """Stable identity of a finding within a run: severity, category, title and location."""
        key = "|".join(
            [
                self.severity.value,
                self.category.value,
                self.title,
                self.file_path or "",
                str(self.line_start) if self.line_start is not None else "",
            ]
        )
        return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ReviewSummary:
    overview: str = DEFAULT_OVERVIEW
    verdict: Verdict = Verdict.COMMENT
    risk_level: RiskLevel = RiskLevel.LOW
    strengths: tuple[str, ...] = ()
    concerns: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data) -> ReviewSummary:
        if not isinstance(data, dict):
            return cls()
        overview = data.get("overview")
        return cls(
            overview=overview if isinstance(overview, str) and overview.strip() else DEFAULT_OVERVIEW,
            verdict=Verdict.parse(data.get("verdict")),
            risk_level=RiskLevel.parse(data.get("risk_level")),
            strengths=tuple(_str_list(data.get("strengths"))),
            concerns=tuple(_str_list(data.get("concerns"))),
            recommendations=tuple(_str_list(data.get("recommendations"))),
        )

    def to_dict(self) -> dict:
        return {
            "overview": self.overview,
            "verdict": self.verdict.value,
            "risk_level": self.risk_level.value,
            "strengths": list(self.strengths),
            "concerns": list(self.concerns),
            "recommendations": list(self.recommendations),
        }


# Provider usage payloads name their counters differently; both sides are
# summed so cached prompt tokens are counted as input.
_INPUT_USAGE_KEYS = ("input_tokens", "prompt_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")
_OUTPUT_USAGE_KEYS = ("output_tokens", "completion_tokens")


def summarize_usage(usage) -> tuple[int, int]:
    """Return (input_tokens, output_tokens) from a provider's raw usage payload."""
    if not isinstance(usage, dict):
        return 0, 0

    def total(keys):
        values = [usage.get(k) for k in keys]
        return sum(v for v in values if isinstance(v, int) and not isinstance(v, bool))

    return total(_INPUT_USAGE_KEYS), total(_OUTPUT_USAGE_KEYS)


@dataclass(frozen=True)
class ReviewMetrics:
    files_changed: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    provider: str = ""
    duration_ms: int = 0

    @property
    def tokens_used_estimated(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, data) -> ReviewMetrics:
        if not isinstance(data, dict):
            return cls()
        return cls(
            files_changed=_optional_int(data.get("files_changed")) or 0,
            lines_added=_optional_int(data.get("lines_added")) or 0,
            lines_deleted=_optional_int(data.get("lines_deleted")) or 0,
            input_tokens=_optional_int(data.get("input_tokens")) or 0,
            output_tokens=_optional_int(data.get("output_tokens")) or 0,
            model=data.get("model") or "",
            provider=data.get("provider") or "",
            duration_ms=_optional_int(data.get("duration_ms")) or 0,
        )

    def to_dict(self) -> dict:
        return {
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_deleted": self.lines_deleted,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "tokens_used_estimated": self.tokens_used_estimated,
            "model": self.model,
            "provider": self.provider,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class ReviewResult:
    summary: ReviewSummary = field(default_factory=ReviewSummary)
    findings: tuple[ReviewFinding, ...] = ()
    metrics: ReviewMetrics = field(default_factory=ReviewMetrics)

    @classmethod
    def from_dict(cls, data: dict, metrics: ReviewMetrics | None = None) -> ReviewResult:
        """Build a result from parsed model output (or a previous to_dict()).

        Malformed findings are dropped rather than failing the whole review.
        """
        raw_findings = data.get("findings")
        findings = []
        if isinstance(raw_findings, list):
            for raw in raw_findings:
                finding = ReviewFinding.from_dict(raw)
                if finding is not None:
                    findings.append(finding)
        if metrics is None:
            metrics = ReviewMetrics.from_dict(data.get("metrics"))
        return cls(
            summary=ReviewSummary.from_dict(data.get("summary")),
            findings=tuple(findings),
            metrics=metrics,
        )

    def to_dict(self) -> dict:
        return {
            "summary": self.summary.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "metrics": self.metrics.to_dict(),
        }
