"""Parsing and validation of the in-repo `.sentinel/config.yaml` file.

The file is user-authored and fetched from the repository under review, so
it is validated strictly with pydantic; anything that fails validation is
reported as a ConfigError and the caller decides how to degrade.

Example:

    version: 1
    review:
      min_severity: medium
      max_findings: 10
      categories:
        documentation: true
      focus: [auth, payments]
    paths:
      ignore: ["vendor/**", "*.lock"]
    provider:
      preferred: anthropic
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from sentinel_core.results import Severity

logger = logging.getLogger(__name__)

CONFIG_PATH = ".sentinel/config.yaml"


class Tone(str, Enum):
    CONSTRUCTIVE = "constructive"
    DIRECT = "direct"
    EDUCATIONAL = "educational"
    MINIMAL = "minimal"


class AnnotationStyle(str, Enum):
    REVIEW = "review"
    COMMENT = "comment"
    CHECK = "check"


class AiProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


class ConfigError(ValueError):
    """The in-repo config is empty, not YAML, or fails schema validation."""


class TriggersConfig(BaseModel):
    target_branches: list[str] = Field(default_factory=list)
    skip_source_branches: list[str] = Field(default_factory=list)
    skip_labels: list[str] = Field(default_factory=list)
    skip_authors: list[str] = Field(default_factory=list)


class PathsConfig(BaseModel):
    ignore: list[str] = Field(default_factory=list)
    include: list[str] = Field(default_factory=list)
    sensitive: list[str] = Field(default_factory=list)


class CategoriesConfig(BaseModel):
    security: bool = True
    correctness: bool = True
    performance: bool = True
    maintainability: bool = True
    style: bool = False
    testing: bool = True
    documentation: bool = False

    def enabled(self, explicit_only: bool = False) -> list[str]:
        """Names of categories switched on, in declaration order."""
        names = [name for name in type(self).model_fields if getattr(self, name)]
        if explicit_only:
            names = [name for name in names if name in self.model_fields_set]
        return names


class ReviewConfig(BaseModel):
    min_severity: Severity = Severity.LOW
    max_findings: int = Field(25, ge=1, le=100)
    categories: CategoriesConfig = Field(default_factory=CategoriesConfig)
    tone: Tone = Tone.CONSTRUCTIVE
    language: str = Field("en", min_length=2, max_length=2)
    focus: list[str] = Field(default_factory=list, max_length=20)


class GuidelineEntry(BaseModel):
    path: str
    description: str | None = None


class AnnotationsConfig(BaseModel):
    style: AnnotationStyle = AnnotationStyle.REVIEW
    post_threshold: Severity = Severity.MEDIUM
    grouped: bool = False
    include_suggestions: bool = True


class ProviderConfig(BaseModel):
    preferred: AiProvider | None = None
    model: str | None = None
    fallback: bool = True


class SentinelConfig(BaseModel):
    version: Literal[1]
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    guidelines: list[GuidelineEntry] = Field(default_factory=list)
    annotations: AnnotationsConfig = Field(default_factory=AnnotationsConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)


@dataclass
class ConfigParseResult:
    config: SentinelConfig | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.config is not None


def parse_config(text: str | None) -> SentinelConfig:
    """Parse and validate YAML text. Raises ConfigError on any problem."""
    if text is None or not text.strip():
        raise ConfigError("Configuration file is empty.")

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping.")

    try:
        return SentinelConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e


def try_parse_config(text: str | None) -> ConfigParseResult:
    try:
        return ConfigParseResult(config=parse_config(text))
    except ConfigError as e:
        return ConfigParseResult(error=str(e))


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {item['msg']}")
    return "Invalid configuration: " + "; ".join(problems)
