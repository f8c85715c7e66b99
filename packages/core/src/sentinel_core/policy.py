"""Review policy: the merged set of knobs that govern one review.

A policy is built from three layers, later layers winning key by key:

    DEFAULT_POLICY  →  repository review_rules  →  in-repo .sentinel/config.yaml

List-valued keys are unioned rather than replaced, so a layer can add
enabled rules or ignored paths but never silently drop ones set earlier.
The resolved policy is frozen onto the Run as its policy snapshot, which is
why to_dict() must be deterministic.
"""

from __future__ import annotations

import copy
import fnmatch
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from sentinel_core.repo_config import CONFIG_PATH, AiProvider, AnnotationStyle, SentinelConfig, Tone, try_parse_config
from sentinel_core.results import Severity
from sentinel_core.utils.code import matches_any

if TYPE_CHECKING:
    from sentinel_store.models import Repository

logger = logging.getLogger(__name__)

SOURCE_DEFAULT = "default"
SOURCE_REPOSITORY = "repository"
SOURCE_FILE = "file"

DEFAULT_MAX_INLINE_COMMENTS = 25
DEFAULT_POST_THRESHOLD = Severity.MEDIUM

DEFAULT_POLICY: dict = {
    "severity_thresholds": {"comment": "low"},
    "comment_limits": {"max_inline_comments": DEFAULT_MAX_INLINE_COMMENTS},
    "enabled_rules": ["security", "correctness", "performance", "maintainability", "testing"],
    "tone": "constructive",
    "language": "en",
    "ignored_paths": [],
    "annotations": {},
    "provider": {"preferred": None, "fallback": True},
}

_KNOWN_KEYS = (
    "severity_thresholds",
    "comment_limits",
    "enabled_rules",
    "tone",
    "language",
    "focus",
    "ignored_paths",
    "included_paths",
    "sensitive_paths",
    "guidelines",
    "annotations",
    "provider",
    "config_source",
    "config_branch",
)


def _union(existing: list, extra: list) -> list:
    """Order-preserving, de-duplicated union."""
    merged = list(existing)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


def merge_review_rules(policy: dict, rules: Mapping) -> dict:
    """Overlay a repository's free-form review rules onto policy.

    Shallow: each key replaces the existing value, except that two lists
    are unioned. Unknown keys pass through verbatim.
    """
    merged = copy.deepcopy(policy)
    for key, value in rules.items():
        existing = merged.get(key)
        if isinstance(existing, list) and isinstance(value, list):
            merged[key] = _union(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_repo_config(policy: dict, config: SentinelConfig) -> dict:
    """Overlay the fields an in-repo config file explicitly sets onto policy."""
    merged = copy.deepcopy(policy)
    review = config.review
    explicit = review.model_fields_set

    if "min_severity" in explicit:
        merged.setdefault("severity_thresholds", {})["comment"] = review.min_severity.value
    if "max_findings" in explicit:
        merged.setdefault("comment_limits", {})["max_inline_comments"] = review.max_findings
    if "categories" in explicit:
        merged["enabled_rules"] = _union(
            merged.get("enabled_rules", []), review.categories.enabled(explicit_only=True)
        )
    if "tone" in explicit:
        merged["tone"] = review.tone.value
    if "language" in explicit:
        merged["language"] = review.language
    # An empty focus list leaves the key untouched (absent stays absent).
    if review.focus:
        merged["focus"] = list(review.focus)

    if config.paths.ignore:
        merged["ignored_paths"] = _union(merged.get("ignored_paths", []), config.paths.ignore)
    if config.paths.include:
        merged["included_paths"] = _union(merged.get("included_paths", []), config.paths.include)
    if config.paths.sensitive:
        merged["sensitive_paths"] = _union(merged.get("sensitive_paths", []), config.paths.sensitive)
    if config.guidelines:
        merged["guidelines"] = [g.model_dump(mode="json") for g in config.guidelines]

    if "annotations" in config.model_fields_set:
        annotations = dict(merged.get("annotations") or {})
        annotations.update(config.annotations.model_dump(mode="json", include=config.annotations.model_fields_set))
        merged["annotations"] = annotations
    if "provider" in config.model_fields_set:
        provider = dict(merged.get("provider") or {})
        provider.update(config.provider.model_dump(mode="json", include=config.provider.model_fields_set))
        merged["provider"] = provider
    return merged


@dataclass(frozen=True)
class ReviewPolicy:
    """Immutable, fully-resolved review policy."""

    severity_thresholds: Mapping[str, str] = field(default_factory=dict)
    comment_limits: Mapping[str, int] = field(default_factory=dict)
    enabled_rules: tuple[str, ...] = ()
    tone: Tone = Tone.CONSTRUCTIVE
    language: str = "en"
    focus: tuple[str, ...] | None = None  # None = key absent
    ignored_paths: tuple[str, ...] = ()
    included_paths: tuple[str, ...] = ()  # empty = every path
    sensitive_paths: tuple[str, ...] = ()
    guidelines: tuple[Mapping, ...] = ()
    annotations: Mapping = field(default_factory=dict)
    provider: Mapping = field(default_factory=dict)
    config_source: str = SOURCE_DEFAULT
    config_branch: str | None = None
    extras: Mapping = field(default_factory=dict)

    def __post_init__(self):
        for name in ("severity_thresholds", "comment_limits", "annotations", "provider", "extras"):
            object.__setattr__(self, name, MappingProxyType(copy.deepcopy(dict(getattr(self, name)))))
        object.__setattr__(self, "guidelines", tuple(MappingProxyType(dict(g)) for g in self.guidelines))

    # ------------------------------------------------------------------ #
    # Accessors                                                            #
    # ------------------------------------------------------------------ #

    @property
    def comment_severity_threshold(self) -> Severity:
        return Severity.parse(self.severity_thresholds.get("comment"))

    @property
    def max_inline_comments(self) -> int:
        value = self.comment_limits.get("max_inline_comments", DEFAULT_MAX_INLINE_COMMENTS)
        if isinstance(value, bool) or not isinstance(value, int):
            return DEFAULT_MAX_INLINE_COMMENTS
        return value

    @property
    def annotation_post_threshold(self) -> Severity:
        return Severity.parse(self.annotations.get("post_threshold"), default=DEFAULT_POST_THRESHOLD)

    @property
    def annotation_style(self) -> AnnotationStyle:
        try:
            return AnnotationStyle(self.annotations.get("style"))
        except ValueError:
            return AnnotationStyle.REVIEW

    @property
    def annotations_grouped(self) -> bool:
        return bool(self.annotations.get("grouped", False))

    @property
    def include_suggestions(self) -> bool:
        return bool(self.annotations.get("include_suggestions", True))

    @property
    def preferred_provider(self) -> AiProvider | None:
        try:
            return AiProvider(self.provider.get("preferred"))
        except ValueError:
            return None

    @property
    def provider_model(self) -> str | None:
        return self.provider.get("model") or None

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.provider.get("fallback", True))

    def should_ignore_path(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, pattern) for pattern in self.ignored_paths)

    def should_review_path(self, path: str) -> bool:
        """False for ignored paths, and for paths outside included_paths when it is set."""
        if matches_any(path, self.ignored_paths):
            return False
        return not self.included_paths or matches_any(path, self.included_paths)

    def is_sensitive_path(self, path: str) -> bool:
        return matches_any(path, self.sensitive_paths)

    # ------------------------------------------------------------------ #
    # Serialization                                                        #
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict:
        data = {
            "severity_thresholds": dict(self.severity_thresholds),
            "comment_limits": dict(self.comment_limits),
            "enabled_rules": list(self.enabled_rules),
            "tone": self.tone.value,
            "language": self.language,
            "ignored_paths": list(self.ignored_paths),
            "annotations": copy.deepcopy(dict(self.annotations)),
            "provider": copy.deepcopy(dict(self.provider)),
            "config_source": self.config_source,
        }
        for key in ("included_paths", "sensitive_paths"):
            if getattr(self, key):
                data[key] = list(getattr(self, key))
        if self.guidelines:
            data["guidelines"] = [dict(g) for g in self.guidelines]
        if self.focus is not None:
            data["focus"] = list(self.focus)
        if self.config_branch is not None:
            data["config_branch"] = self.config_branch
        for key, value in self.extras.items():
            data[key] = copy.deepcopy(value)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Mapping) -> ReviewPolicy:
        """Leniently rebuild a policy from a merged dict or a stored snapshot."""

        def mapping(key):
            value = data.get(key)
            return value if isinstance(value, Mapping) else {}

        def strings(key):
            value = data.get(key)
            return tuple(item for item in value if isinstance(item, str)) if isinstance(value, list) else ()

        def guidelines():
            value = data.get("guidelines")
            if not isinstance(value, list):
                return ()
            return tuple(g for g in value if isinstance(g, Mapping) and isinstance(g.get("path"), str))

        try:
            tone = Tone(data.get("tone"))
        except ValueError:
            tone = Tone.CONSTRUCTIVE

        language = data.get("language")
        branch = data.get("config_branch")
        return cls(
            severity_thresholds=mapping("severity_thresholds"),
            comment_limits=mapping("comment_limits"),
            enabled_rules=strings("enabled_rules"),
            tone=tone,
            language=language if isinstance(language, str) and language else "en",
            focus=strings("focus") if "focus" in data else None,
            ignored_paths=strings("ignored_paths"),
            included_paths=strings("included_paths"),
            sensitive_paths=strings("sensitive_paths"),
            guidelines=guidelines(),
            annotations=mapping("annotations"),
            provider=mapping("provider"),
            config_source=data.get("config_source") or SOURCE_DEFAULT,
            config_branch=branch if isinstance(branch, str) else None,
            extras={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )


ConfigFetcher = Callable[["Repository", str], "str | None"]


class PolicyResolver:
    """Resolves the ReviewPolicy for a repository.

    fetch_config(repository, ref) returns the raw text of the in-repo config
    file at ref, or None when the file does not exist. It is injected so the
    resolver has no GitHub dependency of its own.
    """

    def __init__(self, fetch_config: ConfigFetcher | None = None):
        self._fetch_config = fetch_config

    def resolve(self, repository: Repository, branch: str | None = None) -> ReviewPolicy:
        policy = copy.deepcopy(DEFAULT_POLICY)
        source = SOURCE_DEFAULT
        config_branch = None

        if repository.review_rules:
            policy = merge_review_rules(policy, repository.review_rules)
            source = SOURCE_REPOSITORY

        ref = branch or repository.default_branch
        config = self.load_repo_config(repository, ref)
        if config is not None:
            policy = apply_repo_config(policy, config)
            source = SOURCE_FILE
            config_branch = ref

        policy["config_source"] = source
        if config_branch is not None:
            policy["config_branch"] = config_branch
        else:
            policy.pop("config_branch", None)
        return ReviewPolicy.from_dict(policy)

    def load_repo_config(self, repository: Repository, ref: str | None = None) -> SentinelConfig | None:
        """Fetch and parse the in-repo config; None when missing or invalid.

        Never raises: a broken config file degrades to the stored settings.
        """
        if self._fetch_config is None:
            return None
        ref = ref or repository.default_branch
        try:
            text = self._fetch_config(repository, ref)
        except Exception as e:
            logger.warning("Could not fetch %s for %s@%s: %s", CONFIG_PATH, repository.full_name, ref, e)
            return None
        if text is None:
            logger.debug("No %s in %s@%s", CONFIG_PATH, repository.full_name, ref)
            return None

        result = try_parse_config(text)
        if not result.ok:
            logger.warning("Ignoring invalid %s in %s@%s: %s", CONFIG_PATH, repository.full_name, ref, result.error)
            return None
        return result.config
