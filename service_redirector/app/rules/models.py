"""
Rule data models for the URL Redirector service.

All entities are immutable values rebuilt from a snapshot document on every
load. Compiled ``origin``/``exclude`` patterns are derived when a Rule is
constructed and are never persisted.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple

from shared.logging import get_logger
from .schema import (
    DEFAULT_UPDATE_INTERVAL,
    OnlineRuleGroupDocument,
    RuleDocument,
    RuleStoreDocument,
)
from .substitution import substitute_first, substitute_groups
from .transforms import TransformError, apply_process, is_known_process

MAX_REDIRECT_STEPS = 1000

logger = get_logger("redirector.rules")


def _compile(pattern: Optional[str]) -> Tuple[Optional[Pattern], Optional[str]]:
    if not pattern:
        return None, None
    try:
        return re.compile(pattern), None
    except re.error as e:
        return None, f"{pattern!r}: {e}"


@dataclass(frozen=True)
class Rule:
    """A single match and rewrite rule."""
    description: Optional[str] = None
    origin: Optional[str] = None
    exclude: Optional[str] = None
    methods: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    target: Optional[str] = None
    process: Optional[str] = None
    enable: bool = False
    example: Optional[str] = None
    schema_error: Optional[str] = field(default=None, compare=False)

    origin_re: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)
    exclude_re: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)
    pattern_error: Optional[str] = field(default=None, init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "methods", tuple(self.methods or ()))
        object.__setattr__(self, "types", tuple(self.types or ()))

        origin_re, origin_error = _compile(self.origin)
        exclude_re, exclude_error = _compile(self.exclude)
        object.__setattr__(self, "origin_re", origin_re)
        object.__setattr__(self, "exclude_re", exclude_re)

        if self.schema_error:
            logger.warning("Malformed rule entry, rule is inert", origin=self.origin, error=self.schema_error)

        error = origin_error or exclude_error
        if error:
            object.__setattr__(self, "pattern_error", error)
            logger.warning("Rule pattern does not compile, rule is inert", error=error)
        elif self.process and not is_known_process(self.process):
            logger.debug("Unknown process, capture groups pass through unchanged", process=self.process)

    @property
    def inert(self) -> bool:
        """True when the rule can never match, whatever its ``enable`` flag says."""
        return (
            self.origin_re is None
            or self.pattern_error is not None
            or self.schema_error is not None
            or self.target is None
        )

    # Guards run in this order; the first failing one decides no-match.

    def _origin_matches(self, url: str, method: Optional[str], resource_type: Optional[str]) -> bool:
        return self.enable and not self.inert and self.origin_re.search(url) is not None

    def _method_allowed(self, url: str, method: Optional[str], resource_type: Optional[str]) -> bool:
        if not method or not self.methods:
            return True
        return method in self.methods

    def _type_allowed(self, url: str, method: Optional[str], resource_type: Optional[str]) -> bool:
        if not resource_type or not self.types:
            return True
        return resource_type in self.types

    def _not_excluded(self, url: str, method: Optional[str], resource_type: Optional[str]) -> bool:
        return self.exclude_re is None or self.exclude_re.search(url) is None

    @property
    def guards(self) -> Tuple[Callable[[str, Optional[str], Optional[str]], bool], ...]:
        return (self._origin_matches, self._method_allowed, self._type_allowed, self._not_excluded)

    def resolve(self, url: str, method: Optional[str] = None, resource_type: Optional[str] = None) -> Optional[str]:
        """Return the rewritten URL, or None when the rule does not apply."""
        for guard in self.guards:
            if not guard(url, method, resource_type):
                return None

        if self.process:
            return self._rewrite_processed(url)

        if "(" not in self.origin or "$" not in self.target:
            # Prefix replacement is stricter than the regex test above
            if url.startswith(self.origin):
                return self.target + url[len(self.origin):]
            return None

        return substitute_first(self.origin_re, url, self.target)

    def _rewrite_processed(self, url: str) -> Optional[str]:
        match = self.origin_re.search(url)
        if match is None:
            return None

        groups: List[str] = []
        for value in match.groups(default=""):
            try:
                groups.append(apply_process(self.process, value))
            except TransformError as e:
                logger.debug("Capture group transform failed", origin=self.origin, error=str(e))
                return None
        return substitute_groups(self.target, groups)

    @classmethod
    def from_document(cls, doc: RuleDocument) -> "Rule":
        return cls(
            description=doc.description,
            origin=doc.origin,
            exclude=doc.exclude,
            methods=tuple(doc.methods),
            types=tuple(doc.types),
            target=doc.target,
            process=doc.process,
            enable=doc.enable,
            example=doc.example,
            schema_error=doc.schema_error,
        )

    def to_document(self) -> RuleDocument:
        return RuleDocument(
            description=self.description,
            origin=self.origin,
            exclude=self.exclude,
            methods=list(self.methods),
            types=list(self.types),
            target=self.target,
            process=self.process,
            # Stored disabled so a malformed entry stays inert after a reload
            enable=self.enable and self.schema_error is None,
            example=self.example,
        )


@dataclass(frozen=True)
class RuleGroup:
    """Ordered collection of rules, first match wins."""
    rules: Tuple[Rule, ...] = ()
    enable: bool = True

    def __post_init__(self):
        object.__setattr__(self, "rules", tuple(self.rules))

    def first_match(
        self, url: str, method: Optional[str] = None, resource_type: Optional[str] = None
    ) -> Optional[Tuple[int, str]]:
        """Return ``(rule_index, rewritten_url)`` of the first matching rule."""
        if not self.enable or not self.rules:
            return None
        for index, rule in enumerate(self.rules):
            new_url = rule.resolve(url, method, resource_type)
            if new_url:
                return index, new_url
        return None

    def resolve(self, url: str, method: Optional[str] = None, resource_type: Optional[str] = None) -> Optional[str]:
        hit = self.first_match(url, method, resource_type)
        return hit[1] if hit else None


@dataclass(frozen=True)
class OnlineRuleGroup(RuleGroup):
    """Rule set fetched from a remote feed."""
    enable: bool = False
    url: Optional[str] = None
    description: Optional[str] = None
    auto: bool = True
    download_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def refreshable(self) -> bool:
        return bool(self.auto and self.enable and self.url)

    @classmethod
    def from_document(cls, doc: OnlineRuleGroupDocument) -> "OnlineRuleGroup":
        if doc.schema_error:
            logger.warning("Malformed rule group entry, group is disabled", url=doc.url, error=doc.schema_error)
        return cls(
            rules=tuple(Rule.from_document(r) for r in doc.rules),
            enable=doc.enable and doc.schema_error is None,
            url=doc.url,
            description=doc.description,
            auto=doc.auto,
            download_at=doc.download_at,
            updated_at=doc.updated_at,
        )

    def to_document(self) -> OnlineRuleGroupDocument:
        return OnlineRuleGroupDocument(
            description=self.description,
            url=self.url,
            enable=self.enable,
            auto=self.auto,
            rules=[r.to_document() for r in self.rules],
            download_at=self.download_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class RedirectStep:
    """One rewrite performed during resolution."""
    from_url: str
    to_url: str
    source: str
    group_index: int
    rule_index: int


@dataclass
class ResolutionTrace:
    """Outcome of resolving a URL against a whole store."""
    url: str
    outcome: str = "unmatched"
    final_url: Optional[str] = None
    steps: List[RedirectStep] = field(default_factory=list)

    @property
    def redirect_url(self) -> Optional[str]:
        return self.final_url if self.outcome == "redirected" else None

    def to_dict(self, max_steps: int = 50) -> Dict[str, Any]:
        return {
            "url": self.url,
            "outcome": self.outcome,
            "redirect_url": self.redirect_url,
            "step_count": len(self.steps),
            "steps": [
                {
                    "from": s.from_url,
                    "to": s.to_url,
                    "source": s.source,
                    "group_index": s.group_index,
                    "rule_index": s.rule_index,
                }
                for s in self.steps[:max_steps]
            ],
        }


@dataclass(frozen=True)
class RuleStore:
    """Aggregate of custom rules, online rule groups and global settings."""
    enable: bool = False
    sync: bool = False
    update_interval: int = DEFAULT_UPDATE_INTERVAL
    updated_at: Optional[datetime] = None
    custom_rules: RuleGroup = field(default_factory=RuleGroup)
    online_groups: Tuple[OnlineRuleGroup, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "online_groups", tuple(self.online_groups))

    def _step(
        self, url: str, method: Optional[str], resource_type: Optional[str]
    ) -> Optional[RedirectStep]:
        hit = self.custom_rules.first_match(url, method, resource_type)
        if hit:
            return RedirectStep(url, hit[1], "custom", 0, hit[0])
        for group_index, group in enumerate(self.online_groups):
            hit = group.first_match(url, method, resource_type)
            if hit:
                return RedirectStep(url, hit[1], "online", group_index, hit[0])
        return None

    def trace(
        self, url: str, method: Optional[str] = None, resource_type: Optional[str] = None
    ) -> ResolutionTrace:
        """Resolve ``url`` to a fixed point, recording each rewrite."""
        result = ResolutionTrace(url=url)
        if not self.enable:
            result.outcome = "disabled"
            return result

        current = url
        while len(result.steps) < MAX_REDIRECT_STEPS:
            step = self._step(current, method, resource_type)
            if step is None:
                break
            result.steps.append(step)
            current = step.to_url
        else:
            result.outcome = "cycle"
            logger.warning("Redirect loop detected", url=url, steps=len(result.steps))
            return result

        if result.steps:
            result.outcome = "redirected"
            result.final_url = current
        return result

    def resolve(self, url: str, method: Optional[str] = None, resource_type: Optional[str] = None) -> Optional[str]:
        """Return the fixed-point URL, or None when nothing (or a cycle) matched."""
        return self.trace(url, method, resource_type).redirect_url

    def all_rules(self) -> Iterable[Tuple[str, int, int, Rule]]:
        """Yield ``(source, group_index, rule_index, rule)`` in resolution order."""
        for rule_index, rule in enumerate(self.custom_rules.rules):
            yield "custom", 0, rule_index, rule
        for group_index, group in enumerate(self.online_groups):
            for rule_index, rule in enumerate(group.rules):
                yield "online", group_index, rule_index, rule

    def with_online_groups(
        self, refreshed: Mapping[str, OnlineRuleGroup], updated_at: Optional[datetime] = None
    ) -> "RuleStore":
        """Return a copy where the first group for each refreshed URL is replaced."""
        pending = dict(refreshed)
        groups = []
        for group in self.online_groups:
            if group.url in pending:
                groups.append(pending.pop(group.url))
            else:
                groups.append(group)
        return replace(self, online_groups=tuple(groups), updated_at=updated_at or self.updated_at)

    @classmethod
    def from_document(cls, doc: RuleStoreDocument) -> "RuleStore":
        return cls(
            enable=doc.enable,
            sync=doc.sync,
            update_interval=doc.update_interval,
            updated_at=doc.updated_at,
            custom_rules=RuleGroup(rules=tuple(Rule.from_document(r) for r in doc.custom_rules)),
            online_groups=tuple(OnlineRuleGroup.from_document(g) for g in doc.online_urls),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleStore":
        return cls.from_document(RuleStoreDocument.model_validate(data))

    def to_document(self) -> RuleStoreDocument:
        return RuleStoreDocument(
            enable=self.enable,
            sync=self.sync,
            update_interval=self.update_interval,
            updated_at=self.updated_at,
            online_urls=[g.to_document() for g in self.online_groups],
            custom_rules=[r.to_document() for r in self.custom_rules.rules],
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_document().model_dump(by_alias=True, mode="json")
