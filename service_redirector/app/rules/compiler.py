"""
Declarative rule compiler.

Translates a RuleStore snapshot into redirect records for a request-filtering
engine that evaluates predicates itself (regex filter plus resource-type and
method conditions, with a regex substitution as the action). Rules whose
behaviour cannot be expressed faithfully are declined, never approximated.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger
from .models import Rule, RuleStore

CUSTOM_RULE_PRIORITY = 200
ONLINE_RULE_PRIORITY = 100
DEFAULT_RESOURCE_TYPES = ("main_frame",)

# Substitutions can reference \0..\9 only
MAX_SUBSTITUTION_GROUP = 9

_CAPTURE_GROUP = re.compile(r"\(.*?\)")
_TARGET_REFERENCE = re.compile(r"\$(\d+)")

logger = get_logger("redirector.compiler")


class DeclineReason(str, Enum):
    """Why a rule produced no declarative record."""
    DISABLED = "disabled"
    MALFORMED = "malformed"
    MISSING_ORIGIN_OR_TARGET = "missing_origin_or_target"
    INVALID_ORIGIN = "invalid_origin"
    PROCESS_UNSUPPORTED = "process_unsupported"
    EXCLUDE_UNSUPPORTED = "exclude_unsupported"
    TARGET_WITHOUT_GROUPS = "target_without_groups"
    TOO_MANY_GROUPS = "too_many_groups"


class RedirectSubstitution(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    regex_substitution: str = Field(alias="regexSubstitution")


class DeclarativeAction(BaseModel):
    type: str = "redirect"
    redirect: RedirectSubstitution


class DeclarativeCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    regex_filter: str = Field(alias="regexFilter")
    resource_types: List[str] = Field(default_factory=lambda: list(DEFAULT_RESOURCE_TYPES), alias="resourceTypes")
    request_methods: Optional[List[str]] = Field(default=None, alias="requestMethods")


class DeclarativeRule(BaseModel):
    """One predicate/action record for the enforcement layer."""
    id: int
    priority: int
    action: DeclarativeAction
    condition: DeclarativeCondition

    def to_platform(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class DeclinedRule:
    source: str
    group_index: int
    rule_index: int
    reason: DeclineReason


@dataclass
class CompileResult:
    records: List[DeclarativeRule] = field(default_factory=list)
    declined: List[DeclinedRule] = field(default_factory=list)

    def decline_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for declined in self.declined:
            counts[declined.reason.value] = counts.get(declined.reason.value, 0) + 1
        return counts


@dataclass(frozen=True)
class DeclarativeUpdate:
    """Replace-all update: drop every installed id, add the compiled set."""
    remove_rule_ids: List[int]
    add_rules: List[DeclarativeRule]


def _escape_substitution(text: str) -> str:
    return text.replace("\\", "\\\\")


def _decline_reason(rule: Rule) -> Optional[DeclineReason]:
    if not rule.enable:
        return DeclineReason.DISABLED
    if rule.schema_error:
        return DeclineReason.MALFORMED
    if not rule.origin or not rule.target:
        return DeclineReason.MISSING_ORIGIN_OR_TARGET
    if rule.origin_re is None:
        return DeclineReason.INVALID_ORIGIN
    if rule.process:
        return DeclineReason.PROCESS_UNSUPPORTED
    if rule.exclude:
        return DeclineReason.EXCLUDE_UNSUPPORTED
    return None


def compile_rule(rule: Rule, rule_id: int, priority: int) -> Tuple[Optional[DeclarativeRule], Optional[DeclineReason]]:
    """Compile one rule, or return the reason it cannot be compiled."""
    reason = _decline_reason(rule)
    if reason:
        return None, reason

    uses_groups = bool(_CAPTURE_GROUP.search(rule.origin)) and "$" in rule.target
    if uses_groups:
        regex_filter = rule.origin
        substitution = _TARGET_REFERENCE.sub(r"\\\1", _escape_substitution(rule.target))
    else:
        if "$" in rule.target:
            return None, DeclineReason.TARGET_WITHOUT_GROUPS
        # Wrap origin and capture the remainder so the tail is appended to target
        tail_group = rule.origin_re.groups + 2
        if tail_group > MAX_SUBSTITUTION_GROUP:
            return None, DeclineReason.TOO_MANY_GROUPS
        regex_filter = "(" + rule.origin + ")(.*)"
        substitution = _escape_substitution(rule.target) + "\\" + str(tail_group)

    condition = DeclarativeCondition(regex_filter=regex_filter)
    if rule.types:
        condition.resource_types = list(rule.types)
    if rule.methods:
        condition.request_methods = [str(m).lower() for m in rule.methods]

    record = DeclarativeRule(
        id=rule_id,
        priority=priority,
        action=DeclarativeAction(redirect=RedirectSubstitution(regex_substitution=substitution)),
        condition=condition,
    )
    return record, None


def _candidates(store: RuleStore) -> Iterable[Tuple[str, int, int, int, Rule]]:
    for rule_index, rule in enumerate(store.custom_rules.rules):
        yield "custom", 0, rule_index, CUSTOM_RULE_PRIORITY, rule
    for group_index, group in enumerate(store.online_groups):
        if not group.enable:
            continue
        for rule_index, rule in enumerate(group.rules):
            yield "online", group_index, rule_index, ONLINE_RULE_PRIORITY, rule


def compile_store(store: RuleStore) -> CompileResult:
    """Compile a snapshot into declarative records; ids ascend from 1 in resolution order."""
    result = CompileResult()
    if not store.enable:
        return result

    next_id = 1
    for source, group_index, rule_index, priority, rule in _candidates(store):
        record, reason = compile_rule(rule, next_id, priority)
        if record is None:
            result.declined.append(DeclinedRule(source, group_index, rule_index, reason))
            logger.debug(
                "Rule not compiled",
                source=source,
                group_index=group_index,
                rule_index=rule_index,
                origin=rule.origin,
                reason=reason.value
            )
            continue
        result.records.append(record)
        next_id += 1

    logger.debug("Store compiled", records=len(result.records), declined=len(result.declined))
    return result


def build_update(installed_ids: Sequence[int], compiled: CompileResult) -> DeclarativeUpdate:
    return DeclarativeUpdate(remove_rule_ids=list(installed_ids), add_rules=list(compiled.records))
