"""
Rule feed normalization.

Feeds come in two shapes. Current feeds (``version >= "1.0"``) already look
like an online rule group. Legacy feeds (no version, or a lower one) map each
origin pattern to ``{"dstURL": ..., "enable": ..., "kind": ...}``.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import FeedParseError
from shared.logging import get_logger
from ..rules.models import OnlineRuleGroup
from ..rules.schema import OnlineRuleGroupDocument

CURRENT_FEED_VERSION = "1.0"

logger = get_logger("redirector.feeds.normalizer")


def is_legacy(document: Mapping[str, Any]) -> bool:
    version = document.get("version")
    # Versions compare as text, the way existing feeds were written against
    return not version or str(version) < CURRENT_FEED_VERSION


def _legacy_rules(url: str, rules: Any) -> List[Dict[str, Any]]:
    if rules is None:
        return []
    if not isinstance(rules, Mapping):
        raise FeedParseError(url, "legacy feed rules must be an object")

    converted = []
    for origin, entry in rules.items():
        if not isinstance(entry, Mapping):
            raise FeedParseError(url, f"legacy rule for {origin!r} must be an object")
        enable = entry.get("enable")
        converted.append({
            "origin": origin,
            "target": entry.get("dstURL"),
            "enable": True if enable is None else enable,
        })
    return converted


def parse_feed(body: Union[str, bytes], url: str) -> Dict[str, Any]:
    """Decode a feed body into a JSON object."""
    try:
        document = json.loads(body)
    except (ValueError, TypeError) as e:
        raise FeedParseError(url, "body is not valid JSON", {"error": str(e)}) from e
    if not isinstance(document, dict):
        raise FeedParseError(url, "top-level JSON value must be an object")
    return document


def normalize_feed(body: Union[str, bytes], url: str, now: Optional[datetime] = None) -> OnlineRuleGroup:
    """Turn a fetched feed into an enabled online rule group stamped with its URL."""
    document = parse_feed(body, url)

    legacy = is_legacy(document)
    if legacy:
        document = dict(document, rules=_legacy_rules(url, document.get("rules")))

    document.update({
        "url": url,
        "enable": True,
        "downloadAt": now or datetime.now(timezone.utc),
    })

    try:
        group_doc = OnlineRuleGroupDocument.model_validate(document)
    except PydanticValidationError as e:
        raise FeedParseError(url, "feed does not match the rule group schema", {"error": str(e)}) from e

    group = OnlineRuleGroup.from_document(group_doc)
    logger.info(
        "Feed normalized",
        url=url,
        legacy=legacy,
        rules=len(group.rules),
        malformed=sum(1 for rule in group.rules if rule.schema_error)
    )
    return group
