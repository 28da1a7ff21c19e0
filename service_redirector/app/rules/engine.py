"""
Redirect resolution engine for the URL Redirector service.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import ResolutionTrace, RuleStore


@dataclass(frozen=True)
class Snapshot:
    """A versioned, immutable view of the rule store."""
    version: int
    store: RuleStore
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SnapshotHolder:
    """Owns the live snapshot; replacement is a single reference swap."""

    def __init__(self, store: Optional[RuleStore] = None):
        self._lock = threading.Lock()
        self._snapshot = Snapshot(version=0, store=store or RuleStore())

    def current(self) -> Snapshot:
        return self._snapshot

    def swap(self, store: RuleStore) -> Snapshot:
        with self._lock:
            self._snapshot = Snapshot(version=self._snapshot.version + 1, store=store)
            return self._snapshot


@dataclass
class ExampleCheck:
    """Result of running a rule's example URL."""
    source: str
    group_index: int
    rule_index: int
    description: Optional[str]
    example: str
    rule_result: Optional[str]
    store_result: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "group_index": self.group_index,
            "rule_index": self.rule_index,
            "description": self.description,
            "example": self.example,
            "rule_result": self.rule_result,
            "store_result": self.store_result,
        }


def check_examples(store: RuleStore) -> List[ExampleCheck]:
    """Run every rule that carries an example through the rule and the whole store."""
    checks = []
    for source, group_index, rule_index, rule in store.all_rules():
        if not rule.example:
            continue
        checks.append(ExampleCheck(
            source=source,
            group_index=group_index,
            rule_index=rule_index,
            description=rule.description,
            example=rule.example,
            rule_result=rule.resolve(rule.example),
            store_result=store.resolve(rule.example),
        ))
    return checks


class RedirectEngine:
    """Resolves URLs against the live snapshot."""

    def __init__(self, holder: Optional[SnapshotHolder] = None, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("redirector.engine")
        self.holder = holder or SnapshotHolder()
        self.metrics = metrics

    def resolve(
        self,
        url: str,
        method: Optional[str] = None,
        resource_type: Optional[str] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> ResolutionTrace:
        """Trace the resolution of ``url``; never raises on rule data."""
        snapshot = snapshot or self.holder.current()
        start_time = time.time()

        trace = snapshot.store.trace(url, method, resource_type)

        if self.metrics:
            self.metrics.increment_counter("resolutions_total", outcome=trace.outcome)
            self.metrics.observe_histogram("resolution_steps", len(trace.steps))

        self.logger.debug(
            "URL resolved",
            url=url,
            outcome=trace.outcome,
            redirect_url=trace.redirect_url,
            steps=len(trace.steps),
            snapshot_version=snapshot.version,
            evaluation_time_ms=round((time.time() - start_time) * 1000, 3)
        )
        return trace

    def get_engine_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        snapshot = self.holder.current()
        store = snapshot.store
        rules = [rule for _, _, _, rule in store.all_rules()]
        return {
            "snapshot_version": snapshot.version,
            "loaded_at": snapshot.loaded_at.isoformat(),
            "enabled": store.enable,
            "custom_rules": len(store.custom_rules.rules),
            "online_groups": len(store.online_groups),
            "total_rules": len(rules),
            "enabled_rules": len([r for r in rules if r.enable]),
            "inert_rules": len([r for r in rules if r.inert]),
        }
