"""
Redirector runtime: wires the snapshot, storage, compiler, enforcement layer,
feed refresher and scheduler together.

Every change goes through storage. A save notifies the runtime, which
rebuilds its snapshot from the stored document and reinstalls the compiled
declarative rules.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.config import BaseConfig
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from .enforcement.ruleset import InMemoryDeclarativeRuleSet
from .feeds.refresher import FeedRefresher, RefreshReport
from .rules.compiler import CompileResult, build_update, compile_store
from .rules.engine import ExampleCheck, RedirectEngine, SnapshotHolder, check_examples
from .rules.models import RuleStore
from .scheduler import RefreshScheduler
from .storage.snapshot_store import LocalFileTier, RedisSyncTier, SnapshotStore


class RedirectorRuntime:
    """Owns the live snapshot and everything derived from it."""

    def __init__(
        self,
        config: BaseConfig,
        metrics: Optional[MetricsCollector] = None,
        storage: Optional[SnapshotStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("redirector.runtime")

        self.holder = SnapshotHolder(RuleStore(update_interval=config.default_update_interval))
        self.engine = RedirectEngine(self.holder, metrics)
        self.ruleset = InMemoryDeclarativeRuleSet()

        self.sync_tier: Optional[RedisSyncTier] = None
        if storage is None:
            if config.sync_redis_url:
                self.sync_tier = RedisSyncTier(config.sync_redis_url, config.sync_key_prefix)
            storage = SnapshotStore(LocalFileTier(config.storage_path), self.sync_tier)
        self.storage = storage
        self.storage.subscribe(self._on_storage_change)

        self.refresher = FeedRefresher(
            self.holder,
            self.save_store,
            timeout=config.feed_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=config.feed_retry_attempts,
                base_delay=config.feed_retry_base_delay,
                max_delay=5.0
            ),
            metrics=metrics,
            transport=transport,
        )
        self.scheduler: Optional[RefreshScheduler] = None
        if config.scheduler_enabled:
            self.scheduler = RefreshScheduler(self.refresh, config.default_update_interval)

        self.last_compile: CompileResult = CompileResult()
        self.last_report: Optional[RefreshReport] = None
        self._apply_lock = asyncio.Lock()

    async def start(self):
        """Load the stored snapshot (or persist defaults) and start refreshing."""
        if self.sync_tier:
            await self.sync_tier.start()

        store = await self.storage.load()
        if store is None:
            self.logger.info("No stored snapshot, saving defaults")
            await self.save_store(self.holder.current().store)
        else:
            await self.apply_store(store)

        if self.scheduler:
            await self.scheduler.reset(self.holder.current().store.update_interval)
            await self.scheduler.start()

        self.logger.info(
            "Redirector runtime started",
            snapshot_version=self.holder.current().version,
            declarative_rules=len(self.ruleset.get_rule_ids())
        )

    async def stop(self):
        if self.scheduler:
            await self.scheduler.stop()
        if self.sync_tier:
            await self.sync_tier.stop()
        self.logger.info("Redirector runtime stopped")

    async def _on_storage_change(self, document: Dict[str, Any]):
        await self.apply_store(SnapshotStore.to_store(document))

    async def apply_store(self, store: RuleStore) -> CompileResult:
        """Make ``store`` live and reinstall the declarative rules compiled from it."""
        async with self._apply_lock:
            snapshot = self.holder.swap(store)

            compiled = compile_store(store)
            update = build_update(self.ruleset.get_rule_ids(), compiled)
            await self.ruleset.update(update.remove_rule_ids, update.add_rules)
            self.last_compile = compiled

            if self.metrics:
                self.metrics.set_gauge("declarative_rules", len(compiled.records))
                for reason, count in compiled.decline_counts().items():
                    self.metrics.increment_counter("compile_declined_total", amount=count, reason=reason)

            if self.scheduler:
                await self.scheduler.reset(store.update_interval)

        self.logger.info(
            "Snapshot applied",
            snapshot_version=snapshot.version,
            enabled=store.enable,
            declarative_rules=len(compiled.records),
            declined=len(compiled.declined)
        )
        return compiled

    async def save_store(self, store: RuleStore):
        """Persist ``store``; the storage notification makes it live."""
        await self.storage.save(store)

    async def reload(self) -> bool:
        """Re-read the stored snapshot; returns False when nothing is stored."""
        store = await self.storage.load()
        if store is None:
            return False
        await self.apply_store(store)
        return True

    async def replace_store(self, document: Dict[str, Any]) -> RuleStore:
        """Validate a snapshot document and persist it."""
        try:
            store = RuleStore.from_dict(document)
        except PydanticValidationError as e:
            raise ValidationError("Invalid rule store document", {"error": str(e)}) from e
        await self.save_store(store)
        return self.holder.current().store

    async def refresh(self) -> RefreshReport:
        """Reload from storage, then refresh every auto-updating feed."""
        if not self.refresher.is_refreshing:
            await self.reload()
        report = await self.refresher.refresh()
        if not report.skipped:
            self.last_report = report
        return report

    @property
    def is_refreshing(self) -> bool:
        return self.refresher.is_refreshing

    def check_examples(self) -> List[ExampleCheck]:
        return check_examples(self.holder.current().store)
