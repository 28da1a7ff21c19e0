"""
Integration tests for the snapshot, refresh and enforcement flow.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from service_redirector.app.runtime import RedirectorRuntime
from service_redirector.app.storage.snapshot_store import LocalFileTier, SnapshotStore
from shared.config import get_config
from shared.metrics import MetricsCollector
from shared.test_helpers import FeedTransport, rule_data_factory, test_environment

FEED_URL = "https://feeds.example.com/rules.json"
LEGACY_FEED_URL = "https://feeds.example.com/legacy.json"


class TestRefreshFlow:
    """Integration tests for runtime start, refresh and restart."""

    @pytest.fixture
    def storage_path(self, tmp_path):
        return str(tmp_path / "storage.json")

    @pytest.fixture
    def config(self, storage_path):
        return get_config("redirector", 8020, **test_environment.get_mock_config(storage_path))

    @pytest.fixture
    def sync_tier(self):
        """In-memory stand-in for the Redis tier."""
        data = {}
        tier = MagicMock()
        tier.name = "sync"
        tier.get = AsyncMock(side_effect=lambda key: data.get(key))
        tier.set = AsyncMock(side_effect=lambda key, value: data.__setitem__(key, value))
        tier.data = data
        return tier

    @pytest.fixture
    def feeds(self):
        return FeedTransport({
            FEED_URL: (200, rule_data_factory.create_current_feed(rules=[
                {"origin": r"https://cdn\.example\.com/(.*)", "target": "https://mirror.example.net/$1", "enable": True}
            ])),
            LEGACY_FEED_URL: (200, rule_data_factory.create_legacy_feed()),
        })

    def _runtime(self, config, storage_path, sync_tier, feeds):
        storage = SnapshotStore(LocalFileTier(storage_path), sync_tier)
        return RedirectorRuntime(
            config,
            metrics=MetricsCollector("redirector"),
            storage=storage,
            transport=feeds.transport()
        )

    @pytest.mark.asyncio
    async def test_start_refresh_restart(self, config, storage_path, sync_tier, feeds):
        """Test that refreshed feeds are persisted, synchronized and reloaded."""
        runtime = self._runtime(config, storage_path, sync_tier, feeds)
        await runtime.start()

        # First start saves defaults locally only
        assert runtime.holder.current().store.enable is False
        sync_tier.set.assert_not_awaited()

        document = rule_data_factory.create_store_document(
            rules=rule_data_factory.create_test_rules(),
            online_urls=[
                rule_data_factory.create_online_url(FEED_URL),
                rule_data_factory.create_online_url(LEGACY_FEED_URL),
            ],
            sync=True
        )
        await runtime.replace_store(document)
        assert "storage" in sync_tier.data

        report = await runtime.refresh()

        assert report.ok
        assert sorted(report.refreshed) == [FEED_URL, LEGACY_FEED_URL]
        assert runtime.engine.resolve("https://cdn.example.com/lib.js").redirect_url == \
            "https://mirror.example.net/lib.js"
        assert runtime.holder.current().store.updated_at is not None

        # 2 compilable custom rules, 1 current feed rule, 2 legacy rules (one disabled)
        priorities = [r.priority for r in runtime.ruleset.get_rules()]
        assert priorities == [200, 200, 100, 100]
        assert [r.id for r in runtime.ruleset.get_rules()] == [1, 2, 3, 4]

        await runtime.stop()

        restarted = self._runtime(config, storage_path, sync_tier, feeds)
        await restarted.start()

        store = restarted.holder.current().store
        assert store.sync
        assert len(store.online_groups[0].rules) == 1
        assert len(store.online_groups[1].rules) == 2
        assert restarted.ruleset.get_rule_ids() == [1, 2, 3, 4]
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_sync_snapshot_wins_on_load(self, config, storage_path, sync_tier, feeds):
        """Test that another installation's synchronized edits are picked up on reload."""
        runtime = self._runtime(config, storage_path, sync_tier, feeds)
        await runtime.start()
        await runtime.replace_store(rule_data_factory.create_store_document(sync=True))

        sync_tier.data["storage"] = rule_data_factory.create_store_document(
            sync=True,
            rules=[{"origin": "http://remote.test", "target": "http://elsewhere.test", "enable": True}]
        )
        assert await runtime.reload()

        assert runtime.engine.resolve("http://remote.test/x").redirect_url == "http://elsewhere.test/x"
        assert runtime.ruleset.get_rule_ids() == [1]
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_failed_feeds_keep_previous_rules(self, config, storage_path, sync_tier):
        feeds = FeedTransport({FEED_URL: (503, "unavailable")})
        runtime = self._runtime(config, storage_path, sync_tier, feeds)
        await runtime.start()
        await runtime.replace_store(rule_data_factory.create_store_document(online_urls=[
            rule_data_factory.create_online_url(FEED_URL, rules=[
                {"origin": "http://old.test", "target": "http://kept.test", "enable": True}
            ])
        ]))

        report = await runtime.refresh()

        assert report.download_errors == [FEED_URL]
        assert runtime.engine.resolve("http://old.test/a").redirect_url == "http://kept.test/a"
        assert runtime.holder.current().store.updated_at is not None
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_interval_change_does_not_cancel_scheduled_refresh(self, storage_path, sync_tier):
        """Test that editing the interval while a scheduled refresh is fetching lets it finish."""
        overrides = dict(test_environment.get_mock_config(storage_path), scheduler_enabled=True)
        config = get_config("redirector", 8020, **overrides)
        fetching = asyncio.Event()
        release = asyncio.Event()

        async def gated_feed(request):
            fetching.set()
            await release.wait()
            return httpx.Response(200, text=json.dumps(rule_data_factory.create_current_feed()))

        runtime = RedirectorRuntime(
            config,
            metrics=MetricsCollector("redirector"),
            storage=SnapshotStore(LocalFileTier(storage_path), sync_tier),
            transport=httpx.MockTransport(gated_feed)
        )
        await runtime.start()
        document = rule_data_factory.create_store_document(
            online_urls=[rule_data_factory.create_online_url(FEED_URL)]
        )
        await runtime.replace_store(document)
        scheduler_task = runtime.scheduler._task

        # Fire the scheduled refresh right away
        runtime.scheduler.period_seconds = 0.01
        runtime.scheduler._period_changed.set()
        await asyncio.wait_for(fetching.wait(), timeout=1)

        await runtime.replace_store(dict(document, updateInterval=120))
        release.set()
        for _ in range(100):
            if runtime.last_report is not None:
                break
            await asyncio.sleep(0.01)

        assert runtime.last_report is not None
        assert runtime.last_report.refreshed == [FEED_URL]
        store = runtime.holder.current().store
        assert store.update_interval == 120
        assert len(store.online_groups[0].rules) == 1
        assert runtime.scheduler._task is scheduler_task
        assert runtime.scheduler.period_seconds == 120
        await runtime.stop()
