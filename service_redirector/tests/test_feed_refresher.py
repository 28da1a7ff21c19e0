"""
Unit tests for the feed refresher.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from service_redirector.app.feeds.refresher import FeedRefresher
from service_redirector.app.rules.engine import SnapshotHolder
from service_redirector.app.rules.models import OnlineRuleGroup, Rule, RuleGroup, RuleStore
from shared.errors import StorageError
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import FeedTransport, rule_data_factory

FEED_A = "https://feeds.example.com/a.json"
FEED_B = "https://feeds.example.com/b.json"
MANUAL_FEED = "https://feeds.example.com/manual.json"


class TestFeedRefresher:
    """Test cases for FeedRefresher."""

    @pytest.fixture
    def store(self):
        return RuleStore(
            enable=True,
            online_groups=(
                OnlineRuleGroup(url=FEED_A, enable=True, description="old a"),
                OnlineRuleGroup(url=FEED_B, enable=True, description="old b"),
                OnlineRuleGroup(url=MANUAL_FEED, enable=True, auto=False, description="manual"),
            )
        )

    @pytest.fixture
    def holder(self, store):
        return SnapshotHolder(store)

    @pytest.fixture
    def apply_store(self):
        return AsyncMock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("redirector")

    @pytest.fixture
    def retry_config(self):
        return RetryConfig(max_attempts=2, base_delay=0, jitter=False)

    def _refresher(self, holder, apply_store, transport, retry_config, metrics=None):
        return FeedRefresher(
            holder,
            apply_store,
            timeout=5.0,
            retry_config=retry_config,
            metrics=metrics,
            transport=transport,
        )

    @pytest.mark.asyncio
    async def test_refresh_replaces_fetched_groups(self, holder, apply_store, retry_config, metrics):
        """Test that every auto-updating feed is fetched and merged."""
        feeds = FeedTransport({
            FEED_A: (200, rule_data_factory.create_current_feed(description="new a")),
            FEED_B: (200, rule_data_factory.create_legacy_feed()),
        })
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config, metrics)

        report = await refresher.refresh()

        assert report.ok
        assert not report.skipped
        assert sorted(report.refreshed) == [FEED_A, FEED_B]
        assert MANUAL_FEED not in [str(r.url) for r in feeds.requests]

        apply_store.assert_awaited_once()
        new_store = apply_store.await_args.args[0]
        assert new_store.updated_at is not None
        assert [g.url for g in new_store.online_groups] == [FEED_A, FEED_B, MANUAL_FEED]
        assert new_store.online_groups[0].description == "new a"
        assert len(new_store.online_groups[1].rules) == 2
        assert new_store.online_groups[2].description == "manual"

        assert metrics.registry.get_sample_value("redirector_feed_fetches_total", {"outcome": "ok"}) == 2

    @pytest.mark.asyncio
    async def test_refresh_bypasses_caches(self, holder, apply_store, retry_config):
        feeds = FeedTransport({
            FEED_A: (200, rule_data_factory.create_current_feed()),
            FEED_B: (200, rule_data_factory.create_current_feed()),
        })
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config)

        await refresher.refresh()

        assert all(r.headers["cache-control"] == "no-cache" for r in feeds.requests)

    @pytest.mark.asyncio
    async def test_download_and_parse_errors_are_reported(self, holder, apply_store, retry_config, metrics):
        """Test that failing feeds are reported and keep their previous content."""
        feeds = FeedTransport({
            FEED_A: (500, "boom"),
            FEED_B: (200, "<html>not json</html>"),
        })
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config, metrics)

        report = await refresher.refresh()

        assert not report.ok
        assert report.download_errors == [FEED_A]
        assert report.parse_errors == [FEED_B]
        assert "HTTP 500" in report.errors[FEED_A]
        assert report.refreshed == []

        new_store = apply_store.await_args.args[0]
        assert new_store.updated_at is not None
        assert new_store.online_groups == holder.current().store.online_groups
        assert metrics.registry.get_sample_value(
            "redirector_feed_fetches_total", {"outcome": "download_error"}
        ) == 1
        assert metrics.registry.get_sample_value(
            "redirector_feed_fetches_total", {"outcome": "parse_error"}
        ) == 1

    @pytest.mark.asyncio
    async def test_failed_save_is_reported(self, holder, apply_store, retry_config, metrics):
        """Test that a refresh returns its per-feed report when the save fails."""
        feeds = FeedTransport({
            FEED_A: (200, rule_data_factory.create_current_feed()),
            FEED_B: (404, "gone"),
        })
        apply_store.side_effect = StorageError("Snapshot could not be written")
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config, metrics)

        report = await refresher.refresh()

        assert not report.ok
        assert report.apply_error == "Snapshot could not be written"
        assert report.refreshed == [FEED_A]
        assert report.download_errors == [FEED_B]
        assert report.to_dict()["apply_error"] == "Snapshot could not be written"
        assert not refresher.is_refreshing
        assert metrics.registry.get_sample_value(
            "errors_total", {"error_type": "STORAGE_ERROR", "service": "redirector"}
        ) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, holder, apply_store, retry_config):
        attempts = {FEED_A: 0, FEED_B: 0}

        def handler(request):
            url = str(request.url)
            attempts[url] += 1
            if url == FEED_A and attempts[url] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            if url == FEED_B:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, text=json.dumps(rule_data_factory.create_current_feed()))

        refresher = self._refresher(holder, apply_store, httpx.MockTransport(handler), retry_config)

        report = await refresher.refresh()

        assert report.refreshed == [FEED_A]
        assert report.download_errors == [FEED_B]
        assert attempts == {FEED_A: 2, FEED_B: 2}

    @pytest.mark.asyncio
    async def test_duplicate_urls_are_fetched_once(self, apply_store, retry_config):
        holder = SnapshotHolder(RuleStore(online_groups=(
            OnlineRuleGroup(url=FEED_A, enable=True),
            OnlineRuleGroup(url=FEED_A, enable=True),
        )))
        feeds = FeedTransport({FEED_A: (200, rule_data_factory.create_current_feed())})
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config)

        await refresher.refresh()

        assert len(feeds.requests) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_refresh(self, apply_store, retry_config):
        holder = SnapshotHolder(RuleStore(online_groups=(OnlineRuleGroup(url=FEED_A, enable=False),)))
        feeds = FeedTransport({})
        refresher = self._refresher(holder, apply_store, feeds.transport(), retry_config)

        report = await refresher.refresh()

        assert report.ok
        assert report.refreshed == []
        assert feeds.requests == []
        apply_store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_skipped(self, holder, apply_store, retry_config):
        """Test that a refresh requested while one is running does nothing."""
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return httpx.Response(200, text=json.dumps(rule_data_factory.create_current_feed()))

        refresher = self._refresher(holder, apply_store, httpx.MockTransport(handler), retry_config)

        first = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)
        assert refresher.is_refreshing

        second = await refresher.refresh()
        assert second.skipped

        release.set()
        report = await first

        assert not report.skipped
        assert not refresher.is_refreshing
        apply_store.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_merge_uses_live_store(self, holder, apply_store, retry_config):
        """Test that edits made during a refresh survive the merge."""
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return httpx.Response(200, text=json.dumps(rule_data_factory.create_current_feed()))

        refresher = self._refresher(holder, apply_store, httpx.MockTransport(handler), retry_config)

        task = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)

        edited = RuleStore(
            enable=True,
            custom_rules=RuleGroup(
                rules=(Rule(origin="http://a.test", target="http://b.test", enable=True),)
            ),
            online_groups=holder.current().store.online_groups
        )
        holder.swap(edited)
        release.set()
        await task

        new_store = apply_store.await_args.args[0]
        assert len(new_store.custom_rules.rules) == 1
        assert new_store.online_groups[0].description == "Test feed"
