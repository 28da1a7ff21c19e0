"""
Online rule feed refresh.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from shared.errors import FeedDownloadError, FeedParseError, RedirectorException
from shared.logging import get_logger, refresh_id_var
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..rules.engine import SnapshotHolder
from ..rules.models import OnlineRuleGroup, RuleStore
from .normalizer import normalize_feed


@dataclass
class RefreshReport:
    """Outcome of one refresh run."""
    refresh_id: str
    skipped: bool = False
    refreshed: List[str] = field(default_factory=list)
    download_errors: List[str] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    apply_error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.download_errors and not self.parse_errors and self.apply_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refresh_id": self.refresh_id,
            "skipped": self.skipped,
            "refreshed": self.refreshed,
            "download_errors": self.download_errors,
            "parse_errors": self.parse_errors,
            "errors": self.errors,
            "apply_error": self.apply_error,
            "duration_ms": self.duration_ms,
        }


FeedOutcome = Tuple[str, Optional[OnlineRuleGroup], Optional[RedirectorException]]


class FeedRefresher:
    """Fetches all auto-updating feeds and hands the merged store to ``apply_store``.

    Only one refresh runs at a time; a call made while another is in flight
    returns a skipped report instead of starting a second fan-out.
    """

    def __init__(
        self,
        holder: SnapshotHolder,
        apply_store: Callable[[RuleStore], Awaitable[Any]],
        timeout: float = 15.0,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.holder = holder
        self.apply_store = apply_store
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=2, base_delay=0.5, max_delay=5.0)
        self.metrics = metrics
        self.transport = transport
        self.logger = get_logger("redirector.feeds.refresher")
        self._refreshing = False

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    async def refresh(self) -> RefreshReport:
        """Refresh every auto-updating enabled feed; failures are reported per feed."""
        refresh_id = uuid.uuid4().hex[:12]
        if self._refreshing:
            self.logger.info("Refresh already in progress, skipping")
            return RefreshReport(refresh_id=refresh_id, skipped=True)

        self._refreshing = True
        token = refresh_id_var.set(refresh_id)
        start_time = time.time()
        report = RefreshReport(refresh_id=refresh_id)
        try:
            store = self.holder.current().store
            urls = list(dict.fromkeys(g.url for g in store.online_groups if g.refreshable))
            if not urls:
                self.logger.info("No feeds to refresh")
                return report

            self.logger.info("Feed refresh started", feeds=len(urls))
            now = datetime.now(timezone.utc)
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                outcomes = await asyncio.gather(*(self._refresh_feed(client, url, now) for url in urls))

            refreshed = self._collect(outcomes, report)

            # Merge into whatever is live now, not the store we started from
            current = self.holder.current().store
            if refreshed:
                new_store = current.with_online_groups(refreshed, updated_at=now)
            else:
                new_store = replace(current, updated_at=now)
            try:
                await self.apply_store(new_store)
            except RedirectorException as e:
                # The report survives a failed save
                report.apply_error = e.message
                self.logger.error("Refreshed snapshot could not be applied", code=e.code, error=e.message)
                if self.metrics:
                    self.metrics.record_error(e.code)

            self.logger.info(
                "Feed refresh finished",
                refreshed=len(report.refreshed),
                download_errors=len(report.download_errors),
                parse_errors=len(report.parse_errors),
                applied=report.apply_error is None
            )
            return report
        finally:
            report.duration_ms = round((time.time() - start_time) * 1000, 2)
            if self.metrics:
                self.metrics.observe_histogram("feed_refresh_duration_seconds", report.duration_ms / 1000)
            refresh_id_var.reset(token)
            self._refreshing = False

    def _collect(self, outcomes: List[FeedOutcome], report: RefreshReport) -> Dict[str, OnlineRuleGroup]:
        refreshed: Dict[str, OnlineRuleGroup] = {}
        for url, group, error in outcomes:
            if group is not None:
                refreshed[url] = group
                report.refreshed.append(url)
                outcome = "ok"
            elif isinstance(error, FeedParseError):
                report.parse_errors.append(url)
                report.errors[url] = error.message
                outcome = "parse_error"
            else:
                report.download_errors.append(url)
                report.errors[url] = error.message if error else "unknown error"
                outcome = "download_error"
            if self.metrics:
                self.metrics.increment_counter("feed_fetches_total", outcome=outcome)
        return refreshed

    async def _get(self, client: httpx.AsyncClient, url: str) -> str:
        response = await client.get(url, headers={"Cache-Control": "no-cache"})
        response.raise_for_status()
        return response.text

    async def fetch(self, client: httpx.AsyncClient, url: str) -> str:
        """Fetch a feed body, retrying transient transport errors."""
        get = retry_on_exception((httpx.TransportError,), self.retry_config)(self._get)
        try:
            return await get(client, url)
        except RetryError as e:
            raise FeedDownloadError(url, str(e.last_exception) or type(e.last_exception).__name__) from e
        except httpx.HTTPStatusError as e:
            raise FeedDownloadError(url, f"HTTP {e.response.status_code}", {"status_code": e.response.status_code}) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FeedDownloadError(url, str(e) or type(e).__name__) from e

    async def _refresh_feed(self, client: httpx.AsyncClient, url: str, now: datetime) -> FeedOutcome:
        try:
            body = await self.fetch(client, url)
            group = normalize_feed(body, url, now=now)
        except (FeedDownloadError, FeedParseError) as e:
            self.logger.warning("Feed refresh failed", url=url, code=e.code, error=e.message)
            return url, None, e
        except Exception as e:
            self.logger.error("Unexpected feed refresh failure", url=url, error=str(e), exc_info=True)
            return url, None, FeedDownloadError(url, str(e) or type(e).__name__)
        return url, group, None
