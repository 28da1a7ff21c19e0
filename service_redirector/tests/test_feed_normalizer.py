"""
Unit tests for rule feed normalization.
"""

import json
from datetime import datetime, timezone

import pytest

from service_redirector.app.feeds.normalizer import is_legacy, normalize_feed, parse_feed
from shared.errors import FeedParseError
from shared.test_helpers import rule_data_factory

FEED_URL = "https://feeds.example.com/rules.json"


class TestFeedNormalizer:
    """Test cases for feed normalization."""

    @pytest.fixture
    def now(self):
        return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_current_feed(self, now):
        body = json.dumps(rule_data_factory.create_current_feed())

        group = normalize_feed(body, FEED_URL, now=now)

        assert group.url == FEED_URL
        assert group.enable
        assert group.auto
        assert group.description == "Test feed"
        assert group.download_at == now
        assert len(group.rules) == 1
        assert group.rules[0].origin == "https://feed.example.com"
        assert group.rules[0].enable

    def test_feed_cannot_disable_itself(self, now):
        body = json.dumps(rule_data_factory.create_current_feed(enable=False, url="https://elsewhere.test"))

        group = normalize_feed(body, FEED_URL, now=now)

        assert group.enable
        assert group.url == FEED_URL

    def test_legacy_feed_is_converted(self, now):
        body = json.dumps(rule_data_factory.create_legacy_feed())

        group = normalize_feed(body, FEED_URL, now=now)

        rules = {r.origin: r for r in group.rules}
        assert set(rules) == {"ajax.googleapis.com", "fonts.googleapis.com"}
        assert rules["ajax.googleapis.com"].target == "ajax.loli.net"
        assert rules["ajax.googleapis.com"].enable
        assert not rules["fonts.googleapis.com"].enable

    def test_feed_without_version_is_legacy(self, now):
        body = json.dumps({"rules": {"a.test": {"dstURL": "b.test"}}})

        group = normalize_feed(body, FEED_URL, now=now)

        assert group.rules[0].origin == "a.test"
        assert group.rules[0].target == "b.test"

    def test_unversioned_mapping_feed(self, now):
        body = json.dumps({"rules": {"http://x/": {"dstURL": "http://y/", "enable": True}}})

        group = normalize_feed(body, FEED_URL, now=now)

        assert len(group.rules) == 1
        rule = group.rules[0]
        assert (rule.origin, rule.target, rule.enable) == ("http://x/", "http://y/", True)

    @pytest.mark.parametrize("version,legacy", [
        (None, True),
        ("", True),
        ("0.9", True),
        ("1.0", False),
        ("2.1", False),
        # Compared as text
        ("1", True),
        (1.5, False),
    ])
    def test_is_legacy(self, version, legacy):
        assert is_legacy({"version": version}) is legacy

    @pytest.mark.parametrize("body", [
        "not json",
        "[1, 2, 3]",
        "\"text\"",
    ])
    def test_unparseable_bodies(self, body):
        with pytest.raises(FeedParseError) as exc_info:
            parse_feed(body, FEED_URL)

        assert exc_info.value.url == FEED_URL
        assert exc_info.value.code == "FEED_PARSE_ERROR"

    def test_legacy_rules_must_be_an_object(self):
        body = json.dumps({"version": "0.5", "rules": ["a.test"]})

        with pytest.raises(FeedParseError):
            normalize_feed(body, FEED_URL)

    def test_malformed_rule_does_not_fail_the_feed(self, now):
        body = json.dumps(rule_data_factory.create_current_feed(rules=[
            {"origin": 5, "target": "http://x.test", "enable": True},
            {"origin": "http://a.test", "target": "http://b.test", "enable": True},
        ]))

        group = normalize_feed(body, FEED_URL, now=now)

        malformed, valid = group.rules
        assert "origin" in malformed.schema_error
        assert malformed.inert
        assert valid.schema_error is None
        assert group.resolve("http://a.test/page") == "http://b.test/page"

    def test_schema_mismatch(self):
        body = json.dumps({"version": "1.0", "rules": "everything"})

        with pytest.raises(FeedParseError) as exc_info:
            normalize_feed(body, FEED_URL)

        assert "schema" in exc_info.value.message
