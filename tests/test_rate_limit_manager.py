from __future__ import annotations

import json

import pytest

from bulkads.config import RateSettings
from bulkads.infrastructure.rate_limit_manager import RateBudgetTracker, parse_usage_headers


@pytest.fixture
def tracker(store, clock):
    return RateBudgetTracker(store, RateSettings(threshold_pct=80.0, window_seconds=3600, default_limit=10), clock)


def test_blocks_at_threshold(tracker, clock):
    allowed = [tracker.check_and_consume("acme", "act_1").allowed for _ in range(10)]
    assert allowed == [True] * 8 + [False] * 2

    status = tracker.check_and_consume("acme", "act_1")
    assert status.calls_used == 8
    assert status.usage_pct == 80.0
    assert status.reset_at == clock.time() + 3600


def test_window_starts_at_first_call_and_resets(tracker, clock):
    tracker.check_and_consume("acme", "act_1", 8)
    clock.advance(1800)
    assert not tracker.peek("acme", "act_1").allowed
    clock.advance(1800)
    status = tracker.check_and_consume("acme", "act_1")
    assert status.allowed
    assert status.calls_used == 1


def test_pairs_are_independent(tracker):
    tracker.check_and_consume("acme", "act_1", 8)
    assert not tracker.peek("acme", "act_1").allowed
    assert tracker.peek("acme", "act_2").allowed
    assert tracker.peek("other", "act_1").allowed


def test_peek_does_not_consume(tracker, store):
    assert tracker.peek("acme", "act_1").allowed
    assert store.get_rate_limit("acme", "act_1") is None


def test_update_from_headers(tracker, clock):
    headers = {
        "X-Business-Use-Case-Usage": json.dumps({
            "1": [{"type": "ads_management", "call_count": 85, "total_cputime": 10, "total_time": 12,
                   "estimated_time_to_regain_access": 5}],
        }),
    }
    status = tracker.update_from_headers("acme", "act_1", headers)
    assert status is not None
    assert status.usage_pct == 85.0
    assert not status.allowed
    assert status.reset_at == clock.time() + 300
    assert tracker.update_from_headers("acme", "act_1", {}) is None


def test_parse_usage_headers_takes_worst():
    snap = parse_usage_headers({
        "x-app-usage": {"call_count": 12, "total_time": 30},
        "x-ad-account-usage": json.dumps({"acc_id_util_pct": 64, "reset_time_duration": 120}),
    })
    assert snap.usage_pct == 64
    assert snap.reset_in_seconds == 120
    assert snap.source == "x-ad-account-usage"
    assert parse_usage_headers({"x-app-usage": "not json"}) is None


def test_record_throttled(tracker, clock):
    status = tracker.record_throttled("acme", "act_1", retry_after=120)
    assert not status.allowed
    assert status.reset_at == clock.time() + 120
    assert not tracker.check_and_consume("acme", "act_1").allowed
    clock.advance(121)
    assert tracker.check_and_consume("acme", "act_1").allowed
