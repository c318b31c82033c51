"""Tests for time decay of memory confidence."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from agents.invoice_memory.decay import days_since, decayed_confidence, parse_timestamp

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestDaysSince:
    def test_never_used_is_infinite(self):
        assert days_since(None, NOW) == math.inf
        assert days_since("", NOW) == math.inf

    def test_unparsable_timestamp_is_infinite(self):
        assert days_since("vorgestern", NOW) == math.inf

    def test_elapsed_days(self):
        last = (NOW - timedelta(days=1, hours=12)).isoformat()
        assert days_since(last, NOW) == pytest.approx(1.5)

    def test_future_timestamp_counts_as_zero(self):
        assert days_since((NOW + timedelta(days=3)).isoformat(), NOW) == 0.0

    def test_naive_timestamp_is_utc(self):
        assert parse_timestamp("2026-03-01T09:00:00") == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert days_since("2026-03-01T09:00:00", NOW) == pytest.approx(1.0)


class TestDecayedConfidence:
    def test_half_life(self):
        assert decayed_confidence(0.8, 30) == pytest.approx(0.4)
        assert decayed_confidence(0.8, 60) == pytest.approx(0.2)

    def test_custom_half_life(self):
        assert decayed_confidence(0.8, 10, half_life_days=10) == pytest.approx(0.4)

    def test_infinite_elapsed_is_zero(self):
        assert decayed_confidence(0.9, math.inf) == 0.0

    def test_no_elapsed_time_keeps_base(self):
        assert decayed_confidence(0.7, 0) == 0.7
        assert decayed_confidence(0.7, -5) == 0.7

    def test_non_finite_base_is_zero(self):
        assert decayed_confidence(float("nan"), 1) == 0.0
        assert decayed_confidence(float("inf"), 1) == 0.0

    def test_result_is_clamped(self):
        assert decayed_confidence(1.4, 0) == 1.0
        assert decayed_confidence(-0.2, 3) == 0.0

    def test_one_day_keeps_fresh_approval_above_trust_floor(self):
        assert decayed_confidence(0.7, 1) > 0.65
        assert decayed_confidence(0.7, 90) < 0.65
