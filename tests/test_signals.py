"""Tests for the secondary scoring measures."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW
from deppulse.analyzers.profiles import STRICT_BALANCED_PROFILE as PROFILE
from deppulse.analyzers.signals import (
    activity_breadth,
    count_active_channels,
    days_since,
    days_since_most_recent_activity,
    expected_activity_tier,
    most_recent_activity_date,
    release_regularity,
)
from deppulse.models.schemas import ExpectedActivityTier, ScoringInput


def test_most_recent_activity_picks_latest():
    scoring_input = ScoringInput(
        last_commit_at=NOW - timedelta(days=40),
        last_merged_pr_at=NOW - timedelta(days=3),
        last_release_at=None,
    )

    assert most_recent_activity_date(scoring_input) == NOW - timedelta(days=3)
    assert days_since_most_recent_activity(scoring_input, NOW) == 3


def test_no_activity_dates():
    assert most_recent_activity_date(ScoringInput()) is None
    assert days_since_most_recent_activity(ScoringInput(), NOW) is None


def test_days_since_floors():
    assert days_since(NOW - timedelta(days=1, hours=23), NOW) == 1
    assert days_since(NOW, NOW) == 0
    assert days_since(None, NOW) is None


def test_active_channels_use_last_year():
    scoring_input = ScoringInput(
        last_commit_at=NOW - timedelta(days=10),
        last_merged_pr_at=NOW - timedelta(days=364),
        last_release_at=NOW - timedelta(days=365),
    )

    assert count_active_channels(scoring_input, NOW) == 2
    assert activity_breadth(scoring_input, NOW, (0, 0.35, 0.7, 1)) == 0.7


def test_activity_breadth_needs_four_entries():
    with pytest.raises(ValueError):
        activity_breadth(ScoringInput(), NOW, (0, 0.5, 1))


class TestExpectedActivityTier:
    def test_quiet_small_repository_is_low(self):
        assert expected_activity_tier(ScoringInput(), PROFILE) == ExpectedActivityTier.LOW

    def test_stars_alone_qualify(self):
        assert expected_activity_tier(ScoringInput(stars=500), PROFILE) == ExpectedActivityTier.MEDIUM
        assert expected_activity_tier(ScoringInput(stars=3000), PROFILE) == ExpectedActivityTier.HIGH

    @pytest.mark.parametrize(
        "criterion",
        [
            {"commits_last_90_days": 15},
            {"merged_prs_last_90_days": 8},
            {"issues_created_last_year": 36},
            {"open_prs_count": 12},
        ],
    )
    def test_any_high_criterion_is_enough(self, criterion):
        assert expected_activity_tier(ScoringInput(**criterion), PROFILE) == ExpectedActivityTier.HIGH

    def test_weighted_commit_ratio(self):
        # 12 commits in 90 days misses the high threshold on its own, but
        # the 30 and 365 day windows carry it over
        scoring_input = ScoringInput(
            commits_last_30_days=8, commits_last_90_days=12, commits_last_365_days=70
        )
        assert expected_activity_tier(scoring_input, PROFILE) == ExpectedActivityTier.HIGH

    def test_weighted_ratio_needs_all_windows(self):
        scoring_input = ScoringInput(commits_last_30_days=8, commits_last_90_days=12)
        assert expected_activity_tier(scoring_input, PROFILE) == ExpectedActivityTier.MEDIUM


class TestReleaseRegularity:
    def test_needs_three_releases(self):
        assert release_regularity([NOW, NOW - timedelta(days=30)]) is None

    def test_evenly_spaced(self):
        dates = [NOW - timedelta(days=30 * i) for i in range(6)]
        assert release_regularity(dates) == pytest.approx(1.0)

    def test_bursty_releases_score_lower(self):
        even = [NOW - timedelta(days=60 * i) for i in range(5)]
        bursty = [NOW, NOW - timedelta(days=1), NOW - timedelta(days=2), NOW - timedelta(days=240)]

        assert 0 <= release_regularity(bursty) < release_regularity(even)

    def test_same_day_releases(self):
        assert release_regularity([NOW, NOW, NOW]) == 0.0
