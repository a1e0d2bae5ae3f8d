"""Tests for the quality sub-signals and the freshness table."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import NOW
from deppulse.analyzers.freshness import freshness_multiplier, lookup_freshness
from deppulse.analyzers.profiles import (
    STRICT_BALANCED_PROFILE as PROFILE,
    FreshnessStep,
    IssueHealthSplit,
    QualityWeights,
    build_freshness_steps,
    get_scoring_profile,
    normalize_issue_health_split,
    normalize_quality_weights,
)
from deppulse.analyzers.quality import (
    community_score,
    compute_quality,
    interpolate,
    maturity_score,
    open_ratio_score,
    regularity_multiplier,
    release_cadence_score,
    release_recency_multiplier,
    resolution_speed_score,
    round_half_up,
)
from deppulse.models.schemas import ExpectedActivityTier, ScoringInput

THRESHOLDS = PROFILE.quality_thresholds


class TestInterpolate:
    POINTS = [(0.0, 0.0), (10.0, 1.0), (20.0, 0.5)]

    @pytest.mark.parametrize(
        ("x", "expected"),
        [(-5, 0.0), (0, 0.0), (5, 0.5), (10, 1.0), (15, 0.75), (20, 0.5), (99, 0.5)],
    )
    def test_linear_between_anchors(self, x, expected):
        assert interpolate(x, self.POINTS) == pytest.approx(expected)

    def test_empty_anchors(self):
        with pytest.raises(ValueError):
            interpolate(1.0, [])


class TestSubSignals:
    def test_open_ratio(self):
        assert open_ratio_score(None, THRESHOLDS) == 0.5
        assert open_ratio_score(0, THRESHOLDS) == 1.0
        assert open_ratio_score(20, THRESHOLDS) == 1.0
        assert open_ratio_score(30, THRESHOLDS) == pytest.approx(0.85)
        assert open_ratio_score(100, THRESHOLDS) == 0.0

    def test_resolution_speed(self):
        assert resolution_speed_score(7, 10.0, THRESHOLDS) == 1.0
        assert resolution_speed_score(14, 10.0, THRESHOLDS) == pytest.approx(0.8)
        assert resolution_speed_score(120, 10.0, THRESHOLDS) == 0.0
        assert resolution_speed_score(400, 10.0, THRESHOLDS) == 0.0

    def test_unknown_resolution_depends_on_open_issues(self):
        assert resolution_speed_score(None, 35.0, THRESHOLDS) == 0.0
        assert resolution_speed_score(None, 0.0, THRESHOLDS) == 0.5
        assert resolution_speed_score(None, None, THRESHOLDS) == 0.5

    def test_community_is_log_scaled(self):
        assert community_score(0, THRESHOLDS) == pytest.approx(0.1)
        assert community_score(10, THRESHOLDS) == pytest.approx(0.3)
        assert community_score(25_000, THRESHOLDS) == pytest.approx(1.0)
        assert community_score(1_000_000, THRESHOLDS) == pytest.approx(1.0)
        # Midway between 500 and 5000 stars on a log scale
        assert community_score(round(10 ** 3.199), THRESHOLDS) == pytest.approx(0.775, abs=0.001)

    def test_maturity(self):
        assert maturity_score(None, NOW, THRESHOLDS) == 0.5
        assert maturity_score(NOW, NOW, THRESHOLDS) == pytest.approx(0.1)
        assert maturity_score(NOW - timedelta(days=10 * 365), NOW, THRESHOLDS) == 1.0
        # Creation dates in the future count as brand new
        assert maturity_score(NOW + timedelta(days=30), NOW, THRESHOLDS) == pytest.approx(0.1)

    def test_release_health_parts(self):
        assert release_cadence_score(0, THRESHOLDS) == 0.0
        assert release_cadence_score(3, THRESHOLDS) == pytest.approx(0.75)
        assert release_cadence_score(12, THRESHOLDS) == 1.0
        assert release_recency_multiplier(None, THRESHOLDS) == pytest.approx(0.3)
        assert release_recency_multiplier(0, THRESHOLDS) == 1.0
        assert release_recency_multiplier(365, THRESHOLDS) == pytest.approx(0.6)
        assert regularity_multiplier(None) == 1.0
        assert regularity_multiplier(0.0) == pytest.approx(0.7)
        assert regularity_multiplier(1.0) == pytest.approx(1.0)


class TestComputeQuality:
    def test_quality_is_bounded_and_weights_normalized(self):
        result = compute_quality(ScoringInput(), NOW, PROFILE)

        assert 0 <= result.quality <= 100
        assert sum(result.normalized_weights.values()) == pytest.approx(1.0)
        assert result.signals.activity_breadth == 0.0

    def test_perfect_input(self):
        scoring_input = ScoringInput(
            last_commit_at=NOW,
            last_merged_pr_at=NOW,
            last_release_at=NOW,
            open_issues_percent=5.0,
            median_issue_resolution_days=2.0,
            stars=100_000,
            repository_created_at=NOW - timedelta(days=3650),
            releases_last_year=12,
            release_regularity=1.0,
        )

        assert compute_quality(scoring_input, NOW, PROFILE).quality == 100

    def test_weights_only_matter_by_ratio(self):
        weights = QualityWeights(
            issue_health=3, release_health=2.5, community=1.5, maturity=1, activity_breadth=2
        )
        assert normalize_quality_weights(weights) == pytest.approx(
            normalize_quality_weights(PROFILE.quality_weights)
        )

    def test_issue_health_split_normalized(self):
        assert normalize_issue_health_split(IssueHealthSplit(open_ratio=1, resolution_speed=3)) == (
            pytest.approx(0.25),
            pytest.approx(0.75),
        )
        assert normalize_issue_health_split(IssueHealthSplit(open_ratio=0, resolution_speed=0)) == (
            0.5,
            0.5,
        )

    @pytest.mark.parametrize(("value", "expected"), [(0.5, 1), (1.5, 2), (2.5, 3), (2.4999, 2)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected


class TestFreshnessTable:
    @pytest.mark.parametrize("tier", list(ExpectedActivityTier))
    def test_steps_are_gradual_and_non_increasing(self, tier):
        steps = PROFILE.freshness_multipliers.for_tier(tier)

        assert steps[0].multiplier == 1.0
        assert math.isinf(steps[-1].max_days)
        for previous, current in zip(steps, steps[1:]):
            assert current.max_days > previous.max_days
            assert current.multiplier <= previous.multiplier
            assert previous.multiplier - current.multiplier <= 0.03

    def test_high_tier_anchors(self):
        assert freshness_multiplier(0, ExpectedActivityTier.HIGH, PROFILE) == 1.0
        assert freshness_multiplier(30, ExpectedActivityTier.HIGH, PROFILE) == 1.0
        assert freshness_multiplier(90, ExpectedActivityTier.HIGH, PROFILE) == pytest.approx(0.75)
        assert freshness_multiplier(420, ExpectedActivityTier.HIGH, PROFILE) == pytest.approx(0.05)
        assert freshness_multiplier(5000, ExpectedActivityTier.HIGH, PROFILE) == pytest.approx(0.05)

    def test_lower_tiers_tolerate_longer_gaps(self):
        for days in (60, 150, 300):
            high = freshness_multiplier(days, ExpectedActivityTier.HIGH, PROFILE)
            low = freshness_multiplier(days, ExpectedActivityTier.LOW, PROFILE)
            assert low >= high

    def test_no_activity_takes_the_floor(self):
        steps = PROFILE.freshness_multipliers.low
        assert lookup_freshness(steps, None) == steps[-1].multiplier

    def test_build_rejects_bad_anchors(self):
        with pytest.raises(ValueError):
            build_freshness_steps([])
        with pytest.raises(ValueError):
            build_freshness_steps([(30, 0.5), (60, 0.9)])
        with pytest.raises(ValueError):
            build_freshness_steps([(30, 1.0), (30, 0.5)])

    def test_build_single_anchor(self):
        assert build_freshness_steps([(10, 1.0)]) == (
            FreshnessStep(max_days=10, multiplier=1.0),
            FreshnessStep(max_days=math.inf, multiplier=1.0),
        )


class TestProfiles:
    def test_lookup_by_id(self):
        assert get_scoring_profile("strict-balanced") is PROFILE

    def test_unknown_profile(self):
        with pytest.raises(KeyError):
            get_scoring_profile("lenient")

    def test_profile_is_immutable(self):
        with pytest.raises(ValidationError):
            PROFILE.version = 99
