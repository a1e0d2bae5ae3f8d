"""Tests for the maintenance score."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, make_snapshot
from deppulse.analyzers.freshness import apply_hard_caps, category_from_score
from deppulse.analyzers.profiles import STRICT_BALANCED_PROFILE as PROFILE
from deppulse.analyzers.scorer import Scorer, calculate_score, to_scoring_input
from deppulse.models.schemas import (
    ExpectedActivityTier,
    MetricsSnapshot,
    ReleaseInfo,
    ScoreCategory,
    ScoringInput,
)


def active_input(**overrides) -> ScoringInput:
    values = dict(
        last_commit_at=NOW - timedelta(days=3),
        last_merged_pr_at=NOW - timedelta(days=6),
        last_release_at=NOW - timedelta(days=30),
        open_issues_percent=30.0,
        median_issue_resolution_days=12.0,
        stars=800,
        repository_created_at=NOW - timedelta(days=3 * 365),
        releases_last_year=4,
        release_regularity=0.8,
        commits_last_30_days=6,
        commits_last_90_days=20,
        commits_last_365_days=90,
        merged_prs_last_90_days=5,
        issues_created_last_year=15,
        open_prs_count=2,
    )
    values.update(overrides)
    return ScoringInput(**values)


def naive_iso(value: str) -> str:
    return value.removesuffix("Z").removesuffix("+00:00")


def dormant_input(days: int, **overrides) -> ScoringInput:
    last = NOW - timedelta(days=days)
    return active_input(
        last_commit_at=last,
        last_merged_pr_at=last,
        last_release_at=last,
        commits_last_30_days=0,
        commits_last_90_days=0,
        commits_last_365_days=0,
        merged_prs_last_90_days=0,
        issues_created_last_year=0,
        open_prs_count=0,
        **overrides,
    )


class TestCalculateScore:
    def test_active_repository_scores_healthy(self):
        result = calculate_score(active_input(), NOW, PROFILE)

        assert result.category == ScoreCategory.HEALTHY
        assert result.breakdown.freshness_multiplier == 1.0
        assert result.breakdown.expected_activity_tier == ExpectedActivityTier.HIGH
        assert result.breakdown.days_since_most_recent_activity == 3
        assert result.breakdown.hard_cap_applied is None
        assert result.score == result.breakdown.quality

    def test_popular_dormant_repository_is_capped(self):
        result = calculate_score(dormant_input(420, stars=3000), NOW, PROFILE)

        assert result.breakdown.expected_activity_tier == ExpectedActivityTier.HIGH
        assert result.breakdown.freshness_multiplier == pytest.approx(0.05)
        assert result.score <= 20
        assert result.category == ScoreCategory.INACTIVE

    def test_high_tier_cap_after_half_a_year(self):
        result = calculate_score(dormant_input(200, stars=3000), NOW, PROFILE)

        assert result.score <= 35

    def test_archived_repository_scores_zero(self):
        result = calculate_score(active_input(is_archived=True), NOW, PROFILE)

        assert result.score == 0
        assert result.category == ScoreCategory.INACTIVE
        assert result.breakdown.quality == 0
        assert result.breakdown.freshness_multiplier == 0.0
        # Tier and recency are still reported
        assert result.breakdown.expected_activity_tier == ExpectedActivityTier.HIGH
        assert result.breakdown.days_since_most_recent_activity == 3

    def test_no_activity_at_all(self):
        result = calculate_score(ScoringInput(), NOW, PROFILE)

        assert result.breakdown.days_since_most_recent_activity is None
        assert result.breakdown.expected_activity_tier == ExpectedActivityTier.LOW
        assert result.score <= 10
        assert result.category == ScoreCategory.INACTIVE

    def test_deterministic(self):
        data = dormant_input(150, stars=900)
        assert calculate_score(data, NOW, PROFILE) == calculate_score(data, NOW, PROFILE)

    @pytest.mark.parametrize(
        ("field", "low", "high"),
        [
            ("stars", 4999, 5000),
            ("median_issue_resolution_days", 14.0, 15.0),
            ("open_issues_percent", 39.9, 40.1),
        ],
    )
    def test_threshold_boundaries_are_continuous(self, field, low, high):
        below = calculate_score(active_input(**{field: low}), NOW, PROFILE)
        above = calculate_score(active_input(**{field: high}), NOW, PROFILE)

        assert abs(below.score - above.score) <= 1

    def test_more_inactivity_never_raises_score(self):
        previous = calculate_score(dormant_input(0, stars=800), NOW, PROFILE).score
        for days in range(1, 800, 3):
            current = calculate_score(dormant_input(days, stars=800), NOW, PROFILE).score
            assert current <= previous
            previous = current

    def test_popular_repository_only_loses_score_with_staleness(self):
        fresh = calculate_score(dormant_input(10, stars=3000), NOW, PROFILE)
        half_year = calculate_score(dormant_input(200, stars=3000), NOW, PROFILE)
        over_a_year = calculate_score(dormant_input(400, stars=3000), NOW, PROFILE)

        assert {r.breakdown.expected_activity_tier for r in (fresh, half_year, over_a_year)} == {
            ExpectedActivityTier.HIGH
        }
        assert fresh.score >= half_year.score >= over_a_year.score
        assert half_year.score <= 35
        assert over_a_year.score <= 20


class TestHardCaps:
    @pytest.mark.parametrize(
        ("raw", "days", "expected"),
        [
            (90, 180, (90, None)),
            (90, 200, (35, 35)),
            (30, 200, (30, None)),
            (90, 400, (20, 20)),
            (90, None, (20, 20)),
        ],
    )
    def test_high_tier_caps(self, raw, days, expected):
        assert apply_hard_caps(raw, ExpectedActivityTier.HIGH, days, PROFILE) == expected

    @pytest.mark.parametrize("tier", [ExpectedActivityTier.MEDIUM, ExpectedActivityTier.LOW])
    def test_other_tiers_are_never_capped(self, tier):
        assert apply_hard_caps(90, tier, 1000, PROFILE) == (90, None)

    def test_caps_never_raise_a_score(self):
        for raw in range(101):
            for days in (0, 181, 366, None):
                capped, _ = apply_hard_caps(raw, ExpectedActivityTier.HIGH, days, PROFILE)
                assert capped <= raw


class TestCategories:
    @pytest.mark.parametrize(
        ("score", "category"),
        [
            (100, ScoreCategory.HEALTHY),
            (70, ScoreCategory.HEALTHY),
            (69, ScoreCategory.MODERATE),
            (45, ScoreCategory.MODERATE),
            (44, ScoreCategory.DECLINING),
            (25, ScoreCategory.DECLINING),
            (24, ScoreCategory.INACTIVE),
            (0, ScoreCategory.INACTIVE),
        ],
    )
    def test_lower_edges_are_inclusive(self, score, category):
        assert category_from_score(score, PROFILE.category_thresholds) == category


class TestFromMetrics:
    def test_healthy_snapshot(self):
        result = Scorer().score_metrics(make_snapshot(), NOW)

        assert 80 <= result.score <= 95
        assert result.category == ScoreCategory.HEALTHY

    def test_releases_outside_last_year_are_ignored(self):
        old = ReleaseInfo(tag_name="v0.1", published_at=NOW - timedelta(days=500))
        snapshot = make_snapshot()
        snapshot = snapshot.model_copy(update={"releases": snapshot.releases + (old,)})

        scoring_input = to_scoring_input(snapshot, NOW)

        assert scoring_input.releases_last_year == 5
        assert scoring_input.release_regularity == pytest.approx(1.0)

    @pytest.mark.parametrize("field", ["commits_last_90_days", "merged_prs_last_90_days"])
    def test_missing_counters_raise(self, field):
        with pytest.raises(ValueError, match=field):
            Scorer().score_metrics(make_snapshot(**{field: None}), NOW)

    def test_scorer_uses_default_profile(self):
        assert Scorer().profile is PROFILE

    def test_naive_timestamps_are_read_as_utc(self):
        aware = make_snapshot()
        data = aware.model_dump(mode="json")
        data["last_commit_at"] = naive_iso(data["last_commit_at"])
        for release in data["releases"]:
            release["published_at"] = naive_iso(release["published_at"])

        naive = MetricsSnapshot.model_validate(data)

        assert naive.last_commit_at == aware.last_commit_at
        assert Scorer().score_metrics(naive, NOW) == Scorer().score_metrics(aware, NOW)
