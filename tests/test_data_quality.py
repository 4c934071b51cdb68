"""Tests for data quality scoring"""

from datetime import datetime, timedelta, timezone

import pytest

from rwe_governance.database.models import (
    DataQualityScore,
    QualityDimensions,
    QualityMetrics,
    QualityTier,
    SignalFrequency,
)
from rwe_governance.exceptions import ValidationError
from rwe_governance.research.data_quality import (
    DataQualityScorer,
    aggregate_metrics,
    calculate_quality_score,
    meets_quality_threshold,
    round_half_up,
    timeliness_score,
)

MIDNIGHT = datetime(2024, 5, 1, tzinfo=timezone.utc)


def regular_series(count, gap_hours=12.0, value=5.0, start=MIDNIGHT):
    return [{"timestamp": start + timedelta(hours=gap_hours * i), "value": value} for i in range(count)]


def make_score(overall, completeness, continuity, total_signals, frequency=SignalFrequency.MEDIUM):
    return DataQualityScore(
        participant_id="P-TEST",
        overall_score=overall,
        dimensions=QualityDimensions(completeness=completeness, continuity=continuity),
        metrics=QualityMetrics(total_signals=total_signals, signal_frequency=frequency),
        calculated_at=MIDNIGHT,
    )


class TestQualityScore:
    """Test the five-dimension quality score"""

    def test_regular_series(self):
        """Test a twice-daily constant series scores on every dimension"""
        points = regular_series(60)
        now = points[-1]["timestamp"] + timedelta(hours=1)

        score = calculate_quality_score("P-TEST", points, now=now, expected_daily_signals=2.0)

        assert score.metrics.expected_signals == 59
        assert score.dimensions.completeness == 100
        assert score.dimensions.consistency == 100
        assert score.dimensions.timeliness == 100
        assert score.dimensions.continuity == 93
        assert score.dimensions.stability == 100
        assert score.overall_score == 99
        assert score.metrics.missing_days == 0
        assert score.metrics.average_gap_hours == 12.0
        assert score.metrics.longest_gap_hours == 12.0
        assert score.metrics.signal_frequency == SignalFrequency.HIGH

    def test_input_order_does_not_matter(self):
        """Test points are sorted before scoring"""
        points = regular_series(20)
        now = points[-1]["timestamp"]

        forward = calculate_quality_score("P-TEST", points, now=now)
        backward = calculate_quality_score("P-TEST", list(reversed(points)), now=now)

        assert forward == backward

    def test_empty_series(self):
        """Test an empty series scores zero"""
        score = calculate_quality_score("P-TEST", [], now=MIDNIGHT)

        assert score.overall_score == 0
        assert score.dimensions == QualityDimensions()
        assert score.metrics.total_signals == 0
        assert score.metrics.signal_frequency == SignalFrequency.LOW

    def test_duplicates_counted(self):
        """Test consecutive points inside the window are duplicates"""
        points = regular_series(10)
        points.append({"timestamp": points[3]["timestamp"] + timedelta(seconds=30), "value": 5.0})

        score = calculate_quality_score("P-TEST", points, now=points[-2]["timestamp"])

        assert score.metrics.duplicate_count == 1
        assert score.dimensions.consistency == round_half_up((1 - 5 / 11) * 100)

    def test_outliers_counted(self):
        """Test values beyond three standard deviations are outliers"""
        points = regular_series(21, value=10.0)
        points[10]["value"] = 1000.0

        score = calculate_quality_score("P-TEST", points, now=points[-1]["timestamp"])

        assert score.metrics.outlier_count == 1

    def test_constant_values_have_no_outliers(self):
        """Test a zero-variance series reports no outliers"""
        score = calculate_quality_score("P-TEST", regular_series(10), now=MIDNIGHT)

        assert score.metrics.outlier_count == 0

    def test_irregular_gaps_reduce_stability(self):
        """Test gaps alternating around the expected gap lower stability"""
        points, t = [], MIDNIGHT
        for i in range(21):
            points.append({"timestamp": t, "value": 5.0})
            t += timedelta(hours=6 if i % 2 == 0 else 18)

        score = calculate_quality_score("P-TEST", points, now=points[-1]["timestamp"], expected_daily_signals=2.0)

        assert score.dimensions.stability == 88

    def test_long_gap_reduces_continuity(self):
        """Test a gap of a week or more bottoms out continuity"""
        points = regular_series(4) + regular_series(4, start=MIDNIGHT + timedelta(days=12))

        score = calculate_quality_score("P-TEST", points, now=points[-1]["timestamp"])

        assert score.dimensions.continuity == 0
        assert score.metrics.missing_days > 0

    def test_rejects_non_positive_rate(self):
        """Test expected_daily_signals must be positive"""
        with pytest.raises(ValidationError):
            calculate_quality_score("P-TEST", regular_series(3), now=MIDNIGHT, expected_daily_signals=0)

    @pytest.mark.parametrize("days,expected", [
        (0.5, 100),
        (3, 80),
        (10, 50),
        (45, 30),
        (120, 10),
    ])
    def test_timeliness(self, days, expected):
        """Test recency buckets"""
        assert timeliness_score(days) == expected

    @pytest.mark.parametrize("value,expected", [(0.5, 1), (1.49, 1), (2.5, 3), (98.6, 99)])
    def test_round_half_up(self, value, expected):
        """Test halves round away from zero"""
        assert round_half_up(value) == expected


class TestQualityThresholds:
    """Test research tier thresholds"""

    def test_high_overall_with_poor_continuity_fails_recommended(self):
        """Test every floor must clear, not just the overall score"""
        score = make_score(overall=90, completeness=60, continuity=20, total_signals=100)

        assert meets_quality_threshold(score, QualityTier.MINIMUM)
        assert not meets_quality_threshold(score, QualityTier.RECOMMENDED)

    def test_signal_count_floor(self):
        """Test too few signals fail the tier"""
        score = make_score(overall=95, completeness=95, continuity=95, total_signals=60)

        assert meets_quality_threshold(score, "recommended")
        assert not meets_quality_threshold(score, QualityTier.HIGH)

    def test_recommended_tier_across_a_cohort(self):
        """Test scores 90 and 60 pass recommended only when every floor clears"""
        cohort = [
            make_score(overall=90, completeness=85, continuity=80, total_signals=120),
            make_score(overall=60, completeness=50, continuity=50, total_signals=30),
            make_score(overall=20, completeness=90, continuity=90, total_signals=200),
        ]

        assert [meets_quality_threshold(s, QualityTier.RECOMMENDED) for s in cohort] == [True, True, False]

        thin = make_score(overall=60, completeness=50, continuity=50, total_signals=29)
        patchy = make_score(overall=60, completeness=50, continuity=49, total_signals=30)
        assert not meets_quality_threshold(thin, QualityTier.RECOMMENDED)
        assert not meets_quality_threshold(patchy, QualityTier.RECOMMENDED)


class TestAggregateMetrics:
    """Test quality score aggregation"""

    def test_aggregate(self):
        """Test distribution buckets and averages"""
        scores = [
            make_score(85, 90, 80, 100, SignalFrequency.HIGH),
            make_score(60, 70, 60, 50),
            make_score(30, 20, 30, 10, SignalFrequency.LOW),
        ]

        summary = aggregate_metrics(scores)

        assert summary["count"] == 3
        assert summary["average_overall_score"] == 58
        assert summary["score_distribution"] == {"high": 1, "medium": 1, "low": 1}
        assert summary["average_dimensions"]["completeness"] == 60
        assert summary["frequency_distribution"] == {"high": 1, "medium": 1, "low": 1}

    def test_aggregate_empty(self):
        """Test no scores aggregate to zeros"""
        summary = aggregate_metrics([])

        assert summary["count"] == 0
        assert summary["average_overall_score"] == 0


class TestDataQualityScorer:
    """Test DataQualityScorer class"""

    def test_calculate_stores_score(self, clock):
        """Test the latest score replaces the previous one"""
        scorer = DataQualityScorer(clock=clock)
        points = regular_series(10, start=clock() - timedelta(days=5))

        first = scorer.calculate("P-TEST", points[:3])
        second = scorer.calculate("P-TEST", points)

        assert first.metrics.total_signals == 3
        assert scorer.get_score("P-TEST") == second
        assert second.calculated_at == clock()
        assert scorer.get_scores(["P-TEST", "P-OTHER"]) == {"P-TEST": second}

    def test_configured_windows(self, clock):
        """Test the duplicate window comes from the scorer"""
        scorer = DataQualityScorer(clock=clock, duplicate_window_seconds=7200)
        points = regular_series(5, gap_hours=1.0, start=clock() - timedelta(hours=5))

        assert scorer.calculate("P-TEST", points).metrics.duplicate_count == 4
