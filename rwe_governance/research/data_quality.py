"""Data quality scoring of participant signal series"""

import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

import numpy as np
import structlog

from rwe_governance.clock import Clock, SECONDS_PER_DAY, utcnow
from rwe_governance.config import settings
from rwe_governance.database.models import (
    DataQualityScore,
    QualityDimensions,
    QualityMetrics,
    QualityTier,
    SignalFrequency,
    SignalPoint,
)
from rwe_governance.database.repositories import QualityScoreRepository
from rwe_governance.exceptions import ValidationError

logger = structlog.get_logger(__name__)


DIMENSION_WEIGHTS = {
    "completeness": 0.25,
    "consistency": 0.20,
    "timeliness": 0.20,
    "continuity": 0.20,
    "stability": 0.15,
}

# Longest gap at which continuity bottoms out
CONTINUITY_WINDOW_HOURS = 7 * 24

QUALITY_THRESHOLDS = {
    QualityTier.MINIMUM: {"overall_score": 30, "completeness": 20, "continuity": 20, "min_signals": 7},
    QualityTier.RECOMMENDED: {"overall_score": 60, "completeness": 50, "continuity": 50, "min_signals": 30},
    QualityTier.HIGH: {"overall_score": 80, "completeness": 70, "continuity": 70, "min_signals": 90},
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def timeliness_score(days_since_last: float) -> int:
    if days_since_last < 1:
        return 100
    if days_since_last < 7:
        return 80
    if days_since_last < 30:
        return 50
    if days_since_last < 90:
        return 30
    return 10


def classify_frequency(signals_per_day: float) -> SignalFrequency:
    if signals_per_day >= 1.5:
        return SignalFrequency.HIGH
    if signals_per_day >= 0.5:
        return SignalFrequency.MEDIUM
    return SignalFrequency.LOW


def empty_score(participant_id: str, calculated_at: datetime) -> DataQualityScore:
    return DataQualityScore(
        participant_id=participant_id,
        overall_score=0,
        dimensions=QualityDimensions(),
        metrics=QualityMetrics(),
        calculated_at=calculated_at,
    )


def calculate_quality_score(
    participant_id: str,
    points: Iterable[Union[SignalPoint, dict]],
    now: datetime,
    expected_daily_signals: float = 2.0,
    duplicate_window_seconds: float = 60.0,
    outlier_sigma: float = 3.0,
) -> DataQualityScore:
    """
    Score a signal series on five dimensions

    Args:
        participant_id: Participant the series belongs to
        points: Timestamped values, in any order
        now: Reference time for timeliness
        expected_daily_signals: Expected signals per day
        duplicate_window_seconds: Consecutive points closer than this are duplicates
        outlier_sigma: Standard deviations beyond which a value is an outlier

    Returns:
        DataQualityScore; an empty series scores zero everywhere
    """
    if expected_daily_signals <= 0:
        raise ValidationError(
            "expected_daily_signals must be positive",
            details={"expected_daily_signals": expected_daily_signals},
        )

    series = sorted(
        (p if isinstance(p, SignalPoint) else SignalPoint.model_validate(p) for p in points),
        key=lambda p: p.timestamp,
    )
    if not series:
        return empty_score(participant_id, now)

    seconds = np.array([p.timestamp.timestamp() for p in series], dtype=float)
    values = np.array([p.value for p in series], dtype=float)
    observed = len(series)

    days_between = max(1.0, (seconds[-1] - seconds[0]) / SECONDS_PER_DAY)
    expected_signals = max(1, round_half_up(days_between * expected_daily_signals))

    days_with_data = np.unique(np.floor(seconds / SECONDS_PER_DAY)).size
    missing_days = max(0, math.ceil(days_between) - days_with_data)

    deltas = np.diff(seconds)
    gaps_hours = deltas / 3600.0
    average_gap = float(gaps_hours.mean()) if gaps_hours.size else 0.0
    longest_gap = float(gaps_hours.max()) if gaps_hours.size else 0.0

    duplicate_count = int(np.count_nonzero(deltas < duplicate_window_seconds))
    std = float(values.std())
    if std > 1e-12:
        outlier_count = int(np.count_nonzero(np.abs(values - values.mean()) > outlier_sigma * std))
    else:
        outlier_count = 0

    completeness = min(100, round_half_up(observed / expected_signals * 100))

    anomaly_rate = (duplicate_count + outlier_count) / observed
    consistency = round_half_up((1 - min(1.0, anomaly_rate * 5)) * 100)

    days_since_last = (now.timestamp() - seconds[-1]) / SECONDS_PER_DAY
    timeliness = timeliness_score(days_since_last)

    continuity = round_half_up((1 - min(1.0, longest_gap / CONTINUITY_WINDOW_HOURS)) * 100)

    expected_gap = 24.0 / expected_daily_signals
    gap_variance = float(np.sum((gaps_hours - expected_gap) ** 2)) / max(1, gaps_hours.size)
    stability = round_half_up(max(0.0, 100 - math.sqrt(gap_variance) * 2))

    dimensions = QualityDimensions(
        completeness=completeness,
        consistency=consistency,
        timeliness=timeliness,
        continuity=continuity,
        stability=stability,
    )
    overall = round_half_up(sum(getattr(dimensions, name) * w for name, w in DIMENSION_WEIGHTS.items()))

    return DataQualityScore(
        participant_id=participant_id,
        overall_score=overall,
        dimensions=dimensions,
        metrics=QualityMetrics(
            total_signals=observed,
            expected_signals=expected_signals,
            missing_days=missing_days,
            duplicate_count=duplicate_count,
            outlier_count=outlier_count,
            average_gap_hours=round_half_up(average_gap * 10) / 10,
            longest_gap_hours=round_half_up(longest_gap * 10) / 10,
            signal_frequency=classify_frequency(observed / days_between),
        ),
        calculated_at=now,
    )


def meets_quality_threshold(score: DataQualityScore, tier: Union[QualityTier, str]) -> bool:
    """Overall score, completeness, continuity and signal count all clear the tier's floor"""
    floor = QUALITY_THRESHOLDS[QualityTier(tier)]
    return (
        score.overall_score >= floor["overall_score"]
        and score.dimensions.completeness >= floor["completeness"]
        and score.dimensions.continuity >= floor["continuity"]
        and score.metrics.total_signals >= floor["min_signals"]
    )


def aggregate_metrics(scores: List[DataQualityScore]) -> Dict[str, object]:
    """Summary of many quality scores"""
    dimension_names = list(DIMENSION_WEIGHTS)
    if not scores:
        return {
            "count": 0,
            "average_overall_score": 0,
            "score_distribution": {"high": 0, "medium": 0, "low": 0},
            "average_dimensions": {name: 0 for name in dimension_names},
            "frequency_distribution": {f.value: 0 for f in SignalFrequency},
        }

    overall = np.array([s.overall_score for s in scores], dtype=float)
    distribution = {
        "high": int(np.count_nonzero(overall >= 80)),
        "medium": int(np.count_nonzero((overall >= 50) & (overall < 80))),
        "low": int(np.count_nonzero(overall < 50)),
    }
    frequency = {f.value: 0 for f in SignalFrequency}
    for score in scores:
        frequency[score.metrics.signal_frequency.value] += 1

    return {
        "count": len(scores),
        "average_overall_score": round_half_up(float(overall.mean())),
        "score_distribution": distribution,
        "average_dimensions": {
            name: round_half_up(float(np.mean([getattr(s.dimensions, name) for s in scores])))
            for name in dimension_names
        },
        "frequency_distribution": frequency,
    }


class DataQualityScorer:
    """Computes and stores participant data quality scores"""

    def __init__(
        self,
        repository: Optional[QualityScoreRepository] = None,
        clock: Clock = utcnow,
        duplicate_window_seconds: Optional[float] = None,
        outlier_sigma: Optional[float] = None,
    ):
        self.repository = repository or QualityScoreRepository()
        self.clock = clock
        self.duplicate_window_seconds = (
            duplicate_window_seconds if duplicate_window_seconds is not None
            else settings.quality.duplicate_window_seconds
        )
        self.outlier_sigma = outlier_sigma if outlier_sigma is not None else settings.quality.outlier_sigma

    def calculate(
        self,
        participant_id: str,
        points: Iterable[Union[SignalPoint, dict]],
        expected_daily_signals: Optional[float] = None,
    ) -> DataQualityScore:
        """
        Score a participant's series and upsert the result wholesale

        Args:
            participant_id: Participant ID
            points: Signal series
            expected_daily_signals: Expected rate (configured default if omitted)

        Returns:
            The stored score
        """
        if expected_daily_signals is None:
            expected_daily_signals = settings.quality.expected_daily_signals

        score = calculate_quality_score(
            participant_id,
            points,
            now=self.clock(),
            expected_daily_signals=expected_daily_signals,
            duplicate_window_seconds=self.duplicate_window_seconds,
            outlier_sigma=self.outlier_sigma,
        )
        self.repository.save(participant_id, score)

        logger.info(
            "quality_score_calculated",
            participant_id=participant_id,
            overall_score=score.overall_score,
            total_signals=score.metrics.total_signals,
        )
        return score

    def get_score(self, participant_id: str) -> Optional[DataQualityScore]:
        return self.repository.get(participant_id)

    def get_scores(self, participant_ids: Iterable[str]) -> Dict[str, DataQualityScore]:
        scores = {}
        for participant_id in participant_ids:
            score = self.repository.get(participant_id)
            if score is not None:
                scores[participant_id] = score
        return scores

    def aggregate_metrics(self, scores: Optional[List[DataQualityScore]] = None) -> Dict[str, object]:
        return aggregate_metrics(scores if scores is not None else self.repository.list_all())

    def meets_quality_threshold(self, score: DataQualityScore, tier: Union[QualityTier, str]) -> bool:
        return meets_quality_threshold(score, tier)
