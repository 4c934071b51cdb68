"""Outcome-neutral trajectory reports around intervention markers"""

import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Union

import numpy as np
import structlog

from rwe_governance.clock import Clock, SECONDS_PER_DAY, utcnow
from rwe_governance.database.models import ConsentScope
from rwe_governance.exceptions import ValidationError
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.data_quality import DataQualityScorer
from rwe_governance.research.models import (
    ResearchMarker,
    TrajectoryPoint,
    TrajectoryReport,
    TrajectoryWindow,
    WindowStatistics,
)
from rwe_governance.research.repositories import TrajectoryRepository

logger = structlog.get_logger(__name__)


def window_statistics(points: List[TrajectoryPoint]) -> WindowStatistics:
    """
    Mean, standard deviation, trend and volatility of a window

    Trend is the least-squares slope in capacity units per day; volatility
    is the mean absolute difference between successive values.
    """
    if not points:
        return WindowStatistics()

    values = np.array([p.normalized_capacity for p in points], dtype=float)
    days = np.array([p.timestamp.timestamp() for p in points], dtype=float) / SECONDS_PER_DAY

    trend = 0.0
    if values.size >= 2 and np.ptp(days) > 0:
        trend = float(np.polyfit(days - days[0], values, 1)[0])
    volatility = float(np.mean(np.abs(np.diff(values)))) if values.size >= 2 else 0.0

    return WindowStatistics(
        mean=round(float(values.mean()), 4),
        standard_deviation=round(float(values.std()), 4),
        trend=round(trend, 4),
        volatility=round(volatility, 4),
    )


def build_window(
    kind: str,
    reference_id: str,
    start: datetime,
    end: datetime,
    points: List[TrajectoryPoint],
) -> TrajectoryWindow:
    return TrajectoryWindow(
        window_id=str(uuid.uuid4()),
        type=kind,
        reference_event_id=reference_id,
        start_at=start,
        end_at=end,
        signal_count=len(points),
        data_points=points,
        statistics=window_statistics(points),
    )


class TrajectoryReporter:
    """Builds pre/post windows for consenting participants"""

    def __init__(
        self,
        consent_ledger: ConsentLedger,
        identity_mapper: ParticipantIdentityMapper,
        quality_scorer: Optional[DataQualityScorer] = None,
        repository: Optional[TrajectoryRepository] = None,
        clock: Clock = utcnow,
    ):
        self.consent_ledger = consent_ledger
        self._identity_mapper = identity_mapper
        self.quality_scorer = quality_scorer
        self.reports = repository or TrajectoryRepository()
        self.clock = clock

    def generate_report(
        self,
        user_id: str,
        points: Iterable[Union[TrajectoryPoint, dict]],
        marker: ResearchMarker,
        window_days: int = 30,
    ) -> Optional[TrajectoryReport]:
        """
        Compare the windows before and after a research marker

        Args:
            user_id: Internal user ID
            points: Normalized capacity series of the user
            marker: Research-eligible marker the windows are centred on
            window_days: Length of each window

        Returns:
            Stored report, or None without trajectory_export consent
        """
        if window_days <= 0:
            raise ValidationError("window_days must be positive", details={"window_days": window_days})
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.TRAJECTORY_EXPORT):
            return None

        series = sorted(
            (p if isinstance(p, TrajectoryPoint) else TrajectoryPoint.model_validate(p) for p in points),
            key=lambda p: p.timestamp,
        )
        reference = marker.occurred_at
        window = timedelta(days=window_days)
        pre = [p for p in series if reference - window <= p.timestamp < reference]
        post = [p for p in series if reference <= p.timestamp <= reference + window]

        participant_id = self._identity_mapper.get_or_create(user_id)
        quality = 0
        if self.quality_scorer is not None:
            score = self.quality_scorer.get_score(participant_id)
            quality = score.overall_score if score else 0

        report = TrajectoryReport(
            id=str(uuid.uuid4()),
            participant_id=participant_id,
            reference_event_id=marker.deidentified_id,
            reference_event_category=marker.category,
            pre_window=build_window("pre", marker.deidentified_id, reference - window, reference, pre),
            post_window=build_window("post", marker.deidentified_id, reference, reference + window, post),
            window_days=window_days,
            generated_at=self.clock(),
            quality_score=quality,
        )
        self.reports.save(report.id, report, expected_version=0)

        logger.info(
            "trajectory_report_generated",
            participant_id=participant_id,
            category=marker.category.value,
            pre_points=len(pre),
            post_points=len(post),
        )
        return report

    def get_report(self, report_id: str) -> Optional[TrajectoryReport]:
        return self.reports.get(report_id)

    def get_participant_reports(self, participant_id: str) -> List[TrajectoryReport]:
        return self.reports.get_for_participant(participant_id)
