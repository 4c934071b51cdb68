"""Adherence-free engagement signals and profiles"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import structlog

from rwe_governance.clock import Clock, SECONDS_PER_DAY, days_between, utcnow
from rwe_governance.database.models import ConsentScope
from rwe_governance.database.store import AppendOnlyLog
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.data_quality import round_half_up
from rwe_governance.research.models import (
    EngagementPattern,
    EngagementProfile,
    EngagementSignal,
    EngagementSignalType,
)
from rwe_governance.research.repositories import EngagementProfileRepository

logger = structlog.get_logger(__name__)

NEW_USER_DAYS = 14
DECLINING_AFTER_DAYS = 14
SPORADIC_GAP_DAYS = 7
CONSISTENT_SIGNALS_PER_WEEK = 3
TREND_CHANGE_PERCENT = 20
WEEK_SECONDS = 7 * SECONDS_PER_DAY


def _round1(value: float) -> float:
    return float(np.floor(value * 10 + 0.5) / 10)


def build_profile(participant_id: str, signals: List[EngagementSignal], now: datetime) -> EngagementProfile:
    """
    Reduce a user's raw engagement signals to a de-identified profile

    Args:
        participant_id: Participant the profile is published under
        signals: Raw signals of one user
        now: Reference time for the pattern classification

    Returns:
        EngagementProfile
    """
    if not signals:
        return EngagementProfile(participant_id=participant_id)

    ordered = sorted(signals, key=lambda s: s.occurred_at)
    sessions = [s for s in ordered if s.signal_type == EngagementSignalType.SESSION_START]
    logged = [s for s in ordered if s.signal_type == EngagementSignalType.SIGNAL_LOGGED]
    durations = [
        s.session_duration_ms for s in ordered
        if s.signal_type == EngagementSignalType.SESSION_END and s.session_duration_ms is not None
    ]

    first, last = ordered[0].occurred_at, ordered[-1].occurred_at
    seconds = np.array([s.occurred_at.timestamp() for s in ordered])
    gaps_days = np.diff(seconds) / SECONDS_PER_DAY
    longest_gap = float(gaps_days.max()) if gaps_days.size else 0.0
    active_days = len({s.occurred_at.date() for s in ordered})

    total_weeks = max(1.0, (last - first).total_seconds() / WEEK_SECONDS)
    signals_per_week = len(logged) / total_weeks

    days_since_first = days_between(first, now)
    days_since_last = days_between(last, now)
    if days_since_first < NEW_USER_DAYS:
        pattern = EngagementPattern.NEW
    elif days_since_last > DECLINING_AFTER_DAYS:
        pattern = EngagementPattern.DECLINING
    elif longest_gap > SPORADIC_GAP_DAYS:
        pattern = EngagementPattern.SPORADIC
    elif signals_per_week >= CONSISTENT_SIGNALS_PER_WEEK:
        pattern = EngagementPattern.CONSISTENT
    else:
        pattern = EngagementPattern.PERIODIC

    return EngagementProfile(
        participant_id=participant_id,
        total_sessions=len(sessions),
        total_signals_logged=len(logged),
        average_session_duration_ms=round_half_up(float(np.mean(durations))) if durations else 0,
        average_signals_per_week=_round1(signals_per_week),
        active_days=active_days,
        longest_gap_days=_round1(longest_gap),
        engagement_pattern=pattern,
        first_engagement_at=first,
        last_engagement_at=last,
    )


def aggregate_profiles(profiles: List[EngagementProfile]) -> Dict[str, Any]:
    """Pattern distribution and averages across engagement profiles"""
    distribution = {pattern.value: 0 for pattern in EngagementPattern}
    if not profiles:
        return {
            "total_profiles": 0,
            "pattern_distribution": distribution,
            "average_sessions_per_user": 0.0,
            "average_signals_per_user": 0.0,
            "average_active_days": 0,
            "median_session_duration": 0,
        }

    for profile in profiles:
        distribution[profile.engagement_pattern.value] += 1

    durations = sorted(p.average_session_duration_ms for p in profiles if p.average_session_duration_ms > 0)
    median = durations[len(durations) // 2] if durations else 0

    return {
        "total_profiles": len(profiles),
        "pattern_distribution": distribution,
        "average_sessions_per_user": _round1(np.mean([p.total_sessions for p in profiles])),
        "average_signals_per_user": _round1(np.mean([p.total_signals_logged for p in profiles])),
        "average_active_days": round_half_up(float(np.mean([p.active_days for p in profiles]))),
        "median_session_duration": int(median),
    }


class EngagementSignalRecorder:
    """Records raw engagement events and publishes consented profiles"""

    def __init__(
        self,
        consent_ledger: ConsentLedger,
        identity_mapper: ParticipantIdentityMapper,
        signal_log: Optional[AppendOnlyLog] = None,
        profile_repository: Optional[EngagementProfileRepository] = None,
        clock: Clock = utcnow,
    ):
        self.consent_ledger = consent_ledger
        self._identity_mapper = identity_mapper
        self.signal_log = signal_log if signal_log is not None else AppendOnlyLog("engagement_signals")
        self.profiles = profile_repository or EngagementProfileRepository()
        self.clock = clock

    def record(
        self,
        user_id: str,
        signal_type: EngagementSignalType,
        metadata: Optional[Dict[str, Any]] = None,
        session_duration_ms: Optional[int] = None,
    ) -> EngagementSignal:
        """Append one raw engagement signal"""
        signal = EngagementSignal(
            id=str(uuid.uuid4()),
            user_id=user_id,
            signal_type=EngagementSignalType(signal_type),
            occurred_at=self.clock(),
            session_duration_ms=session_duration_ms,
            metadata=metadata or {},
        )
        self.signal_log.append(signal)
        return signal

    def record_session_start(self, user_id: str) -> EngagementSignal:
        return self.record(user_id, EngagementSignalType.SESSION_START)

    def record_session_end(self, user_id: str, session_duration_ms: int) -> EngagementSignal:
        return self.record(
            user_id,
            EngagementSignalType.SESSION_END,
            metadata={"duration_ms": session_duration_ms},
            session_duration_ms=session_duration_ms,
        )

    def record_signal_logged(self, user_id: str) -> EngagementSignal:
        return self.record(user_id, EngagementSignalType.SIGNAL_LOGGED)

    def record_pattern_view(self, user_id: str) -> EngagementSignal:
        return self.record(user_id, EngagementSignalType.PATTERN_VIEW)

    def record_export_generated(self, user_id: str) -> EngagementSignal:
        return self.record(user_id, EngagementSignalType.EXPORT_GENERATED)

    def record_share_created(self, user_id: str) -> EngagementSignal:
        return self.record(user_id, EngagementSignalType.SHARE_CREATED)

    def get_user_signals(self, user_id: str) -> List[EngagementSignal]:
        return self.signal_log.entries(lambda s: s.user_id == user_id)

    def get_signals_in_range(self, user_id: str, start: datetime, end: datetime) -> List[EngagementSignal]:
        return self.signal_log.entries(lambda s: s.user_id == user_id and start <= s.occurred_at <= end)

    def generate_profile(self, participant_id: str, user_id: str) -> EngagementProfile:
        return build_profile(participant_id, self.get_user_signals(user_id), self.clock())

    def aggregate_profiles(self, profiles: Optional[List[EngagementProfile]] = None) -> Dict[str, Any]:
        return aggregate_profiles(profiles if profiles is not None else self.profiles.list_all())

    def get_research_profile(self, user_id: str) -> Optional[EngagementProfile]:
        """
        Publish a de-identified profile for a consenting user

        Returns:
            The profile, or None without longitudinal_patterns consent
        """
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.LONGITUDINAL_PATTERNS):
            return None

        participant_id = self._identity_mapper.get_or_create(user_id)
        profile = self.generate_profile(participant_id, user_id)
        self.profiles.save(participant_id, profile)

        logger.info(
            "engagement_profile_published",
            participant_id=participant_id,
            pattern=profile.engagement_pattern.value,
        )
        return profile

    def analyze_trend(self, user_id: str, period_days: int = 30) -> Dict[str, Any]:
        """
        Weekly engagement breakdown over a trailing period

        The trend compares mean weekly signals logged in the second half of
        the weeks against the first half; a change beyond 20 percent is
        increasing or decreasing.
        """
        now = self.clock()
        period_start = now - timedelta(days=period_days)
        signals = self.get_signals_in_range(user_id, period_start, now)

        weekly: List[Dict[str, Any]] = []
        if signals:
            frame = pd.DataFrame([
                {
                    "week": int(s.occurred_at.timestamp() // WEEK_SECONDS),
                    "signal_type": s.signal_type.value,
                    "duration": s.session_duration_ms,
                }
                for s in signals
            ])
            for week, group in frame.groupby("week", sort=True):
                ends = group[(group["signal_type"] == EngagementSignalType.SESSION_END.value) & group["duration"].notna()]
                weekly.append({
                    "week_start": datetime.fromtimestamp(week * WEEK_SECONDS, tz=now.tzinfo),
                    "signals_logged": int((group["signal_type"] == EngagementSignalType.SIGNAL_LOGGED.value).sum()),
                    "sessions_started": int((group["signal_type"] == EngagementSignalType.SESSION_START.value).sum()),
                    "average_session_duration_ms": round_half_up(float(ends["duration"].mean())) if len(ends) else 0,
                })

        trend = "stable"
        if len(weekly) >= 2:
            half = len(weekly) // 2
            first_avg = np.mean([w["signals_logged"] for w in weekly[:half]])
            second_avg = np.mean([w["signals_logged"] for w in weekly[half:]])
            change = (second_avg - first_avg) / max(first_avg, 1) * 100
            if change > TREND_CHANGE_PERCENT:
                trend = "increasing"
            elif change < -TREND_CHANGE_PERCENT:
                trend = "decreasing"

        return {
            "period_start": period_start,
            "period_end": now,
            "weekly_breakdown": weekly,
            "trend": trend,
        }
