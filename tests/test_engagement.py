"""Tests for engagement signals and profiles"""

import pytest

from rwe_governance.database.models import ConsentScope
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.engagement import EngagementSignalRecorder, aggregate_profiles
from rwe_governance.research.models import EngagementPattern, EngagementProfile, EngagementSignalType


@pytest.fixture
def ledger(clock):
    return ConsentLedger(clock=clock)


@pytest.fixture
def recorder(ledger, clock):
    return EngagementSignalRecorder(ledger, ParticipantIdentityMapper(clock=clock), clock=clock)


def log_every(recorder, clock, days, count, user_id="user-1"):
    for i in range(count):
        if i:
            clock.advance(days=days)
        recorder.record_signal_logged(user_id)


class TestEngagementSignals:
    """Test raw signal recording"""

    def test_record_session(self, recorder, clock):
        """Test session events carry type, time and duration"""
        recorder.record_session_start("user-1")
        end = recorder.record_session_end("user-1", 45000)

        assert end.signal_type == EngagementSignalType.SESSION_END
        assert end.session_duration_ms == 45000
        assert end.metadata == {"duration_ms": 45000}
        assert end.occurred_at == clock()
        assert len(recorder.get_user_signals("user-1")) == 2

    def test_signals_in_range(self, recorder, clock):
        """Test range queries are inclusive and per user"""
        start = clock()
        recorder.record_pattern_view("user-1")
        clock.advance(days=3)
        recorder.record_export_generated("user-1")
        recorder.record_share_created("user-2")

        in_range = recorder.get_signals_in_range("user-1", start, clock())
        assert [s.signal_type for s in in_range] == [
            EngagementSignalType.PATTERN_VIEW,
            EngagementSignalType.EXPORT_GENERATED,
        ]
        assert recorder.get_signals_in_range("user-1", start, start) == in_range[:1]


class TestEngagementProfile:
    """Test profile generation and pattern classification"""

    def test_empty_profile(self, recorder):
        """Test a user without signals gets an empty new profile"""
        profile = recorder.generate_profile("P-TEST", "user-1")

        assert profile.total_sessions == 0
        assert profile.engagement_pattern == EngagementPattern.NEW

    def test_new_user(self, recorder, clock):
        """Test under two weeks of history is new"""
        log_every(recorder, clock, days=1, count=5)

        assert recorder.generate_profile("P-TEST", "user-1").engagement_pattern == EngagementPattern.NEW

    def test_consistent(self, recorder, clock):
        """Test daily logging is consistent"""
        log_every(recorder, clock, days=1, count=28)

        profile = recorder.generate_profile("P-TEST", "user-1")

        assert profile.engagement_pattern == EngagementPattern.CONSISTENT
        assert profile.total_signals_logged == 28
        assert profile.active_days == 28
        assert profile.longest_gap_days == 1.0
        assert profile.average_signals_per_week == 7.3

    def test_declining(self, recorder, clock):
        """Test more than two weeks of silence is declining"""
        log_every(recorder, clock, days=1, count=20)
        clock.advance(days=15)

        assert recorder.generate_profile("P-TEST", "user-1").engagement_pattern == EngagementPattern.DECLINING

    def test_sporadic(self, recorder, clock):
        """Test a gap over a week is sporadic"""
        log_every(recorder, clock, days=10, count=3)

        assert recorder.generate_profile("P-TEST", "user-1").engagement_pattern == EngagementPattern.SPORADIC

    def test_periodic(self, recorder, clock):
        """Test regular but infrequent logging is periodic"""
        log_every(recorder, clock, days=5, count=4)

        profile = recorder.generate_profile("P-TEST", "user-1")

        assert profile.engagement_pattern == EngagementPattern.PERIODIC
        assert profile.average_signals_per_week == 1.9

    def test_session_duration_average(self, recorder, clock):
        """Test session durations average with halves rounded up"""
        recorder.record_session_start("user-1")
        recorder.record_session_end("user-1", 1000)
        recorder.record_session_start("user-1")
        recorder.record_session_end("user-1", 2001)

        profile = recorder.generate_profile("P-TEST", "user-1")

        assert profile.total_sessions == 2
        assert profile.average_session_duration_ms == 1501

    def test_research_profile_requires_consent(self, recorder, ledger, clock):
        """Test profiles are published only with longitudinal_patterns consent"""
        recorder.record_signal_logged("user-1")

        assert recorder.get_research_profile("user-1") is None
        assert recorder.profiles.list_all() == []

        ledger.grant("user-1", ConsentScope.LONGITUDINAL_PATTERNS)
        profile = recorder.get_research_profile("user-1")

        assert profile.participant_id.startswith("P-")
        assert recorder.profiles.get(profile.participant_id) == profile
        assert "user-1" not in profile.model_dump_json()


class TestEngagementTrend:
    """Test weekly trend analysis"""

    def test_increasing(self, recorder, clock):
        """Test more logging in later weeks is increasing"""
        for per_week in [1, 1, 5, 5]:
            for _ in range(per_week):
                recorder.record_signal_logged("user-1")
            clock.advance(days=7)
        clock.advance(days=-7)

        trend = recorder.analyze_trend("user-1", period_days=30)

        assert trend["trend"] == "increasing"
        assert [w["signals_logged"] for w in trend["weekly_breakdown"]] == [1, 1, 5, 5]

    def test_no_signals_is_stable(self, recorder):
        """Test an empty period is stable"""
        trend = recorder.analyze_trend("user-1")

        assert trend["trend"] == "stable"
        assert trend["weekly_breakdown"] == []


class TestAggregateProfiles:
    """Test aggregation across profiles"""

    def test_aggregate(self):
        """Test pattern distribution and median duration"""
        profiles = [
            EngagementProfile(participant_id="P-1", total_sessions=4, active_days=10,
                              average_session_duration_ms=1000, engagement_pattern=EngagementPattern.CONSISTENT),
            EngagementProfile(participant_id="P-2", total_sessions=1, active_days=3,
                              average_session_duration_ms=3000, engagement_pattern=EngagementPattern.SPORADIC),
            EngagementProfile(participant_id="P-3", total_sessions=0, active_days=0),
        ]

        summary = aggregate_profiles(profiles)

        assert summary["total_profiles"] == 3
        assert summary["pattern_distribution"]["consistent"] == 1
        assert summary["pattern_distribution"]["new"] == 1
        assert summary["average_sessions_per_user"] == 1.7
        assert summary["average_active_days"] == 4
        assert summary["median_session_duration"] == 3000

    def test_aggregate_empty(self):
        """Test no profiles aggregate to zeros"""
        assert aggregate_profiles([])["total_profiles"] == 0
