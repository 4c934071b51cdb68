"""Repositories for signal-domain research data keyed by participant ID."""

from typing import List

from rwe_governance.database.repositories import BaseRepository
from rwe_governance.research.models import (
    EngagementProfile,
    InterventionMarker,
    ProtocolStatus,
    ProtocolTemplate,
    ResearchMarkerSet,
    SensorConsentConfig,
    SensorProxyEvent,
    SensorProxyProfile,
    StudyProtocol,
    TrajectoryReport,
)


class EngagementProfileRepository(BaseRepository[EngagementProfile]):
    """Published engagement profiles keyed by participant ID."""

    collection = "engagement_profiles"
    model = EngagementProfile


class ResearchMarkerRepository(BaseRepository[ResearchMarkerSet]):
    """Published research markers keyed by participant ID."""

    collection = "research_markers"
    model = ResearchMarkerSet


class SensorConfigRepository(BaseRepository[SensorConsentConfig]):
    """Sensor proxy opt-in configs keyed by user ID."""

    collection = "sensor_configs"
    model = SensorConsentConfig


class SensorProfileRepository(BaseRepository[SensorProxyProfile]):
    """Published sensor proxy profiles keyed by participant ID and proxy type."""

    collection = "sensor_profiles"
    model = SensorProxyProfile

    @staticmethod
    def key(participant_id: str, proxy_type: str) -> str:
        return f"{participant_id}:{proxy_type}"

    def get_for_participant(self, participant_id: str) -> List[SensorProxyProfile]:
        return self.find(lambda p: p.participant_id == participant_id)


class TrajectoryRepository(BaseRepository[TrajectoryReport]):
    """Trajectory reports keyed by report ID."""

    collection = "trajectory_reports"
    model = TrajectoryReport

    def get_for_participant(self, participant_id: str) -> List[TrajectoryReport]:
        return self.find(lambda r: r.participant_id == participant_id)


class InterventionMarkerRepository(BaseRepository[InterventionMarker]):
    """Identity-bearing intervention markers keyed by marker ID."""

    collection = "intervention_markers"
    model = InterventionMarker

    def get_for_user(self, user_id: str) -> List[InterventionMarker]:
        return self.find(lambda m: m.user_id == user_id)


class SensorEventRepository(BaseRepository[SensorProxyEvent]):
    """Bucketed sensor events keyed by event ID."""

    collection = "sensor_events"
    model = SensorProxyEvent

    def get_for_user(self, user_id: str) -> List[SensorProxyEvent]:
        return self.find(lambda e: e.user_id == user_id)


class ProtocolTemplateRepository(BaseRepository[ProtocolTemplate]):
    """Protocol templates keyed by template ID."""

    collection = "protocol_templates"
    model = ProtocolTemplate

    def get_published(self) -> List[ProtocolTemplate]:
        return self.find(lambda t: t.is_published)


class StudyProtocolRepository(BaseRepository[StudyProtocol]):
    """Study protocols keyed by protocol ID."""

    collection = "study_protocols"
    model = StudyProtocol

    def get_by_sponsor(self, sponsor_id: str) -> List[StudyProtocol]:
        return self.find(lambda p: p.sponsor_id == sponsor_id)

    def get_by_status(self, status: ProtocolStatus) -> List[StudyProtocol]:
        status = ProtocolStatus(status)
        return self.find(lambda p: p.status == status)
