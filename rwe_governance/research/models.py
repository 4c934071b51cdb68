"""Pydantic models for the supporting signal domains and study protocols"""

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from rwe_governance.database.models import CohortCriteria, UtcDatetime


# ============================================
# ENGAGEMENT
# ============================================

class EngagementSignalType(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    PATTERN_VIEW = "pattern_view"
    SIGNAL_LOGGED = "signal_logged"
    EXPORT_GENERATED = "export_generated"
    SHARE_CREATED = "share_created"


class EngagementPattern(str, Enum):
    CONSISTENT = "consistent"
    PERIODIC = "periodic"
    SPORADIC = "sporadic"
    DECLINING = "declining"
    NEW = "new"


class EngagementSignal(BaseModel):
    """Raw app engagement event; carries the user ID"""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    signal_type: EngagementSignalType
    occurred_at: UtcDatetime
    session_duration_ms: Optional[int] = None
    metadata: Dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)


class EngagementProfile(BaseModel):
    """De-identified engagement profile"""

    participant_id: str
    total_sessions: int = 0
    total_signals_logged: int = 0
    average_session_duration_ms: int = 0
    average_signals_per_week: float = 0.0
    active_days: int = 0
    longest_gap_days: float = 0.0
    engagement_pattern: EngagementPattern = EngagementPattern.NEW
    first_engagement_at: Optional[UtcDatetime] = None
    last_engagement_at: Optional[UtcDatetime] = None


# ============================================
# INTERVENTION MARKERS
# ============================================

class InterventionCategory(str, Enum):
    MEDICATION_START = "medication_start"
    MEDICATION_STOP = "medication_stop"
    DOSE_CHANGE = "dose_change"
    THERAPY_START = "therapy_start"
    THERAPY_END = "therapy_end"
    THERAPY_CHANGE = "therapy_change"
    LIFESTYLE_CHANGE = "lifestyle_change"
    ENVIRONMENTAL_CHANGE = "environmental_change"
    SUPPORT_CHANGE = "support_change"
    OTHER = "other"


class InterventionMarker(BaseModel):
    """User-created life event marker"""

    id: str
    user_id: str
    category: InterventionCategory
    label: str
    occurred_at: UtcDatetime
    created_at: UtcDatetime
    notes: Optional[str] = None
    is_private: bool = False
    deidentified_id: str


class ResearchMarker(BaseModel):
    """Research-eligible projection of a marker: no label, notes or user"""

    model_config = ConfigDict(frozen=True)

    deidentified_id: str
    category: InterventionCategory
    occurred_at: UtcDatetime


# ============================================
# SENSOR PROXIES
# ============================================

class SensorProxyType(str, Enum):
    NOISE_LEVEL = "noise_level"
    SLEEP_PROXY = "sleep_proxy"
    ACTIVITY_PROXY = "activity_proxy"
    SCREEN_TIME_PROXY = "screen_time_proxy"
    LOCATION_STABILITY = "location_stability"


class SensorEventLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very_high"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class SensorEventMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    time_of_day: TimeOfDay
    day_of_week: int
    is_weekend: bool


class SensorProxyEvent(BaseModel):
    """Bucketed sensor event; no raw sensor content"""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    proxy_type: SensorProxyType
    event_level: SensorEventLevel
    occurred_at: UtcDatetime
    duration_ms: Optional[int] = None
    metadata: SensorEventMetadata


class SensorProcessingPreferences(BaseModel):
    local_only: bool = True
    include_in_research: bool = False
    retention_days: int = Field(default=90, gt=0)


class SensorConsentConfig(BaseModel):
    """Per-user sensor proxy opt-in"""

    user_id: str
    enabled_proxies: List[SensorProxyType] = Field(default_factory=list)
    consented_at: UtcDatetime
    last_modified_at: UtcDatetime
    processing_preferences: SensorProcessingPreferences = Field(default_factory=SensorProcessingPreferences)


class SensorProxyProfile(BaseModel):
    """De-identified sensor proxy profile"""

    participant_id: str
    proxy_type: SensorProxyType
    period_start: UtcDatetime
    period_end: UtcDatetime
    event_counts: Dict[str, int]
    average_events_per_day: float
    dominant_time_of_day: TimeOfDay
    weekday_vs_weekend_ratio: float


# ============================================
# TRAJECTORIES
# ============================================

class TrajectoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: UtcDatetime
    normalized_capacity: float
    drivers: List[str] = Field(default_factory=list)


class WindowStatistics(BaseModel):
    mean: float = 0.0
    standard_deviation: float = 0.0
    trend: float = 0.0
    volatility: float = 0.0


class TrajectoryWindow(BaseModel):
    window_id: str
    type: str = Field(pattern="^(pre|post)$")
    reference_event_id: str
    start_at: UtcDatetime
    end_at: UtcDatetime
    signal_count: int
    data_points: List[TrajectoryPoint] = Field(default_factory=list)
    statistics: WindowStatistics = Field(default_factory=WindowStatistics)


class TrajectoryReport(BaseModel):
    """Pre/post window comparison around one intervention marker"""

    id: str
    participant_id: str
    reference_event_id: str
    reference_event_category: InterventionCategory
    pre_window: TrajectoryWindow
    post_window: TrajectoryWindow
    window_days: int
    generated_at: UtcDatetime
    quality_score: int = 0


# ============================================
# PROTOCOLS
# ============================================

class ProtocolType(str, Enum):
    OBSERVATIONAL = "observational"
    REGISTRY = "registry"
    RWE_STUDY = "rwe_study"
    PILOT = "pilot"
    VALIDATION = "validation"


class ProtocolStatus(str, Enum):
    DRAFT = "draft"
    IRB_PENDING = "irb_pending"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class IRBLanguage(BaseModel):
    study_purpose: str
    participant_rights: str
    data_handling: str
    risks_benefits: str
    withdrawal_process: str


class ProtocolTemplate(BaseModel):
    id: str
    type: ProtocolType
    title: str
    version: str
    description: str
    primary_endpoints: List[str] = Field(default_factory=list)
    secondary_endpoints: List[str] = Field(default_factory=list)
    inclusion_criteria: CohortCriteria = Field(default_factory=CohortCriteria)
    estimated_duration: str = ""
    estimated_cohort_size: int = 0
    data_elements_required: List[str] = Field(default_factory=list)
    irb_language: IRBLanguage
    created_at: UtcDatetime
    last_modified_at: UtcDatetime
    is_published: bool = False


class StudyProtocol(BaseModel):
    id: str
    template_id: str
    title: str
    sponsor_id: str
    sponsor_name: str
    status: ProtocolStatus = ProtocolStatus.DRAFT
    version: str = "1.0.0"
    principal_investigator: str
    irb_approval_number: Optional[str] = None
    irb_approval_date: Optional[UtcDatetime] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    cohort_id: Optional[str] = None
    data_access_agreement_id: Optional[str] = None
    created_at: UtcDatetime
    last_modified_at: UtcDatetime


class ResearchMarkerSet(BaseModel):
    """Published research markers of one participant"""

    participant_id: str
    markers: List[ResearchMarker] = Field(default_factory=list)
    published_at: UtcDatetime
