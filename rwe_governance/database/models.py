"""Pydantic models for governance pipeline entities."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, List

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from rwe_governance.clock import ensure_utc

# Naive timestamps are read as UTC; aware ones are converted to UTC
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ============================================
# CONSENT
# ============================================

class ConsentScope(str, Enum):
    """Research consent scopes."""
    COHORT_INCLUSION = "cohort_inclusion"
    TRAJECTORY_EXPORT = "trajectory_export"
    SENSOR_DATA = "sensor_data"
    INTERVENTION_MARKERS = "intervention_markers"
    LONGITUDINAL_PATTERNS = "longitudinal_patterns"
    DEIDENTIFIED_SHARING = "deidentified_sharing"


class ConsentStatus(str, Enum):
    """Consent record status."""
    NOT_ASKED = "not_asked"
    PENDING = "pending"
    GRANTED = "granted"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"


class ConsentAction(str, Enum):
    """Audited consent actions."""
    PRESENTED = "presented"
    GRANTED = "granted"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    RENEWED = "renewed"


class Consent(BaseModel):
    """Consent record, one live record per (user_id, scope)."""

    id: str
    user_id: str
    scope: ConsentScope
    status: ConsentStatus
    version: str
    consent_language_hash: str
    audit_ref: str
    study_id: Optional[str] = None
    granted_at: Optional[UtcDatetime] = None
    expires_at: Optional[UtcDatetime] = None
    withdrawn_at: Optional[UtcDatetime] = None

    def is_active(self, now: datetime) -> bool:
        """Granted and not past expiry."""
        if self.status != ConsentStatus.GRANTED:
            return False
        if self.expires_at is not None and self.expires_at < now:
            return False
        return True


class ConsentAuditEntry(BaseModel):
    """Immutable record of one consent state transition."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    scope: ConsentScope
    action: ConsentAction
    new_status: ConsentStatus
    performed_at: UtcDatetime
    consent_version: str
    previous_status: Optional[ConsentStatus] = None
    study_id: Optional[str] = None


class ConsentBundle(BaseModel):
    """All consent records of a user."""

    user_id: str
    consents: List[Consent]
    last_updated: Optional[UtcDatetime] = None
    has_active_research_participation: bool = False


class ExportConsentValidation(BaseModel):
    """Partition of required scopes for an export."""

    valid: bool
    granted_scopes: List[ConsentScope] = Field(default_factory=list)
    missing_scopes: List[ConsentScope] = Field(default_factory=list)
    expired_scopes: List[ConsentScope] = Field(default_factory=list)


# ============================================
# COHORTS
# ============================================

class AgeBand(str, Enum):
    """Bucketed age ranges."""
    AGE_18_24 = "18-24"
    AGE_25_34 = "25-34"
    AGE_35_44 = "35-44"
    AGE_45_54 = "45-54"
    AGE_55_64 = "55-64"
    AGE_65_PLUS = "65+"


class RegionBucket(str, Enum):
    """Bucketed world regions."""
    NORTH_AMERICA = "north_america"
    EUROPE = "europe"
    ASIA_PACIFIC = "asia_pacific"
    LATIN_AMERICA = "latin_america"
    OTHER = "other"


class ContextBucket(str, Enum):
    """Bucketed usage contexts."""
    WORK = "work"
    EDUCATION = "education"
    PERSONAL = "personal"
    CAREGIVING = "caregiving"
    MIXED = "mixed"


class DateRange(BaseModel):
    """Closed date interval."""

    start: UtcDatetime
    end: UtcDatetime


class CohortCriteria(BaseModel):
    """Declarative cohort filter. Unset fields impose no constraint."""

    age_bands: Optional[List[AgeBand]] = None
    regions: Optional[List[RegionBucket]] = None
    contexts: Optional[List[ContextBucket]] = None
    min_signal_count: Optional[int] = Field(default=None, ge=0)
    min_days_active: Optional[int] = Field(default=None, ge=0)
    date_range: Optional[DateRange] = None
    has_intervention_markers: Optional[bool] = None


class EnrollmentProfile(BaseModel):
    """Identity-bearing profile supplied at enrollment; never stored."""

    birth_year: int
    country_code: str
    primary_context: Optional[str] = None
    secondary_contexts: List[str] = Field(default_factory=list)
    signal_count: int = Field(ge=0)
    days_active: int = Field(ge=0)
    first_signal_at: UtcDatetime
    last_signal_at: UtcDatetime
    has_intervention_markers: bool = False
    quality_score: int = Field(default=0, ge=0, le=100)


class CohortMember(BaseModel):
    """De-identified cohort member."""

    model_config = ConfigDict(frozen=True)

    participant_id: str
    age_band: AgeBand
    region: RegionBucket
    context: ContextBucket
    signal_count: int
    days_active: int
    first_signal_at: UtcDatetime
    last_signal_at: UtcDatetime
    has_intervention_markers: bool
    quality_score: int


class CohortMembership(BaseModel):
    """Storage row linking a member to a cohort."""

    cohort_id: str
    member: CohortMember
    enrolled_at: UtcDatetime


class Cohort(BaseModel):
    """Named research cohort."""

    id: str
    name: str
    description: str = ""
    criteria: CohortCriteria = Field(default_factory=CohortCriteria)
    member_count: int = 0
    created_at: UtcDatetime
    created_by: str
    study_id: Optional[str] = None
    is_locked: bool = False
    locked_at: Optional[UtcDatetime] = None
    expires_at: Optional[UtcDatetime] = None


class ExportEligibility(BaseModel):
    """Consent scopes a participant has withdrawn, keyed by participant ID."""

    participant_id: str
    revoked_scopes: List[ConsentScope] = Field(default_factory=list)
    updated_at: UtcDatetime


# ============================================
# DATA QUALITY & PROVENANCE
# ============================================

class SignalPoint(BaseModel):
    """One timestamped signal value."""

    timestamp: UtcDatetime
    value: float


class SignalFrequency(str, Enum):
    """Signals-per-day classification."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QualityTier(str, Enum):
    """Research eligibility tiers."""
    MINIMUM = "minimum"
    RECOMMENDED = "recommended"
    HIGH = "high"


class QualityDimensions(BaseModel):
    """Five 0-100 quality dimensions."""

    completeness: int = 0
    consistency: int = 0
    timeliness: int = 0
    continuity: int = 0
    stability: int = 0


class QualityMetrics(BaseModel):
    """Raw counts behind a quality score."""

    total_signals: int = 0
    expected_signals: int = 0
    missing_days: int = 0
    duplicate_count: int = 0
    outlier_count: int = 0
    average_gap_hours: float = 0.0
    longest_gap_hours: float = 0.0
    signal_frequency: SignalFrequency = SignalFrequency.LOW


class DataQualityScore(BaseModel):
    """Data quality score of one participant."""

    participant_id: str
    overall_score: int = Field(ge=0, le=100)
    dimensions: QualityDimensions
    metrics: QualityMetrics
    calculated_at: UtcDatetime


class SourceType(str, Enum):
    """Capture source of a data point."""
    MANUAL_ENTRY = "manual_entry"
    SENSOR_DERIVED = "sensor_derived"
    API_IMPORT = "api_import"


class ModificationType(str, Enum):
    """Provenance history entry kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ModificationEntry(BaseModel):
    """One provenance history entry."""

    model_config = ConfigDict(frozen=True)

    modified_at: UtcDatetime
    modification_type: ModificationType


class DataProvenanceRecord(BaseModel):
    """Capture source and modification history of a data point."""

    data_point_id: str
    participant_id: str
    source_type: SourceType
    captured_at: UtcDatetime
    app_version: str
    timezone_offset: int
    device_type: Optional[str] = None
    modification_history: List[ModificationEntry] = Field(default_factory=list)


# ============================================
# PARTNERSHIPS
# ============================================

class PartnershipType(str, Enum):
    """Kinds of partnership."""
    DATA_ACCESS = "data_access"
    STUDY_COLLABORATION = "study_collaboration"
    PLATFORM_INTEGRATION = "platform_integration"
    VALIDATION_STUDY = "validation_study"


class PartnershipStatus(str, Enum):
    """Shared status vocabulary of requests and agreements."""
    INQUIRY = "inquiry"
    NEGOTIATING = "negotiating"
    LEGAL_REVIEW = "legal_review"
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"


class CompanyType(str, Enum):
    """Partner organisation kinds."""
    PHARMA = "pharma"
    BIOTECH = "biotech"
    CRO = "cro"
    ACADEMIC = "academic"
    HEALTH_SYSTEM = "health_system"
    OTHER = "other"


class ExportFormat(str, Enum):
    """Canonical research interchange formats."""
    NATIVE = "native"
    CSV_FLAT = "csv_flat"
    CDISC_SDTM = "cdisc_sdtm"
    FHIR_R4 = "fhir_r4"
    OMOP_CDM = "omop_cdm"


class PartnershipRequest(BaseModel):
    """Inbound partnership request."""

    id: str
    company_name: str
    company_type: CompanyType = CompanyType.OTHER
    contact_name: str = ""
    contact_email: str
    partnership_type: PartnershipType
    proposed_use_case: str = ""
    estimated_cohort_size: int = 0
    estimated_duration: str = ""
    data_elements_requested: List[str] = Field(default_factory=list)
    status: PartnershipStatus = PartnershipStatus.INQUIRY
    submitted_at: UtcDatetime
    reviewed_at: Optional[UtcDatetime] = None
    reviewed_by: Optional[str] = None
    notes: Optional[str] = None


class DataAccessScope(BaseModel):
    """What an agreement allows to be exported."""

    cohort_criteria: CohortCriteria = Field(default_factory=CohortCriteria)
    data_elements: List[str] = Field(default_factory=list)
    export_formats: List[ExportFormat] = Field(default_factory=list)
    access_frequency: str = Field(default="one_time", pattern="^(one_time|quarterly|monthly|continuous)$")


class GovernanceTerms(BaseModel):
    """Data governance clauses of an agreement."""

    data_retention_days: int = 365
    reidentification_prohibited: bool = True
    publishing_rights: str = Field(default="joint", pattern="^(partner|joint|platform_approval)$")
    audit_rights: bool = True


class FinancialTerms(BaseModel):
    """Financial clauses of an agreement."""

    fee_structure: str = Field(default="flat_fee", pattern="^(per_record|flat_fee|revenue_share|in_kind)$")
    amount: Optional[float] = None
    currency: Optional[str] = None


class AgreementAuditLine(BaseModel):
    """Line of an agreement's own audit log."""

    model_config = ConfigDict(frozen=True)

    action: str
    performed_by: str
    performed_at: UtcDatetime


class PartnershipAgreement(BaseModel):
    """Partnership agreement governing data access."""

    id: str
    request_id: str
    partner_id: str
    partner_name: str
    partnership_type: PartnershipType
    status: PartnershipStatus = PartnershipStatus.NEGOTIATING
    effective_date: UtcDatetime
    expiration_date: UtcDatetime
    data_access_scope: DataAccessScope
    governance_terms: GovernanceTerms = Field(default_factory=GovernanceTerms)
    financial_terms: FinancialTerms = Field(default_factory=FinancialTerms)
    contract_document_hash: str = ""
    signed_at: Optional[UtcDatetime] = None
    signed_by: Optional[str] = None
    audit_log: List[AgreementAuditLine] = Field(default_factory=list)


class PartnershipAuditAction(str, Enum):
    """Audited partnership actions."""
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_REVIEWED = "request_reviewed"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    AGREEMENT_CREATED = "agreement_created"
    AGREEMENT_SIGNED = "agreement_signed"
    AGREEMENT_ACTIVATED = "agreement_activated"
    AGREEMENT_PAUSED = "agreement_paused"
    AGREEMENT_TERMINATED = "agreement_terminated"
    ACCESS_VALIDATED = "access_validated"
    DATA_ACCESSED = "data_accessed"
    AUDIT_CONDUCTED = "audit_conducted"


class PartnershipAuditEntry(BaseModel):
    """Immutable partnership audit entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    action: PartnershipAuditAction
    performed_by: str
    performed_at: UtcDatetime
    request_id: Optional[str] = None
    agreement_id: Optional[str] = None
    details: Optional[str] = None


class DataAccessDecision(BaseModel):
    """Outcome of validating a data access attempt."""

    allowed: bool
    denied_elements: List[str] = Field(default_factory=list)
    denied_format: bool = False
    agreement_status: Optional[PartnershipStatus] = None
    reason: Optional[str] = None


# ============================================
# RWE EXPORT
# ============================================

class RWEExportConfig(BaseModel):
    """What to export and how."""

    format: ExportFormat
    cohort_id: str
    include_trajectories: bool = False
    include_interventions: bool = False
    include_sensor_proxies: bool = False
    include_engagement: bool = False
    include_quality_metrics: bool = False
    date_range: Optional[DateRange] = None
    aggregation_level: str = Field(default="individual", pattern="^(individual|daily|weekly)$")


class FileManifestEntry(BaseModel):
    """Content-addressed entry of an export manifest."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content_hash: str
    record_count: int
    description: str = ""


class ExportMetadata(BaseModel):
    """Metadata recorded on every export."""

    model_config = ConfigDict(frozen=True)

    study_id: Optional[str] = None
    protocol_version: Optional[str] = None
    data_quality_score: int
    date_range: DateRange
    deidentification_method: str


class ExportAccessEntry(BaseModel):
    """One read of an export package."""

    model_config = ConfigDict(frozen=True)

    accessed_by: str
    accessed_at: UtcDatetime


class RWEExportPackage(BaseModel):
    """Generated export package; only the access log grows after creation."""

    id: str
    cohort_id: str
    format: ExportFormat
    generated_at: UtcDatetime
    generated_by: str
    record_count: int
    file_manifest: List[FileManifestEntry]
    metadata: ExportMetadata
    agreement_id: Optional[str] = None
    access_log: List[ExportAccessEntry] = Field(default_factory=list)
