"""
RWE export packages for cohorts.

The packager reads only participant-keyed research data: cohort members,
published quality scores, trajectory reports, engagement and sensor profiles
and research markers. Participants whose consent was withdrawn after publication
are left out using the participant-keyed export eligibility records. It never
touches user IDs or the identity mapping.
"""

import hashlib
import uuid
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from rwe_governance.clock import Clock, day_string, utcnow
from rwe_governance.config import settings
from rwe_governance.database.models import (
    CohortMember,
    ConsentScope,
    DataAccessDecision,
    DateRange,
    ExportAccessEntry,
    ExportFormat,
    ExportMetadata,
    FileManifestEntry,
    RWEExportConfig,
    RWEExportPackage,
)
from rwe_governance.database.repositories import (
    CohortMemberRepository,
    CohortRepository,
    ExportEligibilityRepository,
    ExportRepository,
    QualityScoreRepository,
)
from rwe_governance.exceptions import ExportError, GovernanceDeniedError
from rwe_governance.export.serializers import (
    CanonicalDataset,
    FILE_EXTENSIONS,
    SERIALIZERS,
    serialize_records,
)
from rwe_governance.governance.audit_logger import AuditLogger
from rwe_governance.governance.eligibility import MEMBERSHIP_SCOPES, PARTNER_SCOPES
from rwe_governance.governance.partnership import PartnershipGovernance
from rwe_governance.logging_config import get_logger
from rwe_governance.research.data_quality import round_half_up
from rwe_governance.research.repositories import (
    EngagementProfileRepository,
    ResearchMarkerRepository,
    SensorProfileRepository,
    TrajectoryRepository,
)

logger = get_logger(__name__)


FORMAT_INFO: Dict[ExportFormat, Dict[str, str]] = {
    ExportFormat.NATIVE: {
        "name": "Native JSON",
        "description": "Full-fidelity export in the native nested schema",
        "use_case": "Custom analysis, data warehousing, API integration",
    },
    ExportFormat.CSV_FLAT: {
        "name": "Flat CSV",
        "description": "Simple comma-separated format for spreadsheet analysis",
        "use_case": "Quick analysis, spreadsheet compatibility",
    },
    ExportFormat.CDISC_SDTM: {
        "name": "CDISC SDTM",
        "description": "Study Data Tabulation Model format for regulatory submissions",
        "use_case": "Regulatory submissions, clinical trial integration",
    },
    ExportFormat.FHIR_R4: {
        "name": "FHIR R4",
        "description": "HL7 FHIR Release 4 format for healthcare interoperability",
        "use_case": "EHR integration, healthcare data exchange",
    },
    ExportFormat.OMOP_CDM: {
        "name": "OMOP CDM",
        "description": "Observational Medical Outcomes Partnership Common Data Model",
        "use_case": "Large-scale observational research, network studies",
    },
}

# Data elements an export touches, checked against the agreement's access scope
BASE_DATA_ELEMENTS = ["bucketed_demographics", "signal_summary"]
OPTIONAL_DATA_ELEMENTS = {
    "include_trajectories": "trajectories",
    "include_quality_metrics": "quality_metrics",
    "include_interventions": "intervention_markers",
    "include_engagement": "engagement_profiles",
    "include_sensor_proxies": "sensor_proxies",
}


def requested_data_elements(config: RWEExportConfig) -> List[str]:
    """Data elements an export with this config would release"""
    return BASE_DATA_ELEMENTS + [
        element for flag, element in OPTIONAL_DATA_ELEMENTS.items() if getattr(config, flag)
    ]


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class ExportResult(BaseModel):
    """A stored export package and the rendered file bytes, keyed by filename"""

    package: RWEExportPackage
    payloads: Dict[str, bytes]


def render_metadata_document(package: RWEExportPackage) -> str:
    """
    Plain-text metadata and audit document delivered with an export

    Args:
        package: Export package

    Returns:
        Document text
    """
    rule = "=" * 80
    metadata = package.metadata

    manifest = "\n".join(
        f"  File: {f.filename}\n"
        f"  Records: {f.record_count}\n"
        f"  Hash: sha256:{f.content_hash}\n"
        f"  Description: {f.description}\n"
        for f in package.file_manifest
    )
    if package.access_log:
        access = "\n".join(f"  {a.accessed_at.isoformat()}: {a.accessed_by}" for a in package.access_log)
    else:
        access = "  No access recorded"

    lines = [
        rule,
        "REAL-WORLD EVIDENCE DATA EXPORT PACKAGE".center(80).rstrip(),
        rule,
        "",
        "EXPORT INFORMATION",
        "------------------",
        f"Export ID: {package.id}",
        f"Cohort ID: {package.cohort_id}",
        f"Format: {package.format.value}",
        f"Generated: {package.generated_at.isoformat()}",
        f"Generated By: {package.generated_by}",
    ]
    if package.agreement_id:
        lines.append(f"Agreement ID: {package.agreement_id}")
    lines += [
        "",
        "DATA SUMMARY",
        "------------",
        f"Total Records: {package.record_count}",
        f"Data Quality Score: {metadata.data_quality_score}/100",
        f"Date Range: {day_string(metadata.date_range.start)} to {day_string(metadata.date_range.end)}",
        "",
        "DEIDENTIFICATION",
        "----------------",
        f"Method: {metadata.deidentification_method}",
        "Direct Identifiers: None included",
        "Quasi-Identifiers: Bucketed (age band, region, context)",
        "",
        "FILE MANIFEST",
        "-------------",
        manifest,
    ]
    if metadata.study_id:
        lines += [
            "STUDY INFORMATION",
            "-----------------",
            f"Study ID: {metadata.study_id}",
            f"Protocol Version: {metadata.protocol_version or 'Not specified'}",
            "",
        ]
    lines += [
        "ACCESS LOG",
        "----------",
        access,
        "",
        rule,
        "DATA USE NOTICE",
        rule,
        "This data export contains de-identified, self-reported capacity data.",
        "It does not constitute medical records or clinical data.",
        "Use is governed by the applicable data access agreement.",
        "Re-identification of participants is strictly prohibited.",
        rule,
        "",
    ]
    return "\n".join(lines)


class RWEExportPackager:
    """
    Builds content-hashed export packages in the five interchange formats

    Every format is rendered from one CanonicalDataset. The stored package
    keeps only a SHA-256 hash per file; the bytes are returned to the caller.
    """

    def __init__(
        self,
        cohort_repository: CohortRepository,
        member_repository: CohortMemberRepository,
        quality_repository: QualityScoreRepository,
        partnership: Optional[PartnershipGovernance] = None,
        trajectory_repository: Optional[TrajectoryRepository] = None,
        engagement_repository: Optional[EngagementProfileRepository] = None,
        sensor_profile_repository: Optional[SensorProfileRepository] = None,
        research_marker_repository: Optional[ResearchMarkerRepository] = None,
        export_repository: Optional[ExportRepository] = None,
        eligibility_repository: Optional[ExportEligibilityRepository] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Clock = utcnow,
    ):
        self.cohorts = cohort_repository
        self.members = member_repository
        self.quality_scores = quality_repository
        self.partnership = partnership
        self.trajectories = trajectory_repository or TrajectoryRepository()
        self.engagement_profiles = engagement_repository or EngagementProfileRepository()
        self.sensor_profiles = sensor_profile_repository or SensorProfileRepository()
        self.research_markers = research_marker_repository or ResearchMarkerRepository()
        self.exports = export_repository or ExportRepository()
        self.eligibility = eligibility_repository or ExportEligibilityRepository()
        self.audit_logger = audit_logger
        self.clock = clock

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _check_agreement(self, config: RWEExportConfig, agreement_id: str, generated_by: str) -> DataAccessDecision:
        if self.partnership is None:
            raise ExportError(
                "Agreement-gated export requires partnership governance",
                details={"agreement_id": agreement_id},
            )
        decision = self.partnership.validate_data_access(
            agreement_id,
            requested_data_elements(config),
            config.format,
            requested_by=generated_by,
        )
        if not decision.allowed:
            raise GovernanceDeniedError(
                "Export is outside the agreement's data access scope",
                details={"agreement_id": agreement_id, "decision": decision.model_dump(mode="json")},
            )
        return decision

    def _eligible(self, participant_id: str, required: Tuple[ConsentScope, ...]) -> bool:
        revoked = self.eligibility.revoked_scopes(participant_id)
        return not any(scope in revoked for scope in required)

    def _load_members(self, config: RWEExportConfig, partner_release: bool = False) -> List[CohortMember]:
        required = MEMBERSHIP_SCOPES + (PARTNER_SCOPES if partner_release else ())
        enrolled = [m.member for m in self.members.get_for_cohort(config.cohort_id)]
        members = [m for m in enrolled if self._eligible(m.participant_id, required)]
        if len(members) < len(enrolled):
            logger.info(
                "export_members_withdrawn",
                cohort_id=config.cohort_id,
                excluded=len(enrolled) - len(members),
            )
        if config.date_range is not None:
            start, end = config.date_range.start, config.date_range.end
            members = [m for m in members if m.first_signal_at <= end and m.last_signal_at >= start]
        return members

    def _build_dataset(self, config: RWEExportConfig, members: List[CohortMember]) -> CanonicalDataset:
        participant_ids = {m.participant_id for m in members}

        def consented(scope: ConsentScope):
            return lambda record: (
                record.participant_id in participant_ids and self._eligible(record.participant_id, (scope,))
            )

        dataset = CanonicalDataset(
            members=members,
            exported_at=self.clock(),
            study_label=settings.export.study_label,
            schema_version=settings.export.native_schema_version,
        )
        if config.include_trajectories:
            dataset.trajectories = self.trajectories.find(consented(ConsentScope.TRAJECTORY_EXPORT))
        if config.include_quality_metrics:
            dataset.quality_scores = [
                score for score in (self.quality_scores.get(m.participant_id) for m in members) if score
            ]
        if config.include_engagement:
            dataset.engagement_profiles = self.engagement_profiles.find(consented(ConsentScope.LONGITUDINAL_PATTERNS))
        if config.include_sensor_proxies:
            dataset.sensor_profiles = self.sensor_profiles.find(consented(ConsentScope.SENSOR_DATA))
        if config.include_interventions:
            dataset.research_markers = self.research_markers.find(consented(ConsentScope.INTERVENTION_MARKERS))
        return dataset

    def _companion_files(self, cohort_id: str, dataset: CanonicalDataset) -> List[Tuple[str, List[BaseModel], str]]:
        candidates = [
            (f"trajectories_{cohort_id}.json", dataset.trajectories, "Intervention trajectory reports"),
            (f"quality_{cohort_id}.json", dataset.quality_scores, "Per-participant data quality scores"),
            (f"engagement_{cohort_id}.json", dataset.engagement_profiles, "Engagement profiles"),
            (f"sensor_proxies_{cohort_id}.json", dataset.sensor_profiles, "Sensor proxy profiles"),
            (f"interventions_{cohort_id}.json", dataset.research_markers, "Research-eligible intervention markers"),
        ]
        return [(name, records, description) for name, records, description in candidates if records]

    def generate(
        self,
        config: RWEExportConfig,
        generated_by: str,
        study_id: Optional[str] = None,
        protocol_version: Optional[str] = None,
        agreement_id: Optional[str] = None,
    ) -> Optional[ExportResult]:
        """
        Generate an export package for a cohort

        Args:
            config: Format, cohort and included domains
            generated_by: Who generated the export
            study_id: Study the export is for
            protocol_version: Protocol version of the study
            agreement_id: Agreement the export is released under; checked
                with validate_data_access before anything is read

        Returns:
            ExportResult, or None if the cohort does not exist

        Raises:
            GovernanceDeniedError: If the agreement does not allow the export
            ExportError: If the cohort has no members to export
        """
        if agreement_id is not None:
            self._check_agreement(config, agreement_id, generated_by)

        cohort = self.cohorts.get(config.cohort_id)
        if cohort is None:
            return None

        members = self._load_members(config, partner_release=agreement_id is not None)
        if not members:
            raise ExportError("Cohort is empty", details={"cohort_id": cohort.id})

        dataset = self._build_dataset(config, members)
        export_format = ExportFormat(config.format)
        main_payload = SERIALIZERS[export_format](dataset)

        payloads: Dict[str, bytes] = {}
        main_name = f"cohort_{cohort.id}_{export_format.value}.{FILE_EXTENSIONS[export_format]}"
        payloads[main_name] = main_payload
        manifest = [
            FileManifestEntry(
                filename=main_name,
                content_hash=content_hash(main_payload),
                record_count=len(members),
                description=f"{export_format.value.upper()} export of cohort {cohort.name}",
            )
        ]
        for filename, records, description in self._companion_files(cohort.id, dataset):
            payload = serialize_records(records)
            payloads[filename] = payload
            manifest.append(FileManifestEntry(
                filename=filename,
                content_hash=content_hash(payload),
                record_count=len(records),
                description=description,
            ))

        timestamps = [m.first_signal_at for m in members] + [m.last_signal_at for m in members]
        package = RWEExportPackage(
            id=f"rwe_{uuid.uuid4().hex[:12]}",
            cohort_id=cohort.id,
            format=export_format,
            generated_at=dataset.exported_at,
            generated_by=generated_by,
            record_count=len(members),
            file_manifest=manifest,
            metadata=ExportMetadata(
                study_id=study_id,
                protocol_version=protocol_version,
                data_quality_score=round_half_up(sum(m.quality_score for m in members) / len(members)),
                date_range=DateRange(start=min(timestamps), end=max(timestamps)),
                deidentification_method=settings.export.deidentification_method,
            ),
            agreement_id=agreement_id,
        )
        self.exports.save(package.id, package, expected_version=0)

        logger.info(
            "rwe_export_generated",
            export_id=package.id,
            cohort_id=cohort.id,
            format=export_format.value,
            record_count=package.record_count,
            files=len(manifest),
        )
        return ExportResult(package=package, payloads=payloads)

    # ------------------------------------------------------------------
    # Access and lookup
    # ------------------------------------------------------------------

    def record_access(self, export_id: str, accessed_by: str) -> Optional[RWEExportPackage]:
        """
        Append an access entry to an export's access log

        Returns:
            Updated package, or None if the export does not exist
        """
        with self.exports.locked(export_id):
            versioned = self.exports.store.get_versioned(export_id)
            if versioned is None:
                return None
            package, version = versioned
            accessed_at = self.clock()
            package.access_log.append(ExportAccessEntry(accessed_by=accessed_by, accessed_at=accessed_at))
            self.exports.save(export_id, package, expected_version=version)

        if self.audit_logger is not None:
            self.audit_logger.log_export_access(export_id, accessed_by, accessed_at)
        logger.info("rwe_export_accessed", export_id=export_id, accessed_by=accessed_by)
        return package

    def get_export(self, export_id: str) -> Optional[RWEExportPackage]:
        return self.exports.get(export_id)

    def get_cohort_exports(self, cohort_id: str) -> List[RWEExportPackage]:
        return self.exports.get_for_cohort(cohort_id)

    def render_metadata_document(self, export_id: str) -> Optional[str]:
        package = self.get_export(export_id)
        return render_metadata_document(package) if package else None

    @staticmethod
    def format_info(export_format: ExportFormat) -> Dict[str, Any]:
        return FORMAT_INFO[ExportFormat(export_format)]
