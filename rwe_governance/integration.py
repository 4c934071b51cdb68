"""
Integration module for the governance pipeline - connects all components together.

This module wires the consent ledger, identity mapper, research services,
partnership governance and export packager over one set of keyed stores,
so every component sees the same consents, cohorts and audit trail.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

from rwe_governance.clock import Clock, utcnow
from rwe_governance.config import Settings, settings as default_settings
from rwe_governance.database.models import ConsentAuditEntry, PartnershipAuditEntry
from rwe_governance.database.repositories import (
    CohortMemberRepository,
    CohortRepository,
    ConsentRepository,
    ExportEligibilityRepository,
    ExportRepository,
    PartnershipAgreementRepository,
    PartnershipRequestRepository,
    ProvenanceRepository,
    QualityScoreRepository,
)
from rwe_governance.database.store import AppendOnlyLog, InMemoryKeyedStore, JsonFileKeyedStore, KeyedStore
from rwe_governance.exceptions import ConfigurationError
from rwe_governance.export.packager import RWEExportPackager
from rwe_governance.governance.audit_logger import AuditLog, AuditLogger
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.eligibility import ExportEligibilityTracker
from rwe_governance.governance.identity import ParticipantIdentityMapper, ParticipantMapping
from rwe_governance.governance.partnership import PartnershipGovernance
from rwe_governance.logging_config import get_logger
from rwe_governance.research.cohort_builder import CohortBuilder
from rwe_governance.research.data_quality import DataQualityScorer
from rwe_governance.research.engagement import EngagementSignalRecorder
from rwe_governance.research.interventions import InterventionMarkerRegistry
from rwe_governance.research.models import EngagementSignal
from rwe_governance.research.protocols import ProtocolLibrary
from rwe_governance.research.provenance import ProvenanceTracker
from rwe_governance.research.repositories import (
    EngagementProfileRepository,
    InterventionMarkerRepository,
    ProtocolTemplateRepository,
    ResearchMarkerRepository,
    SensorConfigRepository,
    SensorEventRepository,
    SensorProfileRepository,
    StudyProtocolRepository,
    TrajectoryRepository,
)
from rwe_governance.research.sensors import SensorProxyRecorder
from rwe_governance.research.trajectory import TrajectoryReporter

logger = get_logger(__name__)

BACKENDS = ("memory", "json")


class GovernancePipeline:
    """
    Main integration class that connects all governance pipeline components.

    This class provides a single entry point for initializing and accessing
    all services with shared stores and one audit sink.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Clock = utcnow,
        backend: Optional[str] = None,
        data_dir: Optional[str] = None,
        audit_log_path: Optional[str] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Settings (module-level settings if None)
            clock: Callable returning the current time, shared by all services
            backend: Store backend override (memory or json)
            data_dir: Snapshot directory override for the json backend
            audit_log_path: JSON Lines audit mirror override
        """
        self.config = config or default_settings
        self.clock = clock
        self.backend = backend or self.config.storage.backend
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend: {self.backend}",
                details={"backend": self.backend, "supported": list(BACKENDS)},
            )
        self.data_dir = Path(data_dir or self.config.storage.data_dir)

        self._init_audit(audit_log_path)
        self._init_governance_components()
        self._init_research_components()
        self._init_export_components()

        logger.info("governance_pipeline_initialized", backend=self.backend, data_dir=str(self.data_dir))

    # ------------------------------------------------------------------
    # Store factory
    # ------------------------------------------------------------------

    def _store(self, name: str, model: Type[BaseModel]) -> KeyedStore:
        if self.backend == "json":
            return JsonFileKeyedStore(str(self.data_dir / f"{name}.json"), model, name)
        return InMemoryKeyedStore(name)

    def _log(
        self, log_class: Type[AppendOnlyLog], name: str, model: Type[BaseModel], audited: bool = True
    ) -> AppendOnlyLog:
        path = str(self.data_dir / f"{name}.jsonl") if self.backend == "json" else None
        sink = self.audit_logger.record if audited and self.audit_logger is not None else None
        return log_class(name, path=path, model=model, sink=sink)

    def _repository(self, repository_class):
        return repository_class(self._store(repository_class.collection, repository_class.model))

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _init_audit(self, audit_log_path: Optional[str]) -> None:
        """Initialize the audit sink"""
        path = audit_log_path or self.config.audit.audit_log_path
        if path is None and self.backend == "json":
            path = str(self.data_dir / "audit.jsonl")
        self.audit_logger = AuditLogger(path, clock=self.clock) if path else None

    def _init_governance_components(self) -> None:
        """Initialize consent, identity and partnership components"""
        self.identity_mapper = ParticipantIdentityMapper(
            self._store("participant_mappings", ParticipantMapping), clock=self.clock
        )
        self.consent_ledger = ConsentLedger(
            repository=self._repository(ConsentRepository),
            audit_log=self._log(AuditLog, "consent_audit", ConsentAuditEntry),
            clock=self.clock,
            consent_version=self.config.consent.consent_version,
            default_expiry_days=self.config.consent.default_expiry_days,
        )
        self.eligibility = ExportEligibilityTracker(
            self.identity_mapper, self._repository(ExportEligibilityRepository), clock=self.clock
        )
        self.consent_ledger.add_listener(self.eligibility.on_consent_change)
        self.partnership = PartnershipGovernance(
            request_repository=self._repository(PartnershipRequestRepository),
            agreement_repository=self._repository(PartnershipAgreementRepository),
            audit_log=self._log(AuditLog, "partnership_audit", PartnershipAuditEntry),
            clock=self.clock,
        )

    def _init_research_components(self) -> None:
        """Initialize cohort, quality, provenance and signal-domain components"""
        self.cohort_builder = CohortBuilder(
            self.consent_ledger,
            self.identity_mapper,
            cohort_repository=self._repository(CohortRepository),
            member_repository=self._repository(CohortMemberRepository),
            clock=self.clock,
        )
        self.quality_scorer = DataQualityScorer(
            repository=self._repository(QualityScoreRepository),
            clock=self.clock,
            duplicate_window_seconds=self.config.quality.duplicate_window_seconds,
            outlier_sigma=self.config.quality.outlier_sigma,
        )
        self.provenance = ProvenanceTracker(
            self._repository(ProvenanceRepository), clock=self.clock
        )
        self.engagement = EngagementSignalRecorder(
            self.consent_ledger,
            self.identity_mapper,
            signal_log=self._log(AppendOnlyLog, "engagement_signals", EngagementSignal, audited=False),
            profile_repository=self._repository(EngagementProfileRepository),
            clock=self.clock,
        )
        self.interventions = InterventionMarkerRegistry(
            self.consent_ledger,
            self.identity_mapper,
            repository=self._repository(InterventionMarkerRepository),
            research_repository=self._repository(ResearchMarkerRepository),
            clock=self.clock,
        )
        self.sensors = SensorProxyRecorder(
            self.consent_ledger,
            self.identity_mapper,
            config_repository=self._repository(SensorConfigRepository),
            event_repository=self._repository(SensorEventRepository),
            profile_repository=self._repository(SensorProfileRepository),
            clock=self.clock,
        )
        self.trajectories = TrajectoryReporter(
            self.consent_ledger,
            self.identity_mapper,
            quality_scorer=self.quality_scorer,
            repository=self._repository(TrajectoryRepository),
            clock=self.clock,
        )
        self.protocols = ProtocolLibrary(
            template_repository=self._repository(ProtocolTemplateRepository),
            protocol_repository=self._repository(StudyProtocolRepository),
            clock=self.clock,
        )

    def _init_export_components(self) -> None:
        """Initialize the export packager over participant-keyed repositories only"""
        self.export_packager = RWEExportPackager(
            cohort_repository=self.cohort_builder.cohorts,
            member_repository=self.cohort_builder.members,
            quality_repository=self.quality_scorer.repository,
            partnership=self.partnership,
            trajectory_repository=self.trajectories.reports,
            engagement_repository=self.engagement.profiles,
            sensor_profile_repository=self.sensors.profiles,
            research_marker_repository=self.interventions.research_markers,
            export_repository=self._repository(ExportRepository),
            eligibility_repository=self.eligibility.repository,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, Any]:
        """
        Report record counts per component.

        Returns:
            Dictionary with backend, audit sink and collection sizes
        """
        return {
            "timestamp": self.clock().isoformat(),
            "backend": self.backend,
            "audit_log_path": str(self.audit_logger.audit_log_path) if self.audit_logger else None,
            "collections": {
                "consents": len(self.consent_ledger.repository.list_all()),
                "cohorts": len(self.cohort_builder.cohorts.list_all()),
                "agreements": len(self.partnership.agreements.list_all()),
                "exports": len(self.export_packager.exports.list_all()),
            },
            "audit_entries": {
                "consent": len(self.consent_ledger.audit_log),
                "partnership": len(self.partnership.audit_log),
            },
        }
