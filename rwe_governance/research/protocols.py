"""Study protocol templates, study protocols and IRB submission documents"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.exceptions import NotFoundError, ValidationError
from rwe_governance.research.models import (
    ProtocolStatus,
    ProtocolTemplate,
    ProtocolType,
    StudyProtocol,
)
from rwe_governance.research.repositories import ProtocolTemplateRepository, StudyProtocolRepository

logger = structlog.get_logger(__name__)


DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "type": ProtocolType.OBSERVATIONAL,
        "title": "Longitudinal Capacity Pattern Study",
        "version": "1.0.0",
        "description": "Observational study of self-reported capacity patterns over time in diverse populations.",
        "primary_endpoints": [
            "Change in mean normalized capacity over 90 days",
            "Capacity pattern stability (variance)",
        ],
        "secondary_endpoints": [
            "Correlation between capacity drivers and capacity levels",
            "Temporal patterns (day-of-week, time-of-day)",
        ],
        "inclusion_criteria": {"min_signal_count": 30, "min_days_active": 30},
        "estimated_duration": "6 months",
        "estimated_cohort_size": 500,
        "data_elements_required": [
            "Normalized capacity signals",
            "Capacity driver categories",
            "Signal timestamps",
        ],
        "irb_language": {
            "study_purpose": (
                "This study aims to understand patterns in self-reported functional capacity across diverse "
                "populations. Your participation will help researchers identify trends and factors that "
                "influence capacity over time."
            ),
            "participant_rights": (
                "Your participation is entirely voluntary. You may withdraw at any time without penalty. "
                "You have the right to access your data, request corrections, and request deletion of your data."
            ),
            "data_handling": (
                "Your data will be de-identified before any research use. Direct identifiers (name, email, etc.) "
                "will never be shared with researchers. Only aggregate patterns and de-identified individual "
                "trajectories will be analyzed."
            ),
            "risks_benefits": (
                "Risks: Minimal. Some participants may experience mild discomfort when reflecting on capacity "
                "fluctuations. Benefits: Contributing to research that may help others understand capacity "
                "patterns. No direct medical benefit is expected."
            ),
            "withdrawal_process": (
                "To withdraw, use the Research Participation settings in the app. Previously exported "
                "de-identified data cannot be recalled, but no new data will be shared after withdrawal."
            ),
        },
        "is_published": True,
    },
    {
        "type": ProtocolType.RWE_STUDY,
        "title": "Real-World Capacity Response Study",
        "version": "1.0.0",
        "description": (
            "Study of capacity trajectories around self-reported life interventions "
            "(medication changes, therapy, lifestyle modifications)."
        ),
        "primary_endpoints": [
            "Pre/post capacity trajectory comparison",
            "Time to capacity stabilization after intervention",
        ],
        "secondary_endpoints": [
            "Intervention category effects",
            "Baseline capacity as predictor of response",
        ],
        "inclusion_criteria": {"min_signal_count": 60, "min_days_active": 60, "has_intervention_markers": True},
        "estimated_duration": "12 months",
        "estimated_cohort_size": 200,
        "data_elements_required": [
            "Normalized capacity signals",
            "Intervention marker categories",
            "Intervention timestamps",
            "Pre/post trajectory windows",
        ],
        "irb_language": {
            "study_purpose": (
                "This study examines how self-reported capacity patterns change around major life events or "
                "interventions that you have chosen to record. No claims about treatment effectiveness will be made."
            ),
            "participant_rights": (
                "Your participation is entirely voluntary. You control which intervention markers are shared "
                "with research. You may mark any marker as private to exclude it from research."
            ),
            "data_handling": (
                'Intervention categories (e.g., "started therapy") are included, but specific details '
                "(e.g., therapist name, medication name) are never shared. All data is de-identified."
            ),
            "risks_benefits": (
                "Risks: Minimal. Reflecting on interventions may cause mild emotional response. Benefits: "
                "Contributing to understanding of how people experience changes around life events."
            ),
            "withdrawal_process": (
                "Withdraw through app settings at any time. Mark individual markers as private to exclude "
                "specific events."
            ),
        },
        "is_published": True,
    },
    {
        "type": ProtocolType.REGISTRY,
        "title": "Capacity Tracking Registry",
        "version": "1.0.0",
        "description": "Long-term registry of capacity patterns for population-level research.",
        "primary_endpoints": [
            "Population capacity distribution",
            "Demographic pattern variations",
        ],
        "secondary_endpoints": [
            "Seasonal capacity variations",
            "Regional capacity patterns",
        ],
        "inclusion_criteria": {"min_signal_count": 90, "min_days_active": 90},
        "estimated_duration": "Ongoing",
        "estimated_cohort_size": 10000,
        "data_elements_required": [
            "Normalized capacity signals",
            "Age band",
            "Region bucket",
            "Context category",
        ],
        "irb_language": {
            "study_purpose": (
                "This registry collects de-identified capacity data to enable future research studies. Your "
                "contribution helps build a valuable resource for understanding functional capacity across populations."
            ),
            "participant_rights": (
                "Voluntary participation. Your data contributes to a shared research resource. You may withdraw, "
                "preventing future data contribution."
            ),
            "data_handling": (
                "Only bucketed demographic data (age range, region) is collected. No precise ages, locations, "
                "or identifying information is included."
            ),
            "risks_benefits": (
                "Risks: Minimal. Benefits: Contributing to long-term research infrastructure. "
                "No direct benefit to participants."
            ),
            "withdrawal_process": (
                "Withdraw through app settings. Previously contributed registry data cannot be removed "
                "but will not be updated."
            ),
        },
        "is_published": True,
    },
    {
        "type": ProtocolType.PILOT,
        "title": "Pilot Study Template",
        "version": "1.0.0",
        "description": "Template for small-scale feasibility and pilot studies.",
        "primary_endpoints": [
            "Feasibility metrics (enrollment, retention)",
            "Data quality assessment",
        ],
        "secondary_endpoints": ["Preliminary capacity patterns"],
        "inclusion_criteria": {"min_signal_count": 14, "min_days_active": 14},
        "estimated_duration": "3 months",
        "estimated_cohort_size": 50,
        "data_elements_required": [
            "Normalized capacity signals",
            "Engagement metrics",
            "Data quality scores",
        ],
        "irb_language": {
            "study_purpose": (
                "This pilot study tests the feasibility of using app data for research purposes. The focus is "
                "on data quality and participant engagement rather than capacity outcomes."
            ),
            "participant_rights": (
                "Voluntary participation in a limited pilot study. Full rights to access and delete your data."
            ),
            "data_handling": "Pilot data may be used to improve research methods. All data is de-identified.",
            "risks_benefits": (
                "Risks: Minimal. Benefits: Helping improve research methods for future studies."
            ),
            "withdrawal_process": "Withdraw at any time through app settings.",
        },
        "is_published": True,
    },
    {
        "type": ProtocolType.VALIDATION,
        "title": "Data Quality Validation Study",
        "version": "1.0.0",
        "description": "Validation of app capacity data against external measures.",
        "primary_endpoints": [
            "Correlation with external measures",
            "Test-retest reliability",
        ],
        "secondary_endpoints": [
            "Sensitivity to known changes",
            "Comparison with established instruments",
        ],
        "inclusion_criteria": {"min_signal_count": 30, "min_days_active": 30},
        "estimated_duration": "6 months",
        "estimated_cohort_size": 100,
        "data_elements_required": [
            "Normalized capacity signals",
            "External validation data (collected separately)",
            "Data quality metrics",
        ],
        "irb_language": {
            "study_purpose": (
                "This study validates the reliability and validity of app capacity data by comparing it "
                "with established measures."
            ),
            "participant_rights": (
                "You may be asked to complete additional assessments outside the app. Participation in "
                "validation activities is voluntary."
            ),
            "data_handling": (
                "Validation study data is kept separate from registry data. De-identification maintained."
            ),
            "risks_benefits": (
                "Risks: Additional time for validation measures. Benefits: Contributing to scientific "
                "validation of capacity tracking methods."
            ),
            "withdrawal_process": (
                "Withdraw at any time. Validation data collected separately may be retained per that "
                "study's protocol."
            ),
        },
        "is_published": True,
    },
]

# Fields that a status update may set alongside the status
STATUS_DETAIL_FIELDS = {
    "irb_approval_number",
    "irb_approval_date",
    "start_date",
    "end_date",
    "cohort_id",
    "data_access_agreement_id",
}

RULE = "=" * 80


def _section(title: str, body: str) -> str:
    return f"{title}\n{'-' * len(title)}\n{body}\n"


def _banner(title: str) -> str:
    return f"{RULE}\n{title.center(80).rstrip()}\n{RULE}\n"


def render_irb_submission(
    protocol: StudyProtocol,
    template: ProtocolTemplate,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Render the plain-text IRB submission document of a study protocol

    Args:
        protocol: Study protocol being submitted
        template: Template the protocol was created from
        generated_at: Timestamp printed in the footer (now if omitted)

    Returns:
        Submission document text
    """
    if protocol.template_id != template.id:
        raise ValidationError(
            "Protocol was not created from this template",
            details={"protocol_id": protocol.id, "template_id": template.id},
        )
    generated_at = generated_at or utcnow()
    criteria = template.inclusion_criteria

    inclusion = [
        f"- Minimum signals logged: {criteria.min_signal_count or 'None specified'}",
        f"- Minimum days active: {criteria.min_days_active or 'None specified'}",
    ]
    if criteria.has_intervention_markers:
        inclusion.append("- Must have intervention markers")
    if criteria.age_bands:
        inclusion.append(f"- Age bands: {', '.join(b.value for b in criteria.age_bands)}")
    if criteria.regions:
        inclusion.append(f"- Regions: {', '.join(r.value for r in criteria.regions)}")

    irb = template.irb_language
    parts = [
        _banner("INSTITUTIONAL REVIEW BOARD SUBMISSION"),
        _section(
            "STUDY INFORMATION",
            f"Protocol ID: {protocol.id}\n"
            f"Title: {protocol.title}\n"
            f"Version: {protocol.version}\n"
            f"Type: {template.type.value}\n\n"
            f"Sponsor: {protocol.sponsor_name}\n"
            f"Principal Investigator: {protocol.principal_investigator}",
        ),
        _section("STUDY DESCRIPTION", template.description),
        _section(
            "PRIMARY ENDPOINTS",
            "\n".join(f"{i}. {e}" for i, e in enumerate(template.primary_endpoints, start=1)),
        ),
        _section(
            "SECONDARY ENDPOINTS",
            "\n".join(f"{i}. {e}" for i, e in enumerate(template.secondary_endpoints, start=1)),
        ),
        _section("INCLUSION CRITERIA", "\n".join(inclusion)),
        _section(
            "ESTIMATED PARAMETERS",
            f"Duration: {template.estimated_duration}\nCohort Size: {template.estimated_cohort_size}",
        ),
        _section("DATA ELEMENTS", "\n".join(f"- {d}" for d in template.data_elements_required)),
        _banner("PARTICIPANT CONSENT LANGUAGE"),
        _section("STUDY PURPOSE", irb.study_purpose),
        _section("PARTICIPANT RIGHTS", irb.participant_rights),
        _section("DATA HANDLING", irb.data_handling),
        _section("RISKS AND BENEFITS", irb.risks_benefits),
        _section("WITHDRAWAL PROCESS", irb.withdrawal_process),
        f"{RULE}\nGenerated: {generated_at.isoformat()}\nProtocol Status: {protocol.status.value}\n{RULE}\n",
    ]
    return "\n".join(parts)


class ProtocolLibrary:
    """Protocol templates and the study protocols created from them"""

    def __init__(
        self,
        template_repository: Optional[ProtocolTemplateRepository] = None,
        protocol_repository: Optional[StudyProtocolRepository] = None,
        clock: Clock = utcnow,
    ):
        self.templates = template_repository or ProtocolTemplateRepository()
        self.protocols = protocol_repository or StudyProtocolRepository()
        self.clock = clock

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_templates(self) -> List[ProtocolTemplate]:
        return self.templates.list_all()

    def get_published_templates(self) -> List[ProtocolTemplate]:
        return self.templates.get_published()

    def get_templates_by_type(self, protocol_type: ProtocolType) -> List[ProtocolTemplate]:
        protocol_type = ProtocolType(protocol_type)
        return [t for t in self.get_published_templates() if t.type == protocol_type]

    def get_template(self, template_id: str) -> Optional[ProtocolTemplate]:
        return self.templates.get(template_id)

    def create_template(self, **fields: Any) -> ProtocolTemplate:
        """Store a new template; ID and timestamps are assigned here"""
        now = self.clock()
        template = ProtocolTemplate.model_validate({
            **fields,
            "id": f"ptpl_{uuid.uuid4().hex[:12]}",
            "created_at": now,
            "last_modified_at": now,
        })
        self.templates.save(template.id, template, expected_version=0)

        logger.info("protocol_template_created", template_id=template.id, type=template.type.value)
        return template

    def initialize_default_templates(self) -> int:
        """
        Seed the default templates into an empty library

        Returns:
            Number of templates created (0 if any template already exists)
        """
        if self.templates.list_all():
            return 0
        for template in DEFAULT_TEMPLATES:
            self.create_template(**template)
        return len(DEFAULT_TEMPLATES)

    # ------------------------------------------------------------------
    # Study protocols
    # ------------------------------------------------------------------

    def create_protocol(
        self,
        template_id: str,
        title: str,
        sponsor_id: str,
        sponsor_name: str,
        principal_investigator: str,
    ) -> StudyProtocol:
        """
        Create a draft study protocol from a template

        Raises:
            NotFoundError: If the template does not exist
        """
        if self.get_template(template_id) is None:
            raise NotFoundError("Template not found", details={"template_id": template_id})

        now = self.clock()
        protocol = StudyProtocol(
            id=f"prot_{uuid.uuid4().hex[:12]}",
            template_id=template_id,
            title=title,
            sponsor_id=sponsor_id,
            sponsor_name=sponsor_name,
            principal_investigator=principal_investigator,
            created_at=now,
            last_modified_at=now,
        )
        self.protocols.save(protocol.id, protocol, expected_version=0)

        logger.info("study_protocol_created", protocol_id=protocol.id, template_id=template_id)
        return protocol

    def get_protocols(self) -> List[StudyProtocol]:
        return self.protocols.list_all()

    def get_protocol(self, protocol_id: str) -> Optional[StudyProtocol]:
        return self.protocols.get(protocol_id)

    def get_protocols_by_sponsor(self, sponsor_id: str) -> List[StudyProtocol]:
        return self.protocols.get_by_sponsor(sponsor_id)

    def get_protocols_by_status(self, status: ProtocolStatus) -> List[StudyProtocol]:
        return self.protocols.get_by_status(status)

    def update_status(self, protocol_id: str, status: ProtocolStatus, **details: Any) -> Optional[StudyProtocol]:
        """
        Move a protocol to a new status, optionally recording IRB and study details

        Returns:
            Updated protocol, or None if it does not exist
        """
        unknown = set(details) - STATUS_DETAIL_FIELDS
        if unknown:
            raise ValidationError("Unknown protocol fields", details={"fields": sorted(unknown)})

        with self.protocols.locked(protocol_id):
            versioned = self.protocols.store.get_versioned(protocol_id)
            if versioned is None:
                return None
            protocol, version = versioned
            protocol = StudyProtocol.model_validate({
                **protocol.model_dump(),
                **details,
                "status": ProtocolStatus(status),
                "last_modified_at": self.clock(),
            })
            self.protocols.save(protocol_id, protocol, expected_version=version)

        logger.info("study_protocol_status_updated", protocol_id=protocol_id, status=protocol.status.value)
        return protocol

    def generate_irb_submission(self, protocol_id: str) -> str:
        """
        IRB submission document of a stored protocol

        Raises:
            NotFoundError: If the protocol or its template does not exist
        """
        protocol = self.get_protocol(protocol_id)
        if protocol is None:
            raise NotFoundError("Protocol not found", details={"protocol_id": protocol_id})
        template = self.get_template(protocol.template_id)
        if template is None:
            raise NotFoundError("Template not found", details={"template_id": protocol.template_id})
        return render_irb_submission(protocol, template, self.clock())

    def get_summary(self) -> Dict[str, Any]:
        templates = {t.id: t for t in self.get_templates()}
        protocols = self.get_protocols()

        by_status = {status.value: 0 for status in ProtocolStatus}
        by_type = {kind.value: 0 for kind in ProtocolType}
        for protocol in protocols:
            by_status[protocol.status.value] += 1
            template = templates.get(protocol.template_id)
            if template is not None:
                by_type[template.type.value] += 1

        return {
            "total_templates": len(templates),
            "published_templates": sum(1 for t in templates.values() if t.is_published),
            "total_studies": len(protocols),
            "by_status": by_status,
            "by_type": by_type,
        }
