"""Intervention marker tags and their research projection"""

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.models import ConsentScope
from rwe_governance.exceptions import ValidationError
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper, PARTICIPANT_ID_ALPHABET
from rwe_governance.research.models import (
    InterventionCategory,
    InterventionMarker,
    ResearchMarker,
    ResearchMarkerSet,
)
from rwe_governance.research.repositories import InterventionMarkerRepository, ResearchMarkerRepository

logger = structlog.get_logger(__name__)


CATEGORY_LABELS: Dict[InterventionCategory, Dict[str, Any]] = {
    InterventionCategory.MEDICATION_START: {
        "label": "Started Medication",
        "description": "Beginning a new medication regimen",
        "examples": ["Started new prescription", "Added supplement"],
    },
    InterventionCategory.MEDICATION_STOP: {
        "label": "Stopped Medication",
        "description": "Discontinuing a medication",
        "examples": ["Completed course", "Discontinued by doctor"],
    },
    InterventionCategory.DOSE_CHANGE: {
        "label": "Dose Adjustment",
        "description": "Change in medication dosage",
        "examples": ["Increased dose", "Reduced dose", "Changed timing"],
    },
    InterventionCategory.THERAPY_START: {
        "label": "Started Therapy",
        "description": "Beginning therapeutic support",
        "examples": ["Started counseling", "Began coaching", "Started group therapy"],
    },
    InterventionCategory.THERAPY_END: {
        "label": "Ended Therapy",
        "description": "Concluding therapeutic engagement",
        "examples": ["Completed program", "Graduated from therapy"],
    },
    InterventionCategory.THERAPY_CHANGE: {
        "label": "Therapy Change",
        "description": "Modification to therapeutic approach",
        "examples": ["Changed therapist", "New approach", "Adjusted frequency"],
    },
    InterventionCategory.LIFESTYLE_CHANGE: {
        "label": "Lifestyle Change",
        "description": "Significant life or habit modification",
        "examples": ["New exercise routine", "Diet change", "Sleep schedule change"],
    },
    InterventionCategory.ENVIRONMENTAL_CHANGE: {
        "label": "Environmental Change",
        "description": "Change in surroundings or situation",
        "examples": ["Moved homes", "New job", "Remote work started"],
    },
    InterventionCategory.SUPPORT_CHANGE: {
        "label": "Support Change",
        "description": "Change in support system",
        "examples": ["New caregiver", "Support group joined", "Care team change"],
    },
    InterventionCategory.OTHER: {
        "label": "Other Event",
        "description": "Other significant event worth tracking",
        "examples": ["Life event", "Milestone", "Transition"],
    },
}

EDITABLE_FIELDS = {"label", "notes", "occurred_at", "is_private"}


def generate_deidentified_id() -> str:
    """Opaque marker ID for research use: INT- plus 12 random characters"""
    return "INT-" + "".join(secrets.choice(PARTICIPANT_ID_ALPHABET) for _ in range(12))


class InterventionMarkerRegistry:
    """Consent-gated intervention markers"""

    def __init__(
        self,
        consent_ledger: ConsentLedger,
        identity_mapper: ParticipantIdentityMapper,
        repository: Optional[InterventionMarkerRepository] = None,
        research_repository: Optional[ResearchMarkerRepository] = None,
        clock: Clock = utcnow,
    ):
        self.consent_ledger = consent_ledger
        self._identity_mapper = identity_mapper
        self.markers = repository or InterventionMarkerRepository()
        self.research_markers = research_repository or ResearchMarkerRepository()
        self.clock = clock

    def create_marker(
        self,
        user_id: str,
        category: InterventionCategory,
        label: str,
        occurred_at: datetime,
        notes: Optional[str] = None,
        is_private: bool = False,
    ) -> Optional[InterventionMarker]:
        """
        Create a marker

        Returns:
            The marker, or None without intervention_markers consent
        """
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.INTERVENTION_MARKERS):
            return None
        if not label:
            raise ValidationError("Marker label is required")

        marker = InterventionMarker(
            id=str(uuid.uuid4()),
            user_id=user_id,
            category=InterventionCategory(category),
            label=label,
            occurred_at=occurred_at,
            created_at=self.clock(),
            notes=notes,
            is_private=is_private,
            deidentified_id=generate_deidentified_id(),
        )
        self.markers.save(marker.id, marker, expected_version=0)

        logger.info("intervention_marker_created", category=marker.category.value, is_private=is_private)
        return marker

    @staticmethod
    def get_category_info(category: InterventionCategory) -> Dict[str, Any]:
        """Display label, description and examples of a category"""
        return dict(CATEGORY_LABELS[InterventionCategory(category)])

    def get_marker(self, marker_id: str) -> Optional[InterventionMarker]:
        return self.markers.get(marker_id)

    def get_user_markers(self, user_id: str) -> List[InterventionMarker]:
        return self.markers.get_for_user(user_id)

    def get_markers_by_category(self, user_id: str, category: InterventionCategory) -> List[InterventionMarker]:
        category = InterventionCategory(category)
        return [m for m in self.get_user_markers(user_id) if m.category == category]

    def get_markers_in_range(self, user_id: str, start: datetime, end: datetime) -> List[InterventionMarker]:
        return [m for m in self.get_user_markers(user_id) if start <= m.occurred_at <= end]

    def update_marker(self, marker_id: str, **updates: Any) -> Optional[InterventionMarker]:
        """
        Update label, notes, occurred_at or is_private

        Returns:
            Updated marker, or None if it does not exist
        """
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError("Marker fields cannot be edited", details={"fields": sorted(unknown)})

        with self.markers.locked(marker_id):
            versioned = self.markers.store.get_versioned(marker_id)
            if versioned is None:
                return None
            marker, version = versioned
            marker = marker.model_copy(update=updates)
            self.markers.save(marker_id, marker, expected_version=version)
        return marker

    def delete_marker(self, marker_id: str) -> bool:
        return self.markers.delete(marker_id)

    def set_privacy(self, marker_id: str, is_private: bool) -> Optional[InterventionMarker]:
        return self.update_marker(marker_id, is_private=is_private)

    def get_research_eligible_markers(self, user_id: str) -> List[ResearchMarker]:
        """Non-private markers without label, notes or user; empty without consent"""
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.INTERVENTION_MARKERS):
            return []
        return [
            ResearchMarker(deidentified_id=m.deidentified_id, category=m.category, occurred_at=m.occurred_at)
            for m in sorted(self.get_user_markers(user_id), key=lambda m: m.occurred_at)
            if not m.is_private
        ]

    def publish_research_markers(self, user_id: str) -> List[ResearchMarker]:
        """
        Store a user's research-eligible markers under their participant ID

        Without consent any previously published set is removed.
        """
        markers = self.get_research_eligible_markers(user_id)
        participant_id = self._identity_mapper.lookup(user_id)
        if not markers:
            if participant_id is not None:
                self.research_markers.delete(participant_id)
            return []

        participant_id = self._identity_mapper.get_or_create(user_id)
        self.research_markers.save(
            participant_id,
            ResearchMarkerSet(participant_id=participant_id, markers=markers, published_at=self.clock()),
        )
        logger.info("research_markers_published", participant_id=participant_id, count=len(markers))
        return markers

    def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        markers = self.get_user_markers(user_id)
        by_category = {c.value: 0 for c in InterventionCategory}
        for marker in markers:
            by_category[marker.category.value] += 1
        occurred = [m.occurred_at for m in markers]
        return {
            "total": len(markers),
            "by_category": by_category,
            "private_count": sum(1 for m in markers if m.is_private),
            "first_marker_at": min(occurred) if occurred else None,
            "last_marker_at": max(occurred) if occurred else None,
        }

    def get_timeline(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        categories: Optional[Iterable[InterventionCategory]] = None,
        include_private: bool = False,
    ) -> List[InterventionMarker]:
        """Markers in occurrence order, filtered by date, category and privacy"""
        markers = self.get_user_markers(user_id)
        if start is not None:
            markers = [m for m in markers if m.occurred_at >= start]
        if end is not None:
            markers = [m for m in markers if m.occurred_at <= end]
        if categories:
            wanted = {InterventionCategory(c) for c in categories}
            markers = [m for m in markers if m.category in wanted]
        if not include_private:
            markers = [m for m in markers if not m.is_private]
        return sorted(markers, key=lambda m: m.occurred_at)

    def find_nearby_markers(
        self, user_id: str, reference: datetime, window_days: int
    ) -> Dict[str, List[InterventionMarker]]:
        """
        Markers within window_days of a reference time

        Returns:
            ``before`` (nearest first) and ``after`` (earliest first)
        """
        window = timedelta(days=window_days)
        markers = self.get_user_markers(user_id)
        before = [m for m in markers if reference - window <= m.occurred_at < reference]
        after = [m for m in markers if reference <= m.occurred_at <= reference + window]
        return {
            "before": sorted(before, key=lambda m: m.occurred_at, reverse=True),
            "after": sorted(after, key=lambda m: m.occurred_at),
        }
