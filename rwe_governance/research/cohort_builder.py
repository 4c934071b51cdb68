"""Research cohort construction over de-identified members"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.models import (
    AgeBand,
    Cohort,
    CohortCriteria,
    CohortMember,
    CohortMembership,
    ConsentScope,
    ContextBucket,
    EnrollmentProfile,
    RegionBucket,
)
from rwe_governance.database.repositories import CohortMemberRepository, CohortRepository
from rwe_governance.exceptions import LockedEntityError, ValidationError
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.data_quality import round_half_up

logger = structlog.get_logger(__name__)


REGION_COUNTRIES = {
    RegionBucket.NORTH_AMERICA: {"US", "CA", "MX"},
    RegionBucket.EUROPE: {
        "GB", "DE", "FR", "IT", "ES", "NL", "BE", "AT", "CH",
        "SE", "NO", "DK", "FI", "IE", "PT", "PL",
    },
    RegionBucket.ASIA_PACIFIC: {"AU", "NZ", "JP", "KR", "SG", "HK", "TW", "IN"},
    RegionBucket.LATIN_AMERICA: {"BR", "AR", "CL", "CO", "PE"},
}

AGE_BAND_UPPER_BOUNDS = [
    (25, AgeBand.AGE_18_24),
    (35, AgeBand.AGE_25_34),
    (45, AgeBand.AGE_35_44),
    (55, AgeBand.AGE_45_54),
    (65, AgeBand.AGE_55_64),
]


def calculate_age_band(birth_year: int, today: Optional[datetime] = None) -> AgeBand:
    """Bucket a birth year into an age band"""
    year = (today or utcnow()).year
    age = year - birth_year
    for upper, band in AGE_BAND_UPPER_BOUNDS:
        if age < upper:
            return band
    return AgeBand.AGE_65_PLUS


def determine_region_bucket(country_code: str) -> RegionBucket:
    """Bucket an ISO country code into a world region"""
    code = (country_code or "").strip().upper()
    for region, countries in REGION_COUNTRIES.items():
        if code in countries:
            return region
    return RegionBucket.OTHER


def infer_context_bucket(primary: Optional[str], secondary: Iterable[str] = ()) -> ContextBucket:
    """
    Reduce usage context labels to one bucket

    Exactly one distinct non-mixed label maps to itself. No labels, several
    labels or an unknown label all map to mixed.
    """
    labels = {label.strip().lower() for label in [primary, *secondary] if label}
    if len(labels) != 1:
        return ContextBucket.MIXED
    label = labels.pop()
    try:
        return ContextBucket(label)
    except ValueError:
        return ContextBucket.MIXED


def matches_criteria(member: CohortMember, criteria: CohortCriteria) -> bool:
    """Conjunctive match; unset criteria impose no constraint"""
    if criteria.age_bands is not None and member.age_band not in criteria.age_bands:
        return False
    if criteria.regions is not None and member.region not in criteria.regions:
        return False
    if criteria.contexts is not None and member.context not in criteria.contexts:
        return False
    if criteria.min_signal_count is not None and member.signal_count < criteria.min_signal_count:
        return False
    if criteria.min_days_active is not None and member.days_active < criteria.min_days_active:
        return False
    if criteria.date_range is not None:
        if member.last_signal_at < criteria.date_range.start or member.first_signal_at > criteria.date_range.end:
            return False
    if criteria.has_intervention_markers is not None:
        if member.has_intervention_markers != criteria.has_intervention_markers:
            return False
    return True


class CohortBuilder:
    """Creates cohorts and enrolls consenting users as bucketed members"""

    def __init__(
        self,
        consent_ledger: ConsentLedger,
        identity_mapper: ParticipantIdentityMapper,
        cohort_repository: Optional[CohortRepository] = None,
        member_repository: Optional[CohortMemberRepository] = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize CohortBuilder

        Args:
            consent_ledger: Ledger checked for cohort_inclusion consent
            identity_mapper: Resolves users to participant IDs
            cohort_repository: Repository of cohorts
            member_repository: Repository of cohort memberships
            clock: Callable returning the current time
        """
        self.consent_ledger = consent_ledger
        self._identity_mapper = identity_mapper
        self.cohorts = cohort_repository or CohortRepository()
        self.members = member_repository or CohortMemberRepository()
        self.clock = clock

    # ------------------------------------------------------------------
    # Cohorts
    # ------------------------------------------------------------------

    def create_cohort(
        self,
        name: str,
        created_by: str,
        criteria: Optional[CohortCriteria] = None,
        description: str = "",
        study_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Cohort:
        """Create an unlocked, empty cohort"""
        if not name:
            raise ValidationError("Cohort name is required")

        cohort = Cohort(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            criteria=criteria or CohortCriteria(),
            created_at=self.clock(),
            created_by=created_by,
            study_id=study_id,
            expires_at=expires_at,
        )
        self.cohorts.save(cohort.id, cohort, expected_version=0)

        logger.info("cohort_created", cohort_id=cohort.id, study_id=study_id)
        return cohort

    def get_cohort(self, cohort_id: str) -> Optional[Cohort]:
        return self.cohorts.get(cohort_id)

    def get_cohorts(self) -> List[Cohort]:
        return self.cohorts.list_all()

    def get_active_cohorts(self) -> List[Cohort]:
        """Cohorts that have not expired"""
        now = self.clock()
        return self.cohorts.find(lambda c: c.expires_at is None or c.expires_at > now)

    def get_cohorts_by_study(self, study_id: str) -> List[Cohort]:
        return self.cohorts.find(lambda c: c.study_id == study_id)

    @staticmethod
    def _ensure_unlocked(cohort: Cohort, operation: str) -> None:
        if cohort.is_locked:
            logger.warning("locked_cohort_modification_rejected", cohort_id=cohort.id, operation=operation)
            raise LockedEntityError(
                f"Cohort {cohort.id} is locked",
                details={"cohort_id": cohort.id, "operation": operation},
            )

    def update_criteria(self, cohort_id: str, criteria: CohortCriteria) -> Optional[Cohort]:
        """
        Replace a cohort's criteria

        Returns:
            Updated cohort, or None if it does not exist

        Raises:
            LockedEntityError: If the cohort is locked
        """
        with self.cohorts.locked(cohort_id):
            versioned = self.cohorts.store.get_versioned(cohort_id)
            if versioned is None:
                return None
            cohort, version = versioned
            self._ensure_unlocked(cohort, "update_criteria")
            cohort = cohort.model_copy(update={"criteria": criteria})
            self.cohorts.save(cohort_id, cohort, expected_version=version)

        logger.info("cohort_criteria_updated", cohort_id=cohort_id)
        return cohort

    def lock_cohort(self, cohort_id: str) -> Optional[Cohort]:
        """Lock a cohort; locking is irreversible and repeat calls are no-ops"""
        with self.cohorts.locked(cohort_id):
            versioned = self.cohorts.store.get_versioned(cohort_id)
            if versioned is None:
                return None
            cohort, version = versioned
            if cohort.is_locked:
                return cohort
            cohort = cohort.model_copy(update={"is_locked": True, "locked_at": self.clock()})
            self.cohorts.save(cohort_id, cohort, expected_version=version)

        logger.info("cohort_locked", cohort_id=cohort_id, member_count=cohort.member_count)
        return cohort

    def delete_cohort(self, cohort_id: str) -> bool:
        """
        Delete an unlocked cohort and its memberships

        Returns:
            False if the cohort does not exist

        Raises:
            LockedEntityError: If the cohort is locked
        """
        with self.cohorts.locked(cohort_id):
            cohort = self.cohorts.get(cohort_id)
            if cohort is None:
                return False
            self._ensure_unlocked(cohort, "delete_cohort")
            removed = self.members.delete_for_cohort(cohort_id)
            self.cohorts.delete(cohort_id)

        logger.info("cohort_deleted", cohort_id=cohort_id, members_removed=removed)
        return True

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _build_member(self, participant_id: str, profile: EnrollmentProfile) -> CohortMember:
        return CohortMember(
            participant_id=participant_id,
            age_band=calculate_age_band(profile.birth_year, self.clock()),
            region=determine_region_bucket(profile.country_code),
            context=infer_context_bucket(profile.primary_context, profile.secondary_contexts),
            signal_count=profile.signal_count,
            days_active=profile.days_active,
            first_signal_at=profile.first_signal_at,
            last_signal_at=profile.last_signal_at,
            has_intervention_markers=profile.has_intervention_markers,
            quality_score=profile.quality_score,
        )

    def add_member(self, cohort_id: str, user_id: str, profile: EnrollmentProfile) -> Optional[CohortMember]:
        """
        Enroll a consenting user

        The profile is reduced to bucketed fields and discarded; only the
        participant ID links the member to the user, through the identity
        mapper. Enrolling the same participant twice returns the existing
        member.

        Args:
            cohort_id: Cohort ID
            user_id: Internal user ID
            profile: Identity-bearing enrollment profile

        Returns:
            The member, or None without cohort_inclusion consent or for a
            missing cohort

        Raises:
            LockedEntityError: If the cohort is locked
        """
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.COHORT_INCLUSION):
            logger.info("cohort_enrollment_skipped", cohort_id=cohort_id, reason="no_consent")
            return None

        with self.cohorts.locked(cohort_id):
            versioned = self.cohorts.store.get_versioned(cohort_id)
            if versioned is None:
                return None
            cohort, version = versioned
            self._ensure_unlocked(cohort, "add_member")

            participant_id = self._identity_mapper.get_or_create(user_id)
            key = self.members.key(cohort_id, participant_id)
            existing = self.members.get(key)
            if existing is not None:
                return existing.member

            member = self._build_member(participant_id, profile)
            self.members.save(
                key,
                CohortMembership(cohort_id=cohort_id, member=member, enrolled_at=self.clock()),
                expected_version=0,
            )
            cohort = cohort.model_copy(update={"member_count": len(self.members.get_for_cohort(cohort_id))})
            self.cohorts.save(cohort_id, cohort, expected_version=version)

        logger.info("cohort_member_added", cohort_id=cohort_id, participant_id=participant_id)
        return member

    def remove_member(self, cohort_id: str, participant_id: str) -> bool:
        """
        Remove a member from an unlocked cohort

        Returns:
            False if the cohort or member does not exist

        Raises:
            LockedEntityError: If the cohort is locked
        """
        with self.cohorts.locked(cohort_id):
            versioned = self.cohorts.store.get_versioned(cohort_id)
            if versioned is None:
                return False
            cohort, version = versioned
            self._ensure_unlocked(cohort, "remove_member")

            if not self.members.delete(self.members.key(cohort_id, participant_id)):
                return False
            cohort = cohort.model_copy(update={"member_count": len(self.members.get_for_cohort(cohort_id))})
            self.cohorts.save(cohort_id, cohort, expected_version=version)

        logger.info("cohort_member_removed", cohort_id=cohort_id, participant_id=participant_id)
        return True

    def get_members(self, cohort_id: str) -> List[CohortMember]:
        return [m.member for m in self.members.get_for_cohort(cohort_id)]

    def matches_criteria(self, member: CohortMember, criteria: CohortCriteria) -> bool:
        return matches_criteria(member, criteria)

    def filter_members(self, cohort_id: str, extra_criteria: Optional[CohortCriteria] = None) -> List[CohortMember]:
        """Members matching the cohort's stored criteria, then any extra criteria"""
        cohort = self.get_cohort(cohort_id)
        if cohort is None:
            return []
        matched = [m for m in self.get_members(cohort_id) if matches_criteria(m, cohort.criteria)]
        if extra_criteria is not None:
            matched = [m for m in matched if matches_criteria(m, extra_criteria)]
        return matched

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_statistics(self, cohort_id: str, min_cell_size: int = 0) -> Optional[Dict[str, Any]]:
        """
        Aggregate statistics of a cohort

        Args:
            cohort_id: Cohort ID
            min_cell_size: Distribution cells with 1..min_cell_size-1 members
                are reported as 0 and listed under ``suppressed_cells``

        Returns:
            Statistics dictionary, or None for a missing cohort
        """
        if self.get_cohort(cohort_id) is None:
            return None
        members = self.get_members(cohort_id)

        distributions = {
            "age_band_distribution": {band.value: 0 for band in AgeBand},
            "region_distribution": {region.value: 0 for region in RegionBucket},
            "context_distribution": {context.value: 0 for context in ContextBucket},
        }
        for member in members:
            distributions["age_band_distribution"][member.age_band.value] += 1
            distributions["region_distribution"][member.region.value] += 1
            distributions["context_distribution"][member.context.value] += 1

        suppressed = []
        if min_cell_size > 1:
            for name, cells in distributions.items():
                for cell, count in cells.items():
                    if 0 < count < min_cell_size:
                        cells[cell] = 0
                        suppressed.append(f"{name}.{cell}")

        def rounded_mean(values: List[int]) -> int:
            return round_half_up(float(np.mean(values))) if values else 0

        return {
            "total_members": len(members),
            **distributions,
            "average_signal_count": rounded_mean([m.signal_count for m in members]),
            "average_days_active": rounded_mean([m.days_active for m in members]),
            "average_quality_score": rounded_mean([m.quality_score for m in members]),
            "members_with_interventions": sum(1 for m in members if m.has_intervention_markers),
            "suppressed_cells": suppressed,
        }

    def export_manifest(self, cohort_id: str, min_cell_size: int = 0) -> Optional[Dict[str, Any]]:
        """Cohort description for partners, without created_by"""
        cohort = self.get_cohort(cohort_id)
        if cohort is None:
            return None
        return {
            "cohort": cohort.model_dump(mode="json", exclude={"created_by"}),
            "statistics": self.get_statistics(cohort_id, min_cell_size=min_cell_size),
            "member_count": cohort.member_count,
        }
