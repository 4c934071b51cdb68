"""Repository classes over keyed stores."""

from typing import Callable, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from rwe_governance.database.models import (
    Consent,
    ConsentScope,
    Cohort,
    CohortMembership,
    DataQualityScore,
    DataProvenanceRecord,
    ExportEligibility,
    PartnershipRequest,
    PartnershipAgreement,
    RWEExportPackage,
)
from rwe_governance.database.store import KeyedStore, InMemoryKeyedStore

ModelT = TypeVar("ModelT", bound=BaseModel)


class BaseRepository(Generic[ModelT]):
    """Base repository with common keyed store operations."""

    collection = "records"
    model: Type[BaseModel] = BaseModel

    def __init__(self, store: Optional[KeyedStore] = None):
        """
        Initialize repository.

        Args:
            store: Backing keyed store (in-memory if omitted)
        """
        self.store = store if store is not None else InMemoryKeyedStore(self.collection)

    def get(self, key: str) -> Optional[ModelT]:
        return self.store.get(key)

    def save(self, key: str, entity: ModelT, expected_version: Optional[int] = None) -> int:
        return self.store.put(key, entity, expected_version=expected_version)

    def delete(self, key: str) -> bool:
        return self.store.delete(key)

    def list_all(self) -> List[ModelT]:
        return self.store.values()

    def find(self, predicate: Callable[[ModelT], bool]) -> List[ModelT]:
        return [entity for entity in self.store.values() if predicate(entity)]

    def locked(self, key: str):
        return self.store.locked(key)


class ConsentRepository(BaseRepository[Consent]):
    """Repository for consent records, one per (user, scope)."""

    collection = "consents"
    model = Consent

    @staticmethod
    def key(user_id: str, scope: ConsentScope) -> str:
        return f"{user_id}:{ConsentScope(scope).value}"

    def get_for_scope(self, user_id: str, scope: ConsentScope) -> Optional[Consent]:
        return self.get(self.key(user_id, scope))

    def get_for_user(self, user_id: str) -> List[Consent]:
        return self.find(lambda c: c.user_id == user_id)


class CohortRepository(BaseRepository[Cohort]):
    """Repository for cohorts."""

    collection = "cohorts"
    model = Cohort


class CohortMemberRepository(BaseRepository[CohortMembership]):
    """Repository for cohort memberships."""

    collection = "cohort_members"
    model = CohortMembership

    @staticmethod
    def key(cohort_id: str, participant_id: str) -> str:
        return f"{cohort_id}:{participant_id}"

    def get_for_cohort(self, cohort_id: str) -> List[CohortMembership]:
        return self.find(lambda m: m.cohort_id == cohort_id)

    def delete_for_cohort(self, cohort_id: str) -> int:
        """
        Delete every membership of a cohort.

        Returns:
            Number of memberships removed
        """
        removed = 0
        for membership in self.get_for_cohort(cohort_id):
            if self.delete(self.key(cohort_id, membership.member.participant_id)):
                removed += 1
        return removed


class QualityScoreRepository(BaseRepository[DataQualityScore]):
    """Repository for data quality scores keyed by participant ID."""

    collection = "quality_scores"
    model = DataQualityScore


class ProvenanceRepository(BaseRepository[DataProvenanceRecord]):
    """Repository for provenance records keyed by data point ID."""

    collection = "provenance"
    model = DataProvenanceRecord

    def get_for_participant(self, participant_id: str) -> List[DataProvenanceRecord]:
        return self.find(lambda r: r.participant_id == participant_id)


class PartnershipRequestRepository(BaseRepository[PartnershipRequest]):
    """Repository for partnership requests."""

    collection = "partnership_requests"
    model = PartnershipRequest


class PartnershipAgreementRepository(BaseRepository[PartnershipAgreement]):
    """Repository for partnership agreements."""

    collection = "partnership_agreements"
    model = PartnershipAgreement


class ExportRepository(BaseRepository[RWEExportPackage]):
    """Repository for RWE export packages."""

    collection = "exports"
    model = RWEExportPackage

    def get_for_cohort(self, cohort_id: str) -> List[RWEExportPackage]:
        return self.find(lambda e: e.cohort_id == cohort_id)


class ExportEligibilityRepository(BaseRepository[ExportEligibility]):
    """Repository for withdrawn consent scopes keyed by participant ID."""

    collection = "export_eligibility"
    model = ExportEligibility

    def revoked_scopes(self, participant_id: str) -> List[ConsentScope]:
        eligibility = self.get(participant_id)
        return list(eligibility.revoked_scopes) if eligibility else []
