"""Database module: entity models, keyed stores and repositories."""

from .store import AppendOnlyLog, InMemoryKeyedStore, JsonFileKeyedStore, KeyedStore
from .repositories import (
    BaseRepository,
    CohortMemberRepository,
    CohortRepository,
    ConsentRepository,
    ExportRepository,
    PartnershipAgreementRepository,
    PartnershipRequestRepository,
    ProvenanceRepository,
    QualityScoreRepository,
)

__all__ = [
    "AppendOnlyLog",
    "InMemoryKeyedStore",
    "JsonFileKeyedStore",
    "KeyedStore",
    "BaseRepository",
    "CohortMemberRepository",
    "CohortRepository",
    "ConsentRepository",
    "ExportRepository",
    "PartnershipAgreementRepository",
    "PartnershipRequestRepository",
    "ProvenanceRepository",
    "QualityScoreRepository",
]
