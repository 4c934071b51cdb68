"""Shared fixtures for governance pipeline tests"""

from datetime import datetime, timedelta, timezone

import pytest

from rwe_governance.database.models import (
    CompanyType,
    ConsentScope,
    DataAccessScope,
    EnrollmentProfile,
    ExportFormat,
    PartnershipAgreement,
    PartnershipStatus,
    PartnershipType,
)
from rwe_governance.integration import GovernancePipeline


class FrozenClock:
    """Callable clock that only moves when advanced"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


START = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def pipeline(clock, tmp_path):
    return GovernancePipeline(backend="memory", clock=clock, audit_log_path=str(tmp_path / "audit.jsonl"))


@pytest.fixture
def make_profile(clock):
    """Factory for enrollment profiles anchored at the frozen clock"""

    def factory(**overrides) -> EnrollmentProfile:
        now = clock()
        values = dict(
            birth_year=1990,
            country_code="US",
            primary_context="work",
            secondary_contexts=[],
            signal_count=120,
            days_active=90,
            first_signal_at=now - timedelta(days=90),
            last_signal_at=now - timedelta(days=1),
            has_intervention_markers=False,
            quality_score=75,
        )
        values.update(overrides)
        return EnrollmentProfile(**values)

    return factory


@pytest.fixture
def grant_all():
    """Grant every scope (or the given ones) to a user"""

    def grant(ledger, user_id: str, *scopes: ConsentScope) -> None:
        for scope in scopes or tuple(ConsentScope):
            ledger.grant(user_id, scope)

    return grant


@pytest.fixture
def make_agreement(clock):
    """Factory driving a partnership from inquiry to an active agreement"""

    def factory(
        partnership,
        data_elements=("bucketed_demographics", "signal_summary"),
        export_formats=(ExportFormat.NATIVE, ExportFormat.CSV_FLAT),
        window_days: int = 365,
        activate: bool = True,
    ) -> PartnershipAgreement:
        request = partnership.submit_request(
            company_name="Acme Research",
            contact_email="research@acme.example",
            partnership_type=PartnershipType.DATA_ACCESS,
            company_type=CompanyType.CRO,
        )
        partnership.update_request_status(request.id, PartnershipStatus.NEGOTIATING, "reviewer")
        partnership.update_request_status(request.id, PartnershipStatus.LEGAL_REVIEW, "reviewer")
        agreement = partnership.create_agreement(
            request_id=request.id,
            partner_id="partner-acme",
            partner_name="Acme Research",
            effective_date=clock() - timedelta(days=1),
            expiration_date=clock() + timedelta(days=window_days),
            data_access_scope=DataAccessScope(
                data_elements=list(data_elements),
                export_formats=list(export_formats),
            ),
            created_by="legal",
        )
        partnership.sign_agreement(agreement.id, "legal")
        if activate:
            agreement = partnership.activate_agreement(agreement.id, "legal")
        return partnership.get_agreement(agreement.id)

    return factory
