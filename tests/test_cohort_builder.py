"""Tests for cohort construction"""

from datetime import timedelta

import pytest

from rwe_governance.database.models import (
    AgeBand,
    CohortCriteria,
    CohortMember,
    ConsentScope,
    ContextBucket,
    DateRange,
    RegionBucket,
)
from rwe_governance.exceptions import LockedEntityError, ValidationError
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.cohort_builder import (
    CohortBuilder,
    calculate_age_band,
    determine_region_bucket,
    infer_context_bucket,
    matches_criteria,
)


@pytest.fixture
def ledger(clock):
    return ConsentLedger(clock=clock)


@pytest.fixture
def builder(ledger, clock):
    return CohortBuilder(ledger, ParticipantIdentityMapper(clock=clock), clock=clock)


@pytest.fixture
def cohort(builder):
    return builder.create_cohort("Work stress", created_by="researcher", study_id="study-1")


# participant, age band, region, context, signals, days active, first/last signal (days ago), markers
MEMBER_POOL = [
    ("P-1", AgeBand.AGE_25_34, RegionBucket.NORTH_AMERICA, ContextBucket.WORK, 150, 90, 90, 1, False),
    ("P-2", AgeBand.AGE_45_54, RegionBucket.EUROPE, ContextBucket.EDUCATION, 40, 20, 30, 10, True),
    ("P-3", AgeBand.AGE_65_PLUS, RegionBucket.ASIA_PACIFIC, ContextBucket.CAREGIVING, 300, 200, 400, 250, True),
    ("P-4", AgeBand.AGE_18_24, RegionBucket.OTHER, ContextBucket.MIXED, 0, 0, 5, 5, False),
]


def member_pool(now):
    return [
        CohortMember(
            participant_id=pid,
            age_band=age_band,
            region=region,
            context=context,
            signal_count=signals,
            days_active=days_active,
            first_signal_at=now - timedelta(days=first),
            last_signal_at=now - timedelta(days=last),
            has_intervention_markers=markers,
            quality_score=70,
        )
        for pid, age_band, region, context, signals, days_active, first, last, markers in MEMBER_POOL
    ]


def single_field_criteria(now):
    return {
        "age_bands": [AgeBand.AGE_25_34, AgeBand.AGE_65_PLUS],
        "regions": [RegionBucket.EUROPE],
        "contexts": [ContextBucket.WORK, ContextBucket.MIXED],
        "min_signal_count": 100,
        "min_days_active": 20,
        "date_range": DateRange(start=now - timedelta(days=60), end=now),
        "has_intervention_markers": True,
    }


class TestBucketing:
    """Test demographic bucketing helpers"""

    @pytest.mark.parametrize("birth_year,expected", [
        (2006, AgeBand.AGE_18_24),
        (2000, AgeBand.AGE_18_24),
        (1999, AgeBand.AGE_25_34),
        (1985, AgeBand.AGE_35_44),
        (1975, AgeBand.AGE_45_54),
        (1965, AgeBand.AGE_55_64),
        (1959, AgeBand.AGE_65_PLUS),
    ])
    def test_age_band(self, clock, birth_year, expected):
        """Test age is bucketed by calendar year"""
        assert calculate_age_band(birth_year, clock()) == expected

    @pytest.mark.parametrize("code,expected", [
        ("US", RegionBucket.NORTH_AMERICA),
        ("de", RegionBucket.EUROPE),
        (" JP ", RegionBucket.ASIA_PACIFIC),
        ("BR", RegionBucket.LATIN_AMERICA),
        ("ZA", RegionBucket.OTHER),
        ("", RegionBucket.OTHER),
    ])
    def test_region_bucket(self, code, expected):
        """Test country codes map to regions"""
        assert determine_region_bucket(code) == expected

    @pytest.mark.parametrize("primary,secondary,expected", [
        ("work", [], ContextBucket.WORK),
        ("Work", ["work"], ContextBucket.WORK),
        ("work", ["education"], ContextBucket.MIXED),
        (None, [], ContextBucket.MIXED),
        ("gardening", [], ContextBucket.MIXED),
    ])
    def test_context_bucket(self, primary, secondary, expected):
        """Test one distinct context maps to itself, anything else to mixed"""
        assert infer_context_bucket(primary, secondary) == expected


class TestCohortLifecycle:
    """Test cohort creation, locking and deletion"""

    def test_create(self, cohort, clock):
        """Test new cohorts are empty and unlocked"""
        assert cohort.member_count == 0
        assert not cohort.is_locked
        assert cohort.created_at == clock()

    def test_create_requires_name(self, builder):
        """Test a cohort needs a name"""
        with pytest.raises(ValidationError):
            builder.create_cohort("", created_by="researcher")

    def test_lookup(self, builder, cohort):
        """Test cohorts can be found by ID and study"""
        assert builder.get_cohort(cohort.id) == cohort
        assert builder.get_cohorts_by_study("study-1") == [cohort]
        assert builder.get_cohort("nope") is None

    def test_active_cohorts_exclude_expired(self, builder, clock):
        """Test expired cohorts are not active"""
        builder.create_cohort("Short", created_by="r", expires_at=clock() + timedelta(days=1))
        builder.create_cohort("Open", created_by="r")
        clock.advance(days=2)

        assert [c.name for c in builder.get_active_cohorts()] == ["Open"]
        assert len(builder.get_cohorts()) == 2

    def test_lock_is_idempotent(self, builder, cohort, clock):
        """Test locking twice keeps the first lock time"""
        locked = builder.lock_cohort(cohort.id)
        clock.advance(hours=1)
        again = builder.lock_cohort(cohort.id)

        assert locked.is_locked
        assert again.locked_at == locked.locked_at

    def test_locked_cohort_rejects_changes(self, builder, ledger, cohort, make_profile):
        """Test a locked cohort cannot be edited, re-membered or deleted"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        member = builder.add_member(cohort.id, "user-1", make_profile())
        builder.lock_cohort(cohort.id)

        with pytest.raises(LockedEntityError):
            builder.update_criteria(cohort.id, CohortCriteria(min_signal_count=10))
        with pytest.raises(LockedEntityError):
            builder.add_member(cohort.id, "user-1", make_profile())
        with pytest.raises(LockedEntityError):
            builder.remove_member(cohort.id, member.participant_id)
        with pytest.raises(LockedEntityError):
            builder.delete_cohort(cohort.id)

        assert builder.get_cohort(cohort.id).member_count == 1

    def test_delete_removes_memberships(self, builder, ledger, cohort, make_profile):
        """Test deleting a cohort removes its members"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        builder.add_member(cohort.id, "user-1", make_profile())

        assert builder.delete_cohort(cohort.id)
        assert builder.get_members(cohort.id) == []
        assert builder.delete_cohort(cohort.id) is False

    def test_missing_cohort(self, builder):
        """Test operations on unknown cohorts return not-found values"""
        assert builder.update_criteria("nope", CohortCriteria()) is None
        assert builder.lock_cohort("nope") is None
        assert builder.remove_member("nope", "P-X") is False
        assert builder.get_statistics("nope") is None


class TestMembership:
    """Test member enrollment"""

    def test_add_member_buckets_profile(self, builder, ledger, cohort, make_profile):
        """Test enrollment stores only bucketed fields under a participant ID"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)

        member = builder.add_member(cohort.id, "user-1", make_profile(country_code="FR"))

        assert member.participant_id.startswith("P-")
        assert member.age_band == AgeBand.AGE_25_34
        assert member.region == RegionBucket.EUROPE
        assert member.context == ContextBucket.WORK
        assert member.quality_score == 75
        assert not hasattr(member, "birth_year")
        assert "user-1" not in member.model_dump_json()
        assert builder.get_cohort(cohort.id).member_count == 1

    def test_add_member_without_consent(self, builder, cohort, make_profile):
        """Test users without cohort_inclusion consent are skipped"""
        assert builder.add_member(cohort.id, "user-1", make_profile()) is None
        assert builder.get_members(cohort.id) == []

    def test_add_member_after_consent_lapse(self, builder, ledger, cohort, make_profile, clock):
        """Test an expired consent blocks enrollment before the sweep runs"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION, expires_in_days=1)
        clock.advance(days=2)

        assert builder.add_member(cohort.id, "user-1", make_profile()) is None

    def test_add_member_twice(self, builder, ledger, cohort, make_profile):
        """Test enrolling twice returns the original member"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)

        first = builder.add_member(cohort.id, "user-1", make_profile(quality_score=40))
        second = builder.add_member(cohort.id, "user-1", make_profile(quality_score=90))

        assert second == first
        assert builder.get_cohort(cohort.id).member_count == 1

    def test_same_participant_across_cohorts(self, builder, ledger, make_profile):
        """Test a user keeps one participant ID across cohorts"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        a = builder.create_cohort("A", created_by="r")
        b = builder.create_cohort("B", created_by="r")

        assert (
            builder.add_member(a.id, "user-1", make_profile()).participant_id
            == builder.add_member(b.id, "user-1", make_profile()).participant_id
        )

    def test_remove_member(self, builder, ledger, cohort, make_profile):
        """Test removal updates the member count"""
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        member = builder.add_member(cohort.id, "user-1", make_profile())

        assert builder.remove_member(cohort.id, member.participant_id)
        assert builder.get_cohort(cohort.id).member_count == 0
        assert builder.remove_member(cohort.id, member.participant_id) is False


class TestCriteria:
    """Test criteria matching and filtering"""

    def test_filter_members(self, builder, ledger, make_profile, grant_all, clock):
        """Test stored and extra criteria both apply"""
        cohort = builder.create_cohort(
            "Active", created_by="r", criteria=CohortCriteria(min_signal_count=100)
        )
        for i, (signals, country) in enumerate([(150, "US"), (50, "US"), (200, "DE")]):
            grant_all(ledger, f"user-{i}", ConsentScope.COHORT_INCLUSION)
            builder.add_member(cohort.id, f"user-{i}", make_profile(signal_count=signals, country_code=country))

        assert len(builder.filter_members(cohort.id)) == 2
        extra = CohortCriteria(regions=[RegionBucket.EUROPE])
        assert [m.signal_count for m in builder.filter_members(cohort.id, extra)] == [200]

    def test_date_range_overlap(self, builder, make_profile, clock):
        """Test date range matches members whose activity overlaps it"""
        member = builder._build_member("P-TEST", make_profile())
        inside = DateRange(start=clock() - timedelta(days=10), end=clock())
        before = DateRange(start=clock() - timedelta(days=400), end=clock() - timedelta(days=200))

        assert builder.matches_criteria(member, CohortCriteria(date_range=inside))
        assert not builder.matches_criteria(member, CohortCriteria(date_range=before))

    def test_empty_criteria_matches_all(self, builder, make_profile):
        """Test unset criteria impose no constraint"""
        member = builder._build_member("P-TEST", make_profile())

        assert builder.matches_criteria(member, CohortCriteria())
        assert not builder.matches_criteria(member, CohortCriteria(has_intervention_markers=True))

    @pytest.mark.parametrize("field", list(CohortCriteria.model_fields))
    def test_adding_a_criterion_never_grows_the_match(self, clock, field):
        """Test each criterion field only shrinks or keeps a matched set"""
        members = member_pool(clock())
        values = single_field_criteria(clock())

        def matched(criteria):
            return {m.participant_id for m in members if matches_criteria(m, criteria)}

        everyone = matched(CohortCriteria())
        assert everyone == {pid for pid, *_ in MEMBER_POOL}
        assert matched(CohortCriteria(**{field: values[field]})) < everyone
        for other, value in values.items():
            base = CohortCriteria(**{other: value})
            assert matched(base.model_copy(update={field: values[field]})) <= matched(base)


class TestStatistics:
    """Test cohort statistics"""

    def test_statistics(self, builder, ledger, make_profile, cohort):
        """Test distributions and rounded averages"""
        for i, (quality, country) in enumerate([(70, "US"), (81, "US"), (90, "GB")]):
            ledger.grant(f"user-{i}", ConsentScope.COHORT_INCLUSION)
            builder.add_member(cohort.id, f"user-{i}", make_profile(
                quality_score=quality,
                country_code=country,
                has_intervention_markers=i == 0,
            ))

        stats = builder.get_statistics(cohort.id)

        assert stats["total_members"] == 3
        assert stats["region_distribution"]["north_america"] == 2
        assert stats["region_distribution"]["europe"] == 1
        assert stats["age_band_distribution"]["25-34"] == 3
        assert stats["average_quality_score"] == 80
        assert stats["members_with_interventions"] == 1
        assert stats["suppressed_cells"] == []

    def test_small_cells_suppressed(self, builder, ledger, make_profile, cohort):
        """Test cells under the minimum size are zeroed and listed"""
        for i, country in enumerate(["US", "US", "US", "GB"]):
            ledger.grant(f"user-{i}", ConsentScope.COHORT_INCLUSION)
            builder.add_member(cohort.id, f"user-{i}", make_profile(country_code=country))

        stats = builder.get_statistics(cohort.id, min_cell_size=3)

        assert stats["region_distribution"]["north_america"] == 3
        assert stats["region_distribution"]["europe"] == 0
        assert "region_distribution.europe" in stats["suppressed_cells"]
        assert stats["total_members"] == 4

    def test_empty_cohort_statistics(self, builder, cohort):
        """Test an empty cohort reports zero averages"""
        stats = builder.get_statistics(cohort.id)

        assert stats["total_members"] == 0
        assert stats["average_signal_count"] == 0

    def test_export_manifest_omits_creator(self, builder, cohort):
        """Test the manifest does not name the creating user"""
        manifest = builder.export_manifest(cohort.id)

        assert "created_by" not in manifest["cohort"]
        assert manifest["member_count"] == 0
        assert manifest["statistics"]["total_members"] == 0
